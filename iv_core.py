import csv
import logging
import math
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional, Sequence, Tuple

import numpy as np

try:
    from fitparse import FitFile
except Exception:  # pragma: no cover
    FitFile = None  # type: ignore

try:
    from numba import njit
    HAVE_NUMBA = True
except Exception:  # pragma: no cover
    njit = None  # type: ignore
    HAVE_NUMBA = False


METERS_PER_PACE_UNIT = 500.0
KMPH_PER_MS = 3.6
SENTINEL_ACTIVITY_TYPE = -1
DEFAULT_MIN_INTERVAL_DURATION = 20


# -----------------
# Errors
# -----------------

class IntervalConfigError(ValueError):
    pass


class SampleInputError(ValueError):
    pass


# -----------------
# Speed model
# -----------------

class SpeedUnit(Enum):
    KMPH = "kmph"
    MS = "ms"
    PACE = "pace"


@dataclass(frozen=True, eq=False)
class Speed:
    """A rate in km/h, m/s or seconds per 500 m.

    Equality, hashing and ordering all go through ``to_ms()``, so
    ``Speed.kmph(3.6) == Speed.ms(1.0)`` and a smaller pace compares greater.
    """

    value: float
    unit: SpeedUnit

    @classmethod
    def kmph(cls, value: float) -> "Speed":
        return cls(float(value), SpeedUnit.KMPH)

    @classmethod
    def ms(cls, value: float) -> "Speed":
        return cls(float(value), SpeedUnit.MS)

    @classmethod
    def pace(cls, seconds_per_500m: float) -> "Speed":
        return cls(float(seconds_per_500m), SpeedUnit.PACE)

    def to_ms(self) -> float:
        if self.unit is SpeedUnit.KMPH:
            return self.value / KMPH_PER_MS
        if self.unit is SpeedUnit.MS:
            return self.value
        if self.value == 0.0:
            # Signed zero keeps its sign: pace(-0.0) is -inf.
            return math.copysign(math.inf, self.value)
        return METERS_PER_PACE_UNIT / self.value

    def to_kmph(self) -> float:
        if self.unit is SpeedUnit.KMPH:
            return self.value
        return self.to_ms() * KMPH_PER_MS

    def to_pace(self) -> float:
        if self.unit is SpeedUnit.PACE:
            return self.value
        ms = self.to_ms()
        if ms == 0.0:
            return math.inf
        return METERS_PER_PACE_UNIT / ms

    def describe(self) -> str:
        if self.unit is SpeedUnit.KMPH:
            return f"{self.value:.2f} km/h"
        if self.unit is SpeedUnit.PACE:
            return f"{_fmt_pace(self.value)} /500m"
        return f"{self.value:.2f} m/s"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Speed):
            return NotImplemented
        return self.to_ms() == other.to_ms()

    def __hash__(self) -> int:
        return hash(self.to_ms())

    def __lt__(self, other: "Speed") -> bool:
        if not isinstance(other, Speed):
            return NotImplemented
        return self.to_ms() < other.to_ms()

    def __le__(self, other: "Speed") -> bool:
        if not isinstance(other, Speed):
            return NotImplemented
        return self.to_ms() <= other.to_ms()

    def __gt__(self, other: "Speed") -> bool:
        if not isinstance(other, Speed):
            return NotImplemented
        return self.to_ms() > other.to_ms()

    def __ge__(self, other: "Speed") -> bool:
        if not isinstance(other, Speed):
            return NotImplemented
        return self.to_ms() >= other.to_ms()


def _fmt_pace(seconds: float) -> str:
    if not math.isfinite(seconds) or seconds < 0:
        return "--:--"
    minutes = int(seconds // 60)
    rest = seconds - minutes * 60
    return f"{minutes}:{rest:04.1f}"


def _fmt_time_hms(seconds: float) -> str:
    total = int(round(max(0.0, seconds)))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


# -----------------
# Data structures
# -----------------

@dataclass(frozen=True)
class Sample:
    time_s: int
    distance_m: float
    speed: Speed


@dataclass(frozen=True)
class RawRecord:
    time_s: int
    activity_type: int
    lap_number: Optional[int] = None
    distance: Optional[float] = None
    speed: Optional[float] = None
    calories: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    elevation: Optional[float] = None
    heart_rate: Optional[str] = None
    cycles: Optional[int] = None
    row: int = 0


@dataclass(frozen=True)
class IntervalInfo:
    start_time: int
    duration: int
    distance: int


@dataclass
class DetectionResult:
    ranges: List[range]
    kept: List[range]
    intervals: List[IntervalInfo]
    limit: Speed
    min_interval_duration: int

    @property
    def rejected(self) -> List[range]:
        kept = set((r.start, r.stop) for r in self.kept)
        return [r for r in self.ranges if (r.start, r.stop) not in kept]


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True)
class SampleSequence:
    samples: Tuple[Sample, ...]
    times: np.ndarray = field(repr=False, compare=False)
    distances: np.ndarray = field(repr=False, compare=False)
    speeds_ms: np.ndarray = field(repr=False, compare=False)

    @classmethod
    def from_samples(cls, samples: Iterable[Sample]) -> "SampleSequence":
        items = tuple(samples)
        for idx in range(1, len(items)):
            if items[idx].time_s <= items[idx - 1].time_s:
                raise SampleInputError(
                    f"Sample times must be strictly increasing (index {idx}: "
                    f"{items[idx - 1].time_s} -> {items[idx].time_s})"
                )
        speeds = np.asarray([s.speed.to_ms() for s in items], dtype=np.float64)
        bad = np.flatnonzero(~np.isfinite(speeds))
        if bad.size:
            raise SampleInputError(f"Non-finite speed at sample index {int(bad[0])}")
        distances = np.asarray([s.distance_m for s in items], dtype=np.float64)
        if distances.size > 1:
            drops = int(np.count_nonzero(np.diff(distances) < 0))
            if drops:
                logging.warning("Cumulative distance decreases at %d sample(s); keeping as recorded", drops)
        return cls(
            samples=items,
            times=_readonly(np.asarray([s.time_s for s in items], dtype=np.int64)),
            distances=_readonly(distances),
            speeds_ms=_readonly(speeds),
        )

    def __len__(self) -> int:
        return len(self.samples)

    def __getitem__(self, idx: int) -> Sample:
        return self.samples[idx]

    def __iter__(self) -> Iterator[Sample]:
        return iter(self.samples)

    @property
    def span_s(self) -> int:
        if not self.samples:
            return 0
        return self.samples[-1].time_s - self.samples[0].time_s


# -----------------
# Scanner engines
# -----------------

EngineMode = Literal["auto", "python", "numpy", "numba"]
ScanEngine = Literal["python", "numpy", "numba"]

_NUMPY_BLOCK = 16


def _resolve_engine(engine: str) -> EngineMode:
    normalized = engine.strip().lower() if engine else "auto"
    if normalized not in {"auto", "python", "numpy", "numba"}:
        logging.warning("Unknown engine '%s'; falling back to auto", engine)
        return "auto"
    return normalized  # type: ignore[return-value]


def _select_engine(engine: str) -> ScanEngine:
    resolved = _resolve_engine(engine)
    if resolved == "auto":
        return "numba" if HAVE_NUMBA else "numpy"
    if resolved == "numba" and not HAVE_NUMBA:
        logging.warning("Numba engine requested but numba is unavailable; using numpy engine")
        return "numpy"
    return resolved


def _scan_python(speeds: Sequence[float], start_index: int, limit_ms: float) -> Tuple[int, int]:
    n = len(speeds)
    first = -1
    for idx in range(start_index, n):
        if speeds[idx] >= limit_ms:
            first = idx
            break
    if first < 0:
        return -1, -1
    total = 0.0
    for idx in range(first, n):
        total += speeds[idx]
        if total / (idx - first + 1) < limit_ms:
            return first, idx
    return first, -1


def _first_at_or_above(speeds: np.ndarray, start_index: int, limit_ms: float) -> int:
    n = speeds.shape[0]
    lo = start_index
    block = _NUMPY_BLOCK
    while lo < n:
        hi = min(n, lo + block)
        hits = np.flatnonzero(speeds[lo:hi] >= limit_ms)
        if hits.size:
            return lo + int(hits[0])
        lo = hi
        block *= 2
    return -1


def _scan_numpy(speeds: np.ndarray, start_index: int, limit_ms: float) -> Tuple[int, int]:
    # Both phases read doubling blocks, so a call touches O(distance to the
    # end of the interval) samples and the repeated scan stays linear.
    n = speeds.shape[0]
    first = _first_at_or_above(speeds, start_index, limit_ms)
    if first < 0:
        return -1, -1
    # The carried sum seeds each cumsum to keep the same left-to-right accumulation.
    lo = first
    block = _NUMPY_BLOCK
    carry = 0.0
    while lo < n:
        hi = min(n, lo + block)
        seeded = np.empty(hi - lo + 1, dtype=np.float64)
        seeded[0] = carry
        seeded[1:] = speeds[lo:hi]
        sums = np.cumsum(seeded)[1:]
        counts = np.arange(lo - first + 1, hi - first + 1, dtype=np.float64)
        below = np.flatnonzero(sums / counts < limit_ms)
        if below.size:
            return first, lo + int(below[0])
        carry = float(sums[-1])
        lo = hi
        block *= 2
    return first, -1


if HAVE_NUMBA:

    @njit(cache=True)
    def _scan_numba_kernel(speeds: np.ndarray, start_index: int, limit_ms: float) -> Tuple[int, int]:
        n = speeds.shape[0]
        first = -1
        for idx in range(start_index, n):
            if speeds[idx] >= limit_ms:
                first = idx
                break
        if first < 0:
            return -1, -1
        total = 0.0
        for idx in range(first, n):
            total += speeds[idx]
            if total / (idx - first + 1) < limit_ms:
                return first, idx
        return first, -1

else:

    def _scan_numba_kernel(*args, **kwargs):  # type: ignore[misc]
        raise RuntimeError("Numba engine requested but numba is unavailable")


def _scan(samples: SampleSequence, start_index: int, limit_ms: float, engine: ScanEngine) -> Tuple[int, int]:
    if engine == "python":
        return _scan_python(samples.speeds_ms, start_index, limit_ms)
    if engine == "numba":
        first, end = _scan_numba_kernel(samples.speeds_ms, start_index, limit_ms)
        return int(first), int(end)
    return _scan_numpy(samples.speeds_ms, start_index, limit_ms)


# -----------------
# Interval detection
# -----------------

def _next_interval(samples: SampleSequence, start_index: int, limit_ms: float, engine: ScanEngine) -> Optional[range]:
    if start_index >= len(samples):
        return None
    first, end = _scan(samples, start_index, limit_ms, engine)
    if first < 0 or end < 0:
        return None
    return range(first, end)


def find_interval(
    samples: SampleSequence,
    start_index: int,
    limit: Speed,
    engine: EngineMode = "auto",
) -> Optional[range]:
    """Find the next interval starting at or after ``start_index``.

    The interval starts at the first sample whose speed reaches ``limit`` and
    ends (exclusive) at the first sample that pulls the running average speed
    since that start below ``limit``. A candidate whose average never drops
    below ``limit`` before the data ends yields ``None``.
    """
    if start_index < 0:
        raise ValueError(f"start_index must be non-negative, got {start_index}")
    return _next_interval(samples, start_index, limit.to_ms(), _select_engine(engine))


def _trailing_candidate(samples: SampleSequence, start_index: int, limit: Speed) -> Optional[range]:
    first = _first_at_or_above(samples.speeds_ms, start_index, limit.to_ms())
    if first < 0:
        return None
    return range(first, len(samples))


def iter_intervals(
    samples: SampleSequence,
    limit: Speed,
    engine: EngineMode = "auto",
    include_trailing: bool = False,
) -> Iterator[range]:
    """Yield non-overlapping interval ranges in chronological order.

    Each scan restarts at the end of the previous interval. With
    ``include_trailing`` the final unterminated candidate is reported as
    running to the end of the data instead of being discarded.
    """
    selected = _select_engine(engine)
    limit_ms = limit.to_ms()
    start_index = 0
    while True:
        found = _next_interval(samples, start_index, limit_ms, selected)
        if found is None:
            break
        yield found
        start_index = found.stop
    if include_trailing:
        trailing = _trailing_candidate(samples, start_index, limit)
        if trailing is not None:
            logging.debug("Reporting trailing unterminated interval from index %d", trailing.start)
            yield trailing


def find_all_intervals(
    samples: SampleSequence,
    limit: Speed,
    engine: EngineMode = "auto",
    include_trailing: bool = False,
) -> List[range]:
    return list(iter_intervals(samples, limit, engine=engine, include_trailing=include_trailing))


def summarize_interval(samples: SampleSequence, rng: range) -> IntervalInfo:
    # Python's round() is round-half-to-even.
    if len(rng) == 0:
        raise ValueError(f"Cannot summarize an empty range {rng!r}")
    first = samples[rng.start]
    last = samples[rng.stop - 1]
    distance = int(round(last.distance_m - first.distance_m))
    return IntervalInfo(
        start_time=first.time_s,
        duration=last.time_s - first.time_s,
        distance=max(0, distance),
    )


def summarize_intervals(
    samples: SampleSequence,
    ranges: Iterable[range],
    min_interval_duration: int = DEFAULT_MIN_INTERVAL_DURATION,
) -> List[Tuple[range, IntervalInfo]]:
    if min_interval_duration < 0:
        raise ValueError(f"min_interval_duration must be non-negative, got {min_interval_duration}")
    kept: List[Tuple[range, IntervalInfo]] = []
    for rng in ranges:
        info = summarize_interval(samples, rng)
        if info.duration < min_interval_duration:
            logging.debug(
                "Dropping interval at %ss: %ss shorter than %ss",
                info.start_time,
                info.duration,
                min_interval_duration,
            )
            continue
        kept.append((rng, info))
    return kept


def interval_average_speed(samples: SampleSequence, rng: range) -> Speed:
    if len(rng) == 0:
        raise ValueError(f"Cannot average an empty range {rng!r}")
    total = 0.0
    for idx in rng:
        total += float(samples.speeds_ms[idx])
    return Speed.ms(total / len(rng))


def detect_intervals(
    samples: SampleSequence,
    limit: Speed,
    min_interval_duration: int = DEFAULT_MIN_INTERVAL_DURATION,
    engine: EngineMode = "auto",
    include_trailing: bool = False,
) -> DetectionResult:
    ranges = find_all_intervals(samples, limit, engine=engine, include_trailing=include_trailing)
    kept_pairs = summarize_intervals(samples, ranges, min_interval_duration)
    logging.info(
        "Detected %d interval(s) at %s; %d kept with duration >= %ss",
        len(ranges),
        limit.describe(),
        len(kept_pairs),
        min_interval_duration,
    )
    return DetectionResult(
        ranges=ranges,
        kept=[rng for rng, _ in kept_pairs],
        intervals=[info for _, info in kept_pairs],
        limit=limit,
        min_interval_duration=min_interval_duration,
    )


# -----------------
# Input loading
# -----------------

CSV_REQUIRED_COLUMNS = ("time", "activityType")


def _parse_optional(raw: Dict[str, Any], key: str, cast, row: int) -> Any:
    value = raw.get(key)
    if value is None:
        return None
    text = str(value).strip()
    if text == "":
        return None
    try:
        return cast(text)
    except ValueError as exc:
        raise SampleInputError(f"row {row}: invalid {key} value {text!r}") from exc


def _parse_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        as_float = float(text)
        if not as_float.is_integer():
            raise
        return int(as_float)


def _parse_csv_row(raw: Dict[str, Any], row: int) -> RawRecord:
    time_s = _parse_optional(raw, "time", _parse_int, row)
    activity_type = _parse_optional(raw, "activityType", _parse_int, row)
    if time_s is None or activity_type is None:
        raise SampleInputError(f"row {row}: time and activityType are required")
    if time_s < 0:
        raise SampleInputError(f"row {row}: time must be non-negative, got {time_s}")
    return RawRecord(
        time_s=time_s,
        activity_type=activity_type,
        lap_number=_parse_optional(raw, "lapNumber", _parse_int, row),
        distance=_parse_optional(raw, "distance", float, row),
        speed=_parse_optional(raw, "speed", float, row),
        calories=_parse_optional(raw, "calories", _parse_int, row),
        latitude=_parse_optional(raw, "lat", float, row),
        longitude=_parse_optional(raw, "long", float, row),
        elevation=_parse_optional(raw, "elevation", float, row),
        heart_rate=_parse_optional(raw, "heartRate", str, row),
        cycles=_parse_optional(raw, "cycles", _parse_int, row),
        row=row,
    )


def read_csv_records(path: str) -> List[RawRecord]:
    try:
        with open(path, "r", newline="", encoding="utf-8") as fh:
            reader = csv.DictReader(fh)
            missing = set(CSV_REQUIRED_COLUMNS) - set(reader.fieldnames or [])
            if missing:
                raise SampleInputError(f"{path}: missing columns {sorted(missing)}")
            # Row numbers count the header as line 1.
            return [_parse_csv_row(raw, row) for row, raw in enumerate(reader, start=2)]
    except OSError as exc:
        raise SampleInputError(f"could not open input file {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise SampleInputError(f"{path}: not a UTF-8 text file ({exc.reason} at byte {exc.start})") from exc
    except csv.Error as exc:
        raise SampleInputError(f"{path}: malformed CSV: {exc}") from exc


def trim_sentinel(records: List[RawRecord]) -> List[RawRecord]:
    if records and records[-1].activity_type == SENTINEL_ACTIVITY_TYPE:
        logging.debug("Dropping trailing sentinel record at row %d", records[-1].row)
        return records[:-1]
    return records


def build_samples(records: Iterable[RawRecord]) -> SampleSequence:
    samples: List[Sample] = []
    for rec in records:
        if rec.distance is None or rec.speed is None:
            missing = "distance" if rec.distance is None else "speed"
            raise SampleInputError(f"row {rec.row}: missing required field {missing}")
        samples.append(Sample(time_s=rec.time_s, distance_m=rec.distance, speed=Speed.ms(rec.speed)))
    return SampleSequence.from_samples(samples)


def _require_dependency(dep, name: str, install_hint: Optional[str] = None) -> None:
    if dep is None:
        hint = f"\nInstall with: {install_hint}" if install_hint else ""
        raise RuntimeError(
            f"Missing dependency: {name}. {hint}".strip()
        )


def _fit_value(vals: Dict[str, Any], names: Sequence[str]) -> Optional[float]:
    for name in names:
        if vals.get(name) is None:
            continue
        try:
            value = float(vals.get(name))
        except (TypeError, ValueError):
            continue
        if math.isfinite(value):
            return value
    return None


def read_fit_samples(path: str) -> SampleSequence:
    _require_dependency(FitFile, "fitparse", "pip install fitparse")
    try:
        fit = FitFile(path)
        fit.parse()
    except Exception as exc:
        raise SampleInputError(f"could not parse FIT file {path}: {exc}") from exc

    samples: List[Sample] = []
    t0: Optional[float] = None
    skipped = 0
    for msg in fit.get_messages("record"):
        vals = msg.get_values()
        ts = vals.get("timestamp")
        if ts is None:
            skipped += 1
            continue
        t = float(ts.timestamp()) if hasattr(ts, "timestamp") else float(ts)
        if t0 is None:
            t0 = t
        dist = _fit_value(vals, ("enhanced_distance", "distance"))
        speed = _fit_value(vals, ("enhanced_speed", "speed"))
        time_s = int(round(t - t0))
        if dist is None or speed is None or (samples and time_s <= samples[-1].time_s):
            skipped += 1
            continue
        samples.append(Sample(time_s=time_s, distance_m=dist, speed=Speed.ms(max(0.0, speed))))
    if skipped:
        logging.warning("%s: skipped %d record(s) without usable time/distance/speed", path, skipped)
    return SampleSequence.from_samples(samples)


def load_samples(path: str) -> SampleSequence:
    if path.lower().endswith(".fit"):
        samples = read_fit_samples(path)
    else:
        samples = build_samples(trim_sentinel(read_csv_records(path)))
    logging.info("Loaded %d samples spanning %s from %s", len(samples), _fmt_time_hms(samples.span_s), os.path.basename(path))
    return samples


# -----------------
# Logging / profiling
# -----------------

def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    # matplotlib findfont and numba compiler passes are noisy at DEBUG
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("matplotlib.font_manager").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)
    logging.getLogger("fontTools").setLevel(logging.INFO)
    logging.getLogger("numba").setLevel(logging.WARNING)


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-10s %.3fs", label, now - self._last)
        self._last = now
