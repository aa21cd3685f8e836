from __future__ import annotations

import logging
import os
from typing import List, Tuple

import numpy as np

from iv_core import DetectionResult, SampleSequence, _fmt_time_hms


_BASE_DIR = os.path.dirname(__file__)
_LOCAL_MPL_DIR = os.path.join(_BASE_DIR, ".mplconfig")

SPEED_COLOR = "C0"
LIMIT_COLOR = "tab:red"
KEPT_COLOR = "tab:green"
REJECTED_COLOR = "0.6"

# Paces slower than this are clipped so standing still does not flatten the plot.
MAX_PLOT_PACE_S = 300.0

_MATPLOTLIB_STYLE_READY = False


def _ensure_mplconfig() -> None:
    if "MPLCONFIGDIR" in os.environ:
        return
    try:
        os.makedirs(_LOCAL_MPL_DIR, exist_ok=True)
    except OSError:
        return
    os.environ["MPLCONFIGDIR"] = _LOCAL_MPL_DIR


def _ensure_matplotlib_style(plt) -> None:
    global _MATPLOTLIB_STYLE_READY
    if not _MATPLOTLIB_STYLE_READY:
        try:
            plt.style.use("ggplot")
        except OSError:
            pass
        _MATPLOTLIB_STYLE_READY = True


def _speed_series(samples: SampleSequence, unit: str) -> Tuple[np.ndarray, str]:
    speeds = np.asarray(samples.speeds_ms, dtype=np.float64)
    if unit == "pace":
        with np.errstate(divide="ignore"):
            pace = np.where(speeds > 0, 500.0 / np.where(speeds > 0, speeds, 1.0), np.inf)
        return np.minimum(pace, MAX_PLOT_PACE_S), "Pace (s/500m)"
    return speeds * 3.6, "Speed (km/h)"


def _span_times(samples: SampleSequence, ranges: List[range]) -> List[Tuple[float, float]]:
    spans: List[Tuple[float, float]] = []
    for rng in ranges:
        if len(rng) == 0:
            continue
        spans.append((float(samples[rng.start].time_s), float(samples[rng.stop - 1].time_s)))
    return spans


def _plot_intervals(
    samples: SampleSequence,
    result: DetectionResult,
    out_png: str,
    unit: str = "kmph",
) -> None:
    _ensure_mplconfig()
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for plotting. Install with: pip install matplotlib") from exc

    if len(samples) == 0:
        logging.warning("No samples; skipping plot generation.")
        return

    _ensure_matplotlib_style(plt)

    times_min = np.asarray(samples.times, dtype=np.float64) / 60.0
    values, ylabel = _speed_series(samples, unit)
    limit_ms = result.limit.to_ms()
    if unit == "pace":
        limit_value = min(500.0 / limit_ms, MAX_PLOT_PACE_S) if limit_ms > 0 else MAX_PLOT_PACE_S
    else:
        limit_value = limit_ms * 3.6

    fig, ax = plt.subplots(figsize=(12, 5))
    ax.plot(times_min, values, color=SPEED_COLOR, linewidth=1.0, label="Speed" if unit != "pace" else "Pace")
    ax.axhline(limit_value, color=LIMIT_COLOR, linestyle=(0, (6, 4)), linewidth=1.0, label=f"Limit {result.limit.describe()}")

    for idx, (t0, t1) in enumerate(_span_times(samples, result.kept)):
        ax.axvspan(t0 / 60.0, t1 / 60.0, color=KEPT_COLOR, alpha=0.2, label="Interval" if idx == 0 else None)
    for idx, (t0, t1) in enumerate(_span_times(samples, result.rejected)):
        ax.axvspan(
            t0 / 60.0,
            t1 / 60.0,
            facecolor="none",
            edgecolor=REJECTED_COLOR,
            hatch="//",
            label=f"Shorter than {result.min_interval_duration}s" if idx == 0 else None,
        )

    if unit == "pace":
        ax.invert_yaxis()
    ax.set_xlabel("Time (min)")
    ax.set_ylabel(ylabel)
    ax.set_title(
        f"{len(result.intervals)} interval(s) over {_fmt_time_hms(samples.span_s)}"
    )
    ax.legend(loc="best")
    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    logging.info("Wrote plot: %s", out_png)
