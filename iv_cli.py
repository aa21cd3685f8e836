from __future__ import annotations

# CLI orchestration for the interval detector. Detection lives in iv_core and
# plotting in iv_plotting (matplotlib, imported lazily).

import csv
import json
import logging
import math
import sys
from typing import Any, Dict, List, Optional, TextIO

from iv_core import (
    DEFAULT_MIN_INTERVAL_DURATION,
    DetectionResult,
    IntervalConfigError,
    SampleInputError,
    SampleSequence,
    Speed,
    _StageProfiler,
    _fmt_pace,
    _resolve_engine,
    _setup_logging,
    detect_intervals,
    interval_average_speed,
    load_samples,
)

try:
    import typer
except Exception:  # pragma: no cover
    typer = None  # type: ignore


OUTPUT_FIELDS = ["start_time", "duration", "distance"]


def resolve_limit(limit_kmph: Optional[float], limit_pace: Optional[float]) -> Speed:
    if (limit_kmph is None) == (limit_pace is None):
        raise IntervalConfigError("must specify either --limit-kmph or --limit-pace")
    if limit_kmph is not None:
        value, name, limit = limit_kmph, "--limit-kmph", Speed.kmph(limit_kmph)
    else:
        value, name, limit = limit_pace, "--limit-pace", Speed.pace(limit_pace)
    if not math.isfinite(value) or value <= 0:
        raise IntervalConfigError(f"{name} must be a positive number, got {value}")
    return limit


def _write_intervals_csv(result: DetectionResult, fh: TextIO) -> None:
    writer = csv.writer(fh, lineterminator="\n")
    writer.writerow(OUTPUT_FIELDS)
    writer.writerows([[info.start_time, info.duration, info.distance] for info in result.intervals])


def _interval_details(samples: SampleSequence, result: DetectionResult) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for rng, info in zip(result.kept, result.intervals):
        avg = interval_average_speed(samples, rng)
        rows.append(
            {
                "start_time": info.start_time,
                "end_time": samples[rng.stop - 1].time_s,
                "duration": info.duration,
                "distance": info.distance,
                "start_index": rng.start,
                "end_index": rng.stop,
                "avg_speed_ms": round(avg.to_ms(), 4),
                "avg_speed_kmph": round(avg.to_kmph(), 3),
                "avg_pace_s_per_500m": round(avg.to_pace(), 2),
                "avg_pace": _fmt_pace(avg.to_pace()),
            }
        )
    return rows


def _run(
    input_path: str,
    limit_kmph: Optional[float] = None,
    limit_pace: Optional[float] = None,
    min_interval_duration: int = DEFAULT_MIN_INTERVAL_DURATION,
    output: str = "-",
    engine: str = "auto",
    include_trailing: bool = False,
    png: Optional[str] = None,
    json_path: Optional[str] = None,
    verbose: bool = False,
    log_file: Optional[str] = None,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)

    try:
        limit = resolve_limit(limit_kmph, limit_pace)
        if min_interval_duration < 0:
            raise IntervalConfigError(
                f"--min-interval-duration must be non-negative, got {min_interval_duration}"
            )
    except IntervalConfigError as e:
        logging.error("error: %s", e)
        return 2

    engine_mode = _resolve_engine(engine)
    try:
        samples = load_samples(input_path)
    except (SampleInputError, RuntimeError) as e:
        logging.error(str(e))
        return 2
    profiler.lap("load")

    if len(samples) == 0:
        logging.warning("No samples in %s; writing header only", input_path)

    result = detect_intervals(
        samples,
        limit,
        min_interval_duration=min_interval_duration,
        engine=engine_mode,
        include_trailing=include_trailing,
    )
    profiler.lap("detect")

    if output == "-":
        _write_intervals_csv(result, sys.stdout)
        sys.stdout.flush()
    else:
        with open(output, "w", newline="") as f:
            _write_intervals_csv(result, f)
        logging.info("Wrote: %s", output)
    profiler.lap("csv")

    if json_path:
        try:
            meta = {
                "command": "detect",
                "input": input_path,
                "output_csv": None if output == "-" else output,
                "n_samples": len(samples),
                "span_s": samples.span_s,
                "engine": engine_mode,
                "params": {
                    "limit": limit.describe(),
                    "limit_ms": limit.to_ms(),
                    "limit_kmph": limit_kmph,
                    "limit_pace": limit_pace,
                    "min_interval_duration": min_interval_duration,
                    "include_trailing": include_trailing,
                },
                "n_candidates": len(result.ranges),
                "n_intervals": len(result.intervals),
            }
            with open(json_path, "w", encoding="utf-8") as jf:
                json.dump({"meta": meta, "intervals": _interval_details(samples, result)}, jf, indent=2)
            logging.info("Wrote JSON: %s", json_path)
        except OSError as exc:
            logging.warning("Failed to write JSON sidecar: %s", exc)

    if png:
        from iv_plotting import _plot_intervals

        try:
            _plot_intervals(
                samples,
                result,
                out_png=png,
                unit="pace" if limit_pace is not None else "kmph",
            )
        except RuntimeError as exc:
            logging.error(str(exc))
            return 2
        profiler.lap("plot")

    return 0


def _build_typer_app():  # pragma: no cover
    app = typer.Typer(add_completion=False, help="Find intervals from CSV or FIT activity files.")

    @app.command(name="detect")
    def detect(
        input_path: str = typer.Argument(..., help="Input .csv (or .fit) activity file"),
        limit_kmph: Optional[float] = typer.Option(
            None,
            "--limit-kmph",
            "-k",
            help="The average speed in km/h of an interval",
        ),
        limit_pace: Optional[float] = typer.Option(
            None,
            "--limit-pace",
            "-p",
            help="The average speed in seconds per 500m of an interval",
        ),
        min_interval_duration: int = typer.Option(
            DEFAULT_MIN_INTERVAL_DURATION,
            "--min-interval-duration",
            "-m",
            help="The minimum duration of an interval (s)",
        ),
        output: str = typer.Option("-", "--output", "-o", help="Output CSV path ('-' for stdout)"),
        engine: str = typer.Option("auto", "--engine", help="Scan engine: auto|python|numpy|numba"),
        keep_trailing: bool = typer.Option(
            False,
            "--keep-trailing/--no-keep-trailing",
            help="Report a final interval that is still above the limit when the data ends",
        ),
        png: Optional[str] = typer.Option(None, "--png", help="Optional output PNG of the speed trace"),
        json_path: Optional[str] = typer.Option(None, "--json", help="Optional JSON sidecar with interval details"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings"),
    ) -> None:
        """Detect intervals and write them as CSV."""
        code = _run(
            input_path,
            limit_kmph=limit_kmph,
            limit_pace=limit_pace,
            min_interval_duration=min_interval_duration,
            output=output,
            engine=engine,
            include_trailing=keep_trailing,
            png=png,
            json_path=json_path,
            verbose=verbose,
            log_file=log_file,
            profile=profile,
        )
        if code != 0:
            raise typer.Exit(code)

    return app


def main_cli() -> int:
    if typer is None:
        print(
            "Typer is not installed. Install with: pip install typer",
            file=sys.stderr,
        )
        return 2
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
