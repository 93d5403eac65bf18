#!/usr/bin/env python3
"""
Headless benchmark for digirain.

Ticks the rain and diffs every frame with no terminal attached, then
reports where the time goes. Two modes:

  python3 digirain_bench.py                   # cProfile, 500 ticks
  python3 digirain_bench.py -n 2000 --narrow  # longer run, half-width glyphs
  python3 digirain_bench.py --line-timing     # per-phase timing table
  python3 digirain_bench.py --dump rain.prof  # keep the profile for snakeviz
"""

from __future__ import annotations

import argparse
import cProfile
import pstats
import time
from io import StringIO

import numpy as np

from digirain import DigitalRain, FrameRenderer, RainConfig

PHASES: tuple[str, ...] = ("drops", "ambient", "paint", "diff")
REPORT_EVERY: int = 100


def timed_step(rain: DigitalRain, renderer: FrameRenderer) -> dict[str, float]:
    """One tick through DigitalRain's own phases, timing each.

    Returns seconds per phase plus ``_bytes``, the size of the diff.
    """
    clock = time.perf_counter
    marks = [clock()]

    owned = rain.move_drops()
    marks.append(clock())

    rain.age_background(owned)
    marks.append(clock())

    rain.paint_drops()
    marks.append(clock())

    out = renderer.diff(rain.frame())
    rain.mark_delivered()
    marks.append(clock())

    timings = {name: marks[i + 1] - marks[i] for i, name in enumerate(PHASES)}
    timings["_bytes"] = float(len(out.encode("utf-8")))
    return timings


def _table_row(label: str, seconds: list[float]) -> str:
    ms = np.asarray(seconds) * 1000.0
    p50, p95, p99 = np.percentile(ms, [50, 95, 99])
    return f"{label:<12}{ms.mean():>9.3f}{p50:>9.3f}{p95:>9.3f}{p99:>9.3f}{ms.max():>9.3f}"


def line_timing(rain: DigitalRain, renderer: FrameRenderer, n_frames: int) -> None:
    samples: dict[str, list[float]] = {name: [] for name in (*PHASES, "_bytes")}
    totals: list[float] = []

    for i in range(n_frames):
        t0 = time.perf_counter()
        for name, value in timed_step(rain, renderer).items():
            samples[name].append(value)
        totals.append(time.perf_counter() - t0)
        if (i + 1) % REPORT_EVERY == 0:
            recent = np.mean(totals[-REPORT_EVERY:]) * 1000.0
            print(f"  tick {i + 1:>6}  {recent:6.2f} ms  {len(rain.overlay):>4} drops")

    print()
    print(f"{'phase (ms)':<12}{'mean':>9}{'p50':>9}{'p95':>9}{'p99':>9}{'max':>9}")
    for name in PHASES:
        print(_table_row(name, samples[name]))
    print(_table_row("total", totals))

    sizes = np.asarray(samples["_bytes"])
    print(f"\ndiff size: {sizes.mean():.0f} B mean, {sizes.max():.0f} B worst")

    fps = rain.config.fps or 60.0
    budget = 1000.0 / fps
    late = int((np.asarray(totals) * 1000.0 > budget).sum())
    print(f"budget at {fps:g} fps: {budget:.2f} ms; {late}/{n_frames} ticks over "
          f"({100.0 * late / n_frames:.1f}%)")


def profile(rain: DigitalRain, renderer: FrameRenderer, n_frames: int,
            dump_path: str | None = None) -> None:
    profiler = cProfile.Profile()
    started = time.perf_counter()
    profiler.enable()
    for _ in range(n_frames):
        rain.step()
        renderer.diff(rain.frame())
        rain.mark_delivered()
    profiler.disable()
    elapsed = time.perf_counter() - started

    print(f"{n_frames} ticks in {elapsed:.2f}s: "
          f"{elapsed / n_frames * 1000:.2f} ms/tick, {n_frames / elapsed:.0f} ticks/s\n")

    if dump_path:
        profiler.dump_stats(dump_path)
        print(f"profile written to {dump_path}\n")

    for key, limit in (("cumulative", 25), ("tottime", 15)):
        buf = StringIO()
        pstats.Stats(profiler, stream=buf).sort_stats(key).print_stats(limit)
        print(f"── by {key} ──")
        print(buf.getvalue())


def run_benchmark(
    n_frames: int,
    term_rows: int = 60,
    term_cols: int = 200,
    line_timing_mode: bool = False,
    dump_path: str | None = None,
    config: RainConfig | None = None,
) -> None:
    config = config if config is not None else RainConfig(seed=0)
    rain = DigitalRain(config, term_cols // 2, term_rows)
    renderer = FrameRenderer(config)
    print(f"terminal {term_cols}x{term_rows} -> grid {rain.width}x{rain.height}, "
          f"{'narrow' if config.narrow else 'wide'} glyphs, {n_frames} ticks\n")

    if line_timing_mode:
        line_timing(rain, renderer, n_frames)
    else:
        profile(rain, renderer, n_frames, dump_path)


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark the digirain engine headlessly")
    parser.add_argument("-n", "--frames", type=int, default=500,
                        help="Ticks to run (default: 500)")
    parser.add_argument("--rows", type=int, default=60, help="Terminal rows (default: 60)")
    parser.add_argument("--cols", type=int, default=200, help="Terminal columns (default: 200)")
    parser.add_argument("--narrow", action="store_true", help="Half-width glyph mode")
    parser.add_argument("--seed", type=int, default=0, help="Rain seed (default: 0)")
    parser.add_argument("--line-timing", action="store_true",
                        help="Per-phase timing table instead of cProfile")
    parser.add_argument("--dump", default=None, help="Write the cProfile data here")
    args = parser.parse_args()

    run_benchmark(
        n_frames=args.frames,
        term_rows=args.rows,
        term_cols=args.cols,
        line_timing_mode=args.line_timing,
        dump_path=args.dump,
        config=RainConfig(seed=args.seed, narrow=args.narrow),
    )


if __name__ == "__main__":
    main()
