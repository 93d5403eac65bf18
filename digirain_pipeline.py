#!/usr/bin/env python3
"""
Threaded pipeline for digirain.

Three threads share the work:

  simulation  owns the DigitalRain grid, ticks it at the target rate and
              offers each finished frame to a bounded queue. A full queue
              drops the new frame instead of stalling the simulation.
  render      takes frames off the queue, diffs them against what the
              terminal shows and writes only the changed cells.
  input       (the main thread) reads keys and receives signals, and
              turns them into commands for the simulation thread.

The grid never crosses a thread boundary: the input side talks to the
simulation through a command queue, and the renderer only ever sees
immutable Frame copies.

Usage:
  python3 digirain_pipeline.py                 # full-width green rain
  python3 digirain_pipeline.py --narrow --color blue
  python3 digirain_pipeline.py --fps 30 --stats rain_stats.csv
"""

from __future__ import annotations

import argparse
import queue
import signal
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from digirain import (
    CHANNEL_CAPACITY,
    DECAY_FACTOR,
    DECAY_PROB,
    DIM_PROB,
    DIM_VALUE,
    FPS,
    GLOW_PROB,
    GLOW_VALUE,
    MAX_FALL_INTERVAL,
    MAX_LENGTH,
    MIN_FALL_INTERVAL,
    MIN_LENGTH,
    RAMP_FLOOR,
    RAMP_STEPS,
    SPAWN_PROB,
    SYMBOL_CHANGE_PROB,
    THEMES,
    TRAIL_GAP,
    ConfigError,
    DigitalRain,
    Frame,
    FrameRenderer,
    RainConfig,
    StatsLogger,
)
from digirain_term import ESC, Terminal, TerminalError

# ── Pacing / controls ───────────────────────────────────────────────────
RATE_STEP: float = 5.0
MIN_RATE: float = 5.0
MAX_RATE: float = 240.0
POLL_INTERVAL: float = 0.1     # seconds any thread blocks before re-checking stop
STATS_EVERY: int = 100         # ticks between periodic telemetry rows
JOIN_TIMEOUT: float = 2.0

EXIT_OK = 0
EXIT_TERMINAL = 1
EXIT_CONFIG = 2


class PipelineState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Command:
    """A request for the simulation thread."""

    kind: str            # "resize" | "pause" | "resume" | "toggle" | "rate" | "stop"
    value: object = None


# ═══════════════════════════════════════════════════════════════════════
#  Pacing
# ═══════════════════════════════════════════════════════════════════════

class Pacer:
    """
    Fixed-interval tick scheduling against a monotonic clock.

    delay() says how long until the next tick is due. mark() records a
    tick; when the loop has fallen more than one interval behind, the
    reference point jumps to now instead of trying to catch up.
    """

    def __init__(self, fps: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._fps: float = 0.0
        self._interval: float = 0.0
        self._anchor: float = clock()
        self.set_fps(fps)

    @property
    def fps(self) -> float:
        return self._fps

    @property
    def interval(self) -> float:
        return self._interval

    def set_fps(self, fps: float) -> None:
        self._fps = max(0.0, fps)
        self._interval = 0.0 if self._fps == 0 else 1.0 / self._fps

    def delay(self) -> float:
        if self._interval == 0.0:
            return 0.0
        return max(0.0, self._anchor + self._interval - self._clock())

    def mark(self) -> None:
        now = self._clock()
        if self._interval == 0.0:
            self._anchor = now
            return
        self._anchor += self._interval
        if now - self._anchor > self._interval:
            self._anchor = now


# ═══════════════════════════════════════════════════════════════════════
#  The pipeline
# ═══════════════════════════════════════════════════════════════════════

class RainPipeline:
    """
    Owns the simulation and arbitrates everything that wants to touch it.

    start() launches the simulation and render threads. resize(), pause(),
    resume(), toggle_pause(), adjust_rate() and stop() may be called from
    any thread (signal handlers included); they only enqueue commands or
    set the stop event.
    """

    def __init__(
        self,
        config: RainConfig,
        terminal: Terminal,
        stats: StatsLogger | None = None,
        rain: DigitalRain | None = None,
    ) -> None:
        self.config = config
        self.terminal = terminal
        self.stats = stats
        if rain is None:
            cols, rows = terminal.size()
            rain = DigitalRain(config, cols // 2, rows)
        self.rain = rain
        self.renderer = FrameRenderer(config)
        self.pacer = Pacer(config.fps)

        self._frames: queue.Queue[Frame] = queue.Queue(maxsize=config.channel_capacity)
        self._commands: queue.Queue[Command] = queue.Queue()
        self._stop = threading.Event()
        # Reentrant: stop() may run from a signal handler on a thread already holding it
        self._lock = threading.RLock()
        self._state = PipelineState.RUNNING
        self._threads: list[threading.Thread] = []

        # Counters (each written by exactly one thread)
        self.frames_sent: int = 0
        self.frames_dropped: int = 0
        self.frames_rendered: int = 0
        self.bytes_written: int = 0
        self.write_errors: int = 0

    # ── Public state ───────────────────────────────────────────────────

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _set_state(self, state: PipelineState) -> bool:
        """Move to ``state``; STOPPED is final. Returns True if it changed."""
        with self._lock:
            if self._state is PipelineState.STOPPED or self._state is state:
                return False
            self._state = state
            return True

    # ── Thread-safe notifications ──────────────────────────────────────

    def resize(self, width: int, height: int) -> None:
        self._commands.put(Command("resize", (width, height)))

    def notify_resize(self) -> None:
        """Re-read the terminal size and resize to it."""
        cols, rows = self.terminal.size()
        self.resize(cols // 2, rows)

    def pause(self) -> None:
        self._commands.put(Command("pause"))

    def resume(self) -> None:
        self._commands.put(Command("resume"))

    def toggle_pause(self) -> None:
        self._commands.put(Command("toggle"))

    def adjust_rate(self, delta: float) -> None:
        self._commands.put(Command("rate", delta))

    def stop(self) -> None:
        self._set_state(PipelineState.STOPPED)
        self._stop.set()
        self._commands.put(Command("stop"))

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> None:
        self._log("start")
        self._threads = [
            threading.Thread(target=self._simulate, name="digirain-sim", daemon=True),
            threading.Thread(target=self._render, name="digirain-render", daemon=True),
        ]
        for t in self._threads:
            t.start()

    def join(self, timeout: float = JOIN_TIMEOUT) -> None:
        for t in self._threads:
            t.join(timeout)
        self._log("stop")

    def run_input(self) -> None:
        """Read keys until stopped. Runs on the calling (main) thread."""
        while not self._stop.is_set():
            key = self.terminal.read_key(POLL_INTERVAL)
            if key:
                self.handle_key(key)

    def handle_key(self, key: str) -> None:
        # Lone ESC quits; longer escape sequences (arrows, mouse) are noise
        if key.startswith(ESC):
            if key == ESC:
                self.stop()
            return
        for ch in key:
            if ch in ("q", "Q", "\x03"):
                self.stop()
                return
            elif ch in (" ", "p", "P"):
                self.toggle_pause()
            elif ch in ("+", "="):
                self.adjust_rate(RATE_STEP)
            elif ch in ("-", "_"):
                self.adjust_rate(-RATE_STEP)

    # ── Simulation thread ──────────────────────────────────────────────

    def _simulate(self) -> None:
        while not self._stop.is_set():
            if self.state is PipelineState.PAUSED:
                self.process_commands(POLL_INTERVAL)
                # A resize while paused still has to reach the screen
                if self.rain.needs_redraw and not self._stop.is_set():
                    self.publish(self.rain.frame())
                continue

            wait = self.pacer.delay()
            if wait > 0:
                self.process_commands(wait)
                continue
            self.process_commands(0.0)
            if self._stop.is_set() or self.state is not PipelineState.RUNNING:
                continue

            self.rain.step()
            self.pacer.mark()
            self.publish(self.rain.frame())

            if self.rain.tick % STATS_EVERY == 0:
                self._log()

    def publish(self, frame: Frame) -> bool:
        """Offer a frame to the renderer without blocking; False if it was dropped."""
        try:
            self._frames.put_nowait(frame)
        except queue.Full:
            # A dropped full-redraw frame leaves rain.needs_redraw set
            self.frames_dropped += 1
            return False
        self.frames_sent += 1
        if frame.full_redraw:
            self.rain.mark_delivered()
        return True

    def process_commands(self, timeout: float = 0.0) -> None:
        """Apply queued commands, waiting up to ``timeout`` for the first one."""
        try:
            cmd = self._commands.get(timeout=timeout) if timeout > 0 else self._commands.get_nowait()
        except queue.Empty:
            return
        while True:
            self._apply(cmd)
            try:
                cmd = self._commands.get_nowait()
            except queue.Empty:
                return

    def _apply(self, cmd: Command) -> None:
        if cmd.kind == "resize":
            width, height = cmd.value  # type: ignore[misc]
            self.rain.resize(width, height)
            self._log("resize")
        elif cmd.kind == "pause":
            if self._set_state(PipelineState.PAUSED):
                self._log("pause")
        elif cmd.kind == "resume":
            if self._set_state(PipelineState.RUNNING):
                self._log("resume")
        elif cmd.kind == "toggle":
            if self.state is PipelineState.PAUSED:
                self._apply(Command("resume"))
            else:
                self._apply(Command("pause"))
        elif cmd.kind == "rate":
            self.pacer.set_fps(_next_rate(self.pacer.fps, float(cmd.value)))  # type: ignore[arg-type]
            self._log("rate")

    # ── Render thread ──────────────────────────────────────────────────

    def _render(self) -> None:
        while not self._stop.is_set():
            try:
                frame = self._frames.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            self.render_frame(frame)

    def render_frame(self, frame: Frame) -> None:
        data = self.renderer.diff(frame)
        self.frames_rendered += 1
        if not data:
            return
        try:
            self.bytes_written += self.terminal.write(data)
        except OSError:
            # Nothing to recover: repaint everything on the next frame
            self.write_errors += 1
            self.renderer.invalidate()
            self._log("write_error")

    # ── Telemetry ──────────────────────────────────────────────────────

    def _log(self, event: str = "") -> None:
        if self.stats is None:
            return
        self.stats.log(
            tick=self.rain.tick,
            width=self.rain.width,
            height=self.rain.height,
            drops=len(self.rain.overlay),
            frames_sent=self.frames_sent,
            frames_dropped=self.frames_dropped,
            bytes_written=self.bytes_written,
            fps=self.pacer.fps,
            event=event,
        )


def _next_rate(current: float, delta: float) -> float:
    """New target rate after a +/- keypress. Unthrottled (0) adjusts from FPS."""
    base = current if current > 0 else FPS
    return max(MIN_RATE, min(MAX_RATE, base + delta))


# ═══════════════════════════════════════════════════════════════════════
#  Signals
# ═══════════════════════════════════════════════════════════════════════

def install_signal_handlers(pipeline: RainPipeline) -> dict[int, object]:
    """Route SIGINT/SIGTERM to stop and SIGWINCH to resize. Main thread only."""
    if threading.current_thread() is not threading.main_thread():
        return {}
    previous: dict[int, object] = {}

    def _stop(signum: int, frame: object) -> None:
        pipeline.stop()

    def _resize(signum: int, frame: object) -> None:
        pipeline.notify_resize()

    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _stop)
    sigwinch = getattr(signal, "SIGWINCH", None)
    if sigwinch is not None:
        previous[sigwinch] = signal.signal(sigwinch, _resize)
    return previous


def restore_signal_handlers(previous: dict[int, object]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)  # type: ignore[arg-type]


def run(config: RainConfig, terminal: Terminal, stats: StatsLogger | None = None) -> int:
    """Drive the effect on an already-open terminal until quit or signal."""
    pipeline = RainPipeline(config, terminal, stats)
    previous = install_signal_handlers(pipeline)
    try:
        pipeline.start()
        pipeline.run_input()
    finally:
        pipeline.stop()
        pipeline.join()
        restore_signal_handlers(previous)
    return EXIT_OK


# ═══════════════════════════════════════════════════════════════════════
#  CLI
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="digirain", description="Cascading glyph rain for the terminal"
    )
    look = parser.add_argument_group("look")
    look.add_argument("--color", choices=sorted(THEMES), default="green",
                      help="Channel the glow lives in (default: green)")
    look.add_argument("--narrow", action="store_true",
                      help="Half-width glyphs padded to two columns")
    look.add_argument("--256", dest="indexed", action="store_true",
                      help="Indexed-256 colour instead of 24-bit truecolor")

    ambient = parser.add_argument_group("background")
    ambient.add_argument("--symbol-change-prob", type=float, default=SYMBOL_CHANGE_PROB)
    ambient.add_argument("--glow-prob", type=float, default=GLOW_PROB)
    ambient.add_argument("--glow-value", type=int, default=GLOW_VALUE)
    ambient.add_argument("--dim-prob", type=float, default=DIM_PROB)
    ambient.add_argument("--dim-value", type=int, default=DIM_VALUE)
    ambient.add_argument("--decay-prob", type=float, default=DECAY_PROB)
    ambient.add_argument("--decay-factor", type=float, default=DECAY_FACTOR)

    drops = parser.add_argument_group("drops")
    drops.add_argument("--spawn-prob", type=float, default=SPAWN_PROB)
    drops.add_argument("--max-drops", type=int, default=None,
                       help="Drop population cap (default: terminal rows)")
    drops.add_argument("--min-length", type=int, default=MIN_LENGTH)
    drops.add_argument("--max-length", type=int, default=MAX_LENGTH)
    drops.add_argument("--trail-gap", type=int, default=TRAIL_GAP)
    drops.add_argument("--min-fall-interval", type=int, default=MIN_FALL_INTERVAL)
    drops.add_argument("--max-fall-interval", type=int, default=MAX_FALL_INTERVAL)
    drops.add_argument("--ramp-steps", type=int, default=RAMP_STEPS)
    drops.add_argument("--ramp-floor", type=int, default=RAMP_FLOOR)

    timing = parser.add_argument_group("timing")
    timing.add_argument("--fps", type=float, default=FPS,
                        help=f"Target ticks per second, 0 = unthrottled (default: {FPS:g})")
    timing.add_argument("--channel-capacity", type=int, default=CHANNEL_CAPACITY,
                        help="Frames allowed in flight to the renderer")
    timing.add_argument("--seed", type=int, default=None,
                        help="Seed for reproducible rain")

    parser.add_argument("--stats", type=Path, default=None,
                        help="Write telemetry rows to this CSV file (replaces its contents)")
    return parser


def config_from_args(args: argparse.Namespace) -> RainConfig:
    return RainConfig(
        symbol_change_prob=args.symbol_change_prob,
        glow_prob=args.glow_prob,
        glow_value=args.glow_value,
        dim_prob=args.dim_prob,
        dim_value=args.dim_value,
        decay_prob=args.decay_prob,
        decay_factor=args.decay_factor,
        spawn_prob=args.spawn_prob,
        max_drops=args.max_drops,
        min_length=args.min_length,
        max_length=args.max_length,
        trail_gap=args.trail_gap,
        min_fall_interval=args.min_fall_interval,
        max_fall_interval=args.max_fall_interval,
        ramp_steps=args.ramp_steps,
        ramp_floor=args.ramp_floor,
        fps=args.fps,
        channel_capacity=args.channel_capacity,
        theme=args.color,
        narrow=args.narrow,
        truecolor=not args.indexed,
        seed=args.seed,
    )


def main(argv: Sequence[str] | None = None, terminal: Terminal | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except ConfigError as exc:
        print(f"digirain: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    terminal = terminal if terminal is not None else Terminal()
    try:
        terminal.open()
    except TerminalError as exc:
        print(f"digirain: {exc}", file=sys.stderr)
        return EXIT_TERMINAL

    stats: StatsLogger | None = None
    if args.stats is not None:
        stats = StatsLogger(args.stats)
        stats.open()

    try:
        return run(config, terminal, stats)
    finally:
        terminal.close()
        if stats is not None:
            stats.close()


if __name__ == "__main__":
    sys.exit(main())
