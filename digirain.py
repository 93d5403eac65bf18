#!/usr/bin/env python3
"""
  D I G I R A I N
  Cascading glyph rain for truecolor terminals.

  The screen is a grid of glyphs over a slowly decaying glow. Every tick
  each background cell may flicker to a new glyph, flare up, dim, or fade
  a little further toward black. Falling streaks ("drops") are painted on
  top: a stepped ramp from dim to near-white, a green cell just behind a
  white head, and a black gap separating one streak from the next.

  Only cells that changed since the last frame are written to the
  terminal, so a mostly-dark screen costs almost nothing to redraw.

  Controls:
    q / ESC   quit               SPACE / p   pause / resume
    + / =     faster             - / _       slower

  Run with:  python3 digirain_pipeline.py --help
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, ClassVar

import numpy as np
from numpy.typing import NDArray

from digirain_term import CLEAR_SCREEN, cursor_to

# ── Glyphs ──────────────────────────────────────────────────────────────
# Index 0 is always the blank glyph.
SYMBOLS: tuple[str, ...] = tuple(
    "　"
    "ＡＢＣＤＥＦＧＨＩＪＫＬＭＮＯＰＱＲＳＴＵＶＷＸＹＺ"
    "ヲァィゥェォャュョッンアイウエオカキクケコサシヤスソ"
    "０１２３４５６７８９"
    "テハフノホメトチニツ"
)

SYMBOLS_HALF: tuple[str, ...] = tuple(
    " "
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "ｦｧｨｩｪｫｬｭｮｯﾝｱｲｳｴｵｶｷｸｹｺｻｼﾔｽｿ"
    "0123Ɛ456789ρ"
    "ﾃﾊﾌﾉﾎﾒﾄﾁﾆﾂ"
)

BLANK: int = 0

# ── Colour ──────────────────────────────────────────────────────────────
COLOR_BLACK: int = 0x000000
COLOR_WHITE: int = 0xFFFFFF

# Theme → bit shift of the channel that carries the glow
THEMES: dict[str, int] = {"red": 16, "green": 8, "blue": 0}

# Off-channel level of the brightest ramp step (near-white, tinted)
RAMP_PEAK_TINT: int = 0xB0
# The cell just behind the head
HEAD_TRAIL_VALUE: int = 0xCC

# ── Defaults ────────────────────────────────────────────────────────────
SYMBOL_CHANGE_PROB: float = 0.04
GLOW_PROB: float = 0.007
GLOW_VALUE: int = 0x88
DIM_PROB: float = 0.003
DIM_VALUE: int = 0x44
DECAY_PROB: float = 0.25
DECAY_FACTOR: float = 0.9

SPAWN_PROB: float = 0.35
MIN_LENGTH: int = 8
MAX_LENGTH: int = 30
TRAIL_GAP: int = 4
MIN_FALL_INTERVAL: int = 1
MAX_FALL_INTERVAL: int = 4
RAMP_STEPS: int = 6
RAMP_FLOOR: int = 0x30

FPS: float = 60.0
CHANNEL_CAPACITY: int = 2


class ConfigError(ValueError):
    """An out-of-range configuration value, reported before anything runs."""


def pack_rgb(r: int, g: int, b: int) -> int:
    return (r << 16) | (g << 8) | b


def unpack_rgb(color: int) -> tuple[int, int, int]:
    return (color >> 16) & 0xFF, (color >> 8) & 0xFF, color & 0xFF


def interp(a: int, b: int, t: float) -> int:
    """Blend packed colours: t=0 gives a, t=1 gives b."""
    if not 0.0 <= t <= 1.0:
        raise ValueError(f"interp t out of range: {t}")
    ra, ga, ba = unpack_rgb(a)
    rb, gb, bb = unpack_rgb(b)
    return pack_rgb(
        int(ra + (rb - ra) * t),
        int(ga + (gb - ga) * t),
        int(ba + (bb - ba) * t),
    )


def to_ansi256(color: int) -> int:
    """Nearest xterm-256 index: greys use the 24-step ramp, the rest the 6x6x6 cube."""
    r, g, b = unpack_rgb(color)
    if r == g == b:
        if r < 8:
            return 16
        if r > 248:
            return 231
        return (r - 8) // 10 + 232
    return 16 + 36 * (r * 5 // 255) + 6 * (g * 5 // 255) + (b * 5 // 255)


def ramp_level(index: int, ramp_len: int, steps: int) -> float:
    """Quantised brightness (0..1) of ramp position ``index``, tail first."""
    if ramp_len <= 0:
        return 0.0
    return min(index * steps // ramp_len, steps - 1) / (steps - 1)


def sgr_foreground(color: int, truecolor: bool = True) -> str:
    if truecolor:
        r, g, b = unpack_rgb(color)
        return f"\x1b[38;2;{r};{g};{b}m"
    return f"\x1b[38;5;{to_ansi256(color)}m"


# ═══════════════════════════════════════════════════════════════════════
#  Configuration
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RainConfig:
    """Every tunable of the effect. Immutable; validated on construction."""

    symbol_change_prob: float = SYMBOL_CHANGE_PROB
    glow_prob: float = GLOW_PROB
    glow_value: int = GLOW_VALUE
    dim_prob: float = DIM_PROB
    dim_value: int = DIM_VALUE
    decay_prob: float = DECAY_PROB
    decay_factor: float = DECAY_FACTOR

    spawn_prob: float = SPAWN_PROB
    max_drops: int | None = None  # None → one drop per grid row
    min_length: int = MIN_LENGTH
    max_length: int = MAX_LENGTH
    trail_gap: int = TRAIL_GAP
    min_fall_interval: int = MIN_FALL_INTERVAL
    max_fall_interval: int = MAX_FALL_INTERVAL
    ramp_steps: int = RAMP_STEPS
    ramp_floor: int = RAMP_FLOOR

    fps: float = FPS
    channel_capacity: int = CHANNEL_CAPACITY
    theme: str = "green"
    narrow: bool = False
    truecolor: bool = True
    seed: int | None = None

    def __post_init__(self) -> None:
        for name in ("symbol_change_prob", "glow_prob", "dim_prob", "decay_prob", "spawn_prob"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value}")
        if not 0.0 <= self.decay_factor < 1.0:
            raise ConfigError(f"decay_factor must be within [0, 1), got {self.decay_factor}")
        for name in ("glow_value", "dim_value", "ramp_floor"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFF:
                raise ConfigError(f"{name} must be within [0, 255], got {value}")
        if self.min_length < 1 or self.min_length > self.max_length:
            raise ConfigError(
                f"need 1 <= min_length <= max_length, got {self.min_length}..{self.max_length}"
            )
        if self.trail_gap < 0:
            raise ConfigError(f"trail_gap must be >= 0, got {self.trail_gap}")
        if self.min_fall_interval < 1 or self.min_fall_interval > self.max_fall_interval:
            raise ConfigError(
                "need 1 <= min_fall_interval <= max_fall_interval, "
                f"got {self.min_fall_interval}..{self.max_fall_interval}"
            )
        if self.ramp_steps < 2:
            raise ConfigError(f"ramp_steps must be >= 2, got {self.ramp_steps}")
        if self.fps < 0:
            raise ConfigError(f"fps must be >= 0, got {self.fps}")
        if self.channel_capacity < 1:
            raise ConfigError(f"channel_capacity must be >= 1, got {self.channel_capacity}")
        if self.max_drops is not None and self.max_drops < 0:
            raise ConfigError(f"max_drops must be >= 0, got {self.max_drops}")
        if self.theme not in THEMES:
            raise ConfigError(f"unknown theme {self.theme!r} (choose from {', '.join(THEMES)})")

    @property
    def channel_shift(self) -> int:
        return THEMES[self.theme]

    @property
    def symbols(self) -> tuple[str, ...]:
        return SYMBOLS_HALF if self.narrow else SYMBOLS

    @property
    def glyphs(self) -> list[str]:
        """Terminal text per symbol index; half-width glyphs are padded to two columns."""
        if self.narrow:
            return [s + " " for s in SYMBOLS_HALF]
        return list(SYMBOLS)

    def channel(self, value: int) -> int:
        """Packed colour with only the theme channel set."""
        return (value & 0xFF) << self.channel_shift


# ═══════════════════════════════════════════════════════════════════════
#  Grid state
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Cell:
    symbol: int = BLANK
    color: int = COLOR_BLACK


@dataclass(frozen=True, eq=False)
class Frame:
    """An immutable copy of the grid, as handed from simulation to renderer."""

    symbols: NDArray[np.int16]
    colors: NDArray[np.uint32]
    full_redraw: bool = False
    tick: int = 0

    @property
    def shape(self) -> tuple[int, int]:
        return self.symbols.shape  # type: ignore[return-value]

    @property
    def height(self) -> int:
        return self.symbols.shape[0]

    @property
    def width(self) -> int:
        return self.symbols.shape[1]

    def same_cells(self, other: Frame) -> bool:
        return (
            self.shape == other.shape
            and np.array_equal(self.symbols, other.symbols)
            and np.array_equal(self.colors, other.colors)
        )


class RainGrid:
    """Row-major symbol + packed colour matrix. Dimensions change only via resize()."""

    def __init__(self, width: int, height: int) -> None:
        self.width: int = 0
        self.height: int = 0
        self.symbols: NDArray[np.int16] = np.zeros((0, 0), dtype=np.int16)
        self.colors: NDArray[np.uint32] = np.zeros((0, 0), dtype=np.uint32)
        self.resize(width, height)

    def resize(self, width: int, height: int) -> None:
        self.width = max(0, width)
        self.height = max(0, height)
        self.symbols = np.zeros((self.height, self.width), dtype=np.int16)
        self.colors = np.zeros((self.height, self.width), dtype=np.uint32)

    @property
    def shape(self) -> tuple[int, int]:
        return self.height, self.width

    def cell(self, row: int, col: int) -> Cell:
        return Cell(int(self.symbols[row, col]), int(self.colors[row, col]))

    def set_cell(self, row: int, col: int, cell: Cell) -> None:
        self.symbols[row, col] = cell.symbol
        self.colors[row, col] = cell.color

    def snapshot(self, full_redraw: bool = False, tick: int = 0) -> Frame:
        return Frame(self.symbols.copy(), self.colors.copy(), full_redraw, tick)


# ═══════════════════════════════════════════════════════════════════════
#  Ambient background
# ═══════════════════════════════════════════════════════════════════════

class CellEngine:
    """
    Ages the background independently of any drop.

    Each cell gets four independent Bernoulli trials per tick, in order:
    symbol re-roll (lit cells only), glow, dim (overrides glow), decay.
    Every row owns its own generator, so rows can be evaluated in any
    order without sharing random state.
    """

    def __init__(self, config: RainConfig, seed_seq: np.random.SeedSequence) -> None:
        self.config = config
        self._seed_seq = seed_seq
        self._rngs: list[np.random.Generator] = []

    def resize(self, height: int) -> None:
        # Fresh children on every resize; spawn() never repeats a child
        self._rngs = [np.random.default_rng(s) for s in self._seed_seq.spawn(height)]

    def _draw(self, height: int, width: int) -> tuple[NDArray[np.float64], NDArray[np.int64]]:
        if len(self._rngs) != height:
            self.resize(height)
        n_symbols = len(self.config.symbols)
        trials = np.empty((4, height, width), dtype=np.float64)
        picks = np.empty((height, width), dtype=np.int64)
        for row, rng in enumerate(self._rngs):
            trials[:, row, :] = rng.random((4, width))
            picks[row] = rng.integers(0, n_symbols, size=width)
        return trials, picks

    def apply(self, grid: RainGrid, exclude: NDArray[np.bool_] | None = None) -> None:
        """Age every cell in place. Colours under ``exclude`` are left alone."""
        h, w = grid.shape
        if h == 0 or w == 0:
            return
        cfg = self.config
        trials, picks = self._draw(h, w)
        shift = cfg.channel_shift
        colors = grid.colors

        # Symbol re-roll looks at the colour the cell had when the tick began
        reroll = (trials[0] < cfg.symbol_change_prob) & (colors != COLOR_BLACK)
        grid.symbols[reroll] = picks[reroll]

        level = ((colors >> shift) & 0xFF).astype(np.int32)
        level[trials[1] < cfg.glow_prob] = cfg.glow_value
        level[trials[2] < cfg.dim_prob] = cfg.dim_value
        decay = (trials[3] < cfg.decay_prob) & (level > 0)
        level[decay] = (level[decay] * cfg.decay_factor).astype(np.int32)

        aged = level.astype(np.uint32) << np.uint32(shift)
        if exclude is None:
            colors[...] = aged
        else:
            keep = ~exclude
            colors[keep] = aged[keep]


# ═══════════════════════════════════════════════════════════════════════
#  Drops
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Drop:
    """A falling streak. ``length`` includes the black gap below the head."""

    column: int
    head_row: int = 0
    length: int = 1
    fall_interval: int = 1
    ticks_since_move: int = 0

    def advance(self) -> bool:
        """Count one tick; returns True when the drop moved down a row."""
        self.ticks_since_move += 1
        if self.ticks_since_move >= self.fall_interval:
            self.ticks_since_move = 0
            self.head_row += 1
            return True
        return False

    def exited(self, height: int) -> bool:
        return max(self.head_row - self.length, 0) >= height

    def span(self, height: int) -> tuple[int, int]:
        """Visible rows [start, end) in this drop's column."""
        return max(0, self.head_row - self.length), min(height, self.head_row)


class DropOverlay:
    """Spawns, advances, prunes and paints the falling streaks."""

    def __init__(self, config: RainConfig, rng: np.random.Generator) -> None:
        self.config = config
        self.rng = rng
        self.drops: list[Drop] = []
        self._palettes: dict[int, NDArray[np.uint32]] = {}

    def __len__(self) -> int:
        return len(self.drops)

    def clear(self) -> None:
        self.drops.clear()

    def capacity(self, height: int) -> int:
        return height if self.config.max_drops is None else self.config.max_drops

    def spawn(self, width: int, height: int) -> Drop | None:
        cfg = self.config
        if width <= 0 or len(self.drops) >= self.capacity(height):
            return None
        if self.rng.random() >= cfg.spawn_prob:
            return None
        drop = Drop(
            column=int(self.rng.integers(0, width)),
            head_row=0,
            length=int(self.rng.integers(cfg.min_length, cfg.max_length + 1)) + cfg.trail_gap,
            fall_interval=int(
                self.rng.integers(cfg.min_fall_interval, cfg.max_fall_interval + 1)
            ),
        )
        self.drops.append(drop)
        return drop

    def advance(self) -> None:
        for drop in self.drops:
            drop.advance()

    def prune(self, height: int) -> int:
        before = len(self.drops)
        self.drops = [d for d in self.drops if not d.exited(height)]
        return before - len(self.drops)

    def step(self, width: int, height: int) -> None:
        """Advance, prune, then maybe spawn. New drops start above the grid."""
        self.advance()
        self.prune(height)
        self.spawn(width, height)

    def palette(self, length: int) -> NDArray[np.uint32]:
        """Colour of every streak position, tail (0) to the end of the gap."""
        cached = self._palettes.get(length)
        if cached is not None:
            return cached

        cfg = self.config
        streak = max(length - cfg.trail_gap, 0)
        colors = np.zeros(length, dtype=np.uint32)  # gap stays black
        if streak >= 1:
            colors[streak - 1] = COLOR_WHITE
        if streak >= 2:
            colors[streak - 2] = cfg.channel(HEAD_TRAIL_VALUE)

        ramp_len = streak - 2
        if ramp_len > 0:
            low = cfg.channel(cfg.ramp_floor)
            tint = pack_rgb(RAMP_PEAK_TINT, RAMP_PEAK_TINT, RAMP_PEAK_TINT)
            high = tint | cfg.channel(0xFF)
            for i in range(ramp_len):
                colors[i] = interp(low, high, ramp_level(i, ramp_len, cfg.ramp_steps))

        self._palettes[length] = colors
        return colors

    def footprint(self, height: int, width: int) -> NDArray[np.bool_]:
        mask = np.zeros((height, width), dtype=np.bool_)
        for drop in self.drops:
            if not 0 <= drop.column < width:
                continue
            start, end = drop.span(height)
            if start < end:
                mask[start:end, drop.column] = True
        return mask

    def paint(self, grid: RainGrid) -> None:
        """Overwrite colours under each drop. Later drops win on overlap."""
        h, w = grid.shape
        for drop in self.drops:
            if not 0 <= drop.column < w:
                continue
            start, end = drop.span(h)
            if start >= end:
                continue
            first = start - (drop.head_row - drop.length)
            grid.colors[start:end, drop.column] = self.palette(drop.length)[first : first + end - start]


# ═══════════════════════════════════════════════════════════════════════
#  Simulation
# ═══════════════════════════════════════════════════════════════════════

class DigitalRain:
    """
    The authoritative simulation surface plus the two engines that age it.

    One tick: drops move, the background ages around them, then the drops
    paint their gradients on top.
    """

    def __init__(
        self,
        config: RainConfig,
        width: int,
        height: int,
        seed_seq: np.random.SeedSequence | None = None,
    ) -> None:
        self.config = config
        seq = seed_seq if seed_seq is not None else np.random.SeedSequence(config.seed)
        cell_seq, drop_seq = seq.spawn(2)
        self.grid = RainGrid(width, height)
        self.cells = CellEngine(config, cell_seq)
        self.overlay = DropOverlay(config, np.random.default_rng(drop_seq))
        self.cells.resize(self.grid.height)
        self.tick: int = 0
        self.needs_redraw: bool = True

    @property
    def width(self) -> int:
        return self.grid.width

    @property
    def height(self) -> int:
        return self.grid.height

    def resize(self, width: int, height: int) -> None:
        """Reallocate everything for the new size; the next frame redraws fully."""
        self.grid.resize(width, height)
        self.cells.resize(self.grid.height)
        self.overlay.clear()
        self.needs_redraw = True

    def inject(self, drop: Drop) -> Drop:
        self.overlay.drops.append(drop)
        return drop

    # ── Tick phases (step() runs them in this order) ──────────────────

    def move_drops(self) -> NDArray[np.bool_]:
        """Advance, prune and spawn drops; returns the cells they now cover."""
        w, h = self.grid.width, self.grid.height
        self.overlay.step(w, h)
        return self.overlay.footprint(h, w)

    def age_background(self, owned: NDArray[np.bool_]) -> None:
        self.cells.apply(self.grid, exclude=owned)

    def paint_drops(self) -> None:
        """Paint the streaks over the aged background. Completes the tick."""
        self.overlay.paint(self.grid)
        self.tick += 1

    def step(self) -> None:
        owned = self.move_drops()
        self.age_background(owned)
        self.paint_drops()

    def frame(self) -> Frame:
        return self.grid.snapshot(full_redraw=self.needs_redraw, tick=self.tick)

    def mark_delivered(self) -> None:
        self.needs_redraw = False


# ═══════════════════════════════════════════════════════════════════════
#  Frame differ
# ═══════════════════════════════════════════════════════════════════════

class FrameRenderer:
    """
    Turns the newest frame into the shortest escape stream that makes the
    terminal match it.

    Keeps the last frame written. Horizontal runs of changed cells share a
    single cursor move, and the colour escape is repeated only when the
    colour changes inside a run. Logical column c sits at terminal column
    2c in both glyph modes.
    """

    def __init__(self, config: RainConfig) -> None:
        self.config = config
        self._glyphs: list[str] = config.glyphs
        self._prev: Frame | None = None
        self._force_full: bool = False

    @property
    def previous(self) -> Frame | None:
        return self._prev

    def invalidate(self) -> None:
        """Treat every cell as dirty next time (e.g. after a failed write)."""
        self._force_full = True

    def dirty_mask(self, frame: Frame) -> NDArray[np.bool_]:
        prev = self._prev
        if frame.full_redraw or self._force_full or prev is None or prev.shape != frame.shape:
            return np.ones(frame.shape, dtype=np.bool_)
        return (frame.symbols != prev.symbols) | (frame.colors != prev.colors)

    def diff(self, frame: Frame) -> str:
        """Escape stream for ``frame``; becomes the new previous frame."""
        resized = self._prev is not None and self._prev.shape != frame.shape
        dirty = self.dirty_mask(frame)
        out: list[str] = [CLEAR_SCREEN] if resized else []

        glyphs = self._glyphs
        truecolor = self.config.truecolor
        rows, cols = np.nonzero(dirty)
        if len(rows):
            # Split the row-major dirty list wherever the row changes or a column is skipped
            breaks = np.flatnonzero((np.diff(rows) != 0) | (np.diff(cols) != 1)) + 1
            starts = np.concatenate(([0], breaks)).tolist()
            ends = np.concatenate((breaks, [len(rows)])).tolist()
            row_list = rows.tolist()
            col_list = cols.tolist()
            sym = frame.symbols
            col_arr = frame.colors
            for s, e in zip(starts, ends):
                r = row_list[s]
                c0 = col_list[s]
                run_syms = sym[r, c0 : c0 + (e - s)].tolist()
                run_cols = col_arr[r, c0 : c0 + (e - s)].tolist()
                out.append(cursor_to(r, 2 * c0))
                last = -1
                for symbol, color in zip(run_syms, run_cols):
                    if color != last:
                        out.append(sgr_foreground(color, truecolor))
                        last = color
                    out.append(glyphs[symbol])

        self._prev = frame
        self._force_full = False
        return "".join(out)


# ═══════════════════════════════════════════════════════════════════════
#  Stats logger
# ═══════════════════════════════════════════════════════════════════════

class StatsLogger:
    """Writes pipeline telemetry to CSV for post-hoc tuning."""

    HEADER: ClassVar[str] = (
        "tick,time_s,width,height,drops,frames_sent,frames_dropped,"
        "bytes_written,fps,event\n"
    )

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._fh is not None

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError:
            self._fh = None

    def log(
        self,
        tick: int,
        width: int,
        height: int,
        drops: int,
        frames_sent: int,
        frames_dropped: int,
        bytes_written: int,
        fps: float,
        event: str = "",
    ) -> None:
        with self._lock:
            if self._fh is None:
                return
            t = time.monotonic() - self._t0
            try:
                self._fh.write(
                    f"{tick},{t:.2f},{width},{height},{drops},{frames_sent},"
                    f"{frames_dropped},{bytes_written},{fps:g},{event}\n"
                )
                if event:
                    self._fh.flush()
            except OSError:
                pass

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                try:
                    self._fh.close()
                except OSError:
                    pass
                self._fh = None
