"""
Terminal plumbing for digirain.

Everything that touches the real terminal lives here: the escape
sequences for entering and leaving the effect, cbreak mode, non-blocking
key reads and size queries. The engine never talks to the terminal
directly; it hands strings to Terminal.write().
"""

from __future__ import annotations

import os
import select
import shutil
import sys
import threading
import time
from typing import TextIO

try:
    import termios
    import tty
    _HAS_TERMIOS = True
except ImportError:
    _HAS_TERMIOS = False

# ── Escape sequences ────────────────────────────────────────────────────
ESC = "\x1b"
HIDE_CURSOR = "\x1b[?25l"
SHOW_CURSOR = "\x1b[?25h"
RESET_ATTRS = "\x1b[0m"
CLEAR_SCREEN = "\x1b[2J"
CURSOR_HOME = "\x1b[H"
BLACK_BACKGROUND = "\x1b[48;2;0;0;0m"


def cursor_to(row: int, col: int) -> str:
    """Absolute cursor move; row and col are zero-based."""
    return f"\x1b[{row + 1};{col + 1}H"


ENTER_SEQUENCE = HIDE_CURSOR + BLACK_BACKGROUND + CLEAR_SCREEN + CURSOR_HOME
SHUTDOWN_SEQUENCE = RESET_ATTRS + CLEAR_SCREEN + CURSOR_HOME + SHOW_CURSOR

DEFAULT_SIZE: tuple[int, int] = (80, 24)


class TerminalError(RuntimeError):
    """The terminal cannot be driven (not a TTY, termios refused, ...)."""


class Terminal:
    """
    A character terminal: an output stream, an optional key source and a size.

    With ``raw=True`` (the default) open() requires a TTY on both ends and
    switches input to cbreak mode. With ``raw=False`` any text streams work,
    which is how the tests and the benchmark drive it.
    """

    def __init__(
        self,
        out: TextIO | None = None,
        inp: TextIO | None = None,
        raw: bool = True,
        size: tuple[int, int] | None = None,
    ) -> None:
        self._out: TextIO = out if out is not None else sys.stdout
        self._in: TextIO | None = inp if inp is not None else (sys.stdin if raw else None)
        self._raw = raw
        self._fixed_size = size
        self._fd: int | None = None
        self._saved_attrs: list | None = None
        self._write_lock = threading.Lock()
        self._open = False

    # ── Lifecycle ──────────────────────────────────────────────────────

    def open(self) -> None:
        if self._raw:
            if not _HAS_TERMIOS:
                raise TerminalError("termios is not available on this platform")
            if self._in is None or not self._in.isatty() or not self._out.isatty():
                raise TerminalError("stdin and stdout must both be a terminal")
            try:
                self._fd = self._in.fileno()
                self._saved_attrs = termios.tcgetattr(self._fd)
                tty.setcbreak(self._fd)
            except (termios.error, OSError, ValueError) as exc:
                raise TerminalError(f"cannot configure terminal: {exc}") from exc
        try:
            self.write(ENTER_SEQUENCE)
        except OSError as exc:
            self._restore_mode()
            raise TerminalError(f"cannot write to terminal: {exc}") from exc
        self._open = True

    def close(self) -> None:
        """Reset attributes, clear, home and show the cursor. Safe to call twice."""
        if not self._open:
            return
        self._open = False
        try:
            self.write(SHUTDOWN_SEQUENCE)
        finally:
            self._restore_mode()

    def _restore_mode(self) -> None:
        if self._fd is not None and self._saved_attrs is not None:
            try:
                termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
            except termios.error:
                pass
        self._fd = None
        self._saved_attrs = None

    def __enter__(self) -> Terminal:
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._open

    # ── I/O ────────────────────────────────────────────────────────────

    def write(self, data: str) -> int:
        """Write and flush; OSError propagates to the caller."""
        with self._write_lock:
            self._out.write(data)
            self._out.flush()
        return len(data)

    def size(self) -> tuple[int, int]:
        """(columns, rows) of the terminal."""
        if self._fixed_size is not None:
            return self._fixed_size
        return tuple(shutil.get_terminal_size(fallback=DEFAULT_SIZE))  # type: ignore[return-value]

    def set_size(self, columns: int, rows: int) -> None:
        self._fixed_size = (columns, rows)

    def read_key(self, timeout: float) -> str | None:
        """Next keypress (or escape sequence), or None after ``timeout`` seconds."""
        if self._in is None:
            time.sleep(timeout)
            return None
        if self._fd is not None:
            ready, _, _ = select.select([self._fd], [], [], timeout)
            if not ready:
                return None
            data = os.read(self._fd, 32)
            return data.decode("utf-8", errors="ignore") or None
        ch = self._in.read(1)
        if not ch:
            time.sleep(timeout)
            return None
        return ch
