#!/usr/bin/env python3
"""Raw-terminal helpers shared by the interactive tools in this repo."""
from __future__ import annotations

import os
import signal
import sys
import termios
import tty
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, TextIO

from keybindings import FdByteSource, Key, KeyDecoder, KeyEvent
from tui_base import CLEAR_LINE, HIDE_CURSOR, SHOW_CURSOR, PreconditionError, colorize


@dataclass
class LineEditResult:
    value: str
    accepted: bool


def _raise_system_exit(signum, frame) -> None:  # noqa: ARG001
    raise SystemExit(128 + signum)


def install_sigterm_handler() -> None:
    """Turn SIGTERM into SystemExit so terminal restore blocks still run."""
    signal.signal(signal.SIGTERM, _raise_system_exit)


class Terminal:
    """Keyboard and screen access for one interactive session."""

    def __init__(self, *, input_fd: Optional[int] = None, output: TextIO | None = None) -> None:
        self.fd = sys.stdin.fileno() if input_fd is None else input_fd
        self.output = output or sys.stdout
        self.decoder = KeyDecoder(FdByteSource(self.fd))
        self._raw_depth = 0
        self._saved_attrs = None
        self._cursor_hidden = 0

    def is_interactive(self) -> bool:
        return os.isatty(self.fd)

    @contextmanager
    def raw_mode(self) -> Iterator[None]:
        if self._raw_depth or not os.isatty(self.fd):
            self._raw_depth += 1
            try:
                yield
            finally:
                self._raw_depth -= 1
            return
        self._saved_attrs = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self._raw_depth = 1
        try:
            yield
        finally:
            self._raw_depth = 0
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved_attrs)

    @contextmanager
    def hidden_cursor(self) -> Iterator[None]:
        self.write(HIDE_CURSOR)
        self._cursor_hidden += 1
        try:
            yield
        finally:
            self._cursor_hidden -= 1
            self.write(SHOW_CURSOR)

    @contextmanager
    def suspended(self) -> Iterator[None]:
        """Hand the terminal back in its original mode with a visible cursor.

        Used around child programs and prompts run from inside a menu loop;
        the menu's raw mode and hidden cursor come back afterwards.
        """
        depth, hidden = self._raw_depth, self._cursor_hidden
        restore_raw = depth and self._saved_attrs is not None
        if restore_raw:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved_attrs)
        if hidden:
            self.write(SHOW_CURSOR)
        self._raw_depth, self._cursor_hidden = 0, 0
        try:
            yield
        finally:
            self._raw_depth, self._cursor_hidden = depth, hidden
            if restore_raw:
                tty.setcbreak(self.fd)
            if hidden:
                self.write(HIDE_CURSOR)

    def write(self, text: str) -> None:
        self.output.write(text)
        self.output.flush()

    def read_key(self, timeout: Optional[float] = None) -> Optional[KeyEvent]:
        with self.raw_mode():
            try:
                return self.decoder.read_key(timeout)
            except EOFError as exc:
                raise PreconditionError(
                    "Terminal input closed; no answer can be read.",
                    hint="Run the command from an interactive terminal or pass the options that skip the prompt.",
                ) from exc

    def pause(self, message: str = "Press any key to continue...") -> None:
        self.write(colorize(message, "dim", self.output))
        self.read_key()
        self.write("\n")

    def confirm(self, question: str, *, default: bool) -> bool:
        """Ask a y/n question. Enter takes ``default``; Esc answers no."""
        hint = "[Y/n]" if default else "[y/N]"
        self.write(f"{colorize('[?]', 'magenta', self.output)} {question} {hint} ")
        while True:
            key = self.read_key()
            if key is None:
                continue
            if key.kind is Key.ENTER:
                answer = default
            elif key.kind is Key.ESCAPE:
                answer = False
            elif key.kind is Key.CHAR and key.char in "yY":
                answer = True
            elif key.kind is Key.CHAR and key.char in "nN":
                answer = False
            else:
                continue
            self.write(("y" if answer else "n") + "\n")
            return answer

    def read_line(self, prompt: str, *, initial: str = "", allow_empty: bool = True) -> LineEditResult:
        """Edit a single line of text.

        - Enter: accept
        - Esc: cancel
        - Ctrl+U: clear
        """
        buffer = list(initial)
        cursor = len(buffer)

        def redraw() -> None:
            text = "".join(buffer)
            back = len(buffer) - cursor
            move = f"\033[{back}D" if back else ""
            self.write(f"\r{prompt}{text}{CLEAR_LINE}{move}")

        with self.raw_mode():
            redraw()
            while True:
                key = self.read_key()
                if key is None:
                    continue
                if key.kind is Key.ENTER:
                    value = "".join(buffer).strip()
                    if value or allow_empty:
                        self.write("\n")
                        return LineEditResult(value=value, accepted=True)
                    continue
                if key.kind is Key.ESCAPE:
                    self.write("\n")
                    return LineEditResult(value=initial, accepted=False)
                if key.kind is Key.BACKSPACE:
                    if cursor > 0:
                        buffer.pop(cursor - 1)
                        cursor -= 1
                elif key.kind is Key.DELETE:
                    if cursor < len(buffer):
                        buffer.pop(cursor)
                elif key.kind is Key.LEFT:
                    cursor = max(0, cursor - 1)
                elif key.kind is Key.RIGHT:
                    cursor = min(len(buffer), cursor + 1)
                elif key.kind is Key.HOME:
                    cursor = 0
                elif key.kind is Key.END:
                    cursor = len(buffer)
                elif key.kind is Key.CONTROL and key.char == "\x15":  # Ctrl+U
                    buffer.clear()
                    cursor = 0
                elif key.kind is Key.CHAR and key.char.isprintable():
                    buffer.insert(cursor, key.char)
                    cursor += 1
                else:
                    continue
                redraw()
