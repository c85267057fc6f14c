from __future__ import annotations

import os
import select
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Tuple, Union

from constants import UI


class Key(Enum):
    CHAR = "char"
    CONTROL = "control"
    ENTER = "enter"
    ESCAPE = "escape"
    BACKSPACE = "backspace"
    TAB = "tab"
    DELETE = "delete"
    INSERT = "insert"
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    HOME = "home"
    END = "end"
    PAGE_UP = "page_up"
    PAGE_DOWN = "page_down"
    FUNCTION = "function"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class KeyEvent:
    kind: Key
    raw: bytes = b""
    char: str = ""
    number: Optional[int] = None

    def matches(self, binding: Tuple[Union[Key, str], ...]) -> bool:
        for entry in binding:
            if isinstance(entry, Key):
                if entry is self.kind:
                    return True
            elif self.kind is Key.CHAR and self.char == entry:
                return True
        return False


@dataclass(frozen=True)
class Keybindings:
    QUIT = (Key.ESCAPE, "q", "Q")
    CONFIRM = (Key.ENTER,)
    CANCEL = (Key.ESCAPE,)
    TOGGLE = (" ", "h", "l", Key.LEFT, Key.RIGHT)
    SELECT_ALL = ("a", "A")
    REFRESH = ("r", "R")
    FILTER = ("/", "f", "F")
    CLEAR_FILTER = ("c", "C")
    PULL = ("p", "P")
    DELETE = ("d", "D", Key.DELETE)
    UPDATE = ("u", "U")

    NAV_UP = (Key.UP, "k")
    NAV_DOWN = (Key.DOWN, "j")

    PAGE_UP = (Key.PAGE_UP,)
    PAGE_DOWN = (Key.PAGE_DOWN,)
    HOME = (Key.HOME, "g")
    END = (Key.END, "G")


KEYS = Keybindings()


class ByteSource(Protocol):
    def read(self, timeout: Optional[float]) -> Optional[bytes]:
        """Return one byte, or None when ``timeout`` elapses first."""


class FdByteSource:
    """Reads single bytes from a raw-mode file descriptor."""

    def __init__(self, fd: int) -> None:
        self.fd = fd

    def read(self, timeout: Optional[float]) -> Optional[bytes]:
        ready, _, _ = select.select([self.fd], [], [], timeout)
        if not ready:
            return None
        data = os.read(self.fd, 1)
        if not data:
            raise EOFError("terminal input closed")
        return data


_CSI_FINAL = {
    "A": Key.UP,
    "B": Key.DOWN,
    "C": Key.RIGHT,
    "D": Key.LEFT,
    "H": Key.HOME,
    "F": Key.END,
}

_SS3_FUNCTION = {"P": 1, "Q": 2, "R": 3, "S": 4}

_TILDE_KEYS = {
    1: Key.HOME,
    7: Key.HOME,
    2: Key.INSERT,
    3: Key.DELETE,
    4: Key.END,
    8: Key.END,
    5: Key.PAGE_UP,
    6: Key.PAGE_DOWN,
}

_TILDE_FUNCTION = {
    11: 1, 12: 2, 13: 3, 14: 4, 15: 5,
    17: 6, 18: 7, 19: 8, 20: 9, 21: 10,
    23: 11, 24: 12,
}

_MAX_SEQUENCE = 16


class KeyDecoder:
    """Turns raw terminal bytes into ``KeyEvent`` values.

    A lone ESC is reported as ``Key.ESCAPE`` once ``escape_timeout`` passes
    without a follow-up byte, so Esc never blocks waiting for a sequence.
    Anything after ESC that is not ``[`` or ``O`` is pushed back and read as
    a separate key.
    """

    def __init__(self, source: ByteSource, *, escape_timeout: float = UI.ESC_TIMEOUT) -> None:
        self.source = source
        self.escape_timeout = escape_timeout
        self._pushback: list[bytes] = []

    def _next(self, timeout: Optional[float]) -> Optional[bytes]:
        if self._pushback:
            return self._pushback.pop()
        return self.source.read(timeout)

    def read_key(self, timeout: Optional[float] = None) -> Optional[KeyEvent]:
        first = self._next(timeout)
        if first is None:
            return None
        if first == b"\x1b":
            return self._read_escape()
        if first in (b"\r", b"\n"):
            return KeyEvent(Key.ENTER, first)
        if first in (b"\x7f", b"\x08"):
            return KeyEvent(Key.BACKSPACE, first)
        if first == b"\t":
            return KeyEvent(Key.TAB, first)
        if first == b"\x03":
            raise KeyboardInterrupt
        code = first[0]
        if code >= 0xC0:
            return self._read_utf8(first)
        if code < 0x20:
            return KeyEvent(Key.CONTROL, first, chr(code))
        if code >= 0x80:
            return KeyEvent(Key.UNKNOWN, first)
        return KeyEvent(Key.CHAR, first, first.decode("ascii"))

    def _read_utf8(self, first: bytes) -> KeyEvent:
        lead = first[0]
        if lead >= 0xF0:
            length = 4
        elif lead >= 0xE0:
            length = 3
        else:
            length = 2
        raw = bytearray(first)
        while len(raw) < length:
            nxt = self._next(self.escape_timeout)
            if nxt is None:
                break
            raw += nxt
        text = bytes(raw).decode("utf-8", errors="replace")
        return KeyEvent(Key.CHAR, bytes(raw), text)

    def _read_escape(self) -> KeyEvent:
        intro = self._next(self.escape_timeout)
        if intro is None:
            return KeyEvent(Key.ESCAPE, b"\x1b")
        if intro not in (b"[", b"O"):
            self._pushback.append(intro)
            return KeyEvent(Key.ESCAPE, b"\x1b")

        body = bytearray()
        while True:
            nxt = self._next(self.escape_timeout)
            if nxt is None:
                return KeyEvent(Key.UNKNOWN, b"\x1b" + intro + bytes(body))
            body += nxt
            ch = chr(nxt[0])
            if ch == "~" or ch.isalpha():
                break
            if len(body) >= _MAX_SEQUENCE:
                return KeyEvent(Key.UNKNOWN, b"\x1b" + intro + bytes(body))

        raw = b"\x1b" + intro + bytes(body)
        return _lookup_sequence(intro, body.decode("ascii", errors="replace"), raw)


def _lookup_sequence(intro: bytes, body: str, raw: bytes) -> KeyEvent:
    final = body[-1]
    if intro == b"O":
        if final in _SS3_FUNCTION:
            return KeyEvent(Key.FUNCTION, raw, number=_SS3_FUNCTION[final])
        kind = _CSI_FINAL.get(final)
        return KeyEvent(kind or Key.UNKNOWN, raw)

    if final == "~":
        params = body[:-1].split(";")[0]
        if not params.isdigit():
            return KeyEvent(Key.UNKNOWN, raw)
        number = int(params)
        if number in _TILDE_KEYS:
            return KeyEvent(_TILDE_KEYS[number], raw)
        if number in _TILDE_FUNCTION:
            return KeyEvent(Key.FUNCTION, raw, number=_TILDE_FUNCTION[number])
        return KeyEvent(Key.UNKNOWN, raw)

    # modifier parameters (e.g. "1;5A" for Ctrl+Up) are ignored
    kind = _CSI_FINAL.get(final)
    return KeyEvent(kind or Key.UNKNOWN, raw)
