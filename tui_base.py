from __future__ import annotations

import argparse
import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence, TextIO

from constants import SERVICE, UI

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

_COLORS = {
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "reverse": "\033[7m",
}
RESET = "\033[0m"

HIDE_CURSOR = "\033[?25l"
SHOW_CURSOR = "\033[?25h"
CLEAR_LINE = "\033[K"
CLEAR_BELOW = "\033[J"
CLEAR_SCREEN = "\033[2J\033[H"


class ErrorSeverity(Enum):
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


@dataclass
class AppError:
    message: str
    severity: ErrorSeverity = ErrorSeverity.ERROR
    recoverable: bool = True


class ToolkitError(Exception):
    """Base for failures that end a command with one marked error line."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class PreconditionError(ToolkitError):
    """A required tool, privilege or service unit is missing."""


class ExternalCommandError(ToolkitError):
    def __init__(self, message: str, *, command: str | None = None, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.command = command


class ServiceNotRespondingError(ToolkitError):
    """A bounded liveness poll ran out of attempts."""


def use_color(stream: TextIO | None = None) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    stream = stream or sys.stdout
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


def colorize(text: str, color: str, stream: TextIO | None = None) -> str:
    if not use_color(stream) or color not in _COLORS:
        return text
    return f"{_COLORS[color]}{text}{RESET}"


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def visible_len(text: str) -> int:
    return len(strip_ansi(text))


def fit_width(text: str, width: int) -> str:
    """Clip ``text`` to ``width`` visible columns, keeping escape codes intact."""
    if width <= 0:
        return ""
    if visible_len(text) <= width:
        return text
    out: list[str] = []
    shown = 0
    pos = 0
    saw_escape = False
    while pos < len(text) and shown < width:
        match = _ANSI_RE.match(text, pos)
        if match:
            out.append(match.group(0))
            saw_escape = True
            pos = match.end()
            continue
        out.append(text[pos])
        shown += 1
        pos += 1
    if saw_escape:
        out.append(RESET)
    return "".join(out)


def terminal_width(default: int = 80) -> int:
    return max(UI.MIN_WIDTH, shutil.get_terminal_size((default, 24)).columns)


def terminal_height(default: int = 24) -> int:
    return shutil.get_terminal_size((80, default)).lines


def _emit(icon: str, color: str, message: str, stream: TextIO) -> None:
    stream.write(f"{colorize(icon, color, stream)} {message}\n")
    stream.flush()


def print_ok(message: str, stream: TextIO | None = None) -> None:
    _emit("[✓]", "green", message, stream or sys.stdout)


def print_info(message: str, stream: TextIO | None = None) -> None:
    _emit("[i]", "blue", message, stream or sys.stdout)


def print_warn(message: str, stream: TextIO | None = None) -> None:
    _emit("[!]", "yellow", message, stream or sys.stdout)


def print_err(message: str, stream: TextIO | None = None) -> None:
    _emit("[✗]", "red", message, stream or sys.stderr)


def banner_lines(title: str, stream: TextIO | None = None) -> list[str]:
    rule = "═" * (len(title) + 4)
    return [colorize(line, "cyan", stream) for line in (f"╔{rule}╗", f"║  {title}  ║", f"╚{rule}╝")]


def print_banner(title: str, stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    stream.write("\n".join(banner_lines(title, stream)) + "\n")
    stream.flush()


def handle_error(error: AppError, stream: TextIO | None = None) -> str:
    label = error.severity.value.upper()
    message = f"[{label}] {error.message}"
    if error.severity == ErrorSeverity.WARNING:
        logger.warning(error.message)
        print_warn(error.message, stream)
    else:
        logger.error(error.message)
        print_err(error.message, stream)
    if error.severity == ErrorSeverity.FATAL and not error.recoverable:
        raise SystemExit(1)
    return message


def report_failure(exc: ToolkitError, stream: TextIO | None = None) -> int:
    """Print one marked error line plus an optional hint and return exit status 1."""
    handle_error(AppError(exc.message, ErrorSeverity.ERROR), stream)
    if exc.hint:
        print_info(exc.hint, stream or sys.stderr)
    return 1


class CliArgumentParser(argparse.ArgumentParser):
    """argparse parser whose usage errors exit with status 1."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        print_err(message)
        self.exit(1)


def configure_logging(log_file: Path | None = None, level: int = logging.INFO) -> Path | None:
    path = Path(os.environ.get("OLLAMA_TOOLKIT_LOG") or log_file or SERVICE.LOG_FILE).expanduser()
    try:
        logging.basicConfig(filename=path, level=level, format=LOG_FORMAT, force=True)
    except OSError:
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.addHandler(logging.NullHandler())
        return None
    return path


class ScreenPainter:
    """Redraws a block of lines in place.

    Every frame is written with a single ``write`` call. The cursor moves up
    by the height of the previous frame, each line is cleared to its end and
    anything left below a shorter frame is erased.
    """

    def __init__(self, stream: TextIO | None = None, *, width: Optional[int] = None, rows: Optional[int] = None) -> None:
        self.stream = stream or sys.stdout
        self._fixed_width = width
        self._fixed_rows = rows
        self.height = 0

    def _width(self) -> int:
        if self._fixed_width is not None:
            return self._fixed_width
        return terminal_width()

    def max_rows(self) -> int:
        """Lines a frame may use; the last terminal line is kept for the cursor."""
        rows = self._fixed_rows if self._fixed_rows is not None else terminal_height()
        return max(1, rows - 1)

    def paint(self, lines: Sequence[str]) -> None:
        width = self._width() - 1
        parts: list[str] = []
        if self.height:
            parts.append(f"\r\033[{self.height}A")
        for line in lines:
            parts.append(fit_width(line, width))
            parts.append(CLEAR_LINE + "\n")
        parts.append(CLEAR_BELOW)
        self.stream.write("".join(parts))
        self.stream.flush()
        self.height = len(lines)

    def erase(self) -> None:
        if self.height:
            self.stream.write(f"\r\033[{self.height}A{CLEAR_BELOW}")
            self.stream.flush()
        self.height = 0

    def clear(self) -> None:
        self.stream.write(CLEAR_SCREEN)
        self.stream.flush()
        self.height = 0

    def detach(self) -> None:
        """Keep the last frame on screen and start the next one below it."""
        self.height = 0
