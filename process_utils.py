from __future__ import annotations

import atexit
import logging
import subprocess
import sys
import tempfile
import threading
import time
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence, TextIO, Union

from constants import UI
from tui_base import CLEAR_LINE, HIDE_CURSOR, SHOW_CURSOR, ExternalCommandError, PreconditionError, colorize

logger = logging.getLogger(__name__)

_active_processes: List[subprocess.Popen] = []


def register_process(proc: subprocess.Popen) -> subprocess.Popen:
    if proc not in _active_processes:
        _active_processes.append(proc)
    return proc


def unregister_process(proc: subprocess.Popen) -> None:
    try:
        _active_processes.remove(proc)
    except ValueError:
        pass


def terminate_process(proc: subprocess.Popen, *, timeout: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def cleanup_processes() -> None:
    for proc in list(_active_processes):
        terminate_process(proc)
    _active_processes.clear()


@contextmanager
def managed_process(cmd: List[str], **kwargs):
    logger.info("Starting: %s", " ".join(cmd))
    proc = subprocess.Popen(cmd, **kwargs)
    register_process(proc)
    try:
        yield proc
    finally:
        terminate_process(proc)
        unregister_process(proc)


def run(
    cmd: Sequence[str],
    *,
    check: bool = False,
    capture: bool = True,
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run ``cmd`` to completion, translating launch and exit failures."""
    logger.info("Running: %s", " ".join(map(str, cmd)))
    try:
        result = subprocess.run(
            list(cmd),
            capture_output=capture,
            text=True,
            timeout=timeout,
            cwd=cwd,
            check=False,
        )
    except FileNotFoundError as exc:
        raise PreconditionError(f"Command not found: {cmd[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ExternalCommandError(f"Command timed out after {timeout}s", command=" ".join(cmd)) from exc
    if check and result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip() if capture else ""
        message = f"'{' '.join(cmd)}' exited with status {result.returncode}"
        if detail:
            message += f": {detail.splitlines()[-1]}"
        raise ExternalCommandError(message, command=" ".join(cmd))
    return result


@dataclass
class TaskResult:
    description: str
    returncode: int
    output: str = ""
    cancelled: bool = False
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.cancelled


class BackgroundTask(Protocol):
    description: str

    def done(self) -> bool: ...

    def cancel(self) -> None: ...

    def result(self) -> TaskResult: ...


class ProcessTask:
    """A child process whose combined stdout/stderr is captured to a temp file."""

    def __init__(self, cmd: Sequence[str], description: str = "", *, cwd: Optional[str] = None) -> None:
        self.cmd = list(cmd)
        self.description = description or " ".join(self.cmd)
        self._output = tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace")
        self._cancelled = False
        logger.info("Starting: %s", " ".join(self.cmd))
        try:
            self.proc = subprocess.Popen(
                self.cmd,
                stdin=subprocess.DEVNULL,
                stdout=self._output,
                stderr=subprocess.STDOUT,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            self._output.close()
            raise PreconditionError(f"Command not found: {self.cmd[0]}") from exc
        register_process(self.proc)

    def done(self) -> bool:
        return self.proc.poll() is not None

    def cancel(self) -> None:
        self._cancelled = True
        terminate_process(self.proc)
        unregister_process(self.proc)

    def result(self) -> TaskResult:
        returncode = self.proc.wait()
        unregister_process(self.proc)
        self._output.seek(0)
        output = self._output.read()
        self._output.close()
        logger.info("Finished (%s): %s", returncode, " ".join(self.cmd))
        return TaskResult(self.description, returncode, output, cancelled=self._cancelled)


class CallableTask:
    """Runs an in-process callable on a daemon worker thread.

    The callable may return a ``TaskResult``, a bool (success flag) or any
    other value, which is kept on ``TaskResult.value``. Exceptions become a
    failed result whose output is the exception text.

    ``cancel()`` sets ``stop``; callables that loop should check it between
    steps. The worker is a daemon thread, so an abandoned call never holds
    the interpreter open at exit.
    """

    def __init__(self, func: Callable[[], Any], description: str, *, stop: Optional[threading.Event] = None) -> None:
        self.description = description
        self.stop = stop or threading.Event()
        self._future: Future = Future()
        self._cancelled = False
        self._thread = threading.Thread(target=self._work, args=(func,), name=f"task: {description}", daemon=True)
        self._thread.start()

    def _work(self, func: Callable[[], Any]) -> None:
        if not self._future.set_running_or_notify_cancel():
            return
        try:
            value = func()
        except BaseException as exc:  # handed to result()
            self._future.set_exception(exc)
        else:
            self._future.set_result(value)

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> None:
        self._cancelled = True
        self.stop.set()
        self._future.cancel()

    def result(self) -> TaskResult:
        try:
            value = self._future.result()
        except Exception as exc:
            logger.warning("%s failed: %s", self.description, exc)
            return TaskResult(self.description, 1, str(exc), value=exc)
        if isinstance(value, TaskResult):
            return value
        if isinstance(value, bool):
            return TaskResult(self.description, 0 if value else 1, value=value)
        return TaskResult(self.description, 0, value=value)


def run_with_spinner(
    description: str,
    task: Union[BackgroundTask, Sequence[str]],
    *,
    stream: TextIO | None = None,
    interval: float = UI.SPINNER_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> TaskResult:
    """Animate a spinner until ``task`` finishes, then leave a ✓/✗ line."""
    if not hasattr(task, "done"):
        task = ProcessTask(task, description)
    stream = stream or sys.stdout
    frames = UI.SPINNER_FRAMES
    frame = 0
    stream.write(HIDE_CURSOR)
    try:
        while not task.done():
            glyph = colorize(frames[frame % len(frames)], "cyan", stream)
            stream.write(f"\r{glyph} {description}{CLEAR_LINE}")
            stream.flush()
            frame += 1
            sleep(interval)
        result = task.result()
    except (KeyboardInterrupt, SystemExit):
        task.cancel()
        stream.write(f"\r{CLEAR_LINE}")
        raise
    finally:
        stream.write(SHOW_CURSOR)
        stream.flush()

    result.description = description
    if result.ok:
        icon = colorize("[✓]", "green", stream)
    else:
        icon = colorize("[✗]", "red", stream)
    stream.write(f"\r{icon} {description}{CLEAR_LINE}\n")
    stream.flush()
    return result


atexit.register(cleanup_processes)
