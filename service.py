"""Process-wide context and thin wrappers around systemd for ollama.service."""
from __future__ import annotations

import logging
import os
import shutil
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, TextIO
from urllib.error import URLError
from urllib.request import Request, urlopen

from constants import POLL, SERVICE
from process_utils import CallableTask, run, run_with_spinner
from project_env import SCRIPT_DIR, load_env
from tui_base import (
    ExternalCommandError,
    PreconditionError,
    ServiceNotRespondingError,
    print_info,
    print_ok,
    print_warn,
)
from validators import validate_port

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    override_dir: Path = SERVICE.OVERRIDE_DIR
    ollama_port: int = SERVICE.OLLAMA_PORT
    webui_port: int = SERVICE.WEBUI_PORT
    webui_dir: Path = SCRIPT_DIR / "openwebui"
    unit: str = SERVICE.UNIT
    _checks: Dict[str, bool] = field(default_factory=dict, repr=False)

    @classmethod
    def from_environment(cls, env_file: Optional[Path] = None, env: Mapping[str, str] | None = None) -> "AppContext":
        env = load_env(env_file) if env is None else env
        ollama_port = validate_port(env.get("OLLAMA_PORT"), default=SERVICE.OLLAMA_PORT, name="OLLAMA_PORT")
        webui_port = validate_port(env.get("OPEN_WEBUI_PORT"), default=SERVICE.WEBUI_PORT, name="OPEN_WEBUI_PORT")
        for result in (ollama_port, webui_port):
            if not result.is_valid:
                raise PreconditionError(result.error)
        override_dir = Path(env.get("OLLAMA_OVERRIDE_DIR") or SERVICE.OVERRIDE_DIR)
        webui_dir = Path(env.get("OPENWEBUI_DIR") or SCRIPT_DIR / "openwebui").expanduser()
        return cls(
            override_dir=override_dir,
            ollama_port=ollama_port.value,
            webui_port=webui_port.value,
            webui_dir=webui_dir,
        )

    @property
    def advanced_file(self) -> Path:
        return self.override_dir / SERVICE.ADVANCED_FILE

    @property
    def network_file(self) -> Path:
        return self.override_dir / SERVICE.NETWORK_FILE

    @property
    def legacy_file(self) -> Path:
        return self.override_dir / SERVICE.LEGACY_KV_FILE

    @property
    def ollama_url(self) -> str:
        return f"http://localhost:{self.ollama_port}"

    @property
    def webui_url(self) -> str:
        return f"http://localhost:{self.webui_port}"

    def has_command(self, name: str) -> bool:
        key = f"cmd:{name}"
        if key not in self._checks:
            self._checks[key] = shutil.which(name) is not None
        return self._checks[key]

    def is_systemd(self) -> bool:
        if "systemd" not in self._checks:
            self._checks["systemd"] = self.has_command("systemctl") and Path("/run/systemd/system").is_dir()
        return self._checks["systemd"]


class ServiceController(Protocol):
    def unit_known(self) -> bool: ...

    def is_active(self) -> bool: ...

    def state(self) -> str: ...

    def environment(self) -> str: ...

    def daemon_reload(self) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def restart(self) -> None: ...

    def kill_fallback(self) -> bool: ...

    def reload_gpu_module(self) -> None: ...

    def journal_tail(self, lines: int = 10) -> str: ...


class SystemdController:
    """Drives ``ollama.service`` through ``systemctl``."""

    def __init__(self, unit: str = SERVICE.UNIT) -> None:
        self.unit = unit
        self._known: Optional[bool] = None

    def unit_known(self) -> bool:
        if self._known is None:
            self._known = run(["systemctl", "cat", self.unit]).returncode == 0
        return self._known

    def is_active(self) -> bool:
        return run(["systemctl", "is-active", "--quiet", self.unit]).returncode == 0

    def state(self) -> str:
        return run(["systemctl", "is-active", self.unit]).stdout.strip() or "unknown"

    def environment(self) -> str:
        return run(["systemctl", "show", "--no-pager", "--property=Environment", self.unit]).stdout

    def daemon_reload(self) -> None:
        run(["systemctl", "daemon-reload"], check=True)

    def start(self) -> None:
        run(["systemctl", "start", self.unit], check=True)

    def stop(self) -> None:
        run(["systemctl", "stop", self.unit], check=True)

    def restart(self) -> None:
        run(["systemctl", "restart", self.unit], check=True)

    def kill_fallback(self) -> bool:
        if run(["pkill", "-f", "ollama"]).returncode != 0:
            return False
        time.sleep(2)
        return True

    def reload_gpu_module(self) -> None:
        run(["rmmod", "nvidia_uvm"])
        run(["modprobe", "nvidia_uvm"], check=True)

    def journal_tail(self, lines: int = 10) -> str:
        return run(["journalctl", "-u", self.unit, "-n", str(lines), "--no-pager"]).stdout


class RecordingController:
    """In-memory controller that records calls; used by self-tests.

    Names in ``failing`` make the matching method raise
    ``ExternalCommandError``.
    """

    def __init__(
        self,
        *,
        active: bool = True,
        known: bool = True,
        environment: str = "",
        failing: Sequence[str] = (),
        journal: str = "",
    ) -> None:
        self.calls: List[str] = []
        self.journal = journal
        self.active = active
        self.known = known
        self.environment_text = environment
        self.failing = set(failing)

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failing:
            raise ExternalCommandError(f"{name} failed", command=name)

    def unit_known(self) -> bool:
        return self.known

    def is_active(self) -> bool:
        return self.active

    def state(self) -> str:
        return "active" if self.active else "inactive"

    def environment(self) -> str:
        return self.environment_text

    def daemon_reload(self) -> None:
        self._record("daemon_reload")

    def start(self) -> None:
        self._record("start")
        self.active = True

    def stop(self) -> None:
        self._record("stop")
        self.active = False

    def restart(self) -> None:
        self._record("restart")
        self.active = True

    def kill_fallback(self) -> bool:
        self.calls.append("kill_fallback")
        if "kill_fallback" in self.failing:
            return False
        self.active = False
        return True

    def reload_gpu_module(self) -> None:
        self._record("reload_gpu_module")

    def journal_tail(self, lines: int = 10) -> str:
        return "\n".join(self.journal.splitlines()[-lines:])


def ensure_root(reason: str, argv: Sequence[str] | None = None, *, stream: TextIO | None = None) -> None:
    """Re-run the current command under sudo unless already root."""
    if os.geteuid() == 0:
        return
    if shutil.which("sudo") is None:
        raise PreconditionError("Root privileges are required.", hint="Re-run this command as root.")
    print_info(reason, stream)
    argv = list(sys.argv if argv is None else argv)
    logger.info("Re-executing with sudo: %s", " ".join(argv))
    sys.stdout.flush()
    os.execvp("sudo", ["sudo", sys.executable, *argv])


def check_ollama_installed(ctx: AppContext) -> None:
    if not ctx.has_command("ollama"):
        raise PreconditionError("Ollama is not installed.", hint="Install it from https://ollama.com/download first.")


def require_service(ctx: AppContext, controller: ServiceController) -> None:
    if not ctx.is_systemd():
        raise PreconditionError("This system does not use systemd.", hint="Ollama settings are managed via systemd overrides.")
    if not controller.unit_known():
        raise PreconditionError(f"{ctx.unit} was not found.", hint="Install Ollama so the systemd unit exists.")


def is_exposed(controller: ServiceController) -> bool:
    return f"OLLAMA_HOST={SERVICE.EXPOSED_HOST}" in controller.environment()


def endpoint_alive(url: str, *, timeout: float = POLL.CONNECT_TIMEOUT, opener: Callable = urlopen) -> bool:
    try:
        with opener(Request(url, method="HEAD"), timeout=timeout):
            return True
    except (URLError, OSError) as exc:
        logger.debug("%s not reachable: %s", url, exc)
        return False


def poll_url(
    url: str,
    *,
    tries: int = POLL.OLLAMA_TRIES,
    delay: float = POLL.SLEEP,
    sleep: Callable[[float], None] = time.sleep,
    opener: Callable = urlopen,
    stop: Optional[threading.Event] = None,
) -> bool:
    """Request ``url`` up to ``tries`` times; a set ``stop`` event ends the loop early."""
    for attempt in range(tries):
        if stop is not None and stop.is_set():
            logger.info("Stopped polling %s after %d attempt(s)", url, attempt)
            return False
        if endpoint_alive(url, opener=opener):
            logger.info("%s responded after %d attempt(s)", url, attempt + 1)
            return True
        if attempt < tries - 1:
            sleep(delay)
    logger.warning("%s did not respond after %d attempt(s)", url, tries)
    return False


def wait_for_service(url: str, name: str, *, tries: int = POLL.OLLAMA_TRIES, stream: TextIO | None = None) -> None:
    description = f"Waiting for {name} to respond at {url}"
    stop = threading.Event()
    task = CallableTask(lambda: poll_url(url, tries=tries, sleep=stop.wait, stop=stop), description, stop=stop)
    result = run_with_spinner(description, task, stream=stream)
    if not result.ok:
        raise ServiceNotRespondingError(f"{name} is not responding at {url}")


def run_step(description: str, func: Callable[[], object], *, stream: TextIO | None = None) -> None:
    """Run ``func`` behind a spinner; a failure surfaces as ``ExternalCommandError``."""
    result = run_with_spinner(description, CallableTask(func, description), stream=stream)
    if not result.ok:
        detail = result.output.strip()
        message = f"{description.rstrip('.')} failed"
        raise ExternalCommandError(f"{message}: {detail}" if detail else message)


def _journal_hint(controller: ServiceController) -> Optional[str]:
    tail = controller.journal_tail(10).strip()
    if not tail:
        return None
    return "Recent service log:\n" + "\n".join(f"    {line}" for line in tail.splitlines())


def verify_ollama(ctx: AppContext, controller: ServiceController, *, stream: TextIO | None = None) -> None:
    print_info("Verifying Ollama service status...", stream)
    if not ctx.is_systemd():
        print_info("Not a systemd system. Skipping systemd service check.", stream)
    elif not controller.unit_known():
        print_info("Ollama service not found. Skipping systemd service check.", stream)
    elif not controller.is_active():
        raise ExternalCommandError(
            "Ollama service failed to activate according to systemd.",
            hint=_journal_hint(controller),
        )
    else:
        print_ok("Systemd reports service is active.", stream)
    wait_for_service(ctx.ollama_url, "Ollama", tries=POLL.OLLAMA_TRIES, stream=stream)
    print_ok(f"Ollama API is responsive at {ctx.ollama_url}", stream)


def stop_ollama(controller: ServiceController, *, stream: TextIO | None = None) -> None:
    if not controller.is_active():
        print_info("Ollama service is already stopped.", stream)
        return
    try:
        run_step("Stopping Ollama service...", controller.stop, stream=stream)
    except ExternalCommandError as exc:
        print_warn(f"'systemctl stop' failed ({exc.message}). Trying pkill.", stream)
        if not controller.kill_fallback():
            raise ExternalCommandError("Failed to stop Ollama service with both systemctl and pkill.") from exc
        print_ok("Stopped via pkill.", stream)
        return
    print_ok("Ollama service has been stopped.", stream)


def restart_ollama(
    ctx: AppContext,
    controller: ServiceController,
    *,
    reset_gpu: Optional[bool] = None,
    stream: TextIO | None = None,
) -> None:
    """Stop, optionally reload the NVIDIA UVM module, start and verify."""
    if reset_gpu is None:
        reset_gpu = ctx.has_command("nvidia-smi")
    stop_ollama(controller, stream=stream)
    if reset_gpu:
        try:
            run_step("Reloading 'nvidia_uvm' module...", controller.reload_gpu_module, stream=stream)
        except ExternalCommandError as exc:
            raise ExternalCommandError(
                "Failed to reset NVIDIA UVM.", hint="Check your NVIDIA driver installation."
            ) from exc
    try:
        run_step("Starting Ollama service...", controller.start, stream=stream)
    except ExternalCommandError as exc:
        raise ExternalCommandError("Failed to start Ollama via systemctl.", hint=_journal_hint(controller)) from exc
    verify_ollama(ctx, controller, stream=stream)
