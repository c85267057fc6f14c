#!/usr/bin/env python3
"""Start, stop, update and inspect the OpenWebUI docker-compose frontend."""
from __future__ import annotations

import argparse
import logging
import re
import shutil
import sys
from pathlib import Path
from typing import Callable, List, Sequence, TextIO

from constants import POLL
from process_utils import ProcessTask, TaskResult, managed_process, run, run_with_spinner
from service import (
    AppContext,
    RecordingController,
    ServiceController,
    SystemdController,
    is_exposed,
    poll_url,
    wait_for_service,
)
from tui_base import (
    CliArgumentParser,
    ExternalCommandError,
    PreconditionError,
    ServiceNotRespondingError,
    ToolkitError,
    colorize,
    configure_logging,
    print_banner,
    print_err,
    print_info,
    print_ok,
    print_warn,
    report_failure,
)
from tui_utils import Terminal, install_sigterm_handler

logger = logging.getLogger("openwebui_cli")

NEW_IMAGE_RE = re.compile(r"Downloaded newer image|Download complete", re.IGNORECASE)


def build_parser() -> argparse.ArgumentParser:
    parser = CliArgumentParser(prog="openwebui_cli.py", description="Manage the OpenWebUI docker-compose stack.")
    parser.add_argument("-t", "--test", action="store_true", help="run internal self-tests and exit")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("start", help="start the containers and wait for the UI to respond")
    sub.add_parser("stop", help="stop and remove the containers")
    update = sub.add_parser("update", help="pull the latest images and offer a restart")
    update.add_argument("-y", "--yes", action="store_true", help="restart without asking when new images arrive")
    sub.add_parser("status", help="show the compose container status")
    logs = sub.add_parser("logs", help="show container logs (default: follow)")
    logs.add_argument("compose_args", nargs=argparse.REMAINDER, help="extra arguments passed to 'compose logs'")
    return parser


def compose_command(exit_code: Callable[[Sequence[str]], int] | None = None, which: Callable[[str], bool] | None = None) -> List[str]:
    """Return ``docker compose`` when the v2 plugin works, else ``docker-compose``."""
    which = which or (lambda name: shutil.which(name) is not None)
    exit_code = exit_code or (lambda cmd: run(cmd).returncode)
    if which("docker") and exit_code(["docker", "compose", "version"]) == 0:
        return ["docker", "compose"]
    if which("docker-compose"):
        return ["docker-compose"]
    raise PreconditionError(
        "Docker Compose is not available.",
        hint="Install Docker with the compose plugin (or docker-compose) first.",
    )


def has_new_images(pull_output: str) -> bool:
    return bool(NEW_IMAGE_RE.search(pull_output))


class ComposeProject:
    """``docker compose`` invocations rooted at the OpenWebUI project directory."""

    def __init__(self, directory: Path, command: Sequence[str]) -> None:
        if not directory.is_dir():
            raise PreconditionError(
                f"OpenWebUI directory not found: {directory}",
                hint="Set OPENWEBUI_DIR to the folder holding docker-compose.yml.",
            )
        self.directory = directory
        self.command = list(command)

    def argv(self, *args: str) -> List[str]:
        return [*self.command, *args]

    def spin(self, description: str, *args: str) -> TaskResult:
        return run_with_spinner(description, ProcessTask(self.argv(*args), description, cwd=str(self.directory)))

    def tail_logs(self, lines: int = 20, stream: TextIO | None = None) -> None:
        stream = stream or sys.stdout
        result = run(self.argv("logs", f"--tail={lines}"), cwd=str(self.directory))
        for line in (result.stdout or result.stderr or "").splitlines():
            stream.write(f"    {line}\n")
        stream.flush()


def dump_output(output: str, stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    if not output.strip():
        return
    stream.write(colorize("--- Start of Docker Compose Output ---", "dim", stream) + "\n")
    for line in output.rstrip().splitlines():
        stream.write(f"    {line}\n")
    stream.write(colorize("--- End of Docker Compose Output ---", "dim", stream) + "\n")
    stream.flush()


def check_ollama_exposure(ctx: AppContext, controller: ServiceController) -> None:
    print_info("Checking Ollama network configuration for Docker access...")
    if not ctx.is_systemd():
        print_info("Could not auto-detect network config (not a systemd system).")
    elif not controller.unit_known():
        print_info("Could not auto-detect network config (Ollama service not found).")
    elif not is_exposed(controller):
        print_warn("Ollama is only listening on localhost.")
        print_info("OpenWebUI (in Docker) may not be able to connect to it.")
        print_info("If you have issues, run './config_ollama.py --expose' to expose Ollama.")
    else:
        print_ok("Ollama is exposed to the network.")


def start(ctx: AppContext, controller: ServiceController, project: ComposeProject) -> None:
    print_info("Checking if Ollama service is running...")
    try:
        wait_for_service(ctx.ollama_url, "Ollama", tries=POLL.OLLAMA_TRIES)
    except ServiceNotRespondingError as exc:
        raise ServiceNotRespondingError(
            f"Ollama service is not responding at {ctx.ollama_url}.",
            hint="Please ensure Ollama is running first, e.g. with './ollama_ctl.py restart'.",
        ) from exc
    check_ollama_exposure(ctx, controller)

    result = project.spin("Starting OpenWebUI containers", "up", "-d")
    if not result.ok:
        dump_output(result.output)
        raise ExternalCommandError("Failed to start OpenWebUI containers.", command=" ".join(project.argv("up", "-d")))

    try:
        wait_for_service(ctx.webui_url, "OpenWebUI UI", tries=POLL.WEBUI_TRIES)
    except ServiceNotRespondingError:
        print_err(f"OpenWebUI containers are running, but the UI is not responding at {ctx.webui_url}.")
        print_info("Showing last 20 lines of container logs:")
        project.tail_logs(20)
        raise
    print_ok("OpenWebUI started successfully!")
    print_info(f"Access it at: {colorize(ctx.webui_url, 'blue')}")


def stop(project: ComposeProject) -> None:
    result = project.spin("Stopping OpenWebUI containers", "down")
    if not result.ok:
        dump_output(result.output)
        raise ExternalCommandError("Failed to stop OpenWebUI containers.", command=" ".join(project.argv("down")))
    print_ok("OpenWebUI has been stopped.")


def handle_pull_result(
    pull_output: str,
    *,
    confirm: Callable[[str], bool],
    restart: Callable[[], None],
) -> bool:
    """Offer a restart when the pull fetched new layers; returns whether it restarted."""
    if not has_new_images(pull_output):
        print_ok("All OpenWebUI images are already up-to-date.")
        return False
    print_ok("New OpenWebUI images have been successfully downloaded.")
    if confirm("Would you like to restart the service now to apply the update?"):
        print_info("Restarting OpenWebUI...")
        restart()
        return True
    print_info("Update complete. You can restart later with: './openwebui_cli.py start'")
    return False


def update(project: ComposeProject, *, confirm: Callable[[str], bool], restart: Callable[[], None]) -> bool:
    result = project.spin("Pulling latest OpenWebUI images", "pull")
    if not result.ok:
        dump_output(result.output)
        raise ExternalCommandError("Failed to pull OpenWebUI images.", command=" ".join(project.argv("pull")))
    return handle_pull_result(result.output, confirm=confirm, restart=restart)


def passthrough(project: ComposeProject, *args: str) -> int:
    with managed_process(project.argv(*args), cwd=str(project.directory)) as proc:
        try:
            return proc.wait()
        except KeyboardInterrupt:
            return 0


def run_self_test() -> int:
    print_banner("Running self-tests for openwebui_cli.py")
    failures = 0

    def check(description: str, passed: bool) -> None:
        nonlocal failures
        if passed:
            print_ok(description)
        else:
            failures += 1
            print_err(description)

    restarted: List[bool] = []
    handle_pull_result(
        "Status: Downloaded newer image for open-webui:latest",
        confirm=lambda question: True,
        restart=lambda: restarted.append(True),
    )
    check("Restarts when new images arrive and the user agrees", restarted == [True])

    restarted.clear()
    handle_pull_result("Status: Download complete", confirm=lambda question: False, restart=lambda: restarted.append(True))
    check("Does not restart when the user declines", restarted == [])

    handle_pull_result("Image is up to date for open-webui:latest", confirm=lambda question: True, restart=lambda: restarted.append(True))
    check("Does not restart when nothing was downloaded", restarted == [])

    check(
        "Prefers the compose plugin",
        compose_command(exit_code=lambda cmd: 0, which=lambda name: True) == ["docker", "compose"],
    )
    check(
        "Falls back to docker-compose",
        compose_command(exit_code=lambda cmd: 1, which=lambda name: True) == ["docker-compose"],
    )

    localhost = RecordingController(environment="Environment=OLLAMA_MODELS=/srv")
    check("A localhost-only unit is reported as not exposed", not is_exposed(localhost))
    check("An unreachable URL fails the poll", not poll_url("http://localhost:1", tries=1, sleep=lambda s: None, opener=_refuse))

    if failures:
        print_err(f"{failures} self-test(s) failed.")
        return 1
    print_ok("All self-tests passed.")
    return 0


def _refuse(request, timeout=None):
    raise OSError("connection refused")


def main(
    argv: Sequence[str] | None = None,
    *,
    ctx: AppContext | None = None,
    controller: ServiceController | None = None,
    project: ComposeProject | None = None,
    terminal: Terminal | None = None,
) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    install_sigterm_handler()
    if args.test:
        return run_self_test()
    if not args.command:
        parser.print_help()
        return 0
    try:
        ctx = ctx or AppContext.from_environment()
        controller = controller or SystemdController(ctx.unit)
        project = project or ComposeProject(ctx.webui_dir, compose_command())
        if args.command == "start":
            print_banner("OpenWebUI Starter")
            start(ctx, controller, project)
        elif args.command == "stop":
            stop(project)
        elif args.command == "update":
            print_banner("OpenWebUI Updater")
            if args.yes:
                confirm: Callable[[str], bool] = lambda question: True  # noqa: E731
            else:
                terminal = terminal or Terminal()
                confirm = lambda question: terminal.confirm(question, default=True)  # noqa: E731
            update(project, confirm=confirm, restart=lambda: start(ctx, controller, project))
        elif args.command == "status":
            return passthrough(project, "ps")
        elif args.command == "logs":
            extra = [arg for arg in args.compose_args if arg != "--"] or ["-f"]
            return passthrough(project, "logs", *extra)
        return 0
    except ToolkitError as exc:
        return report_failure(exc)
    except KeyboardInterrupt:
        print()
        print_warn("Operation cancelled by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
