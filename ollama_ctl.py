#!/usr/bin/env python3
"""Status, restart, stop, logs, diagnostics and live model watch for the Ollama service."""
from __future__ import annotations

import argparse
import io
import logging
import os
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TextIO

import psutil

from config_ollama import status_lines
from constants import UI
from ollama_api import GIB, OllamaClient, RunningModel, format_size
from openwebui_cli import compose_command
from process_utils import managed_process, run
from reconciler import ConfigSession
from service import (
    AppContext,
    RecordingController,
    ServiceController,
    SystemdController,
    endpoint_alive,
    ensure_root,
    is_exposed,
    require_service,
    restart_ollama,
    stop_ollama,
)
from tui_base import (
    HIDE_CURSOR,
    SHOW_CURSOR,
    CliArgumentParser,
    ExternalCommandError,
    PreconditionError,
    ScreenPainter,
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
from tui_utils import install_sigterm_handler

logger = logging.getLogger("ollama_ctl")

GPU_QUERY = [
    "nvidia-smi",
    "--query-gpu=name,memory.used,memory.total,utilization.gpu",
    "--format=csv,noheader,nounits",
]

COMPOSE_FILES = ("docker-compose.yaml", "docker-compose.yml", "compose.yaml")
DIAG_LOG_LINES = 20
DIAG_TIMEOUT = 30.0


def build_parser() -> argparse.ArgumentParser:
    parser = CliArgumentParser(prog="ollama_ctl.py", description="Control and inspect the local Ollama service.")
    parser.add_argument("-t", "--test", action="store_true", help="run internal self-tests and exit")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("status", help="show service, API, network, settings, GPU and OpenWebUI status")
    restart = sub.add_parser("restart", help="restart the service and verify the API responds")
    restart.add_argument("--no-gpu-reset", action="store_true", help="skip reloading the nvidia_uvm module")
    sub.add_parser("stop", help="stop the service (falls back to pkill)")
    logs = sub.add_parser("logs", help="show service logs through journalctl (default: follow)")
    logs.add_argument("journal_args", nargs=argparse.REMAINDER, help="extra arguments passed to journalctl")
    sub.add_parser("watch", help="watch loaded models, refreshed every second")
    diagnose = sub.add_parser("diagnose", help="collect a troubleshooting report for Ollama and OpenWebUI")
    diagnose.add_argument("-o", "--output", type=Path, metavar="FILE", help="save the report to FILE instead of printing it")
    return parser


def gpu_summary(ctx: AppContext) -> List[str]:
    if not ctx.has_command("nvidia-smi"):
        return []
    result = run(GPU_QUERY)
    if result.returncode != 0:
        return [colorize("nvidia-smi failed to report GPU status.", "yellow")]
    lines = []
    for row in result.stdout.strip().splitlines():
        parts = [part.strip() for part in row.split(",")]
        if len(parts) != 4:
            continue
        name, used, total, util = parts
        lines.append(f"{name}: {used} / {total} MiB, {util}% utilisation")
    return lines


def memory_summary() -> str:
    info = psutil.virtual_memory()
    used = (info.total - info.available) / GIB
    return f"RAM: {used:.1f} / {info.total / GIB:.1f} GB used ({info.percent:.0f}%)"


def status_report(
    ctx: AppContext,
    controller: ServiceController,
    *,
    alive: Callable[[str], bool] = endpoint_alive,
) -> List[str]:
    lines = [colorize("--- Ollama Status ---", "bold")]
    if not ctx.is_systemd():
        lines.append("  Service:  not a systemd system, skipping service check")
    elif not controller.unit_known():
        lines.append(f"  Service:  {ctx.unit} not found")
    else:
        state = controller.state()
        color = "green" if state == "active" else "red"
        lines.append(f"  Service:  {colorize(state, color)}")

    if alive(ctx.ollama_url):
        lines.append(f"  API:      {colorize('responding', 'green')} at {ctx.ollama_url}")
    else:
        lines.append(f"  API:      {colorize('not responding', 'red')} at {ctx.ollama_url}")

    if ctx.is_systemd() and controller.unit_known():
        if is_exposed(controller):
            lines.append(f"  Network:  {colorize('exposed to the network (0.0.0.0)', 'yellow')}")
        else:
            lines.append(f"  Network:  {colorize('localhost only', 'green')}")
        lines.append("")
        lines.extend(status_lines(ConfigSession.load(ctx)))

    lines.append("")
    lines.append(colorize("--- Hardware ---", "bold"))
    lines.append(f"  {memory_summary()}")
    lines.extend(f"  GPU: {line}" for line in gpu_summary(ctx))

    lines.append("")
    lines.append(colorize("--- OpenWebUI Status ---", "bold"))
    if alive(ctx.webui_url):
        lines.append(f"  UI:       {colorize('responding', 'green')} at {ctx.webui_url}")
    else:
        lines.append(f"  UI:       {colorize('not responding', 'red')} at {ctx.webui_url}")
    return lines


def _indent(text: str) -> List[str]:
    return [f"    {line}" for line in text.rstrip().splitlines()]


def command_block(
    ctx: AppContext,
    label: str,
    cmd: Sequence[str],
    *,
    runner: Callable[..., subprocess.CompletedProcess] = run,
    cwd: Optional[str] = None,
) -> List[str]:
    """Run ``cmd`` and return its combined output indented under ``label``."""
    if not ctx.has_command(cmd[0]):
        return [f"  {label}: Not found"]
    try:
        result = runner(list(cmd), timeout=DIAG_TIMEOUT, cwd=cwd)
    except ToolkitError as exc:
        return [f"  {label}: Failed ({exc.message})"]
    output = "\n".join(part for part in (result.stdout, result.stderr) if part and part.strip())
    if result.returncode != 0:
        return [f"  {label}: Failed (code: {result.returncode})", *_indent(output)]
    if not output.strip():
        return [f"  {label}:", "    (No output)"]
    return [f"  {label}:", *_indent(output)]


def file_block(label: str, path: Path) -> List[str]:
    if not path.is_file():
        return [f"  {label}: Not found ({path})"]
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        return [f"  {label}: Unreadable ({exc.strerror})"]
    return [f"  {label} ({path}):", *(_indent(text) or ["    (empty)"])]


def diagnostic_report(
    ctx: AppContext,
    controller: ServiceController,
    *,
    compose: Optional[Sequence[str]] = None,
    runner: Callable[..., subprocess.CompletedProcess] = run,
    alive: Callable[[str], bool] = endpoint_alive,
    now: Optional[datetime] = None,
) -> List[str]:
    """Collect system, dependency, GPU, Ollama, OpenWebUI and network details as plain text."""
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines = ["Ollama & OpenWebUI Diagnostic Report", f"Generated on: {stamp}"]

    def section(title: str) -> None:
        lines.extend(["", f"===== {title} ====="])

    section("System Information")
    lines.extend(file_block("OS Version", Path("/etc/os-release")))
    lines.extend(command_block(ctx, "Kernel Version", ["uname", "-a"], runner=runner))
    user = os.environ.get("SUDO_USER") or os.environ.get("USER")
    if user:
        lines.extend(command_block(ctx, f"User Groups for '{user}'", ["id", "-nG", user], runner=runner))
    lines.extend(command_block(ctx, "CPU Info", ["lscpu"], runner=runner))
    lines.append(f"  {memory_summary()}")
    lines.extend(command_block(ctx, "Disk Usage", ["df", "-h"], runner=runner))

    section("Dependency Versions")
    lines.extend(command_block(ctx, "Docker Version", ["docker", "--version"], runner=runner))
    if compose:
        lines.extend(command_block(ctx, "Docker Compose Version", [*compose, "version"], runner=runner))
    else:
        lines.append("  Docker Compose Version: Not found")

    section("GPU Information")
    if ctx.has_command("nvidia-smi"):
        lines.extend(f"  GPU: {line}" for line in gpu_summary(ctx))
        lines.extend(command_block(ctx, "Full NVIDIA SMI Output", ["nvidia-smi"], runner=runner))
    else:
        lines.append("  nvidia-smi not found. Skipping GPU diagnostics.")

    section("Ollama Diagnostics")
    if ctx.has_command("ollama"):
        lines.extend(command_block(ctx, "Ollama Version", ["ollama", "--version"], runner=runner))
    else:
        lines.append("  Ollama command not found.")
    api = "responding" if alive(ctx.ollama_url) else "not responding"
    lines.append(f"  API: {api} at {ctx.ollama_url}")
    service_ok = ctx.is_systemd() and controller.unit_known()
    if not ctx.is_systemd():
        lines.append("  Service Status: Not a systemd system.")
    elif not service_ok:
        lines.append(f"  Service Status: {ctx.unit} not found.")
    else:
        lines.extend(
            command_block(ctx, "Service Status", ["systemctl", "status", ctx.unit, "--no-pager"], runner=runner)
        )
        exposure = "Exposed (0.0.0.0)" if is_exposed(controller) else "Localhost Only"
        lines.append(f"  Network Exposure: {exposure}")
    overrides = sorted(ctx.override_dir.glob("*.conf")) if ctx.override_dir.is_dir() else []
    if overrides:
        lines.append("  Systemd Overrides:")
        for path in overrides:
            lines.extend(file_block(f"  - {path.name}", path))
    else:
        lines.append("  Systemd Overrides: No override files found.")
    if service_ok:
        lines.append(f"  Ollama Logs (last {DIAG_LOG_LINES} lines):")
        lines.extend(_indent(controller.journal_tail(DIAG_LOG_LINES)) or ["    (No output)"])

    section("OpenWebUI Diagnostics")
    ui = "responding" if alive(ctx.webui_url) else "not responding"
    lines.append(f"  UI: {ui} at {ctx.webui_url}")
    if not ctx.webui_dir.is_dir():
        lines.append(f"  Directory '{ctx.webui_dir}' not found. Skipping OpenWebUI diagnostics.")
    else:
        compose_file = next(
            (ctx.webui_dir / name for name in COMPOSE_FILES if (ctx.webui_dir / name).is_file()),
            ctx.webui_dir / COMPOSE_FILES[0],
        )
        lines.extend(file_block("Docker Compose Config", compose_file))
        lines.extend(file_block("OpenWebUI .env", ctx.webui_dir / ".env"))
        if compose:
            cwd = str(ctx.webui_dir)
            lines.extend(command_block(ctx, "Container Status", [*compose, "ps"], runner=runner, cwd=cwd))
            lines.extend(
                command_block(
                    ctx,
                    f"OpenWebUI Logs (last {DIAG_LOG_LINES} lines)",
                    [*compose, "logs", f"--tail={DIAG_LOG_LINES}"],
                    runner=runner,
                    cwd=cwd,
                )
            )

    section("Network Diagnostics")
    lines.extend(command_block(ctx, "Listening Ports", ["ss", "-tlpn"], runner=runner))
    if ctx.has_command("ufw"):
        lines.extend(command_block(ctx, "Firewall Status", ["ufw", "status", "verbose"], runner=runner))
    elif ctx.has_command("firewall-cmd"):
        lines.extend(command_block(ctx, "Firewall Status", ["firewall-cmd", "--list-all"], runner=runner))
    else:
        lines.append("  Firewall Status: No known firewall tool (ufw, firewall-cmd) found.")

    lines.extend(["", "Diagnostic report complete."])
    return lines


def write_report(lines: Sequence[str], path: Path) -> None:
    try:
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except OSError as exc:
        raise ExternalCommandError(f"Could not write report to {path}: {exc.strerror}") from exc
    logger.info("Diagnostic report written to %s", path)


def running_table(models: Sequence[RunningModel]) -> List[str]:
    if not models:
        return [colorize("   No models are currently loaded.", "yellow")]
    rows = [("NAME", "SIZE", "PROCESSOR", "CONTEXT")]
    for model in models:
        context = str(model.context_length) if model.context_length else "-"
        rows.append((model.name, format_size(model.size), model.processor, context))
    widths = [max(len(row[col]) for row in rows) + 4 for col in range(4)]
    lines = ["".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows]
    lines[0] = colorize(lines[0], "bold")
    return lines


def watch_frame(client: OllamaClient, now: Optional[datetime] = None) -> List[str]:
    try:
        lines = running_table(client.running_models())
    except ServiceNotRespondingError:
        lines = [colorize(f"Could not connect to Ollama API at {client.base_url}/api/ps", "red")]
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines.append(f"{colorize(stamp, 'dim')} Watching for loaded models...")
    return lines


def watch(
    client: OllamaClient,
    *,
    painter: ScreenPainter | None = None,
    interval: float = UI.WATCH_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    frames: Optional[int] = None,
) -> None:
    """Redraw the loaded-model table until interrupted (or ``frames`` redraws)."""
    painter = painter or ScreenPainter()
    count = 0
    painter.stream.write(HIDE_CURSOR)
    try:
        while frames is None or count < frames:
            painter.paint(watch_frame(client))
            count += 1
            if frames is None or count < frames:
                sleep(interval)
    finally:
        painter.stream.write(SHOW_CURSOR)
        painter.stream.flush()


def show_logs(ctx: AppContext, controller: ServiceController, journal_args: Sequence[str], stream: TextIO | None = None) -> int:
    require_service(ctx, controller)
    args = list(journal_args) or ["-f"]
    if args and args[0] == "--":
        args = args[1:] or ["-f"]
    cmd = ["journalctl", "-u", ctx.unit, *args]
    print_info(f"Showing logs for {colorize(ctx.unit, 'blue')}...", stream)
    print_info(f"Command: {colorize(' '.join(cmd), 'dim')}", stream)
    with managed_process(cmd) as proc:
        try:
            return proc.wait()
        except KeyboardInterrupt:
            return 0


def run_self_test() -> int:
    print_banner("Running self-tests for ollama_ctl.py")
    failures = 0

    def check(description: str, passed: bool) -> None:
        nonlocal failures
        if passed:
            print_ok(description)
        else:
            failures += 1
            print_err(description)

    exposed = RecordingController(environment="Environment=OLLAMA_HOST=0.0.0.0 OLLAMA_MODELS=/srv")
    check("Exposure is read from the unit environment", is_exposed(exposed))
    check("A unit without OLLAMA_HOST is localhost only", not is_exposed(RecordingController()))

    stuck = RecordingController(failing=("stop",))
    stop_ollama(stuck, stream=io.StringIO())
    check("A failed systemctl stop falls back to pkill", stuck.calls == ["stop", "kill_fallback"])

    table = running_table([RunningModel("llama3:8b", size=5 * 1024 ** 3, size_vram=1, context_length=4096)])
    check("Loaded models show processor and context", "GPU" in table[1] and "4096" in table[1])
    check("An empty model list says so", "No models" in running_table([])[0])

    if failures:
        print_err(f"{failures} self-test(s) failed.")
        return 1
    print_ok("All self-tests passed.")
    return 0


def main(
    argv: Sequence[str] | None = None,
    *,
    ctx: AppContext | None = None,
    controller: ServiceController | None = None,
    client: OllamaClient | None = None,
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
        if args.command == "status":
            print_banner("Ollama & OpenWebUI Status")
            print("\n".join(status_report(ctx, controller)))
            return 0
        if args.command == "watch":
            client = client or OllamaClient(ctx.ollama_url)
            print_banner("Watching Ollama Processes (Ctrl+C to exit)")
            watch(client)
            return 0
        if args.command == "diagnose":
            try:
                compose: Optional[List[str]] = compose_command()
            except PreconditionError:
                compose = None
            print_info("Collecting diagnostic information...", sys.stderr)
            lines = diagnostic_report(ctx, controller, compose=compose)
            if args.output:
                write_report(lines, args.output)
                print_ok(f"Diagnostic report saved to {args.output}")
            else:
                print("\n".join(lines))
            return 0
        if args.command == "logs":
            return show_logs(ctx, controller, args.journal_args)

        require_service(ctx, controller)
        if args.command == "stop":
            ensure_root("Stopping the Ollama service requires root privileges.")
            stop_ollama(controller)
            return 0
        ensure_root("Restarting the Ollama service requires root privileges.")
        print_info("Restarting Ollama service...")
        restart_ollama(ctx, controller, reset_gpu=False if args.no_gpu_reset else None)
        print_ok("Ollama service restarted successfully.")
        return 0
    except ToolkitError as exc:
        return report_failure(exc)
    except KeyboardInterrupt:
        print()
        if args.command != "watch":
            print_warn("Operation cancelled by user.")
        return 0 if args.command == "watch" else 130


if __name__ == "__main__":
    sys.exit(main())
