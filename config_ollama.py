#!/usr/bin/env python3
"""Interactive and flag-driven configuration of the Ollama systemd service."""
from __future__ import annotations

import argparse
import logging
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from keybindings import Key
from reconciler import (
    CONTEXT_LENGTH,
    KV_CACHE,
    MODELS_DIR,
    NUM_PARALLEL,
    SETTINGS_BY_KEY,
    ConfigSession,
    EditResult,
    NetworkMode,
    SettingSpec,
    commit,
    create_models_dir,
    finalize,
    migrate_legacy_config,
)
from service import AppContext, RecordingController, ServiceController, SystemdController, ensure_root, require_service
from tui_base import (
    CliArgumentParser,
    ScreenPainter,
    ToolkitError,
    banner_lines,
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
from validators import validate_absolute_path, validate_non_negative_int

logger = logging.getLogger("config_ollama")

ROOT_REASON = "Root privileges are required to modify systemd configuration."

KV_COLORS = {"q8_0": "green", "f16": "magenta", "q4_0": "blue"}

MENU_ORDER = (KV_CACHE, CONTEXT_LENGTH, NUM_PARALLEL, MODELS_DIR)


@dataclass
class ConfigRequest:
    """Parsed command line; ``interactive`` when no action flag was given."""

    status: bool = False
    network: Optional[NetworkMode] = None
    kv_cache: Optional[str] = None
    context_length: Optional[str] = None
    num_parallel: Optional[str] = None
    models_dir: Optional[str] = None
    reset_advanced: bool = False
    restart: bool = False

    @property
    def interactive(self) -> bool:
        return not (
            self.status
            or self.network is not None
            or self.kv_cache is not None
            or self.context_length is not None
            or self.num_parallel is not None
            or self.models_dir is not None
            or self.reset_advanced
        )


def build_parser() -> argparse.ArgumentParser:
    parser = CliArgumentParser(
        prog="config_ollama.py",
        description=(
            "Manage Ollama network and performance settings.\n"
            "If run without flags, it enters an interactive configuration menu."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  # Run the interactive configuration menu\n"
            "  config_ollama.py\n"
            "  # Expose Ollama, set context length, and restart the service\n"
            "  sudo config_ollama.py --expose --context-length 8192 --restart\n"
            "  # Reset all advanced settings to their defaults\n"
            "  sudo config_ollama.py --reset-advanced"
        ),
    )
    parser.add_argument("-s", "--status", action="store_true", help="view the current configuration and exit")
    parser.add_argument("-t", "--test", action="store_true", help="run internal self-tests and exit")

    network = parser.add_argument_group("network configuration").add_mutually_exclusive_group()
    network.add_argument("-e", "--expose", action="store_true", help="expose Ollama to the network (listens on 0.0.0.0)")
    network.add_argument("-r", "--restrict", action="store_true", help="restrict Ollama to localhost (listens on 127.0.0.1)")

    advanced = parser.add_argument_group("advanced configuration")
    advanced.add_argument("--kv-cache", metavar="TYPE", help="set KV_CACHE_TYPE (e.g. q8_0, f16, q4_0); enables flash attention")
    advanced.add_argument("--context-length", metavar="N", help="set OLLAMA_CONTEXT_LENGTH (e.g. 4096)")
    advanced.add_argument("--num-parallel", metavar="N", help="set OLLAMA_NUM_PARALLEL (e.g. 2)")
    advanced.add_argument("--models-dir", metavar="PATH", help="set OLLAMA_MODELS directory (absolute path)")
    advanced.add_argument("--reset-advanced", action="store_true", help="remove all advanced settings and use Ollama defaults")
    advanced.add_argument("--restart", action="store_true", help="restart the Ollama service after applying changes")
    parser.add_argument("--env-file", type=Path, help=argparse.SUPPRESS)
    return parser


def request_from_args(args: argparse.Namespace) -> Tuple[Optional[ConfigRequest], Optional[str]]:
    """Validate flag values up front so a bad flag never leads to a partial write."""
    request = ConfigRequest(status=args.status, reset_advanced=args.reset_advanced, restart=args.restart)
    if args.expose:
        request.network = NetworkMode.NETWORK
    elif args.restrict:
        request.network = NetworkMode.LOCALHOST

    if args.kv_cache is not None:
        if not args.kv_cache.strip():
            return None, "--kv-cache requires a value (e.g., q8_0, f16)."
        request.kv_cache = args.kv_cache.strip()
    for flag, attr in (("--context-length", "context_length"), ("--num-parallel", "num_parallel")):
        raw = getattr(args, attr)
        if raw is None:
            continue
        checked = validate_non_negative_int(raw, name=flag)
        if not checked.is_valid:
            return None, f"{flag} requires a numeric value."
        setattr(request, attr, checked.value)
    if args.models_dir is not None:
        checked = validate_absolute_path(args.models_dir, name="--models-dir")
        if not checked.is_valid:
            return None, f"Path for --models-dir must be absolute: {args.models_dir}"
        request.models_dir = str(checked.value)
    return request, None


def format_value(key: str, value: Optional[str]) -> str:
    if value is None:
        return colorize(SETTINGS_BY_KEY[key].default_label, "dim")
    if key == KV_CACHE:
        return colorize(value, KV_COLORS.get(value, "bold"))
    if key == MODELS_DIR:
        return colorize(value, "cyan")
    return colorize(value, "blue")


def format_network(mode: NetworkMode, *, long: bool = False) -> str:
    if mode is NetworkMode.NETWORK:
        return colorize("EXPOSED to network (0.0.0.0)" if long else "EXPOSED", "yellow")
    return colorize("RESTRICTED to localhost (127.0.0.1)" if long else "RESTRICTED", "blue")


def describe_change(current: str, pending: str, changed: bool) -> str:
    return f"{current} → {pending}" if changed else pending


def status_lines(session: ConfigSession) -> List[str]:
    state = session.current
    lines = [colorize("Current Configuration:", "bold")]
    lines.append(f"  {'Network Exposure':<20} : {format_network(state.network, long=True)}")
    for key in (KV_CACHE, MODELS_DIR, CONTEXT_LENGTH, NUM_PARALLEL):
        lines.append(f"  {SETTINGS_BY_KEY[key].title:<20} : {format_value(key, state.get(key))}")
    return lines


def render_main_menu(session: ConfigSession, message: str = "") -> List[str]:
    lines = banner_lines("Ollama Interactive Configuration")
    lines.append(colorize("Choose an option to configure:", "bold"))
    network = describe_change(
        format_network(session.current.network),
        format_network(session.pending.network),
        session.current.network is not session.pending.network,
    )
    lines.append(f" 1) {'Network Exposure':<25} - {network}")
    for number, key in enumerate(MENU_ORDER, start=2):
        current, pending = session.current_value(key), session.value(key)
        shown = describe_change(format_value(key, current), format_value(key, pending), current != pending)
        lines.append(f" {number}) {SETTINGS_BY_KEY[key].title:<25} - {shown}")
    lines += [
        "",
        " r) Reset all advanced settings to default",
        f" c) {colorize('Cancel/Discard', 'yellow')} all pending changes",
        f" s) {colorize('Save changes and Quit', 'green')}",
        f" q) Quit without saving (or press {colorize('ESC', 'yellow')})",
        "",
        message,
        f" {colorize('[?]', 'magenta')} Your choice: ",
    ]
    return lines


def _read_choice(terminal: Terminal) -> Optional[str]:
    """Return a single lower-cased character, "esc", or None for other keys."""
    key = terminal.read_key()
    if key is None:
        return None
    if key.kind is Key.ESCAPE:
        return "esc"
    if key.kind is Key.CHAR:
        return key.char.lower()
    return None


def edit_network(session: ConfigSession, terminal: Terminal, painter: ScreenPainter) -> Tuple[EditResult, str]:
    painter.clear()
    painter.paint(
        banner_lines("Configure Network Exposure")
        + [
            f"Current Status: {format_network(session.current.network, long=True)}",
            "",
            colorize("Choose an option:", "bold"),
            f"  1, e) {colorize('(E)xpose to Network', 'yellow')} (allow connections from other devices/containers)",
            f"  2, r) {colorize('(R)estrict to Localhost', 'blue')} (default, more secure)",
            f"     b) Back to main menu (or press {colorize('ESC', 'yellow')})",
            "",
            f" {colorize('[?]', 'magenta')} Your choice: ",
        ]
    )
    choice = _read_choice(terminal)
    if choice in ("1", "e"):
        result = session.expose()
    elif choice in ("2", "r"):
        result = session.restrict()
    elif choice in ("b", "esc"):
        return EditResult.CANCELLED, ""
    else:
        return EditResult.CANCELLED, "Invalid choice."
    if result is EditResult.UNCHANGED:
        return result, "No change needed."
    return result, f"Network exposure staged: {format_network(session.pending.network)}"


def _setting_menu(spec: SettingSpec, session: ConfigSession) -> List[str]:
    lines = banner_lines(f"Configure {spec.title}")
    lines.append(f"[i] Current {spec.key} is set to: {format_value(spec.key, session.current_value(spec.key))}")
    if spec.description:
        lines.append("")
        lines.extend(spec.description.splitlines())
    lines.append("")
    lines.append(colorize("Choose an option:", "bold"))
    for number, preset in enumerate(spec.presets, start=1):
        note = f" ({preset.note})" if preset.note else ""
        lines.append(f" {number}) {format_value(spec.key, preset.value)}{note}")
    if spec.custom_prompt:
        kind = "path" if spec.key == MODELS_DIR else "value"
        lines.append(f" c) Enter a {colorize('(c)ustom', 'cyan')} {kind}")
    lines.append(f" r) {colorize('(R)emove', 'yellow')} setting (use Ollama default)")
    lines.append(f" b) Back to main menu (or press {colorize('ESC', 'yellow')})")
    lines.append("")
    lines.append(f" {colorize('[?]', 'magenta')} Your choice: ")
    return lines


def _offer_models_dir(path: Path, terminal: Terminal) -> Optional[str]:
    if path.is_dir():
        return None
    if not terminal.confirm(f"Directory '{path}' does not exist. Create it now?", default=True):
        return None
    try:
        create_models_dir(path)
    except ToolkitError as exc:
        return exc.message
    return None


def edit_setting(spec: SettingSpec, session: ConfigSession, terminal: Terminal, painter: ScreenPainter) -> Tuple[EditResult, str]:
    painter.clear()
    painter.paint(_setting_menu(spec, session))
    choice = _read_choice(terminal)
    value: Optional[str]
    if choice is not None and choice.isdigit() and 1 <= int(choice) <= len(spec.presets):
        value = spec.presets[int(choice) - 1].value
    elif choice == "c" and spec.custom_prompt:
        entered = terminal.read_line(f"{colorize('[?]', 'magenta')} {spec.custom_prompt}")
        if not entered.accepted:
            return EditResult.CANCELLED, ""
        if not entered.value:
            return EditResult.CANCELLED, "No value entered. No changes made."
        value = entered.value
    elif choice == "r":
        value = None
    elif choice in ("b", "esc"):
        return EditResult.CANCELLED, ""
    else:
        return EditResult.CANCELLED, "Invalid choice."

    if spec.key == KV_CACHE:
        result = session.stage_kv_cache(value)
    elif spec.key == MODELS_DIR:
        staged = session.stage_models_dir(value)
        if not staged.is_valid:
            return EditResult.CANCELLED, staged.error
        result = staged.value
        if value is not None:
            problem = _offer_models_dir(Path(session.value(MODELS_DIR)), terminal)
            if problem:
                return result, problem
    else:
        staged = session.stage_numeric(spec.key, value)
        if not staged.is_valid:
            return EditResult.CANCELLED, staged.error
        result = staged.value

    if result is EditResult.UNCHANGED:
        return result, "No change."
    return result, f"{spec.title} staged: {format_value(spec.key, session.value(spec.key))}"


def run_interactive(
    session: ConfigSession,
    ctx: AppContext,
    controller: ServiceController,
    terminal: Terminal,
    *,
    painter: ScreenPainter | None = None,
) -> int:
    painter = painter or ScreenPainter(terminal.output)
    editors: dict[str, Callable[[], Tuple[EditResult, str]]] = {
        "1": lambda: edit_network(session, terminal, painter),
    }
    for number, key in enumerate(MENU_ORDER, start=2):
        editors[str(number)] = lambda spec=SETTINGS_BY_KEY[key]: edit_setting(spec, session, terminal, painter)

    message = ""
    painter.clear()
    with terminal.raw_mode():
        while True:
            painter.paint(render_main_menu(session, message))
            message = ""
            choice = _read_choice(terminal)
            if choice in editors:
                _, message = editors[choice]()
                painter.clear()
            elif choice == "r":
                session.reset_advanced()
                message = "All advanced settings staged for removal."
            elif choice == "c":
                session.discard()
                message = "Discarded pending changes."
            elif choice == "s":
                painter.detach()
                break
            elif choice in ("q", "esc"):
                if not session.has_changes():
                    painter.detach()
                    print_info("Quitting without saving changes.")
                    return 0
                painter.erase()
                if terminal.confirm("You have unsaved changes. Quit without saving?", default=False):
                    print_info("Quitting without saving changes.")
                    return 0
                painter.clear()
            elif choice is not None:
                message = colorize("Invalid choice. Please try again.", "yellow")

    result = commit(session, ctx)
    if not result.ok:
        for error in result.errors:
            report_failure(error)
        return 1
    finalize(result, ctx, controller, interactive=True, terminal=terminal)
    return 0


def apply_request(request: ConfigRequest, ctx: AppContext, controller: ServiceController) -> int:
    logger.info("Applying flags: %s", request)
    session = ConfigSession.load(ctx)
    if request.network is not None and session.stage_network(request.network) is EditResult.UNCHANGED:
        print_info(f"No change needed. Ollama is already {format_network(request.network, long=True)}.")
    if request.reset_advanced:
        session.reset_advanced()
    if request.kv_cache is not None:
        session.stage_kv_cache(request.kv_cache)
    if request.context_length is not None:
        session.stage_numeric(CONTEXT_LENGTH, request.context_length)
    if request.num_parallel is not None:
        session.stage_numeric(NUM_PARALLEL, request.num_parallel)
    if request.models_dir is not None:
        session.stage_models_dir(request.models_dir)

    result = commit(session, ctx, lambda: ensure_root(ROOT_REASON))
    if not result.ok:
        for error in result.errors:
            report_failure(error)
        if result.changed:
            print_warn("Some settings were written. Run 'sudo systemctl daemon-reload' before restarting Ollama.")
        return 1
    if result.changed:
        print_ok("Configuration updated.")
    finalize(result, ctx, controller, interactive=False, auto_restart=request.restart)
    return 0


def maybe_migrate(ctx: AppContext, guard: Callable[[], None]) -> None:
    if ctx.legacy_file.exists() and not ctx.advanced_file.exists():
        guard()
        print_info("Migrating old configuration file...")
        migrate_legacy_config(ctx)
        print_ok(f"Migrated to {ctx.advanced_file}")


def run_self_test() -> int:
    """Exercise staging and commit against a scratch override directory."""
    print_banner("Running self-tests for config_ollama.py")
    failures = 0

    def check(description: str, passed: bool) -> None:
        nonlocal failures
        if passed:
            print_ok(description)
        else:
            failures += 1
            print_err(description)

    with tempfile.TemporaryDirectory() as tmp:
        ctx = AppContext(override_dir=Path(tmp))
        session = ConfigSession.load(ctx)
        check("Commit without changes writes nothing", not commit(session, ctx).changed and not any(Path(tmp).iterdir()))

        session.stage_numeric(CONTEXT_LENGTH, "8192")
        session.stage_numeric(NUM_PARALLEL, "2")
        commit(session, ctx)
        expected = '[Service]\nEnvironment="OLLAMA_CONTEXT_LENGTH=8192"\nEnvironment="OLLAMA_NUM_PARALLEL=2"\n'
        check("Advanced settings file holds exactly the staged values", ctx.advanced_file.read_text() == expected)

        session = ConfigSession.load(ctx)
        session.reset_advanced()
        commit(session, ctx)
        check("Removing every advanced setting deletes the file", not ctx.advanced_file.exists())

        session = ConfigSession.load(ctx)
        session.stage_kv_cache("q8_0")
        check("KV cache type enables flash attention", session.value("OLLAMA_FLASH_ATTENTION") == "1")

        session = ConfigSession.load(ctx)
        first = session.expose()
        second = session.expose()
        check("Exposing twice is idempotent", first is EditResult.CHANGED and second is EditResult.UNCHANGED)

        check("Relative models directory is rejected", not session.stage_models_dir("relative/path").is_valid)

        controller = RecordingController()
        finalize(commit(ConfigSession.load(ctx), ctx), ctx, controller, interactive=False)
        check("No reload without changes", controller.calls == [])

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
    terminal: Terminal | None = None,
) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    install_sigterm_handler()
    if args.test:
        return run_self_test()

    request, error = request_from_args(args)
    if error:
        print_err(error)
        return 1

    try:
        ctx = ctx or AppContext.from_environment(args.env_file)
        if request.status:
            for line in status_lines(ConfigSession.load(ctx)):
                print(line)
            return 0

        controller = controller or SystemdController(ctx.unit)
        require_service(ctx, controller)
        guard = lambda: ensure_root(ROOT_REASON)  # noqa: E731
        if request.interactive:
            terminal = terminal or Terminal()
            if not terminal.is_interactive():
                print_err("The interactive menu needs a terminal. Use flags instead (see --help).")
                return 1
            guard()
            maybe_migrate(ctx, guard)
            return run_interactive(ConfigSession.load(ctx), ctx, controller, terminal)
        maybe_migrate(ctx, guard)
        return apply_request(request, ctx, controller)
    except ToolkitError as exc:
        return report_failure(exc)
    except KeyboardInterrupt:
        print()
        print_warn("Operation cancelled by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
