#!/usr/bin/env python3
"""List, pull, update, delete and run local Ollama models."""
from __future__ import annotations

import argparse
import logging
import re
import sys
from typing import Callable, List, Optional, Sequence, Set, TextIO

from constants import UI
from keybindings import KEYS
from ollama_api import ModelRecord, OllamaClient, format_size, parse_models, size_color
from process_utils import CallableTask, run, run_with_spinner
from selection_menu import MenuItem, MenuState, handle_menu_key, render_menu, run_list_menu
from service import AppContext, check_ollama_installed
from tui_base import (
    CliArgumentParser,
    ExternalCommandError,
    PreconditionError,
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
from validators import ValidationResult

logger = logging.getLogger("manage_models")

_INDEX_RE = re.compile(r"[1-9][0-9]*")


def build_parser() -> argparse.ArgumentParser:
    parser = CliArgumentParser(
        prog="manage_models.py",
        description="Manage local Ollama models. Without options an interactive model manager is shown.",
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("-l", "--list", action="store_true", help="list all locally installed models")
    actions.add_argument("-p", "--pull", metavar="MODEL", nargs="?", const="", help="pull a new model from the registry")
    actions.add_argument(
        "-u", "--update", metavar="MODEL", nargs="?", const="", help="update a local model (choose from a list if omitted)"
    )
    actions.add_argument("-U", "--update-all", action="store_true", help="update all existing local models")
    actions.add_argument(
        "-d",
        "--delete",
        metavar="MODEL",
        nargs="?",
        const="",
        help="delete a local model by name or list number (choose from a list if omitted)",
    )
    actions.add_argument("--run", metavar="MODEL", help="start an interactive 'ollama run' session")
    actions.add_argument("-t", "--test", action="store_true", help="run internal self-tests and exit")
    parser.add_argument("-y", "--yes", action="store_true", help="do not ask for confirmation before deleting")
    return parser


def table_header() -> str:
    return f"    {'MODEL NAME':<{UI.NAME_COLUMN}} {'SIZE':>{UI.SIZE_COLUMN}}   MODIFIED"


def model_label(model: ModelRecord) -> str:
    name = model.name if len(model.name) <= UI.NAME_COLUMN else model.name[: UI.NAME_COLUMN - 1] + "…"
    size = colorize(format_size(model.size).rjust(UI.SIZE_COLUMN), size_color(model.size))
    return f"{name:<{UI.NAME_COLUMN}} {size}   {model.modified}"


def print_model_table(models: Sequence[ModelRecord], stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    if not models:
        print_warn("No local models found. Use '--pull <model>' to download one.", stream)
        return
    stream.write(colorize(table_header(), "bold") + "\n")
    for number, model in enumerate(models, start=1):
        stream.write(f"{number:>3} {model_label(model)}\n")
    stream.flush()


def resolve_model(token: str, models: Sequence[ModelRecord]) -> ValidationResult[str]:
    """A 1-based list number picks from the name-sorted list; anything else is a model name."""
    token = (token or "").strip()
    if not token:
        return ValidationResult(None, "No model name or number entered.")
    if _INDEX_RE.fullmatch(token):
        index = int(token)
        if index > len(models):
            return ValidationResult(None, f"Invalid model number: {token}")
        return ValidationResult(models[index - 1].name, None)
    return ValidationResult(token, None)


def fetch_models(client: OllamaClient, description: str = "Fetching model list...") -> List[ModelRecord]:
    result = run_with_spinner(description, CallableTask(client.list_models, description))
    if isinstance(result.value, ToolkitError):
        raise result.value
    if not result.ok:
        raise ExternalCommandError(f"Failed to get model list from Ollama API: {result.output}")
    return result.value


def pull_model(name: str, ctx: AppContext, client: OllamaClient) -> bool:
    print_info(f"Pulling model: {colorize(name, 'blue')}")
    if ctx.has_command("ollama"):
        # 'ollama pull' draws its own progress bar
        ok = run(["ollama", "pull", name], capture=False).returncode == 0
    else:
        description = f"Pulling {name} through the API..."
        ok = run_with_spinner(description, CallableTask(lambda: client.pull_model(name), description)).ok
    if ok:
        print_ok(f"Successfully pulled model: {colorize(name, 'blue')}")
    else:
        print_err(f"Failed to pull model: {name}")
        print_info("Please check the model name and your network connection.")
    return ok


def update_models(names: Sequence[str], ctx: AppContext, client: OllamaClient) -> bool:
    if not names:
        print_warn("No models specified for update.")
        return True
    print_info(f"The following models will be updated: {colorize(' '.join(names), 'blue')}")
    failed = [name for name in names if not pull_model(name, ctx, client)]
    if failed:
        print_warn(f"Finished updating, but {len(failed)} model(s) failed to update: {' '.join(failed)}")
        return False
    print_ok("Finished updating models successfully.")
    return True


def delete_models(
    names: Sequence[str],
    client: OllamaClient,
    *,
    confirm: Optional[Callable[[str], bool]] = None,
) -> bool:
    if not names:
        print_warn("No models selected for deletion.")
        return True
    label = ", ".join(names)
    if confirm is not None and not confirm(f"Are you sure you want to delete: {colorize(label, 'red')}?"):
        print_info("Deletion cancelled.")
        return False
    ok = True
    for name in names:
        description = f"Deleting model {name}"
        result = run_with_spinner(description, CallableTask(lambda n=name: client.delete_model(n), description))
        if not result.ok:
            ok = False
            print_err(f"Could not delete '{name}': {result.output}")
    return ok


def choose_models(terminal: Terminal, models: Sequence[ModelRecord], verb: str) -> List[str]:
    """Let the user tick models from a list; an empty list means nothing was chosen."""
    if not models:
        print_warn("No local models found.")
        return []
    if not terminal.is_interactive():
        raise PreconditionError(f"Name a model to {verb} when not running in a terminal.")
    items = [MenuItem(model.name, model_label(model)) for model in models]
    chosen = run_list_menu(terminal, f"Select models to {verb}", items, multi=True, with_all=True)
    return chosen or []


def run_model(name: str, ctx: AppContext) -> bool:
    check_ollama_installed(ctx)
    print_info(f"Starting 'ollama run {name}' (type /bye to exit)")
    return run(["ollama", "run", name], capture=False).returncode == 0


class ModelManager:
    """Interactive model list with a select-all row and single-key actions."""

    FOOTER = (
        "space select  a all  Enter run  p pull  u update  d delete  "
        "f filter  c clear  r refresh  q/Esc quit"
    )

    def __init__(self, ctx: AppContext, client: OllamaClient, terminal: Terminal, *, painter: ScreenPainter | None = None) -> None:
        self.ctx = ctx
        self.client = client
        self.terminal = terminal
        self.painter = painter or ScreenPainter(terminal.output)
        self.models: List[ModelRecord] = []
        self.filter = ""
        self.state = MenuState([], multi=True, with_all=True)
        self.selected: Set[str] = set()
        self.message = ""

    def visible_models(self) -> List[ModelRecord]:
        needle = self.filter.lower()
        return [model for model in self.models if needle in model.name.lower()]

    def rebuild(self, keep_selection: bool = True) -> None:
        """Rebuild the menu rows; selections hidden by the filter are remembered."""
        if keep_selection:
            shown = {item.name for item in self.state.items}
            self.selected = (self.selected - shown) | set(self.state.selected_names())
            self.selected &= {model.name for model in self.models}
        else:
            self.selected = set()
        items = [MenuItem(model.name, model_label(model)) for model in self.visible_models()]
        self.state = MenuState(
            items,
            multi=True,
            with_all=True,
            cursor=self.state.cursor,
            checked=[item.name in self.selected for item in items],
            scroll=self.state.scroll,
        )

    def refresh(self) -> None:
        self.models = fetch_models(self.client, "Refreshing model list...")
        self.rebuild()

    def targets(self) -> List[str]:
        chosen = self.state.selected_names()
        if chosen:
            return chosen
        current = self.state.current_item()
        return [current.name] if current else []

    def frame(self) -> List[str]:
        title = f"  {table_header()}"
        banner = banner_lines("Ollama Model Manager")
        status = [colorize(f"Filter: {self.filter}", "yellow")] if self.filter else []
        status.append(self.message)
        chrome = len(banner) + len(status) + 2  # menu title and footer
        viewport = max(UI.MIN_LIST_ROWS, self.painter.max_rows() - chrome)
        return banner + render_menu(self.state, title, footer=self.FOOTER, viewport=viewport) + status

    def _outside_menu(self, action: Callable[[], object]) -> None:
        self.painter.erase()
        with self.terminal.suspended():
            try:
                action()
            except ToolkitError as exc:
                report_failure(exc)
            self.terminal.pause()
        self.painter.clear()

    def run(self) -> int:
        self.models = fetch_models(self.client)
        self.rebuild(keep_selection=False)
        self.painter.clear()
        with self.terminal.hidden_cursor():
            while True:
                self.painter.paint(self.frame())
                self.message = ""
                key = self.terminal.read_key()
                if key is None:
                    continue
                if key.matches(KEYS.PULL):
                    self._outside_menu(self._pull_prompt)
                    self.refresh()
                elif key.matches(KEYS.UPDATE):
                    names = self.targets()
                    self._outside_menu(lambda: update_models(names, self.ctx, self.client))
                    self.refresh()
                elif key.matches(KEYS.DELETE):
                    names = self.targets()
                    confirm = lambda question: self.terminal.confirm(question, default=False)  # noqa: E731
                    self._outside_menu(lambda: delete_models(names, self.client, confirm=confirm))
                    self.state.set_all(False)
                    self.refresh()
                elif key.matches(KEYS.FILTER):
                    self.painter.erase()
                    with self.terminal.suspended():
                        entered = self.terminal.read_line("Filter models: ", initial=self.filter)
                    if entered.accepted:
                        self.filter = entered.value
                        self.rebuild()
                    self.painter.clear()
                elif key.matches(KEYS.CLEAR_FILTER):
                    self.filter = ""
                    self.rebuild()
                elif key.matches(KEYS.REFRESH):
                    self.painter.erase()
                    self.refresh()
                    self.painter.clear()
                else:
                    outcome = handle_menu_key(self.state, key)
                    if outcome == "cancel":
                        self.painter.erase()
                        return 0
                    if outcome == "confirm":
                        current = self.state.current_item()
                        if current is None:
                            self.message = colorize("Move the cursor to a model to run it.", "yellow")
                            continue
                        self._outside_menu(lambda: run_model(current.name, self.ctx))

    def _pull_prompt(self) -> None:
        entered = self.terminal.read_line("Enter the name of the model to pull (e.g., llama3): ")
        if not entered.accepted or not entered.value:
            print_warn("No model name entered.")
            return
        pull_model(entered.value, self.ctx, self.client)


def run_self_test() -> int:
    print_banner("Running self-tests for manage_models.py")
    failures = 0

    def check(description: str, passed: bool) -> None:
        nonlocal failures
        if passed:
            print_ok(description)
        else:
            failures += 1
            print_err(description)

    models = parse_models(
        {
            "models": [
                {"name": "mistral:7b", "size": 4 * 1024 ** 3, "modified_at": "2024-05-01T10:00:00Z"},
                {"name": "llama3:8b", "size": 5 * 1024 ** 3, "modified_at": "2024-06-01T10:00:00Z"},
            ]
        }
    )
    check("Models are sorted by name", [m.name for m in models] == ["llama3:8b", "mistral:7b"])
    check("Number 2 resolves to the second model", resolve_model("2", models).value == "mistral:7b")
    check("Out-of-range number is rejected", not resolve_model("3", models).is_valid)
    check("A name is taken as-is", resolve_model("phi3", models).value == "phi3")
    check("Modified date shows the day only", models[0].modified == "2024-06-01")

    state = MenuState([MenuItem(m.name) for m in models], with_all=True)
    state.toggle(0)
    all_on = state.all_checked and all(state.checked)
    state.toggle(1)
    check("Select-all follows item toggles", all_on and not state.all_checked)

    if failures:
        print_err(f"{failures} self-test(s) failed.")
        return 1
    print_ok("All self-tests passed.")
    return 0


def main(
    argv: Sequence[str] | None = None,
    *,
    ctx: AppContext | None = None,
    client: OllamaClient | None = None,
    terminal: Terminal | None = None,
) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    install_sigterm_handler()
    if args.test:
        return run_self_test()
    try:
        ctx = ctx or AppContext.from_environment()
        client = client or OllamaClient(ctx.ollama_url)
        if args.list:
            print_model_table(fetch_models(client))
            return 0
        if args.pull is not None:
            name = args.pull
            if not name:
                terminal = terminal or Terminal()
                name = terminal.read_line("Enter the name of the model to pull (e.g., llama3): ").value
            if not name:
                print_err("No model name entered. Aborting.")
                return 1
            return 0 if pull_model(name, ctx, client) else 1
        if args.update is not None:
            names = [args.update]
            if not args.update:
                terminal = terminal or Terminal()
                names = choose_models(terminal, fetch_models(client), "update")
            if not names:
                print_info("No models selected.")
                return 1
            return 0 if update_models(names, ctx, client) else 1
        if args.update_all:
            return 0 if update_models([m.name for m in fetch_models(client)], ctx, client) else 1
        if args.delete is not None:
            models = fetch_models(client)
            if args.delete:
                resolved = resolve_model(args.delete, models)
                if not resolved.is_valid:
                    print_err(resolved.error)
                    return 1
                names = [resolved.value]
            else:
                terminal = terminal or Terminal()
                names = choose_models(terminal, models, "delete")
                if not names:
                    print_info("No models selected.")
                    return 1
            confirm = None
            if not args.yes:
                terminal = terminal or Terminal()
                confirm = lambda question: terminal.confirm(question, default=False)  # noqa: E731
            return 0 if delete_models(names, client, confirm=confirm) else 1
        if args.run:
            return 0 if run_model(args.run, ctx) else 1

        terminal = terminal or Terminal()
        if not terminal.is_interactive():
            print_model_table(fetch_models(client))
            return 0
        with terminal.raw_mode():
            return ModelManager(ctx, client, terminal).run()
    except ToolkitError as exc:
        return report_failure(exc)
    except KeyboardInterrupt:
        print()
        print_warn("Operation cancelled by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
