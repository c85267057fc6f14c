"""Redrawable single/multi-select list menus."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from constants import UI
from keybindings import KEYS
from tui_base import ScreenPainter, colorize

ALL_LABEL = "All"
PAGE_STEP = 10


@dataclass
class MenuItem:
    name: str
    label: str = ""

    def display(self) -> str:
        return self.label or self.name


@dataclass
class MenuState:
    """Cursor and selection for a list menu.

    With ``with_all`` a pseudo row sits at index 0. Toggling it sets every
    item to its new value, and toggling an item re-derives it so it is
    checked exactly when every real item is checked.
    """

    items: List[MenuItem]
    multi: bool = True
    with_all: bool = False
    cursor: int = 0
    checked: List[bool] = field(default_factory=list)
    all_checked: bool = False
    scroll: int = 0

    def __post_init__(self) -> None:
        if not self.multi:
            self.with_all = False
        if not self.checked:
            self.checked = [False] * len(self.items)
        self._sync_all()
        self.cursor = min(max(0, self.cursor), max(0, self.row_count - 1))

    @property
    def offset(self) -> int:
        return 1 if self.with_all else 0

    @property
    def row_count(self) -> int:
        return len(self.items) + self.offset

    def on_all_row(self) -> bool:
        return self.with_all and self.cursor == 0

    def current_item(self) -> Optional[MenuItem]:
        if not self.items or self.on_all_row():
            return None
        return self.items[self.cursor - self.offset]

    def move(self, delta: int) -> None:
        if self.row_count == 0:
            return
        self.cursor = (self.cursor + delta) % self.row_count

    def page(self, delta: int) -> None:
        if self.row_count == 0:
            return
        self.cursor = min(self.row_count - 1, max(0, self.cursor + delta))

    def jump(self, row: int) -> None:
        if self.row_count == 0:
            return
        self.cursor = row % self.row_count

    def _sync_all(self) -> None:
        self.all_checked = bool(self.checked) and all(self.checked)

    def toggle(self, row: Optional[int] = None) -> None:
        if not self.multi or not self.items:
            return
        row = self.cursor if row is None else row
        if self.with_all and row == 0:
            self.set_all(not self.all_checked)
            return
        index = row - self.offset
        self.checked[index] = not self.checked[index]
        self._sync_all()

    def toggle_all(self) -> None:
        if self.multi and self.items:
            self.set_all(not self.all_checked)

    def set_all(self, value: bool) -> None:
        self.checked = [value] * len(self.items)
        self._sync_all()

    def selected_names(self) -> List[str]:
        return [item.name for item, mark in zip(self.items, self.checked) if mark]

    def scroll_into_view(self, viewport: int) -> range:
        """Shift ``scroll`` so the cursor row is among ``viewport`` visible rows."""
        viewport = max(1, viewport)
        if self.cursor >= self.scroll + viewport:
            self.scroll = self.cursor - viewport + 1
        if self.cursor < self.scroll:
            self.scroll = self.cursor
        self.scroll = max(0, min(self.scroll, self.row_count - viewport))
        return range(self.scroll, min(self.row_count, self.scroll + viewport))


def render_menu(
    state: MenuState,
    title: str,
    *,
    footer: str | None = None,
    viewport: Optional[int] = None,
) -> List[str]:
    """Build the menu frame; with ``viewport`` only that many rows around the cursor are drawn."""
    lines = [colorize(title, "bold")]
    rows: List[tuple[str, bool]] = []
    if state.with_all:
        rows.append((ALL_LABEL, state.all_checked))
    rows.extend((item.display(), mark) for item, mark in zip(state.items, state.checked))

    shown = range(len(rows)) if viewport is None else state.scroll_into_view(viewport)
    for row in shown:
        text, mark = rows[row]
        pointer = colorize("❯", "cyan") if row == state.cursor else " "
        box = ""
        if state.multi:
            box = (colorize("[x]", "green") if mark else "[ ]") + " "
        line = f" {pointer} {box}{text}"
        if row == state.cursor:
            line = f" {pointer} {box}{colorize(text, 'bold')}"
        lines.append(line)

    if not rows:
        lines.append(colorize("   (nothing to show)", "dim"))

    if footer is None:
        if state.multi:
            footer = "↑/↓ j/k move  space toggle  a all  Enter confirm  q/Esc cancel"
        else:
            footer = "↑/↓ j/k move  Enter select  q/Esc cancel"
    if len(shown) < len(rows):
        footer = f"{footer}  [{shown.start + 1}-{shown.stop}/{len(rows)}]"
    lines.append(colorize(footer, "dim"))
    return lines


def handle_menu_key(state: MenuState, key) -> Optional[str]:
    """Apply navigation/toggle keys; return "confirm" or "cancel" when the loop should end."""
    if key.matches(KEYS.NAV_UP):
        state.move(-1)
    elif key.matches(KEYS.NAV_DOWN):
        state.move(1)
    elif key.matches(KEYS.PAGE_UP):
        state.page(-PAGE_STEP)
    elif key.matches(KEYS.PAGE_DOWN):
        state.page(PAGE_STEP)
    elif key.matches(KEYS.HOME):
        state.jump(0)
    elif key.matches(KEYS.END):
        state.jump(-1)
    elif key.matches(KEYS.TOGGLE):
        state.toggle()
    elif key.matches(KEYS.SELECT_ALL):
        state.toggle_all()
    elif key.matches(KEYS.CONFIRM):
        return "confirm"
    elif key.matches(KEYS.QUIT):
        return "cancel"
    return None


def run_list_menu(
    terminal,
    title: str,
    items: Sequence[MenuItem],
    *,
    multi: bool = True,
    with_all: bool = True,
    painter: ScreenPainter | None = None,
) -> Optional[List[str]]:
    """Show a list menu until the user confirms or cancels.

    Returns the chosen names (possibly empty for a multi-select) or ``None``
    when cancelled.
    """
    state = MenuState(list(items), multi=multi, with_all=with_all)
    painter = painter or ScreenPainter(terminal.output)
    with terminal.raw_mode(), terminal.hidden_cursor():
        try:
            while True:
                viewport = max(UI.MIN_LIST_ROWS, painter.max_rows() - 2)
                painter.paint(render_menu(state, title, viewport=viewport))
                key = terminal.read_key()
                if key is None:
                    continue
                outcome = handle_menu_key(state, key)
                if outcome == "cancel":
                    return None
                if outcome == "confirm":
                    if multi:
                        return state.selected_names()
                    current = state.current_item()
                    return [current.name] if current else []
        finally:
            painter.erase()
