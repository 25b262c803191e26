#!/usr/bin/env python3
"""Diary — a modal calendar diary for the terminal."""

from __future__ import annotations

import asyncio
import calendar
import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import MAXYEAR, MINYEAR, date, timedelta
from enum import Enum, auto
from pathlib import Path
from typing import Optional, Union

from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings, KeyPress
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout.containers import (
    ConditionalContainer, DynamicContainer, Float, FloatContainer,
    HSplit, VSplit, Window, WindowAlign,
)
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension as D
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.styles import Style as PtStyle
from prompt_toolkit.widgets import Frame

log = logging.getLogger("diary")

# ════════════════════════════════════════════════════════════════════════
#  Data Models
# ════════════════════════════════════════════════════════════════════════


class Screen(Enum):
    CALENDAR = "calendar"
    EDITOR = "editor"


class CalendarSubMode(Enum):
    SPACE = "space"


class EditorMode(Enum):
    NORMAL = "NOR"
    INSERT = "INS"


class EditorSubMode(Enum):
    GOTO = "goto"
    SPACE_COMMAND = "space"
    SEARCH = "search"


class InsertPosition(Enum):
    BEFORE_CURSOR = "before"
    AFTER_CURSOR = "after"
    LINE_BELOW = "below"
    LINE_ABOVE = "above"


@dataclass(frozen=True)
class Selection:
    """Anchor is where the selection began, cursor is where it ends now."""
    anchor_line: int
    anchor_col: int
    cursor_line: int
    cursor_col: int
    linewise: bool = False   # built by line selection; cleared by any motion


@dataclass(frozen=True)
class EditorSnapshot:
    content: tuple[str, ...]
    cursor_line: int
    cursor_col: int
    selection: Optional[Selection]


@dataclass
class DiaryIndex:
    """Dates known to have a saved entry."""
    entries: set[date] = field(default_factory=set)

    def __contains__(self, day: date) -> bool:
        return day in self.entries


# ════════════════════════════════════════════════════════════════════════
#  Storage
# ════════════════════════════════════════════════════════════════════════

_ENTRY_NAME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})\.md$")


def parse_entry_name(name: str) -> Optional[date]:
    """Return the date encoded in an entry file name, or None."""
    m = _ENTRY_NAME_RE.match(name)
    if not m:
        return None
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


class DiaryStorage:
    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        self.entries_dir = base_dir / "entries"
        self.entries_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, day: date) -> Path:
        return self.entries_dir / f"{day.isoformat()}.md"

    def load(self, day: date) -> str:
        """Read an entry. Raises FileNotFoundError when none exists."""
        return self.path_for(day).read_text(encoding="utf-8")

    def save(self, day: date, content: str) -> None:
        self.path_for(day).write_text(content, encoding="utf-8")

    def delete(self, day: date) -> None:
        self.path_for(day).unlink()

    def scan_entries(self) -> set[date]:
        entries = set()
        for p in self.entries_dir.glob("*.md"):
            day = parse_entry_name(p.name)
            if day is not None:
                entries.add(day)
        return entries


def default_data_dir() -> Path:
    if os.environ.get("DIARY_DIR"):
        return Path(os.environ["DIARY_DIR"])
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "diary"


# ════════════════════════════════════════════════════════════════════════
#  Selection Algebra
# ════════════════════════════════════════════════════════════════════════

Position = tuple[int, int]


def normalize_selection(sel: Selection) -> tuple[Position, Position]:
    """Order the two ends of a selection by (line, col)."""
    anchor = (sel.anchor_line, sel.anchor_col)
    cursor = (sel.cursor_line, sel.cursor_col)
    if anchor <= cursor:
        return anchor, cursor
    return cursor, anchor


def extract_text(lines: list[str], start: Position, end: Position) -> Optional[str]:
    """Text between two ordered positions, columns clamped to each line."""
    (start_line, start_col), (end_line, end_col) = start, end
    if end_line >= len(lines):
        return None
    if start_line == end_line:
        line = lines[start_line]
        return line[min(start_col, len(line)):min(end_col, len(line))]
    first, last = lines[start_line], lines[end_line]
    parts = [first[min(start_col, len(first)):], "\n"]
    for line in lines[start_line + 1:end_line]:
        parts.append(line)
        parts.append("\n")
    parts.append(last[:min(end_col, len(last))])
    return "".join(parts)


def remove_range(lines: list[str], start: Position, end: Position) -> None:
    """Delete the text between two ordered positions, in place."""
    (start_line, start_col), (end_line, end_col) = start, end
    end_line = min(end_line, len(lines) - 1)
    head = lines[start_line][:min(start_col, len(lines[start_line]))]
    tail = lines[end_line][min(end_col, len(lines[end_line])):]
    lines[start_line:end_line + 1] = [head + tail]


def insert_text(lines: list[str], line: int, col: int, text: str) -> Position:
    """Insert possibly multi-line text at (line, col); return the end position."""
    current = lines[line]
    col = min(col, len(current))
    pieces = text.split("\n")
    if len(pieces) == 1:
        lines[line] = current[:col] + text + current[col:]
        return line, col + len(text)
    tail = current[col:]
    lines[line] = current[:col] + pieces[0]
    added = pieces[1:]
    end_col = len(added[-1])
    added[-1] += tail
    lines[line + 1:line + 1] = added
    return line + len(added), end_col


# ── Word motions ──────────────────────────────────────────────────────


def _char_class(ch: str) -> int:
    if ch.isspace():
        return 0
    if ch.isalnum() or ch == "_":
        return 1
    return 2


def next_word_start(lines: list[str], line: int, col: int) -> Position:
    text = lines[line]
    if col < len(text) and not text[col].isspace():
        cls = _char_class(text[col])
        while col < len(text) and _char_class(text[col]) == cls:
            col += 1
    while True:
        text = lines[line]
        while col < len(text) and text[col].isspace():
            col += 1
        if col < len(text) or line >= len(lines) - 1:
            return line, col
        line, col = line + 1, 0


def prev_word_start(lines: list[str], line: int, col: int) -> Position:
    while True:
        text = lines[line]
        col = min(col, len(text))
        while col > 0 and text[col - 1].isspace():
            col -= 1
        if col > 0:
            break
        if line == 0:
            return 0, 0
        line -= 1
        col = len(lines[line])
    cls = _char_class(text[col - 1])
    while col > 0 and _char_class(text[col - 1]) == cls:
        col -= 1
    return line, col


def word_end(lines: list[str], line: int, col: int) -> Position:
    origin = (line, col)
    col += 1
    while True:
        text = lines[line]
        while col < len(text) and text[col].isspace():
            col += 1
        if col < len(text):
            break
        if line >= len(lines) - 1:
            return origin
        line, col = line + 1, 0
    cls = _char_class(text[col])
    while col + 1 < len(text) and _char_class(text[col + 1]) == cls:
        col += 1
    return line, col


def find_matches(lines: list[str], pattern: str) -> list[Position]:
    """Every case-insensitive occurrence of pattern, as (line, col)."""
    if not pattern:
        return []
    needle = re.compile(re.escape(pattern), re.IGNORECASE)
    matches = []
    for i, line in enumerate(lines):
        start = 0
        while True:
            m = needle.search(line, start)
            if m is None:
                break
            matches.append((i, m.start()))
            start = m.start() + 1
    return matches


# ════════════════════════════════════════════════════════════════════════
#  Calendar
# ════════════════════════════════════════════════════════════════════════


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


@dataclass
class CalendarState:
    current_year: int
    current_month: int
    selected_date: date
    cursor_pos: int = 0
    submode: Optional[CalendarSubMode] = None

    @classmethod
    def for_date(cls, day: date) -> CalendarState:
        return cls(current_year=day.year, current_month=day.month, selected_date=day)

    def next_month(self) -> None:
        if self.current_month == 12:
            self._show(self.current_year + 1, 1)
        else:
            self._show(self.current_year, self.current_month + 1)

    def prev_month(self) -> None:
        if self.current_month == 1:
            self._show(self.current_year - 1, 12)
        else:
            self._show(self.current_year, self.current_month - 1)

    def next_year(self) -> None:
        self._show(self.current_year + 1, self.current_month)

    def prev_year(self) -> None:
        self._show(self.current_year - 1, self.current_month)

    def move_cursor_left(self) -> None:
        self._shift(-1)

    def move_cursor_right(self) -> None:
        self._shift(1)

    def move_cursor_up(self) -> None:
        self._shift(-7)

    def move_cursor_down(self) -> None:
        self._shift(7)

    def _show(self, year: int, month: int) -> None:
        if not MINYEAR <= year <= MAXYEAR:
            return
        self.current_year = year
        self.current_month = month
        self._clamp_day()

    def _clamp_day(self) -> None:
        day = min(self.selected_date.day,
                  days_in_month(self.current_year, self.current_month))
        self.selected_date = date(self.current_year, self.current_month, day)

    def _shift(self, days: int) -> None:
        try:
            new = self.selected_date + timedelta(days=days)
        except OverflowError:
            return
        self.selected_date = new
        self.current_year = new.year
        self.current_month = new.month


# ════════════════════════════════════════════════════════════════════════
#  Editor
# ════════════════════════════════════════════════════════════════════════


@dataclass
class EditorState:
    date: date
    mode: EditorMode = EditorMode.NORMAL
    content: list[str] = field(default_factory=lambda: [""])
    cursor_line: int = 0
    cursor_col: int = 0
    is_modified: bool = False
    selection: Optional[Selection] = None
    edit_history: list[EditorSnapshot] = field(default_factory=list)
    history_index: int = 0
    clipboard: str = ""
    clipboard_linewise: bool = False
    submode: Optional[EditorSubMode] = None
    search_pattern: str = ""
    search_matches: list[Position] = field(default_factory=list)
    current_match_index: int = 0

    def __post_init__(self):
        if not self.edit_history:
            self.edit_history.append(self.snapshot())
            self.history_index = 0

    # ── Text primitives ──────────────────────────────────────────────

    def current_line(self) -> str:
        if self.cursor_line < len(self.content):
            return self.content[self.cursor_line]
        return ""

    def insert_char(self, ch: str) -> None:
        if self.cursor_line >= len(self.content):
            self.content.append("")
        line = self.content[self.cursor_line]
        col = min(self.cursor_col, len(line))
        self.content[self.cursor_line] = line[:col] + ch + line[col:]
        self.cursor_col = col + 1
        self.is_modified = True

    def backspace(self) -> None:
        if self.cursor_line >= len(self.content):
            return
        if self.cursor_col > 0:
            line = self.content[self.cursor_line]
            col = min(self.cursor_col, len(line))
            self.content[self.cursor_line] = line[:col - 1] + line[col:]
            self.cursor_col = col - 1
            self.is_modified = True
        elif self.cursor_line > 0:
            tail = self.content.pop(self.cursor_line)
            self.cursor_line -= 1
            self.cursor_col = len(self.content[self.cursor_line])
            self.content[self.cursor_line] += tail
            self.is_modified = True

    def new_line(self) -> None:
        if self.cursor_line >= len(self.content):
            self.content.append("")
        line = self.content[self.cursor_line]
        col = min(self.cursor_col, len(line))
        self.content[self.cursor_line] = line[:col]
        self.cursor_line += 1
        self.content.insert(self.cursor_line, line[col:])
        self.cursor_col = 0
        self.is_modified = True

    def load_content(self, text: str) -> None:
        """Replace the buffer; this also starts a fresh undo history."""
        if not text:
            lines = [""]
        else:
            lines = text.split("\n")
            if text.endswith("\n"):
                lines.pop()
            lines = [ln[:-1] if ln.endswith("\r") else ln for ln in lines] or [""]
        self.content = lines
        self.cursor_line = 0
        self.cursor_col = 0
        self.is_modified = False
        self.selection = None
        self.search_matches = []
        self.current_match_index = 0
        self.edit_history = [self.snapshot()]
        self.history_index = 0

    def get_content(self) -> str:
        return "\n".join(self.content)

    # ── Selection ────────────────────────────────────────────────────

    def get_selection_range(self) -> Optional[tuple[Position, Position]]:
        if self.selection is None:
            return None
        return normalize_selection(self.selection)

    def get_selected_text(self) -> Optional[str]:
        rng = self.get_selection_range()
        if rng is None:
            return None
        return extract_text(self.content, *rng)

    def toggle_selection(self) -> None:
        if self.selection is None:
            self.selection = Selection(self.cursor_line, self.cursor_col,
                                       self.cursor_line, self.cursor_col)
        else:
            self.selection = None

    def select_line(self) -> None:
        """Select the cursor line, or extend a whole-line selection by one line."""
        if self.cursor_line >= len(self.content):
            return
        rng = self.get_selection_range()
        if self._is_linewise() and rng[1][0] + 1 < len(self.content):
            start_line, end_line = rng[0][0], rng[1][0] + 1
        else:
            start_line = end_line = self.cursor_line
        end_col = len(self.content[end_line])
        self.selection = Selection(start_line, 0, end_line, end_col, linewise=True)
        self.cursor_line, self.cursor_col = end_line, end_col

    def _is_linewise(self) -> bool:
        return self.selection is not None and self.selection.linewise

    def _selected_lines(self) -> tuple[int, int]:
        (start_line, _), (end_line, _) = self.get_selection_range()
        return start_line, min(end_line, len(self.content) - 1)

    def _follow_cursor(self) -> None:
        if self.selection is not None:
            self.selection = replace(self.selection, cursor_line=self.cursor_line,
                                     cursor_col=self.cursor_col, linewise=False)

    # ── Movement ─────────────────────────────────────────────────────

    def clamp_cursor(self) -> None:
        if not self.content:
            self.cursor_line = self.cursor_col = 0
            return
        self.cursor_line = max(0, min(self.cursor_line, len(self.content) - 1))
        self.cursor_col = max(0, min(self.cursor_col, len(self.content[self.cursor_line])))

    def move_left(self) -> None:
        if self.cursor_col > 0:
            self.cursor_col -= 1
            self._follow_cursor()

    def move_right(self) -> None:
        if self.cursor_col < len(self.current_line()):
            self.cursor_col += 1
            self._follow_cursor()

    def move_up(self) -> None:
        if self.cursor_line > 0:
            self.cursor_line -= 1
            self.cursor_col = min(self.cursor_col, len(self.current_line()))
            self._follow_cursor()

    def move_down(self) -> None:
        if self.cursor_line + 1 < len(self.content):
            self.cursor_line += 1
            self.cursor_col = min(self.cursor_col, len(self.current_line()))
            self._follow_cursor()

    def _apply_motion(self, motion) -> None:
        if self.cursor_line >= len(self.content):
            return
        self.cursor_line, self.cursor_col = motion(
            self.content, self.cursor_line, self.cursor_col)
        self._follow_cursor()

    def word_next(self) -> None:
        self._apply_motion(next_word_start)

    def word_prev(self) -> None:
        self._apply_motion(prev_word_start)

    def word_end(self) -> None:
        self._apply_motion(word_end)

    def goto_doc_start(self) -> None:
        self.cursor_line, self.cursor_col = 0, 0
        self._follow_cursor()

    def goto_doc_end(self) -> None:
        self.cursor_line, self.cursor_col = max(0, len(self.content) - 1), 0
        self._follow_cursor()

    def goto_line_start(self) -> None:
        self.cursor_col = 0
        self._follow_cursor()

    def goto_line_end(self) -> None:
        self.cursor_col = len(self.current_line())
        self._follow_cursor()

    # ── Modes ────────────────────────────────────────────────────────

    def enter_insert(self, position: InsertPosition) -> None:
        if position is InsertPosition.AFTER_CURSOR:
            self.cursor_col = min(self.cursor_col + 1, len(self.current_line()))
        elif position is InsertPosition.LINE_BELOW:
            if self.cursor_line < len(self.content):
                self.content.insert(self.cursor_line + 1, "")
                self.cursor_line += 1
                self.cursor_col = 0
                self.is_modified = True
        elif position is InsertPosition.LINE_ABOVE:
            self.cursor_line = min(self.cursor_line, len(self.content))
            self.content.insert(self.cursor_line, "")
            self.cursor_col = 0
            self.is_modified = True
        self.selection = None
        self.mode = EditorMode.INSERT

    def enter_normal(self) -> None:
        if self.mode is EditorMode.INSERT:
            self.mode = EditorMode.NORMAL
            self.save_snapshot()

    # ── Edit operations ──────────────────────────────────────────────

    def _copy_selection(self) -> bool:
        """Copy the selection to the clipboard; False when nothing is selectable."""
        if self._is_linewise():
            first, last = self._selected_lines()
            self.clipboard = "\n".join(self.content[first:last + 1]) + "\n"
            self.clipboard_linewise = True
            return True
        text = self.get_selected_text()
        if text is None:
            return False
        self.clipboard = text
        self.clipboard_linewise = False
        return True

    def _cut_selection(self, keep_line: bool) -> bool:
        if self.selection is None:
            self.select_line()
        if self.selection is None or not self._copy_selection():
            self.selection = None
            return False
        start, end = self.get_selection_range()
        if self._is_linewise():
            first, last = self._selected_lines()
            self.content[first:last + 1] = [""] if keep_line else []
            if not self.content:
                self.content = [""]
            self.cursor_line, self.cursor_col = first, 0
        else:
            remove_range(self.content, start, end)
            self.cursor_line, self.cursor_col = start
        self.selection = None
        self.clamp_cursor()
        self.is_modified = True
        self.save_snapshot()
        return True

    def delete_selection(self) -> None:
        self._cut_selection(keep_line=False)

    def change_selection(self) -> None:
        self._cut_selection(keep_line=True)
        self.mode = EditorMode.INSERT

    def yank(self) -> None:
        if self.selection is None:
            if self.cursor_line < len(self.content):
                self.clipboard = self.content[self.cursor_line] + "\n"
                self.clipboard_linewise = True
            return
        self._copy_selection()
        self.selection = None

    def paste(self, after: bool) -> None:
        if not self.clipboard or self.cursor_line >= len(self.content):
            return
        if self.clipboard_linewise:
            at = self.cursor_line + 1 if after else self.cursor_line
            self.content[at:at] = self.clipboard[:-1].split("\n")
            self.cursor_line, self.cursor_col = at, 0
        else:
            col = self.cursor_col + 1 if after else self.cursor_col
            col = min(col, len(self.content[self.cursor_line]))
            self.cursor_line, self.cursor_col = insert_text(
                self.content, self.cursor_line, col, self.clipboard)
        self.selection = None
        self.is_modified = True
        self.save_snapshot()

    # ── Undo history ─────────────────────────────────────────────────

    def snapshot(self) -> EditorSnapshot:
        return EditorSnapshot(tuple(self.content), self.cursor_line,
                              self.cursor_col, self.selection)

    def save_snapshot(self) -> None:
        """Record the live buffer, dropping any redo history past the index."""
        self._refresh_search()
        snap = self.snapshot()
        if (self.edit_history
                and self.edit_history[self.history_index].content == snap.content):
            return
        del self.edit_history[self.history_index + 1:]
        self.edit_history.append(snap)
        self.history_index = len(self.edit_history) - 1

    def _restore(self, snap: EditorSnapshot) -> None:
        self.content = list(snap.content) or [""]
        self.cursor_line = snap.cursor_line
        self.cursor_col = snap.cursor_col
        self.selection = snap.selection
        self.is_modified = True
        self.clamp_cursor()
        self._refresh_search()

    def undo(self) -> None:
        if self.history_index > 0:
            self.history_index -= 1
            self._restore(self.edit_history[self.history_index])

    def redo(self) -> None:
        if self.history_index + 1 < len(self.edit_history):
            self.history_index += 1
            self._restore(self.edit_history[self.history_index])

    # ── Search ───────────────────────────────────────────────────────

    def update_search_matches(self) -> None:
        self.search_matches = find_matches(self.content, self.search_pattern)
        self.current_match_index = 0

    def _refresh_search(self) -> None:
        if not self.search_pattern:
            return
        self.search_matches = find_matches(self.content, self.search_pattern)
        if self.current_match_index >= len(self.search_matches):
            self.current_match_index = 0

    def execute_search(self) -> None:
        self.update_search_matches()
        if not self.search_matches:
            return
        here = (self.cursor_line, self.cursor_col)
        self.current_match_index = next(
            (i for i, pos in enumerate(self.search_matches) if pos >= here), 0)
        self._jump_to_match()

    def search_next(self) -> None:
        if self.search_matches:
            self.current_match_index = (self.current_match_index + 1) % len(self.search_matches)
            self._jump_to_match()

    def search_prev(self) -> None:
        if self.search_matches:
            self.current_match_index = (self.current_match_index - 1) % len(self.search_matches)
            self._jump_to_match()

    def _jump_to_match(self) -> None:
        self.cursor_line, self.cursor_col = self.search_matches[self.current_match_index]
        self.clamp_cursor()
        self._follow_cursor()


@dataclass
class Model:
    screen: Screen
    calendar_state: CalendarState
    editor_state: EditorState
    diary_entries: DiaryIndex
    error_message: Optional[str] = None
    show_error_popup: bool = False

    @classmethod
    def new(cls, entries, today: Optional[date] = None) -> Model:
        today = today or date.today()
        return cls(
            screen=Screen.CALENDAR,
            calendar_state=CalendarState.for_date(today),
            editor_state=EditorState(date=today),
            diary_entries=DiaryIndex(set(entries)),
        )


# ════════════════════════════════════════════════════════════════════════
#  Messages & Commands
# ════════════════════════════════════════════════════════════════════════


class Msg(Enum):
    QUIT = auto()
    DISMISS_ERROR = auto()

    EDITOR_MOVE_LEFT = auto()
    EDITOR_MOVE_RIGHT = auto()
    EDITOR_MOVE_UP = auto()
    EDITOR_MOVE_DOWN = auto()
    EDITOR_WORD_NEXT = auto()
    EDITOR_WORD_PREV = auto()
    EDITOR_WORD_END = auto()

    EDITOR_ENTER_GOTO_MODE = auto()
    EDITOR_GOTO_DOC_START = auto()
    EDITOR_GOTO_DOC_END = auto()
    EDITOR_GOTO_LINE_START = auto()
    EDITOR_GOTO_LINE_END = auto()
    EDITOR_EXIT_SUBMODE = auto()

    EDITOR_ENTER_NORMAL_MODE = auto()
    EDITOR_BACKSPACE = auto()
    EDITOR_NEW_LINE = auto()

    EDITOR_TOGGLE_SELECTION = auto()
    EDITOR_SELECT_LINE = auto()

    EDITOR_DELETE = auto()
    EDITOR_CHANGE = auto()
    EDITOR_YANK = auto()
    EDITOR_PASTE_AFTER = auto()
    EDITOR_PASTE_BEFORE = auto()

    EDITOR_UNDO = auto()
    EDITOR_REDO = auto()

    EDITOR_ENTER_SEARCH_MODE = auto()
    EDITOR_SEARCH_BACKSPACE = auto()
    EDITOR_SEARCH_NEXT = auto()
    EDITOR_SEARCH_PREV = auto()
    EDITOR_EXECUTE_SEARCH = auto()

    EDITOR_ENTER_SPACE_MODE = auto()
    EDITOR_SPACE_SAVE = auto()
    EDITOR_SPACE_QUIT = auto()
    EDITOR_SPACE_SAVE_QUIT = auto()
    EDITOR_SPACE_DELETE = auto()
    EDITOR_BACK = auto()

    CALENDAR_MOVE_LEFT = auto()
    CALENDAR_MOVE_RIGHT = auto()
    CALENDAR_MOVE_UP = auto()
    CALENDAR_MOVE_DOWN = auto()
    CALENDAR_NEXT_YEAR = auto()
    CALENDAR_PREV_YEAR = auto()
    CALENDAR_SELECT_DATE = auto()
    CALENDAR_ENTER_SPACE_MODE = auto()
    CALENDAR_EXIT_SUBMODE = auto()
    CALENDAR_SPACE_QUIT = auto()
    CALENDAR_SPACE_NEXT_MONTH = auto()
    CALENDAR_SPACE_PREV_MONTH = auto()
    CALENDAR_SPACE_NEXT_YEAR = auto()
    CALENDAR_SPACE_PREV_YEAR = auto()


@dataclass(frozen=True)
class EnterInsert:
    position: InsertPosition


@dataclass(frozen=True)
class InsertChar:
    char: str


@dataclass(frozen=True)
class SearchChar:
    char: str


@dataclass(frozen=True)
class LoadDiarySuccess:
    day: date
    content: str


@dataclass(frozen=True)
class LoadDiaryFailed:
    error: str
    missing: bool = False   # no entry exists yet for the date


@dataclass(frozen=True)
class SaveDiarySuccess:
    day: date


@dataclass(frozen=True)
class SaveDiaryFailed:
    error: str


@dataclass(frozen=True)
class DeleteDiarySuccess:
    day: date


@dataclass(frozen=True)
class DeleteDiaryFailed:
    error: str


@dataclass(frozen=True)
class RefreshIndex:
    entries: frozenset


Message = Union[
    Msg, EnterInsert, InsertChar, SearchChar,
    LoadDiarySuccess, LoadDiaryFailed, SaveDiarySuccess, SaveDiaryFailed,
    DeleteDiarySuccess, DeleteDiaryFailed, RefreshIndex,
]


@dataclass(frozen=True)
class LoadDiary:
    day: date


@dataclass(frozen=True)
class SaveDiary:
    day: date
    content: str


@dataclass(frozen=True)
class DeleteDiary:
    day: date


Command = Union[LoadDiary, SaveDiary, DeleteDiary]


# ════════════════════════════════════════════════════════════════════════
#  Key Interpreter
# ════════════════════════════════════════════════════════════════════════

_ESCAPE = Keys.Escape.value
_ENTER = Keys.ControlM.value
_BACKSPACE = Keys.ControlH.value

_CALENDAR_KEYS = {
    "q": Msg.QUIT,
    "h": Msg.CALENDAR_MOVE_LEFT,
    "l": Msg.CALENDAR_MOVE_RIGHT,
    "k": Msg.CALENDAR_MOVE_UP,
    "j": Msg.CALENDAR_MOVE_DOWN,
    Keys.Left.value: Msg.CALENDAR_MOVE_LEFT,
    Keys.Right.value: Msg.CALENDAR_MOVE_RIGHT,
    Keys.Up.value: Msg.CALENDAR_MOVE_UP,
    Keys.Down.value: Msg.CALENDAR_MOVE_DOWN,
    "H": Msg.CALENDAR_PREV_YEAR,
    "L": Msg.CALENDAR_NEXT_YEAR,
    " ": Msg.CALENDAR_ENTER_SPACE_MODE,
    _ENTER: Msg.CALENDAR_SELECT_DATE,
}

_CALENDAR_SPACE_KEYS = {
    "n": Msg.CALENDAR_SPACE_NEXT_MONTH,
    "p": Msg.CALENDAR_SPACE_PREV_MONTH,
    "N": Msg.CALENDAR_SPACE_NEXT_YEAR,
    "P": Msg.CALENDAR_SPACE_PREV_YEAR,
    "q": Msg.CALENDAR_SPACE_QUIT,
    _ESCAPE: Msg.CALENDAR_EXIT_SUBMODE,
}

_NORMAL_KEYS = {
    "h": Msg.EDITOR_MOVE_LEFT,
    "l": Msg.EDITOR_MOVE_RIGHT,
    "k": Msg.EDITOR_MOVE_UP,
    "j": Msg.EDITOR_MOVE_DOWN,
    Keys.Left.value: Msg.EDITOR_MOVE_LEFT,
    Keys.Right.value: Msg.EDITOR_MOVE_RIGHT,
    Keys.Up.value: Msg.EDITOR_MOVE_UP,
    Keys.Down.value: Msg.EDITOR_MOVE_DOWN,
    "w": Msg.EDITOR_WORD_NEXT,
    "b": Msg.EDITOR_WORD_PREV,
    "e": Msg.EDITOR_WORD_END,
    "g": Msg.EDITOR_ENTER_GOTO_MODE,
    " ": Msg.EDITOR_ENTER_SPACE_MODE,
    "/": Msg.EDITOR_ENTER_SEARCH_MODE,
    "i": EnterInsert(InsertPosition.BEFORE_CURSOR),
    "a": EnterInsert(InsertPosition.AFTER_CURSOR),
    "o": EnterInsert(InsertPosition.LINE_BELOW),
    "O": EnterInsert(InsertPosition.LINE_ABOVE),
    "v": Msg.EDITOR_TOGGLE_SELECTION,
    "x": Msg.EDITOR_SELECT_LINE,
    "d": Msg.EDITOR_DELETE,
    "c": Msg.EDITOR_CHANGE,
    "y": Msg.EDITOR_YANK,
    "p": Msg.EDITOR_PASTE_AFTER,
    "P": Msg.EDITOR_PASTE_BEFORE,
    "u": Msg.EDITOR_UNDO,
    "U": Msg.EDITOR_REDO,
    "n": Msg.EDITOR_SEARCH_NEXT,
    "N": Msg.EDITOR_SEARCH_PREV,
    _ESCAPE: Msg.EDITOR_BACK,
}

_GOTO_KEYS = {
    "g": Msg.EDITOR_GOTO_DOC_START,
    "e": Msg.EDITOR_GOTO_DOC_END,
    "h": Msg.EDITOR_GOTO_LINE_START,
    "l": Msg.EDITOR_GOTO_LINE_END,
    _ESCAPE: Msg.EDITOR_EXIT_SUBMODE,
}

_SPACE_COMMAND_KEYS = {
    "w": Msg.EDITOR_SPACE_SAVE,
    "q": Msg.EDITOR_SPACE_QUIT,
    "x": Msg.EDITOR_SPACE_SAVE_QUIT,
    "d": Msg.EDITOR_SPACE_DELETE,
    "Q": Msg.QUIT,
    _ESCAPE: Msg.EDITOR_EXIT_SUBMODE,
}


def _key_name(key_press: KeyPress) -> str:
    key = key_press.key
    if isinstance(key, Keys):
        return key.value
    return key


def _is_char(key: str) -> bool:
    return len(key) == 1 and key.isprintable()


def interpret_key(key_press: KeyPress, model: Model) -> Optional[Message]:
    """Map a key press to a message for the current state. Never mutates."""
    key = _key_name(key_press)
    if model.show_error_popup and key == _ESCAPE:
        return Msg.DISMISS_ERROR

    if model.screen is Screen.CALENDAR:
        if model.calendar_state.submode is CalendarSubMode.SPACE:
            return _CALENDAR_SPACE_KEYS.get(key)
        return _CALENDAR_KEYS.get(key)

    editor = model.editor_state
    if editor.submode is EditorSubMode.SEARCH:
        if key == _ESCAPE:
            return Msg.EDITOR_EXIT_SUBMODE
        if key == _ENTER:
            return Msg.EDITOR_EXECUTE_SEARCH
        if key == _BACKSPACE:
            return Msg.EDITOR_SEARCH_BACKSPACE
        return SearchChar(key) if _is_char(key) else None
    if editor.submode is EditorSubMode.GOTO:
        return _GOTO_KEYS.get(key)
    if editor.submode is EditorSubMode.SPACE_COMMAND:
        return _SPACE_COMMAND_KEYS.get(key)

    if editor.mode is EditorMode.INSERT:
        if key == _ESCAPE:
            return Msg.EDITOR_ENTER_NORMAL_MODE
        if key == _ENTER:
            return Msg.EDITOR_NEW_LINE
        if key == _BACKSPACE:
            return Msg.EDITOR_BACKSPACE
        return InsertChar(key) if _is_char(key) else None
    return _NORMAL_KEYS.get(key)


# ════════════════════════════════════════════════════════════════════════
#  Update Dispatcher
# ════════════════════════════════════════════════════════════════════════


def _on_calendar(model: Model) -> bool:
    return model.screen is Screen.CALENDAR and model.calendar_state.submode is None


def _on_calendar_space(model: Model) -> bool:
    return (model.screen is Screen.CALENDAR
            and model.calendar_state.submode is CalendarSubMode.SPACE)


def _in_normal(model: Model) -> bool:
    editor = model.editor_state
    return (model.screen is Screen.EDITOR and editor.mode is EditorMode.NORMAL
            and editor.submode is None)


def _in_insert(model: Model) -> bool:
    return model.screen is Screen.EDITOR and model.editor_state.mode is EditorMode.INSERT


def _in_submode(model: Model, submode: EditorSubMode) -> bool:
    return model.screen is Screen.EDITOR and model.editor_state.submode is submode


def _show_error(model: Model, message: str) -> None:
    model.error_message = message
    model.show_error_popup = True


def _fresh_editor(old: EditorState, day: date) -> EditorState:
    """An empty editor for day that keeps the clipboard of the old one."""
    return EditorState(date=day, clipboard=old.clipboard,
                       clipboard_linewise=old.clipboard_linewise)


def _close_editor(model: Model) -> None:
    """Return to the calendar with a fresh buffer for the same date."""
    model.editor_state = _fresh_editor(model.editor_state, model.editor_state.date)
    model.screen = Screen.CALENDAR


def _calendar_action(action):
    def handler(model):
        if _on_calendar(model):
            action(model.calendar_state)
    return handler


def _calendar_space_action(action):
    def handler(model):
        if _on_calendar_space(model):
            action(model.calendar_state)
            model.calendar_state.submode = None
    return handler


def _normal_action(action):
    def handler(model):
        if _in_normal(model):
            action(model.editor_state)
    return handler


def _insert_action(action):
    def handler(model):
        if _in_insert(model):
            action(model.editor_state)
    return handler


def _goto_action(action):
    def handler(model):
        if _in_submode(model, EditorSubMode.GOTO):
            action(model.editor_state)
            model.editor_state.submode = None
    return handler


def _enter_submode(submode):
    def handler(model):
        if _in_normal(model):
            model.editor_state.submode = submode
            if submode is EditorSubMode.SEARCH:
                model.editor_state.search_pattern = ""
                model.editor_state.search_matches = []
                model.editor_state.current_match_index = 0
    return handler


def _dismiss_error(model):
    model.show_error_popup = False
    model.error_message = None


def _calendar_select_date(model):
    if not _on_calendar(model):
        return None
    day = model.calendar_state.selected_date
    model.screen = Screen.EDITOR
    model.editor_state = _fresh_editor(model.editor_state, day)
    return LoadDiary(day)


def _calendar_enter_space(model):
    if _on_calendar(model):
        model.calendar_state.submode = CalendarSubMode.SPACE


def _calendar_exit_submode(model):
    if model.screen is Screen.CALENDAR:
        model.calendar_state.submode = None


def _editor_exit_submode(model):
    if model.screen is Screen.EDITOR:
        model.editor_state.submode = None


def _editor_enter_normal(model):
    if model.screen is Screen.EDITOR:
        model.editor_state.enter_normal()


def _search_backspace(model):
    if _in_submode(model, EditorSubMode.SEARCH):
        editor = model.editor_state
        editor.search_pattern = editor.search_pattern[:-1]
        editor.update_search_matches()


def _execute_search(model):
    if _in_submode(model, EditorSubMode.SEARCH):
        model.editor_state.submode = None
        model.editor_state.execute_search()


def _space_save(model):
    if not _in_submode(model, EditorSubMode.SPACE_COMMAND):
        return None
    editor = model.editor_state
    editor.submode = None
    return SaveDiary(editor.date, editor.get_content())


def _space_quit(model):
    if _in_submode(model, EditorSubMode.SPACE_COMMAND):
        _close_editor(model)


def _space_save_quit(model):
    if not _in_submode(model, EditorSubMode.SPACE_COMMAND):
        return None
    editor = model.editor_state
    command = SaveDiary(editor.date, editor.get_content())
    _close_editor(model)
    return command


def _space_delete(model):
    if not _in_submode(model, EditorSubMode.SPACE_COMMAND):
        return None
    model.editor_state.submode = None
    return DeleteDiary(model.editor_state.date)


def _editor_back(model):
    if model.screen is Screen.EDITOR and model.editor_state.mode is EditorMode.NORMAL:
        editor = model.editor_state
        editor.submode = None
        editor.selection = None
        model.screen = Screen.CALENDAR


_HANDLERS = {
    Msg.QUIT: lambda model: None,
    Msg.DISMISS_ERROR: _dismiss_error,

    Msg.CALENDAR_MOVE_LEFT: _calendar_action(CalendarState.move_cursor_left),
    Msg.CALENDAR_MOVE_RIGHT: _calendar_action(CalendarState.move_cursor_right),
    Msg.CALENDAR_MOVE_UP: _calendar_action(CalendarState.move_cursor_up),
    Msg.CALENDAR_MOVE_DOWN: _calendar_action(CalendarState.move_cursor_down),
    Msg.CALENDAR_NEXT_YEAR: _calendar_action(CalendarState.next_year),
    Msg.CALENDAR_PREV_YEAR: _calendar_action(CalendarState.prev_year),
    Msg.CALENDAR_SELECT_DATE: _calendar_select_date,
    Msg.CALENDAR_ENTER_SPACE_MODE: _calendar_enter_space,
    Msg.CALENDAR_EXIT_SUBMODE: _calendar_exit_submode,
    Msg.CALENDAR_SPACE_QUIT: _calendar_space_action(lambda cal: None),
    Msg.CALENDAR_SPACE_NEXT_MONTH: _calendar_space_action(CalendarState.next_month),
    Msg.CALENDAR_SPACE_PREV_MONTH: _calendar_space_action(CalendarState.prev_month),
    Msg.CALENDAR_SPACE_NEXT_YEAR: _calendar_space_action(CalendarState.next_year),
    Msg.CALENDAR_SPACE_PREV_YEAR: _calendar_space_action(CalendarState.prev_year),

    Msg.EDITOR_MOVE_LEFT: _normal_action(EditorState.move_left),
    Msg.EDITOR_MOVE_RIGHT: _normal_action(EditorState.move_right),
    Msg.EDITOR_MOVE_UP: _normal_action(EditorState.move_up),
    Msg.EDITOR_MOVE_DOWN: _normal_action(EditorState.move_down),
    Msg.EDITOR_WORD_NEXT: _normal_action(EditorState.word_next),
    Msg.EDITOR_WORD_PREV: _normal_action(EditorState.word_prev),
    Msg.EDITOR_WORD_END: _normal_action(EditorState.word_end),

    Msg.EDITOR_ENTER_GOTO_MODE: _enter_submode(EditorSubMode.GOTO),
    Msg.EDITOR_GOTO_DOC_START: _goto_action(EditorState.goto_doc_start),
    Msg.EDITOR_GOTO_DOC_END: _goto_action(EditorState.goto_doc_end),
    Msg.EDITOR_GOTO_LINE_START: _goto_action(EditorState.goto_line_start),
    Msg.EDITOR_GOTO_LINE_END: _goto_action(EditorState.goto_line_end),
    Msg.EDITOR_EXIT_SUBMODE: _editor_exit_submode,

    Msg.EDITOR_ENTER_NORMAL_MODE: _editor_enter_normal,
    Msg.EDITOR_BACKSPACE: _insert_action(EditorState.backspace),
    Msg.EDITOR_NEW_LINE: _insert_action(EditorState.new_line),

    Msg.EDITOR_TOGGLE_SELECTION: _normal_action(EditorState.toggle_selection),
    Msg.EDITOR_SELECT_LINE: _normal_action(EditorState.select_line),

    Msg.EDITOR_DELETE: _normal_action(EditorState.delete_selection),
    Msg.EDITOR_CHANGE: _normal_action(EditorState.change_selection),
    Msg.EDITOR_YANK: _normal_action(EditorState.yank),
    Msg.EDITOR_PASTE_AFTER: _normal_action(lambda editor: editor.paste(after=True)),
    Msg.EDITOR_PASTE_BEFORE: _normal_action(lambda editor: editor.paste(after=False)),

    Msg.EDITOR_UNDO: _normal_action(EditorState.undo),
    Msg.EDITOR_REDO: _normal_action(EditorState.redo),

    Msg.EDITOR_ENTER_SEARCH_MODE: _enter_submode(EditorSubMode.SEARCH),
    Msg.EDITOR_SEARCH_BACKSPACE: _search_backspace,
    Msg.EDITOR_SEARCH_NEXT: _normal_action(EditorState.search_next),
    Msg.EDITOR_SEARCH_PREV: _normal_action(EditorState.search_prev),
    Msg.EDITOR_EXECUTE_SEARCH: _execute_search,

    Msg.EDITOR_ENTER_SPACE_MODE: _enter_submode(EditorSubMode.SPACE_COMMAND),
    Msg.EDITOR_SPACE_SAVE: _space_save,
    Msg.EDITOR_SPACE_QUIT: _space_quit,
    Msg.EDITOR_SPACE_SAVE_QUIT: _space_save_quit,
    Msg.EDITOR_SPACE_DELETE: _space_delete,
    Msg.EDITOR_BACK: _editor_back,
}


def update(model: Model, msg: Message) -> Optional[Command]:
    """Apply one message to the model; return the side effect it requires, if any."""
    if isinstance(msg, Msg):
        return _HANDLERS[msg](model)

    editor = model.editor_state
    if isinstance(msg, EnterInsert):
        if model.screen is Screen.EDITOR and editor.submode is None:
            if editor.mode is EditorMode.NORMAL:
                editor.enter_insert(msg.position)
    elif isinstance(msg, InsertChar):
        if _in_insert(model):
            editor.insert_char(msg.char)
    elif isinstance(msg, SearchChar):
        if _in_submode(model, EditorSubMode.SEARCH):
            editor.search_pattern += msg.char
            editor.update_search_matches()

    elif isinstance(msg, LoadDiarySuccess):
        if model.screen is Screen.EDITOR and editor.date == msg.day:
            editor.load_content(msg.content)
    elif isinstance(msg, LoadDiaryFailed):
        if model.screen is Screen.EDITOR:
            editor.load_content("")
        if not msg.missing:
            _show_error(model, f"Load failed: {msg.error}")
    elif isinstance(msg, SaveDiarySuccess):
        model.diary_entries.entries.add(msg.day)
        if editor.date == msg.day:
            editor.is_modified = False
    elif isinstance(msg, SaveDiaryFailed):
        _show_error(model, f"Save failed: {msg.error}")
    elif isinstance(msg, DeleteDiarySuccess):
        model.diary_entries.entries.discard(msg.day)
        if editor.date == msg.day:
            _close_editor(model)
    elif isinstance(msg, DeleteDiaryFailed):
        _show_error(model, f"Delete failed: {msg.error}")
    elif isinstance(msg, RefreshIndex):
        model.diary_entries.entries = set(msg.entries)
    return None


# ════════════════════════════════════════════════════════════════════════
#  Command Executor
# ════════════════════════════════════════════════════════════════════════


def execute_command(command: Command, storage) -> Message:
    """Perform one storage call and describe its outcome as a message."""
    log.debug("executing %r", command)
    if isinstance(command, LoadDiary):
        try:
            content = storage.load(command.day)
        except FileNotFoundError as exc:
            return LoadDiaryFailed(str(exc), missing=True)
        except (OSError, UnicodeDecodeError) as exc:
            log.warning("load %s failed: %s", command.day, exc)
            return LoadDiaryFailed(str(exc))
        return LoadDiarySuccess(command.day, content)

    if isinstance(command, SaveDiary):
        try:
            storage.save(command.day, command.content)
        except OSError as exc:
            log.warning("save %s failed: %s", command.day, exc)
            return SaveDiaryFailed(str(exc))
        return SaveDiarySuccess(command.day)

    if isinstance(command, DeleteDiary):
        try:
            storage.delete(command.day)
        except FileNotFoundError:
            log.debug("delete %s: no entry on disk", command.day)
        except OSError as exc:
            log.warning("delete %s failed: %s", command.day, exc)
            return DeleteDiaryFailed(str(exc))
        return DeleteDiarySuccess(command.day)

    raise TypeError(f"unknown command: {command!r}")


def run_command(model: Model, storage, command: Optional[Command]) -> list[Message]:
    """Execute a command and feed every result back through update."""
    results = []
    while command is not None:
        msg = execute_command(command, storage)
        results.append(msg)
        command = update(model, msg)
    return results


def dispatch(model: Model, storage, msg: Message) -> list[Message]:
    """Update the model with a message and run any command it yields."""
    return run_command(model, storage, update(model, msg))


# ════════════════════════════════════════════════════════════════════════
#  View
# ════════════════════════════════════════════════════════════════════════

_HEADING_RE = re.compile(r'^(#{1,6}\s+)(.+)$')
_MD_PATTERNS = [
    (re.compile(r'\*\*[^*]+\*\*'), 'class:md.bold'),
    (re.compile(r'(?<!\*)\*(?!\*)[^*]+?(?<!\*)\*(?!\*)'), 'class:md.italic'),
    (re.compile(r'`[^`]+`'), 'class:md.code'),
    (re.compile(r'\[[^\]]+\]\([^)]+\)'), 'class:md.link'),
]

_WEEKDAYS = ["Su", "Mo", "Tu", "We", "Th", "Fr", "Sa"]


def markdown_styles(text: str) -> list[str]:
    """Per-character style classes for one line of markdown."""
    hm = _HEADING_RE.match(text)
    if hm:
        marker = len(hm.group(1))
        return (['class:md.heading-marker'] * marker
                + ['class:md.heading'] * (len(text) - marker))
    matches = []
    for pattern, style in _MD_PATTERNS:
        for m in pattern.finditer(text):
            matches.append((m.start(), m.end(), style))
    matches.sort(key=lambda x: x[0])
    styles = [''] * len(text)
    pos = 0
    for start, end, style in matches:
        if start < pos:
            continue
        styles[start:end] = [style] * (end - start)
        pos = end
    return styles


def calendar_fragments(model: Model, today: Optional[date] = None):
    cal = model.calendar_state
    today = today or date.today()
    title = f"{calendar.month_name[cal.current_month]} {cal.current_year}"
    result = [
        ("class:title bold", f" {title:^27}\n\n"),
        ("class:hint", " " + "".join(f"{d:>3} " for d in _WEEKDAYS) + "\n"),
    ]
    weeks = calendar.Calendar(firstweekday=6).monthdayscalendar(
        cal.current_year, cal.current_month)
    for week in weeks:
        result.append(("", " "))
        for d in week:
            if d == 0:
                result.append(("", "    "))
                continue
            day = date(cal.current_year, cal.current_month, d)
            style = ""
            if day in model.diary_entries:
                style += " class:calendar.entry"
            if day == today:
                style += " class:calendar.today"
            if day == cal.selected_date:
                result.append(("[SetCursorPosition]", ""))
                style += " class:calendar.selected"
            marker = "*" if day in model.diary_entries else " "
            result.append((style.strip(), f"{d:>3}"))
            result.append(("class:calendar.entry", marker))
        result.append(("", "\n"))
    return result


def editor_fragments(editor: EditorState):
    rng = editor.get_selection_range()
    pattern_len = len(editor.search_pattern)
    highlighted = set()
    for line, col in editor.search_matches:
        highlighted.update((line, c) for c in range(col, col + pattern_len))
    cursor_style = ("class:cursor.insert" if editor.mode is EditorMode.INSERT
                    else "class:cursor")

    result = []
    for i, line in enumerate(editor.content):
        styles = markdown_styles(line)
        # one extra cell past the end so the cursor can sit there
        for col, ch in enumerate(line + " "):
            pos = (i, col)
            style = styles[col] if col < len(line) else ""
            if rng is not None and rng[0] <= pos < rng[1] and col < len(line):
                style += " class:selection"
            elif pos in highlighted:
                style += " class:search-match"
            if pos == (editor.cursor_line, editor.cursor_col):
                result.append(("[SetCursorPosition]", ""))
                style += " " + cursor_style
            elif col == len(line):
                continue
            result.append((style.strip(), ch))
        result.append(("", "\n"))
    return result


def status_fragments(model: Model, notification: str = ""):
    if notification:
        return [("class:status", f" {notification}")]
    if model.screen is Screen.CALENDAR:
        if model.calendar_state.submode is CalendarSubMode.SPACE:
            return [("class:status", " (n/p) month  (N/P) year  (esc) cancel")]
        return [("class:status",
                 " (hjkl) move  (H/L) year  (space) jump  (enter) write  (q) quit")]
    editor = model.editor_state
    parts = [("class:status.mode", f" {editor.mode.value} ")]
    parts.append(("class:status", f" {editor.date.isoformat()}"))
    if editor.is_modified:
        parts.append(("class:status", " [+]"))
    if editor.submode is EditorSubMode.SEARCH:
        parts.append(("class:status", f"  /{editor.search_pattern}"))
        n = len(editor.search_matches)
        parts.append(("class:hint", f"  {n} match{'es' if n != 1 else ''}"))
    elif editor.submode is EditorSubMode.GOTO:
        parts.append(("class:status", "  goto: (g) top (e) end (h) home (l) line end"))
    elif editor.submode is EditorSubMode.SPACE_COMMAND:
        parts.append(("class:status", "  (w) save (q) close (x) save+close (d) delete (Q) exit"))
    return parts


# ════════════════════════════════════════════════════════════════════════
#  Application
# ════════════════════════════════════════════════════════════════════════


class AppState:
    """Terminal shell state around the core model."""

    def __init__(self, storage, today: Optional[date] = None):
        self.storage = storage
        self.model = Model.new(storage.scan_entries(), today)
        self.notification = ""
        self.notification_task = None
        self.previews: dict[date, str] = {}
        refresh_preview(self)


def refresh_preview(state) -> None:
    """Cache the selected date's entry text for the calendar preview pane."""
    model = state.model
    day = model.calendar_state.selected_date
    if (model.screen is not Screen.CALENDAR or day not in model.diary_entries
            or day in state.previews):
        return
    result = execute_command(LoadDiary(day), state.storage)
    if isinstance(result, LoadDiarySuccess):
        state.previews[day] = result.content
    else:
        state.previews[day] = f"(unreadable: {result.error})"


def show_notification(state, message, duration=3.0):
    """Show a notification in the status bar, auto-clearing after duration."""
    state.notification = message
    get_app().invalidate()
    if state.notification_task:
        state.notification_task.cancel()

    async def _clear():
        await asyncio.sleep(duration)
        if state.notification == message:
            state.notification = ""
            get_app().invalidate()

    state.notification_task = asyncio.ensure_future(_clear())


def create_app(storage):
    """Build and return the prompt_toolkit Application."""
    state = AppState(storage)

    def _get_preview():
        model = state.model
        day = model.calendar_state.selected_date
        header = ("class:title bold", f" {day.strftime('%A, %B %d, %Y')}\n\n")
        if day not in model.diary_entries:
            return [header, ("class:hint", " No entry yet. Press enter to write one.")]
        return [header, ("", state.previews.get(day, ""))]

    calendar_window = Window(
        content=FormattedTextControl(
            lambda: calendar_fragments(state.model), focusable=True),
        width=D.exact(31),
    )
    calendar_view = VSplit([
        calendar_window,
        Window(width=1, char="│", style="class:hint"),
        Window(content=FormattedTextControl(_get_preview), wrap_lines=True),
    ])

    editor_window = Window(
        content=FormattedTextControl(
            lambda: editor_fragments(state.model.editor_state), focusable=True),
        wrap_lines=True,
        style="class:editor",
    )

    def get_main_view():
        if state.model.screen is Screen.EDITOR:
            return editor_window
        return calendar_view

    status_window = VSplit([
        Window(content=FormattedTextControl(
            lambda: status_fragments(state.model, state.notification)), height=1),
        Window(content=FormattedTextControl(
            lambda: [("class:hint", f"{len(state.model.diary_entries.entries)} entries ")]),
            height=1, align=WindowAlign.RIGHT),
    ], style="class:status")

    error_popup = ConditionalContainer(
        Frame(
            Window(FormattedTextControl(
                lambda: [("class:error", f" {state.model.error_message or ''} \n"),
                         ("class:hint", " (esc) dismiss")]),
                wrap_lines=True),
            title="Error",
            width=D(preferred=50, max=70),
        ),
        filter=Condition(lambda: state.model.show_error_popup),
    )

    root = FloatContainer(
        content=HSplit([DynamicContainer(get_main_view), status_window]),
        floats=[Float(content=error_popup)],
    )

    def _sync_focus(app):
        target = editor_window if state.model.screen is Screen.EDITOR else calendar_window
        try:
            app.layout.focus(target)
        except ValueError:
            pass

    # ── Key bindings ─────────────────────────────────────────────────

    kb = KeyBindings()

    @kb.add("escape", eager=True)
    @kb.add(Keys.Any)
    def _(event):
        for key_press in event.key_sequence:
            msg = interpret_key(key_press, state.model)
            if msg is None:
                continue
            if msg is Msg.QUIT:
                event.app.exit()
                return
            for result in dispatch(state.model, storage, msg):
                if isinstance(result, SaveDiarySuccess):
                    state.previews.pop(result.day, None)
                    show_notification(state, "Saved.")
                elif isinstance(result, DeleteDiarySuccess):
                    state.previews.pop(result.day, None)
                    show_notification(state, "Entry deleted.")
        refresh_preview(state)
        _sync_focus(event.app)

    # ── Style ────────────────────────────────────────────────────────

    style = PtStyle.from_dict({
        "": "#e0e0e0 bg:#2a2a2a",
        "title": "#e0e0e0",
        "status": "#8a8a8a bg:#333333",
        "status.mode": "bold #2a2a2a bg:#e0af68",
        "hint": "#777777",
        "error": "#f7768e",
        "editor": "",
        "cursor": "reverse",
        "cursor.insert": "underline",
        "selection": "bg:#444466",
        "search-match": "bg:#665500",
        "calendar.entry": "#7aa2f7",
        "calendar.today": "bold #e0af68",
        "calendar.selected": "reverse",
        "frame.label": "#e0e0e0 bold",
        # Markdown inline styles
        "md.heading-marker": "#666666",
        "md.heading": "bold #e0af68",
        "md.bold": "bold",
        "md.italic": "italic",
        "md.code": "#a0a0a0",
        "md.link": "#7aa2f7",
    })

    # ── Build Application ────────────────────────────────────────────

    layout = Layout(root, focused_element=calendar_window)

    app = Application(
        layout=layout,
        key_bindings=kb,
        style=style,
        full_screen=True,
        mouse_support=False,
    )
    app.ttimeoutlen = 0.05

    return app


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════


def configure_logging() -> None:
    path = os.environ.get("DIARY_LOG")
    if path:
        logging.basicConfig(
            filename=path, level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def main() -> None:
    configure_logging()
    data_dir = default_data_dir()
    log.debug("diary directory: %s", data_dir)
    app = create_app(DiaryStorage(data_dir))
    app.run()


if __name__ == "__main__":
    main()
