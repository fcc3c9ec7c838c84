#!/usr/bin/env python3
# tickr: terminal time tracker for projects, tasks ("tickrs") and categories
#
# Hotkeys
#   h p t w l c   dashboard / projects / tickrs / worked / timeline / categories
#   ?             toggle help
#   Tab           toggle focus between tab bar and content
#   Left/Right    move along the tab bar (tab bar focus), Enter opens the tab
#   Up/Down       move selection, Enter opens the selected item
#   Space         start/stop the selected task (starting stops any other task)
#   s             stop the running task and jump to its project
#   g             go to the project of the task shown in the detail view
#   e             edit the task shown in the detail view
#   n             new task (projects / project tickrs) or new category (categories)
#   d             delete the selected task (asks for confirmation)
#   /             search projects (projects view)
#   Shift+Tab     toggle day/week range (worked / timeline)
#   r             refresh, Esc back, q quit
#
# Command line
#   tickr project add NAME
#   tickr task add PROJECT DESCRIPTION [-s START] [-e END] [-c CATEGORY]
#   tickr task switch|start PROJECT DESCRIPTION
#   tickr category NAME [COLOR]
#   tickr export [-o FILE] [-s START] [-e END]
#
# Config (YAML, default ~/.config/tickr/config.yaml)
#   db_path: ~/.local/share/tickr/tickr.db
#   tick_seconds: 0.25
#   log_level: ERROR
#   log_file: ~/.local/share/tickr/tickr.log
#   style: {"tab.active": "bold #ffd75f"}

from __future__ import annotations

import argparse
import asyncio
import csv
import datetime as dt
import enum
import json
import logging
import os
import random
import sqlite3
import sys
import unicodedata
from contextlib import contextmanager
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

import yaml
from prompt_toolkit import Application
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.containers import ConditionalContainer, Float, FloatContainer
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth
from prompt_toolkit.widgets import Frame

logger = logging.getLogger('tickr')
logger.addHandler(logging.NullHandler())

Fragments = List[Tuple[str, str]]


# -----------------------------
# Config models
# -----------------------------
DEFAULT_CONFIG_PATH = os.path.expanduser("~/.config/tickr/config.yaml")
DEFAULT_STATE_PATH = os.path.expanduser("~/.config/tickr/ui.json")
DEFAULT_TICK_SECONDS = 0.25


def default_db_path() -> str:
    """Database location inside the user's data directory."""
    base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    return os.path.join(base, "tickr", "tickr.db")


@dataclass
class Config:
    db_path: str
    tick_seconds: float = DEFAULT_TICK_SECONDS
    log_level: str = "ERROR"
    log_file: Optional[str] = None
    style: Dict[str, str] = field(default_factory=dict)
    state_path: str = DEFAULT_STATE_PATH


def load_config(path: Optional[str]) -> Config:
    """Read the YAML config at ``path``; a missing file yields the defaults."""
    raw: object = {}
    if path and os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config: top level must be a mapping.")
    db_path = os.path.expanduser(str(raw.get("db_path") or default_db_path()))
    try:
        tick = float(raw.get("tick_seconds", DEFAULT_TICK_SECONDS))
    except (TypeError, ValueError):
        raise ValueError(f"Config: tick_seconds must be a number, got {raw.get('tick_seconds')!r}.")
    if tick <= 0:
        raise ValueError("Config: tick_seconds must be positive.")
    style = raw.get("style") or {}
    if not isinstance(style, dict):
        raise ValueError("Config: 'style' must be a mapping of style class to style string.")
    log_file = raw.get("log_file")
    return Config(
        db_path=db_path,
        tick_seconds=tick,
        log_level=str(raw.get("log_level") or "ERROR"),
        log_file=os.path.expanduser(str(log_file)) if log_file else None,
        style={str(k): str(v) for k, v in style.items()},
        state_path=os.path.expanduser(str(raw.get("state_path") or DEFAULT_STATE_PATH)),
    )


def load_ui_state(path: str) -> dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def save_ui_state(path: str, data: dict) -> None:
    try:
        d = os.path.dirname(path)
        if d and not os.path.isdir(d):
            os.makedirs(d, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
    except OSError:
        logger.warning("Could not save UI state to %s", path, exc_info=True)


def setup_logging(log_path: str, level: str = 'ERROR') -> None:
    """Send the ``tickr`` logger to a rotating file; ``level`` filters the handler."""
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    d = os.path.dirname(log_path)
    if d:
        os.makedirs(d, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = logging.getLevelName(str(level).upper())
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)


# -----------------------------
# Theme
# -----------------------------
BASE_THEME_STYLE: Dict[str, str] = {
    'header': 'bg:#1c1c1c #f0f0f0',
    'header.title': 'bold #000000 bg:#5fafff',
    'header.subtitle': 'bold #87d7ff',
    'tab': '#8a8a8a',
    'tab.active': 'bold #ffd75f',
    'tab.focused': 'reverse bold #ffd75f',
    'title': 'bold #ffd75f',
    'section': 'bold #87d7ff',
    'dim': '#6c6c6c',
    'text': '#f0f0f0',
    'accent': '#ffd75f',
    'highlight': 'bold #5fd7ff',
    'marker': 'bold #ff87d7',
    'success': '#87ff5f',
    'warn': '#ffaf5f',
    'active': 'bold #87ff5f',
    'ended': '#8a8a8a',
    'category': 'bold #d787ff',
    'status': '#ffd787',
    'status.error': 'bold #ff8787',
    'search': 'bold #5fd7af',
    'footer': 'bg:#1c1c1c #d0d0d0',
    'popup': 'bg:#202020 #ffffff',
    'popup.title': 'bold #ffd75f',
    'popup.label': '#8a8a8a',
    'popup.field': '#d7d7d7',
    'popup.field.active': 'bold #ffffff bg:#444444',
    'popup.hint': '#5fd7af',
}


def build_style(overrides: Optional[Dict[str, str]] = None) -> Style:
    style_dict = dict(BASE_THEME_STYLE)
    for key, value in (overrides or {}).items():
        if isinstance(key, str) and isinstance(value, str):
            style_dict[key] = value
    return Style.from_dict(style_dict)


# -----------------------------
# Data model
# -----------------------------
@dataclass
class Project:
    id: Optional[int]
    name: str
    created_at: dt.datetime


@dataclass
class Interval:
    id: Optional[int]
    tickr_id: int
    start: dt.datetime
    end: Optional[dt.datetime] = None  # None while the interval is running

    @property
    def is_open(self) -> bool:
        return self.end is None


@dataclass
class Tickr:
    id: Optional[int]
    project_id: int
    description: str
    category_id: Optional[int] = None
    intervals: List[Interval] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return bool(self.intervals) and self.intervals[-1].end is None


@dataclass
class Category:
    id: int
    name: str
    color: str


@dataclass
class ProjectSummary:
    total_seconds: int = 0
    ended: int = 0
    open: int = 0


class View(enum.Enum):
    DASHBOARD = "Dashboard"
    PROJECTS = "Projects"
    TICKRS = "Tickrs"
    PROJECT_TICKRS = "ProjectTickrs"
    WORKED_PROJECTS = "Worked"
    TIMELINE = "Timeline"
    CATEGORIES = "Categories"
    TICKR_DETAIL = "TickrDetail"
    HELP = "Help"


class FocusMode(enum.Enum):
    TAB_BAR = "tab_bar"
    CONTENT = "content"


class WorkedRange(enum.Enum):
    TODAY = "today"
    WEEK = "week"


class TimelineRange(enum.Enum):
    DAY = "day"
    WEEK = "week"


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).astimezone()


def _iso(value: dt.datetime) -> str:
    return value.isoformat(timespec="seconds")


def _parse_iso(s: Optional[str]) -> Optional[dt.datetime]:
    if not s:
        return None
    try:
        value = dt.datetime.fromisoformat(s)
    except ValueError:
        try:
            value = dt.datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
    if value.tzinfo is None:
        value = value.astimezone()
    return value


def start_of_day(day: dt.date) -> dt.datetime:
    """Local midnight at the start of ``day`` as an aware datetime."""
    return dt.datetime.combine(day, dt.time.min).astimezone()


CATEGORY_PALETTE = [
    "#FF5733", "#33FF57", "#3357FF", "#F333FF", "#33FFF5", "#F5FF33", "#FF33A8",
    "#A833FF", "#33FFA8", "#FFA833", "#FF3380", "#8033FF", "#33FF80", "#FF8033",
]
_HEX_DIGITS = set("0123456789abcdefABCDEF")


def normalize_hex_color(value: Optional[str]) -> Optional[str]:
    """Return ``#RRGGBB`` (uppercase) for 6 hex digits with or without '#', else None."""
    raw = (value or "").strip()
    if raw.startswith('#'):
        raw = raw[1:]
    if len(raw) != 6 or not all(ch in _HEX_DIGITS for ch in raw):
        return None
    return "#" + raw.upper()


def random_color() -> str:
    return random.choice(CATEGORY_PALETTE)


# -----------------------------
# DB
# -----------------------------
class StoreError(Exception):
    """A storage operation failed; the message starts with the failed action."""


class TickrDB:
    SCHEMA_SQL = """
        CREATE TABLE IF NOT EXISTS projects (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            name        TEXT    NOT NULL UNIQUE,
            created_at  TEXT    NOT NULL
        );
        CREATE TABLE IF NOT EXISTS entries (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id  INTEGER NOT NULL,
            description TEXT,
            category_id INTEGER,
            FOREIGN KEY (project_id) REFERENCES projects(id),
            FOREIGN KEY (category_id) REFERENCES categories(id)
        );
        CREATE TABLE IF NOT EXISTS categories (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            name        TEXT    NOT NULL UNIQUE,
            color       TEXT    NOT NULL
        );
        CREATE TABLE IF NOT EXISTS intervals (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            entry_id   INTEGER NOT NULL,
            start_time TEXT    NOT NULL,
            end_time   TEXT,
            FOREIGN KEY (entry_id) REFERENCES entries(id) ON DELETE CASCADE
        );
    """

    def __init__(self, path: str):
        try:
            self.conn = sqlite3.connect(path)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA foreign_keys=ON")
            self._migrate_if_needed()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to open database {path}: {exc}") from exc

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise StoreError(f"{action}: {exc}") from exc

    def _cols(self, table: str) -> List[str]:
        cur = self.conn.cursor()
        cur.execute(f"PRAGMA table_info({table})")
        return [r[1] for r in cur.fetchall()]

    def _idx(self):
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_project ON entries(project_id)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_intervals_entry ON intervals(entry_id)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_intervals_open ON intervals(end_time)")
        self.conn.commit()

    def _migrate_if_needed(self):
        self.conn.executescript(self.SCHEMA_SQL)
        # databases created before categories existed lack entries.category_id
        if "category_id" not in self._cols("entries"):
            self.conn.execute("ALTER TABLE entries ADD COLUMN category_id INTEGER")
            self.conn.commit()
        self._idx()

    # --- projects ---
    @staticmethod
    def _project_from_row(row) -> Project:
        pid, name, created_at = row
        return Project(id=pid, name=name, created_at=_parse_iso(created_at) or _now())

    @staticmethod
    def _sort_projects(projects: Iterable[Project]) -> List[Project]:
        return sorted(projects, key=lambda p: (p.name.lower(), p.id or 0))

    def list_projects(self) -> List[Project]:
        with self._guard("Failed to load projects"):
            rows = self.conn.execute("SELECT id, name, created_at FROM projects").fetchall()
        return self._sort_projects(self._project_from_row(r) for r in rows)

    def search_projects(self, query: str) -> List[Project]:
        pattern = "%" + query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        with self._guard("Failed to search projects"):
            rows = self.conn.execute(
                "SELECT id, name, created_at FROM projects WHERE name LIKE ? ESCAPE '\\'",
                (pattern,),
            ).fetchall()
        return self._sort_projects(self._project_from_row(r) for r in rows)

    def get_project(self, project_id: int) -> Optional[Project]:
        with self._guard("Failed to load project"):
            row = self.conn.execute(
                "SELECT id, name, created_at FROM projects WHERE id=?", (project_id,)
            ).fetchone()
        return self._project_from_row(row) if row else None

    def get_project_by_name(self, name: str) -> Optional[Project]:
        with self._guard("Failed to load project"):
            row = self.conn.execute(
                "SELECT id, name, created_at FROM projects WHERE name=?", (name,)
            ).fetchone()
        return self._project_from_row(row) if row else None

    def create_project(self, name: str) -> Project:
        created = _now()
        with self._guard(f"Failed to create project '{name}'"):
            cur = self.conn.execute(
                "INSERT INTO projects(name, created_at) VALUES (?, ?)", (name, _iso(created))
            )
            self.conn.commit()
        return Project(id=cur.lastrowid, name=name, created_at=created)

    def worked_on(self, start: dt.datetime, end: dt.datetime) -> List[Project]:
        """Projects with at least one interval starting in ``[start, end)``."""
        with self._guard("Failed to load worked projects"):
            rows = self.conn.execute(
                """
                SELECT p.id, p.name, p.created_at, i.start_time
                FROM projects p
                JOIN entries e ON e.project_id = p.id
                JOIN intervals i ON i.entry_id = e.id
                """
            ).fetchall()
        found: Dict[int, Project] = {}
        for pid, name, created_at, started_at in rows:
            st = _parse_iso(started_at)
            if st is None or pid in found:
                continue
            if start <= st < end:
                found[pid] = self._project_from_row((pid, name, created_at))
        return self._sort_projects(found.values())

    # --- tasks ---
    def _attach_intervals(self, tickrs: List[Tickr]) -> None:
        by_id = {t.id: t for t in tickrs if t.id is not None}
        ids = list(by_id)
        chunk_size = 200
        for idx in range(0, len(ids), chunk_size):
            subset = ids[idx:idx + chunk_size]
            placeholders = ",".join(["?"] * len(subset))
            rows = self.conn.execute(
                f"SELECT id, entry_id, start_time, end_time FROM intervals "
                f"WHERE entry_id IN ({placeholders}) ORDER BY id",
                subset,
            ).fetchall()
            for iid, entry_id, started_at, ended_at in rows:
                st = _parse_iso(started_at)
                if st is None:
                    logger.warning("Skipping interval %s with unreadable start %r", iid, started_at)
                    continue
                en = _parse_iso(ended_at)
                if ended_at is not None and en is None:
                    logger.warning("Skipping interval %s with unreadable end %r", iid, ended_at)
                    continue
                by_id[entry_id].intervals.append(Interval(id=iid, tickr_id=entry_id, start=st, end=en))

    @staticmethod
    def _tickr_from_row(row) -> Tickr:
        tid, project_id, description, category_id = row
        return Tickr(id=tid, project_id=project_id, description=description or "", category_id=category_id)

    def list_tasks(self, project_id: Optional[int] = None) -> List[Tickr]:
        """All tasks (``project_id`` None) or those of one project, in insertion order."""
        with self._guard("Failed to load tasks"):
            if project_id is None:
                rows = self.conn.execute(
                    "SELECT id, project_id, description, category_id FROM entries ORDER BY id"
                ).fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT id, project_id, description, category_id FROM entries "
                    "WHERE project_id=? ORDER BY id",
                    (project_id,),
                ).fetchall()
            tickrs = [self._tickr_from_row(r) for r in rows]
            self._attach_intervals(tickrs)
        return tickrs

    def get_task(self, task_id: int) -> Optional[Tickr]:
        with self._guard("Failed to load task"):
            row = self.conn.execute(
                "SELECT id, project_id, description, category_id FROM entries WHERE id=?", (task_id,)
            ).fetchone()
            if not row:
                return None
            tickr = self._tickr_from_row(row)
            self._attach_intervals([tickr])
        return tickr

    def create_task(self, project_id: int, label: str, category_id: Optional[int] = None) -> Tickr:
        with self._guard("Failed to create task"):
            cur = self.conn.execute(
                "INSERT INTO entries(project_id, description, category_id) VALUES (?,?,?)",
                (project_id, label, category_id),
            )
            self.conn.commit()
        return Tickr(id=cur.lastrowid, project_id=project_id, description=label, category_id=category_id)

    def update_task(self, task_id: int, label: str, category_id: Optional[int]) -> bool:
        """Returns False when no task has ``task_id``."""
        with self._guard("Failed to update task"):
            cur = self.conn.execute(
                "UPDATE entries SET description=?, category_id=? WHERE id=?",
                (label, category_id, task_id),
            )
            self.conn.commit()
        return cur.rowcount > 0

    def delete_task(self, task_id: int) -> None:
        with self._guard("Failed to delete task"):
            self.conn.execute("DELETE FROM intervals WHERE entry_id=?", (task_id,))
            self.conn.execute("DELETE FROM entries WHERE id=?", (task_id,))
            self.conn.commit()

    # --- intervals ---
    def start_interval(self, task_id: int, at: Optional[dt.datetime] = None) -> bool:
        """Open an interval on ``task_id``; returns False if one is already open."""
        with self._guard("Failed to start task"):
            cur = self.conn.cursor()
            # Avoid duplicate open intervals for the same task
            cur.execute("SELECT 1 FROM intervals WHERE entry_id=? AND end_time IS NULL LIMIT 1", (task_id,))
            if cur.fetchone():
                return False
            cur.execute(
                "INSERT INTO intervals(entry_id, start_time, end_time) VALUES (?,?,NULL)",
                (task_id, _iso(at or _now())),
            )
            self.conn.commit()
        return True

    def end_open_interval(self, task_id: int, at: Optional[dt.datetime] = None) -> int:
        """Close the open interval(s) of ``task_id``; returns how many were closed."""
        with self._guard("Failed to stop task"):
            cur = self.conn.execute(
                "UPDATE intervals SET end_time=? WHERE entry_id=? AND end_time IS NULL",
                (_iso(at or _now()), task_id),
            )
            self.conn.commit()
        return cur.rowcount

    def add_interval(self, task_id: int, start: dt.datetime, end: Optional[dt.datetime] = None) -> Interval:
        with self._guard("Failed to record interval"):
            cur = self.conn.execute(
                "INSERT INTO intervals(entry_id, start_time, end_time) VALUES (?,?,?)",
                (task_id, _iso(start), _iso(end) if end else None),
            )
            self.conn.commit()
        return Interval(id=cur.lastrowid, tickr_id=task_id, start=start, end=end)

    def running_task_ids(self) -> List[int]:
        with self._guard("Failed to load running tasks"):
            rows = self.conn.execute(
                "SELECT DISTINCT entry_id FROM intervals WHERE end_time IS NULL ORDER BY entry_id"
            ).fetchall()
        return [r[0] for r in rows]

    # --- categories ---
    def list_categories(self) -> List[Category]:
        with self._guard("Failed to load categories"):
            rows = self.conn.execute("SELECT id, name, color FROM categories").fetchall()
        return sorted((Category(*r) for r in rows), key=lambda c: (c.name.lower(), c.id))

    def get_category(self, category_id: int) -> Optional[Category]:
        with self._guard("Failed to load category"):
            row = self.conn.execute(
                "SELECT id, name, color FROM categories WHERE id=?", (category_id,)
            ).fetchone()
        return Category(*row) if row else None

    def get_category_by_name(self, name: str) -> Optional[Category]:
        with self._guard("Failed to load category"):
            row = self.conn.execute(
                "SELECT id, name, color FROM categories WHERE name=?", (name,)
            ).fetchone()
        return Category(*row) if row else None

    def create_category(self, name: str, color: str) -> Category:
        with self._guard(f"Failed to create category '{name}'"):
            cur = self.conn.execute("INSERT INTO categories(name, color) VALUES (?,?)", (name, color))
            self.conn.commit()
        return Category(id=cur.lastrowid, name=name, color=color)


# -----------------------------
# Time aggregation
# -----------------------------
def interval_seconds(interval: Interval, now: dt.datetime) -> int:
    end = interval.end if interval.end is not None else now
    return max(0, int((end - interval.start).total_seconds()))


def elapsed_seconds(tickr: Tickr, now: dt.datetime) -> int:
    return sum(interval_seconds(iv, now) for iv in tickr.intervals)


def running_seconds(tickr: Tickr, now: dt.datetime) -> int:
    """Length of the open interval so far; 0 when the task is stopped."""
    if not tickr.is_running:
        return 0
    return interval_seconds(tickr.intervals[-1], now)


def running_tickr(tickrs: Iterable[Tickr]) -> Optional[Tickr]:
    """First task whose most recent interval is still open."""
    for tickr in tickrs:
        if tickr.is_running:
            return tickr
    return None


def project_summaries(tickrs: Iterable[Tickr]) -> Dict[int, ProjectSummary]:
    """Closed seconds plus ended/open task counts per project id.

    Open intervals contribute no seconds. A task with no intervals counts as open.
    """
    summaries: Dict[int, ProjectSummary] = {}
    for tickr in tickrs:
        summary = summaries.setdefault(tickr.project_id, ProjectSummary())
        for iv in tickr.intervals:
            if iv.end is not None:
                summary.total_seconds += max(0, int((iv.end - iv.start).total_seconds()))
        last = tickr.intervals[-1] if tickr.intervals else None
        if last is not None and last.end is not None:
            summary.ended += 1
        else:
            summary.open += 1
    return summaries


@dataclass
class DaySummary:
    total_seconds: int = 0
    tickrs: int = 0
    projects: int = 0


def today_summary(tickrs: Iterable[Tickr], now: dt.datetime) -> DaySummary:
    """Time and task/project counts for intervals that started today (local)."""
    day_start = start_of_day(now.astimezone().date())
    summary = DaySummary()
    projects: Set[int] = set()
    for tickr in tickrs:
        todays = [iv for iv in tickr.intervals if iv.start >= day_start]
        if not todays:
            continue
        summary.tickrs += 1
        projects.add(tickr.project_id)
        summary.total_seconds += sum(interval_seconds(iv, now) for iv in todays)
    summary.projects = len(projects)
    return summary


def worked_window(rng: WorkedRange, now: dt.datetime) -> Tuple[dt.datetime, dt.datetime]:
    """``[start, end)`` for the worked-projects list: today, or the last 7 days."""
    today = now.astimezone().date()
    end = start_of_day(today + dt.timedelta(days=1))
    if rng == WorkedRange.WEEK:
        return start_of_day(today - dt.timedelta(days=6)), end
    return start_of_day(today), end


def timeline_days(rng: TimelineRange, now: dt.datetime) -> List[dt.date]:
    today = now.astimezone().date()
    if rng == TimelineRange.WEEK:
        return [today - dt.timedelta(days=offset) for offset in range(6, -1, -1)]
    return [today]


@dataclass
class DayTimeline:
    day: dt.date
    hours: List[int] = field(default_factory=lambda: [0] * 24)

    @property
    def total_seconds(self) -> int:
        return sum(self.hours)


def day_timelines(tickrs: Sequence[Tickr], days: Sequence[dt.date], now: dt.datetime) -> List[DayTimeline]:
    """Seconds worked in each local hour of each day; open intervals run to ``now``."""
    out: List[DayTimeline] = []
    for day in days:
        timeline = DayTimeline(day=day)
        day_start = start_of_day(day)
        for hour in range(24):
            h_start = day_start + dt.timedelta(hours=hour)
            h_end = h_start + dt.timedelta(hours=1)
            total = 0
            for tickr in tickrs:
                for iv in tickr.intervals:
                    iv_end = iv.end if iv.end is not None else now
                    overlap = (min(iv_end, h_end) - max(iv.start, h_start)).total_seconds()
                    if overlap > 0:
                        total += int(overlap)
            timeline.hours[hour] = min(total, 3600)
        out.append(timeline)
    return out


def hour_fill(seconds: int) -> str:
    if seconds <= 0:
        return "."
    if seconds < 15 * 60:
        return ":"
    if seconds < 30 * 60:
        return "="
    if seconds < 45 * 60:
        return "+"
    return "#"


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


# -----------------------------
# Events and keys
# -----------------------------
@dataclass(frozen=True)
class Tick:
    """Periodic wake-up from the UI loop."""


@dataclass(frozen=True)
class KeyPress:
    key: str


AppEvent = Union[Tick, KeyPress]

KEY_UP = 'up'
KEY_DOWN = 'down'
KEY_LEFT = 'left'
KEY_RIGHT = 'right'
KEY_ENTER = 'enter'
KEY_ESCAPE = 'escape'
KEY_TAB = 'tab'
KEY_BACKTAB = 's-tab'
KEY_BACKSPACE = 'backspace'
KEY_DELETE = 'delete'
NAMED_KEYS = (
    KEY_UP, KEY_DOWN, KEY_LEFT, KEY_RIGHT, KEY_ENTER, KEY_ESCAPE,
    KEY_TAB, KEY_BACKTAB, KEY_BACKSPACE, KEY_DELETE,
)


def _is_text(key: str) -> bool:
    return len(key) == 1 and key.isprintable()


class NavigationError(RuntimeError):
    """A context view was requested without the context it displays."""


# -----------------------------
# Views
# -----------------------------
@dataclass(frozen=True)
class ViewSpec:
    loader: str                    # AppState method that reloads the view
    cursor: Optional[str] = None   # selection key for list views
    items: Optional[str] = None    # AppState attribute holding the listed items
    tab: Optional[View] = None     # tab highlighted while the view is shown
    context: Optional[str] = None  # AppState attribute that must be set first


VIEW_TABLE: Dict[View, ViewSpec] = {
    View.DASHBOARD: ViewSpec('_load_dashboard', tab=View.DASHBOARD),
    View.PROJECTS: ViewSpec('_load_projects', 'projects', 'projects', View.PROJECTS),
    View.TICKRS: ViewSpec('_load_tickrs', 'tickrs', 'tickrs', View.TICKRS),
    View.PROJECT_TICKRS: ViewSpec('_load_project_tickrs', 'tickrs', 'tickrs', View.TICKRS, 'selected_project'),
    View.WORKED_PROJECTS: ViewSpec('_load_worked_projects', 'worked', 'worked_projects', View.WORKED_PROJECTS),
    View.TIMELINE: ViewSpec('_load_timeline', tab=View.TIMELINE),
    View.CATEGORIES: ViewSpec('_load_categories', 'categories', 'categories_list', View.CATEGORIES),
    View.TICKR_DETAIL: ViewSpec('_load_tickr_detail', tab=View.TICKRS, context='selected_tickr'),
    View.HELP: ViewSpec('_load_nothing'),
}

TABS: List[View] = [
    View.DASHBOARD, View.PROJECTS, View.TICKRS,
    View.WORKED_PROJECTS, View.TIMELINE, View.CATEGORIES,
]

# list attribute each cursor indexes into
CURSOR_ITEMS = {
    'projects': 'projects',
    'tickrs': 'tickrs',
    'worked': 'worked_projects',
    'categories': 'categories_list',
}

SHORTCUTS: Dict[str, View] = {
    'h': View.DASHBOARD,
    'p': View.PROJECTS,
    't': View.TICKRS,
    'w': View.WORKED_PROJECTS,
    'l': View.TIMELINE,
    'c': View.CATEGORIES,
}


class Selection:
    """Cursor into one list; moves wrap around and reloads clamp it."""

    def __init__(self, index: int = 0):
        self.index = index

    def move_up(self, length: int) -> None:
        if length <= 0:
            self.index = 0
            return
        self.index = (self.index - 1) % length

    def move_down(self, length: int) -> None:
        if length <= 0:
            self.index = 0
            return
        self.index = (self.index + 1) % length

    def clamp(self, length: int) -> None:
        if length <= 0 or self.index < 0:
            self.index = 0
        elif self.index >= length:
            self.index = length - 1


class Navigator:
    """Current view, back history and tab-bar state."""

    def __init__(self, view: View = View.DASHBOARD):
        self.view = view
        self.history: List[View] = []
        self.focus = FocusMode.CONTENT
        self.tab_index = 0
        self.sync_tab()

    def push(self, view: View) -> bool:
        if view == self.view:
            return False
        self.history.append(self.view)
        self.view = view
        self.sync_tab()
        return True

    def pop(self, usable: Callable[[View], bool]) -> Optional[View]:
        """Return to the most recent history entry accepted by ``usable``."""
        while self.history:
            previous = self.history.pop()
            if usable(previous):
                self.view = previous
                self.sync_tab()
                return previous
            logger.debug("Skipping %s in history, its context is gone", previous.value)
        return None

    def sync_tab(self) -> None:
        tab = VIEW_TABLE[self.view].tab
        if tab is not None:
            self.tab_index = TABS.index(tab)

    def cycle_tab(self, delta: int) -> None:
        self.tab_index = (self.tab_index + delta) % len(TABS)

    @property
    def selected_tab(self) -> View:
        return TABS[self.tab_index]

    def toggle_focus(self) -> None:
        self.focus = FocusMode.CONTENT if self.focus == FocusMode.TAB_BAR else FocusMode.TAB_BAR


# -----------------------------
# Popups
# -----------------------------
class PopupAction(enum.Enum):
    SUBMIT = "submit"
    CANCEL = "cancel"


@dataclass
class CategoryOption:
    id: Optional[int]
    name: str
    color: Optional[str] = None


@dataclass
class ProjectOption:
    id: int
    name: str


def category_options(categories: Iterable[Category]) -> List[CategoryOption]:
    """Category choices for a popup, with "none" first."""
    return [CategoryOption(None, "none")] + [CategoryOption(c.id, c.name, c.color) for c in categories]


def _cycle(index: int, length: int, delta: int) -> int:
    if length <= 0:
        return 0
    return (index + delta) % length


def _edit_text(text: str, key: str) -> str:
    if key in (KEY_BACKSPACE, KEY_DELETE):
        return text[:-1]
    if _is_text(key):
        return text + key
    return text


@dataclass
class EditTickrPopup:
    tickr_id: int
    label: str
    categories: List[CategoryOption]
    category_index: int = 0

    title = "Edit task"

    @property
    def selected_category_id(self) -> Optional[int]:
        if not self.categories:
            return None
        return self.categories[self.category_index].id

    def handle_key(self, key: str) -> Optional[PopupAction]:
        if key == KEY_ESCAPE:
            return PopupAction.CANCEL
        if key == KEY_ENTER:
            return PopupAction.SUBMIT
        if key == KEY_UP:
            self.category_index = _cycle(self.category_index, len(self.categories), -1)
        elif key == KEY_DOWN:
            self.category_index = _cycle(self.category_index, len(self.categories), 1)
        else:
            self.label = _edit_text(self.label, key)
        return None


class CategoryField(enum.Enum):
    NAME = "name"
    COLOR = "color"


@dataclass
class NewCategoryPopup:
    name: str = ""
    color: str = ""
    field: CategoryField = CategoryField.NAME

    title = "New category"

    def handle_key(self, key: str) -> Optional[PopupAction]:
        if key == KEY_ESCAPE:
            return PopupAction.CANCEL
        if key == KEY_ENTER:
            return PopupAction.SUBMIT
        if key in (KEY_TAB, KEY_BACKTAB):
            self.field = CategoryField.COLOR if self.field == CategoryField.NAME else CategoryField.NAME
        elif self.field == CategoryField.NAME:
            self.name = _edit_text(self.name, key)
        else:
            self.color = _edit_text(self.color, key)
        return None


class NewTickrField(enum.Enum):
    LABEL = "label"
    PROJECT = "project"
    CATEGORY = "category"
    START_NOW = "start_now"


NEW_TICKR_FIELDS = list(NewTickrField)


@dataclass
class NewTickrPopup:
    projects: List[ProjectOption]
    categories: List[CategoryOption]
    label: str = ""
    project_index: int = 0
    category_index: int = 0
    start_now: bool = True
    field: NewTickrField = NewTickrField.LABEL

    title = "New task"

    @property
    def selected_project(self) -> Optional[ProjectOption]:
        if not self.projects:
            return None
        return self.projects[self.project_index]

    @property
    def selected_category_id(self) -> Optional[int]:
        if not self.categories:
            return None
        return self.categories[self.category_index].id

    def handle_key(self, key: str) -> Optional[PopupAction]:
        if key == KEY_ESCAPE:
            return PopupAction.CANCEL
        if key == KEY_ENTER:
            return PopupAction.SUBMIT
        if key in (KEY_TAB, KEY_BACKTAB):
            step = 1 if key == KEY_TAB else -1
            pos = NEW_TICKR_FIELDS.index(self.field)
            self.field = NEW_TICKR_FIELDS[(pos + step) % len(NEW_TICKR_FIELDS)]
        elif key in (KEY_UP, KEY_DOWN):
            step = -1 if key == KEY_UP else 1
            if self.field == NewTickrField.PROJECT:
                self.project_index = _cycle(self.project_index, len(self.projects), step)
            elif self.field == NewTickrField.CATEGORY:
                self.category_index = _cycle(self.category_index, len(self.categories), step)
        elif self.field == NewTickrField.START_NOW:
            if key == ' ':
                self.start_now = not self.start_now
        elif self.field == NewTickrField.LABEL:
            self.label = _edit_text(self.label, key)
        return None


@dataclass
class ConfirmPopup:
    message: str
    on_confirm: Callable[[], None]

    title = "Confirm"

    def handle_key(self, key: str) -> Optional[PopupAction]:
        if key in ('y', 'Y', KEY_ENTER):
            return PopupAction.SUBMIT
        if key in ('n', 'N', KEY_ESCAPE):
            return PopupAction.CANCEL
        return None


Popup = Union[EditTickrPopup, NewCategoryPopup, NewTickrPopup, ConfirmPopup]


# -----------------------------
# Timer
# -----------------------------
class TimerTracker:
    """Keeps at most one task interval open across the store."""

    def __init__(self, store: TickrDB):
        self.store = store
        self.running_id: Optional[int] = None
        self.running: Optional[Tickr] = None

    def sync(self, tickrs: Iterable[Tickr]) -> Optional[int]:
        current = running_tickr(tickrs)
        self.running = current
        self.running_id = current.id if current is not None else None
        return self.running_id

    def stop(self, tickr_id: int, at: Optional[dt.datetime] = None) -> None:
        closed = self.store.end_open_interval(tickr_id, at=at or _now())
        if self.running_id == tickr_id:
            self.running_id = None
            self.running = None
        if closed:
            logger.info("Stopped task %s", tickr_id)

    def switch_to(self, tickr_id: int) -> None:
        """Stop every other running task, then start ``tickr_id``.

        Stops are committed one at a time. A failed stop raises before the
        target is started, but tasks stopped before it stay stopped.
        """
        now = _now()
        others = [tid for tid in self.store.running_task_ids() if tid != tickr_id]
        if self.running_id is not None and self.running_id != tickr_id and self.running_id not in others:
            others.insert(0, self.running_id)
        for other in others:
            self.stop(other, at=now)
        self.store.start_interval(tickr_id, at=now)
        self.running_id = tickr_id
        logger.info("Started task %s", tickr_id)

    def toggle(self, tickr: Tickr) -> bool:
        """Stop ``tickr`` if it is the running task, else switch to it. True if now running."""
        if tickr.id is None:
            raise ValueError("cannot time a task without an id")
        if tickr.is_running and tickr.id == self.running_id:
            self.stop(tickr.id)
            return False
        self.switch_to(tickr.id)
        return True


# -----------------------------
# Application state
# -----------------------------
class AppState:
    """Everything the UI shows, advanced one event at a time by :meth:`update`."""

    def __init__(self, store: TickrDB, status: Optional[str] = None, prefs: Optional[dict] = None):
        self.store = store
        self.running = True
        self.nav = Navigator()
        self.timer = TimerTracker(store)
        self.projects: List[Project] = []
        self.worked_projects: List[Project] = []
        self.tickrs: List[Tickr] = []
        self.categories_list: List[Category] = []
        self.categories: Dict[int, Category] = {}
        self.project_summaries: Dict[int, ProjectSummary] = {}
        self.selections: Dict[str, Selection] = {name: Selection() for name in CURSOR_ITEMS}
        self.selected_project: Optional[Project] = None
        self.selected_tickr: Optional[Tickr] = None
        self.selected_tickr_project_name: Optional[str] = None
        self.tickr_detail_parent = View.TICKRS
        self.running_project_name: Optional[str] = None
        self.worked_range = WorkedRange.TODAY
        self.timeline_range = TimelineRange.DAY
        self.search_query = ""
        self.search_active = False
        self.popup: Optional[Popup] = None
        self.status = status
        self._apply_prefs(prefs or {})
        self._sync_running()
        self._load_view()

    # --- convenience accessors ---
    @property
    def view(self) -> View:
        return self.nav.view

    @property
    def history(self) -> List[View]:
        return self.nav.history

    @property
    def running_tickr_id(self) -> Optional[int]:
        return self.timer.running_id

    @property
    def running_tickr(self) -> Optional[Tickr]:
        return self.timer.running

    def cursor(self, name: str) -> int:
        return self.selections[name].index

    def _current(self, name: str):
        items = getattr(self, CURSOR_ITEMS[name])
        index = self.selections[name].index
        return items[index] if 0 <= index < len(items) else None

    def current_tickr(self) -> Optional[Tickr]:
        if self.nav.view == View.TICKR_DETAIL:
            return self.selected_tickr
        if self.nav.view in (View.TICKRS, View.PROJECT_TICKRS):
            return self._current('tickrs')
        return None

    def project_name(self, project_id: int) -> Optional[str]:
        for project in self.projects:
            if project.id == project_id:
                return project.name
        try:
            project = self.store.get_project(project_id)
        except StoreError as exc:
            logger.warning("%s", exc)
            return None
        return project.name if project else None

    # --- preferences ---
    def _apply_prefs(self, prefs: dict) -> None:
        try:
            self.worked_range = WorkedRange(prefs.get('worked_range', self.worked_range.value))
        except ValueError:
            pass
        try:
            self.timeline_range = TimelineRange(prefs.get('timeline_range', self.timeline_range.value))
        except ValueError:
            pass
        try:
            view = View(prefs.get('view', View.DASHBOARD.value))
        except ValueError:
            view = View.DASHBOARD
        if view in TABS:
            self.nav.view = view
            self.nav.sync_tab()

    def prefs(self) -> dict:
        tab = VIEW_TABLE[self.nav.view].tab or TABS[self.nav.tab_index]
        return {
            'view': tab.value,
            'worked_range': self.worked_range.value,
            'timeline_range': self.timeline_range.value,
        }

    # --- events ---
    def update(self, event: AppEvent) -> None:
        if isinstance(event, Tick):
            self._on_tick()
        elif isinstance(event, KeyPress):
            self.handle_key(event.key)

    def _on_tick(self) -> None:
        if self.timer.running_id is None:
            return
        self._sync_running()
        self._load_view()

    def handle_key(self, key: str) -> None:
        if self.popup is not None:
            self._handle_popup_key(key)
            return
        if self.search_active:
            self._handle_search_key(key)
            return
        if key in SHORTCUTS:
            self._shortcut(SHORTCUTS[key])
            return
        action = _KEY_ACTIONS.get(key)
        if action is not None:
            getattr(self, action)()

    def _shortcut(self, view: View) -> None:
        if not self.navigate_to(view):
            self.status = None
            self._load_view()
        if view == View.TICKRS:
            self.selected_tickr = None
            self.selected_tickr_project_name = None
        elif view == View.WORKED_PROJECTS:
            self.selected_project = None

    def quit(self) -> None:
        self.running = False

    def toggle_help(self) -> None:
        if self.nav.view == View.HELP:
            self.go_back()
        else:
            self.navigate_to(View.HELP)

    def toggle_focus(self) -> None:
        self.nav.toggle_focus()

    def toggle_range(self) -> None:
        if self.nav.view == View.WORKED_PROJECTS:
            self.worked_range = WorkedRange.WEEK if self.worked_range == WorkedRange.TODAY else WorkedRange.TODAY
            self._load_worked_projects()
        elif self.nav.view == View.TIMELINE:
            self.timeline_range = TimelineRange.WEEK if self.timeline_range == TimelineRange.DAY else TimelineRange.DAY
            self._load_timeline()

    def refresh(self) -> None:
        self.status = None
        self._load_view()

    def tab_left(self) -> None:
        if self.nav.focus == FocusMode.TAB_BAR:
            self.nav.cycle_tab(-1)

    def tab_right(self) -> None:
        if self.nav.focus == FocusMode.TAB_BAR:
            self.nav.cycle_tab(1)

    def move_up(self) -> None:
        self._move(-1)

    def move_down(self) -> None:
        self._move(1)

    def _move(self, delta: int) -> None:
        if self.nav.focus != FocusMode.CONTENT:
            return
        spec = VIEW_TABLE[self.nav.view]
        if spec.cursor is None:
            return
        selection = self.selections[spec.cursor]
        length = len(getattr(self, spec.items))
        if delta < 0:
            selection.move_up(length)
        else:
            selection.move_down(length)

    def activate(self) -> None:
        if self.nav.focus == FocusMode.TAB_BAR:
            tab = self.nav.selected_tab
            if not self.navigate_to(tab):
                self._load_view()
            self.nav.focus = FocusMode.CONTENT
            return
        self.open_selected()

    def open_selected(self) -> None:
        view = self.nav.view
        if view == View.PROJECTS:
            project = self._current('projects')
            if project is not None:
                self.enter_project_tickrs(project)
        elif view in (View.TICKRS, View.PROJECT_TICKRS):
            tickr = self._current('tickrs')
            if tickr is not None:
                self.enter_tickr_detail(tickr)
        elif view == View.WORKED_PROJECTS:
            project = self._current('worked')
            if project is not None and project.id is not None:
                self.go_to_project(project.id)

    def start_search(self) -> None:
        if self.nav.view == View.PROJECTS:
            self.search_active = True

    def _handle_search_key(self, key: str) -> None:
        if self.nav.view != View.PROJECTS:
            self.search_active = False
            return
        if key == KEY_ESCAPE:
            self.search_active = False
            self.search_query = ""
        elif key == KEY_ENTER:
            self.search_active = False
        elif key in (KEY_BACKSPACE, KEY_DELETE) or _is_text(key):
            self.search_query = _edit_text(self.search_query, key)
        else:
            return
        self._load_projects()

    # --- navigation ---
    def _has_context(self, view: View) -> bool:
        context = VIEW_TABLE[view].context
        return context is None or getattr(self, context) is not None

    def navigate_to(self, view: View) -> bool:
        """Switch to ``view`` and reload it; False when already there."""
        if not self._has_context(view):
            message = f"{view.value} view opened without {VIEW_TABLE[view].context}"
            logger.error(message)
            if __debug__:
                raise NavigationError(message)
            return False
        if not self.nav.push(view):
            return False
        if view != View.PROJECTS:
            self.search_active = False
        self.status = None
        self._load_view()
        return True

    def enter_project_tickrs(self, project: Project) -> None:
        self.selected_project = project
        if not self.navigate_to(View.PROJECT_TICKRS):
            self._load_view()

    def enter_tickr_detail(self, tickr: Tickr) -> None:
        self.selected_tickr = tickr
        self.selected_tickr_project_name = self.project_name(tickr.project_id)
        if self.nav.view in (View.TICKRS, View.PROJECT_TICKRS):
            self.tickr_detail_parent = self.nav.view
        if not self.navigate_to(View.TICKR_DETAIL):
            self._load_view()

    def go_back(self) -> None:
        previous = self.nav.pop(self._has_context)
        self.status = None
        if previous is None:
            return
        if previous != View.PROJECTS:
            self.search_active = False
        self._load_view()

    def go_to_project(self, project_id: int, highlight: Optional[int] = None) -> bool:
        """Open the tickr list of ``project_id``, optionally putting the cursor on ``highlight``."""
        try:
            project = self.store.get_project(project_id)
        except StoreError as exc:
            self._fail(exc)
            return False
        if project is None:
            self.status = "Project not found."
            return False
        self._load_projects()
        for index, candidate in enumerate(self.projects):
            if candidate.id == project.id:
                self.selections['projects'].index = index
                break
        self.enter_project_tickrs(project)
        if highlight is not None:
            for index, tickr in enumerate(self.tickrs):
                if tickr.id == highlight:
                    self.selections['tickrs'].index = index
                    break
        self.selected_tickr = None
        self.selected_tickr_project_name = None
        self.status = None
        return True

    def jump_to_project(self) -> None:
        if self.nav.view != View.TICKR_DETAIL or self.selected_tickr is None:
            return
        tickr = self.selected_tickr
        self.go_to_project(tickr.project_id, highlight=tickr.id)

    # --- timer ---
    def toggle_selected(self) -> None:
        tickr = self.current_tickr()
        if tickr is None or tickr.id is None:
            self.status = "No task selected."
            return
        try:
            started = self.timer.toggle(tickr)
        except StoreError as exc:
            self._fail(exc)
            return
        self._sync_running()
        self._load_view()
        verb = "Started" if started else "Stopped"
        self.status = f"{verb} '{tickr.description}'."

    def stop_running(self) -> None:
        try:
            tickrs = self.store.list_tasks()
        except StoreError as exc:
            self._fail(exc)
            return
        self._sync_running(tickrs)
        tickr = self.timer.running
        if tickr is None or tickr.id is None:
            self.status = "No task running."
            return
        try:
            self.timer.stop(tickr.id)
        except StoreError as exc:
            self._fail(exc)
            return
        if self.go_to_project(tickr.project_id, highlight=tickr.id):
            self.status = f"Stopped '{tickr.description}'."
        else:
            self._sync_running()

    # --- popups ---
    def open_new(self) -> None:
        if self.nav.view in (View.PROJECTS, View.PROJECT_TICKRS):
            self.open_new_tickr_popup()
        elif self.nav.view == View.CATEGORIES:
            self.open_new_category_popup()

    def open_edit_popup(self) -> None:
        if self.nav.view != View.TICKR_DETAIL:
            return
        tickr = self.selected_tickr
        if tickr is None:
            self.status = "No task selected."
            return
        if tickr.id is None:
            self.status = "Selected task has no id."
            return
        try:
            options = category_options(self.store.list_categories())
        except StoreError as exc:
            self._fail(exc)
            return
        index = next((i for i, opt in enumerate(options) if opt.id == tickr.category_id), 0)
        self._open_popup(EditTickrPopup(tickr.id, tickr.description, options, index))

    def open_new_category_popup(self) -> None:
        if self.nav.view == View.CATEGORIES:
            self._open_popup(NewCategoryPopup())

    def open_new_tickr_popup(self) -> None:
        if self.nav.view not in (View.PROJECTS, View.PROJECT_TICKRS):
            return
        try:
            projects = [ProjectOption(p.id, p.name) for p in self.store.list_projects() if p.id is not None]
            categories = category_options(self.store.list_categories())
        except StoreError as exc:
            self._fail(exc)
            return
        if not projects:
            self.status = "No projects available."
            return
        preferred: Optional[int] = None
        if self.nav.view == View.PROJECT_TICKRS and self.selected_project is not None:
            preferred = self.selected_project.id
        elif self.nav.view == View.PROJECTS:
            current = self._current('projects')
            preferred = current.id if current is not None else None
        index = next((i for i, opt in enumerate(projects) if opt.id == preferred), 0)
        self._open_popup(NewTickrPopup(projects=projects, categories=categories, project_index=index))

    def open_delete_confirm(self) -> None:
        tickr = self.current_tickr()
        if tickr is None or tickr.id is None:
            self.status = "No task selected."
            return
        count = len(tickr.intervals)
        noun = "interval" if count == 1 else "intervals"
        self._open_popup(ConfirmPopup(
            message=f"Delete task '{tickr.description}' and its {count} {noun}?",
            on_confirm=lambda: self._delete_tickr(tickr),
        ))

    def _open_popup(self, popup: Popup) -> None:
        self.status = None
        self.popup = popup

    def _handle_popup_key(self, key: str) -> None:
        popup = self.popup
        result = popup.handle_key(key)
        if result is PopupAction.CANCEL:
            self.popup = None
            self.status = None
        elif result is PopupAction.SUBMIT:
            getattr(self, _POPUP_SUBMIT[type(popup)])(popup)

    def _submit_edit(self, popup: EditTickrPopup) -> None:
        label = popup.label.strip()
        if not label:
            self.status = "Task label is required."
            return
        try:
            updated = self.store.update_task(popup.tickr_id, label, popup.selected_category_id)
        except StoreError as exc:
            self._fail(exc)
            return
        self.popup = None
        if not updated:
            if self.nav.view == View.TICKR_DETAIL:
                self._load_tickr_detail()
            else:
                self._load_view()
            self.status = "Task not found."
            return
        self._load_tickr_detail()
        if self.tickr_detail_parent == View.PROJECT_TICKRS and self.selected_project is not None:
            self._load_project_tickrs()
        else:
            self._load_tickrs()
        self.status = "Task updated."

    def _submit_new_category(self, popup: NewCategoryPopup) -> None:
        name = popup.name.strip()
        if not name:
            self.status = "Category name is required."
            return
        color = normalize_hex_color(popup.color)
        if color is None:
            self.status = "Color must be a 6-digit hex value."
            return
        try:
            category = self.store.create_category(name, color)
        except StoreError as exc:
            self._fail(exc)
            return
        self.popup = None
        self._load_categories()
        for index, candidate in enumerate(self.categories_list):
            if candidate.id == category.id:
                self.selections['categories'].index = index
                break
        self.status = "Category created."

    def _submit_new_tickr(self, popup: NewTickrPopup) -> None:
        label = popup.label.strip()
        if not label:
            self.status = "Task label is required."
            return
        project = popup.selected_project
        if project is None:
            self.status = "Project selection is required."
            return
        try:
            tickr = self.store.create_task(project.id, label, popup.selected_category_id)
        except StoreError as exc:
            self._fail(exc)
            return
        self.popup = None
        status = "Task created."
        if popup.start_now:
            try:
                self.timer.switch_to(tickr.id)
            except StoreError as exc:
                logger.warning("%s", exc)
                status = f"Task created but not started. {exc}"
            else:
                status = "Task created and started."
        self._sync_running()
        self._load_view()
        self.status = status

    def _submit_confirm(self, popup: ConfirmPopup) -> None:
        self.popup = None
        popup.on_confirm()

    def _delete_tickr(self, tickr: Tickr) -> None:
        try:
            self.store.delete_task(tickr.id)
        except StoreError as exc:
            self._fail(exc)
            return
        logger.info("Deleted task %s", tickr.id)
        self._sync_running()
        if self.nav.view == View.TICKR_DETAIL:
            self.selected_tickr = None
            self.selected_tickr_project_name = None
            self.go_back()
        else:
            self._load_view()
        self.status = "Task deleted."

    # --- loading ---
    def _fail(self, exc: Exception) -> None:
        logger.warning("%s", exc)
        self.status = str(exc)

    def _set_list(self, name: str, items: list) -> None:
        setattr(self, CURSOR_ITEMS[name], items)
        self.selections[name].clamp(len(items))

    def _load_view(self) -> None:
        getattr(self, VIEW_TABLE[self.nav.view].loader)()
        for name, attr in CURSOR_ITEMS.items():
            self.selections[name].clamp(len(getattr(self, attr)))

    def _sync_running(self, tickrs: Optional[List[Tickr]] = None) -> None:
        if tickrs is None:
            try:
                tickrs = self.store.list_tasks()
            except StoreError as exc:
                self._fail(exc)
                return
        self.timer.sync(tickrs)
        current = self.timer.running
        self.running_project_name = self.project_name(current.project_id) if current else None

    def _refresh_summaries(self, all_tickrs: Optional[List[Tickr]] = None) -> None:
        if all_tickrs is None:
            try:
                all_tickrs = self.store.list_tasks()
            except StoreError as exc:
                self._fail(exc)
                return
        self.project_summaries = project_summaries(all_tickrs)
        self._sync_running(all_tickrs)

    def _refresh_category_cache(self) -> None:
        wanted = {t.category_id for t in self.tickrs if t.category_id is not None}
        if self.selected_tickr is not None and self.selected_tickr.category_id is not None:
            wanted.add(self.selected_tickr.category_id)
        cache: Dict[int, Category] = {}
        for category_id in sorted(wanted):
            category = self.categories.get(category_id)
            if category is None:
                try:
                    category = self.store.get_category(category_id)
                except StoreError as exc:
                    self._fail(exc)
                    return
            if category is not None:
                cache[category_id] = category
        self.categories = cache

    def _load_projects(self) -> None:
        query = self.search_query.strip()
        try:
            if self.nav.view == View.PROJECTS and query:
                projects = self.store.search_projects(query)
            else:
                projects = self.store.list_projects()
        except StoreError as exc:
            self._fail(exc)
            return
        self._set_list('projects', projects)
        self._refresh_summaries()

    def _load_tickrs(self) -> None:
        try:
            tickrs = self.store.list_tasks()
        except StoreError as exc:
            self._fail(exc)
            return
        self._set_list('tickrs', tickrs)
        self._refresh_category_cache()
        self._refresh_summaries(tickrs)

    def _load_project_tickrs(self) -> None:
        project = self.selected_project
        if project is None or project.id is None:
            self._set_list('tickrs', [])
            return
        try:
            tickrs = self.store.list_tasks(project.id)
        except StoreError as exc:
            self._fail(exc)
            return
        self._set_list('tickrs', tickrs)
        self._refresh_category_cache()
        self._refresh_summaries()

    def _load_worked_projects(self) -> None:
        start, end = worked_window(self.worked_range, _now())
        try:
            projects = self.store.worked_on(start, end)
        except StoreError as exc:
            self._fail(exc)
            return
        self._set_list('worked', projects)

    def _load_timeline(self) -> None:
        self._load_tickrs()

    def _load_categories(self) -> None:
        try:
            categories = self.store.list_categories()
        except StoreError as exc:
            self._fail(exc)
            return
        self._set_list('categories', categories)

    def _load_dashboard(self) -> None:
        self._load_projects()
        self._load_tickrs()
        self._load_categories()

    def _load_tickr_detail(self) -> None:
        tickr = self.selected_tickr
        if tickr is None or tickr.id is None:
            return
        try:
            fresh = self.store.get_task(tickr.id)
        except StoreError as exc:
            self._fail(exc)
            return
        if fresh is None:
            if isinstance(self.popup, EditTickrPopup):
                self.popup = None
            self.selected_tickr = None
            self.selected_tickr_project_name = None
            self.go_back()
            self.status = "Task not found."
            return
        self.selected_tickr = fresh
        self.selected_tickr_project_name = self.project_name(fresh.project_id)
        self._refresh_category_cache()

    def _load_nothing(self) -> None:
        pass


_KEY_ACTIONS: Dict[str, str] = {
    'q': 'quit',
    '?': 'toggle_help',
    '/': 'start_search',
    'r': 'refresh',
    ' ': 'toggle_selected',
    's': 'stop_running',
    'g': 'jump_to_project',
    'e': 'open_edit_popup',
    'n': 'open_new',
    'd': 'open_delete_confirm',
    KEY_TAB: 'toggle_focus',
    KEY_BACKTAB: 'toggle_range',
    KEY_LEFT: 'tab_left',
    KEY_RIGHT: 'tab_right',
    KEY_UP: 'move_up',
    KEY_DOWN: 'move_down',
    KEY_ENTER: 'activate',
    KEY_ESCAPE: 'go_back',
}

_POPUP_SUBMIT = {
    EditTickrPopup: '_submit_edit',
    NewCategoryPopup: '_submit_new_category',
    NewTickrPopup: '_submit_new_tickr',
    ConfirmPopup: '_submit_confirm',
}


# -----------------------------
# Rendering
# -----------------------------
def _char_width(ch: str) -> int:
    """Return printable cell width for a single character."""
    if unicodedata.combining(ch) or unicodedata.category(ch) == "Cf":
        return 0
    return max(1, get_cwidth(ch))


def _display_width(text: str) -> int:
    return sum(_char_width(ch) for ch in text)


def _truncate(s: str, maxlen: int) -> str:
    """Truncate string to a maximum display width, preserving whole glyphs."""
    s = (s or "").replace("\n", " ").replace("\r", " ")
    if maxlen <= 0:
        return ""
    if _display_width(s) <= maxlen:
        return s
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = _char_width(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + "…"


def _pad_display(text: Optional[str], width: int, align: str = "left") -> str:
    """Pad/truncate text to an exact display width using spaces."""
    raw = _truncate(text or "", width)
    pad = max(0, width - _display_width(raw))
    if align == "right":
        return " " * pad + raw
    return raw + " " * pad


def _category_style(category: Optional[Category]) -> str:
    if category is None:
        return 'class:dim'
    color = normalize_hex_color(category.color)
    return f'bold {color}' if color else 'class:category'


HELP_LINES = [
    ("h p t w l c", "Dashboard, Projects, Tickrs, Worked, Timeline, Categories"),
    ("Tab", "Toggle focus between tab bar and content"),
    ("Left / Right", "Move along the tab bar"),
    ("Up / Down", "Move the selection"),
    ("Enter", "Open the selected tab or item"),
    ("Space", "Start or stop the selected task"),
    ("s", "Stop the running task and show its project"),
    ("g", "Go to the project of the shown task"),
    ("e", "Edit the shown task"),
    ("n", "New task (projects) or new category (categories)"),
    ("d", "Delete the selected task"),
    ("/", "Search projects"),
    ("Shift+Tab", "Toggle today/week or day/week range"),
    ("r", "Refresh"),
    ("Esc", "Back"),
    ("?", "Toggle this help"),
    ("q", "Quit"),
]

VIEW_HINTS: Dict[View, str] = {
    View.DASHBOARD: "p projects  t tickrs  s stop  ? help  q quit",
    View.PROJECTS: "Enter open  n new task  / search  Esc back",
    View.TICKRS: "Enter details  Space start/stop  d delete  Esc back",
    View.PROJECT_TICKRS: "Enter details  Space start/stop  n new  d delete  Esc back",
    View.WORKED_PROJECTS: "Enter open  Shift+Tab today/week  Esc back",
    View.TIMELINE: "Shift+Tab day/week  Esc back",
    View.CATEGORIES: "n new category  Esc back",
    View.TICKR_DETAIL: "Space start/stop  e edit  g project  d delete  Esc back",
    View.HELP: "? or Esc to close",
}


def render_header(state: AppState) -> Fragments:
    frags: Fragments = [('class:header.title', ' tickr '), ('class:header', ' ')]
    frags.append(('class:header.subtitle', state.view.value))
    if state.view == View.PROJECT_TICKRS and state.selected_project is not None:
        frags.append(('class:header', f"  {state.selected_project.name}"))
    return frags


def render_tabs(state: AppState) -> Fragments:
    frags: Fragments = []
    active = VIEW_TABLE[state.view].tab
    for index, tab in enumerate(TABS):
        if state.nav.focus == FocusMode.TAB_BAR and index == state.nav.tab_index:
            style = 'class:tab.focused'
        elif tab == active:
            style = 'class:tab.active'
        else:
            style = 'class:tab'
        frags.append((style, f" {tab.value} "))
        frags.append(('', ' '))
    return frags


def _row(frags: Fragments, selected: bool, *parts: Tuple[str, str]) -> None:
    frags.append(('class:marker', '> ' if selected else '  '))
    for style, text in parts:
        frags.append(('class:highlight' if selected and style == 'class:text' else style, text))
    frags.append(('', '\n'))


def _empty(frags: Fragments, text: str) -> None:
    frags.append(('class:dim', f"  {text}\n"))


def _dashboard_lines(state: AppState, now: dt.datetime) -> Fragments:
    frags: Fragments = []
    today = today_summary(state.tickrs, now)
    frags.append(('class:section', "Today\n"))
    frags.append(('class:text', f"  Worked {format_duration(today.total_seconds)} on "
                                f"{today.tickrs} task(s) across {today.projects} project(s)\n\n"))
    frags.append(('class:section', "Totals\n"))
    frags.append(('class:text', f"  Projects: {len(state.projects)}   Tickrs: {len(state.tickrs)}   "
                                f"Categories: {len(state.categories_list)}\n\n"))
    frags.append(('class:section', "Running\n"))
    running = state.running_tickr
    if running is None:
        _empty(frags, "No task running.")
    else:
        frags.append(('class:active', f"  {running.description}"))
        frags.append(('class:dim', f"  {state.running_project_name or '-'}  "))
        frags.append(('class:accent', f"{format_duration(running_seconds(running, now))}\n"))
    return frags


def _project_lines(state: AppState, projects: List[Project], cursor: str) -> Fragments:
    frags: Fragments = []
    if not projects:
        _empty(frags, "No projects.")
        return frags
    index = state.cursor(cursor)
    for i, project in enumerate(projects):
        summary = state.project_summaries.get(project.id, ProjectSummary())
        _row(
            frags, i == index,
            ('class:text', _pad_display(project.name, 32)),
            ('class:accent', f" {format_duration(summary.total_seconds)}"),
            ('class:ended', f"  ended {summary.ended}"),
            ('class:active', f"  open {summary.open}"),
        )
    return frags


def _tickr_lines(state: AppState, now: dt.datetime) -> Fragments:
    frags: Fragments = []
    if not state.tickrs:
        _empty(frags, "No tickrs.")
        return frags
    index = state.cursor('tickrs')
    show_project = state.view == View.TICKRS
    for i, tickr in enumerate(state.tickrs):
        category = state.categories.get(tickr.category_id) if tickr.category_id is not None else None
        parts = [
            ('class:active' if tickr.is_running else 'class:ended', '● ' if tickr.is_running else '○ '),
            ('class:text', _pad_display(tickr.description, 36)),
            ('class:accent', f" {format_duration(elapsed_seconds(tickr, now))}"),
            ('class:dim', f"  {len(tickr.intervals):>3} iv"),
        ]
        if show_project:
            parts.append(('class:dim', f"  {_pad_display(state.project_name(tickr.project_id) or '-', 18)}"))
        if category is not None:
            parts.append((_category_style(category), f"  {category.name}"))
        _row(frags, i == index, *parts)
    return frags


def _timeline_lines(state: AppState, now: dt.datetime) -> Fragments:
    frags: Fragments = []
    days = timeline_days(state.timeline_range, now)
    frags.append(('class:dim', "             0     6     12    18    \n"))
    for timeline in day_timelines(state.tickrs, days, now):
        frags.append(('class:text', timeline.day.strftime("%a %Y-%m-%d ")))
        for seconds in timeline.hours:
            glyph = hour_fill(seconds)
            frags.append(('class:dim' if glyph == '.' else 'class:active', glyph))
        frags.append(('class:accent', f"  {format_duration(timeline.total_seconds)}\n"))
    frags.append(('class:dim', "\n  . none  : <15m  = <30m  + <45m  # 45m+\n"))
    return frags


def _category_lines(state: AppState) -> Fragments:
    frags: Fragments = []
    if not state.categories_list:
        _empty(frags, "No categories. Press n to add one.")
        return frags
    index = state.cursor('categories')
    for i, category in enumerate(state.categories_list):
        _row(
            frags, i == index,
            (_category_style(category), '■ '),
            ('class:text', _pad_display(category.name, 24)),
            ('class:dim', f" {category.color}"),
        )
    return frags


def _detail_lines(state: AppState, now: dt.datetime) -> Fragments:
    frags: Fragments = []
    tickr = state.selected_tickr
    if tickr is None:
        _empty(frags, "No task selected.")
        return frags
    category = state.categories.get(tickr.category_id) if tickr.category_id is not None else None
    frags.append(('class:title', f"{tickr.description}\n"))
    frags.append(('class:dim', "  Project   "))
    frags.append(('class:text', f"{state.selected_tickr_project_name or '-'}\n"))
    frags.append(('class:dim', "  Category  "))
    frags.append((_category_style(category), f"{category.name if category else 'none'}\n"))
    frags.append(('class:dim', "  Status    "))
    frags.append(('class:active', "running\n") if tickr.is_running else ('class:ended', "stopped\n"))
    frags.append(('class:dim', "  Total     "))
    frags.append(('class:accent', f"{format_duration(elapsed_seconds(tickr, now))}\n\n"))
    frags.append(('class:section', "Intervals\n"))
    if not tickr.intervals:
        _empty(frags, "No intervals recorded.")
    for iv in tickr.intervals:
        start = iv.start.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        end = iv.end.astimezone().strftime("%Y-%m-%d %H:%M:%S") if iv.end else "running"
        frags.append(('class:text', f"  {start}  →  {_pad_display(end, 19)}"))
        frags.append(('class:accent', f"  {format_duration(interval_seconds(iv, now))}\n"))
    return frags


def _help_lines() -> Fragments:
    frags: Fragments = []
    for keys, text in HELP_LINES:
        frags.append(('class:accent', f"  {_pad_display(keys, 14)}"))
        frags.append(('class:text', f"{text}\n"))
    return frags


def render_body(state: AppState, now: dt.datetime) -> Fragments:
    view = state.view
    frags: Fragments = []
    if view == View.WORKED_PROJECTS:
        label = "today" if state.worked_range == WorkedRange.TODAY else "last 7 days"
        frags.append(('class:title', f"Worked on ({label})\n\n"))
    elif view == View.TIMELINE:
        label = "today" if state.timeline_range == TimelineRange.DAY else "last 7 days"
        frags.append(('class:title', f"Timeline ({label})\n\n"))
    elif view == View.PROJECT_TICKRS and state.selected_project is not None:
        frags.append(('class:title', f"{state.selected_project.name}\n\n"))
    elif view != View.TICKR_DETAIL:
        frags.append(('class:title', f"{view.value}\n\n"))

    if view == View.DASHBOARD:
        frags.extend(_dashboard_lines(state, now))
    elif view == View.PROJECTS:
        frags.extend(_project_lines(state, state.projects, 'projects'))
    elif view in (View.TICKRS, View.PROJECT_TICKRS):
        frags.extend(_tickr_lines(state, now))
    elif view == View.WORKED_PROJECTS:
        frags.extend(_project_lines(state, state.worked_projects, 'worked'))
    elif view == View.TIMELINE:
        frags.extend(_timeline_lines(state, now))
    elif view == View.CATEGORIES:
        frags.extend(_category_lines(state))
    elif view == View.TICKR_DETAIL:
        frags.extend(_detail_lines(state, now))
    elif view == View.HELP:
        frags.extend(_help_lines())
    frags.append(('class:dim', f"\n{VIEW_HINTS[view]}"))
    return frags


def render_status(state: AppState) -> Fragments:
    if state.search_active:
        return [('class:search', f" / {state.search_query}"), ('class:dim', "  Enter apply  Esc clear")]
    if state.view == View.PROJECTS and state.search_query.strip():
        return [('class:dim', f" filter: {state.search_query.strip()}")]
    if state.status:
        return [('class:status', f" {state.status}")]
    return [('', '')]


def render_footer(state: AppState, now: dt.datetime) -> Fragments:
    running = state.running_tickr
    if running is None:
        return [('class:footer', " No task running")]
    return [
        ('class:footer', " ● "),
        ('class:footer', f"{running.description} "),
        ('class:footer', f"[{state.running_project_name or '-'}] "),
        ('class:footer', format_duration(running_seconds(running, now))),
    ]


def _field(frags: Fragments, label: str, value: str, active: bool) -> None:
    frags.append(('class:popup.label', f"{label:<10}"))
    frags.append(('class:popup.field.active' if active else 'class:popup.field', f" {value} "))
    frags.append(('', '\n'))


def _option_name(options: Sequence, index: int) -> str:
    if not options:
        return "-"
    return options[index].name


def render_popup(state: AppState) -> Fragments:
    popup = state.popup
    frags: Fragments = []
    if popup is None:
        return frags
    if isinstance(popup, EditTickrPopup):
        _field(frags, "Label", popup.label + "▏", True)
        _field(frags, "Category", _option_name(popup.categories, popup.category_index), False)
        frags.append(('class:popup.hint', "\nType to edit  Up/Down category  Enter save  Esc cancel"))
    elif isinstance(popup, NewCategoryPopup):
        _field(frags, "Name", popup.name, popup.field == CategoryField.NAME)
        _field(frags, "Color", popup.color or "#RRGGBB", popup.field == CategoryField.COLOR)
        frags.append(('class:popup.hint', "\nTab switch field  Enter create  Esc cancel"))
    elif isinstance(popup, NewTickrPopup):
        _field(frags, "Label", popup.label, popup.field == NewTickrField.LABEL)
        _field(frags, "Project", _option_name(popup.projects, popup.project_index),
               popup.field == NewTickrField.PROJECT)
        _field(frags, "Category", _option_name(popup.categories, popup.category_index),
               popup.field == NewTickrField.CATEGORY)
        _field(frags, "Start now", "[x]" if popup.start_now else "[ ]", popup.field == NewTickrField.START_NOW)
        frags.append(('class:popup.hint', "\nTab next field  Up/Down choose  Space toggle  Enter create"))
    elif isinstance(popup, ConfirmPopup):
        frags.append(('class:popup.field', f"{popup.message}\n"))
        frags.append(('class:popup.hint', "\ny / Enter confirm   n / Esc cancel"))
    if state.status:
        frags.append(('class:status.error', f"\n{state.status}"))
    return frags


def popup_title(state: AppState) -> str:
    return state.popup.title if state.popup is not None else ""


# -----------------------------
# UI loop
# -----------------------------
def run_ui(state: AppState, cfg: Config) -> None:
    kb = KeyBindings()

    def finish(app: Application) -> None:
        save_ui_state(cfg.state_path, state.prefs())
        app.exit()

    def dispatch(app: Application, key: str) -> None:
        if not state.running:
            return
        state.update(KeyPress(key))
        if not state.running:
            finish(app)
            return
        app.invalidate()

    def bind(name: str) -> None:
        @kb.add(name)
        def _(event):
            dispatch(event.app, name)

    for name in NAMED_KEYS:
        bind(name)

    @kb.add(Keys.Any)
    def _(event):
        for ch in event.data:
            if _is_text(ch):
                dispatch(event.app, ch)

    @kb.add('c-c')
    def _(event):
        state.running = False
        finish(event.app)

    header = Window(FormattedTextControl(lambda: render_header(state)), height=1, style='class:header')
    tabs = Window(FormattedTextControl(lambda: render_tabs(state)), height=1)
    body = Window(FormattedTextControl(lambda: render_body(state, _now())), wrap_lines=False, always_hide_cursor=True)
    status = Window(FormattedTextControl(lambda: render_status(state)), height=1)
    footer = Window(FormattedTextControl(lambda: render_footer(state, _now())), height=1, style='class:footer')
    popup_body = Window(
        FormattedTextControl(lambda: render_popup(state)),
        width=Dimension(preferred=64, max=80),
        wrap_lines=True,
        always_hide_cursor=True,
    )
    popup = ConditionalContainer(
        Frame(popup_body, title=lambda: popup_title(state), style='class:popup'),
        filter=Condition(lambda: state.popup is not None),
    )
    container = FloatContainer(
        content=HSplit([header, tabs, body, status, footer]),
        floats=[Float(content=popup)],
    )
    app = Application(layout=Layout(container), key_bindings=kb, full_screen=True, style=build_style(cfg.style))
    # a lone Esc must not wait for an escape sequence
    app.ttimeoutlen = 0.05
    app.timeoutlen = 0.2

    async def _ticker():
        while True:
            await asyncio.sleep(cfg.tick_seconds)
            try:
                state.update(Tick())
            except Exception:
                logger.exception("Tick update failed")
            app.invalidate()

    app.run(pre_run=lambda: app.create_background_task(_ticker()))


# -----------------------------
# Command line
# -----------------------------
def _cli_datetime(value: str) -> dt.datetime:
    parsed = _parse_iso(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid date/time {value!r}, expected ISO 8601 like 2024-01-01T09:00:00+00:00")
    return parsed


def _find_project(db: TickrDB, name: str) -> Optional[Project]:
    project = db.get_project_by_name(name)
    if project is None:
        print(f"Project '{name}' not found")
    return project


def cmd_project_add(db: TickrDB, name: str) -> None:
    if db.get_project_by_name(name) is not None:
        print(f"Project '{name}' already exists.")
        return
    db.create_project(name)
    print(f"Created project '{name}'.")


def cmd_task_add(db: TickrDB, project_name: str, description: str,
                 start: Optional[dt.datetime] = None, end: Optional[dt.datetime] = None,
                 category_name: Optional[str] = None) -> None:
    project = _find_project(db, project_name)
    if project is None:
        return
    if start is None and end is not None:
        print("End time requires a start time.")
        return
    if start is not None and end is not None and end < start:
        print("End time must not be before the start time.")
        return
    category_id = None
    if category_name:
        category = db.get_category_by_name(category_name)
        if category is None:
            print(f"Category '{category_name}' not found, creating it with a random color.")
            category = db.create_category(category_name, random_color())
        category_id = category.id
    tickr = db.create_task(project.id, description, category_id)
    if start is not None:
        db.add_interval(tickr.id, start, end)
    print(f"Created task '{description}' in project '{project.name}'.")


def cmd_task_switch(db: TickrDB, project_name: str, description: str) -> None:
    project = _find_project(db, project_name)
    if project is None:
        return
    target = next((t for t in db.list_tasks(project.id) if t.description == description), None)
    if target is None:
        print(f"Task '{description}' not found in project '{project_name}'")
        return
    print(f"Switching to task '{description}'")
    now = _now()
    for running_id in db.running_task_ids():
        if running_id == target.id:
            continue
        old = db.get_task(running_id)
        print(f"Stopping currently running task '{old.description if old else running_id}'")
        db.end_open_interval(running_id, at=now)
    if not db.start_interval(target.id, at=now):
        print(f"Task '{description}' is already running.")


def cmd_category_add(db: TickrDB, name: str, color: Optional[str] = None) -> None:
    if color is not None:
        normalized = normalize_hex_color(color)
        if normalized is None:
            print("Invalid color format. Please provide a hex code like #RRGGBB.")
            return
    else:
        normalized = random_color()
    if db.get_category_by_name(name) is not None:
        print(f"Category '{name}' already exists.")
        return
    db.create_category(name, normalized)
    print(f"Created category '{name}' ({normalized}).")


EXPORT_HEADER = ["Project", "Task", "Category", "Start Time", "End Time", "Duration (seconds)"]


def export_rows(db: TickrDB, start: Optional[dt.datetime] = None, end: Optional[dt.datetime] = None,
                now: Optional[dt.datetime] = None) -> List[List[str]]:
    """Interval rows for CSV export; ``start``/``end`` bound the interval start time."""
    now = now or _now()
    projects = {p.id: p.name for p in db.list_projects()}
    categories = {c.id: c.name for c in db.list_categories()}
    rows: List[List[str]] = []
    for tickr in db.list_tasks():
        project_name = projects.get(tickr.project_id, "Unknown")
        category_name = categories.get(tickr.category_id, "") if tickr.category_id is not None else ""
        for iv in tickr.intervals:
            if start is not None and iv.start < start:
                continue
            if end is not None and iv.start > end:
                continue
            rows.append([
                project_name,
                tickr.description,
                category_name,
                _iso(iv.start),
                _iso(iv.end) if iv.end is not None else "Running",
                str(int(((iv.end or now) - iv.start).total_seconds())),
            ])
    return rows


def cmd_export(db: TickrDB, output: str, start: Optional[dt.datetime] = None,
               end: Optional[dt.datetime] = None) -> None:
    rows = export_rows(db, start, end)
    with open(output, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(EXPORT_HEADER)
        writer.writerows(rows)
    print(f"Exported {len(rows)} intervals to {output}")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tickr", description="Terminal time tracker")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config")
    ap.add_argument("--db", help="Path to sqlite DB (overrides config db_path)")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    sub = ap.add_subparsers(dest="command")

    project = sub.add_parser("project", help="Manage projects")
    project_sub = project.add_subparsers(dest="project_command", required=True)
    project_add = project_sub.add_parser("add", help="Add a project")
    project_add.add_argument("name")

    task = sub.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="task_command", required=True)
    task_add = task_sub.add_parser("add", help="Add a task, optionally with one interval")
    task_add.add_argument("project")
    task_add.add_argument("description")
    task_add.add_argument("-s", "--start", type=_cli_datetime, help="Interval start (ISO 8601)")
    task_add.add_argument("-e", "--end", type=_cli_datetime, help="Interval end (ISO 8601)")
    task_add.add_argument("-c", "--category", help="Category name (created if missing)")
    for verb in ("switch", "start"):
        switch = task_sub.add_parser(verb, help="Stop the running task and start this one")
        switch.add_argument("project")
        switch.add_argument("description")

    category = sub.add_parser("category", help="Add a category")
    category.add_argument("name")
    category.add_argument("color", nargs="?", help="Hex color like #RRGGBB (random if omitted)")

    export = sub.add_parser("export", help="Export intervals to CSV")
    export.add_argument("-o", "--output", default="tickr_export.csv", help="Output CSV path")
    export.add_argument("-s", "--start", type=_cli_datetime, help="Only intervals starting at or after this time")
    export.add_argument("-e", "--end", type=_cli_datetime, help="Only intervals starting at or before this time")
    return ap


def run_command(db: TickrDB, args: argparse.Namespace) -> None:
    if args.command == "project":
        cmd_project_add(db, args.name)
    elif args.command == "task":
        if args.task_command == "add":
            cmd_task_add(db, args.project, args.description, args.start, args.end, args.category)
        else:
            cmd_task_switch(db, args.project, args.description)
    elif args.command == "category":
        cmd_category_add(db, args.name, args.color)
    elif args.command == "export":
        cmd_export(db, args.output, args.start, args.end)


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
    except (ValueError, yaml.YAMLError) as e:
        print(f"Invalid config {args.config}: {e}", file=sys.stderr)
        sys.exit(2)
    db_path = os.path.expanduser(args.db) if args.db else cfg.db_path
    log_path = cfg.log_file or os.path.join(os.path.dirname(os.path.abspath(db_path)), "tickr.log")
    try:
        setup_logging(log_path, args.log_level or cfg.log_level)
    except OSError as e:
        print(f"Could not open log file {log_path}: {e}", file=sys.stderr)

    status: Optional[str] = None
    try:
        d = os.path.dirname(db_path)
        if d:
            os.makedirs(d, exist_ok=True)
        db = TickrDB(db_path)
    except (OSError, StoreError) as e:
        logger.error("Could not open database %s: %s", db_path, e)
        if args.command:
            print(f"Could not open database {db_path}: {e}", file=sys.stderr)
            sys.exit(1)
        db = TickrDB(":memory:")
        status = f"Could not open database, using a temporary in-memory store. {e}"

    try:
        if args.command:
            try:
                run_command(db, args)
            except StoreError as e:
                logger.error("%s", e)
                print(str(e), file=sys.stderr)
                sys.exit(1)
            return
        state = AppState(db, status=status, prefs=load_ui_state(cfg.state_path))
        run_ui(state, cfg)
    finally:
        db.close()


if __name__ == "__main__":
    main()
