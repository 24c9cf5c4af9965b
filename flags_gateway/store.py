"""Relational store access for flag evaluation.

Storage Properties:
- One sqlite connection per call, always closed (even on error)
- No caching: every evaluation reads through to the database
- Store failures raise UpstreamError; the sqlite detail is kept on
  `UpstreamError.cause` for logs only
- Queries honour a QueryContext: when it is cancelled or its deadline passes,
  the running statement is interrupted and QueryCanceled is raised

Tables mirror the dashboard schema: external string identifiers
(`project.project_id`, `agent.agent_id`, `environment.env_id`) joined through
integer surrogate keys.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from .errors import FLAGS_E_STORE, UpstreamError
from .models import Flag, Scope, SecretMenu, SecretMenuStyle

logger = logging.getLogger("flags_gateway.store")

# sqlite VM instructions between cancellation checks.
_PROGRESS_INTERVAL = 1000

SCHEMA = """
CREATE TABLE IF NOT EXISTS project (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL DEFAULT '',
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS agent (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL UNIQUE,
    project_id INTEGER NOT NULL REFERENCES project(id),
    name TEXT NOT NULL DEFAULT '',
    enabled INTEGER NOT NULL DEFAULT 1,
    interval INTEGER NOT NULL DEFAULT 60,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS environment (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    env_id TEXT NOT NULL UNIQUE,
    agent_id INTEGER NOT NULL REFERENCES agent(id),
    name TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS flag (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 0,
    agent_id INTEGER NOT NULL REFERENCES agent(id),
    environment_id INTEGER NOT NULL REFERENCES environment(id),
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS environment_secret_menu (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    menu_id TEXT NOT NULL UNIQUE,
    environment_id INTEGER NOT NULL REFERENCES environment(id),
    enabled INTEGER NOT NULL DEFAULT 0,
    code TEXT
);

CREATE TABLE IF NOT EXISTS secret_menu_style (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    secret_menu_id INTEGER NOT NULL REFERENCES environment_secret_menu(id),
    close_button TEXT,
    container TEXT,
    button TEXT
);

CREATE INDEX IF NOT EXISTS idx_flag_scope ON flag(agent_id, environment_id);
CREATE INDEX IF NOT EXISTS idx_environment_agent ON environment(agent_id);
"""

_FLAG_COLUMNS = "flag.id, flag.name, flag.enabled, COALESCE(flag.updated_at, '')"

# Only enabled projects and agents resolve.
_SCOPED_FLAGS = """
    FROM agent
      JOIN project ON project.id = agent.project_id
      JOIN flag ON flag.agent_id = agent.id
      JOIN environment AS env ON env.id = flag.environment_id
    WHERE env.env_id = ?
      AND agent.agent_id = ?
      AND project.project_id = ?
      AND agent.enabled = 1
      AND project.enabled = 1
"""


class QueryCanceled(Exception):
    """The request went away (or ran out of time) while the query was running."""


@dataclass
class QueryContext:
    """Cancellation and deadline signal for one request's store calls."""

    deadline: Optional[float] = None  # time.monotonic() value
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def with_timeout(cls, seconds: Optional[float]) -> "QueryContext":
        if not seconds or seconds <= 0:
            return cls()
        return cls(deadline=time.monotonic() + float(seconds))

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def done(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def _row_to_flag(row: sqlite3.Row) -> Flag:
    return Flag(id=str(row[0]), name=row[1], enabled=bool(row[2]), last_changed=row[3] or "")


class FlagStore:
    """Read access to projects, agents, environments and flags."""

    def __init__(self, db_path: str = "flags_gateway.db", connect_timeout_seconds: float = 5.0, init_schema: bool = True):
        self.db_path = db_path
        self.connect_timeout_seconds = connect_timeout_seconds
        if init_schema:
            self._init_db()

    @contextmanager
    def _db(self, ctx: Optional[QueryContext] = None) -> Iterator[sqlite3.Connection]:
        """Acquire a connection, run the caller's statements, always release."""
        if ctx is not None and ctx.done():
            raise QueryCanceled()
        try:
            conn = sqlite3.connect(self.db_path, timeout=float(self.connect_timeout_seconds))
        except sqlite3.Error as e:
            raise UpstreamError(FLAGS_E_STORE, cause=f"connect: {e}") from e
        try:
            conn.create_function("casefold", 1, _casefold, deterministic=True)
            if ctx is not None:
                conn.set_progress_handler(lambda: 1 if ctx.done() else 0, _PROGRESS_INTERVAL)
            with conn:
                yield conn
        except sqlite3.OperationalError as e:
            if ctx is not None and ctx.done():
                raise QueryCanceled() from e
            raise UpstreamError(FLAGS_E_STORE, cause=str(e)) from e
        except sqlite3.Error as e:
            raise UpstreamError(FLAGS_E_STORE, cause=str(e)) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(SCHEMA)

    # ---------------------------
    # Flags
    # ---------------------------

    def find_flag(self, scope: Scope, flag_name: str, ctx: Optional[QueryContext] = None) -> Optional[Flag]:
        """Case-insensitive lookup of one flag in a fully resolved scope."""
        with self._db(ctx) as conn:
            row = conn.execute(
                f"SELECT {_FLAG_COLUMNS} {_SCOPED_FLAGS} AND casefold(flag.name) = casefold(?) "
                "ORDER BY flag.id LIMIT 1",
                (scope.environment_id, scope.agent_id, scope.project_id, flag_name),
            ).fetchone()
        return _row_to_flag(row) if row else None

    def list_flags(self, scope: Scope, ctx: Optional[QueryContext] = None) -> List[Flag]:
        """All flags in a fully resolved scope, read in one statement."""
        with self._db(ctx) as conn:
            rows = conn.execute(
                f"SELECT {_FLAG_COLUMNS} {_SCOPED_FLAGS} ORDER BY flag.id",
                (scope.environment_id, scope.agent_id, scope.project_id),
            ).fetchall()
        return [_row_to_flag(r) for r in rows]

    # ---------------------------
    # Agents / environments
    # ---------------------------

    def default_environment(self, project_id: str, agent_id: str, ctx: Optional[QueryContext] = None) -> Optional[str]:
        """The agent's earliest-created environment, or None if it has none."""
        with self._db(ctx) as conn:
            row = conn.execute(
                """
                SELECT env.env_id
                FROM environment AS env
                  JOIN agent ON agent.id = env.agent_id
                  JOIN project ON project.id = agent.project_id
                WHERE agent.agent_id = ?
                  AND project.project_id = ?
                ORDER BY env.created_at ASC, env.id ASC
                LIMIT 1
                """,
                (agent_id, project_id),
            ).fetchone()
        return row[0] if row else None

    def agent_exists(self, project_id: str, agent_id: str, environment_id: str = "", ctx: Optional[QueryContext] = None) -> bool:
        with self._db(ctx) as conn:
            if environment_id:
                row = conn.execute(
                    """
                    SELECT 1
                    FROM agent
                      JOIN environment AS env ON env.agent_id = agent.id
                      JOIN project ON project.id = agent.project_id
                    WHERE agent.agent_id = ?
                      AND env.env_id = ?
                      AND project.project_id = ?
                    LIMIT 1
                    """,
                    (agent_id, environment_id, project_id),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT 1
                    FROM agent
                      JOIN project ON project.id = agent.project_id
                    WHERE agent.agent_id = ?
                      AND project.project_id = ?
                    LIMIT 1
                    """,
                    (agent_id, project_id),
                ).fetchone()
        return row is not None

    def agent_interval(self, project_id: str, agent_id: str, ctx: Optional[QueryContext] = None) -> Optional[int]:
        with self._db(ctx) as conn:
            row = conn.execute(
                """
                SELECT agent.interval
                FROM agent
                  JOIN project ON project.id = agent.project_id
                WHERE agent.agent_id = ?
                  AND project.project_id = ?
                """,
                (agent_id, project_id),
            ).fetchone()
        if row is None or row[0] is None:
            return None
        return int(row[0])

    def secret_menu(self, environment_id: str, ctx: Optional[QueryContext] = None) -> Optional[SecretMenu]:
        """The environment's secret menu, only if one exists and is enabled."""
        with self._db(ctx) as conn:
            row = conn.execute(
                """
                SELECT menu.enabled, menu.code, style.close_button, style.container, style.button
                FROM environment_secret_menu AS menu
                  JOIN environment AS env ON env.id = menu.environment_id
                  LEFT JOIN secret_menu_style AS style ON style.secret_menu_id = menu.id
                WHERE env.env_id = ?
                LIMIT 1
                """,
                (environment_id,),
            ).fetchone()
        if row is None or not row[0]:
            return None

        sequence: List[str] = []
        if row[1]:
            try:
                parsed = json.loads(row[1])
                if isinstance(parsed, list):
                    sequence = [str(x) for x in parsed]
            except ValueError:
                logger.warning("secret menu for environment %s has a malformed sequence", environment_id)

        styles = [
            SecretMenuStyle(name=name, value=value)
            for name, value in (("closeButton", row[2]), ("container", row[3]), ("button", row[4]))
            if value
        ]
        return SecretMenu(sequence=sequence, styles=styles)
