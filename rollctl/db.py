from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings

logger = logging.getLogger("rollctl")

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    Why this exists:
    - On many systems, if a bind-mounted *file* path does not exist,
      Docker creates a *directory* at that location. If we then try to
      open SQLite on that path, sqlite fails with "unable to open database file".
    - If the configured path is a directory, we place the DB file inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "rollctl.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS rollouts (
              id TEXT PRIMARY KEY,
              app TEXT NOT NULL,
              image TEXT NOT NULL,
              descriptor TEXT NOT NULL, -- JSON
              state TEXT NOT NULL,
              outcome TEXT NOT NULL, -- pending|healthy|rolled-back|failed
              previous_container TEXT, -- JSON
              new_container TEXT, -- JSON
              error TEXT,
              proxy_error TEXT,
              started_at TEXT NOT NULL,
              finished_at TEXT
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              app TEXT,
              rollout_id TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_rollouts_app ON rollouts(app, started_at);
            """
        )


def log_event(level: str, message: str, app: str | None = None, rollout_id: str | None = None) -> None:
    level = level.upper()
    prefix = f"[{app}] " if app else ""
    logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s%s", prefix, message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, app, rollout_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, app, rollout_id, message),
        )


@dataclass(frozen=True)
class RolloutRow:
    id: str
    app: str
    image: str
    descriptor: dict[str, Any]
    state: str
    outcome: str
    previous_container: dict[str, Any] | None
    new_container: dict[str, Any] | None
    error: str | None
    proxy_error: str | None
    started_at: str
    finished_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _loads(raw: str | None) -> Any:
    return json.loads(raw) if raw else None


def _row_to_rollout(row: sqlite3.Row) -> RolloutRow:
    data = dict(row)
    data["descriptor"] = _loads(data["descriptor"]) or {}
    data["previous_container"] = _loads(data["previous_container"])
    data["new_container"] = _loads(data["new_container"])
    return RolloutRow(**data)


def _rows_to_rollouts(rows: Iterable[sqlite3.Row]) -> list[RolloutRow]:
    return [_row_to_rollout(r) for r in rows]


def save_rollout(
    rollout_id: str,
    app: str,
    image: str,
    descriptor: dict[str, Any],
    state: str,
    outcome: str,
    previous_container: dict[str, Any] | None,
    new_container: dict[str, Any] | None,
    error: str | None,
    proxy_error: str | None,
    started_at: str,
    finished_at: str | None,
) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO rollouts (id, app, image, descriptor, state, outcome, previous_container,
                                  new_container, error, proxy_error, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              state=excluded.state,
              outcome=excluded.outcome,
              previous_container=excluded.previous_container,
              new_container=excluded.new_container,
              error=excluded.error,
              proxy_error=excluded.proxy_error,
              finished_at=excluded.finished_at
            """,
            (
                rollout_id,
                app,
                image,
                json.dumps(descriptor, sort_keys=True),
                state,
                outcome,
                json.dumps(previous_container) if previous_container else None,
                json.dumps(new_container) if new_container else None,
                error,
                proxy_error,
                started_at,
                finished_at,
            ),
        )


def get_rollout(rollout_id: str) -> RolloutRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM rollouts WHERE id=?", (rollout_id,)).fetchone()
        return _row_to_rollout(row) if row else None


def list_rollouts(app: str | None = None, limit: int = 50) -> list[RolloutRow]:
    with connect() as conn:
        if app:
            cur = conn.execute(
                "SELECT * FROM rollouts WHERE app=? ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (app, limit),
            )
        else:
            cur = conn.execute("SELECT * FROM rollouts ORDER BY started_at DESC, rowid DESC LIMIT ?", (limit,))
        return _rows_to_rollouts(cur.fetchall())


def pending_rollouts() -> list[RolloutRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM rollouts WHERE outcome='pending' ORDER BY started_at").fetchall()
        return _rows_to_rollouts(rows)


def fail_pending_rollouts(error: str) -> int:
    """Mark every pending rollout as failed. Returns the number of rows changed."""
    with connect() as conn:
        cur = conn.execute(
            "UPDATE rollouts SET outcome='failed', state='failed', error=?, finished_at=? WHERE outcome='pending'",
            (error, utc_now()),
        )
        return cur.rowcount


def active_releases() -> list[RolloutRow]:
    """Latest healthy rollout per app: the release that should be serving."""
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT r.* FROM rollouts r
            WHERE r.outcome='healthy' AND r.rowid = (
              SELECT r2.rowid FROM rollouts r2
              WHERE r2.app = r.app AND r2.outcome='healthy'
              ORDER BY r2.started_at DESC, r2.rowid DESC LIMIT 1
            )
            ORDER BY r.app
            """
        ).fetchall()
        return _rows_to_rollouts(rows)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
