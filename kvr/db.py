from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings


LEVELS = {"DEBUG", "INFO", "WARN", "ERROR"}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    When the configured path is a directory (typically a mounted volume),
    the journal file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "kvr.db")

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
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              namespace TEXT,
              cluster TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_cluster ON events(namespace, cluster);
            """
        )


def log_event(level: str, message: str, cluster: str | None = None, namespace: str | None = None) -> None:
    level = level.upper()
    if level not in LEVELS:
        level = "INFO"
    if level == "DEBUG" and not settings.debug_events:
        return
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, namespace, cluster, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, namespace, cluster, message),
        )


def latest_events(limit: int = 100, cluster: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if cluster:
            rows = conn.execute(
                "SELECT * FROM events WHERE cluster=? ORDER BY id DESC LIMIT ?",
                (cluster, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
