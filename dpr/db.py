from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .nodepool import NodePoolMachineStatus
from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a missing
    bind-mounted file path is used), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "dpr.db")

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
            CREATE TABLE IF NOT EXISTS pool_machines (
              cluster TEXT NOT NULL,
              pool TEXT NOT NULL,
              name TEXT NOT NULL,
              prioritize_delete INTEGER NOT NULL DEFAULT 0,
              position INTEGER NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY(cluster, pool, name)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              cluster TEXT,
              pool TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, cluster: str | None = None, pool: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, cluster, pool, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), cluster, pool, message),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def load_statuses(cluster: str, pool: str) -> list[NodePoolMachineStatus]:
    """Statuses persisted by the previous pass, in the order they were saved."""
    with connect() as conn:
        rows = conn.execute(
            "SELECT name, prioritize_delete FROM pool_machines WHERE cluster=? AND pool=? ORDER BY position",
            (cluster, pool),
        ).fetchall()
    return [NodePoolMachineStatus(name=r["name"], prioritize_delete=bool(r["prioritize_delete"])) for r in rows]


def save_statuses(cluster: str, pool: str, statuses: list[NodePoolMachineStatus]) -> None:
    """Replace the persisted statuses of a pool."""
    now = utc_now()
    with connect() as conn:
        conn.execute("DELETE FROM pool_machines WHERE cluster=? AND pool=?", (cluster, pool))
        conn.executemany(
            """
            INSERT INTO pool_machines (cluster, pool, name, prioritize_delete, position, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [(cluster, pool, s.name, int(s.prioritize_delete), i, now) for i, s in enumerate(statuses)],
        )


def set_prioritize_delete(cluster: str, pool: str, name: str, prioritize_delete: bool) -> NodePoolMachineStatus:
    """Flag (or unflag) a machine to be deleted first on the next scale down or upgrade."""
    with connect() as conn:
        row = conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 AS next FROM pool_machines WHERE cluster=? AND pool=?",
            (cluster, pool),
        ).fetchone()
        conn.execute(
            """
            INSERT INTO pool_machines (cluster, pool, name, prioritize_delete, position, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(cluster, pool, name) DO UPDATE SET
              prioritize_delete=excluded.prioritize_delete,
              updated_at=excluded.updated_at
            """,
            (cluster, pool, name, int(prioritize_delete), row["next"], utc_now()),
        )
    return NodePoolMachineStatus(name=name, prioritize_delete=prioritize_delete)


def delete_statuses(cluster: str, pool: str | None = None) -> None:
    with connect() as conn:
        if pool is None:
            conn.execute("DELETE FROM pool_machines WHERE cluster=?", (cluster,))
        else:
            conn.execute("DELETE FROM pool_machines WHERE cluster=? AND pool=?", (cluster, pool))
