from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount created by the
    container runtime, for instance) the DB file is placed inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "ess.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


class Database:
    """Event journal and local lock table backed by one sqlite file."""

    def __init__(self, path: str) -> None:
        self.path = _resolve_db_path(path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  replica_index INTEGER,
                  message TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS locks (
                  lock_id TEXT PRIMARY KEY,
                  expires_at INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    def log_event(self, level: str, message: str, replica_index: int | None = None) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, replica_index, message) VALUES (?, ?, ?, ?)",
                (utc_now(), level.upper(), replica_index, message),
            )

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]


class SqliteLockBackend:
    """Lock backend for running the controller outside AWS.

    Mutual exclusion only holds between processes sharing the same file.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def put_if_absent(self, lock_id: str, expires_at: int, reclaim_before: int | None = None) -> bool:
        with self.db.connect() as conn:
            if reclaim_before is None:
                try:
                    conn.execute("INSERT INTO locks (lock_id, expires_at) VALUES (?, ?)", (lock_id, expires_at))
                except sqlite3.IntegrityError:
                    return False
                return True
            cur = conn.execute(
                """
                INSERT INTO locks (lock_id, expires_at) VALUES (?, ?)
                ON CONFLICT(lock_id) DO UPDATE SET expires_at=excluded.expires_at
                WHERE locks.expires_at < ?
                """,
                (lock_id, expires_at, reclaim_before),
            )
            return cur.rowcount == 1

    def delete(self, lock_id: str, expires_at: int | None = None) -> bool:
        with self.db.connect() as conn:
            if expires_at is None:
                cur = conn.execute("DELETE FROM locks WHERE lock_id=?", (lock_id,))
            else:
                cur = conn.execute("DELETE FROM locks WHERE lock_id=? AND expires_at=?", (lock_id, expires_at))
            return cur.rowcount == 1
