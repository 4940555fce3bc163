"""SQLite-backed schedule store.

3 tables:
    schedules, schedule_execution_log, schedule_events

``schedules`` holds one full ScheduleConfig record per session. ``put`` is
the only write path for it and always writes the complete record.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from taskpulse.core.schedule.types import (
    PermissionPolicy,
    ScheduleConfig,
    StoreUnavailable,
    validate_config,
)


class ScheduleStore:
    """SQLite schedule store — single source of truth across restarts."""

    def __init__(self, db_path: str = "data/taskpulse.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"ScheduleStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Database error on {self.db_path}: {e}") from e
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            self._migrate(conn)
            conn.commit()

    def _migrate(self, conn) -> None:
        """Add columns missing in existing databases."""
        cols = {row[1] for row in conn.execute("PRAGMA table_info(schedules)").fetchall()}
        if "last_error" not in cols:
            conn.execute("ALTER TABLE schedules ADD COLUMN last_error TEXT")

    # ════════════════════════════════════════════════════════════
    # SCHEDULES
    # ════════════════════════════════════════════════════════════

    def get(self, session_id: str) -> ScheduleConfig | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM schedules WHERE session_id = ?", (session_id,)
            ).fetchone()
        return _row_to_config(row) if row else None

    def put(self, session_id: str, config: ScheduleConfig) -> None:
        """Insert or replace the full record for a session."""
        validate_config(config)
        last_run = config.last_executed_at.isoformat() if config.last_executed_at else None
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO schedules
                   (session_id, enabled, interval_ms, prompt, permission_policy,
                    max_errors, error_count, last_executed_at, last_error)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(session_id) DO UPDATE SET
                       enabled = excluded.enabled,
                       interval_ms = excluded.interval_ms,
                       prompt = excluded.prompt,
                       permission_policy = excluded.permission_policy,
                       max_errors = excluded.max_errors,
                       error_count = excluded.error_count,
                       last_executed_at = excluded.last_executed_at,
                       last_error = excluded.last_error,
                       updated_at = CURRENT_TIMESTAMP""",
                (
                    session_id, int(config.enabled), config.interval_ms, config.prompt,
                    config.permission_policy.value, config.max_errors,
                    config.error_count, last_run, config.last_error,
                ),
            )
            conn.commit()

    def delete(self, session_id: str) -> bool:
        """Delete a schedule and its execution log. Returns True if it existed."""
        with self._get_conn() as conn:
            conn.execute(
                "DELETE FROM schedule_execution_log WHERE session_id = ?", (session_id,)
            )
            cursor = conn.execute("DELETE FROM schedules WHERE session_id = ?", (session_id,))
            conn.commit()
        return cursor.rowcount > 0

    def list_schedules(self, enabled_only: bool = False) -> dict[str, ScheduleConfig]:
        """All schedules keyed by session id."""
        query = "SELECT * FROM schedules"
        if enabled_only:
            query += " WHERE enabled = 1"
        with self._get_conn() as conn:
            rows = conn.execute(query + " ORDER BY created_at, session_id").fetchall()
        return {r["session_id"]: _row_to_config(r) for r in rows}

    # ════════════════════════════════════════════════════════════
    # EXECUTION LOG
    # ════════════════════════════════════════════════════════════

    def log_execution(
        self,
        session_id: str,
        started_at: datetime,
        status: str,
        error: str | None = None,
        rejected_actions: list[str] | None = None,
        duration_ms: int = 0,
        error_count: int = 0,
    ) -> None:
        """Record one cycle result."""
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO schedule_execution_log
                   (session_id, started_at, status, error, rejected_actions,
                    duration_ms, error_count)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    session_id, started_at.isoformat(), status, error,
                    json.dumps(rejected_actions or []), duration_ms, error_count,
                ),
            )
            conn.commit()

    def get_execution_log(self, session_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent cycles first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM schedule_execution_log
                   WHERE session_id = ? ORDER BY id DESC LIMIT ?""",
                (session_id, limit),
            ).fetchall()
        result = []
        for r in rows:
            entry = dict(r)
            entry["rejected_actions"] = json.loads(entry["rejected_actions"] or "[]")
            result.append(entry)
        return result

    # ════════════════════════════════════════════════════════════
    # EVENTS (engine → boundary layer)
    # ════════════════════════════════════════════════════════════

    def add_event(self, session_id: str, event_type: str, payload: dict[str, Any]) -> int:
        with self._get_conn() as conn:
            cursor = conn.execute(
                """INSERT INTO schedule_events (session_id, event_type, payload)
                   VALUES (?, ?, ?)""",
                (session_id, event_type, json.dumps(payload, default=str)),
            )
            conn.commit()
        return cursor.lastrowid

    def get_undelivered_events(self, session_id: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM schedule_events WHERE is_delivered = 0"
        params: tuple = ()
        if session_id:
            query += " AND session_id = ?"
            params = (session_id,)
        with self._get_conn() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        result = []
        for r in rows:
            event = dict(r)
            event["payload"] = json.loads(event["payload"] or "{}")
            result.append(event)
        return result

    def mark_events_delivered(self, event_ids: list[int]) -> None:
        if not event_ids:
            return
        placeholders = ",".join("?" for _ in event_ids)
        with self._get_conn() as conn:
            conn.execute(
                f"UPDATE schedule_events SET is_delivered = 1 WHERE id IN ({placeholders})",
                event_ids,
            )
            conn.commit()


def _row_to_config(row: sqlite3.Row) -> ScheduleConfig:
    last_run = row["last_executed_at"]
    return ScheduleConfig(
        enabled=bool(row["enabled"]),
        interval_ms=row["interval_ms"],
        prompt=row["prompt"],
        permission_policy=PermissionPolicy(row["permission_policy"]),
        max_errors=row["max_errors"],
        error_count=row["error_count"],
        last_executed_at=datetime.fromisoformat(last_run) if last_run else None,
        last_error=row["last_error"],
    )


_SCHEMA = """
-- 1. Schedules (one per session)
CREATE TABLE IF NOT EXISTS schedules (
    session_id TEXT PRIMARY KEY,
    enabled INTEGER NOT NULL DEFAULT 1,
    interval_ms INTEGER NOT NULL,
    prompt TEXT NOT NULL,
    permission_policy TEXT NOT NULL DEFAULT 'allow-safe',
    max_errors INTEGER NOT NULL DEFAULT 5,
    error_count INTEGER NOT NULL DEFAULT 0,
    last_executed_at TEXT,
    last_error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- 2. Execution log
CREATE TABLE IF NOT EXISTS schedule_execution_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    status TEXT DEFAULT 'success',
    error TEXT,
    rejected_actions TEXT,
    duration_ms INTEGER DEFAULT 0,
    error_count INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_execution_session
    ON schedule_execution_log(session_id, id DESC);

-- 3. Events (auto-disable notices for the boundary layer)
CREATE TABLE IF NOT EXISTS schedule_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT,
    is_delivered BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""
