"""SQLite storage driver (default persistence).

SQLite is used as a local, file-backed state store. Each operation opens its
own connection in autocommit mode, so runtimes on different threads never
share a connection and every read-then-write touches a single row.

Tables:
- agent_state: one mutable row per agent
- agent_runs: append-only audit log
- scheduler_runs: one row per scheduled event key (last fire)
- scheduler_fires: append-only scheduler audit log
- scheduler_reminders: one-shot reminders (fired flag is the idempotency boundary)
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..models import (
    AgentRunRecord,
    AgentRuntimeState,
    FireOutcome,
    FireRecord,
    ReminderRecord,
    RunOutcome,
)
from .interfaces import StateStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class SQLiteStateStore(StateStore):
    def __init__(self, path: Path | str):
        self.path = Path(path).resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  version INTEGER NOT NULL
                );
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (SCHEMA_VERSION,))
            elif int(row["version"]) != SCHEMA_VERSION:
                raise RuntimeError(f"Unsupported SQLite schema_version: {row['version']}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_state (
                  agent_id TEXT PRIMARY KEY,
                  status TEXT NOT NULL,
                  cycle INTEGER NOT NULL DEFAULT 0,
                  total_runs INTEGER NOT NULL DEFAULT 0,
                  last_run_at INTEGER,
                  last_error TEXT,
                  consecutive_errors INTEGER NOT NULL DEFAULT 0,
                  created_at INTEGER NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_runs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  agent_id TEXT NOT NULL,
                  cycle INTEGER NOT NULL,
                  started_at INTEGER NOT NULL,
                  duration_ms INTEGER NOT NULL,
                  outcome TEXT NOT NULL,
                  error_msg TEXT
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_agent_runs_agent ON agent_runs(agent_id, started_at);"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduler_runs (
                  event_key TEXT PRIMARY KEY,
                  last_run_at INTEGER NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduler_fires (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  event_key TEXT NOT NULL,
                  fired_at INTEGER NOT NULL,
                  outcome TEXT NOT NULL,
                  detail TEXT
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduler_reminders (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  fire_at INTEGER NOT NULL,
                  message TEXT NOT NULL,
                  fired INTEGER NOT NULL DEFAULT 0
                );
                """
            )

    # ------------------------------------------------------------------
    # Agent state
    # ------------------------------------------------------------------

    def get_agent_state(self, agent_id: str) -> Optional[AgentRuntimeState]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_state WHERE agent_id = ?;", (agent_id,)
            ).fetchone()
        if row is None:
            return None
        return AgentRuntimeState.from_row(dict(row))

    def put_agent_state(self, state: AgentRuntimeState) -> None:
        row = state.to_row()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_state (
                  agent_id, status, cycle, total_runs, last_run_at,
                  last_error, consecutive_errors, created_at
                ) VALUES (
                  :agent_id, :status, :cycle, :total_runs, :last_run_at,
                  :last_error, :consecutive_errors, :created_at
                )
                ON CONFLICT(agent_id) DO UPDATE SET
                  status = excluded.status,
                  cycle = MAX(agent_state.cycle, excluded.cycle),
                  total_runs = excluded.total_runs,
                  last_run_at = excluded.last_run_at,
                  last_error = excluded.last_error,
                  consecutive_errors = excluded.consecutive_errors;
                """,
                row,
            )

    def append_run_record(self, record: AgentRunRecord) -> int:
        with self.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO agent_runs (agent_id, cycle, started_at, duration_ms, outcome, error_msg)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    record.agent_id,
                    record.cycle,
                    record.started_at,
                    record.duration_ms,
                    record.outcome.value,
                    record.error,
                ),
            )
            return int(cur.lastrowid)

    def list_run_records(self, agent_id: str, limit: int = 50) -> List[AgentRunRecord]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, agent_id, cycle, started_at, duration_ms, outcome, error_msg
                FROM agent_runs WHERE agent_id = ?
                ORDER BY started_at DESC, id DESC LIMIT ?;
                """,
                (agent_id, limit),
            ).fetchall()
        return [
            AgentRunRecord(
                id=r["id"],
                agent_id=r["agent_id"],
                cycle=r["cycle"],
                started_at=r["started_at"],
                duration_ms=r["duration_ms"],
                outcome=RunOutcome(r["outcome"]),
                error=r["error_msg"],
            )
            for r in rows
        ]

    def run_stats(self, since_ms: int) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT agent_id,
                       COUNT(*) AS total,
                       SUM(CASE WHEN outcome = 'success' THEN 1 ELSE 0 END) AS successes,
                       SUM(CASE WHEN outcome = 'error' THEN 1 ELSE 0 END) AS errors,
                       SUM(CASE WHEN outcome = 'rate_limit' THEN 1 ELSE 0 END) AS rate_limits,
                       AVG(duration_ms) AS avg_duration_ms
                FROM agent_runs WHERE started_at > ?
                GROUP BY agent_id ORDER BY agent_id;
                """,
                (since_ms,),
            ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Scheduled events
    # ------------------------------------------------------------------

    def get_last_fire(self, key: str) -> int:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT last_run_at FROM scheduler_runs WHERE event_key = ?;", (key,)
            ).fetchone()
        return int(row["last_run_at"]) if row else 0

    def put_last_fire(self, key: str, epoch: int) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduler_runs (event_key, last_run_at) VALUES (?, ?)
                ON CONFLICT(event_key) DO UPDATE SET last_run_at = excluded.last_run_at;
                """,
                (key, epoch),
            )

    def append_fire_record(self, record: FireRecord) -> int:
        with self.connect() as conn:
            cur = conn.execute(
                "INSERT INTO scheduler_fires (event_key, fired_at, outcome, detail) VALUES (?, ?, ?, ?);",
                (record.event_key, record.fired_at, record.outcome.value, record.detail),
            )
            return int(cur.lastrowid)

    def list_recent_fires(self, limit: int = 20) -> List[FireRecord]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, event_key, fired_at, outcome, detail FROM scheduler_fires
                ORDER BY fired_at DESC, id DESC LIMIT ?;
                """,
                (limit,),
            ).fetchall()
        return [
            FireRecord(
                id=r["id"],
                event_key=r["event_key"],
                fired_at=r["fired_at"],
                outcome=FireOutcome(r["outcome"]),
                detail=r["detail"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def insert_reminder(self, fire_at: int, message: str) -> int:
        with self.connect() as conn:
            cur = conn.execute(
                "INSERT INTO scheduler_reminders (fire_at, message) VALUES (?, ?);",
                (int(fire_at), message),
            )
            return int(cur.lastrowid)

    def list_due_reminders(self, now_epoch: int) -> List[ReminderRecord]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, fire_at, message, fired FROM scheduler_reminders
                WHERE fire_at <= ? AND fired = 0 ORDER BY fire_at ASC, id ASC;
                """,
                (now_epoch,),
            ).fetchall()
        return [self._reminder(r) for r in rows]

    def list_pending_reminders(self) -> List[ReminderRecord]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, fire_at, message, fired FROM scheduler_reminders
                WHERE fired = 0 ORDER BY fire_at ASC, id ASC;
                """
            ).fetchall()
        return [self._reminder(r) for r in rows]

    def mark_reminder_fired(self, reminder_id: int) -> bool:
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE scheduler_reminders SET fired = 1 WHERE id = ? AND fired = 0;",
                (reminder_id,),
            )
            return cur.rowcount > 0

    def delete_unfired_reminder(self, reminder_id: int) -> bool:
        with self.connect() as conn:
            cur = conn.execute(
                "DELETE FROM scheduler_reminders WHERE id = ? AND fired = 0;",
                (reminder_id,),
            )
            return cur.rowcount > 0

    @staticmethod
    def _reminder(row: sqlite3.Row) -> ReminderRecord:
        return ReminderRecord(
            id=row["id"],
            fire_at=row["fire_at"],
            message=row["message"],
            fired=bool(row["fired"]),
        )
