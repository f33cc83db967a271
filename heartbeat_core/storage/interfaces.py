"""Storage interface for heartbeat_core.

The runtime keeps no durable state in memory. This interface defines the
persistence boundary for:
- per-agent runtime state (one row per agent, one writer per row)
- agent run records (append-only audit log)
- scheduled event last-fire timestamps (one row per event key)
- one-shot reminders
- scheduler fire records (append-only audit log)

Concrete drivers live in ``storage/`` (SQLite is the default).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import AgentRunRecord, AgentRuntimeState, FireRecord, ReminderRecord


class StateStore(ABC):
    # -- Agent state -------------------------------------------------------

    @abstractmethod
    def get_agent_state(self, agent_id: str) -> Optional[AgentRuntimeState]:
        """Fetch persisted state for an agent, or None if it never ran."""

    @abstractmethod
    def put_agent_state(self, state: AgentRuntimeState) -> None:
        """Upsert the state row for ``state.agent_id``. The stored cycle never decreases."""

    @abstractmethod
    def append_run_record(self, record: AgentRunRecord) -> int:
        """Append an immutable run record. Returns its id."""

    @abstractmethod
    def list_run_records(self, agent_id: str, limit: int = 50) -> List[AgentRunRecord]:
        """Most recent run records for an agent, newest first."""

    @abstractmethod
    def run_stats(self, since_ms: int) -> List[Dict[str, Any]]:
        """Per-agent outcome counts and average duration since ``since_ms``."""

    # -- Scheduled events ----------------------------------------------------

    @abstractmethod
    def get_last_fire(self, key: str) -> int:
        """Last fire epoch seconds for an event key (0 if it never fired)."""

    @abstractmethod
    def put_last_fire(self, key: str, epoch: int) -> None:
        """Upsert the last fire timestamp for an event key."""

    @abstractmethod
    def append_fire_record(self, record: FireRecord) -> int:
        """Append an immutable scheduler fire record. Returns its id."""

    @abstractmethod
    def list_recent_fires(self, limit: int = 20) -> List[FireRecord]:
        """Most recent fire records, newest first."""

    # -- Reminders -----------------------------------------------------------

    @abstractmethod
    def insert_reminder(self, fire_at: int, message: str) -> int:
        """Create an unfired reminder. Returns its id."""

    @abstractmethod
    def list_due_reminders(self, now_epoch: int) -> List[ReminderRecord]:
        """Unfired reminders with ``fire_at <= now_epoch``, oldest first."""

    @abstractmethod
    def list_pending_reminders(self) -> List[ReminderRecord]:
        """All unfired reminders ordered by fire time."""

    @abstractmethod
    def mark_reminder_fired(self, reminder_id: int) -> bool:
        """Flip fired 0 → 1. Returns True only for the caller that flipped it."""

    @abstractmethod
    def delete_unfired_reminder(self, reminder_id: int) -> bool:
        """Delete a reminder only while unfired. Returns True if deleted."""
