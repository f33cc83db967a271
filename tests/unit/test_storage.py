"""Tests for the SQLite state store."""

from pathlib import Path

from heartbeat_core.models import (
    AgentRunRecord,
    AgentRuntimeState,
    AgentStatus,
    FireOutcome,
    FireRecord,
    RunOutcome,
)
from heartbeat_core.storage.sqlite import SQLiteStateStore


class TestAgentState:
    def test_missing_state_is_none(self, store: SQLiteStateStore) -> None:
        assert store.get_agent_state("ghost") is None

    def test_upsert_round_trip(self, store: SQLiteStateStore) -> None:
        state = AgentRuntimeState(agent_id="scout", created_at=1_000)
        store.put_agent_state(state)

        state.cycle = 7
        state.status = AgentStatus.ERROR
        state.consecutive_errors = 2
        state.last_error = "boom"
        state.last_run_at = 5_000
        store.put_agent_state(state)

        loaded = store.get_agent_state("scout")
        assert loaded == state

    def test_cycle_never_decreases(self, store: SQLiteStateStore) -> None:
        store.put_agent_state(AgentRuntimeState(agent_id="scout", cycle=4, created_at=1))
        store.put_agent_state(AgentRuntimeState(agent_id="scout", cycle=1, status=AgentStatus.STOPPED, created_at=1))

        loaded = store.get_agent_state("scout")
        assert loaded.cycle == 4
        assert loaded.status == AgentStatus.STOPPED

    def test_state_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "state.db"
        SQLiteStateStore(path).put_agent_state(AgentRuntimeState(agent_id="a", cycle=3, created_at=1))
        assert SQLiteStateStore(path).get_agent_state("a").cycle == 3


class TestRunRecords:
    def test_records_newest_first(self, store: SQLiteStateStore) -> None:
        for cycle in range(3):
            store.append_run_record(
                AgentRunRecord("scout", cycle, started_at=1_000 * cycle, duration_ms=5, outcome=RunOutcome.SUCCESS)
            )
        store.append_run_record(AgentRunRecord("other", 0, 99, 1, RunOutcome.SUCCESS))

        records = store.list_run_records("scout")
        assert [r.cycle for r in records] == [2, 1, 0]
        assert all(r.id is not None for r in records)
        assert len(store.list_run_records("scout", limit=2)) == 2

    def test_run_stats(self, store: SQLiteStateStore) -> None:
        store.append_run_record(AgentRunRecord("a", 0, 10_000, 100, RunOutcome.SUCCESS))
        store.append_run_record(AgentRunRecord("a", 1, 20_000, 300, RunOutcome.ERROR, "x"))
        store.append_run_record(AgentRunRecord("a", 2, 30_000, 0, RunOutcome.RATE_LIMIT))
        store.append_run_record(AgentRunRecord("a", 3, 1_000, 0, RunOutcome.SUCCESS))

        stats = store.run_stats(since_ms=5_000)
        assert stats == [
            {
                "agent_id": "a",
                "total": 3,
                "successes": 1,
                "errors": 1,
                "rate_limits": 1,
                "avg_duration_ms": 400 / 3,
            }
        ]


class TestScheduledEvents:
    def test_last_fire_defaults_to_zero(self, store: SQLiteStateStore) -> None:
        assert store.get_last_fire("morning_briefing") == 0

    def test_last_fire_upsert(self, store: SQLiteStateStore) -> None:
        store.put_last_fire("heartbeat", 100)
        store.put_last_fire("heartbeat", 200)
        assert store.get_last_fire("heartbeat") == 200

    def test_fire_records(self, store: SQLiteStateStore) -> None:
        store.append_fire_record(FireRecord("heartbeat", 100, FireOutcome.SILENT))
        store.append_fire_record(FireRecord("reminder:1", 200, FireOutcome.DISPATCHED))
        fires = store.list_recent_fires()
        assert [f.event_key for f in fires] == ["reminder:1", "heartbeat"]
        assert fires[1].outcome == FireOutcome.SILENT


class TestReminders:
    def test_due_and_pending(self, store: SQLiteStateStore) -> None:
        late = store.insert_reminder(500, "later")
        early = store.insert_reminder(100, "sooner")

        assert [r.id for r in store.list_pending_reminders()] == [early, late]
        assert [r.id for r in store.list_due_reminders(200)] == [early]

    def test_mark_fired_only_once(self, store: SQLiteStateStore) -> None:
        rid = store.insert_reminder(100, "ping")
        assert store.mark_reminder_fired(rid) is True
        assert store.mark_reminder_fired(rid) is False
        assert store.list_due_reminders(1_000) == []

    def test_cancel_only_while_unfired(self, store: SQLiteStateStore) -> None:
        a = store.insert_reminder(100, "a")
        b = store.insert_reminder(100, "b")
        store.mark_reminder_fired(b)

        assert store.delete_unfired_reminder(a) is True
        assert store.delete_unfired_reminder(a) is False
        assert store.delete_unfired_reminder(b) is False
