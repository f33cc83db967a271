"""Tests for AgentRuntime - the per-agent heartbeat state machine.

Tests cover:
- Successful, failed, silent and rate-limited ticks
- Exponential backoff window and its cap
- Auto-disable with a single escalation
- Concurrency guard (no overlapping dispatches)
- Persistence across restarts and timer lifecycle
"""

import threading
import time
from typing import Any, List

import pytest

from heartbeat_core.agents.definitions import CallableDirectiveBuilder, RotatingDirectiveBuilder
from heartbeat_core.dispatch.base import DispatchError
from heartbeat_core.models import AgentDefinition, AgentRuntimeState, AgentStatus, RunOutcome
from heartbeat_core.ratelimit import RateLimitCoordinator
from heartbeat_core.runtime import AgentRuntime
from heartbeat_core.storage.sqlite import SQLiteStateStore
from tests.fakes import BlockingDispatcher, FakeClock, RecordingDispatcher


def make_definition(builder=None, **overrides: Any) -> AgentDefinition:
    fields = dict(
        agent_id="scout",
        name="Scout",
        role="market watcher",
        heartbeat_seconds=3600,
        enabled=True,
        session_id="chat-1",
        principal_id="owner",
        builder=builder or RotatingDirectiveBuilder(["look around", "write report"]),
    )
    fields.update(overrides)
    return AgentDefinition(**fields)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def make_runtime(store, dispatcher, rate_limits, clock):
    """Factory for runtimes sharing the test store/dispatcher/clock."""
    created: List[AgentRuntime] = []

    def _make(definition=None, dispatcher_override=None, **kwargs) -> AgentRuntime:
        kwargs.setdefault("first_tick_delay", 3600)
        runtime = AgentRuntime(
            definition or make_definition(),
            store,
            dispatcher_override or dispatcher,
            rate_limits,
            clock=clock,
            **kwargs,
        )
        created.append(runtime)
        return runtime

    yield _make
    for runtime in created:
        runtime.stop()


# =============================================================================
# Tick outcomes
# =============================================================================


class TestSuccessfulTick:
    def test_dispatches_with_identity_header(self, make_runtime, dispatcher: RecordingDispatcher) -> None:
        runtime = make_runtime()

        assert runtime.tick() == RunOutcome.SUCCESS
        assert dispatcher.calls == [
            ("chat-1", "[AGENT:SCOUT] (Scout - market watcher)\n\nlook around", "owner")
        ]

    def test_updates_state(self, make_runtime, store: SQLiteStateStore, clock: FakeClock) -> None:
        runtime = make_runtime()
        runtime.tick()

        state = store.get_agent_state("scout")
        assert state.cycle == 1
        assert state.total_runs == 1
        assert state.status == AgentStatus.IDLE
        assert state.last_run_at == clock.epoch_ms()
        assert state.consecutive_errors == 0
        assert not runtime.in_flight

    def test_writes_success_record(self, make_runtime, store: SQLiteStateStore) -> None:
        make_runtime().tick()

        [record] = store.list_run_records("scout")
        assert record.outcome == RunOutcome.SUCCESS
        assert record.cycle == 0
        assert record.error is None

    def test_rotates_directives_by_cycle(self, make_runtime, dispatcher: RecordingDispatcher) -> None:
        runtime = make_runtime()
        for _ in range(3):
            runtime.tick()

        bodies = [d.split("\n\n", 1)[1] for d in dispatcher.directives]
        assert bodies == ["look around", "write report", "look around"]

    def test_success_clears_previous_error(self, make_runtime, dispatcher: RecordingDispatcher, clock: FakeClock) -> None:
        runtime = make_runtime()
        dispatcher.queue(DispatchError("gateway down"))
        runtime.tick()
        clock.advance(seconds=30)

        assert runtime.tick() == RunOutcome.SUCCESS
        assert runtime.state.consecutive_errors == 0
        assert runtime.state.last_error is None


class TestSilentTick:
    def test_builder_none_skips_dispatch_but_counts_cycle(
        self, make_runtime, dispatcher: RecordingDispatcher, store: SQLiteStateStore
    ) -> None:
        runtime = make_runtime(make_definition(builder=CallableDirectiveBuilder(lambda cycle: None)))

        assert runtime.tick() is None
        assert runtime.tick() is None
        assert dispatcher.calls == []
        assert store.get_agent_state("scout").cycle == 2
        assert store.list_run_records("scout") == []


class TestFailedTick:
    def test_dispatch_error_recorded(self, make_runtime, dispatcher: RecordingDispatcher, store: SQLiteStateStore) -> None:
        runtime = make_runtime()
        dispatcher.queue(DispatchError("gateway down"))

        assert runtime.tick() == RunOutcome.ERROR

        state = store.get_agent_state("scout")
        assert state.status == AgentStatus.ERROR
        assert state.consecutive_errors == 1
        assert state.last_error == "gateway down"
        assert state.total_runs == 0
        assert state.cycle == 1
        [record] = store.list_run_records("scout")
        assert record.outcome == RunOutcome.ERROR
        assert record.error == "gateway down"

    def test_builder_exception_is_a_failed_tick(
        self, make_runtime, dispatcher: RecordingDispatcher, store: SQLiteStateStore
    ) -> None:
        def broken(cycle: int) -> str:
            raise RuntimeError("template missing")

        runtime = make_runtime(make_definition(builder=CallableDirectiveBuilder(broken)))

        assert runtime.tick() == RunOutcome.ERROR
        assert dispatcher.calls == []
        assert runtime.state.cycle == 1
        assert runtime.state.consecutive_errors == 1
        [record] = store.list_run_records("scout")
        assert record.error == "template missing"
        assert record.duration_ms == 0


class TestRateLimitedTick:
    def test_rate_limit_pauses_globally(
        self,
        make_runtime,
        dispatcher: RecordingDispatcher,
        rate_limits: RateLimitCoordinator,
        store: SQLiteStateStore,
        clock: FakeClock,
    ) -> None:
        runtime = make_runtime()
        dispatcher.queue("You've hit your limit · resets 3pm (America/Toronto)")

        assert runtime.tick() == RunOutcome.RATE_LIMIT
        assert rate_limits.is_paused()

        state = store.get_agent_state("scout")
        assert state.status == AgentStatus.BACKOFF
        assert state.consecutive_errors == 0
        assert state.total_runs == 0
        assert state.last_run_at == clock.epoch_ms()
        assert store.list_run_records("scout")[0].outcome == RunOutcome.RATE_LIMIT

    def test_pause_suppresses_every_agent(
        self, make_runtime, dispatcher: RecordingDispatcher, rate_limits: RateLimitCoordinator, clock: FakeClock
    ) -> None:
        first = make_runtime()
        second = make_runtime(make_definition(agent_id="analyst", name="Analyst"))
        dispatcher.queue("rate limit exceeded")
        first.tick()

        clock.advance(minutes=30)
        assert first.tick() is None
        assert second.tick() is None
        assert len(dispatcher.calls) == 1
        assert second.state.cycle == 0
        assert second.state.status == AgentStatus.IDLE
        assert first.state.status == AgentStatus.BACKOFF

        clock.advance(hours=2)
        assert second.tick() == RunOutcome.SUCCESS


# =============================================================================
# Backoff and auto-disable
# =============================================================================


class TestBackoff:
    def test_three_failures_wait_eighty_seconds(
        self, make_runtime, dispatcher: RecordingDispatcher, clock: FakeClock
    ) -> None:
        runtime = make_runtime()
        dispatcher.queue(DispatchError("1"), DispatchError("2"), DispatchError("3"))

        runtime.tick()
        clock.advance(seconds=20)
        runtime.tick()
        clock.advance(seconds=40)
        runtime.tick()
        assert runtime.state.consecutive_errors == 3
        assert runtime.backoff_ms() == 80_000

        clock.advance(seconds=79)
        assert runtime.tick() is None
        assert runtime.state.status == AgentStatus.BACKOFF
        assert len(dispatcher.calls) == 3

        clock.advance(seconds=1)
        assert runtime.tick() == RunOutcome.SUCCESS

    def test_backoff_does_not_advance_cycle(self, make_runtime, dispatcher: RecordingDispatcher) -> None:
        runtime = make_runtime()
        dispatcher.queue(DispatchError("down"))
        runtime.tick()

        assert runtime.tick() is None
        assert runtime.state.cycle == 1

    def test_backoff_capped_at_two_heartbeats(self, make_runtime) -> None:
        runtime = make_runtime(make_definition(heartbeat_seconds=30))
        runtime.state.consecutive_errors = 4
        assert runtime.backoff_ms() == 60_000

    def test_no_backoff_without_errors(self, make_runtime) -> None:
        assert make_runtime().backoff_ms() == 0

    def test_snapshot_reports_backoff_until(self, make_runtime, dispatcher: RecordingDispatcher) -> None:
        runtime = make_runtime()
        dispatcher.queue(DispatchError("down"))
        runtime.tick()

        data = runtime.snapshot().to_dict()
        assert data["status"] == "error"
        assert data["backoff_until"] is not None


class TestAutoDisable:
    def _fail_five_times(self, runtime: AgentRuntime, clock: FakeClock) -> None:
        for _ in range(5):
            runtime.tick()
            clock.advance(seconds=200)

    def test_fifth_failure_stops_agent_with_one_escalation(
        self, make_runtime, dispatcher: RecordingDispatcher, store: SQLiteStateStore, clock: FakeClock
    ) -> None:
        runtime = make_runtime(admin_session_id="admin-chat", admin_principal_id="admin")
        dispatcher.queue(*[DispatchError(f"fail {i}") for i in range(5)])

        self._fail_five_times(runtime, clock)

        state = store.get_agent_state("scout")
        assert state.status == AgentStatus.STOPPED
        assert state.consecutive_errors == 5
        assert not runtime.enabled
        assert not runtime.is_armed()

        assert len(dispatcher.calls) == 6
        session_id, notice, principal_id = dispatcher.calls[-1]
        assert (session_id, principal_id) == ("admin-chat", "admin")
        assert "auto-disabled after 5 consecutive errors" in notice
        assert "fail 4" in notice

        assert runtime.tick() is None
        assert len(dispatcher.calls) == 6

    def test_escalation_defaults_to_agent_session(
        self, make_runtime, dispatcher: RecordingDispatcher, clock: FakeClock
    ) -> None:
        runtime = make_runtime()
        dispatcher.queue(*[DispatchError("x") for _ in range(5)])

        self._fail_five_times(runtime, clock)

        assert dispatcher.calls[-1][0] == "chat-1"

    def test_escalation_failure_is_swallowed(
        self, make_runtime, dispatcher: RecordingDispatcher, clock: FakeClock
    ) -> None:
        runtime = make_runtime()
        dispatcher.queue(*[DispatchError("x") for _ in range(6)])

        self._fail_five_times(runtime, clock)

        assert len(dispatcher.calls) == 6
        assert runtime.state.status == AgentStatus.STOPPED

    def test_custom_threshold(self, make_runtime, dispatcher: RecordingDispatcher, clock: FakeClock) -> None:
        runtime = make_runtime(disable_threshold=2)
        dispatcher.queue(DispatchError("a"), DispatchError("b"))

        runtime.tick()
        clock.advance(seconds=30)
        runtime.tick()

        assert not runtime.enabled


# =============================================================================
# Concurrency guard
# =============================================================================


class TestConcurrencyGuard:
    def test_overlapping_tick_is_dropped(self, make_runtime, store: SQLiteStateStore) -> None:
        blocking = BlockingDispatcher()
        runtime = make_runtime(dispatcher_override=blocking)

        worker = threading.Thread(target=runtime.tick)
        worker.start()
        assert blocking.entered.wait(timeout=5)

        assert runtime.in_flight
        assert runtime.snapshot().state.status == AgentStatus.RUNNING
        assert runtime.tick() is None

        blocking.release.set()
        worker.join(timeout=5)

        assert blocking.calls == 1
        assert not runtime.in_flight
        assert len(store.list_run_records("scout")) == 1

    def test_stop_during_dispatch_leaves_agent_stopped(self, make_runtime) -> None:
        blocking = BlockingDispatcher()
        runtime = make_runtime(dispatcher_override=blocking)

        worker = threading.Thread(target=runtime.tick)
        worker.start()
        assert blocking.entered.wait(timeout=5)

        runtime.stop()
        assert runtime.state.status == AgentStatus.RUNNING

        blocking.release.set()
        worker.join(timeout=5)
        assert runtime.state.status == AgentStatus.STOPPED
        assert runtime.state.total_runs == 1

    def test_stop_if_idle_refused_during_dispatch(self, make_runtime) -> None:
        blocking = BlockingDispatcher()
        runtime = make_runtime(dispatcher_override=blocking)
        runtime.start()

        worker = threading.Thread(target=runtime.tick)
        worker.start()
        assert blocking.entered.wait(timeout=5)

        assert not runtime.stop_if_idle()
        assert runtime.is_armed()

        blocking.release.set()
        worker.join(timeout=5)
        assert runtime.stop_if_idle()
        assert not runtime.is_armed()
        assert runtime.state.status == AgentStatus.STOPPED


# =============================================================================
# Lifecycle and persistence
# =============================================================================


class TestLifecycle:
    def test_cycle_survives_restart(self, make_runtime, store: SQLiteStateStore) -> None:
        seen: List[int] = []
        builder = CallableDirectiveBuilder(lambda cycle: seen.append(cycle) or f"cycle {cycle}")

        first = make_runtime(make_definition(builder=builder))
        first.tick()
        first.tick()
        first.stop()

        second = make_runtime(make_definition(builder=builder))
        second.start()
        second.tick()

        assert seen == [0, 1, 2]
        assert store.get_agent_state("scout").cycle == 3

    def test_start_resets_errors_at_threshold(self, make_runtime, store: SQLiteStateStore) -> None:
        store.put_agent_state(
            AgentRuntimeState(agent_id="scout", status=AgentStatus.STOPPED, consecutive_errors=5, created_at=1)
        )
        runtime = make_runtime()

        assert runtime.start()
        assert runtime.is_armed()
        state = store.get_agent_state("scout")
        assert state.consecutive_errors == 0
        assert state.status == AgentStatus.IDLE

    def test_start_keeps_errors_below_threshold(self, make_runtime, store: SQLiteStateStore) -> None:
        store.put_agent_state(AgentRuntimeState(agent_id="scout", consecutive_errors=2, created_at=1))
        runtime = make_runtime()
        runtime.start()
        assert runtime.state.consecutive_errors == 2

    def test_restored_running_status_becomes_idle(self, make_runtime, store: SQLiteStateStore) -> None:
        store.put_agent_state(AgentRuntimeState(agent_id="scout", status=AgentStatus.RUNNING, created_at=1))
        runtime = make_runtime()
        assert runtime.state.status == AgentStatus.IDLE
        assert not runtime.in_flight

    def test_start_twice_is_refused(self, make_runtime) -> None:
        runtime = make_runtime()
        assert runtime.start()
        assert not runtime.start()

    def test_disabled_agent_does_not_start(self, make_runtime, store: SQLiteStateStore) -> None:
        runtime = make_runtime(make_definition(enabled=False))
        assert not runtime.start()
        assert not runtime.is_armed()
        assert store.get_agent_state("scout").status == AgentStatus.STOPPED
        assert runtime.tick() is None

    def test_stop_is_idempotent(self, make_runtime, store: SQLiteStateStore) -> None:
        runtime = make_runtime()
        runtime.start()
        runtime.stop()
        runtime.stop()
        assert not runtime.is_armed()
        assert store.get_agent_state("scout").status == AgentStatus.STOPPED

    def test_stopped_runtime_does_not_tick(self, make_runtime, dispatcher: RecordingDispatcher) -> None:
        runtime = make_runtime()
        runtime.start()
        runtime.stop()

        assert runtime.tick() is None
        assert dispatcher.calls == []
        assert runtime.state.cycle == 0

    def test_disable_then_restart(self, make_runtime) -> None:
        runtime = make_runtime()
        runtime.start()
        runtime.set_enabled(False)
        assert not runtime.is_armed()

        assert runtime.restart()
        assert runtime.enabled
        assert runtime.is_armed()

    def test_enable_does_not_arm(self, make_runtime) -> None:
        runtime = make_runtime(make_definition(enabled=False))
        runtime.set_enabled(True)
        assert runtime.enabled
        assert not runtime.is_armed()

    def test_timer_fires_repeatedly(self, make_runtime, dispatcher: RecordingDispatcher) -> None:
        runtime = make_runtime(make_definition(heartbeat_seconds=0.05), first_tick_delay=0.01)
        runtime.start()

        deadline = time.monotonic() + 5
        while len(dispatcher.calls) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        runtime.stop()

        assert len(dispatcher.calls) >= 3
