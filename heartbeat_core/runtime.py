"""
AGENT RUNTIME
==============

Heartbeat runtime for one autonomous agent: a repeating timer, persisted
state, and the tick algorithm (backoff, dispatch, success/failure
bookkeeping, auto-disable, escalation).

Architecture
------------
Each runtime owns one daemon timer thread. The timer waits a short
first-tick delay (so agents registered together do not all fire at boot),
then fires every ``heartbeat_seconds``. A fire never runs the tick on the
timer thread: it starts a short-lived worker thread, so the timer keeps its
schedule even while a dispatch is outstanding.

Overlapping fires are dropped by an explicit guard (``_in_flight``) that is
checked and set under ``_lock`` at the start of every tick. The guard is
never persisted, so it is always clear after a restart.

Tick
----
1. Disabled, stopped or guard set → no-op.
2. Global rate-limit pause → no-op (not a backoff, not an error).
3. After failures, skip ticks inside ``min(2**errors * 10s, 2 * heartbeat)``
   of the last run (status ``backoff``).
4. Build the directive for the current cycle; the cycle counter is
   incremented and persisted whether or not the builder returns text.
5. Dispatch with an ``[AGENT:<ID>]`` identity header and record the outcome.
6. ``disable_threshold`` consecutive failures stop the timer and send one
   best-effort admin notification.

Nothing raised below the tick boundary escapes to the timer.
"""

import logging
import threading
from typing import Any, Optional

from .clock import Clock, format_epoch_ms
from .dispatch.base import Dispatcher
from .models import (
    AgentDefinition,
    AgentRunRecord,
    AgentRuntimeState,
    AgentSnapshot,
    AgentStatus,
    RunOutcome,
)
from .ratelimit import RateLimitCoordinator
from .storage.interfaces import StateStore

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

FIRST_TICK_DELAY_S = 10.0
DISABLE_THRESHOLD = 5
BACKOFF_BASE_MS = 10_000
STOP_JOIN_TIMEOUT_S = 5.0


# ============================================================================
# AGENT RUNTIME
# ============================================================================

class AgentRuntime:
    """
    Runs exactly one agent's heartbeat.
    """

    def __init__(
        self,
        definition: AgentDefinition,
        store: StateStore,
        dispatcher: Dispatcher,
        rate_limits: RateLimitCoordinator,
        clock: Optional[Clock] = None,
        first_tick_delay: float = FIRST_TICK_DELAY_S,
        disable_threshold: int = DISABLE_THRESHOLD,
        backoff_base_ms: int = BACKOFF_BASE_MS,
        admin_session_id: Any = None,
        admin_principal_id: Any = None,
    ):
        """
        Args:
            definition: Immutable agent definition.
            store: Durable state store (agent state + run audit).
            dispatcher: Executes directives.
            rate_limits: Shared global throttling coordinator.
            clock: Wall clock (defaults to the system clock).
            first_tick_delay: Seconds between start() and the first tick.
            disable_threshold: Consecutive failures before auto-disable.
            backoff_base_ms: Base of the exponential backoff window.
            admin_session_id: Where the auto-disable notice goes
                              (defaults to the agent's own session).
            admin_principal_id: Principal for the auto-disable notice.
        """
        self.definition = definition
        self._store = store
        self._dispatcher = dispatcher
        self._rate_limits = rate_limits
        self._clock = clock or Clock()
        self.first_tick_delay = first_tick_delay
        self.disable_threshold = disable_threshold
        self.backoff_base_ms = backoff_base_ms
        self._admin_session_id = admin_session_id
        self._admin_principal_id = admin_principal_id

        self._lock = threading.Lock()
        self._in_flight = False
        self._enabled = definition.enabled
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None

        self.state = self._load_state()

    # ========================================================================
    # PROPERTIES
    # ========================================================================

    @property
    def agent_id(self) -> str:
        return self.definition.agent_id

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def is_armed(self) -> bool:
        """True while the timer thread is alive."""
        thread = self._timer_thread
        return thread is not None and thread.is_alive()

    def backoff_ms(self) -> int:
        """Current cool-down window after consecutive failures."""
        errors = self.state.consecutive_errors
        if errors <= 0:
            return 0
        return min((2 ** errors) * self.backoff_base_ms, 2 * self.definition.heartbeat_ms)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> bool:
        """
        Restore persisted state and arm the timer.

        Returns:
            True if the timer was armed, False if already running or disabled.
        """
        with self._lock:
            if self.is_armed():
                logger.warning(f"[agent:{self.agent_id}] Already running")
                return False

            if not self._in_flight:
                self.state = self._load_state()

            if not self._enabled:
                logger.info(f"[agent:{self.agent_id}] Disabled, not starting")
                self.state.status = AgentStatus.STOPPED
                self._persist()
                return False

            if self.state.consecutive_errors >= self.disable_threshold:
                logger.warning(
                    f"[agent:{self.agent_id}] Restored with {self.state.consecutive_errors} "
                    f"consecutive errors, resetting to 0 for this process"
                )
                self.state.consecutive_errors = 0

            if not self._in_flight:
                self.state.status = AgentStatus.IDLE
            self._persist()

            self._stop_event = threading.Event()
            self._timer_thread = threading.Thread(
                target=self._timer_loop,
                args=(self._stop_event,),
                daemon=True,
                name=f"agent-{self.agent_id}-timer",
            )
            self._timer_thread.start()

        logger.info(
            f"[agent:{self.agent_id}] Starting ({self.definition.name}), heartbeat every "
            f"{self.definition.heartbeat_seconds:.0f}s, first tick in {self.first_tick_delay:.0f}s"
        )
        return True

    def stop(self) -> None:
        """Clear the timer and persist final state. Does not abort an in-flight dispatch."""
        with self._lock:
            thread = self._halt()
        self._join(thread)

    def stop_if_idle(self) -> bool:
        """
        Stop only when no dispatch is outstanding.

        Returns:
            True if the runtime is now stopped, False if a dispatch is in flight.
        """
        with self._lock:
            if self._in_flight:
                return False
            thread = self._halt()
        self._join(thread)
        return True

    def _halt(self) -> Optional[threading.Thread]:
        """Caller holds ``_lock``. Once the stop event is set no new tick can begin."""
        self._stop_event.set()
        thread = self._timer_thread
        self._timer_thread = None
        if not self._in_flight:
            self.state.status = AgentStatus.STOPPED
        self._persist()
        return thread

    def _join(self, thread: Optional[threading.Thread]) -> None:
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=STOP_JOIN_TIMEOUT_S)
        logger.info(f"[agent:{self.agent_id}] Stopped")

    def set_enabled(self, enabled: bool) -> None:
        """Enable or disable. Disabling stops the timer; enabling does not arm it."""
        self._enabled = enabled
        if not enabled:
            self.stop()
        logger.info(f"[agent:{self.agent_id}] {'Enabled' if enabled else 'Disabled'}")

    def restart(self) -> bool:
        """Re-enable, then stop and start again."""
        self._enabled = True
        self.stop()
        return self.start()

    def _timer_loop(self, stop_event: threading.Event) -> None:
        """Timer thread: first tick after a short delay, then every heartbeat."""
        if stop_event.wait(self.first_tick_delay):
            return
        self._fire()
        while not stop_event.wait(self.definition.heartbeat_seconds):
            self._fire()

    def _fire(self) -> None:
        threading.Thread(
            target=self._safe_tick,
            daemon=True,
            name=f"agent-{self.agent_id}-tick",
        ).start()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception as e:
            logger.error(f"[agent:{self.agent_id}] Tick failed: {e}", exc_info=True)

    # ========================================================================
    # TICK
    # ========================================================================

    def tick(self) -> Optional[RunOutcome]:
        """
        Run one heartbeat evaluation.

        Returns:
            The outcome of the dispatch, or None when the tick did not dispatch.
        """
        with self._lock:
            if not self._enabled or self._in_flight or self._stop_event.is_set():
                return None

            if self._rate_limits.is_paused():
                logger.debug(
                    f"[agent:{self.agent_id}] Skipped, global rate limit for "
                    f"{self._rate_limits.remaining_seconds():.0f}s more"
                )
                return None

            now_ms = self._clock.epoch_ms()
            if self.state.consecutive_errors > 0 and self.state.last_run_at is not None:
                backoff = self.backoff_ms()
                elapsed = now_ms - self.state.last_run_at
                if elapsed < backoff:
                    if self.state.status != AgentStatus.BACKOFF:
                        self.state.status = AgentStatus.BACKOFF
                        self._persist()
                    logger.info(
                        f"[agent:{self.agent_id}] Backoff, {(backoff - elapsed) / 1000:.0f}s left "
                        f"({self.state.consecutive_errors} consecutive errors)"
                    )
                    return None

            cycle = self.state.cycle
            build_error: Optional[Exception] = None
            try:
                directive = self.definition.builder.build(cycle)
            except Exception as e:
                directive = None
                build_error = e
            self.state.cycle = cycle + 1

            if directive is None and build_error is None:
                self._persist()
                logger.debug(f"[agent:{self.agent_id}] Cycle {cycle} skipped (no directive)")
                return None

            self._in_flight = True
            self.state.status = AgentStatus.RUNNING
            self._persist()
            started_ms = self._clock.epoch_ms()

        try:
            if build_error is not None:
                logger.error(f"[agent:{self.agent_id}] Cycle {cycle} directive builder failed: {build_error}")
                return self._record_failure(cycle, started_ms, build_error)
            return self._dispatch(cycle, started_ms, directive)
        finally:
            with self._lock:
                self._in_flight = False
                if self.state.status == AgentStatus.RUNNING:
                    # Bookkeeping itself failed; leave a visible trace.
                    self.state.status = AgentStatus.ERROR

    def _dispatch(self, cycle: int, started_ms: int, directive: str) -> RunOutcome:
        logger.info(f"[agent:{self.agent_id}] Cycle {cycle} executing")
        try:
            result = self._dispatcher.dispatch(
                self.definition.session_id,
                self._with_header(directive),
                self.definition.principal_id,
            )
        except Exception as e:
            return self._record_failure(cycle, started_ms, e)

        if self._rate_limits.handle_result(result):
            return self._record_rate_limit(cycle, started_ms)
        return self._record_success(cycle, started_ms)

    def _with_header(self, directive: str) -> str:
        d = self.definition
        return f"[AGENT:{d.agent_id.upper()}] ({d.name} - {d.role})\n\n{directive}"

    # ========================================================================
    # OUTCOME BOOKKEEPING
    # ========================================================================

    def _record_success(self, cycle: int, started_ms: int) -> RunOutcome:
        now_ms = self._clock.epoch_ms()
        with self._lock:
            self.state.consecutive_errors = 0
            self.state.total_runs += 1
            self.state.last_run_at = now_ms
            self.state.last_error = None
            self.state.status = self._settled(AgentStatus.IDLE)
            self._in_flight = False
            self._append_record(cycle, started_ms, now_ms, RunOutcome.SUCCESS)
            self._persist()
        logger.info(f"[agent:{self.agent_id}] Cycle {cycle} completed in {now_ms - started_ms}ms")
        return RunOutcome.SUCCESS

    def _record_rate_limit(self, cycle: int, started_ms: int) -> RunOutcome:
        now_ms = self._clock.epoch_ms()
        with self._lock:
            self.state.last_run_at = now_ms
            self.state.status = self._settled(AgentStatus.BACKOFF)
            self._in_flight = False
            self._append_record(cycle, started_ms, now_ms, RunOutcome.RATE_LIMIT)
            self._persist()
        logger.warning(
            f"[agent:{self.agent_id}] Cycle {cycle} hit the backend rate limit, "
            f"all agents paused until {format_epoch_ms(self._rate_limits.paused_until_ms)}"
        )
        return RunOutcome.RATE_LIMIT

    def _record_failure(self, cycle: int, started_ms: int, error: Exception) -> RunOutcome:
        now_ms = self._clock.epoch_ms()
        message = str(error) or error.__class__.__name__
        with self._lock:
            self.state.consecutive_errors += 1
            self.state.last_error = message
            self.state.last_run_at = now_ms
            self.state.status = self._settled(AgentStatus.ERROR)
            self._in_flight = False
            self._append_record(cycle, started_ms, now_ms, RunOutcome.ERROR, message)
            errors = self.state.consecutive_errors
            disable = errors >= self.disable_threshold
            if disable:
                self._enabled = False
                self._stop_event.set()
                self._timer_thread = None
                self.state.status = AgentStatus.STOPPED
            self._persist()

        logger.error(f"[agent:{self.agent_id}] Cycle {cycle} error ({errors} consecutive): {message}")
        if disable:
            logger.error(
                f"[agent:{self.agent_id}] Auto-disabled after {errors} consecutive errors"
            )
            self._escalate(errors, message)
        return RunOutcome.ERROR

    def _escalate(self, errors: int, message: str) -> None:
        """One best-effort admin notification. Failures are logged, never retried."""
        d = self.definition
        notice = (
            f"[AGENT:{d.agent_id.upper()}] {d.name} was auto-disabled after {errors} "
            f"consecutive errors. Last error: {message}. "
            f"Restart it once the cause is fixed."
        )
        session_id = self._admin_session_id if self._admin_session_id is not None else d.session_id
        principal_id = self._admin_principal_id if self._admin_principal_id is not None else d.principal_id
        try:
            self._dispatcher.dispatch(session_id, notice, principal_id)
        except Exception as e:
            logger.warning(f"[agent:{self.agent_id}] Escalation notice failed: {e}")

    def _settled(self, status: AgentStatus) -> AgentStatus:
        """A tick finishing after stop() leaves the agent stopped."""
        return AgentStatus.STOPPED if self._stop_event.is_set() else status

    def _append_record(
        self,
        cycle: int,
        started_ms: int,
        finished_ms: int,
        outcome: RunOutcome,
        error: Optional[str] = None,
    ) -> None:
        self._store.append_run_record(
            AgentRunRecord(
                agent_id=self.agent_id,
                cycle=cycle,
                started_at=started_ms,
                duration_ms=max(0, finished_ms - started_ms),
                outcome=outcome,
                error=error,
            )
        )

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def _load_state(self) -> AgentRuntimeState:
        state = self._store.get_agent_state(self.agent_id)
        if state is None:
            state = AgentRuntimeState(
                agent_id=self.agent_id,
                created_at=self._clock.epoch_ms(),
            )
            self._store.put_agent_state(state)
        elif state.status == AgentStatus.RUNNING:
            # No dispatch can be mid-flight in a fresh process.
            state.status = AgentStatus.IDLE
        return state

    def _persist(self) -> None:
        self._store.put_agent_state(self.state)

    # ========================================================================
    # STATUS
    # ========================================================================

    def snapshot(self) -> AgentSnapshot:
        with self._lock:
            extra = {}
            if self.state.consecutive_errors > 0 and self.state.last_run_at is not None:
                extra["backoff_until"] = format_epoch_ms(self.state.last_run_at + self.backoff_ms())
            return AgentSnapshot(
                agent_id=self.agent_id,
                name=self.definition.name,
                role=self.definition.role,
                enabled=self._enabled,
                heartbeat_seconds=self.definition.heartbeat_seconds,
                state=AgentRuntimeState.from_row(self.state.to_row()),
                in_flight=self._in_flight,
                extra=extra,
            )
