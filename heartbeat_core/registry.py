"""
AGENT_REGISTRY
==============

Owns the set of running ``AgentRuntime`` instances, keyed by agent id.

Agents are independent: the registry only starts, stops and reports on them.
They coordinate solely through the shared ``RateLimitCoordinator`` and the
``StateStore``, both injected here and handed to every runtime.

Usage:
    registry = AgentRegistry(store, dispatcher, rate_limits)
    registry.register(definition)           # constructs and starts
    registry.disable("ops")                 # stops the timer
    registry.restart("ops")                 # re-enables and starts
    for snap in registry.list_stats():
        print(snap.to_dict())
    registry.stop_all()
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from .clock import Clock
from .dispatch.base import Dispatcher
from .models import AgentDefinition, AgentSnapshot
from .ratelimit import RateLimitCoordinator
from .runtime import BACKOFF_BASE_MS, DISABLE_THRESHOLD, FIRST_TICK_DELAY_S, AgentRuntime
from .storage.interfaces import StateStore

logger = logging.getLogger(__name__)


class UnknownAgentError(KeyError):
    """No runtime is registered under the given agent id."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(agent_id)

    def __str__(self) -> str:
        return f"Unknown agent: {self.agent_id}"


class AgentBusyError(RuntimeError):
    """The agent id is still owned by a runtime with a dispatch in flight."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} has a dispatch in flight")


class AgentRegistry:
    """
    Collection of agent runtimes sharing one store, dispatcher and
    rate-limit coordinator.
    """

    def __init__(
        self,
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
        self._store = store
        self._dispatcher = dispatcher
        self._rate_limits = rate_limits
        self._clock = clock or Clock()
        self._runtime_kwargs = {
            "first_tick_delay": first_tick_delay,
            "disable_threshold": disable_threshold,
            "backoff_base_ms": backoff_base_ms,
            "admin_session_id": admin_session_id,
            "admin_principal_id": admin_principal_id,
        }
        self._runtimes: Dict[str, AgentRuntime] = {}
        # Removed runtimes whose last dispatch has not returned yet
        self._draining: Dict[str, AgentRuntime] = {}
        self._lock = threading.Lock()

    @property
    def rate_limits(self) -> RateLimitCoordinator:
        return self._rate_limits

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register(self, definition: AgentDefinition, auto_start: bool = True) -> AgentRuntime:
        """
        Construct a runtime for ``definition`` and (by default) start it.

        A runtime already registered under the same id is stopped and replaced.
        The new runtime loads its state only after the previous one has stopped.

        Raises:
            AgentBusyError: the previous runtime for this id still has a dispatch in flight.
        """
        agent_id = definition.agent_id
        with self._lock:
            draining = self._draining.get(agent_id)
            if draining is not None and draining.in_flight:
                raise AgentBusyError(agent_id)
            previous = self._runtimes.get(agent_id)
            if previous is not None:
                if not previous.stop_if_idle():
                    raise AgentBusyError(agent_id)
                logger.info(f"Replacing agent {agent_id}")
            self._draining.pop(agent_id, None)

            runtime = AgentRuntime(
                definition,
                self._store,
                self._dispatcher,
                self._rate_limits,
                clock=self._clock,
                **self._runtime_kwargs,
            )
            self._runtimes[agent_id] = runtime

        if auto_start:
            runtime.start()
        logger.info(f"Registered agent {agent_id} ({definition.name})")
        return runtime

    def get(self, agent_id: str) -> AgentRuntime:
        with self._lock:
            runtime = self._runtimes.get(agent_id)
        if runtime is None:
            raise UnknownAgentError(agent_id)
        return runtime

    def remove(self, agent_id: str) -> None:
        """
        Stop and forget an agent. Its persisted state is kept.

        A dispatch already in flight runs to completion; until it does, the id
        cannot be registered again.
        """
        with self._lock:
            runtime = self._runtimes.pop(agent_id, None)
            if runtime is None:
                raise UnknownAgentError(agent_id)
            runtime.stop()
            if runtime.in_flight:
                self._draining[agent_id] = runtime
        logger.info(f"Removed agent {agent_id}")

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._runtimes)

    def __contains__(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._runtimes

    def __len__(self) -> int:
        with self._lock:
            return len(self._runtimes)

    def _all(self) -> List[AgentRuntime]:
        with self._lock:
            return list(self._runtimes.values())

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start_all(self) -> int:
        """Start every enabled runtime that is not already running."""
        started = sum(1 for runtime in self._all() if runtime.start())
        logger.info(f"Started {started} agent(s)")
        return started

    def stop_all(self) -> None:
        for runtime in self._all():
            runtime.stop()
        logger.info("All agents stopped")

    def enable(self, agent_id: str) -> AgentRuntime:
        """Mark an agent enabled. The timer is not armed until start/restart."""
        runtime = self.get(agent_id)
        runtime.set_enabled(True)
        return runtime

    def disable(self, agent_id: str) -> AgentRuntime:
        runtime = self.get(agent_id)
        runtime.set_enabled(False)
        return runtime

    def restart(self, agent_id: str) -> AgentRuntime:
        runtime = self.get(agent_id)
        runtime.restart()
        return runtime

    # ========================================================================
    # STATUS
    # ========================================================================

    def list_stats(self) -> List[AgentSnapshot]:
        return [runtime.snapshot() for runtime in self._all()]
