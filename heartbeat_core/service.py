"""
HEARTBEAT_SERVICE
=================

Top-level composition of the heartbeat core.

Wires one process's worth of collaborators from a ``GlobalConfig``:

    SQLiteStateStore      durable state (agent rows, run audit, scheduler rows)
    HttpDispatcher        delivers every directive
    RateLimitCoordinator  shared by every agent runtime
    AgentRegistry         one AgentRuntime per configured agent
    EventScheduler        calendar/interval/cron events and reminders

Usage:
    service = HeartbeatService.from_config_dir()
    service.start()
    ...
    service.stop()
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from . import __version__
from .agents.definitions import definition_from_config
from .clock import Clock, format_epoch_ms
from .config.loader import GlobalConfig, get_config_manager
from .dispatch.base import Dispatcher
from .dispatch.http import HttpDispatcher
from .models import AgentRunRecord, DirectiveBuilder
from .ratelimit import RateLimitCoordinator
from .registry import AgentRegistry
from .scheduler.builders import EventBuilder
from .scheduler.scheduler import EventScheduler
from .storage.interfaces import StateStore
from .storage.sqlite import SQLiteStateStore

logger = logging.getLogger(__name__)

STATS_WINDOW_HOURS = 24


class HeartbeatService:
    """
    Owns the store, dispatcher, coordinator, registry and scheduler for one
    process.
    """

    def __init__(
        self,
        config: GlobalConfig,
        store: Optional[StateStore] = None,
        dispatcher: Optional[Dispatcher] = None,
        clock: Optional[Clock] = None,
        agent_builders: Optional[Dict[str, DirectiveBuilder]] = None,
        event_builders: Optional[Dict[str, EventBuilder]] = None,
    ):
        """
        Args:
            config: Global configuration.
            store: State store (defaults to SQLite at ``paths.db_path``).
            dispatcher: Dispatcher (defaults to HTTP at ``dispatch.base_url``).
            clock: Wall clock shared by every component.
            agent_builders: Directive builders by agent id, overriding the
                            configured directive rotation.
            event_builders: Extra named builders for dynamic scheduler events.

        Raises:
            ScheduleDefinitionError: Invalid scheduler configuration.
            ValueError: Invalid agent configuration.
        """
        self.config = config
        self.clock = clock or Clock()
        self.store = store or SQLiteStateStore(config.paths.db_path)
        self.dispatcher = dispatcher or HttpDispatcher(
            config.dispatch.base_url,
            auth_token=config.dispatch.auth_token,
            timeout_seconds=config.dispatch.timeout_seconds,
        )
        self.rate_limits = RateLimitCoordinator(
            clock=self.clock,
            fallback_pause=timedelta(hours=config.rate_limit.fallback_pause_hours),
        )

        runtime_cfg = config.runtime
        self.registry = AgentRegistry(
            self.store,
            self.dispatcher,
            self.rate_limits,
            clock=self.clock,
            first_tick_delay=runtime_cfg.first_tick_delay_seconds,
            disable_threshold=runtime_cfg.disable_threshold,
            backoff_base_ms=runtime_cfg.backoff_base_ms,
            admin_session_id=runtime_cfg.admin_session_id,
            admin_principal_id=runtime_cfg.admin_principal_id,
        )

        overrides = agent_builders or {}
        for agent_cfg in config.agents:
            definition = definition_from_config(
                agent_cfg,
                tz_name=config.scheduler.timezone,
                clock=self.clock,
                builder=overrides.get(agent_cfg.agent_id),
            )
            self.registry.register(definition, auto_start=False)

        self.scheduler: Optional[EventScheduler] = None
        if config.scheduler.enabled:
            self.scheduler = EventScheduler.from_config(
                config.scheduler,
                self.store,
                self.dispatcher,
                clock=self.clock,
                builders=event_builders,
            )

        self._started_at: Optional[int] = None

    @classmethod
    def from_config_dir(cls, config_dir: Optional[str] = None, **kwargs) -> "HeartbeatService":
        return cls(get_config_manager(config_dir).global_config, **kwargs)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        if self._started_at is not None:
            logger.warning("Heartbeat service already started")
            return

        self.registry.start_all()

        if self.scheduler is not None:
            if self.scheduler.session_id is None:
                logger.warning("[scheduler] No scheduler.session_id configured, scheduler not started")
            else:
                self.scheduler.start()

        self._started_at = self.clock.epoch_ms()
        logger.info(f"Heartbeat service started ({len(self.registry)} agents)")

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
        self.registry.stop_all()
        if isinstance(self.dispatcher, HttpDispatcher):
            self.dispatcher.close()
        self._started_at = None
        logger.info("Heartbeat service stopped")

    def is_running(self) -> bool:
        return self._started_at is not None

    # ========================================================================
    # QUERIES
    # ========================================================================

    def list_runs(self, agent_id: str, limit: int = 50) -> List[AgentRunRecord]:
        """Run history of a registered agent, newest first."""
        self.registry.get(agent_id)
        return self.store.list_run_records(agent_id, limit)

    def run_stats(self, hours: float = STATS_WINDOW_HOURS) -> List[Dict[str, Any]]:
        """Per-agent outcome counts over the last ``hours``."""
        since_ms = self.clock.epoch_ms() - int(hours * 3600 * 1000)
        return self.store.run_stats(since_ms)

    def get_status(self) -> Dict[str, Any]:
        snapshots = self.registry.list_stats()
        uptime = None
        if self._started_at is not None:
            uptime = (self.clock.epoch_ms() - self._started_at) / 1000
        return {
            "version": __version__,
            "running": self.is_running(),
            "started_at": format_epoch_ms(self._started_at),
            "uptime_seconds": uptime,
            "agents": len(snapshots),
            "agents_enabled": sum(1 for s in snapshots if s.enabled),
            "agents_in_flight": sum(1 for s in snapshots if s.in_flight),
            "scheduler_running": bool(self.scheduler and self.scheduler.is_running()),
            "rate_limited": self.rate_limits.is_paused(),
        }
