"""
HEARTBEAT_CORE
==============

Scheduling and resilience core for long-lived background agents.

Features:
- Per-agent heartbeat timers with a concurrency guard
- Exponential backoff and auto-disable after repeated failures
- Global rate-limit pause shared by every agent
- Daily / interval / cron events and one-shot reminders, fired once
- Durable state and audit trail in SQLite

Usage:
    from heartbeat_core import HeartbeatService

    service = HeartbeatService.from_config_dir("./data/heartbeat/config")
    service.start()

Or compose the pieces directly:

    from heartbeat_core import AgentRegistry, RateLimitCoordinator, SQLiteStateStore
    from heartbeat_core.dispatch import HttpDispatcher

    store = SQLiteStateStore("./data/heartbeat/heartbeat.db")
    registry = AgentRegistry(store, HttpDispatcher("http://localhost:8431"), RateLimitCoordinator())
    registry.register(definition)
"""

__version__ = "1.0.0"

# Data model
from .models import (
    AgentDefinition,
    AgentRunRecord,
    AgentRuntimeState,
    AgentSnapshot,
    AgentStatus,
    DirectiveBuilder,
    FireOutcome,
    FireRecord,
    ReminderRecord,
    RunOutcome,
)

# Configuration
from .config import (
    ConfigManager,
    GlobalConfig,
    AgentConfig,
    get_config_manager,
    load_global_config,
)

# Infrastructure
from .clock import Clock
from .storage import StateStore, SQLiteStateStore
from .ratelimit import RateLimitCoordinator
from .dispatch import Dispatcher, DispatchError, CallableDispatcher, HttpDispatcher

# Agents
from .agents import RotatingDirectiveBuilder, CallableDirectiveBuilder, definition_from_config
from .runtime import AgentRuntime
from .registry import AgentRegistry, UnknownAgentError

# Scheduler
from .scheduler import EventScheduler, ScheduledEvent, ScheduleDefinitionError

# Composition
from .service import HeartbeatService

__all__ = [
    # Version
    '__version__',
    # Data model
    'AgentDefinition',
    'AgentRunRecord',
    'AgentRuntimeState',
    'AgentSnapshot',
    'AgentStatus',
    'DirectiveBuilder',
    'FireOutcome',
    'FireRecord',
    'ReminderRecord',
    'RunOutcome',
    # Configuration
    'ConfigManager',
    'GlobalConfig',
    'AgentConfig',
    'get_config_manager',
    'load_global_config',
    # Infrastructure
    'Clock',
    'StateStore',
    'SQLiteStateStore',
    'RateLimitCoordinator',
    'Dispatcher',
    'DispatchError',
    'CallableDispatcher',
    'HttpDispatcher',
    # Agents
    'RotatingDirectiveBuilder',
    'CallableDirectiveBuilder',
    'definition_from_config',
    'AgentRuntime',
    'AgentRegistry',
    'UnknownAgentError',
    # Scheduler
    'EventScheduler',
    'ScheduledEvent',
    'ScheduleDefinitionError',
    # Composition
    'HeartbeatService',
]
