"""
SCHEDULER MODULE
=================

Time-keeping engine for heartbeat_core.

Fires static scheduled events and one-shot reminders into the dispatcher.

Features:
- Daily schedules (once per calendar day at a given hour)
- Interval schedules (every N minutes)
- Cron schedules (standard cron expressions)
- Persisted one-shot reminders, fired exactly once
- Dynamic events resolved by named builders at fire time
- Stability report after a long silent streak
"""

from .builders import BUILDER_FACTORIES, create_builder, http_alerts, pending_requests_digest
from .events import (
    EventTrigger,
    ScheduledEvent,
    ScheduleDefinitionError,
    SilenceTracker,
    TriggerType,
    events_from_config,
    validate_events,
)
from .scheduler import EventScheduler

__all__ = [
    'EventScheduler',
    'ScheduledEvent',
    'EventTrigger',
    'TriggerType',
    'ScheduleDefinitionError',
    'SilenceTracker',
    'events_from_config',
    'validate_events',
    'BUILDER_FACTORIES',
    'create_builder',
    'pending_requests_digest',
    'http_alerts',
]
