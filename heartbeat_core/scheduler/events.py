"""
SCHEDULED EVENTS
================

Static event table for the time-keeping engine.

An event has a unique key, a trigger and either a static directive or the
name of a dynamic builder resolved at fire time:

    daily      fires once per calendar day (scheduler timezone) during hour h
    interval   fires when at least m minutes elapsed since the last fire
    cron       fires when the latest cron occurrence is newer than the last fire

Config form (``scheduler.events`` in config.json):

    {"key": "morning_briefing", "daily_at": 8, "directive": "..."}
    {"key": "heartbeat", "every_minutes": 30, "builder": "http_alerts",
     "options": {"url": "http://localhost:9000/alerts"}}
    {"key": "weekly_review", "cron": "0 17 * * fri", "directive": "..."}

Definition errors raise ``ScheduleDefinitionError`` before the first poll.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from croniter import croniter

from ..clock import epoch_to_date, get_zone

# Missed cron occurrences older than this are not replayed.
CRON_CATCHUP = timedelta(hours=1)


class ScheduleDefinitionError(ValueError):
    """The event table (or scheduler timezone) is invalid."""


class TriggerType(str, Enum):
    DAILY = "daily"
    INTERVAL = "interval"
    CRON = "cron"


# ============================================================================
# TRIGGERS
# ============================================================================

@dataclass(frozen=True)
class EventTrigger:
    type: TriggerType
    hour: Optional[int] = None                 # daily
    interval_minutes: Optional[float] = None   # interval
    expression: Optional[str] = None           # cron

    def describe(self) -> str:
        if self.type == TriggerType.DAILY:
            return f"daily at {self.hour:02d}:00"
        if self.type == TriggerType.INTERVAL:
            return f"every {self.interval_minutes:g} min"
        return f"cron '{self.expression}'"

    def is_due(self, now: datetime, last_fire: int, tz_name: str) -> bool:
        """
        Decide whether the trigger fires at ``now``.

        Args:
            now: Current aware datetime.
            last_fire: Persisted last fire, epoch seconds (0 = never).
            tz_name: Scheduler timezone for calendar fields.
        """
        if self.type == TriggerType.DAILY:
            local_now = now.astimezone(get_zone(tz_name))
            if local_now.hour != self.hour:
                return False
            return not last_fire or epoch_to_date(last_fire, tz_name) != local_now.date()

        if self.type == TriggerType.INTERVAL:
            elapsed_minutes = (now.timestamp() - last_fire) / 60
            return elapsed_minutes >= self.interval_minutes

        previous = self.previous_occurrence(now, tz_name)
        if now - previous > CRON_CATCHUP:
            return False
        return previous.timestamp() > last_fire

    def previous_occurrence(self, now: datetime, tz_name: str) -> datetime:
        """Latest cron occurrence at or before ``now``."""
        local_now = now.astimezone(get_zone(tz_name))
        # croniter's get_prev is strictly before its start time
        return croniter(self.expression, local_now + timedelta(seconds=1)).get_prev(datetime)

    def period_minutes(self, now: datetime, tz_name: str) -> float:
        """Nominal distance between fires, used for human-readable summaries."""
        if self.type == TriggerType.DAILY:
            return 24 * 60
        if self.type == TriggerType.INTERVAL:
            return float(self.interval_minutes)
        it = croniter(self.expression, now.astimezone(get_zone(tz_name)))
        first = it.get_next(datetime)
        second = it.get_next(datetime)
        return (second - first).total_seconds() / 60


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class ScheduledEvent:
    key: str
    trigger: EventTrigger
    directive: Optional[str] = None
    builder: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def daily(cls, key: str, hour: int, **kwargs) -> "ScheduledEvent":
        return cls(key, EventTrigger(TriggerType.DAILY, hour=hour), **kwargs)

    @classmethod
    def interval(cls, key: str, minutes: float, **kwargs) -> "ScheduledEvent":
        return cls(key, EventTrigger(TriggerType.INTERVAL, interval_minutes=minutes), **kwargs)

    @classmethod
    def cron(cls, key: str, expression: str, **kwargs) -> "ScheduledEvent":
        return cls(key, EventTrigger(TriggerType.CRON, expression=expression), **kwargs)

    @property
    def is_dynamic(self) -> bool:
        return self.builder is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"key": self.key, "trigger": self.trigger.describe()}
        if self.builder:
            data["builder"] = self.builder
        else:
            data["directive"] = self.directive
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledEvent":
        key = data.get("key")
        if not key:
            raise ScheduleDefinitionError(f"Event is missing 'key': {data!r}")

        trigger_keys = [k for k in ("daily_at", "every_minutes", "cron") if k in data]
        if len(trigger_keys) != 1:
            raise ScheduleDefinitionError(
                f"Event '{key}' needs exactly one of daily_at, every_minutes, cron"
            )

        kwargs = {
            "directive": data.get("directive"),
            "builder": data.get("builder"),
            "options": dict(data.get("options") or {}),
        }
        if "daily_at" in data:
            return cls.daily(key, data["daily_at"], **kwargs)
        if "every_minutes" in data:
            return cls.interval(key, data["every_minutes"], **kwargs)
        return cls.cron(key, data["cron"], **kwargs)


def events_from_config(items: Iterable[Dict[str, Any]]) -> List[ScheduledEvent]:
    """Parse ``scheduler.events`` config entries."""
    return [ScheduledEvent.from_dict(item) for item in items]


def validate_events(events: Iterable[ScheduledEvent], builder_names: Iterable[str] = ()) -> None:
    """
    Reject an invalid event table.

    Raises:
        ScheduleDefinitionError: On the first problem found.
    """
    known_builders = set(builder_names)
    seen = set()
    for event in events:
        if event.key in seen:
            raise ScheduleDefinitionError(f"Duplicate event key: {event.key}")
        seen.add(event.key)

        trigger = event.trigger
        if trigger.type == TriggerType.DAILY:
            if not isinstance(trigger.hour, int) or isinstance(trigger.hour, bool) or not 0 <= trigger.hour <= 23:
                raise ScheduleDefinitionError(
                    f"Event '{event.key}': daily hour must be an integer 0-23, got {trigger.hour!r}"
                )
        elif trigger.type == TriggerType.INTERVAL:
            minutes = trigger.interval_minutes
            if isinstance(minutes, bool) or not isinstance(minutes, (int, float)) or minutes <= 0:
                raise ScheduleDefinitionError(
                    f"Event '{event.key}': interval must be a positive number of minutes, got {minutes!r}"
                )
        elif not trigger.expression or not croniter.is_valid(trigger.expression):
            raise ScheduleDefinitionError(
                f"Event '{event.key}': invalid cron expression {trigger.expression!r}"
            )

        if event.directive and event.builder:
            raise ScheduleDefinitionError(
                f"Event '{event.key}' has both a directive and a builder"
            )
        if not event.directive and not event.builder:
            raise ScheduleDefinitionError(
                f"Event '{event.key}' has neither a directive nor a builder"
            )
        if event.builder and event.builder not in known_builders:
            raise ScheduleDefinitionError(
                f"Event '{event.key}': unknown builder '{event.builder}'"
            )


# ============================================================================
# NOTIFICATION HYSTERESIS
# ============================================================================

class SilenceTracker:
    """
    Counts consecutive silent fires of the stability event.

    Exactly one stability notification is due when the streak reaches the
    threshold; a noteworthy fire re-arms it. In memory only.
    """

    def __init__(self, threshold: int = 10):
        if threshold < 1:
            raise ScheduleDefinitionError("stability threshold must be at least 1")
        self.threshold = threshold
        self.count = 0
        self.notified = False

    def record_silent(self) -> bool:
        """Count a silent fire. Returns True when a notification is due."""
        self.count += 1
        if self.count >= self.threshold and not self.notified:
            self.notified = True
            return True
        return False

    def record_noteworthy(self) -> None:
        self.count = 0
        self.notified = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "silent_streak": self.count,
            "notified": self.notified,
            "threshold": self.threshold,
        }
