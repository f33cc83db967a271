"""
EVENT_SCHEDULER
===============

Time-keeping engine: fires calendar/interval/cron events and one-shot
reminders into the dispatcher, at most once per key per period, surviving
process restarts.

The scheduler:
- Polls on a fixed period (default 60s, first poll after 5s)
- Persists an event's last-fire timestamp *before* dispatching it, so a crash
  mid-dispatch never causes a duplicate fire after restart
- Resolves dynamic events through named builders at fire time
- Fires due reminders after atomically marking them fired
- Applies notification hysteresis to the designated stability event
- Records every fire in an append-only audit log

Usage:
    from heartbeat_core.scheduler import EventScheduler, ScheduledEvent

    scheduler = EventScheduler(
        store,
        dispatcher,
        events=[ScheduledEvent.daily("morning_briefing", 8, directive="...")],
        tz_name="America/Toronto",
        session_id="chat-1",
        principal_id="owner",
    )
    scheduler.start()
    scheduler.add_reminder(fire_at_epoch, "call the dentist")
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union
from zoneinfo import ZoneInfoNotFoundError

from ..clock import Clock, format_epoch_ms, get_zone
from ..config.loader import SchedulerConfig
from ..dispatch.base import Dispatcher
from ..models import FireOutcome, FireRecord, ReminderRecord
from ..storage.interfaces import StateStore
from .builders import BUILDER_FACTORIES, EventBuilder, create_builder
from .events import (
    ScheduledEvent,
    ScheduleDefinitionError,
    SilenceTracker,
    events_from_config,
    validate_events,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 60.0
STARTUP_DELAY_S = 5.0
STABILITY_THRESHOLD = 10


# ============================================================================
# EVENT SCHEDULER
# ============================================================================

class EventScheduler:
    """
    Background poll loop over a static event table plus persisted reminders.
    """

    def __init__(
        self,
        store: StateStore,
        dispatcher: Dispatcher,
        events: Sequence[ScheduledEvent] = (),
        tz_name: str = "America/Toronto",
        session_id: Any = None,
        principal_id: Any = None,
        clock: Optional[Clock] = None,
        poll_interval: float = POLL_INTERVAL_S,
        startup_delay: float = STARTUP_DELAY_S,
        stability_event: Optional[str] = None,
        stability_threshold: int = STABILITY_THRESHOLD,
        builders: Optional[Dict[str, EventBuilder]] = None,
    ):
        """
        Args:
            store: Durable store (last-fire rows, reminders, fire audit).
            dispatcher: Receives every directive.
            events: Static event table. Validated here.
            tz_name: IANA timezone for daily/cron triggers.
            session_id: Routing target for every scheduler dispatch.
            principal_id: Permission context for every scheduler dispatch.
            clock: Wall clock (defaults to the system clock).
            poll_interval: Seconds between polls.
            startup_delay: Seconds before the first poll.
            stability_event: Event key whose silent fires are counted.
            stability_threshold: Silent fires before one stability report.
            builders: Extra named builders, ``fn() -> Optional[str]``.

        Raises:
            ScheduleDefinitionError: Invalid timezone or event table.
        """
        try:
            get_zone(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ScheduleDefinitionError(f"Unknown timezone: {tz_name!r}") from e

        events = list(events)
        self._builders: Dict[str, EventBuilder] = dict(builders or {})
        validate_events(events, list(BUILDER_FACTORIES) + list(self._builders))

        self._store = store
        self._dispatcher = dispatcher
        self.events: List[ScheduledEvent] = list(events)
        self.tz_name = tz_name
        self.session_id = session_id
        self.principal_id = principal_id
        self._clock = clock or Clock()
        self.poll_interval = poll_interval
        self.startup_delay = startup_delay

        # Factory-built builders, one per event
        self._event_builders: Dict[str, EventBuilder] = {}
        for event in self.events:
            if event.builder in BUILDER_FACTORIES and event.builder not in self._builders:
                try:
                    self._event_builders[event.key] = create_builder(event.builder, event.options)
                except (TypeError, ValueError) as e:
                    raise ScheduleDefinitionError(
                        f"Event '{event.key}': bad options for builder '{event.builder}': {e}"
                    ) from e

        self.stability_event = stability_event
        if stability_event and stability_event not in {e.key for e in self.events}:
            logger.warning(f"[scheduler] Stability event '{stability_event}' is not in the event table")
        self._silence = SilenceTracker(stability_threshold)

        self._poll_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._polls = 0
        self._last_poll_at: Optional[int] = None

    @classmethod
    def from_config(
        cls,
        config: SchedulerConfig,
        store: StateStore,
        dispatcher: Dispatcher,
        clock: Optional[Clock] = None,
        builders: Optional[Dict[str, EventBuilder]] = None,
    ) -> "EventScheduler":
        return cls(
            store,
            dispatcher,
            events=events_from_config(config.events),
            tz_name=config.timezone,
            session_id=config.session_id,
            principal_id=config.principal_id,
            clock=clock,
            poll_interval=config.poll_interval_seconds,
            startup_delay=config.startup_delay_seconds,
            stability_event=config.stability_event,
            stability_threshold=config.stability_threshold,
            builders=builders,
        )

    def register_builder(self, name: str, fn: EventBuilder) -> None:
        """Register (or override) a named builder for dynamic events."""
        self._builders[name] = fn
        logger.info(f"[scheduler] Registered builder '{name}'")

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> bool:
        if self.is_running():
            logger.warning("[scheduler] Already running")
            return False
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(self._stop_event,),
            daemon=True,
            name="event-scheduler",
        )
        self._thread.start()
        logger.info(
            f"[scheduler] Started ({len(self.events)} events, tz={self.tz_name}, "
            f"poll={self.poll_interval:.0f}s)"
        )
        return True

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout=5.0)
            logger.info("[scheduler] Stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self, stop_event: threading.Event) -> None:
        if stop_event.wait(self.startup_delay):
            return
        while not stop_event.is_set():
            try:
                self.poll()
            except Exception as e:
                logger.error(f"[scheduler] Poll error: {e}", exc_info=True)
            stop_event.wait(self.poll_interval)

    # ========================================================================
    # POLL
    # ========================================================================

    def poll(self) -> List[FireRecord]:
        """
        Evaluate every event and due reminder once.

        Returns:
            Fire records written during this poll.
        """
        with self._poll_lock:
            now = self._clock.now()
            now_epoch = int(now.timestamp())
            fired: List[FireRecord] = []

            for event in self.events:
                try:
                    last_fire = self._store.get_last_fire(event.key)
                    if event.trigger.is_due(now, last_fire, self.tz_name):
                        fired.append(self._fire_event(event, now, now_epoch))
                except Exception as e:
                    logger.error(f"[scheduler] Error evaluating {event.key}: {e}", exc_info=True)

            try:
                due = self._store.list_due_reminders(now_epoch)
            except Exception as e:
                logger.error(f"[scheduler] Could not load due reminders: {e}", exc_info=True)
                due = []

            for reminder in due:
                try:
                    record = self._fire_reminder(reminder, now_epoch)
                    if record is not None:
                        fired.append(record)
                except Exception as e:
                    logger.error(f"[scheduler] Error firing reminder #{reminder.id}: {e}", exc_info=True)

            self._polls += 1
            self._last_poll_at = int(now.timestamp() * 1000)
            return fired

    def _fire_event(self, event: ScheduledEvent, now: datetime, now_epoch: int) -> FireRecord:
        # Persist first: a crash mid-dispatch must not re-fire after restart
        self._store.put_last_fire(event.key, now_epoch)

        try:
            directive = self._resolve(event)
        except Exception as e:
            logger.error(f"[scheduler] {event.key}: builder failed: {e}")
            return self._record(event.key, now_epoch, FireOutcome.ERROR, f"builder failed: {e}")

        is_stability = event.key == self.stability_event

        if directive is None:
            logger.info(f"[scheduler] {event.key}: nothing to report")
            detail = None
            if is_stability and self._silence.record_silent():
                detail = self._send_stability_report(event, now)
            elif is_stability:
                logger.debug(f"[scheduler] {event.key}: silent streak {self._silence.count}")
            return self._record(event.key, now_epoch, FireOutcome.SILENT, detail)

        if is_stability:
            self._silence.record_noteworthy()

        logger.info(f"[scheduler] Firing {event.trigger.type.value} event: {event.key}")
        try:
            self._dispatch(directive)
        except Exception as e:
            logger.error(f"[scheduler] Error firing {event.key}: {e}")
            return self._record(event.key, now_epoch, FireOutcome.ERROR, str(e))
        return self._record(event.key, now_epoch, FireOutcome.DISPATCHED)

    def _resolve(self, event: ScheduledEvent) -> Optional[str]:
        if not event.is_dynamic:
            return event.directive
        builder = self._builders.get(event.builder) or self._event_builders.get(event.key)
        if builder is None:
            raise LookupError(f"no builder registered as '{event.builder}'")
        return builder()

    def _send_stability_report(self, event: ScheduledEvent, now: datetime) -> str:
        count = self._silence.count
        hours = round(count * event.trigger.period_minutes(now, self.tz_name) / 60)
        message = (
            f"[SCHEDULER] Stability report: all quiet for ~{hours}h. "
            f"{count} consecutive {event.key} checks without alerts. "
            f"Send a brief stability note, no urgency, just a signal of confidence."
        )
        logger.info(f"[scheduler] {event.key}: {count} silent fires, sending stability report")
        try:
            self._dispatch(message)
        except Exception as e:
            logger.error(f"[scheduler] Stability report failed: {e}")
            return f"stability report failed: {e}"
        return "stability report sent"

    def _fire_reminder(self, reminder: ReminderRecord, now_epoch: int) -> Optional[FireRecord]:
        # Only the caller that flips fired 0 -> 1 dispatches
        if not self._store.mark_reminder_fired(reminder.id):
            logger.debug(f"[scheduler] Reminder #{reminder.id} already fired")
            return None

        key = f"reminder:{reminder.id}"
        logger.info(f"[scheduler] Firing reminder #{reminder.id}")
        try:
            self._dispatch(f"[SCHEDULER] Reminder: {reminder.message}")
        except Exception as e:
            logger.error(f"[scheduler] Error firing reminder #{reminder.id}: {e}")
            return self._record(key, now_epoch, FireOutcome.ERROR, str(e))
        return self._record(key, now_epoch, FireOutcome.DISPATCHED)

    def _dispatch(self, directive: str) -> str:
        return self._dispatcher.dispatch(self.session_id, directive, self.principal_id)

    def _record(
        self,
        key: str,
        fired_at: int,
        outcome: FireOutcome,
        detail: Optional[str] = None,
    ) -> FireRecord:
        record = FireRecord(event_key=key, fired_at=fired_at, outcome=outcome, detail=detail)
        try:
            record_id = self._store.append_fire_record(record)
        except Exception as e:
            logger.warning(f"[scheduler] Could not write fire record for {key}: {e}")
            return record
        return FireRecord(key, fired_at, outcome, detail, id=record_id)

    # ========================================================================
    # REMINDERS
    # ========================================================================

    def add_reminder(self, fire_at: Union[int, float, datetime], message: str) -> int:
        """
        Schedule a one-shot reminder.

        Args:
            fire_at: Epoch seconds, or a datetime (naive values are read in
                     the scheduler timezone).
            message: Reminder text.

        Returns:
            The reminder id.
        """
        if not message or not message.strip():
            raise ValueError("Reminder message must not be empty")
        if isinstance(fire_at, datetime):
            if fire_at.tzinfo is None:
                fire_at = fire_at.replace(tzinfo=get_zone(self.tz_name))
            fire_epoch = int(fire_at.timestamp())
        else:
            fire_epoch = int(fire_at)

        reminder_id = self._store.insert_reminder(fire_epoch, message.strip())
        logger.info(f"[scheduler] Added reminder #{reminder_id} for {format_epoch_ms(fire_epoch * 1000)}")
        return reminder_id

    def list_reminders(self) -> List[ReminderRecord]:
        """Pending reminders ordered by fire time."""
        return self._store.list_pending_reminders()

    def cancel_reminder(self, reminder_id: int) -> bool:
        """Delete a reminder that has not fired yet."""
        cancelled = self._store.delete_unfired_reminder(reminder_id)
        if cancelled:
            logger.info(f"[scheduler] Cancelled reminder #{reminder_id}")
        return cancelled

    # ========================================================================
    # STATUS
    # ========================================================================

    def recent_fires(self, limit: int = 20) -> List[FireRecord]:
        return self._store.list_recent_fires(limit)

    def get_status(self) -> Dict[str, Any]:
        events = []
        for event in self.events:
            last_fire = self._store.get_last_fire(event.key)
            data = event.to_dict()
            data["last_fire"] = format_epoch_ms(last_fire * 1000) if last_fire else None
            events.append(data)

        return {
            "running": self.is_running(),
            "timezone": self.tz_name,
            "poll_interval_seconds": self.poll_interval,
            "polls": self._polls,
            "last_poll_at": format_epoch_ms(self._last_poll_at),
            "events": events,
            "stability_event": self.stability_event,
            "stability": self._silence.to_dict(),
            "pending_reminders": len(self.list_reminders()),
        }
