"""
RATE_LIMIT
==========

Global throttling coordinator for heartbeat_core.

When the downstream backend reports that it is throttled, every agent must
stop dispatching until the backend's window resets. One coordinator is
constructed per process and passed by reference to every AgentRuntime; each
runtime consults ``is_paused()`` before ticking and reports dispatch results
through ``handle_result()``.

The pause is deliberately not persisted: after a restart the backend's state
is unknown, so a fresh process gets a fresh chance.

Usage:
    from heartbeat_core.ratelimit import RateLimitCoordinator

    coordinator = RateLimitCoordinator()

    if coordinator.is_paused():
        return

    result = dispatcher.dispatch(session_id, directive, principal_id)
    if coordinator.handle_result(result):
        # every agent is now paused until the parsed reset time (or 2h)
        ...
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from zoneinfo import ZoneInfoNotFoundError

from .clock import Clock, format_epoch_ms, get_zone

logger = logging.getLogger(__name__)


# ============================================================================
# SIGNATURES
# ============================================================================

RATE_LIMIT_SIGNATURES = (
    "rate limit",
    "rate_limit",
    "credit balance too low",
    "credit balance is too low",
    "hit your limit",
    "usage limit",
    "too many requests",
)

# e.g. "You've hit your limit · resets 3pm (America/Toronto)"
RESET_HINT_RE = re.compile(
    r"resets?\s+(?:at\s+)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)\s*\(([^)]+)\)",
    re.IGNORECASE,
)

DEFAULT_FALLBACK_PAUSE = timedelta(hours=2)


def is_rate_limited(text: Optional[str]) -> bool:
    """True if a dispatch result carries a rate-limit signature."""
    if not text:
        return False
    lowered = text.lower()
    return any(sig in lowered for sig in RATE_LIMIT_SIGNATURES)


def parse_reset_delay(text: str, now: datetime) -> Optional[timedelta]:
    """
    Parse a "resets HH(am|pm) (TZ)" hint into the delay until that wall-clock
    time, strictly after ``now``.

    Args:
        text: Dispatch result text.
        now: Current aware datetime.

    Returns:
        Delay until the next occurrence, or None if no usable hint is present.
    """
    match = RESET_HINT_RE.search(text or "")
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = match.group(3).lower()
    tz_name = match.group(4).strip()

    if not 1 <= hour <= 12 or not 0 <= minute <= 59:
        return None
    if meridiem == "am":
        hour = 0 if hour == 12 else hour
    else:
        hour = 12 if hour == 12 else hour + 12

    try:
        zone = get_zone(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone in rate-limit reset hint: %r", tz_name)
        return None

    local_now = now.astimezone(zone)
    target = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= local_now:
        target = target + timedelta(days=1)

    # Subtract in UTC so DST transitions are measured in real elapsed time
    return target.astimezone(timezone.utc) - now.astimezone(timezone.utc)


# ============================================================================
# COORDINATOR
# ============================================================================

@dataclass
class RateLimitStats:
    """Statistics for global throttling."""
    pauses_triggered: int = 0
    hinted_pauses: int = 0
    fallback_pauses: int = 0
    last_trigger_at: Optional[int] = None  # epoch ms

    def to_dict(self) -> Dict:
        return {
            "pauses_triggered": self.pauses_triggered,
            "hinted_pauses": self.hinted_pauses,
            "fallback_pauses": self.fallback_pauses,
            "last_trigger_at": format_epoch_ms(self.last_trigger_at),
        }


class RateLimitCoordinator:
    """
    Process-wide "paused until" value shared by every agent runtime.

    A new pause never shortens an existing one.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        fallback_pause: timedelta = DEFAULT_FALLBACK_PAUSE,
    ):
        self._clock = clock or Clock()
        self.fallback_pause = fallback_pause
        self._lock = threading.Lock()
        self._paused_until_ms: int = 0
        self.stats = RateLimitStats()

    @property
    def paused_until_ms(self) -> int:
        with self._lock:
            return self._paused_until_ms

    def is_paused(self) -> bool:
        with self._lock:
            return self._clock.epoch_ms() < self._paused_until_ms

    def remaining_seconds(self) -> float:
        with self._lock:
            remaining_ms = self._paused_until_ms - self._clock.epoch_ms()
        return max(0.0, remaining_ms / 1000)

    def pause_for(self, duration: timedelta) -> int:
        """
        Pause every agent for ``duration`` from now.

        Returns:
            The effective paused-until epoch ms (may be later than requested
            if an existing pause already extends further).
        """
        until_ms = self._clock.epoch_ms() + int(duration.total_seconds() * 1000)
        with self._lock:
            if until_ms > self._paused_until_ms:
                self._paused_until_ms = until_ms
            effective = self._paused_until_ms
        logger.warning(
            "Rate limit: all agents paused until %s", format_epoch_ms(effective)
        )
        return effective

    def handle_result(self, text: Optional[str]) -> bool:
        """
        Inspect a dispatch result; pause globally if it is a rate-limit response.

        Returns:
            True if the result carried a rate-limit signature.
        """
        if not is_rate_limited(text):
            return False

        delay = parse_reset_delay(text or "", self._clock.now())
        with self._lock:
            self.stats.pauses_triggered += 1
            self.stats.last_trigger_at = self._clock.epoch_ms()
            if delay is None:
                self.stats.fallback_pauses += 1
            else:
                self.stats.hinted_pauses += 1

        if delay is None:
            logger.info("Rate limit detected without reset hint, using %s fallback", self.fallback_pause)
            delay = self.fallback_pause
        self.pause_for(delay)
        return True

    def reset(self) -> None:
        """Clear the pause (operator override)."""
        with self._lock:
            self._paused_until_ms = 0
        logger.info("Rate limit pause cleared")

    def get_status(self) -> Dict:
        paused = self.is_paused()
        return {
            "paused": paused,
            "paused_until": format_epoch_ms(self.paused_until_ms) if paused else None,
            "remaining_seconds": self.remaining_seconds(),
            "stats": self.stats.to_dict(),
        }
