"""
CLOCK
=====

Wall-clock and timezone service.

Everything that reads "now" goes through a ``Clock`` so runtimes and the
scheduler can be driven deterministically. ``Clock.now()`` always returns a
timezone-aware UTC datetime; the helpers derive epoch values and local
calendar fields in a named IANA timezone.
"""

from datetime import date, datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo


@lru_cache(maxsize=32)
def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name. Raises ZoneInfoNotFoundError if unknown."""
    return ZoneInfo(name)


class Clock:
    """System wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def epoch(self) -> float:
        """Current time in epoch seconds."""
        return self.now().timestamp()

    def epoch_ms(self) -> int:
        """Current time in epoch milliseconds."""
        return int(self.now().timestamp() * 1000)

    def local(self, tz_name: str) -> datetime:
        return self.now().astimezone(get_zone(tz_name))

    def hour_in(self, tz_name: str) -> int:
        """Current hour (0-23) in the named timezone."""
        return self.local(tz_name).hour


def epoch_to_date(epoch_seconds: float, tz_name: str) -> date:
    """Calendar date of an epoch timestamp in the named timezone."""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).astimezone(get_zone(tz_name)).date()


def format_epoch_ms(epoch_ms: int | None) -> str | None:
    """ISO-8601 UTC string for an epoch-ms value (None passes through)."""
    if epoch_ms is None:
        return None
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()
