"""
AGENT DEFINITIONS
=================

Directive builders and the bridge from ``AgentConfig`` to ``AgentDefinition``.

A directive builder decides what an agent should do on a given cycle:

    RotatingDirectiveBuilder   cycles through a fixed list of directives
                               (``cycle % len(directives)``), optionally silent
                               during quiet hours
    CallableDirectiveBuilder   wraps any ``fn(cycle) -> Optional[str]``

Returning ``None`` from a builder skips the cycle without dispatching.
"""

import logging
from typing import Callable, List, Optional, Sequence

from ..clock import Clock
from ..config.loader import AgentConfig
from ..models import AgentDefinition, DirectiveBuilder

logger = logging.getLogger(__name__)


class RotatingDirectiveBuilder(DirectiveBuilder):
    """
    Rotates through a fixed list of directives by cycle number.

    Quiet hours are ``[start_hour, end_hour)`` in ``tz_name``; a window with
    ``start > end`` wraps midnight (e.g. ``[22, 7]``).
    """

    def __init__(
        self,
        directives: Sequence[str],
        quiet_hours: Optional[Sequence[int]] = None,
        tz_name: str = "UTC",
        clock: Optional[Clock] = None,
    ):
        if not directives:
            raise ValueError("RotatingDirectiveBuilder needs at least one directive")
        if quiet_hours is not None:
            if len(quiet_hours) != 2 or not all(0 <= h <= 23 for h in quiet_hours):
                raise ValueError(f"quiet_hours must be two hours in 0-23, got {quiet_hours!r}")
        self.directives: List[str] = list(directives)
        self.quiet_hours = tuple(quiet_hours) if quiet_hours is not None else None
        self.tz_name = tz_name
        self._clock = clock or Clock()

    def is_quiet(self) -> bool:
        if not self.quiet_hours:
            return False
        start, end = self.quiet_hours
        if start == end:
            return False
        hour = self._clock.hour_in(self.tz_name)
        if start < end:
            return start <= hour < end
        return hour >= start or hour < end

    def build(self, cycle: int) -> Optional[str]:
        if self.is_quiet():
            return None
        return self.directives[cycle % len(self.directives)]


class CallableDirectiveBuilder(DirectiveBuilder):
    """Adapts a plain function ``fn(cycle) -> Optional[str]``."""

    def __init__(self, fn: Callable[[int], Optional[str]]):
        self._fn = fn

    def build(self, cycle: int) -> Optional[str]:
        return self._fn(cycle)


def definition_from_config(
    config: AgentConfig,
    tz_name: str = "UTC",
    clock: Optional[Clock] = None,
    builder: Optional[DirectiveBuilder] = None,
) -> AgentDefinition:
    """
    Build an ``AgentDefinition`` from its config entry.

    Args:
        config: Agent config entry.
        tz_name: Timezone used to evaluate quiet hours.
        clock: Clock for quiet-hour checks.
        builder: Explicit builder; overrides the config's directive rotation.

    Raises:
        ValueError: If the agent has neither a builder nor any directives.
    """
    if builder is None:
        if not config.directives:
            raise ValueError(f"Agent '{config.agent_id}' has no directives configured")
        builder = RotatingDirectiveBuilder(
            config.directives,
            quiet_hours=config.quiet_hours,
            tz_name=tz_name,
            clock=clock,
        )

    return AgentDefinition(
        agent_id=config.agent_id,
        name=config.name or config.agent_id,
        role=config.role,
        heartbeat_seconds=float(config.heartbeat_minutes) * 60,
        enabled=config.enabled,
        session_id=config.session_id,
        principal_id=config.principal_id,
        builder=builder,
        cycle_count=len(config.directives) or None,
    )
