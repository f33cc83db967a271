"""
MODELS
======

Core data structures shared by the agent runtime, the registry, the
scheduler and the storage layer.

- ``AgentDefinition``   immutable description of one agent
- ``DirectiveBuilder``  strategy producing the directive for a cycle
- ``AgentRuntimeState`` mutable per-agent state (persisted)
- ``AgentRunRecord``    append-only audit entry for a dispatched tick
- ``ReminderRecord``    one-shot reminder row
- ``FireRecord``        append-only audit entry for a scheduler fire
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .clock import format_epoch_ms


# ============================================================================
# ENUMS
# ============================================================================

class AgentStatus(str, Enum):
    IDLE = "idle"          # Timer armed, nothing outstanding
    RUNNING = "running"    # Dispatch outstanding (guard set)
    STOPPED = "stopped"    # Timer cleared until explicit restart
    ERROR = "error"        # Last tick raised
    BACKOFF = "backoff"    # Failure cool-down, or last run hit a rate limit


class RunOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    RATE_LIMIT = "rate_limit"


class FireOutcome(str, Enum):
    DISPATCHED = "dispatched"
    SILENT = "silent"      # Builder had nothing to report
    ERROR = "error"


# ============================================================================
# AGENT DEFINITION
# ============================================================================

class DirectiveBuilder(ABC):
    """Builds the directive text for a heartbeat cycle.

    Implementations should be side-effect free. Returning ``None`` skips the
    cycle without dispatching.
    """

    @abstractmethod
    def build(self, cycle: int) -> Optional[str]:
        ...


@dataclass(frozen=True)
class AgentDefinition:
    """Immutable agent description supplied at construction."""
    agent_id: str
    name: str
    role: str
    heartbeat_seconds: float
    enabled: bool
    session_id: Any
    principal_id: Any
    builder: DirectiveBuilder
    cycle_count: Optional[int] = None  # Informational rotation length

    def __post_init__(self):
        if not self.agent_id:
            raise ValueError("AgentDefinition requires an agent_id")
        if self.heartbeat_seconds <= 0:
            raise ValueError(
                f"Agent '{self.agent_id}': heartbeat_seconds must be positive"
            )

    @property
    def heartbeat_ms(self) -> int:
        return int(self.heartbeat_seconds * 1000)


# ============================================================================
# RUNTIME STATE
# ============================================================================

@dataclass
class AgentRuntimeState:
    """Per-agent state. Everything here is persisted except the guard, which
    lives on the runtime itself."""
    agent_id: str
    status: AgentStatus = AgentStatus.IDLE
    cycle: int = 0
    total_runs: int = 0
    last_run_at: Optional[int] = None      # epoch ms
    last_error: Optional[str] = None
    consecutive_errors: int = 0
    created_at: int = 0                    # epoch ms

    def to_row(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "status": self.status.value,
            "cycle": self.cycle,
            "total_runs": self.total_runs,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
            "consecutive_errors": self.consecutive_errors,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AgentRuntimeState":
        return cls(
            agent_id=row["agent_id"],
            status=AgentStatus(row.get("status", "idle")),
            cycle=int(row.get("cycle", 0)),
            total_runs=int(row.get("total_runs", 0)),
            last_run_at=row.get("last_run_at"),
            last_error=row.get("last_error"),
            consecutive_errors=int(row.get("consecutive_errors", 0)),
            created_at=int(row.get("created_at", 0)),
        )


@dataclass(frozen=True)
class AgentRunRecord:
    """Audit entry written at the end of every tick that dispatched."""
    agent_id: str
    cycle: int
    started_at: int          # epoch ms
    duration_ms: int
    outcome: RunOutcome
    error: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "cycle": self.cycle,
            "started_at": format_epoch_ms(self.started_at),
            "duration_ms": self.duration_ms,
            "outcome": self.outcome.value,
            "error": self.error,
        }


# ============================================================================
# SCHEDULER RECORDS
# ============================================================================

@dataclass(frozen=True)
class ReminderRecord:
    id: int
    fire_at: int             # epoch seconds
    message: str
    fired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fire_at": format_epoch_ms(self.fire_at * 1000),
            "message": self.message,
            "fired": self.fired,
        }


@dataclass(frozen=True)
class FireRecord:
    event_key: str
    fired_at: int            # epoch seconds
    outcome: FireOutcome
    detail: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_key": self.event_key,
            "fired_at": format_epoch_ms(self.fired_at * 1000),
            "outcome": self.outcome.value,
            "detail": self.detail,
        }


@dataclass
class AgentSnapshot:
    """Read-only view of one agent for observability."""
    agent_id: str
    name: str
    role: str
    enabled: bool
    heartbeat_seconds: float
    state: AgentRuntimeState
    in_flight: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.agent_id,
            "name": self.name,
            "role": self.role,
            "enabled": self.enabled,
            "heartbeat_seconds": self.heartbeat_seconds,
            "status": self.state.status.value,
            "cycle": self.state.cycle,
            "total_runs": self.state.total_runs,
            "last_run_at": format_epoch_ms(self.state.last_run_at),
            "last_error": self.state.last_error,
            "consecutive_errors": self.state.consecutive_errors,
            "created_at": format_epoch_ms(self.state.created_at),
            "in_flight": self.in_flight,
            **self.extra,
        }
