"""
API_APP
=======

FastAPI operational API for the heartbeat core.

Endpoints:
    GET    /health                      Health check
    GET    /status                      Service status
    GET    /agents                      Agent snapshots + rate-limit state
    GET    /agents/{agent_id}           One agent snapshot
    GET    /agents/{agent_id}/runs      Run history (newest first)
    POST   /agents/{agent_id}/enable    Mark enabled (does not arm the timer)
    POST   /agents/{agent_id}/disable   Disable and stop the timer
    POST   /agents/{agent_id}/restart   Re-enable and start
    GET    /stats                       Per-agent outcome counts (last 24h)
    GET    /scheduler                   Scheduler status, recent fires, reminders
    GET    /reminders                   Pending reminders
    POST   /reminders                   Create a one-shot reminder
    DELETE /reminders/{reminder_id}     Cancel an unfired reminder
    GET    /rate-limit                  Global pause state
    DELETE /rate-limit                  Clear the global pause

Usage:
    uvicorn heartbeat_core.api.app:app --port 8432
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .. import __version__
from ..registry import UnknownAgentError

logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str


class AgentInfo(BaseModel):
    """Agent snapshot."""
    id: str
    name: str
    role: str
    enabled: bool
    heartbeat_seconds: float
    status: str
    cycle: int
    total_runs: int
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None
    consecutive_errors: int
    created_at: Optional[str] = None
    in_flight: bool
    backoff_until: Optional[str] = None


class AgentListResponse(BaseModel):
    agents: List[AgentInfo]
    rate_limit: Dict[str, Any]


class RunInfo(BaseModel):
    """One agent run record."""
    id: Optional[int] = None
    agent_id: str
    cycle: int
    started_at: Optional[str] = None
    duration_ms: int
    outcome: str
    error: Optional[str] = None


class ReminderInfo(BaseModel):
    id: int
    fire_at: Optional[str] = None
    message: str
    fired: bool


class CreateReminderRequest(BaseModel):
    """Either an absolute epoch time or a relative delay."""
    message: str = Field(..., min_length=1)
    fire_at: Optional[int] = Field(None, description="Epoch seconds")
    in_minutes: Optional[float] = Field(None, gt=0)


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(service: Any = None, manage_lifecycle: bool = False) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        service: A ``HeartbeatService``. Created lazily from the config
                 directory when omitted.
        manage_lifecycle: Start the service on app startup and stop it on
                          shutdown.
    """
    _service = service

    def get_service():
        nonlocal _service
        if _service is None:
            from ..service import HeartbeatService
            _service = HeartbeatService.from_config_dir()
        return _service

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            get_service().start()
        yield
        if manage_lifecycle:
            get_service().stop()

    app = FastAPI(
        title="Heartbeat Core API",
        description="Operational API for agent heartbeats and the event scheduler",
        version=__version__,
        lifespan=lifespan,
    )

    def get_runtime(agent_id: str):
        try:
            return get_service().registry.get(agent_id)
        except UnknownAgentError:
            raise HTTPException(status_code=404, detail=f"Agent not found: {agent_id}")

    def get_scheduler():
        scheduler = get_service().scheduler
        if scheduler is None:
            raise HTTPException(status_code=503, detail="Scheduler is disabled")
        return scheduler

    # ========================================================================
    # HEALTH & STATUS ENDPOINTS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/status", tags=["System"])
    async def get_status():
        """Get service status."""
        return get_service().get_status()

    @app.get("/stats", tags=["System"])
    async def get_stats(hours: float = Query(24, gt=0)):
        """Per-agent outcome counts and average duration."""
        return {"hours": hours, "agents": get_service().run_stats(hours)}

    # ========================================================================
    # AGENT ENDPOINTS
    # ========================================================================

    @app.get("/agents", response_model=AgentListResponse, tags=["Agents"])
    async def list_agents():
        """List agent snapshots with the global rate-limit state."""
        svc = get_service()
        return AgentListResponse(
            agents=[AgentInfo(**s.to_dict()) for s in svc.registry.list_stats()],
            rate_limit=svc.rate_limits.get_status(),
        )

    @app.get("/agents/{agent_id}", response_model=AgentInfo, tags=["Agents"])
    async def get_agent(agent_id: str):
        """Get one agent snapshot."""
        return AgentInfo(**get_runtime(agent_id).snapshot().to_dict())

    @app.get("/agents/{agent_id}/runs", response_model=List[RunInfo], tags=["Agents"])
    async def list_agent_runs(agent_id: str, limit: int = Query(50, ge=1, le=500)):
        """Run history for an agent, newest first."""
        get_runtime(agent_id)
        return [RunInfo(**r.to_dict()) for r in get_service().store.list_run_records(agent_id, limit)]

    @app.post("/agents/{agent_id}/enable", response_model=AgentInfo, tags=["Agents"])
    def enable_agent(agent_id: str):
        """Mark an agent enabled. Use restart to arm its timer."""
        get_runtime(agent_id)
        runtime = get_service().registry.enable(agent_id)
        return AgentInfo(**runtime.snapshot().to_dict())

    @app.post("/agents/{agent_id}/disable", response_model=AgentInfo, tags=["Agents"])
    def disable_agent(agent_id: str):
        """Disable an agent and stop its timer."""
        get_runtime(agent_id)
        runtime = get_service().registry.disable(agent_id)
        return AgentInfo(**runtime.snapshot().to_dict())

    @app.post("/agents/{agent_id}/restart", response_model=AgentInfo, tags=["Agents"])
    def restart_agent(agent_id: str):
        """Re-enable an agent and start its timer."""
        get_runtime(agent_id)
        runtime = get_service().registry.restart(agent_id)
        return AgentInfo(**runtime.snapshot().to_dict())

    # ========================================================================
    # SCHEDULER ENDPOINTS
    # ========================================================================

    @app.get("/scheduler", tags=["Scheduler"])
    async def scheduler_status(limit: int = Query(20, ge=1, le=200)):
        """Scheduler status, recent fires and pending reminders."""
        scheduler = get_scheduler()
        return {
            "status": scheduler.get_status(),
            "recent_fires": [f.to_dict() for f in scheduler.recent_fires(limit)],
            "reminders": [r.to_dict() for r in scheduler.list_reminders()],
        }

    @app.get("/reminders", response_model=List[ReminderInfo], tags=["Scheduler"])
    async def list_reminders():
        """Pending reminders ordered by fire time."""
        return [ReminderInfo(**r.to_dict()) for r in get_scheduler().list_reminders()]

    @app.post("/reminders", response_model=ReminderInfo, status_code=201, tags=["Scheduler"])
    async def create_reminder(request: CreateReminderRequest):
        """Create a one-shot reminder."""
        scheduler = get_scheduler()
        if (request.fire_at is None) == (request.in_minutes is None):
            raise HTTPException(status_code=422, detail="Provide exactly one of fire_at or in_minutes")

        if request.fire_at is not None:
            fire_at = request.fire_at
        else:
            fire_at = int(get_service().clock.epoch() + request.in_minutes * 60)

        try:
            reminder_id = scheduler.add_reminder(fire_at, request.message)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        for reminder in scheduler.list_reminders():
            if reminder.id == reminder_id:
                return ReminderInfo(**reminder.to_dict())
        raise HTTPException(status_code=500, detail="Reminder was not stored")

    @app.delete("/reminders/{reminder_id}", tags=["Scheduler"])
    async def cancel_reminder(reminder_id: int):
        """Cancel a reminder that has not fired yet."""
        if not get_scheduler().cancel_reminder(reminder_id):
            raise HTTPException(
                status_code=404,
                detail=f"Reminder {reminder_id} not found or already fired",
            )
        return {"status": "cancelled", "id": reminder_id}

    # ========================================================================
    # RATE LIMIT ENDPOINTS
    # ========================================================================

    @app.get("/rate-limit", tags=["Rate Limit"])
    async def rate_limit_status():
        """Global pause state."""
        return get_service().rate_limits.get_status()

    @app.delete("/rate-limit", tags=["Rate Limit"])
    async def clear_rate_limit():
        """Clear the global pause (operator override)."""
        rate_limits = get_service().rate_limits
        rate_limits.reset()
        return rate_limits.get_status()

    return app


app = create_app(manage_lifecycle=True)
