"""
CONFIG_LOADER
=============

Configuration management for heartbeat_core.

Handles:
- Global configuration (paths, logging, runtime and scheduler tuning)
- Agent definitions (identity, heartbeat cadence, directive rotation)
- Scheduled event table (daily / interval / cron events)

Usage:
    from heartbeat_core.config import get_config_manager

    config = get_config_manager().global_config
    print(config.scheduler.timezone)
    for agent in config.agents:
        print(agent.agent_id, agent.heartbeat_minutes)

The config directory defaults to ``./data/heartbeat/config`` and can be
overridden with the ``HEARTBEAT_CONFIG_DIR`` environment variable. When no
``config.json`` exists a default one is written.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "HEARTBEAT_CONFIG_DIR"
DEFAULT_CONFIG_DIR = "./data/heartbeat/config"
CONFIG_FILENAME = "config.json"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class PathsConfig:
    """Directory and file locations. Relative paths are taken from the working directory."""
    data_dir: str = "./data/heartbeat"
    db_path: str = "./data/heartbeat/heartbeat.db"

    def to_dict(self) -> Dict:
        return {
            "data_dir": self.data_dir,
            "db_path": self.db_path,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PathsConfig":
        return cls(
            data_dir=data.get("data_dir", "./data/heartbeat"),
            db_path=data.get("db_path", "./data/heartbeat/heartbeat.db"),
        )


@dataclass
class RuntimeConfig:
    """Agent runtime tuning shared by every agent."""
    first_tick_delay_seconds: float = 10.0
    disable_threshold: int = 5
    backoff_base_ms: int = 10_000
    admin_session_id: Optional[str] = None
    admin_principal_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "first_tick_delay_seconds": self.first_tick_delay_seconds,
            "disable_threshold": self.disable_threshold,
            "backoff_base_ms": self.backoff_base_ms,
            "admin_session_id": self.admin_session_id,
            "admin_principal_id": self.admin_principal_id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RuntimeConfig":
        return cls(
            first_tick_delay_seconds=data.get("first_tick_delay_seconds", 10.0),
            disable_threshold=data.get("disable_threshold", 5),
            backoff_base_ms=data.get("backoff_base_ms", 10_000),
            admin_session_id=data.get("admin_session_id"),
            admin_principal_id=data.get("admin_principal_id"),
        )


@dataclass
class SchedulerConfig:
    """Time-keeping engine settings and the static event table."""
    enabled: bool = True
    timezone: str = "America/Toronto"
    poll_interval_seconds: float = 60.0
    startup_delay_seconds: float = 5.0
    session_id: Optional[str] = None
    principal_id: Optional[str] = None
    stability_event: Optional[str] = "heartbeat"
    stability_threshold: int = 10
    events: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "enabled": self.enabled,
            "timezone": self.timezone,
            "poll_interval_seconds": self.poll_interval_seconds,
            "startup_delay_seconds": self.startup_delay_seconds,
            "session_id": self.session_id,
            "principal_id": self.principal_id,
            "stability_event": self.stability_event,
            "stability_threshold": self.stability_threshold,
            "events": self.events,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SchedulerConfig":
        return cls(
            enabled=data.get("enabled", True),
            timezone=data.get("timezone", "America/Toronto"),
            poll_interval_seconds=data.get("poll_interval_seconds", 60.0),
            startup_delay_seconds=data.get("startup_delay_seconds", 5.0),
            session_id=data.get("session_id"),
            principal_id=data.get("principal_id"),
            stability_event=data.get("stability_event", "heartbeat"),
            stability_threshold=data.get("stability_threshold", 10),
            events=list(data.get("events", [])),
        )


@dataclass
class RateLimitConfig:
    """Global throttling settings."""
    fallback_pause_hours: float = 2.0

    def to_dict(self) -> Dict:
        return {"fallback_pause_hours": self.fallback_pause_hours}

    @classmethod
    def from_dict(cls, data: Dict) -> "RateLimitConfig":
        return cls(fallback_pause_hours=data.get("fallback_pause_hours", 2.0))


@dataclass
class DispatchConfig:
    """Where directives are delivered (HTTP gateway in front of the orchestrator)."""
    base_url: str = "http://localhost:8431"
    auth_token: Optional[str] = None
    timeout_seconds: float = 600.0

    def to_dict(self) -> Dict:
        result = {
            "base_url": self.base_url,
            "timeout_seconds": self.timeout_seconds,
        }
        if self.auth_token:
            result["auth_token"] = self.auth_token
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "DispatchConfig":
        return cls(
            base_url=data.get("base_url", "http://localhost:8431"),
            auth_token=data.get("auth_token"),
            timeout_seconds=data.get("timeout_seconds", 600.0),
        )


@dataclass
class ApiConfig:
    """Operational API server binding."""
    host: str = "localhost"
    port: int = 8432

    def to_dict(self) -> Dict:
        return {"host": self.host, "port": self.port}

    @classmethod
    def from_dict(cls, data: Dict) -> "ApiConfig":
        return cls(
            host=data.get("host", "localhost"),
            port=data.get("port", 8432),
        )


@dataclass
class AgentConfig:
    """Configuration for a single heartbeat agent."""
    agent_id: str
    name: str = ""
    role: str = ""
    heartbeat_minutes: float = 60.0
    enabled: bool = True
    session_id: Optional[str] = None
    principal_id: Optional[str] = None
    directives: List[str] = field(default_factory=list)  # Rotated by cycle
    quiet_hours: Optional[List[int]] = None  # [start_hour, end_hour) in scheduler timezone

    def to_dict(self) -> Dict:
        result = {
            "agent_id": self.agent_id,
            "name": self.name,
            "role": self.role,
            "heartbeat_minutes": self.heartbeat_minutes,
            "enabled": self.enabled,
            "session_id": self.session_id,
            "principal_id": self.principal_id,
            "directives": self.directives,
        }
        if self.quiet_hours:
            result["quiet_hours"] = self.quiet_hours
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "AgentConfig":
        if not data.get("agent_id"):
            raise ValueError("Agent config is missing 'agent_id'")
        quiet_hours = data.get("quiet_hours")
        if quiet_hours is not None and len(quiet_hours) != 2:
            raise ValueError(
                f"Agent '{data['agent_id']}': quiet_hours must be [start_hour, end_hour]"
            )
        return cls(
            agent_id=data["agent_id"],
            name=data.get("name", data["agent_id"]),
            role=data.get("role", ""),
            heartbeat_minutes=data.get("heartbeat_minutes", 60.0),
            enabled=data.get("enabled", True),
            session_id=data.get("session_id"),
            principal_id=data.get("principal_id"),
            directives=list(data.get("directives", [])),
            quiet_hours=list(quiet_hours) if quiet_hours is not None else None,
        )


@dataclass
class GlobalConfig:
    """Top-level configuration."""
    version: str = "1.0.0"
    paths: PathsConfig = field(default_factory=PathsConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    agents: List[AgentConfig] = field(default_factory=list)
    logging_level: str = "INFO"
    logging_file: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "paths": self.paths.to_dict(),
            "runtime": self.runtime.to_dict(),
            "scheduler": self.scheduler.to_dict(),
            "rate_limit": self.rate_limit.to_dict(),
            "dispatch": self.dispatch.to_dict(),
            "api": self.api.to_dict(),
            "agents": [a.to_dict() for a in self.agents],
            "logging": {
                "level": self.logging_level,
                "file": self.logging_file,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GlobalConfig":
        logging_section = data.get("logging", {})
        agents = [AgentConfig.from_dict(a) for a in data.get("agents", [])]

        seen = set()
        for agent in agents:
            if agent.agent_id in seen:
                raise ValueError(f"Duplicate agent_id in config: {agent.agent_id}")
            seen.add(agent.agent_id)

        return cls(
            version=data.get("version", "1.0.0"),
            paths=PathsConfig.from_dict(data.get("paths", {})),
            runtime=RuntimeConfig.from_dict(data.get("runtime", {})),
            scheduler=SchedulerConfig.from_dict(data.get("scheduler", {})),
            rate_limit=RateLimitConfig.from_dict(data.get("rate_limit", {})),
            dispatch=DispatchConfig.from_dict(data.get("dispatch", {})),
            api=ApiConfig.from_dict(data.get("api", {})),
            agents=agents,
            logging_level=logging_section.get("level", "INFO"),
            logging_file=logging_section.get("file"),
        )

    @classmethod
    def create_default(cls) -> "GlobalConfig":
        """Default configuration: two daily briefings and a silent heartbeat."""
        return cls(
            scheduler=SchedulerConfig(
                events=[
                    {
                        "key": "morning_briefing",
                        "daily_at": 8,
                        "directive": (
                            "[SCHEDULER] Morning briefing. Summarise the day ahead: "
                            "pending reminders, recent notes, and one line of encouragement. "
                            "Keep it short."
                        ),
                    },
                    {
                        "key": "evening_checkin",
                        "daily_at": 20,
                        "directive": (
                            "[SCHEDULER] Evening check-in. Quick review of the day: what got "
                            "done, missed reminders, and a good-evening note."
                        ),
                    },
                    {
                        "key": "heartbeat",
                        "every_minutes": 30,
                        "builder": "pending_requests_digest",
                        "options": {"path": "./data/heartbeat/pending_requests.json"},
                    },
                ],
            ),
        )


# ============================================================================
# CONFIG MANAGER
# ============================================================================

class ConfigManager:
    """
    Loads and saves ``config.json`` from a config directory.
    """

    def __init__(self, config_dir: Optional[str] = None):
        self.config_dir = Path(
            config_dir or os.environ.get(CONFIG_DIR_ENV) or DEFAULT_CONFIG_DIR
        )
        self.config_path = self.config_dir / CONFIG_FILENAME
        self._global_config: Optional[GlobalConfig] = None

    @property
    def global_config(self) -> GlobalConfig:
        if self._global_config is None:
            self._global_config = self.load_global()
        return self._global_config

    def load_global(self) -> GlobalConfig:
        """Load config.json, writing the default configuration if it is missing."""
        if not self.config_path.exists():
            logger.info("No config at %s, writing defaults", self.config_path)
            self._global_config = GlobalConfig.create_default()
            self.save_global()
            return self._global_config

        data = json.loads(self.config_path.read_text(encoding="utf-8"))
        self._global_config = GlobalConfig.from_dict(data)
        return self._global_config

    def save_global(self) -> None:
        """Persist the current global config to disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(
            json.dumps(self.global_config.to_dict(), indent=2),
            encoding="utf-8",
        )

    def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        for agent in self.global_config.agents:
            if agent.agent_id == agent_id:
                return agent
        return None

    def list_agents(self) -> List[str]:
        return [a.agent_id for a in self.global_config.agents]


# ============================================================================
# GLOBAL INSTANCE
# ============================================================================

_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_dir: Optional[str] = None) -> ConfigManager:
    """Get or create the global config manager."""
    global _config_manager
    if _config_manager is None or (
        config_dir is not None and Path(config_dir) != _config_manager.config_dir
    ):
        _config_manager = ConfigManager(config_dir)
    return _config_manager


def load_global_config() -> GlobalConfig:
    """Convenience accessor for the global config."""
    return get_config_manager().global_config
