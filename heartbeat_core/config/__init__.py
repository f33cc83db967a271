"""
Configuration management for heartbeat_core.
"""

from .loader import (
    ConfigManager,
    GlobalConfig,
    AgentConfig,
    PathsConfig,
    RuntimeConfig,
    SchedulerConfig,
    RateLimitConfig,
    DispatchConfig,
    ApiConfig,
    get_config_manager,
    load_global_config,
)

__all__ = [
    "ConfigManager",
    "GlobalConfig",
    "AgentConfig",
    "PathsConfig",
    "RuntimeConfig",
    "SchedulerConfig",
    "RateLimitConfig",
    "DispatchConfig",
    "ApiConfig",
    "get_config_manager",
    "load_global_config",
]
