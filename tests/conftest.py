"""Shared test fixtures for the heartbeat core test suite."""

import json
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from heartbeat_core.config.loader import GlobalConfig
from heartbeat_core.logging_config import reset_logging
from heartbeat_core.ratelimit import RateLimitCoordinator
from heartbeat_core.service import HeartbeatService
from heartbeat_core.storage.sqlite import SQLiteStateStore
from tests.fakes import FakeClock, RecordingDispatcher


@pytest.fixture
def clock() -> FakeClock:
    """Clock at 2026-03-02 12:00 UTC (07:00 in Toronto)."""
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStateStore:
    """Fresh SQLite store in a temporary directory."""
    return SQLiteStateStore(tmp_path / "heartbeat.db")


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture(autouse=True)
def _fresh_logging():
    """Undo any handlers a test attached to the heartbeat_core logger."""
    yield
    reset_logging()


@pytest.fixture
def rate_limits(clock: FakeClock) -> RateLimitCoordinator:
    return RateLimitCoordinator(clock=clock)


@pytest.fixture
def write_json(tmp_path: Path) -> Callable[[str, Any], Path]:
    """Factory fixture writing a JSON document under tmp_path."""

    def _write(name: str, data: Any) -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def config_data(tmp_path: Path) -> dict:
    """config.json contents with one agent, one daily event and tmp paths."""
    return {
        "paths": {"data_dir": str(tmp_path), "db_path": str(tmp_path / "heartbeat.db")},
        "runtime": {"first_tick_delay_seconds": 3600},
        "scheduler": {
            "session_id": "chat-1",
            "principal_id": "owner",
            "poll_interval_seconds": 3600,
            "startup_delay_seconds": 3600,
            "stability_event": None,
            "events": [
                {"key": "morning_briefing", "daily_at": 8, "directive": "[SCHEDULER] Morning briefing"},
            ],
        },
        "agents": [
            {
                "agent_id": "scout",
                "name": "Scout",
                "role": "market watcher",
                "heartbeat_minutes": 60,
                "session_id": "chat-1",
                "principal_id": "owner",
                "directives": ["look around", "write report"],
            }
        ],
        "logging": {"level": "INFO", "file": "none"},
    }


@pytest.fixture
def config(config_data: dict) -> GlobalConfig:
    return GlobalConfig.from_dict(config_data)


@pytest.fixture
def service(config, store, dispatcher, clock):
    """HeartbeatService wired to the test store, dispatcher and clock."""
    svc = HeartbeatService(config, store=store, dispatcher=dispatcher, clock=clock)
    yield svc
    svc.stop()
