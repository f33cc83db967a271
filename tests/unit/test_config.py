"""Tests for the JSON config layer."""

import json
from pathlib import Path

import pytest

from heartbeat_core.config.loader import AgentConfig, ConfigManager, GlobalConfig


class TestGlobalConfig:
    def test_defaults(self) -> None:
        config = GlobalConfig()
        assert config.scheduler.timezone == "America/Toronto"
        assert config.scheduler.stability_threshold == 10
        assert config.runtime.disable_threshold == 5
        assert config.rate_limit.fallback_pause_hours == 2.0
        assert config.agents == []

    def test_from_dict_partial_sections(self) -> None:
        config = GlobalConfig.from_dict(
            {
                "scheduler": {"timezone": "Europe/Paris", "session_id": "chat"},
                "runtime": {"disable_threshold": 3},
                "agents": [{"agent_id": "ops", "directives": ["x"], "quiet_hours": [22, 7]}],
                "logging": {"level": "DEBUG"},
            }
        )
        assert config.scheduler.timezone == "Europe/Paris"
        assert config.scheduler.poll_interval_seconds == 60.0
        assert config.runtime.disable_threshold == 3
        assert config.agents[0].name == "ops"
        assert config.agents[0].quiet_hours == [22, 7]
        assert config.logging_level == "DEBUG"

    def test_duplicate_agent_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate agent_id"):
            GlobalConfig.from_dict({"agents": [{"agent_id": "a"}, {"agent_id": "a"}]})

    def test_agent_requires_id(self) -> None:
        with pytest.raises(ValueError, match="agent_id"):
            AgentConfig.from_dict({"name": "nameless"})

    def test_agent_quiet_hours_shape(self) -> None:
        with pytest.raises(ValueError, match="quiet_hours"):
            AgentConfig.from_dict({"agent_id": "a", "quiet_hours": [1, 2, 3]})

    def test_dict_round_trip(self) -> None:
        config = GlobalConfig.create_default()
        config.agents.append(AgentConfig(agent_id="ops", directives=["x"]))
        assert GlobalConfig.from_dict(config.to_dict()) == config


class TestConfigManager:
    def test_writes_defaults_when_missing(self, tmp_path: Path) -> None:
        manager = ConfigManager(str(tmp_path / "cfg"))
        config = manager.global_config

        assert manager.config_path.exists()
        keys = [e["key"] for e in config.scheduler.events]
        assert keys == ["morning_briefing", "evening_checkin", "heartbeat"]

    def test_loads_existing_file(self, tmp_path: Path) -> None:
        (tmp_path / "config.json").write_text(
            json.dumps({"agents": [{"agent_id": "ops", "directives": ["x"]}]}),
            encoding="utf-8",
        )
        manager = ConfigManager(str(tmp_path))

        assert manager.list_agents() == ["ops"]
        assert manager.get_agent("ops").directives == ["x"]
        assert manager.get_agent("ghost") is None

    def test_relative_paths_kept_as_written(self, tmp_path: Path) -> None:
        (tmp_path / "config.json").write_text(
            json.dumps({"paths": {"data_dir": "state", "db_path": "state/hb.db"}}),
            encoding="utf-8",
        )
        paths = ConfigManager(str(tmp_path)).global_config.paths

        assert paths.data_dir == "state"
        assert paths.db_path == "state/hb.db"

    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEARTBEAT_CONFIG_DIR", str(tmp_path))
        assert ConfigManager().config_dir == tmp_path
