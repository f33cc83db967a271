"""Tests for the FastAPI operational API."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from heartbeat_core.api.app import create_app
from heartbeat_core.config.loader import GlobalConfig
from heartbeat_core.service import HeartbeatService


@pytest.fixture
def client(service: HeartbeatService) -> TestClient:
    return TestClient(create_app(service))


class TestSystemEndpoints:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_status(self, client: TestClient) -> None:
        data = client.get("/status").json()
        assert data["agents"] == 1
        assert data["running"] is False

    def test_stats(self, client: TestClient, service: HeartbeatService) -> None:
        service.registry.get("scout").tick()
        data = client.get("/stats", params={"hours": 1}).json()
        assert data["hours"] == 1
        assert data["agents"][0]["agent_id"] == "scout"

    def test_stats_rejects_non_positive_window(self, client: TestClient) -> None:
        assert client.get("/stats", params={"hours": 0}).status_code == 422


class TestAgentEndpoints:
    def test_list_agents(self, client: TestClient) -> None:
        data = client.get("/agents").json()
        [agent] = data["agents"]
        assert agent["id"] == "scout"
        assert agent["status"] == "idle"
        assert data["rate_limit"]["paused"] is False

    def test_get_agent(self, client: TestClient) -> None:
        assert client.get("/agents/scout").json()["name"] == "Scout"

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/agents/ghost"),
            ("get", "/agents/ghost/runs"),
            ("post", "/agents/ghost/enable"),
            ("post", "/agents/ghost/disable"),
            ("post", "/agents/ghost/restart"),
        ],
    )
    def test_unknown_agent_is_404(self, client: TestClient, method: str, path: str) -> None:
        assert getattr(client, method)(path).status_code == 404

    def test_runs(self, client: TestClient, service: HeartbeatService) -> None:
        service.registry.get("scout").tick()
        [run] = client.get("/agents/scout/runs").json()
        assert run["outcome"] == "success"
        assert run["cycle"] == 0

    def test_disable_enable_restart(self, client: TestClient, service: HeartbeatService) -> None:
        assert client.post("/agents/scout/disable").json()["enabled"] is False

        data = client.post("/agents/scout/enable").json()
        assert data["enabled"] is True
        assert not service.registry.get("scout").is_armed()

        data = client.post("/agents/scout/restart").json()
        assert data["status"] == "idle"
        assert service.registry.get("scout").is_armed()


class TestReminderEndpoints:
    def test_create_list_cancel(self, client: TestClient) -> None:
        response = client.post("/reminders", json={"message": "stretch", "in_minutes": 10})
        assert response.status_code == 201
        reminder = response.json()
        assert reminder["fire_at"].startswith("2026-03-02T12:10:00")
        assert reminder["fired"] is False

        assert [r["id"] for r in client.get("/reminders").json()] == [reminder["id"]]

        assert client.delete(f"/reminders/{reminder['id']}").status_code == 200
        assert client.delete(f"/reminders/{reminder['id']}").status_code == 404
        assert client.get("/reminders").json() == []

    def test_absolute_fire_time(self, client: TestClient) -> None:
        response = client.post("/reminders", json={"message": "standup", "fire_at": 1_772_460_000})
        assert response.status_code == 201

    @pytest.mark.parametrize(
        "body",
        [
            {"message": "x"},
            {"message": "x", "fire_at": 1_772_460_000, "in_minutes": 5},
            {"message": "", "in_minutes": 5},
            {"message": "   ", "in_minutes": 5},
            {"message": "x", "in_minutes": 0},
        ],
    )
    def test_invalid_requests(self, client: TestClient, body) -> None:
        assert client.post("/reminders", json=body).status_code == 422

    def test_scheduler_view(self, client: TestClient, service: HeartbeatService) -> None:
        service.scheduler.add_reminder(service.clock.epoch() - 1, "now")
        service.scheduler.poll()

        data = client.get("/scheduler").json()
        assert data["status"]["polls"] == 1
        assert data["recent_fires"][0]["event_key"] == "reminder:1"
        assert data["reminders"] == []

    def test_scheduler_disabled_is_503(self, config_data, store, dispatcher, clock) -> None:
        config_data["scheduler"]["enabled"] = False
        svc = HeartbeatService(GlobalConfig.from_dict(config_data), store=store, dispatcher=dispatcher, clock=clock)
        client = TestClient(create_app(svc))

        assert client.get("/scheduler").status_code == 503
        assert client.get("/reminders").status_code == 503
        assert client.post("/reminders", json={"message": "x", "in_minutes": 1}).status_code == 503


class TestRateLimitEndpoints:
    def test_status_and_clear(self, client: TestClient, service: HeartbeatService) -> None:
        service.rate_limits.pause_for(timedelta(hours=1))
        assert client.get("/rate-limit").json()["paused"] is True

        assert client.delete("/rate-limit").json()["paused"] is False
        assert not service.rate_limits.is_paused()
