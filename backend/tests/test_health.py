"""
Tests for the /health endpoint.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from conftest import FakeMemory, FakeStore, make_config
from routers import health
from routers.health import check_memory, overall_status


class BrokenMemory(FakeMemory):
    async def health_check(self):
        raise ConnectionError("memory service down")


def _app(store=None, memory=None, **config_overrides) -> FastAPI:
    app = FastAPI()
    app.include_router(health.router)
    app.state.config = make_config(**config_overrides)
    app.state.store = store
    app.state.memory = memory
    app.state.started_at = 0.0
    return app


@pytest.fixture()
def fake_psutil():
    """Pin memory readings so results do not depend on the test host."""
    with patch("routers.health.psutil") as mock_psutil:
        mock_psutil.virtual_memory.return_value = SimpleNamespace(percent=40.0)
        mock_psutil.Process.return_value.memory_info.return_value = SimpleNamespace(rss=123456)
        yield mock_psutil


class TestHealthEndpoint:

    def test_healthy(self, fake_psutil):
        with TestClient(_app(FakeStore(), FakeMemory())) as tc:
            response = tc.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"database", "vectordb", "memory"}
        assert body["checks"]["memory"] == {"status": "pass", "usedPercent": 40.0, "rssBytes": 123456}
        assert body["shutdown"] == "running"
        assert body["uptime"] > 0

    def test_healthz_alias(self, fake_psutil):
        with TestClient(_app(FakeStore(), FakeMemory())) as tc:
            assert tc.get("/healthz").json()["status"] == "healthy"

    def test_storage_outage_is_degraded_not_503(self, fake_psutil):
        with TestClient(_app(FakeStore(healthy=False), BrokenMemory())) as tc:
            response = tc.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["database"]["status"] == "fail"
        assert body["checks"]["vectordb"]["error"] == "memory service down"

    def test_missing_components_are_degraded(self, fake_psutil):
        with TestClient(_app()) as tc:
            body = tc.get("/health").json()
        assert body["checks"]["database"] == {"status": "fail", "error": "not configured"}
        assert body["status"] == "degraded"

    def test_memory_pressure_is_503(self, fake_psutil):
        fake_psutil.virtual_memory.return_value = SimpleNamespace(percent=97.5)
        with TestClient(_app(FakeStore(), FakeMemory(), memory_unhealthy_percent=90.0)) as tc:
            response = tc.get("/health")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert "97.5%" in body["checks"]["memory"]["error"]


class TestStatusRules:

    @pytest.mark.parametrize(
        "database, vectordb, memory, expected",
        [
            ("pass", "pass", "pass", "healthy"),
            ("fail", "pass", "pass", "degraded"),
            ("pass", "fail", "pass", "degraded"),
            ("pass", "pass", "fail", "unhealthy"),
            ("fail", "fail", "fail", "unhealthy"),
        ],
    )
    def test_overall_status(self, database, vectordb, memory, expected):
        checks = {
            "database": {"status": database},
            "vectordb": {"status": vectordb},
            "memory": {"status": memory},
        }
        assert overall_status(checks) == expected

    def test_check_memory_threshold(self, fake_psutil):
        assert check_memory(40.0)["status"] == "pass"
        assert check_memory(39.9)["status"] == "fail"
