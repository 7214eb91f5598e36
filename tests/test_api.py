"""Tests for the FastAPI routes."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from monagent.api.server import create_app, reload_monitors
from monagent.health.engine import ErrorKind, Status
from monagent.health.scheduler import HealthScheduler
from monagent.monitors.registry import Registry, load

FAR_FUTURE = "0 0 1 1 *"


@pytest.fixture
def app(registry: Registry):
    return create_app(registry)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def populated(app, registry: Registry, make_result):
    """api: Ok then Fail (threshold 2 keeps it Ok); db: Fail; disk: never checked."""
    store = app.state.result_store
    for m in registry.enabled():
        store.register(m)
    store.apply(make_result("api", Status.OK, offset=1, message="200 OK"))
    store.apply(make_result("api", Status.FAIL, offset=2, error_kind=ErrorKind.UNEXPECTED_STATUS, message="503"))
    store.apply(make_result("api", Status.OK, offset=3, message="200 OK"))
    store.apply(make_result("db", Status.FAIL, offset=1, error_kind=ErrorKind.TIMEOUT, message="Timed out"))
    return app


class TestHealthRoutes:
    def test_aggregate_empty(self) -> None:
        resp = TestClient(create_app()).get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "Unknown", "monitors": 0}

    def test_aggregate_worst_wins(self, populated, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "Fail", "monitors": 4}

    def test_monitor_detail(self, populated, client) -> None:
        resp = client.get("/health/api")
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == "api"
        assert data["status"] == "Ok"
        assert data["consecutiveSuccesses"] == 1
        assert data["consecutiveFailures"] == 0
        assert data["message"] == "200 OK"
        assert data["lastSuccess"] is not None
        assert data["lastFailure"] is not None
        # newest first
        assert [h["status"] for h in data["history"]] == ["Ok", "Fail", "Ok"]
        assert data["history"][1]["errorKind"] == "UnexpectedStatus"

    def test_never_checked_monitor(self, populated, client) -> None:
        data = client.get("/health/disk").json()
        assert data["status"] == "Unknown"
        assert data["lastChecked"] is None
        assert data["history"] == []

    def test_disabled_monitor_is_never_checked(self, populated, client) -> None:
        resp = client.get("/health/nginx")
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == "nginx"
        assert data["status"] == "Unknown"
        assert data["history"] == []
        assert client.get("/health/nginx/history").json() == []
        assert client.get("/health").json()["monitors"] == 4

    def test_unknown_monitor_404(self, populated, client) -> None:
        resp = client.get("/health/nope")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Monitor not found: nope"

    def test_history_limit(self, populated, client) -> None:
        resp = client.get("/health/api/history", params={"limit": 2})
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 2
        assert data[0]["finishedAt"] > data[1]["finishedAt"]
        assert set(data[0]) == {
            "monitorId", "status", "errorKind", "message", "startedAt", "finishedAt", "latencyMs", "attempts",
        }

    def test_history_invalid_limit(self, populated, client) -> None:
        assert client.get("/health/api/history", params={"limit": 0}).status_code == 422

    def test_history_unknown_monitor(self, client) -> None:
        assert client.get("/health/nope/history").status_code == 404

    def test_list_monitors(self, populated, client) -> None:
        resp = client.get("/monitors")
        assert resp.status_code == 200
        monitors = {m["id"]: m for m in resp.json()["monitors"]}
        assert list(monitors) == ["api", "db", "disk", "cert", "nginx"]
        assert monitors["api"]["type"] == "http"
        assert monitors["api"]["schedule"] == "* * * * *"
        assert monitors["db"]["status"] == "Fail"
        assert monitors["nginx"]["enabled"] is False
        assert monitors["nginx"]["status"] == "Unknown"

    def test_internal_error(self, app) -> None:
        client = TestClient(app, raise_server_exceptions=False)
        with patch.object(app.state.result_store, "snapshot_all", side_effect=RuntimeError("boom")):
            resp = client.get("/health")
        assert resp.status_code == 500
        assert resp.json() == {"detail": "Internal server error"}


class TestSystemRoutes:
    def test_meminfo(self, client) -> None:
        data = client.get("/system/meminfo").json()
        assert data["totalMem"] > 0
        assert {"freeMem", "availableMem", "swapTotal", "swapFree"} <= set(data)

    def test_cpuinfo(self, client) -> None:
        with patch("monagent.api.system_routes.psutil.cpu_freq", return_value=None):
            data = client.get("/system/cpuinfo").json()
        assert data["logicalCores"] >= 1
        assert data["cpuMhz"] is None

    def test_loadavg(self, client) -> None:
        data = client.get("/system/loadavg").json()
        assert set(data) == {"loadavg1min", "loadavg5min", "loadavg15min"}


class TestLifespan:
    def test_scheduler_started_and_stopped(self) -> None:
        registry = load({
            "monitors": {"db": {"type": "tcp", "schedule": FAR_FUTURE, "target": {"host": "h", "port": 1}}},
        })
        app = create_app(registry)
        with TestClient(app) as client:
            scheduler = app.state.health_scheduler
            assert scheduler.running
            assert scheduler.next_fire("db") is not None
            assert client.get("/health/db").json()["status"] == "Unknown"
        assert not scheduler.running


class TestReload:
    def _write(self, path: Path, monitor_id: str, schedule: str = FAR_FUTURE) -> None:
        path.write_text(
            f"monitors:\n"
            f"  {monitor_id}:\n"
            f"    type: tcp\n"
            f"    schedule: '{schedule}'\n"
            f"    target: {{host: localhost, port: 22}}\n"
        )

    def _app(self, registry: Registry, config_path: Path | None):
        app = create_app(registry, config_path=config_path)
        app.state.health_scheduler = HealthScheduler(app.state.registry, app.state.result_store)
        return app

    def test_reload_swaps_registry(self, registry: Registry, tmp_path: Path) -> None:
        path = tmp_path / "monitors.yaml"
        self._write(path, "ssh")
        app = self._app(registry, path)
        assert reload_monitors(app) is True
        assert app.state.registry.current.ids == ["ssh"]

    def test_invalid_reload_keeps_registry(self, registry: Registry, tmp_path: Path) -> None:
        path = tmp_path / "monitors.yaml"
        self._write(path, "ssh", schedule="not a cron")
        app = self._app(registry, path)
        assert reload_monitors(app) is False
        assert app.state.registry.current is registry

    def test_no_config_path(self, registry: Registry) -> None:
        assert reload_monitors(self._app(registry, None)) is False
