"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from monagent.health.engine import CheckResult, ErrorKind, Status
from monagent.monitors.cron import CronSchedule
from monagent.monitors.registry import (
    MonitorDefinition,
    MonitorType,
    Registry,
    TcpTarget,
    load,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)

# Never fires during a test run
FAR_FUTURE = "0 0 1 1 *"


@pytest.fixture
def sample_config() -> dict[str, Any]:
    """One monitor of each type, keyed by id."""
    return {
        "monitors": {
            "api": {
                "type": "http",
                "schedule": "* * * * *",
                "timeoutMs": 5000,
                "failureThreshold": 2,
                "target": {
                    "url": "https://api.example.com/health",
                    "headers": {"Accept": "application/json"},
                    "expectedStatus": 200,
                    "bodyPattern": "ok",
                },
            },
            "db": {
                "type": "tcp",
                "schedule": "*/30 * * * * *",
                "timeoutMs": 500,
                "target": {"host": "127.0.0.1", "port": 5432},
            },
            "disk": {
                "type": "command",
                "schedule": "*/5 * * * *",
                "target": {"command": "df -h /", "acceptedExitCodes": [0, 1]},
            },
            "cert": {
                "type": "certificate",
                "schedule": "0 */6 * * *",
                "target": {"host": "example.com", "warnDays": 7},
            },
            "nginx": {
                "type": "process",
                "schedule": "* * * * *",
                "enabled": False,
                "target": {"namePattern": "^nginx"},
            },
        }
    }


@pytest.fixture
def registry(sample_config: dict[str, Any]) -> Registry:
    return load(sample_config)


@pytest.fixture
def make_definition() -> Callable[..., MonitorDefinition]:
    """Build a MonitorDefinition directly, defaulting to a TCP target."""

    def _make(
        monitor_id: str = "m1",
        monitor_type: MonitorType = MonitorType.TCP,
        target: Any = None,
        schedule: str = FAR_FUTURE,
        **kwargs: Any,
    ) -> MonitorDefinition:
        return MonitorDefinition(
            id=monitor_id,
            type=monitor_type,
            target=target or TcpTarget(host="127.0.0.1", port=1),
            schedule=CronSchedule.parse(schedule),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_result() -> Callable[..., CheckResult]:
    """Build a CheckResult finishing ``offset`` seconds after T0."""

    def _make(
        monitor_id: str,
        status: Status,
        offset: float = 0,
        error_kind: ErrorKind | None = None,
        message: str = "",
    ) -> CheckResult:
        finished = T0 + timedelta(seconds=offset)
        return CheckResult(
            monitor_id=monitor_id,
            status=status,
            started_at=finished - timedelta(milliseconds=20),
            finished_at=finished,
            error_kind=error_kind,
            message=message,
        )

    return _make
