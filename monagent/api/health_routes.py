"""Status API — read-only views over the ResultStore.

Endpoints:
  GET  /health                      — aggregate status (worst across monitors)
  GET  /health/{id}                 — monitor state + recent history
  GET  /health/{id}/history         — recent CheckResults, newest first
  GET  /monitors                    — every configured monitor with its status
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from monagent.health.engine import Status
from monagent.health.store import MonitorState, ResultStore, aggregate_status

logger = logging.getLogger(__name__)

health_router = APIRouter()


def _store(request: Request) -> ResultStore:
    return request.app.state.result_store


def _state_or_404(monitor_id: str, request: Request) -> MonitorState:
    state = _store(request).snapshot(monitor_id)
    if state is not None:
        return state
    # Configured but never scheduled (disabled): report it as never checked
    if monitor_id in request.app.state.registry.current:
        return MonitorState(monitor_id)
    raise HTTPException(status_code=404, detail=f"Monitor not found: {monitor_id}")


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _history(state: MonitorState, limit: int | None = None) -> list[dict[str, Any]]:
    newest_first = list(reversed(state.history))
    if limit is not None:
        newest_first = newest_first[:limit]
    return [r.to_dict() for r in newest_first]


def _state_to_dict(state: MonitorState) -> dict[str, Any]:
    return {
        "id": state.monitor_id,
        "status": state.status.value,
        "lastChecked": _iso(state.last_checked),
        "consecutiveFailures": state.consecutive_failures,
        "consecutiveSuccesses": state.consecutive_successes,
        "lastSuccess": _iso(state.last_success),
        "lastFailure": _iso(state.last_failure),
        "message": state.message,
        "history": _history(state),
    }


# ── Health endpoints ─────────────────────────────────────────────────────────


@health_router.get("/health")
def aggregate_health(request: Request) -> dict[str, Any]:
    """Worst published status across all monitors."""
    states = _store(request).snapshot_all()
    overall = aggregate_status(s.status for s in states.values())
    return {"status": overall.value, "monitors": len(states)}


@health_router.get("/health/{monitor_id}")
def monitor_detail(monitor_id: str, request: Request) -> dict[str, Any]:
    """Current state of one monitor plus its recent history."""
    state = _state_or_404(monitor_id, request)
    return _state_to_dict(state)


@health_router.get("/health/{monitor_id}/history")
def monitor_history(
    monitor_id: str, request: Request, limit: int | None = Query(default=None, ge=1),
) -> list[dict[str, Any]]:
    """Recent CheckResults for one monitor, newest first."""
    state = _state_or_404(monitor_id, request)
    return _history(state, limit)


@health_router.get("/monitors")
def list_monitors(request: Request) -> dict[str, Any]:
    """Every monitor in the current registry snapshot with its published status."""
    registry = request.app.state.registry.current
    states = _store(request).snapshot_all()

    monitors = []
    for m in registry:
        state = states.get(m.id)
        monitors.append({
            "id": m.id,
            "type": m.type.value,
            "schedule": str(m.schedule),
            "enabled": m.enabled,
            "description": m.description,
            "status": state.status.value if state else Status.UNKNOWN.value,
            "lastChecked": _iso(state.last_checked) if state else None,
        })
    return {"monitors": monitors}
