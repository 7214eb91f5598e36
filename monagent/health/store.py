"""In-memory result store — reconciles CheckResults into per-monitor state.

``apply()`` is the only path that mutates state. Each monitor has its own
lock, so a reader snapshotting one monitor never waits on a writer updating
another. Nothing is persisted; state lives until the process exits.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from ..monitors.registry import MonitorDefinition
from .engine import CheckResult, Status

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50

# Worst first
_SEVERITY = {Status.FAIL: 3, Status.WARN: 2, Status.UNKNOWN: 1, Status.OK: 0}


class InvariantViolation(RuntimeError):
    """A serialization or bookkeeping guarantee was broken. Programming error."""


@dataclass(frozen=True)
class MonitorState:
    """Read-only snapshot of one monitor's published state."""

    monitor_id: str
    status: Status = Status.UNKNOWN
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_checked: datetime | None = None
    message: str = ""
    history: tuple[CheckResult, ...] = ()


@dataclass
class _Entry:
    monitor_id: str
    failure_threshold: int
    recovery_threshold: int
    history: deque[CheckResult]
    status: Status = Status.UNKNOWN
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_checked: datetime | None = None
    message: str = ""
    lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self) -> MonitorState:
        with self.lock:
            return MonitorState(
                monitor_id=self.monitor_id,
                status=self.status,
                consecutive_failures=self.consecutive_failures,
                consecutive_successes=self.consecutive_successes,
                last_success=self.last_success,
                last_failure=self.last_failure,
                last_checked=self.last_checked,
                message=self.message,
                history=tuple(self.history),
            )


class ResultStore:
    """Owns every MonitorState; created at startup and passed by handle."""

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        if history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {history_size}")
        self.history_size = history_size
        self._entries: dict[str, _Entry] = {}
        # Guards the id -> entry map only, never an entry's contents
        self._index_lock = threading.Lock()

    def register(self, definition: MonitorDefinition) -> None:
        """Create Unknown state for a monitor (or refresh its thresholds)."""
        with self._index_lock:
            entry = self._entries.get(definition.id)
            if entry is None:
                self._entries[definition.id] = _Entry(
                    monitor_id=definition.id,
                    failure_threshold=definition.failure_threshold,
                    recovery_threshold=definition.recovery_threshold,
                    history=deque(maxlen=self.history_size),
                )
                return
        with entry.lock:
            entry.failure_threshold = definition.failure_threshold
            entry.recovery_threshold = definition.recovery_threshold

    def discard(self, monitor_ids: Iterable[str]) -> None:
        """Forget monitors removed from the registry."""
        with self._index_lock:
            for monitor_id in monitor_ids:
                self._entries.pop(monitor_id, None)

    def __contains__(self, monitor_id: object) -> bool:
        return monitor_id in self._entries

    def apply(self, result: CheckResult) -> MonitorState:
        """Fold one result into its monitor's state and return the new snapshot."""
        entry = self._entries.get(result.monitor_id)
        if entry is None:
            raise InvariantViolation(f"No state registered for monitor {result.monitor_id!r}")

        with entry.lock:
            previous = entry.status
            entry.history.append(result)

            if result.status is not Status.CANCELLED:
                entry.last_checked = result.finished_at
                entry.message = result.message
                _reconcile(entry, result)

            current = entry.status
            failures = entry.consecutive_failures

        if current is not previous:
            logger.info(
                "Monitor %s: %s -> %s (failures=%d) %s",
                result.monitor_id, previous.value, current.value, failures, result.message,
            )
        return entry.snapshot()

    def snapshot(self, monitor_id: str) -> MonitorState | None:
        entry = self._entries.get(monitor_id)
        return entry.snapshot() if entry is not None else None

    def snapshot_all(self) -> dict[str, MonitorState]:
        with self._index_lock:
            entries = list(self._entries.values())
        return {e.monitor_id: e.snapshot() for e in entries}

    def aggregate(self) -> Status:
        return aggregate_status(s.status for s in self.snapshot_all().values())


def _reconcile(entry: _Entry, result: CheckResult) -> None:
    """Counter and hysteresis rules. Caller holds entry.lock."""
    if result.status is Status.OK:
        entry.consecutive_successes += 1
        entry.consecutive_failures = 0
        entry.last_success = result.finished_at
        # Recovery gating applies only when leaving Fail
        if entry.status is not Status.FAIL or entry.consecutive_successes >= entry.recovery_threshold:
            entry.status = Status.OK

    elif result.status is Status.FAIL:
        entry.consecutive_failures += 1
        entry.consecutive_successes = 0
        entry.last_failure = result.finished_at
        if entry.consecutive_failures >= entry.failure_threshold:
            entry.status = Status.FAIL

    elif result.status is Status.WARN:
        entry.consecutive_failures = 0
        entry.consecutive_successes = 0
        entry.status = Status.WARN

    else:
        raise InvariantViolation(f"Result for {result.monitor_id!r} has status {result.status.value}")


def aggregate_status(statuses: Iterable[Status]) -> Status:
    """Worst status wins: Fail > Warn > Unknown > Ok. No monitors -> Unknown."""
    worst: Status | None = None
    for status in statuses:
        if worst is None or _SEVERITY.get(status, 1) > _SEVERITY.get(worst, 1):
            worst = status
    return worst or Status.UNKNOWN
