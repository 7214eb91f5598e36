"""Health check scheduler — fires monitors on their cron schedules.

A single asyncio loop keeps a heap of (next fire, monitor id) entries and
dispatches due monitors as tasks, bounded by a global concurrency ceiling.
Results are folded into the ResultStore.

Per monitor, at most one execution is in flight (or waiting for a slot);
any trigger arriving meanwhile is coalesced, not queued behind it.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..monitors.registry import MonitorDefinition, Registry, RegistryHolder
from .engine import CheckResult, ErrorKind, Status, execute
from .store import InvariantViolation, ResultStore

logger = logging.getLogger(__name__)

# Longest single sleep; bounds the effect of wall-clock jumps
_MAX_SLEEP = 60.0

Executor = Callable[[MonitorDefinition, asyncio.Event], Awaitable[CheckResult]]


class DispatchOutcome(str, Enum):
    STARTED = "started"
    QUEUED = "queued"
    COALESCED = "coalesced"
    DROPPED = "dropped"


@dataclass
class SchedulerStats:
    """Counters for diagnostics."""

    started: int = 0
    queued: int = 0
    coalesced: int = 0
    dropped: int = 0
    missed: int = 0
    abandoned: int = 0
    discarded: int = 0
    coalesced_by_monitor: dict[str, int] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthScheduler:
    """Schedules and executes health checks for every enabled monitor.

    Lifecycle:
        scheduler = HealthScheduler(holder, store, max_concurrency=8)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        registry: RegistryHolder,
        store: ResultStore,
        *,
        executor: Executor = execute,
        max_concurrency: int = 8,
        queue_size: int = 32,
        shutdown_grace: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        if queue_size < 0:
            raise ValueError(f"queue_size must be >= 0, got {queue_size}")

        self.registry = registry
        self.store = store
        self.max_concurrency = max_concurrency
        self.queue_size = queue_size
        self.shutdown_grace = shutdown_grace
        self.stats = SchedulerStats()

        self._executor = executor
        self._clock = clock
        self._heap: list[tuple[datetime, str]] = []
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._queue: deque[str] = deque()
        self._cancel = asyncio.Event()  # token handed to every execution
        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._running = False
        self._accepting_results = True

        registry.subscribe(self._on_registry_swap)

    # -- public API ------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> list[str]:
        return sorted(self._in_flight)

    @property
    def queued(self) -> list[str]:
        return list(self._queue)

    def next_fire(self, monitor_id: str) -> datetime | None:
        return next((t for t, mid in self._heap if mid == monitor_id), None)

    async def start(self) -> None:
        """Build the schedule and start the dispatch loop."""
        if self._running:
            return
        self._running = True
        self._accepting_results = True
        self._cancel.clear()
        self._rebuild(self._clock())

        self._loop_task = asyncio.create_task(self._run_loop(), name="health-scheduler")
        logger.info(
            "Health scheduler started: %d monitors scheduled (ceiling=%d, queue=%d)",
            len(self._heap), self.max_concurrency, self.queue_size,
        )

    async def stop(self) -> None:
        """Stop triggering, cancel in-flight checks, abandon stragglers after the grace period."""
        if not self._running:
            return
        self._running = False
        self._cancel.set()
        self._wakeup.set()

        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        self._queue.clear()

        pending = list(self._in_flight.values())
        if pending:
            logger.info("Waiting up to %.1fs for %d running checks", self.shutdown_grace, len(pending))
            _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace)
            if still_running:
                self._accepting_results = False
                abandoned = sorted(
                    mid for mid, task in self._in_flight.items() if task in still_running
                )
                self.stats.abandoned += len(abandoned)
                logger.warning("Abandoning %d checks after grace period: %s", len(abandoned), ", ".join(abandoned))
                for task in still_running:
                    task.cancel()
                await asyncio.wait(still_running, timeout=1.0)
        logger.info("Health scheduler stopped")

    def reload(self, registry: Registry) -> None:
        """Swap in a new registry snapshot and reschedule from now."""
        self.registry.swap(registry)

    def dispatch(self, monitor_id: str) -> DispatchOutcome:
        """Trigger one monitor now, honouring serialization and the ceiling."""
        if monitor_id in self._in_flight or monitor_id in self._queue:
            self.stats.coalesced += 1
            self.stats.coalesced_by_monitor[monitor_id] = self.stats.coalesced_by_monitor.get(monitor_id, 0) + 1
            logger.warning("Trigger coalesced for %s: previous execution still pending", monitor_id)
            return DispatchOutcome.COALESCED

        definition = self.registry.current.get(monitor_id)
        if definition is None:
            raise InvariantViolation(f"Dispatch for unknown monitor {monitor_id!r}")

        if len(self._in_flight) >= self.max_concurrency:
            if len(self._queue) >= self.queue_size:
                self.stats.dropped += 1
                logger.warning(
                    "Trigger dropped for %s: %d running, dispatch queue full (%d)",
                    monitor_id, len(self._in_flight), self.queue_size,
                )
                return DispatchOutcome.DROPPED
            self._queue.append(monitor_id)
            self.stats.queued += 1
            logger.debug("Trigger queued for %s (%d waiting)", monitor_id, len(self._queue))
            return DispatchOutcome.QUEUED

        self._launch(definition)
        return DispatchOutcome.STARTED

    # -- internals -------------------------------------------------------------

    def _on_registry_swap(self, previous: Registry, current: Registry) -> None:
        removed = [mid for mid in previous.ids if mid not in current]
        if removed:
            self.store.discard(removed)
        self._queue = deque(mid for mid in self._queue if _is_enabled(current, mid))
        if self._running:
            self._rebuild(self._clock())
            self._wakeup.set()
        logger.info("Scheduler reloaded: %d monitors, %d removed", len(current), len(removed))

    def _rebuild(self, now: datetime) -> None:
        self._heap = []
        for definition in self.registry.current.enabled():
            self.store.register(definition)
            self._heap.append((definition.schedule.next_after(now), definition.id))
        heapq.heapify(self._heap)

    async def _run_loop(self) -> None:
        while self._running:
            now = self._clock()
            self._run_due(now)

            self._wakeup.clear()
            timeout = self._seconds_until_next(now)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def _seconds_until_next(self, now: datetime) -> float | None:
        if not self._heap:
            return None
        delay = (self._heap[0][0] - now).total_seconds()
        return min(max(delay, 0.0), _MAX_SLEEP)

    def _run_due(self, now: datetime) -> list[tuple[str, DispatchOutcome]]:
        """Pop and dispatch every entry due at or before ``now``."""
        fired: list[tuple[str, DispatchOutcome]] = []
        while self._heap and self._heap[0][0] <= now:
            fire_at, monitor_id = heapq.heappop(self._heap)
            definition = self.registry.current.get(monitor_id)
            if definition is None or not definition.enabled:
                continue

            fired.append((monitor_id, self.dispatch(monitor_id)))

            # Anchor on the scheduled time, not on now, so latency never drifts the cadence
            next_fire = definition.schedule.next_after(fire_at)
            if next_fire <= now:
                missed = 0
                while next_fire <= now:
                    missed += 1
                    next_fire = definition.schedule.next_after(next_fire)
                self.stats.missed += missed
                logger.warning("Monitor %s missed %d triggers (scheduler fell behind)", monitor_id, missed)
            heapq.heappush(self._heap, (next_fire, monitor_id))
        return fired

    def _launch(self, definition: MonitorDefinition) -> None:
        if definition.id in self._in_flight:
            raise InvariantViolation(f"Overlapping execution for monitor {definition.id!r}")
        self.store.register(definition)
        task = asyncio.create_task(self._execute(definition), name=f"check-{definition.id}")
        self._in_flight[definition.id] = task
        self.stats.started += 1

    async def _execute(self, definition: MonitorDefinition) -> None:
        try:
            try:
                result = await self._executor(definition, self._cancel)
            except Exception as e:
                logger.exception("Executor crashed for monitor %s", definition.id)
                now = self._clock()
                result = CheckResult(
                    monitor_id=definition.id, status=Status.FAIL, started_at=now, finished_at=now,
                    error_kind=ErrorKind.INTERNAL, message=f"Error: {type(e).__name__}: {e}",
                )
        finally:
            self._in_flight.pop(definition.id, None)
            self._drain_queue()

        self._record(result)

    def _record(self, result: CheckResult) -> None:
        if not self._accepting_results:
            self.stats.discarded += 1
            logger.debug("Discarding late result for abandoned check %s", result.monitor_id)
            return
        if result.monitor_id not in self.registry.current:
            self.stats.discarded += 1
            logger.debug("Discarding result for removed monitor %s", result.monitor_id)
            return
        self.store.apply(result)
        logger.debug(
            "Check %s: %s (%.0fms, %d attempts)",
            result.monitor_id, result.status.value, result.latency_ms, result.attempts,
        )

    def _drain_queue(self) -> None:
        while not self._cancel.is_set() and self._queue and len(self._in_flight) < self.max_concurrency:
            monitor_id = self._queue.popleft()
            definition = self.registry.current.get(monitor_id)
            if definition is not None and definition.enabled:
                self._launch(definition)


def _is_enabled(registry: Registry, monitor_id: str) -> bool:
    definition = registry.get(monitor_id)
    return definition is not None and definition.enabled
