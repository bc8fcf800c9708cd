from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from metrics import VUS, VUS_MAX, MetricsCollector
from scenarios import ScenarioProfile


LOG = logging.getLogger(__name__)


@dataclass
class VirtualUser:
    id: int
    iteration_count: int = 0
    stop_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()


WorkerFn = Callable[[VirtualUser, Callable[[], bool]], Awaitable[None]]


@dataclass
class ExecutorResult:
    scenario: str
    iterations: int
    units_spawned: int
    max_active: int
    elapsed_s: float


async def _wait_for_workers(tasks: list[asyncio.Task[None]], timeout_s: Optional[float]) -> None:
    if not tasks:
        return
    done, pending = await asyncio.wait(
        tasks, timeout=None if timeout_s is None else max(0.0, timeout_s)
    )
    if pending:
        LOG.warning("Cancelling %d virtual users still running after graceful stop", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            LOG.error("Virtual user task failed", exc_info=task.exception())


class Executor:
    """Keeps the number of active virtual users on a profile's concurrency curve.

    Every tick the curve's value at the elapsed time is compared with the active
    units: missing units are spawned, surplus units (most recent first) are told
    to stop after their current iteration. Once the total duration has elapsed
    every unit is told to stop and the executor waits for in-flight iterations.
    """

    def __init__(
        self,
        profile: ScenarioProfile,
        worker: WorkerFn,
        collector: MetricsCollector,
        *,
        name: str = "default",
        tick_s: float = 0.1,
        graceful_stop_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tick_s <= 0:
            raise ValueError(f"tick_s must be > 0, got {tick_s}")
        self.profile = profile
        self.worker = worker
        self.collector = collector
        self.name = name
        self.tick_s = tick_s
        self.graceful_stop_s = graceful_stop_s
        self._clock = clock
        self._started_at: Optional[float] = None
        self._units: list[tuple[VirtualUser, asyncio.Task[None]]] = []
        self._next_id = 1
        self._max_active = 0

    def elapsed_s(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def _active(self) -> list[VirtualUser]:
        return [vu for vu, task in self._units if not vu.stopping and not task.done()]

    @property
    def active_count(self) -> int:
        return len(self._active())

    @property
    def units(self) -> list[VirtualUser]:
        return [vu for vu, _ in self._units]

    def _keep_running_fn(self, vu: VirtualUser) -> Callable[[], bool]:
        total_s = self.profile.total_duration_s

        def keep_running() -> bool:
            return not vu.stopping and self.elapsed_s() < total_s

        return keep_running

    def _spawn(self) -> None:
        vu = VirtualUser(id=self._next_id)
        self._next_id += 1
        task = asyncio.create_task(
            self.worker(vu, self._keep_running_fn(vu)), name=f"{self.name}-vu-{vu.id}"
        )
        self._units.append((vu, task))

    def reconcile(self, elapsed_s: float) -> int:
        """Bring the active unit count to the curve's value at ``elapsed_s``."""
        if self._started_at is None:
            self._started_at = self._clock() - elapsed_s
        target = self.profile.target_at(elapsed_s)
        active = self._active()
        for _ in range(target - len(active)):
            self._spawn()
        for vu in reversed(active[target:]):
            vu.request_stop()
        count = self.active_count
        self._max_active = max(self._max_active, count)
        self.collector.gauge(VUS).set(count)
        self.collector.gauge(VUS_MAX).set(self._max_active)
        return count

    async def run(self) -> ExecutorResult:
        total_s = self.profile.total_duration_s
        self._started_at = self._clock()
        LOG.info(
            "Scenario %s started: %.1fs, up to %d virtual users",
            self.name,
            total_s,
            self.profile.max_virtual_users,
        )
        while True:
            elapsed = self.elapsed_s()
            if elapsed >= total_s:
                break
            self.reconcile(elapsed)
            await asyncio.sleep(min(self.tick_s, total_s - elapsed))

        for vu, _ in self._units:
            vu.request_stop()
        self.collector.gauge(VUS).set(0)
        await _wait_for_workers([task for _, task in self._units], self.graceful_stop_s)

        result = ExecutorResult(
            scenario=self.name,
            iterations=sum(vu.iteration_count for vu, _ in self._units),
            units_spawned=len(self._units),
            max_active=self._max_active,
            elapsed_s=self.elapsed_s(),
        )
        LOG.info(
            "Scenario %s finished: %d iterations from %d virtual users in %.1fs",
            self.name,
            result.iterations,
            result.units_spawned,
            result.elapsed_s,
        )
        return result
