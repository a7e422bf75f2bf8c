"""Bounded fetch worker pool.

Each ``run`` call starts asyncio worker tasks that pull items from a shared
index. Admission is process-wide: a worker only takes an item while the
number of in-flight items across every concurrent ``run`` call is below the
controller's ``current`` concurrency and the backoff window is closed. Several
domains scanning at once therefore share one in-flight budget.

``run`` returns only after every admitted item has finished. Items never
admitted (because the batch was stopped) are reported back so the caller
can avoid advancing a cursor past them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, TypeVar

from panelscan.resilience.adaptive import ConcurrencyController

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class WorkerState:
    """Per-worker scratch state (e.g. preferred proxy index)."""

    worker_id: int
    proxy_index: int = 0


@dataclass
class PoolRun(Generic[T]):
    """Outcome of one ``FetchWorkerPool.run`` call."""

    processed: int = 0
    unprocessed: list[T] = field(default_factory=list)
    stopped: bool = False
    total_duration_ms: float = 0.0

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.processed if self.processed else 0.0


class FetchWorkerPool:
    """Admission-controlled worker pool shared by every batch in the process.

    Parameters
    ----------
    controller:
        Source of ``current`` concurrency and the backoff window.
    max_workers:
        Hard cap on in-flight items regardless of ``current``.
    poll_interval_seconds:
        How often a waiting worker re-checks admission when no slot is
        released (``current`` may have grown in the meantime).
    stop_event:
        Process-wide stop signal; set means admit nothing further.
    """

    def __init__(
        self,
        controller: ConcurrencyController,
        *,
        max_workers: int = 50,
        poll_interval_seconds: float = 0.2,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._controller = controller
        self._max_workers = max_workers
        self._poll_interval = poll_interval_seconds
        self._stop_event = stop_event or asyncio.Event()
        self._active_workers = 0
        self._completed_count = 0
        self._released = asyncio.Event()

    def _current_limit(self) -> int:
        current = self._controller.snapshot().current
        return max(1, min(self._max_workers, current or 1))

    def _release_slot(self) -> None:
        self._active_workers -= 1
        released, self._released = self._released, asyncio.Event()
        released.set()

    async def _wait_for_slot(self) -> None:
        released = self._released
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(released.wait(), timeout=self._poll_interval)

    async def run(
        self,
        items: list[T],
        handler: Callable[[T, WorkerState], Awaitable[None]],
        should_stop: Callable[[], bool] = lambda: False,
    ) -> PoolRun[T]:
        """Process ``items`` with ``handler``; exceptions from a handler abort the run."""
        result: PoolRun[T] = PoolRun()
        next_index = 0

        def stopping() -> bool:
            return self._stop_event.is_set() or should_stop()

        async def worker(worker_id: int) -> None:
            nonlocal next_index
            state = WorkerState(worker_id=worker_id, proxy_index=worker_id)
            while True:
                if stopping():
                    result.stopped = True
                    return
                if next_index >= len(items):
                    return
                if self._controller.should_hold():
                    await self._controller.wait_if_backoff(self._stop_event)
                    continue
                if self._active_workers >= self._current_limit():
                    await self._wait_for_slot()
                    continue

                item = items[next_index]
                next_index += 1
                self._active_workers += 1
                start = time.monotonic()
                try:
                    await handler(item, state)
                finally:
                    self._release_slot()
                    result.processed += 1
                    self._completed_count += 1
                    result.total_duration_ms += (time.monotonic() - start) * 1000

        worker_count = min(self._max_workers, len(items))
        tasks = [asyncio.create_task(worker(i), name=f"fetch-worker-{i}") for i in range(worker_count)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        result.unprocessed = list(items[next_index:])
        if result.unprocessed:
            logger.info("Batch stopped early with %d items not started", len(result.unprocessed))
        return result

    def get_stats(self) -> dict:
        return {
            "active_workers": self._active_workers,
            "completed_count": self._completed_count,
            "current_limit": self._current_limit(),
        }
