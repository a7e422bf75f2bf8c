"""Per-lane request pacing.

Each proxy URL (or the single direct lane) gets its own schedule: every
request reserves the next slot ``delay + jitter`` after the previous one.
Lanes are independent, so a slow proxy never delays another.

``LanePacer`` keeps the schedule in memory. ``SharedLanePacer`` reserves
slots in the progress store so several domains scanning through the same
proxy share one schedule.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from panelscan.store.progress import CrawlProgressStore

logger = logging.getLogger(__name__)

DIRECT_LANE = "direct"


@dataclass
class Lane:
    """Next free slot for one lane (``time.monotonic()``)."""

    name: str
    next_at: float = 0.0
    reservations: int = 0


class LanePacer:
    """In-memory per-lane pacing.

    Args:
        delay_seconds: Base spacing between requests on one lane.
        jitter_seconds: Uniform random extra added per request.
    """

    def __init__(
        self,
        delay_seconds: float,
        jitter_seconds: float = 0.0,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._delay = max(0.0, delay_seconds)
        self._jitter = max(0.0, jitter_seconds)
        self._rng = rng
        self._lanes: dict[str, Lane] = {}
        self._lock = asyncio.Lock()

    def interval(self) -> float:
        return self._delay + self._rng() * self._jitter

    def _get_or_create(self, name: str) -> Lane:
        if name not in self._lanes:
            self._lanes[name] = Lane(name=name)
        return self._lanes[name]

    def reserve(self, name: str, now: float | None = None) -> float:
        """Reserve the lane's next slot and return how long to wait for it."""
        now = time.monotonic() if now is None else now
        lane = self._get_or_create(name)
        wait = max(0.0, lane.next_at - now)
        lane.next_at = max(lane.next_at, now) + self.interval()
        lane.reservations += 1
        return wait

    async def wait_turn(self, name: str) -> None:
        async with self._lock:
            wait = self.reserve(name)
        # Sleep outside the lock so other lanes can proceed
        if wait > 0:
            await asyncio.sleep(wait)

    def get_stats(self) -> dict:
        now = time.monotonic()
        return {
            name: {"wait_seconds": max(0.0, lane.next_at - now), "reservations": lane.reservations}
            for name, lane in self._lanes.items()
        }


class SharedLanePacer(LanePacer):
    """Lane pacing persisted in the progress store (cross-domain)."""

    def __init__(
        self,
        store: CrawlProgressStore,
        delay_seconds: float,
        jitter_seconds: float = 0.0,
        key_prefix: str = "proxy",
        rng: Callable[[], float] = random.random,
    ) -> None:
        super().__init__(delay_seconds, jitter_seconds, rng=rng)
        self._store = store
        self._key_prefix = key_prefix

    async def wait_turn(self, name: str) -> None:
        wait = await self._store.reserve_rate_limit(f"{self._key_prefix}:{name}", self.interval())
        if wait > 0:
            await asyncio.sleep(wait)
