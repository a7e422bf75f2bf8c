"""Adaptive concurrency and backoff.

:class:`ConcurrencyController` is the single process-wide source of truth
for how many fetches may be in flight and whether new work must be held
back. It performs no scheduling itself.

:class:`AdaptiveBackoffPolicy` is the caller-side policy the batch runner
drives: successes grow concurrency toward the usable proxy count, transient
errors shrink it, and rate limits raise an exponential backoff window.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import asdict, dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConcurrencySnapshot:
    """Read-only copy of the controller state."""

    current: int | None
    max: int | None
    backoff_level: int
    backoff_until: float
    updated_at: float | None

    def to_dict(self) -> dict:
        return {
            "current": self.current,
            "max": self.max,
            "backoff": {"level": self.backoff_level, "until": self.backoff_until or None},
            "updatedAt": self.updated_at,
        }


class ConcurrencyController:
    """Holds {current, max, backoff_level, backoff_until}.

    ``set_status`` overwrites all four fields at once; readers only ever
    see complete snapshots.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._snapshot = ConcurrencySnapshot(
            current=None, max=None, backoff_level=0, backoff_until=0.0, updated_at=None
        )

    def set_status(
        self,
        *,
        current: int | None,
        max: int | None,
        backoff_level: int,
        backoff_until: float,
    ) -> None:
        self._snapshot = ConcurrencySnapshot(
            current=current,
            max=max,
            backoff_level=backoff_level,
            backoff_until=backoff_until,
            updated_at=self._clock(),
        )

    def snapshot(self) -> ConcurrencySnapshot:
        return self._snapshot

    def should_hold(self, now: float | None = None) -> bool:
        """True while inside the backoff window."""
        now = self._clock() if now is None else now
        return now < self._snapshot.backoff_until

    def hold_seconds(self, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        return max(0.0, self._snapshot.backoff_until - now)

    async def wait_if_backoff(self, stop_event: asyncio.Event | None = None) -> None:
        """Sleep until the backoff window closes (or ``stop_event`` is set)."""
        delay = self.hold_seconds()
        if delay <= 0:
            return
        if stop_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def get_stats(self) -> dict:
        return asdict(self._snapshot)


class AdaptiveBackoffPolicy:
    """Adjusts a :class:`ConcurrencyController` from fetch outcomes.

    Args:
        controller: State object to write.
        get_max: Returns the current ceiling (usable proxy count); at least
            ``min_concurrency`` is always allowed.
        min_concurrency: Floor for ``current``.
        adjust_interval_seconds: Minimum spacing between +1/-1 adjustments.
        max_level: Cap for the backoff level.
        max_backoff_seconds: Cap for a single backoff window.
        jitter_seconds: Random extra added to each backoff window.
    """

    def __init__(
        self,
        controller: ConcurrencyController,
        *,
        get_max: Callable[[], int] = lambda: 1,
        min_concurrency: int = 1,
        adjust_interval_seconds: float = 1.5,
        max_level: int = 10,
        max_backoff_seconds: float = 600.0,
        jitter_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._controller = controller
        self._get_max = get_max
        self.min = max(1, min_concurrency)
        self._adjust_interval = adjust_interval_seconds
        self._max_level = max_level
        self._max_backoff = max_backoff_seconds
        self._jitter = jitter_seconds
        self._clock = clock
        self._rng = rng

        snap = controller.snapshot()
        self.current = max(self.min, snap.current or self.min)
        self.backoff_level = snap.backoff_level
        self.backoff_until = snap.backoff_until
        self._last_adjust_at = float("-inf")
        self.clamp()

    @property
    def max(self) -> int:
        return max(self.min, int(self._get_max() or 1))

    def _publish(self) -> None:
        self._controller.set_status(
            current=self.current,
            max=self.max,
            backoff_level=self.backoff_level,
            backoff_until=self.backoff_until,
        )

    def clamp(self) -> int:
        """Keep ``current`` within [min, max] after the ceiling moved."""
        self.current = max(self.min, min(self.current, self.max))
        self._publish()
        return self.current

    def on_success(self) -> None:
        now = self._clock()
        ceiling = self.max
        if self.backoff_level > 0 and now >= self.backoff_until:
            self.backoff_level -= 1
        if now - self._last_adjust_at >= self._adjust_interval and self.current < ceiling:
            self.current += 1
            self._last_adjust_at = now
            logger.debug("Concurrency increased to %d/%d", self.current, ceiling, extra={"concurrency": self.current})
        self.clamp()

    def on_transient_error(self) -> None:
        now = self._clock()
        self.clamp()
        if now - self._last_adjust_at >= self._adjust_interval and self.current > self.min:
            self.current -= 1
            self._last_adjust_at = now
            logger.debug("Concurrency decreased to %d", self.current, extra={"concurrency": self.current})
        self._publish()

    def on_rate_limited(self, base_seconds: float = 30.0) -> float:
        """Raise the backoff level and return the new ``backoff_until``.

        Window = ``min(max_backoff, max(1s, base) * 2**(level-1)) + jitter``;
        ``current`` drops to the floor.
        """
        now = self._clock()
        self.backoff_level = min(self._max_level, self.backoff_level + 1)
        window = min(self._max_backoff, max(1.0, base_seconds) * 2 ** (self.backoff_level - 1))
        until = now + window + self._rng() * self._jitter
        self.backoff_until = max(until, self.backoff_until)
        self.current = self.min
        self._last_adjust_at = now
        logger.warning(
            "Rate limited: backing off %.1fs at level %d",
            window,
            self.backoff_level,
            extra={"backoff_level": self.backoff_level, "concurrency": self.current},
        )
        self._publish()
        return self.backoff_until
