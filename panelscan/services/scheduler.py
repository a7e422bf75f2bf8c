"""Round-robin fairness across concurrently scanned domains.

Each pass visits the domains in a fixed order and dispatches
``min(step, remaining)`` UIDs to every domain that still has budget, so
all active domains make progress every pass. With fewer than two active
domains the single domain gets its whole budget in one dispatch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, Mapping, MutableMapping, Sequence

from panelscan.services.collaborators import PresetGenerator, SampleSink
from panelscan.services.scanner import ScanResult

logger = logging.getLogger(__name__)

MIN_STEP = 50
MAX_STEP = 1000


def default_step(concurrency: int, configured: int | None = None) -> int:
    """Configured step, or ``concurrency * 10`` clamped to [50, 1000]."""
    if configured:
        return configured
    return max(MIN_STEP, min(MAX_STEP, concurrency * 10))


def _iter_steps(
    remaining: MutableMapping[str, int],
    step: int,
    order: Sequence[str],
) -> Iterator[tuple[str, int]]:
    active = [d for d in order if remaining.get(d, 0) > 0]
    if len(active) < 2:
        for domain in active:
            amount = remaining[domain]
            remaining[domain] = 0
            yield domain, amount
        return

    while any(remaining.get(d, 0) > 0 for d in order):
        for domain in order:
            left = remaining.get(domain, 0)
            if left <= 0:
                continue
            amount = min(step, left)
            remaining[domain] = left - amount
            yield domain, amount


def plan_round_robin(
    budgets: Mapping[str, int],
    step: int,
    order: Sequence[str] | None = None,
) -> list[tuple[str, int]]:
    """Return the full dispatch sequence as ``(domain, amount)`` pairs."""
    if step <= 0:
        raise ValueError("step must be positive")
    order = list(order) if order is not None else list(budgets)
    remaining = {d: max(0, int(budgets.get(d, 0))) for d in order}
    return list(_iter_steps(remaining, step, order))


class RoundRobinScheduler:
    """Drives ``dispatch(domain, amount)`` in round-robin order.

    A domain whose tick reports the daily gate as done or its range as
    exhausted drops out of the remaining passes. After every step, a domain
    that has samples but no usable preset gets an interim forced preset.
    """

    def __init__(
        self,
        dispatch: Callable[[str, int], Awaitable[ScanResult]],
        *,
        preset_generator: PresetGenerator | None = None,
        sample_sink: SampleSink | None = None,
        set_shared_pacing: Callable[[bool], None] | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._dispatch = dispatch
        self._presets = preset_generator
        self._sink = sample_sink
        self._set_shared_pacing = set_shared_pacing
        self._stop_event = stop_event or asyncio.Event()

    async def run(
        self,
        budgets: Mapping[str, int],
        step: int,
        order: Sequence[str] | None = None,
    ) -> dict[str, int]:
        """Run one cycle; returns UIDs dispatched per domain."""
        if step <= 0:
            raise ValueError("step must be positive")
        order = list(order) if order is not None else list(budgets)
        remaining = {d: max(0, int(budgets.get(d, 0))) for d in order}
        dispatched = {d: 0 for d in order}
        multi = sum(1 for v in remaining.values() if v > 0) >= 2
        if self._set_shared_pacing is not None:
            self._set_shared_pacing(multi)

        logger.info(
            "Scheduling cycle over %d domains (step=%d, round_robin=%s)",
            len(order),
            step,
            multi,
            extra={"batch_size": sum(remaining.values())},
        )
        for domain, amount in _iter_steps(remaining, step, order):
            if self._stop_event.is_set():
                logger.info("Stop requested, ending cycle")
                break
            result = await self._dispatch(domain, amount)
            dispatched[domain] += amount
            if result.gated or result.exhausted:
                remaining[domain] = 0
            await self._maybe_interim_preset(domain)
        return dispatched

    async def _maybe_interim_preset(self, domain: str) -> None:
        if self._presets is None or self._sink is None:
            return
        if self._presets.has_usable_preset(domain) or not self._sink.has_samples(domain):
            return
        logger.info("Generating interim preset", extra={"domain": domain})
        await self._presets.generate(domain, force=True)
