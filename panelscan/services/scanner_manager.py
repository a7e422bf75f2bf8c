"""Scanner lifecycle: continuous per-domain loops and one-shot cycles.

Continuous mode keeps one background task per domain that runs scan ticks
back to back. Cycle mode runs a single budgeted pass over all domains
(round-robin when two or more are active), then regenerates presets and
refreshes the daily gate from the new summaries.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Mapping

from panelscan.errors import NoUsableProxiesError, PanelScanError, StoreIOError
from panelscan.gate.daily_gate import DailyGate
from panelscan.runtime.status import RuntimeStatus
from panelscan.services.collaborators import PresetGenerator, SampleSink
from panelscan.services.scanner import DomainScanner, ScanResult
from panelscan.services.scheduler import RoundRobinScheduler, default_step

logger = logging.getLogger(__name__)


class ScannerManager:
    """Owns the per-domain scan tasks.

    Parameters
    ----------
    scanner:
        Runs individual ticks.
    runtime_status:
        Receives running / stopped / last-error updates.
    sample_sink:
        Checked after each round-robin step for interim presets.
    set_shared_pacing:
        Toggles store-backed pacing for multi-domain cycles.
    preset_generator:
        Rebuilds presets after a cycle; its summary feeds the daily gate.
    gate:
        Daily completion gate refreshed after preset generation.
    tick_interval_seconds:
        Pause between ticks of one domain.
    idle_seconds:
        Pause after a tick that was gated or found its range exhausted.
    """

    def __init__(
        self,
        scanner: DomainScanner,
        runtime_status: RuntimeStatus,
        *,
        sample_sink: SampleSink | None = None,
        set_shared_pacing: Callable[[bool], None] | None = None,
        preset_generator: PresetGenerator | None = None,
        gate: DailyGate | None = None,
        tick_interval_seconds: float = 5.0,
        idle_seconds: float = 300.0,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._scanner = scanner
        self._status = runtime_status
        self._sink = sample_sink
        self._set_shared_pacing = set_shared_pacing
        self._presets = preset_generator
        self._gate = gate
        self._tick_interval = tick_interval_seconds
        self._idle_seconds = idle_seconds
        self._stop_event = stop_event or asyncio.Event()
        self._tasks: dict[str, asyncio.Task] = {}
        self._domain_stops: dict[str, asyncio.Event] = {}
        self._ticks: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Continuous mode
    # ------------------------------------------------------------------

    def is_running(self, domain: str) -> bool:
        task = self._tasks.get(domain)
        return task is not None and not task.done()

    def start(self, domain: str) -> bool:
        """Start the background loop for ``domain``; False if already running."""
        if self.is_running(domain):
            logger.warning("Scanner already running, skipping", extra={"domain": domain})
            return False
        self._scanner.config_for(domain)
        self._domain_stops[domain] = asyncio.Event()
        self._tasks[domain] = asyncio.create_task(self._loop(domain), name=f"scan-{domain}")
        return True

    async def stop(self, domain: str, timeout: float = 30.0) -> None:
        task = self._tasks.get(domain)
        if task is None:
            return
        self._domain_stops[domain].set()
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Scanner did not stop in %.0fs, cancelling", timeout, extra={"domain": domain})
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.pop(domain, None)

    async def stop_all(self, timeout: float = 30.0) -> None:
        await asyncio.gather(*(self.stop(d, timeout) for d in list(self._tasks)))

    def _stopping(self, domain: str) -> bool:
        return self._stop_event.is_set() or self._domain_stops[domain].is_set()

    async def _pause(self, domain: str, seconds: float) -> None:
        stop = self._domain_stops[domain]
        waiters = [asyncio.ensure_future(stop.wait()), asyncio.ensure_future(self._stop_event.wait())]
        try:
            await asyncio.wait(waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _loop(self, domain: str) -> None:
        self._status.set_domain_running(domain, True)
        last_error: str | None = None
        logger.info("Scanner started", extra={"domain": domain})
        try:
            while not self._stopping(domain):
                try:
                    result = await self._scanner.scan(domain)
                except NoUsableProxiesError as exc:
                    last_error = exc.message
                    logger.warning("No usable proxies, waiting", extra={"domain": domain})
                    await self._pause(domain, self._tick_interval)
                    continue
                except StoreIOError as exc:
                    last_error = exc.message
                    logger.error("Tick halted: %s", exc, extra={"domain": domain})
                    await self._pause(domain, self._tick_interval)
                    continue
                except Exception as exc:
                    last_error = str(exc) or type(exc).__name__
                    logger.exception("Scan tick failed", extra={"domain": domain})
                    await self._pause(domain, self._tick_interval)
                    continue

                last_error = None
                self._ticks[domain] = self._ticks.get(domain, 0) + 1
                if result.gated or result.exhausted:
                    await self._pause(domain, self._idle_seconds)
                else:
                    await self._pause(domain, self._tick_interval)
        finally:
            self._status.set_domain_running(domain, False, last_error)
            logger.info("Scanner stopped", extra={"domain": domain})

    # ------------------------------------------------------------------
    # Cycle mode
    # ------------------------------------------------------------------

    async def run_cycle(
        self,
        domains: list[str],
        *,
        budgets: Mapping[str, int] | None = None,
        force: bool = False,
    ) -> dict[str, int]:
        """One budgeted pass over ``domains`` followed by preset/gate refresh."""
        configs = {d: self._scanner.config_for(d) for d in domains}
        budgets = dict(budgets) if budgets is not None else {d: c.max_count for d, c in configs.items()}

        async def dispatch(domain: str, amount: int) -> ScanResult:
            return await self._scanner.scan(domain, amount, force=force)

        scheduler = RoundRobinScheduler(
            dispatch,
            preset_generator=self._presets,
            sample_sink=self._sink,
            set_shared_pacing=self._set_shared_pacing,
            stop_event=self._stop_event,
        )
        configured_steps = [c.rr_step for c in configs.values() if c.rr_step]
        step = default_step(
            max((c.concurrency for c in configs.values()), default=1),
            min(configured_steps) if configured_steps else None,
        )

        for domain in domains:
            self._status.set_domain_running(domain, True)
        errors: dict[str, str] = {}
        try:
            dispatched = await scheduler.run(budgets, step, order=domains)
        except PanelScanError as exc:
            errors = {d: exc.message for d in domains}
            raise
        finally:
            for domain in domains:
                self._status.set_domain_running(domain, False, errors.get(domain))

        for domain in domains:
            await self._refresh_outputs(domain, force)
        return dispatched

    async def _refresh_outputs(self, domain: str, force: bool) -> None:
        if self._presets is None:
            return
        summary_path = await self._presets.generate(domain, force=force)
        if summary_path is None or self._gate is None:
            return
        try:
            await self._gate.update_from_summary(domain, summary_path, force=force)
        except (PanelScanError, OSError, ValueError) as exc:
            logger.warning("Daily gate update failed: %s", exc, extra={"domain": domain})

    def get_stats(self) -> dict:
        return {
            "running": sorted(d for d in self._tasks if self.is_running(d)),
            "ticks": dict(self._ticks),
        }
