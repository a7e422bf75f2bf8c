"""Batch runner: push one list of UIDs through the fetch pipeline.

For every UID the runner

1. skips ids that are permanent or whose retry time has not come,
2. picks a proxy round-robin for the worker (or the direct lane),
3. waits out any backoff window and the lane's pacing slot,
4. fetches and classifies the outcome,
5. records the outcome in the progress store, proxy health, the adaptive
   controller and the recent-event counters.

``run`` returns once every admitted UID has reached a terminal outcome.
UIDs left untouched by an early stop are listed in the summary so the
caller never advances a cursor past them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field

from panelscan.adapters.base import DomainAdapter
from panelscan.adapters.registry import AdapterRegistry
from panelscan.config.scan_policies import DomainScanConfig
from panelscan.errors import FetchError, NetworkError, NoUsableProxiesError, RateLimitedError
from panelscan.fetch.client import ClientPool, fetch_uid
from panelscan.proxy.source import ProxySource
from panelscan.resilience.adaptive import AdaptiveBackoffPolicy, ConcurrencyController
from panelscan.resilience.circuit_breaker import CircuitState, DomainCircuitBreaker
from panelscan.resilience.pacing import DIRECT_LANE, LanePacer, SharedLanePacer
from panelscan.runtime.status import RuntimeStatus
from panelscan.services.collaborators import SampleSink
from panelscan.services.worker_pool import FetchWorkerPool, WorkerState
from panelscan.store.progress import CrawlProgressStore

logger = logging.getLogger(__name__)

RATE_LIMIT_MIN_RETRY_SECONDS = 300.0
PROXY_MIN_COOLDOWN_SECONDS = 60.0
BACKOFF_MIN_BASE_SECONDS = 30.0

# NetworkError kinds that point at the proxy rather than the origin
PROXY_FAULT_KINDS = frozenset({"transport", "timeout"})


@dataclass
class BatchSummary:
    """Per-batch outcome counts."""

    domain: str
    total: int = 0
    ok: int = 0
    skipped: int = 0
    permanent: int = 0
    failed: int = 0
    samples: int = 0
    events: Counter = field(default_factory=Counter)
    stopped_reason: str | None = None
    unresolved: list[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True when every UID of the batch reached a terminal outcome."""
        return not self.unresolved

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "total": self.total,
            "ok": self.ok,
            "skipped": self.skipped,
            "permanent": self.permanent,
            "failed": self.failed,
            "samples": self.samples,
            "events": dict(self.events),
            "stoppedReason": self.stopped_reason,
            "unresolved": len(self.unresolved),
        }


class BatchRunner:
    """Executes batches of UIDs for any registered domain.

    Args:
        store: Durable progress store.
        registry: Domain adapters.
        clients: One HTTP client per proxy lane.
        controller: Process-wide concurrency state.
        runtime_status: Recent-event counters.
        sample_sink: Receives extracted records.
        proxy_source: Usable proxies; ``None`` means direct fetching.
        stop_event: Process stop signal.
        max_workers: Hard cap on concurrent fetches.
        proxy_wait_seconds: How long a proxy-required batch waits for the
            proxy list to become non-empty before giving up.
    """

    def __init__(
        self,
        *,
        store: CrawlProgressStore,
        registry: AdapterRegistry,
        clients: ClientPool,
        controller: ConcurrencyController,
        runtime_status: RuntimeStatus,
        sample_sink: SampleSink,
        proxy_source: ProxySource | None = None,
        stop_event: asyncio.Event | None = None,
        max_workers: int = 50,
        poll_interval_seconds: float = 0.2,
        proxy_wait_seconds: float = 0.0,
    ) -> None:
        self._store = store
        self._registry = registry
        self._clients = clients
        self._controller = controller
        self._status = runtime_status
        self._sink = sample_sink
        self._proxy_source = proxy_source
        self._stop_event = stop_event or asyncio.Event()
        self._max_workers = max_workers
        self._proxy_wait_seconds = proxy_wait_seconds
        # configured direct concurrency of each batch currently running
        self._direct_concurrency: dict[str, int] = {}
        self.policy = AdaptiveBackoffPolicy(controller, get_max=self._ceiling)
        self._pool = FetchWorkerPool(
            controller,
            max_workers=max_workers,
            poll_interval_seconds=poll_interval_seconds,
            stop_event=self._stop_event,
        )
        self._pacers: dict[str, LanePacer] = {}
        self._breakers: dict[str, DomainCircuitBreaker] = {}
        self.shared_pacing = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def use_shared_pacing(self, enabled: bool) -> None:
        """Switch lane pacing to the store-backed schedule (multi-domain runs)."""
        if enabled != self.shared_pacing:
            self.shared_pacing = enabled
            self._pacers.clear()

    def _pacer_for(self, domain: str, config: DomainScanConfig) -> LanePacer:
        if domain not in self._pacers:
            delay = config.delay_ms / 1000
            jitter = config.jitter_ms / 1000
            if self.shared_pacing:
                self._pacers[domain] = SharedLanePacer(self._store, delay, jitter)
            else:
                self._pacers[domain] = LanePacer(delay, jitter)
        return self._pacers[domain]

    def _breaker_for(self, domain: str, config: DomainScanConfig) -> DomainCircuitBreaker:
        if domain not in self._breakers:
            self._breakers[domain] = DomainCircuitBreaker(
                max_consecutive_fails=config.circuit_breaker.max_consecutive_fails,
                break_on_429=config.circuit_breaker.break_on_429,
            )
        return self._breakers[domain]

    def _proxy_urls(self) -> list[str]:
        if self._proxy_source is None:
            return []
        return self._proxy_source.usable_urls()

    def _ceiling(self) -> int:
        """Process-wide in-flight ceiling shared by every running batch."""
        proxies = self._proxy_urls()
        if proxies:
            ceiling = len(proxies)
        else:
            ceiling = max(self._direct_concurrency.values(), default=1)
        return max(1, min(self._max_workers, ceiling))

    async def _await_usable_proxies(self) -> list[str]:
        proxies = self._proxy_urls()
        if proxies or self._proxy_source is None or self._proxy_wait_seconds <= 0:
            return proxies
        broadcast = self._proxy_source.broadcast
        deadline = time.monotonic() + self._proxy_wait_seconds
        while not proxies and not self._stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await broadcast.wait_for_change(broadcast.version, timeout=remaining)
            proxies = self._proxy_urls()
        return proxies

    def _pick_proxy(self, worker: WorkerState) -> str | None:
        urls = self._proxy_urls()
        if not urls:
            return None
        url = urls[worker.proxy_index % len(urls)]
        worker.proxy_index += 1
        return url

    def _emit(self, summary: BatchSummary, kind: str) -> None:
        summary.events[kind] += 1
        self._status.record_event(kind)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run(self, domain: str, uids: list[int], config: DomainScanConfig) -> BatchSummary:
        """Fetch every UID in ``uids``.

        Raises:
            NoUsableProxiesError: Proxies are required and none is usable.
            StoreIOError: The progress store failed; the batch is abandoned.
        """
        adapter = self._registry.get(domain)
        summary = BatchSummary(domain=domain, total=len(uids))
        if not uids:
            return summary

        proxies = await self._await_usable_proxies() if config.proxy_required else self._proxy_urls()
        if config.proxy_required and not proxies:
            raise NoUsableProxiesError(domain=domain)
        if self._proxy_source is not None:
            await self._clients.retain(list(self._proxy_source.broadcast.current()))

        breaker = None if proxies else self._breaker_for(domain, config)
        if breaker is not None and not breaker.can_call(domain):
            logger.warning("Circuit open, skipping batch", extra={"domain": domain, "batch_size": len(uids)})
            summary.stopped_reason = "circuit_open"
            summary.unresolved = list(uids)
            return summary

        pacer = self._pacer_for(domain, config)

        async def handle(uid: int, worker: WorkerState) -> None:
            await self._run_one(domain, uid, adapter, config, worker, pacer, breaker, summary)

        start = time.monotonic()
        self._direct_concurrency[domain] = config.concurrency
        self.policy.clamp()
        try:
            pool_run = await self._pool.run(
                list(uids), handle, should_stop=lambda: summary.stopped_reason is not None
            )
        finally:
            self._direct_concurrency.pop(domain, None)
        summary.unresolved.extend(pool_run.unprocessed)
        if pool_run.stopped and summary.stopped_reason is None:
            summary.stopped_reason = "stop_requested"

        logger.info(
            "Batch finished: ok=%d skipped=%d permanent=%d failed=%d",
            summary.ok,
            summary.skipped,
            summary.permanent,
            summary.failed,
            extra={
                "domain": domain,
                "batch_size": len(uids),
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
                "concurrency": self.policy.current,
            },
        )
        if summary.stopped_reason == "no_usable_proxies":
            raise NoUsableProxiesError(domain=domain, summary=summary.to_dict())
        return summary

    async def _run_one(
        self,
        domain: str,
        uid: int,
        adapter: DomainAdapter,
        config: DomainScanConfig,
        worker: WorkerState,
        pacer: LanePacer,
        breaker: DomainCircuitBreaker | None,
        summary: BatchSummary,
    ) -> None:
        skip, reason = await self._store.should_skip_uid(domain, uid)
        if skip:
            summary.skipped += 1
            logger.debug("Skipping uid: %s", reason, extra={"domain": domain, "uid": uid})
            return

        if not adapter.validate_uid(uid):
            await self._store.mark_permanent(domain, uid, error="invalid uid")
            summary.permanent += 1
            self._emit(summary, "permanent")
            return

        proxy_url = self._pick_proxy(worker)
        if proxy_url is None and self._proxy_source is not None and config.proxy_required:
            summary.stopped_reason = "no_usable_proxies"
            summary.unresolved.append(uid)
            return

        await self._controller.wait_if_backoff(self._stop_event)
        await pacer.wait_turn(proxy_url or DIRECT_LANE)
        if self._stop_event.is_set():
            summary.unresolved.append(uid)
            return

        client = self._clients.get(proxy_url)
        delay = config.delay_ms / 1000
        start = time.monotonic()
        log_extra = {"domain": domain, "uid": uid, "proxy_used": proxy_url or DIRECT_LANE}

        try:
            payload = await fetch_uid(client, adapter, uid)
        except RateLimitedError as exc:
            retry_after = max(RATE_LIMIT_MIN_RETRY_SECONDS, delay * 10, exc.retry_after or 0.0)
            outcome = await self._store.record_failure(
                domain, uid, status=429, error="http429", retry_after=retry_after
            )
            self._count_failure(summary, outcome.exhausted)
            self._emit(summary, exc.event_kind)
            if proxy_url is not None:
                self._proxy_source.mark_failure(
                    proxy_url,
                    rate_limited=True,
                    cooldown_seconds=max(PROXY_MIN_COOLDOWN_SECONDS, retry_after),
                    error="http429",
                )
            elif breaker is not None:
                self._trip(breaker, domain, summary, rate_limited=True)
            self.policy.on_rate_limited(base_seconds=max(BACKOFF_MIN_BASE_SECONDS, delay * 2))
            logger.warning("Rate limited", extra={**log_extra, "event_kind": exc.event_kind})
            return
        except NetworkError as exc:
            outcome = await self._store.record_failure(domain, uid, status=exc.status, error=exc.message)
            self._count_failure(summary, outcome.exhausted)
            self._emit(summary, exc.event_kind)
            if proxy_url is not None:
                if exc.kind in PROXY_FAULT_KINDS:
                    self._proxy_source.mark_failure(
                        proxy_url,
                        cooldown_seconds=max(PROXY_MIN_COOLDOWN_SECONDS, delay * 5),
                        error=exc.message,
                    )
                else:
                    # the origin answered through this proxy
                    self._proxy_source.mark_success(proxy_url)
            elif breaker is not None:
                self._trip(breaker, domain, summary, rate_limited=False)
            self.policy.on_transient_error()
            logger.info(
                "Fetch failed",
                extra={**log_extra, "event_kind": exc.event_kind, "error_reason": exc.message},
            )
            return
        except FetchError as exc:
            await self._store.mark_permanent(domain, uid, status=exc.status, error=exc.message)
            summary.permanent += 1
            self._emit(summary, exc.event_kind)
            if proxy_url is not None:
                self._proxy_source.mark_success(proxy_url)
            self.policy.on_transient_error()
            logger.debug("Permanent outcome", extra={**log_extra, "event_kind": exc.event_kind})
            return

        records = adapter.extract_records(payload)
        written = await self._sink.write(domain, uid, records) if records else 0
        await self._store.record_success(domain, uid)
        summary.ok += 1
        summary.samples += written
        self._emit(summary, "ok")
        if proxy_url is not None:
            self._proxy_source.mark_success(proxy_url)
        elif breaker is not None:
            breaker.record_success(domain)
        self.policy.on_success()
        logger.debug(
            "Fetched %d records",
            len(records),
            extra={**log_extra, "duration_ms": round((time.monotonic() - start) * 1000, 1)},
        )

    @staticmethod
    def _count_failure(summary: BatchSummary, exhausted: bool) -> None:
        if exhausted:
            summary.permanent += 1
        else:
            summary.failed += 1

    @staticmethod
    def _trip(breaker: DomainCircuitBreaker, domain: str, summary: BatchSummary, *, rate_limited: bool) -> None:
        breaker.record_failure(domain, rate_limited=rate_limited)
        if breaker.get_state(domain) == CircuitState.OPEN:
            summary.stopped_reason = "circuit_open"

    def get_stats(self) -> dict:
        return {
            "pool": self._pool.get_stats(),
            "policy": {"current": self.policy.current, "max": self.policy.max, "level": self.policy.backoff_level},
            "breakers": {d: s.value for b in self._breakers.values() for d, s in b.get_all_states().items()},
            "pacing": {d: p.get_stats() for d, p in self._pacers.items()},
        }
