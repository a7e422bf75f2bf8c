"""In-memory runtime status.

Collects process uptime, the adaptive-concurrency snapshot, the proxy pool
status, per-domain scanner state and a sliding window of recent fetch
events. Nothing here is persisted; ``snapshot()`` builds one consistent
JSON-ready dict and never raises because a sub-block failed.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Callable, Protocol

from panelscan import __version__
from panelscan.proxy.types import ProxyPoolStatus
from panelscan.resilience.adaptive import ConcurrencyController

logger = logging.getLogger(__name__)


class _PoolStatusSource(Protocol):
    def status(self) -> ProxyPoolStatus: ...


@dataclass
class DomainState:
    running: bool = False
    started_at: float | None = None
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {"running": self.running, "startedAt": self.started_at, "lastError": self.last_error}


class RuntimeStatus:
    """Process-wide observability state, owned by the application.

    Args:
        controller: Adaptive concurrency state to report.
        domains: Domains shown even before they first run.
        window_seconds: Length of the recent-event window.
    """

    def __init__(
        self,
        controller: ConcurrencyController,
        domains: list[str] | tuple[str, ...] = (),
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._started_at = clock()
        self._controller = controller
        self._proxy_pool: _PoolStatusSource | None = None
        self._domains: dict[str, DomainState] = {d: DomainState() for d in domains}
        self._window = window_seconds
        self._events: deque[tuple[float, str]] = deque()

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def set_proxy_pool(self, pool: _PoolStatusSource | None) -> None:
        self._proxy_pool = pool

    def record_event(self, kind: str) -> None:
        self._events.append((self._clock(), kind or "unknown"))
        self._prune()

    def set_domain_running(self, domain: str, running: bool, error: str | None = None) -> None:
        state = self._domains.setdefault(domain, DomainState())
        state.running = running
        state.started_at = self._clock() if running else None
        state.last_error = error

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def _prune(self) -> None:
        cutoff = self._clock() - self._window
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()

    def recent_counts(self) -> dict[str, int]:
        self._prune()
        return dict(Counter(kind for _, kind in self._events))

    def _proxy_block(self) -> dict | None:
        if self._proxy_pool is None:
            return {"enabled": False, "usable": 0}
        try:
            return self._proxy_pool.status().to_dict()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Proxy pool status unavailable: %s", exc)
            return {"enabled": True, "error": str(exc)}

    def _adaptive_block(self) -> dict:
        try:
            return self._controller.snapshot().to_dict()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Concurrency snapshot unavailable: %s", exc)
            return {"error": str(exc)}

    def snapshot(self) -> dict:
        uptime = max(0, int(self._clock() - self._started_at))
        return {
            "ok": True,
            "version": __version__,
            "uptimeSec": uptime,
            "adaptiveConcurrency": self._adaptive_block(),
            "proxyPool": self._proxy_block(),
            "scanner": {
                "running": any(s.running for s in self._domains.values()),
                "domains": {d: s.to_dict() for d, s in self._domains.items()},
                "recent1m": self.recent_counts(),
            },
        }
