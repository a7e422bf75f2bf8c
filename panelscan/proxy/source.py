"""Usable-proxy sources consumed by the batch runner.

A source publishes HTTP proxy URLs through a :class:`ProxyBroadcast` and
tracks per-URL health. Fetch outcomes feed back via ``mark_success`` and
``mark_failure``; a URL is withheld while it is disabled.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from panelscan.proxy.broadcast import ProxyBroadcast
from panelscan.proxy.types import NodeHealth, ProxyPoolStatus

logger = logging.getLogger(__name__)

PROBE_OK_STATUSES = frozenset({200, 400, 403, 404, 424})


class ProxySource:
    """Health bookkeeping for a set of HTTP proxy URLs."""

    def __init__(
        self,
        broadcast: ProxyBroadcast | None = None,
        *,
        max_consecutive_fails: int = 10,
        disable_seconds: float = 60.0,
    ) -> None:
        self.broadcast = broadcast or ProxyBroadcast()
        self._health: dict[str, NodeHealth] = {}
        self._max_consecutive_fails = max_consecutive_fails
        self._disable_seconds = disable_seconds

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def usable_urls(self, now: float | None = None) -> list[str]:
        """Published URLs that are healthy and not in a cool-down."""
        now = time.time() if now is None else now
        out = []
        for url in self.broadcast.current():
            health = self._health.get(url)
            if health is None or health.is_usable(now):
                out.append(url)
        return out

    def is_usable(self, proxy_url: str, now: float | None = None) -> bool:
        health = self._health.get(proxy_url)
        if health is None:
            return proxy_url in self.broadcast.current()
        return health.is_usable(time.time() if now is None else now)

    # ------------------------------------------------------------------
    # Outcome feedback
    # ------------------------------------------------------------------

    def mark_success(self, proxy_url: str) -> None:
        health = self._health.get(proxy_url)
        if health is None:
            return
        health.success_count += 1
        health.consecutive_failures = 0

    def mark_failure(
        self,
        proxy_url: str,
        *,
        rate_limited: bool = False,
        cooldown_seconds: float = 0.0,
        error: str | None = None,
    ) -> bool:
        """Record a failed fetch through ``proxy_url``.

        A rate limit disables the proxy immediately; transport failures
        disable it after ``max_consecutive_fails`` in a row. The cool-down is
        ``max(disable_seconds, cooldown_seconds)``. Returns True when the
        proxy was disabled by this call.
        """
        health = self._health.get(proxy_url)
        if health is None:
            return False
        health.failure_count += 1
        health.last_error = error

        if not rate_limited:
            health.consecutive_failures += 1
            if health.consecutive_failures < self._max_consecutive_fails:
                return False

        cooldown = max(self._disable_seconds, cooldown_seconds)
        health.disabled_until = time.time() + cooldown
        health.consecutive_failures = 0
        logger.warning(
            "Proxy disabled for %.0fs: %s",
            cooldown,
            health.tag,
            extra={"proxy_used": proxy_url, "error_reason": error or ("rate limited" if rate_limited else "")},
        )
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> ProxyPoolStatus:
        return ProxyPoolStatus(
            enabled=True,
            usable_count=len(self.usable_urls()),
            nodes={h.tag: h.to_dict() for h in self._health.values()},
        )

    def get_stats(self) -> dict:
        return self.status().to_dict()


class StaticProxySource(ProxySource):
    """Fixed list of externally managed HTTP proxies."""

    def __init__(self, urls: list[str], **kwargs) -> None:
        normalized = [u if "://" in u else f"http://{u}" for u in (s.strip() for s in urls) if u]
        super().__init__(ProxyBroadcast(normalized), **kwargs)
        for index, url in enumerate(normalized):
            self._health[url] = NodeHealth(tag=f"static-{index + 1}", proxy_url=url, port=0)


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------


@dataclass
class ProbeResult:
    ok: bool
    status: int | None = None
    elapsed_ms: float | None = None
    error: str | None = None


def looks_like_html(text: str, content_type: str = "") -> bool:
    stripped = text.lstrip()
    if not stripped:
        return False
    if "text/html" in content_type.lower():
        return True
    return stripped.startswith("<") or "<html" in stripped[:200].lower()


def looks_like_json(text: str) -> bool:
    stripped = text.lstrip()
    return stripped.startswith("{") or stripped.startswith("[")


async def probe_proxy(
    proxy_url: str,
    test_url: str,
    timeout_seconds: float = 8.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProbeResult:
    """Request ``test_url`` through ``proxy_url``.

    The proxy counts as working when the body is not HTML and is either
    JSON or arrives with a status the upstream uses for per-UID answers.
    """
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(
            proxy=proxy_url if transport is None else None,
            transport=transport,
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        ) as client:
            response = await client.get(test_url, headers={"Accept": "application/json,*/*"})
    except httpx.TimeoutException:
        return ProbeResult(ok=False, elapsed_ms=(time.monotonic() - start) * 1000, error="timeout")
    except httpx.HTTPError as exc:
        return ProbeResult(ok=False, elapsed_ms=(time.monotonic() - start) * 1000, error=str(exc) or type(exc).__name__)

    elapsed_ms = (time.monotonic() - start) * 1000
    text = response.text
    html = looks_like_html(text, response.headers.get("content-type", ""))
    ok = not html and (looks_like_json(text) or response.status_code in PROBE_OK_STATUSES)
    error = None if ok else f"bad_response status={response.status_code} html={int(html)}"
    return ProbeResult(ok=ok, status=response.status_code, elapsed_ms=elapsed_ms, error=error)
