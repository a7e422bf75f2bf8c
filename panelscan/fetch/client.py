"""Upstream fetch with outcome classification.

``fetch_entity`` turns every way a request can end into either a decoded
payload or a :class:`FetchError` subclass:

- 400 / 404                 → NotFoundError (permanent)
- 429                       → RateLimitedError (retry_after from header)
- other non-2xx, HTML/WAF   → NetworkError (retryable)
- undecodable JSON          → ParseError
- timeout / transport error → NetworkError (retryable)
"""

from __future__ import annotations

import json
import logging

import httpx

from panelscan.adapters.base import DomainAdapter
from panelscan.errors import NetworkError, NotFoundError, ParseError, RateLimitedError
from panelscan.proxy.source import looks_like_html, looks_like_json

logger = logging.getLogger(__name__)

_NOT_FOUND_STATUSES = frozenset({400, 404})


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


async def fetch_entity(client: httpx.AsyncClient, url: str) -> dict:
    """GET ``url`` and return the decoded JSON object."""
    try:
        response = await client.get(url, headers={"Accept": "application/json,*/*"})
    except httpx.TimeoutException as exc:
        raise NetworkError("timeout", kind="timeout") from exc
    except httpx.HTTPError as exc:
        raise NetworkError(str(exc) or type(exc).__name__, kind="transport") from exc

    status = response.status_code
    text = response.text
    html = looks_like_html(text, response.headers.get("content-type", ""))

    if status in _NOT_FOUND_STATUSES:
        raise NotFoundError(f"HTTP {status}", status=status)
    if status == 429:
        raise RateLimitedError(f"HTTP {status}", retry_after=_retry_after_seconds(response))
    if status < 200 or status >= 300:
        raise NetworkError(f"HTTP {status}: {text[:200]}", status=status, kind="htmlWaf" if html else "httpError")
    if html or not looks_like_json(text):
        raise NetworkError("HTML/WAF response", status=status, kind="htmlWaf")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid json: {exc}", status=status) from exc
    if not isinstance(payload, dict):
        raise ParseError("payload is not a JSON object", status=status)
    return payload


async def fetch_uid(client: httpx.AsyncClient, adapter: DomainAdapter, uid: int) -> dict:
    """Fetch one UID, falling back to the adapter's alternate URLs on transport failure."""
    try:
        return await fetch_entity(client, adapter.build_url(uid))
    except NetworkError as exc:
        fallbacks = adapter.fallback_urls(uid)
        if exc.kind not in ("transport", "timeout") or not fallbacks:
            raise
        logger.debug("Primary fetch failed, trying fallback", extra={"domain": adapter.domain, "uid": uid})
        last_exc: NetworkError = exc
        for url in fallbacks:
            try:
                return await fetch_entity(client, url)
            except NetworkError as fallback_exc:
                last_exc = fallback_exc
        raise last_exc


class ClientPool:
    """One ``httpx.AsyncClient`` per proxy URL (``None`` = direct)."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        user_agent: str = "panelscan",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds)
        self._headers = {"User-Agent": user_agent}
        self._transport = transport
        self._clients: dict[str | None, httpx.AsyncClient] = {}

    def get(self, proxy_url: str | None) -> httpx.AsyncClient:
        client = self._clients.get(proxy_url)
        if client is None:
            client = httpx.AsyncClient(
                proxy=proxy_url if self._transport is None else None,
                transport=self._transport,
                timeout=self._timeout,
                headers=self._headers,
                follow_redirects=True,
            )
            self._clients[proxy_url] = client
        return client

    async def retain(self, proxy_urls: list[str]) -> None:
        """Close clients for proxies that are no longer published."""
        keep = set(proxy_urls) | {None}
        for key in [k for k in self._clients if k not in keep]:
            await self._clients.pop(key).aclose()

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
