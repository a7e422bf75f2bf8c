"""Error hierarchy and FastAPI exception handlers.

All scanner-specific errors extend PanelScanError. Fetch outcomes carry a
``retryable`` flag that decides whether a UID goes back to the retry queue.
The FastAPI handlers render the status API's JSON envelope:
{ success, data, error, meta }.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class PanelScanError(Exception):
    """Base error for all scanner errors."""

    status_code: int = 500
    message: str = "Internal error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class ConfigError(PanelScanError):
    """Scan configuration is missing or contradictory."""

    status_code = 422
    message = "Invalid scan configuration"


class InvalidNodeDescriptor(PanelScanError):
    """A proxy node descriptor failed validation.

    ``field`` names the violated field so the rejection is deterministic.
    """

    status_code = 422
    message = "Invalid proxy node descriptor"

    def __init__(self, field: str, message: str | None = None, **kwargs: object) -> None:
        self.field = field
        super().__init__(message or f"invalid node: missing or invalid '{field}'", field=field, **kwargs)


class ListenerBindError(PanelScanError):
    """Local proxy listener port could not be bound."""

    status_code = 503
    message = "Local proxy listener port is in use"


class NoUsableProxiesError(PanelScanError):
    """Proxies are required but none is usable."""

    status_code = 503
    message = "No usable proxies available"


class SubscriptionError(PanelScanError):
    """Subscription URL could not be fetched and no cached copy exists."""

    status_code = 502
    message = "Subscription fetch failed"


class StoreIOError(PanelScanError):
    """Progress store read or write failed; the current tick must halt."""

    status_code = 500
    message = "Progress store I/O failed"


# ---------------------------------------------------------------------------
# Fetch outcomes
# ---------------------------------------------------------------------------


class FetchError(PanelScanError):
    """Base class for per-UID fetch failures."""

    status_code = 502
    message = "Upstream fetch failed"
    retryable: bool = False
    event_kind: str = "httpError"

    def __init__(self, message: str | None = None, *, status: int | None = None, **kwargs: object) -> None:
        self.status = status
        super().__init__(message, status=status, **kwargs)


class NotFoundError(FetchError):
    """Upstream reports the UID does not exist (400/404)."""

    message = "Entity not found"
    event_kind = "permanent"


class ParseError(FetchError):
    """Upstream body could not be decoded."""

    message = "Invalid upstream payload"
    event_kind = "invalidJson"


class RateLimitedError(FetchError):
    """Upstream answered 429."""

    message = "Rate limited"
    retryable = True
    event_kind = "http429"

    def __init__(
        self,
        message: str | None = None,
        *,
        status: int | None = 429,
        retry_after: float | None = None,
        **kwargs: object,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status=status, retry_after=retry_after, **kwargs)


class NetworkError(FetchError):
    """Transport failure, timeout, WAF page or unexpected HTTP status."""

    message = "Network error"
    retryable = True
    event_kind = "transport"

    def __init__(
        self,
        message: str | None = None,
        *,
        status: int | None = None,
        kind: str = "transport",
        **kwargs: object,
    ) -> None:
        self.kind = kind
        super().__init__(message, status=status, kind=kind, **kwargs)
        self.event_kind = kind


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    error: str,
    meta: dict | None = None,
) -> JSONResponse:
    """Build a JSON envelope error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": error,
            "meta": meta,
        },
    )


async def _panelscan_error_handler(_request: Request, exc: PanelScanError) -> JSONResponse:
    meta = {k: v for k, v in exc.details.items() if v is not None} or None
    return _envelope(exc.status_code, exc.message, meta=meta)


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: log traceback, return generic 500."""
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        traceback.format_exc(),
    )
    return _envelope(status_code=500, error="Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Wire up all exception handlers on the FastAPI application."""
    app.add_exception_handler(PanelScanError, _panelscan_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]
