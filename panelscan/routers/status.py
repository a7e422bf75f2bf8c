"""Health and status endpoints.

- GET /health: liveness plus usable proxy count
- GET /status: full runtime snapshot (adaptive concurrency, proxy pool,
  per-domain scanner state and recent event counts)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter

from panelscan.models.responses import ApiResponse

if TYPE_CHECKING:
    from panelscan.runtime.status import RuntimeStatus


def create_status_router(*, runtime_status: RuntimeStatus, scanner_manager: Any = None) -> APIRouter:
    """Factory that creates the status router with injected dependencies."""

    status_router = APIRouter(tags=["status"])

    @status_router.get("/health")
    async def health() -> dict:
        snapshot = runtime_status.snapshot()
        proxy = snapshot.get("proxyPool") or {}
        return ApiResponse(
            success=True,
            data={
                "status": "healthy",
                "uptimeSec": snapshot["uptimeSec"],
                "proxyUsable": proxy.get("usable", 0),
            },
        ).model_dump()

    @status_router.get("/status")
    async def status() -> dict:
        """Consistent runtime snapshot; sub-blocks degrade to error values."""
        meta = {"manager": scanner_manager.get_stats()} if scanner_manager else None
        return ApiResponse(success=True, data=runtime_status.snapshot(), meta=meta).model_dump()

    return status_router
