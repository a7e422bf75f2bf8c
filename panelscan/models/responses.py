"""JSON envelope for the status API.

Every response body has the shape
{ success: bool, data: T | None, error: str | None, meta: dict | None }.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Status API envelope; errors use the same shape via the exception handlers."""

    success: bool
    data: T | None = None
    error: str | None = None
    meta: dict | None = None
