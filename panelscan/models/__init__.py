"""Response models for the status API."""

from panelscan.models.responses import ApiResponse

__all__ = ["ApiResponse"]
