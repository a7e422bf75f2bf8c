"""Runtime status aggregation."""

from panelscan.runtime.status import DomainState, RuntimeStatus

__all__ = ["DomainState", "RuntimeStatus"]
