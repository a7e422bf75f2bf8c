"""Resilience components: adaptive concurrency, pacing and circuit breaking."""

from panelscan.resilience.adaptive import AdaptiveBackoffPolicy, ConcurrencyController, ConcurrencySnapshot
from panelscan.resilience.circuit_breaker import CircuitState, DomainCircuitBreaker
from panelscan.resilience.pacing import DIRECT_LANE, LanePacer, SharedLanePacer

__all__ = [
    "AdaptiveBackoffPolicy",
    "CircuitState",
    "ConcurrencyController",
    "ConcurrencySnapshot",
    "DIRECT_LANE",
    "DomainCircuitBreaker",
    "LanePacer",
    "SharedLanePacer",
]
