"""Per-domain circuit breaker for direct (no-proxy) fetching.

Without proxies every request leaves from the same address, so a run of
failures usually means the upstream is refusing us. The breaker opens after
``max_consecutive_fails`` failures in a row, or on the first rate limit when
``break_on_429`` is set; an open breaker stops the current batch.

State machine:
- Closed → Open: consecutive failures reach the threshold, or a 429
- Open → Half-Open: cooldown period elapses
- Half-Open → Closed: probe request succeeds
- Half-Open → Open: probe request fails
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Internal state tracked per domain."""

    domain: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_state_change: float = field(default_factory=time.monotonic)


class DomainCircuitBreaker:
    """Per-domain consecutive-failure circuit breaker.

    Args:
        max_consecutive_fails: Failures in a row that open the circuit; 0 disables counting.
        break_on_429: Open immediately on a rate-limit response.
        cooldown_seconds: Seconds in open state before a half-open probe.
    """

    def __init__(
        self,
        max_consecutive_fails: int = 5,
        break_on_429: bool = True,
        cooldown_seconds: float = 120.0,
    ) -> None:
        self._max_consecutive_fails = max_consecutive_fails
        self._break_on_429 = break_on_429
        self._cooldown_seconds = cooldown_seconds
        self._states: dict[str, CircuitBreakerState] = {}

    def _get_or_create(self, domain: str) -> CircuitBreakerState:
        if domain not in self._states:
            self._states[domain] = CircuitBreakerState(domain=domain)
        return self._states[domain]

    def _open(self, state: CircuitBreakerState, reason: str) -> None:
        state.state = CircuitState.OPEN
        state.last_state_change = time.monotonic()
        logger.warning("Circuit opened for domain %s: %s", state.domain, reason, extra={"domain": state.domain})

    def can_call(self, domain: str) -> bool:
        """Whether a request for ``domain`` may be issued now."""
        state = self._states.get(domain)
        if state is None or state.state == CircuitState.CLOSED:
            return True

        if state.state == CircuitState.OPEN:
            if time.monotonic() - state.last_state_change >= self._cooldown_seconds:
                state.state = CircuitState.HALF_OPEN
                state.last_state_change = time.monotonic()
                return True
            return False

        return True

    def record_success(self, domain: str) -> None:
        state = self._get_or_create(domain)
        state.consecutive_failures = 0
        if state.state == CircuitState.HALF_OPEN:
            state.state = CircuitState.CLOSED
            state.last_state_change = time.monotonic()

    def record_failure(self, domain: str, *, rate_limited: bool = False) -> None:
        state = self._get_or_create(domain)
        state.consecutive_failures += 1

        if state.state == CircuitState.HALF_OPEN:
            self._open(state, "half-open probe failed")
            return
        if state.state == CircuitState.OPEN:
            return

        if rate_limited and self._break_on_429:
            self._open(state, "rate limited")
        elif 0 < self._max_consecutive_fails <= state.consecutive_failures:
            self._open(state, f"{state.consecutive_failures} consecutive failures")

    def get_state(self, domain: str) -> CircuitState:
        state = self._states.get(domain)
        return state.state if state else CircuitState.CLOSED

    def get_all_states(self) -> dict[str, CircuitState]:
        return {domain: state.state for domain, state in self._states.items()}
