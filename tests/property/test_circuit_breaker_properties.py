"""Property tests for the consecutive-failure circuit breaker."""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from panelscan.resilience.circuit_breaker import CircuitState, DomainCircuitBreaker

domain_ids = st.sampled_from(["gs", "sr", "zzz"])


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


@settings(max_examples=100)
@given(threshold=st.integers(min_value=1, max_value=20), domain=domain_ids)
def test_opens_exactly_at_threshold(threshold: int, domain: str) -> None:
    cb = DomainCircuitBreaker(max_consecutive_fails=threshold, break_on_429=False)
    for _ in range(threshold - 1):
        cb.record_failure(domain)
        assert cb.get_state(domain) == CircuitState.CLOSED
    cb.record_failure(domain)
    assert cb.get_state(domain) == CircuitState.OPEN
    assert cb.can_call(domain) is False


@settings(max_examples=100)
@given(
    threshold=st.integers(min_value=2, max_value=10),
    outcomes=st.lists(st.booleans(), max_size=60),
)
def test_state_follows_longest_trailing_failure_run(threshold: int, outcomes: list[bool]) -> None:
    """Closed as long as no run of ``threshold`` failures has occurred."""
    cb = DomainCircuitBreaker(max_consecutive_fails=threshold, break_on_429=False)
    run = 0
    opened = False
    for ok in outcomes:
        if opened:
            break
        if ok:
            cb.record_success("gs")
            run = 0
        else:
            cb.record_failure("gs")
            run += 1
            opened = run >= threshold
    expected = CircuitState.OPEN if opened else CircuitState.CLOSED
    assert cb.get_state("gs") == expected
