"""Property tests for round-robin dispatch planning.

Validates that every budget is dispatched exactly, no single dispatch
exceeds the step, and every active domain is served once per pass.
"""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from panelscan.services.scheduler import MAX_STEP, MIN_STEP, default_step, plan_round_robin


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

domain_names = st.sampled_from(["gs", "sr", "zzz", "hi3", "wuwa"])
budget_maps = st.dictionaries(domain_names, st.integers(min_value=0, max_value=500), max_size=5)
steps = st.integers(min_value=1, max_value=200)


# ---------------------------------------------------------------------------
# Plan totals
# ---------------------------------------------------------------------------


@settings(max_examples=200)
@given(budgets=budget_maps, step=steps)
def test_plan_dispatches_every_budget_exactly(budgets: dict[str, int], step: int) -> None:
    plan = plan_round_robin(budgets, step)

    totals: dict[str, int] = {}
    for domain, amount in plan:
        assert amount > 0
        totals[domain] = totals.get(domain, 0) + amount

    assert totals == {d: b for d, b in budgets.items() if b > 0}


@settings(max_examples=200)
@given(budgets=budget_maps, step=steps)
def test_dispatch_never_exceeds_step_with_competition(budgets: dict[str, int], step: int) -> None:
    active = [d for d, b in budgets.items() if b > 0]
    plan = plan_round_robin(budgets, step)

    if len(active) >= 2:
        assert all(amount <= step for _, amount in plan)
    else:
        # a lone domain gets its whole budget at once
        assert len(plan) == len(active)


@settings(max_examples=200)
@given(budgets=budget_maps, step=steps)
def test_each_pass_serves_every_remaining_domain(budgets: dict[str, int], step: int) -> None:
    active = [d for d, b in budgets.items() if b > 0]
    plan = plan_round_robin(budgets, step)
    if len(active) < 2:
        return

    # first pass visits every active domain once, in configured order
    assert [d for d, _ in plan[: len(active)]] == active

    # a domain is never dispatched twice while another still waits in the same pass
    remaining = {d: budgets[d] for d in active}
    index = 0
    while index < len(plan):
        in_pass = [d for d in active if remaining[d] > 0]
        chunk = plan[index : index + len(in_pass)]
        assert [d for d, _ in chunk] == in_pass
        for domain, amount in chunk:
            remaining[domain] -= amount
        index += len(in_pass)


# ---------------------------------------------------------------------------
# Default step
# ---------------------------------------------------------------------------


@settings(max_examples=100)
@given(concurrency=st.integers(min_value=0, max_value=10_000))
def test_default_step_is_clamped(concurrency: int) -> None:
    assert MIN_STEP <= default_step(concurrency) <= MAX_STEP


@settings(max_examples=100)
@given(concurrency=st.integers(min_value=0, max_value=100), configured=st.integers(min_value=1, max_value=5000))
def test_configured_step_wins(concurrency: int, configured: int) -> None:
    assert default_step(concurrency, configured) == configured
