"""Unit tests for the daily completion gate."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pytest

from panelscan.config.scan_policies import DailyGateConfig
from panelscan.gate.daily_gate import DailyGate, is_done_under, local_day
from panelscan.services.collaborators import StaticRosterProvider, SummaryScoreReader
from panelscan.store.progress import DailyGateRow

TODAY = datetime(2026, 10, 19, 9, 30)


def _summary(tmp_path: Path, scores: dict[str, float | None]) -> Path:
    path = tmp_path / "summary.json"
    path.write_text(
        json.dumps({"generatedAt": "2026-10-19T09:00:00", "entities": {k: {"score": v} for k, v in scores.items()}}),
        encoding="utf-8",
    )
    return path


def _gate(store, threshold=300.0, enabled=True, roster=("1", "2", "3", "4", "5")):
    return DailyGate(
        store,
        {"gs": DailyGateConfig(enabled=enabled, threshold=threshold)},
        SummaryScoreReader(),
        StaticRosterProvider({"gs": list(roster)}),
        clock=lambda: TODAY,
    )


class TestHelpers:
    def test_local_day(self):
        assert local_day(TODAY) == "2026-10-19"

    def test_is_done_under_requires_same_threshold(self):
        row = DailyGateRow(
            domain="gs", day="2026-10-19", done=True, total_entities=1, qualified_entities=1,
            detail={"threshold": 300}, done_at=1.0, updated_at=1.0,
        )
        assert is_done_under(row, 300) is True
        assert is_done_under(row, 280) is False
        assert is_done_under(None, 300) is False


class TestUpdate:
    @pytest.mark.asyncio
    async def test_missing_entity_keeps_gate_open(self, store, tmp_path):
        summary = _summary(tmp_path, {"1": 310, "2": 305, "3": 400, "4": 300})
        gate = _gate(store)

        row = await gate.update_from_summary("gs", summary)

        assert row.done is False
        assert row.qualified_entities == 4
        assert row.total_entities == 5
        assert row.detail["missing"] == [{"id": "5"}]
        assert await gate.should_skip("gs") is False

    @pytest.mark.asyncio
    async def test_all_qualified_closes_gate(self, store, tmp_path):
        summary = _summary(tmp_path, {str(i): 300 + i for i in range(1, 6)})
        gate = _gate(store)

        row = await gate.update_from_summary("gs", summary)

        assert row.done is True
        assert await gate.should_skip("gs") is True
        assert await gate.should_skip("gs", force=True) is False

    @pytest.mark.asyncio
    async def test_below_threshold_and_unscored_are_listed(self, store, tmp_path):
        summary = _summary(tmp_path, {"1": 310, "2": 299.5, "3": None, "4": 301, "5": 302})
        row = await _gate(store).update_from_summary("gs", summary)
        assert row.done is False
        assert [b["id"] for b in row.detail["below"]] == ["2", "3"]

    @pytest.mark.asyncio
    async def test_threshold_change_invalidates_done_row(self, store, tmp_path):
        summary = _summary(tmp_path, {str(i): 300 for i in range(1, 6)})
        await _gate(store, threshold=300).update_from_summary("gs", summary)

        stricter = _gate(store, threshold=320)

        assert await stricter.should_skip("gs") is False
        row = await stricter.update_from_summary("gs", summary)
        assert row.done is False

    @pytest.mark.asyncio
    async def test_empty_roster_never_done(self, store, tmp_path):
        summary = _summary(tmp_path, {"1": 999})
        row = await _gate(store, roster=()).update_from_summary("gs", summary)
        assert row.done is False

    @pytest.mark.asyncio
    async def test_missing_summary_returns_none(self, store, tmp_path):
        assert await _gate(store).update_from_summary("gs", tmp_path / "nope.json") is None


class TestDisabled:
    @pytest.mark.asyncio
    async def test_disabled_gate_never_skips(self, store, tmp_path):
        summary = _summary(tmp_path, {str(i): 999 for i in range(1, 6)})
        gate = _gate(store, enabled=False)
        assert await gate.update_from_summary("gs", summary) is None
        assert await gate.should_skip("gs") is False

    @pytest.mark.asyncio
    async def test_no_threshold_never_skips(self, store):
        assert await _gate(store, threshold=None).should_skip("gs") is False

    @pytest.mark.asyncio
    async def test_unconfigured_domain_never_skips(self, store):
        assert await _gate(store).should_skip("sr") is False
