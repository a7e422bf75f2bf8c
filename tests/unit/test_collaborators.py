"""Unit tests for the file-based sample sink, score, roster and preset collaborators."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from panelscan.services.collaborators import (
    CommandPresetGenerator,
    JsonlSampleSink,
    JsonRosterProvider,
    PresetGenerator,
    SampleSink,
    StaticRosterProvider,
    SummaryScoreReader,
)


class TestJsonlSampleSink:
    @pytest.mark.asyncio
    async def test_records_grouped_by_entity(self, tmp_path: Path):
        sink = JsonlSampleSink(tmp_path)
        records = [
            {"entity_id": 10000002, "level": 90},
            {"entity_id": 10000003, "level": 80},
            {"entity_id": 10000002, "level": 70},
            {"level": 1},
        ]

        written = await sink.write("gs", 100000001, records)

        assert written == 3
        lines = (tmp_path / "gs" / "10000002.jsonl").read_text(encoding="utf-8").splitlines()
        assert [json.loads(line) for line in lines] == [
            {"uid": 100000001, "entity_id": 10000002, "level": 90},
            {"uid": 100000001, "entity_id": 10000002, "level": 70},
        ]
        assert (tmp_path / "gs" / "10000003.jsonl").is_file()

    @pytest.mark.asyncio
    async def test_appends_across_writes(self, tmp_path: Path):
        sink = JsonlSampleSink(tmp_path)
        await sink.write("sr", 1, [{"entity_id": 5}])
        await sink.write("sr", 2, [{"entity_id": 5}])
        assert len((tmp_path / "sr" / "5.jsonl").read_text(encoding="utf-8").splitlines()) == 2

    @pytest.mark.asyncio
    async def test_has_samples(self, tmp_path: Path):
        sink = JsonlSampleSink(tmp_path)
        assert sink.has_samples("gs") is False
        await sink.write("gs", 1, [{"entity_id": 7}])
        assert sink.has_samples("gs") is True
        # a fresh sink finds files written earlier
        assert JsonlSampleSink(tmp_path).has_samples("gs") is True

    def test_satisfies_protocol(self, tmp_path: Path):
        assert isinstance(JsonlSampleSink(tmp_path), SampleSink)


class TestSummaryScoreReader:
    @pytest.mark.asyncio
    async def test_reads_scores(self, tmp_path: Path):
        path = tmp_path / "summary.json"
        path.write_text(json.dumps({
            "generatedAt": "2026-01-01T00:00:00Z",
            "entities": {"10000002": {"score": 312.5}, "10000003": {"score": None}, "10000005": 280},
        }), encoding="utf-8")

        scores = await SummaryScoreReader().scores("gs", path)

        assert scores == {"10000002": 312.5, "10000003": None, "10000005": 280.0}

    @pytest.mark.asyncio
    async def test_missing_entities_block(self, tmp_path: Path):
        path = tmp_path / "summary.json"
        path.write_text("{}", encoding="utf-8")
        assert await SummaryScoreReader().scores("gs", path) == {}


class TestRosterProviders:
    @pytest.mark.asyncio
    async def test_static(self):
        provider = StaticRosterProvider({"gs": [10000002, "10000003"]})
        assert await provider.entity_ids("gs") == ["10000002", "10000003"]
        assert await provider.entity_ids("sr") == []

    @pytest.mark.asyncio
    async def test_json_list_sorted_numerically(self, tmp_path: Path):
        (tmp_path / "gs.json").write_text(json.dumps([10000010, "10000002", "traveler"]), encoding="utf-8")
        assert await JsonRosterProvider(tmp_path).entity_ids("gs") == ["10000002", "10000010"]

    @pytest.mark.asyncio
    async def test_json_mapping_keys(self, tmp_path: Path):
        (tmp_path / "sr.json").write_text(json.dumps({"1005": {}, "1002": {}}), encoding="utf-8")
        assert await JsonRosterProvider(tmp_path).entity_ids("sr") == ["1002", "1005"]

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path: Path):
        assert await JsonRosterProvider(tmp_path).entity_ids("zzz") == []


_WRITE_SUMMARY = (
    "import pathlib, sys\n"
    "root = pathlib.Path(sys.argv[1])\n"
    "domain = sys.argv[sys.argv.index('--domain') + 1]\n"
    "out = root / domain / 'summary.json'\n"
    "out.parent.mkdir(parents=True, exist_ok=True)\n"
    "out.write_text('{}')\n"
)


class TestCommandPresetGenerator:
    @pytest.mark.asyncio
    async def test_without_command_reports_existing_summary(self, tmp_path: Path):
        generator = CommandPresetGenerator([], tmp_path)
        assert await generator.generate("gs") is None
        assert generator.has_usable_preset("gs") is False

        generator.summary_path("gs").parent.mkdir(parents=True)
        generator.summary_path("gs").write_text("{}", encoding="utf-8")

        assert await generator.generate("gs") == tmp_path / "gs" / "summary.json"
        assert generator.has_usable_preset("gs") is True

    @pytest.mark.asyncio
    async def test_runs_command(self, tmp_path: Path):
        generator = CommandPresetGenerator([sys.executable, "-c", _WRITE_SUMMARY, str(tmp_path)], tmp_path)
        path = await generator.generate("sr", force=True)
        assert path == tmp_path / "sr" / "summary.json"
        assert path.is_file()

    @pytest.mark.asyncio
    async def test_failing_command_returns_none(self, tmp_path: Path):
        generator = CommandPresetGenerator([sys.executable, "-c", "raise SystemExit(3)"], tmp_path)
        assert await generator.generate("gs") is None

    def test_satisfies_protocol(self, tmp_path: Path):
        assert isinstance(CommandPresetGenerator([], tmp_path), PresetGenerator)
