"""Shared test fixtures and hypothesis strategies for the scanner test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import pytest_asyncio
from hypothesis import strategies as st

from panelscan.config.settings import PanelScanSettings
from panelscan.resilience.adaptive import ConcurrencyController
from panelscan.runtime.status import RuntimeStatus
from panelscan.store.progress import CrawlProgressStore


# ---------------------------------------------------------------------------
# Keep PANELSCAN_* variables from the developer shell out of tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("PANELSCAN_"):
            monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemorySampleSink:
    """In-memory SampleSink."""

    def __init__(self) -> None:
        self.records: dict[str, list[tuple[int, dict]]] = {}

    async def write(self, domain: str, uid: int, records: list[dict]) -> int:
        self.records.setdefault(domain, []).extend((uid, r) for r in records)
        return len(records)

    def has_samples(self, domain: str) -> bool:
        return bool(self.records.get(domain))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> PanelScanSettings:
    return PanelScanSettings(
        db_path=str(tmp_path / "scan.sqlite"),
        scan_config_path=str(tmp_path / "scan.yaml"),
        samples_dir=str(tmp_path / "samples"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path: Path, clock: FakeClock) -> CrawlProgressStore:
    progress = CrawlProgressStore(tmp_path / "scan.sqlite", clock=clock)
    await progress.initialize()
    return progress


@pytest.fixture
def controller(clock: FakeClock) -> ConcurrencyController:
    return ConcurrencyController(clock=clock)


@pytest.fixture
def runtime_status(controller: ConcurrencyController, clock: FakeClock) -> RuntimeStatus:
    return RuntimeStatus(controller, ["gs", "sr"], clock=clock)


@pytest.fixture
def sample_sink() -> MemorySampleSink:
    return MemorySampleSink()


# ---------------------------------------------------------------------------
# Hypothesis strategies (reusable across property tests)
# ---------------------------------------------------------------------------

domain_ids = st.sampled_from(["gs", "sr", "zzz"])

budgets = st.dictionaries(
    keys=st.sampled_from(["gs", "sr", "zzz", "wuwa"]),
    values=st.integers(min_value=0, max_value=500),
    min_size=1,
    max_size=4,
)

step_sizes = st.integers(min_value=1, max_value=200)

uids = st.integers(min_value=100_000_000, max_value=999_999_999)
