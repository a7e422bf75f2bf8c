"""One scheduling tick for one domain.

Range mode sequences three batches per tick, never interleaved:

1. up to ``retry_first`` UIDs whose retry time has come,
2. up to ``rescan.first`` UIDs whose last success is older than
   ``rescan.after_sec`` (excluding anything already served this tick),
3. fresh UIDs from the durable cursor, which advances only past UIDs
   that reached a terminal outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from panelscan.config.scan_policies import DomainScanConfig, UidSelection, select_uids
from panelscan.errors import ConfigError
from panelscan.gate.daily_gate import DailyGate
from panelscan.services.batch import BatchRunner, BatchSummary
from panelscan.store.progress import CrawlProgressStore, cursor_key

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    domain: str
    gated: bool = False
    batches: dict[str, BatchSummary] = field(default_factory=dict)
    cursor: int | None = None
    exhausted: bool = False

    @property
    def dispatched(self) -> int:
        return sum(b.total for b in self.batches.values())

    @property
    def samples(self) -> int:
        return sum(b.samples for b in self.batches.values())

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "gated": self.gated,
            "cursor": self.cursor,
            "exhausted": self.exhausted,
            "batches": {name: b.to_dict() for name, b in self.batches.items()},
        }


class DomainScanner:
    """Plans and runs scan ticks.

    Args:
        runner: Executes batches.
        store: Cursor and retry/rescan source.
        configs: Resolved scan configuration per domain.
        gate: Optional daily completion gate, checked before any network work.
    """

    def __init__(
        self,
        runner: BatchRunner,
        store: CrawlProgressStore,
        configs: Mapping[str, DomainScanConfig],
        gate: DailyGate | None = None,
    ) -> None:
        self._runner = runner
        self._store = store
        self._configs = configs
        self._gate = gate
        self._list_positions: dict[str, int] = {}

    def config_for(self, domain: str) -> DomainScanConfig:
        config = self._configs.get(domain)
        if config is None:
            raise ConfigError(f"No scan configuration for domain '{domain}'", domain=domain)
        return config

    async def scan(self, domain: str, budget: int | None = None, force: bool = False) -> ScanResult:
        """Run one tick of at most ``budget`` UIDs (default ``max_count``)."""
        result = ScanResult(domain=domain)
        if self._gate is not None and await self._gate.should_skip(domain, force=force):
            result.gated = True
            return result

        config = self.config_for(domain)
        selection = select_uids(domain, config)
        budget = config.max_count if budget is None else budget
        if budget <= 0:
            return result

        if selection.mode == "list":
            await self._scan_list(domain, selection, budget, config, result)
        elif selection.mode == "window":
            uids = list(range(selection.start, selection.start + min(selection.count, budget)))
            result.batches["window"] = await self._runner.run(domain, uids, config)
        else:
            await self._scan_range(domain, selection, budget, config, result)
        return result

    async def _scan_list(
        self,
        domain: str,
        selection: UidSelection,
        budget: int,
        config: DomainScanConfig,
        result: ScanResult,
    ) -> None:
        position = self._list_positions.get(domain, 0)
        if position >= len(selection.uids):
            logger.info("Explicit uid list finished, starting over", extra={"domain": domain})
            position = 0
        uids = list(selection.uids[position : position + budget])
        summary = await self._runner.run(domain, uids, config)
        result.batches["list"] = summary
        resolved = len(uids)
        if summary.unresolved:
            resolved = min(uids.index(uid) for uid in summary.unresolved)
        self._list_positions[domain] = position + resolved
        result.cursor = self._list_positions[domain]

    async def _scan_range(
        self,
        domain: str,
        selection: UidSelection,
        budget: int,
        config: DomainScanConfig,
        result: ScanResult,
    ) -> None:
        served: set[int] = set()
        remaining = budget

        retry_limit = min(config.retry_first, remaining)
        if retry_limit > 0:
            retry_uids = await self._store.list_due_retry_uids(domain, retry_limit)
            if retry_uids:
                result.batches["retry"] = await self._runner.run(domain, retry_uids, config)
                served.update(retry_uids)
                remaining -= len(retry_uids)

        rescan = config.rescan
        rescan_limit = min(rescan.first, remaining)
        if rescan.enabled and rescan_limit > 0:
            stale = await self._store.list_stale_uids(
                domain,
                rescan_limit + len(served),
                min_age_seconds=rescan.after_sec,
                uid_min=selection.start,
                uid_max=selection.end,
            )
            rescan_uids = [uid for uid in stale if uid not in served][:rescan_limit]
            if rescan_uids:
                result.batches["rescan"] = await self._runner.run(domain, rescan_uids, config)
                served.update(rescan_uids)
                remaining -= len(rescan_uids)

        key = cursor_key(domain, selection.start, selection.end)
        next_uid = await self._store.get_cursor(key, selection.start)
        result.cursor = next_uid
        if next_uid > selection.end:
            result.exhausted = True
            logger.info("Range exhausted", extra={"domain": domain, "cursor": key})
            return
        if remaining <= 0:
            return

        last = min(selection.end, next_uid + remaining - 1)
        fresh = [uid for uid in range(next_uid, last + 1) if uid not in served]
        summary = await self._runner.run(domain, fresh, config)
        result.batches["fresh"] = summary

        advance_to = min(summary.unresolved) if summary.unresolved else last + 1
        if advance_to > next_uid:
            result.cursor = await self._store.set_cursor(key, advance_to)
        if result.cursor > selection.end:
            result.exhausted = True
