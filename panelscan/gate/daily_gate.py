"""Daily completion gate.

One row per (domain, local calendar day). The row becomes ``done`` once
every entity in the domain's roster has a score at or above the configured
threshold in the latest summary. While today's row is done under the
current threshold, scanning that domain is skipped. A row computed under a
different threshold is never trusted.

The gate only saves work: ignoring it can cause redundant scanning, never
wrong output.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Mapping

from panelscan.config.scan_policies import DailyGateConfig
from panelscan.services.collaborators import RosterProvider, ScoreProvider
from panelscan.store.progress import CrawlProgressStore, DailyGateRow

logger = logging.getLogger(__name__)


def local_day(now: datetime | None = None) -> str:
    """Local calendar day as ``YYYY-MM-DD``."""
    return (now or datetime.now()).strftime("%Y-%m-%d")


def is_done_under(row: DailyGateRow | None, threshold: float) -> bool:
    """A done row counts only if it was computed with the same threshold."""
    if row is None or not row.done:
        return False
    stored = row.detail.get("threshold")
    if stored is None:
        return True
    try:
        return float(stored) == float(threshold)
    except (TypeError, ValueError):
        return False


class DailyGate:
    """Per-domain gate backed by the progress store.

    Args:
        store: Where gate rows live.
        configs: Gate configuration per domain.
        score_provider: Reads entity scores from a summary.
        roster_provider: Authoritative entity list per domain.
    """

    def __init__(
        self,
        store: CrawlProgressStore,
        configs: Mapping[str, DailyGateConfig],
        score_provider: ScoreProvider,
        roster_provider: RosterProvider,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._configs = configs
        self._scores = score_provider
        self._roster = roster_provider
        self._clock = clock

    def _threshold(self, domain: str) -> float | None:
        config = self._configs.get(domain)
        if config is None or not config.enabled:
            return None
        return config.threshold_for(domain)

    async def should_skip(self, domain: str, force: bool = False) -> bool:
        """True when today's row is done under the configured threshold."""
        threshold = self._threshold(domain)
        if force or threshold is None:
            return False
        row = await self._store.get_daily_gate(domain, local_day(self._clock()))
        skip = is_done_under(row, threshold)
        if skip:
            logger.info("Daily gate done, skipping scan", extra={"domain": domain})
        return skip

    async def update_from_summary(
        self,
        domain: str,
        summary_path: str | Path,
        force: bool = False,
    ) -> DailyGateRow | None:
        """Recompute today's row from a freshly generated summary.

        Returns the stored row, or None when the gate is disabled or there is
        no summary to read.
        """
        threshold = self._threshold(domain)
        if threshold is None:
            return None

        day = local_day(self._clock())
        previous = await self._store.get_daily_gate(domain, day)
        if not force and is_done_under(previous, threshold):
            return previous

        path = Path(summary_path)
        if not path.exists():
            logger.warning("Summary not found for daily gate: %s", path, extra={"domain": domain})
            return None

        scores = await self._scores.scores(domain, path)
        roster = await self._roster.entity_ids(domain)

        missing: list[dict] = []
        below: list[dict] = []
        qualified = 0
        for entity_id in roster:
            if entity_id not in scores:
                missing.append({"id": entity_id})
                continue
            score = scores[entity_id]
            if score is not None and score >= threshold:
                qualified += 1
            else:
                below.append({"id": entity_id, "score": score})

        total = len(roster)
        done = total > 0 and qualified == total
        detail = {
            "threshold": threshold,
            "summaryPath": str(path),
            "generatedAt": datetime.fromtimestamp(path.stat().st_mtime).isoformat(),
            "missing": missing,
            "below": below,
        }
        await self._store.set_daily_gate(
            domain,
            day,
            done=done,
            total_entities=total,
            qualified_entities=qualified,
            detail=detail,
        )
        logger.info(
            "Daily gate %s: %d/%d qualified (%d missing, %d below %.0f)",
            "done" if done else "open",
            qualified,
            total,
            len(missing),
            len(below),
            threshold,
            extra={"domain": domain},
        )
        return await self._store.get_daily_gate(domain, day)
