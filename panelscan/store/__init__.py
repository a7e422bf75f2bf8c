"""Durable crawl progress store."""

from panelscan.store.progress import (
    CrawlProgressStore,
    DailyGateRow,
    FailureOutcome,
    cursor_key,
    retry_backoff_seconds,
)

__all__ = [
    "CrawlProgressStore",
    "DailyGateRow",
    "FailureOutcome",
    "cursor_key",
    "retry_backoff_seconds",
]
