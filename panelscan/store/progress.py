"""Durable crawl progress: cursors, retry queue, rescan selection, gate rows.

Every public operation opens its own SQLite connection and closes it when
done; no handle is held between operations. The database runs in WAL mode
so the status reader and several scanners can share one file.

Timestamps are epoch seconds (``time.time()``).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable

import aiosqlite

from panelscan.errors import StoreIOError

logger = logging.getLogger(__name__)

RETRY_BASE_SECONDS = 30.0
RETRY_MAX_SECONDS = 30 * 60.0

_SCHEMA = """
CREATE TABLE IF NOT EXISTS uid_state (
    domain TEXT NOT NULL,
    uid INTEGER NOT NULL,
    status INTEGER,
    permanent INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    fail_count INTEGER NOT NULL DEFAULT 0,
    last_checked_at REAL,
    last_success_at REAL,
    next_retry_at REAL,
    updated_at REAL,
    PRIMARY KEY (domain, uid)
);
CREATE INDEX IF NOT EXISTS idx_uid_state_next_retry ON uid_state(domain, next_retry_at);
CREATE INDEX IF NOT EXISTS idx_uid_state_last_success ON uid_state(domain, last_success_at);

CREATE TABLE IF NOT EXISTS scan_cursor (
    name TEXT PRIMARY KEY,
    next_uid INTEGER NOT NULL,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS rate_limit (
    name TEXT PRIMARY KEY,
    next_at REAL NOT NULL,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS daily_gate (
    domain TEXT NOT NULL,
    day TEXT NOT NULL,
    done INTEGER NOT NULL DEFAULT 0,
    done_at REAL,
    total_entities INTEGER NOT NULL DEFAULT 0,
    qualified_entities INTEGER NOT NULL DEFAULT 0,
    detail_json TEXT,
    updated_at REAL,
    PRIMARY KEY (domain, day)
);
"""


def cursor_key(domain: str, range_start: int, range_end: int) -> str:
    """Cursor name for one configured range: ``scan:<domain>:<start>-<end>``."""
    return f"scan:{domain.lower()}:{range_start}-{range_end}"


def retry_backoff_seconds(fail_count: int) -> float:
    """30s, 60s, 120s ... capped at 30 minutes."""
    exponent = min(10, max(1, fail_count) - 1)
    return min(RETRY_MAX_SECONDS, RETRY_BASE_SECONDS * 2**exponent)


@dataclass(frozen=True)
class FailureOutcome:
    fail_count: int
    next_retry_at: float | None
    exhausted: bool


@dataclass(frozen=True)
class DailyGateRow:
    domain: str
    day: str
    done: bool
    done_at: float | None
    total_entities: int
    qualified_entities: int
    detail: dict
    updated_at: float | None


class CrawlProgressStore:
    """SQLite-backed progress store.

    Args:
        db_path: Database file; parent directories are created.
        max_fail_count: Failures after which a UID leaves the retry queue.
        busy_timeout_ms: SQLite busy timeout for concurrent writers.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        max_fail_count: int = 8,
        busy_timeout_ms: int = 8000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = Path(db_path)
        self.max_fail_count = max_fail_count
        self._busy_timeout_ms = busy_timeout_ms
        self._clock = clock

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _connect(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """One connection for one logical operation; SQLite errors become StoreIOError."""
        try:
            async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
                db.row_factory = aiosqlite.Row
                await db.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
                await db.execute("PRAGMA synchronous=NORMAL")
                yield db
        except sqlite3.Error as exc:
            logger.error("Progress store %s failed: %s", operation, exc)
            raise StoreIOError(f"Progress store {operation} failed: {exc}", operation=operation) from exc

    async def initialize(self) -> None:
        """Create the database file and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect("initialize") as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(_SCHEMA)
        logger.info("Progress store ready at %s", self.db_path)

    # ------------------------------------------------------------------
    # Cursors
    # ------------------------------------------------------------------

    async def get_cursor(self, key: str, fallback_start: int) -> int:
        async with self._connect("get_cursor") as db:
            async with db.execute("SELECT next_uid FROM scan_cursor WHERE name = ?", (key,)) as cur:
                row = await cur.fetchone()
        return int(row["next_uid"]) if row else fallback_start

    async def set_cursor(self, key: str, next_uid: int) -> int:
        """Advance a cursor; a lower value never replaces a higher one.

        Returns the stored value.
        """
        now = self._clock()
        async with self._connect("set_cursor") as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute("SELECT next_uid FROM scan_cursor WHERE name = ?", (key,)) as cur:
                row = await cur.fetchone()
            if row is not None and int(row["next_uid"]) > next_uid:
                await db.execute("COMMIT")
                logger.warning(
                    "Refusing to move cursor %s back from %d to %d",
                    key,
                    row["next_uid"],
                    next_uid,
                    extra={"cursor": key},
                )
                return int(row["next_uid"])
            await db.execute(
                "INSERT INTO scan_cursor (name, next_uid, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET next_uid = excluded.next_uid, updated_at = excluded.updated_at",
                (key, next_uid, now),
            )
            await db.execute("COMMIT")
        return next_uid

    async def reset_cursor(self, key: str, next_uid: int | None = None) -> None:
        """Explicit reset: delete the cursor, or force it to ``next_uid``."""
        async with self._connect("reset_cursor") as db:
            if next_uid is None:
                await db.execute("DELETE FROM scan_cursor WHERE name = ?", (key,))
            else:
                await db.execute(
                    "INSERT INTO scan_cursor (name, next_uid, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(name) DO UPDATE SET next_uid = excluded.next_uid, updated_at = excluded.updated_at",
                    (key, next_uid, self._clock()),
                )
        logger.info("Cursor %s reset", key, extra={"cursor": key})

    # ------------------------------------------------------------------
    # Retry / rescan selection
    # ------------------------------------------------------------------

    async def list_due_retry_uids(self, domain: str, limit: int, now: float | None = None) -> list[int]:
        """At most ``limit`` UIDs whose retry time has come, oldest-due first."""
        if limit <= 0:
            return []
        now = self._clock() if now is None else now
        async with self._connect("list_due_retry_uids") as db:
            async with db.execute(
                "SELECT uid FROM uid_state "
                "WHERE domain = ? AND permanent = 0 AND next_retry_at IS NOT NULL AND next_retry_at <= ? "
                "ORDER BY next_retry_at ASC, uid ASC LIMIT ?",
                (domain.lower(), now, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [int(r["uid"]) for r in rows]

    async def list_stale_uids(
        self,
        domain: str,
        limit: int,
        *,
        min_age_seconds: float,
        uid_min: int | None = None,
        uid_max: int | None = None,
        now: float | None = None,
    ) -> list[int]:
        """Successful UIDs older than ``min_age_seconds``, oldest success first.

        UIDs currently queued for retry are never returned, so the retry and
        rescan lists are disjoint.
        """
        if limit <= 0 or min_age_seconds <= 0:
            return []
        now = self._clock() if now is None else now
        lo = uid_min if uid_min is not None else 0
        hi = uid_max if uid_max is not None else 9_999_999_999
        lo, hi = min(lo, hi), max(lo, hi)
        async with self._connect("list_stale_uids") as db:
            async with db.execute(
                "SELECT uid FROM uid_state "
                "WHERE domain = ? AND permanent = 0 AND next_retry_at IS NULL "
                "AND last_success_at IS NOT NULL AND last_success_at <= ? "
                "AND uid BETWEEN ? AND ? "
                "ORDER BY last_success_at ASC, uid ASC LIMIT ?",
                (domain.lower(), now - min_age_seconds, lo, hi, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [int(r["uid"]) for r in rows]

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def get_uid_state(self, domain: str, uid: int) -> dict | None:
        async with self._connect("get_uid_state") as db:
            async with db.execute(
                "SELECT * FROM uid_state WHERE domain = ? AND uid = ?", (domain.lower(), uid)
            ) as cur:
                row = await cur.fetchone()
        return dict(row) if row else None

    async def record_success(self, domain: str, uid: int, at: float | None = None, status: int = 200) -> None:
        """Clear any retry entry and stamp ``last_success_at``."""
        at = self._clock() if at is None else at
        async with self._connect("record_success") as db:
            await db.execute(
                "INSERT INTO uid_state (domain, uid, status, permanent, last_error, fail_count, "
                "last_checked_at, last_success_at, next_retry_at, updated_at) "
                "VALUES (?, ?, ?, 0, NULL, 0, ?, ?, NULL, ?) "
                "ON CONFLICT(domain, uid) DO UPDATE SET status = excluded.status, permanent = 0, "
                "last_error = NULL, fail_count = 0, last_checked_at = excluded.last_checked_at, "
                "last_success_at = excluded.last_success_at, next_retry_at = NULL, "
                "updated_at = excluded.updated_at",
                (domain.lower(), uid, status, at, at, at),
            )

    async def record_failure(
        self,
        domain: str,
        uid: int,
        *,
        status: int | None = None,
        error: str | None = None,
        retry_after: float | None = None,
        now: float | None = None,
    ) -> FailureOutcome:
        """Increment the failure count and schedule the next retry.

        The delay is ``retry_after`` when given (rate limits), otherwise the
        exponential backoff for the new failure count. Once the count reaches
        ``max_fail_count`` the UID leaves the retry queue for good.
        """
        now = self._clock() if now is None else now
        key = (domain.lower(), uid)
        async with self._connect("record_failure") as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute(
                "SELECT fail_count, status, last_error FROM uid_state WHERE domain = ? AND uid = ?", key
            ) as cur:
                prev = await cur.fetchone()
            fail_count = (int(prev["fail_count"]) if prev else 0) + 1
            exhausted = fail_count >= self.max_fail_count
            delay = retry_after if retry_after is not None else retry_backoff_seconds(fail_count)
            next_retry_at = None if exhausted else now + delay
            await db.execute(
                "INSERT INTO uid_state (domain, uid, status, permanent, last_error, fail_count, "
                "last_checked_at, next_retry_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(domain, uid) DO UPDATE SET status = excluded.status, "
                "permanent = excluded.permanent, last_error = excluded.last_error, "
                "fail_count = excluded.fail_count, last_checked_at = excluded.last_checked_at, "
                "next_retry_at = excluded.next_retry_at, updated_at = excluded.updated_at",
                (
                    *key,
                    status if status is not None else (prev["status"] if prev else None),
                    1 if exhausted else 0,
                    error if error is not None else (prev["last_error"] if prev else None),
                    fail_count,
                    now,
                    next_retry_at,
                    now,
                ),
            )
            await db.execute("COMMIT")

        if exhausted:
            logger.warning(
                "UID %d gave up after %d failures",
                uid,
                fail_count,
                extra={"domain": domain, "uid": uid, "error_reason": error},
            )
        return FailureOutcome(fail_count=fail_count, next_retry_at=next_retry_at, exhausted=exhausted)

    async def mark_permanent(
        self,
        domain: str,
        uid: int,
        *,
        status: int | None = None,
        error: str | None = None,
    ) -> None:
        """Record a terminal outcome (not found / unparseable); never retried."""
        now = self._clock()
        async with self._connect("mark_permanent") as db:
            await db.execute(
                "INSERT INTO uid_state (domain, uid, status, permanent, last_error, fail_count, "
                "last_checked_at, next_retry_at, updated_at) VALUES (?, ?, ?, 1, ?, 1, ?, NULL, ?) "
                "ON CONFLICT(domain, uid) DO UPDATE SET status = COALESCE(excluded.status, uid_state.status), "
                "permanent = 1, last_error = COALESCE(excluded.last_error, uid_state.last_error), "
                "fail_count = uid_state.fail_count + 1, last_checked_at = excluded.last_checked_at, "
                "next_retry_at = NULL, updated_at = excluded.updated_at",
                (domain.lower(), uid, status, error, now, now),
            )

    async def should_skip_uid(self, domain: str, uid: int, now: float | None = None) -> tuple[bool, str]:
        """Permanent UIDs and UIDs whose retry time has not come are skipped."""
        state = await self.get_uid_state(domain, uid)
        if state is None:
            return False, ""
        if state["permanent"]:
            return True, f"permanent status={state['status'] or ''}".strip()
        now = self._clock() if now is None else now
        if state["next_retry_at"] is not None and state["next_retry_at"] > now:
            return True, f"retry_at={state['next_retry_at']:.0f}"
        return False, ""

    # ------------------------------------------------------------------
    # Shared rate limiting
    # ------------------------------------------------------------------

    async def reserve_rate_limit(self, name: str, interval_seconds: float, now: float | None = None) -> float:
        """Reserve the next slot on a shared schedule; returns seconds to wait."""
        if interval_seconds <= 0 or not name:
            return 0.0
        now = self._clock() if now is None else now
        async with self._connect("reserve_rate_limit") as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute("SELECT next_at FROM rate_limit WHERE name = ?", (name,)) as cur:
                    row = await cur.fetchone()
                current = float(row["next_at"]) if row else 0.0
                wait = max(0.0, current - now)
                await db.execute(
                    "INSERT INTO rate_limit (name, next_at, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(name) DO UPDATE SET next_at = excluded.next_at, updated_at = excluded.updated_at",
                    (name, max(current, now) + interval_seconds, now),
                )
                await db.execute("COMMIT")
            except sqlite3.Error:
                await db.execute("ROLLBACK")
                raise
        return wait

    # ------------------------------------------------------------------
    # Daily gate rows
    # ------------------------------------------------------------------

    async def get_daily_gate(self, domain: str, day: str) -> DailyGateRow | None:
        async with self._connect("get_daily_gate") as db:
            async with db.execute(
                "SELECT * FROM daily_gate WHERE domain = ? AND day = ?", (domain.lower(), day)
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        try:
            detail = json.loads(row["detail_json"]) if row["detail_json"] else {}
        except json.JSONDecodeError:
            detail = {}
        return DailyGateRow(
            domain=row["domain"],
            day=row["day"],
            done=bool(row["done"]),
            done_at=row["done_at"],
            total_entities=int(row["total_entities"]),
            qualified_entities=int(row["qualified_entities"]),
            detail=detail,
            updated_at=row["updated_at"],
        )

    async def set_daily_gate(
        self,
        domain: str,
        day: str,
        *,
        done: bool,
        total_entities: int,
        qualified_entities: int,
        detail: dict,
    ) -> None:
        now = self._clock()
        async with self._connect("set_daily_gate") as db:
            await db.execute(
                "INSERT INTO daily_gate (domain, day, done, done_at, total_entities, qualified_entities, "
                "detail_json, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(domain, day) DO UPDATE SET done = excluded.done, done_at = excluded.done_at, "
                "total_entities = excluded.total_entities, qualified_entities = excluded.qualified_entities, "
                "detail_json = excluded.detail_json, updated_at = excluded.updated_at",
                (
                    domain.lower(),
                    day,
                    1 if done else 0,
                    now if done else None,
                    total_entities,
                    qualified_entities,
                    json.dumps(detail, ensure_ascii=False),
                    now,
                ),
            )
