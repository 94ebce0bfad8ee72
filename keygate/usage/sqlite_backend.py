"""SQLiteUsageLedger — aiosqlite-based usage ledger.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent reads while writing)
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Append-only: record() is the only write; no per-row deletes at request time
  - Range counts on (key_id, outcome, occurred_at) — never loads full rows

occurred_at is stored as a fixed-width UTC ISO 8601 string
(keygate.timeframe.to_utc_iso), so lexical comparison equals time order.
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Optional

import aiosqlite

from keygate.errors import BackendUnavailableError
from keygate.timeframe import Clock, to_utc_iso, utcnow
from keygate.usage.models import FAILURE, SUCCESS, Outcome, UsageEvent, UsageSummary
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS usage_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    key_id          TEXT NOT NULL,
    occurred_at     TEXT NOT NULL,
    outcome         TEXT NOT NULL CHECK(outcome IN ('success', 'failure'))
);

CREATE INDEX IF NOT EXISTS idx_usage_key_time
    ON usage_events(key_id, occurred_at);

CREATE INDEX IF NOT EXISTS idx_usage_key_outcome_time
    ON usage_events(key_id, outcome, occurred_at);
"""

_SCHEMA_VERSION = 1


# ─── SQLiteUsageLedger ────────────────────────────────────────────────────────


class SQLiteUsageLedger:
    """Async SQLite usage ledger.

    Default path: ~/.keygate/usage.db
    Override via: storage.usage_db_path / KEYGATE_USAGE_DB_PATH

    Usage:
        ledger = SQLiteUsageLedger("~/.keygate/usage.db")
        await ledger.initialize()
        await ledger.record(key_id, "failure")
        n = await ledger.count_since(key_id, None, since)
        await ledger.close()
    """

    def __init__(self, db_path: str = "~/.keygate/usage.db", clock: Clock = utcnow) -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode, and create/verify the schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "usage_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "usage_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported usage database schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("usage_db_closed", db_path=self._db_path)

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise BackendUnavailableError("Usage ledger not initialized", backend="usage")
        return self._db

    # ── UsageLedger Protocol Methods ──────────────────────────────────────────

    async def record(self, key_id: str, outcome: Outcome) -> UsageEvent:
        """Append one event. Raises BackendUnavailableError — never swallows."""
        event = UsageEvent(key_id=key_id, occurred_at=self._clock(), outcome=outcome)
        try:
            await self._conn().execute(
                "INSERT INTO usage_events (key_id, occurred_at, outcome) VALUES (?, ?, ?)",
                (event.key_id, to_utc_iso(event.occurred_at), event.outcome),
            )
            await self._conn().commit()
        except aiosqlite.Error as exc:
            logger.error(
                "usage_write_failed",
                key_id=key_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise BackendUnavailableError(str(exc), backend="usage") from exc
        return event

    async def count_since(
        self, key_id: str, outcome: Optional[Outcome], since: datetime
    ) -> int:
        sql = "SELECT COUNT(*) FROM usage_events WHERE key_id = ? AND occurred_at > ?"
        params: list[Any] = [key_id, to_utc_iso(since)]
        if outcome is not None:
            sql += " AND outcome = ?"
            params.append(outcome)
        row = await self._fetch_one(sql, params)
        return row[0] if row else 0

    async def summarize(self, key_id: str, since: Optional[datetime]) -> UsageSummary:
        """Success/failure counts and MAX(occurred_at) in one scan."""
        sql = (
            "SELECT "
            "  SUM(CASE WHEN outcome = ? THEN 1 ELSE 0 END) AS success_count, "
            "  SUM(CASE WHEN outcome = ? THEN 1 ELSE 0 END) AS failure_count, "
            "  MAX(occurred_at) AS last_used "
            "FROM usage_events WHERE key_id = ?"
        )
        params: list[Any] = [SUCCESS, FAILURE, key_id]
        if since is not None:
            sql += " AND occurred_at > ?"
            params.append(to_utc_iso(since))

        row = await self._fetch_one(sql, params)
        if row is None:
            return UsageSummary()
        last_used = row["last_used"]
        return UsageSummary(
            success_count=row["success_count"] or 0,
            failure_count=row["failure_count"] or 0,
            last_used=datetime.fromisoformat(last_used) if last_used else None,
        )

    async def health_check(self) -> bool:
        """Returns True if the DB connection is alive and queryable."""
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False

    async def _fetch_one(self, sql: str, params: list[Any]) -> Optional[aiosqlite.Row]:
        try:
            async with self._conn().execute(sql, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise BackendUnavailableError(str(exc), backend="usage") from exc
