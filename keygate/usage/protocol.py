"""UsageLedger Protocol + MemoryUsageLedger.

The ledger is the source of truth for both counters. Unlike an audit trail
it is on the request path, so its methods RAISE BackendUnavailableError
instead of swallowing failures: a ledger that cannot be written must deny
the attempt (fail closed).

Layout:
    models.py         — UsageEvent, UsageSummary, Outcome
    protocol.py       — UsageLedger Protocol + MemoryUsageLedger
    sqlite_backend.py — SQLiteUsageLedger (aiosqlite, WAL mode, PRAGMA version guard)
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from keygate.timeframe import Clock, utcnow
from keygate.usage.models import FAILURE, SUCCESS, Outcome, UsageEvent, UsageSummary
from keygate.utils.logger import get_logger

logger = get_logger(__name__)


# ─── UsageLedger Protocol ─────────────────────────────────────────────────────


@runtime_checkable
class UsageLedger(Protocol):
    """Append-only store of authentication outcomes.

    Implementations: SQLiteUsageLedger (default), MemoryUsageLedger (tests).
    """

    async def record(self, key_id: str, outcome: Outcome) -> UsageEvent:
        """Append one event stamped with the ledger's clock.

        Raises:
            BackendUnavailableError: The event could not be persisted.
        """
        ...

    async def count_since(
        self, key_id: str, outcome: Optional[Outcome], since: datetime
    ) -> int:
        """Count events for ``key_id`` with occurred_at > since.

        ``outcome=None`` counts both outcomes.
        """
        ...

    async def summarize(self, key_id: str, since: Optional[datetime]) -> UsageSummary:
        """Per-outcome counts and newest occurred_at; ``since=None`` is unbounded."""
        ...

    async def health_check(self) -> bool:
        """Returns True if the ledger is operational. Must not raise."""
        ...

    async def close(self) -> None:
        ...


# ─── MemoryUsageLedger ────────────────────────────────────────────────────────


class MemoryUsageLedger:
    """In-process ledger — used in tests and for throwaway deployments.

    Keeps every event in a list; counts are linear scans.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self.events: list[UsageEvent] = []

    async def record(self, key_id: str, outcome: Outcome) -> UsageEvent:
        event = UsageEvent(key_id=key_id, occurred_at=self._clock(), outcome=outcome)
        self.events.append(event)
        return event

    async def count_since(
        self, key_id: str, outcome: Optional[Outcome], since: datetime
    ) -> int:
        return sum(
            1
            for e in self.events
            if e.key_id == key_id
            and e.occurred_at > since
            and (outcome is None or e.outcome == outcome)
        )

    async def summarize(self, key_id: str, since: Optional[datetime]) -> UsageSummary:
        matching = [
            e
            for e in self.events
            if e.key_id == key_id and (since is None or e.occurred_at > since)
        ]
        return UsageSummary(
            success_count=sum(1 for e in matching if e.outcome == SUCCESS),
            failure_count=sum(1 for e in matching if e.outcome == FAILURE),
            last_used=max((e.occurred_at for e in matching), default=None),
        )

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        logger.debug("MemoryUsageLedger.close", events=len(self.events))


# Catches protocol drift at import time.
assert isinstance(MemoryUsageLedger(), UsageLedger), (
    "MemoryUsageLedger does not satisfy UsageLedger protocol — implementation error"
)
