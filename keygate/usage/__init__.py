"""KeyGate usage ledger package.

Re-exports the public API for ergonomic imports:

    from keygate.usage import UsageLedger, UsageSummary, SQLiteUsageLedger

Layout:
    models.py         — UsageEvent, UsageSummary, Outcome
    protocol.py       — UsageLedger Protocol + MemoryUsageLedger
    sqlite_backend.py — SQLiteUsageLedger (aiosqlite, WAL mode, PRAGMA version guard)
"""

from keygate.usage.models import (
    FAILURE,
    SUCCESS,
    Outcome,
    UsageEvent,
    UsageSummary,
)
from keygate.usage.protocol import MemoryUsageLedger, UsageLedger
from keygate.usage.sqlite_backend import SQLiteUsageLedger

__all__ = [
    # Type aliases
    "Outcome",
    "SUCCESS",
    "FAILURE",
    # Dataclasses
    "UsageEvent",
    "UsageSummary",
    # Protocol + implementations
    "UsageLedger",
    "MemoryUsageLedger",
    "SQLiteUsageLedger",
]
