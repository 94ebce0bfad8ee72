"""UsageEvent / UsageSummary dataclasses and the Outcome alias.

Every authentication attempt that identifies a key produces exactly one
UsageEvent row, see keygate.gate.pipeline. Events are append-only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

# ─── Type Aliases ─────────────────────────────────────────────────────────────

Outcome = Literal["success", "failure"]

SUCCESS: Outcome = "success"
FAILURE: Outcome = "failure"


# ─── UsageEvent ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UsageEvent:
    key_id: str
    """ApiKeyRecord.id the attempt was made with."""
    occurred_at: datetime
    """UTC time the attempt was recorded."""
    outcome: Outcome


# ─── UsageSummary ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UsageSummary:
    """Report returned by usage_since(): counts per outcome plus last use."""

    success_count: int = 0
    failure_count: int = 0
    last_used: Optional[datetime] = None
    """occurred_at of the newest event in the window, or None."""

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    def to_dict(self) -> dict:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_used": self.last_used.isoformat() if self.last_used else None,
        }
