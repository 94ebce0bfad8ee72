"""Named time windows for KeyGate counters and usage reports.

Two fixed enumerations:

  - LimitWindow: the buckets selectable for ``failure_limit_time`` and
    ``max_rate_limit_time``. Their string values are persisted in config and
    read by admin UIs, so they must not change.
  - UsageWindow: the spans offered by the usage report (``all`` = unbounded).

Both map a label to a ``timedelta``; callers subtract it from a fresh ``now``
on every call. Nothing here caches a derived timestamp.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware UTC now — the default clock for every component."""
    return datetime.now(timezone.utc)


class LimitWindow(str, Enum):
    """Window buckets for the rate limiter and the failure guard."""

    HALF_HOUR = "half_hour"
    HOUR = "hour"
    HOURS_2 = "hours_2"
    HOURS_3 = "hours_3"
    HOURS_6 = "hours_6"
    HALF_DAY = "half_day"
    DAY = "day"

    @property
    def duration(self) -> timedelta:
        return _LIMIT_DURATIONS[self]

    @property
    def seconds(self) -> int:
        return int(self.duration.total_seconds())

    @property
    def label(self) -> str:
        """Human-readable name, e.g. ``"2 hours"``."""
        return _LIMIT_LABELS[self]

    def since(self, now: datetime) -> datetime:
        """Start of the trailing window ending at ``now``."""
        return now - self.duration

    @classmethod
    def parse(cls, value: str) -> "LimitWindow":
        """Parse a config value. Raises ValueError for unknown buckets."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown window {value!r}. Supported: {[w.value for w in cls]}"
            ) from None


_LIMIT_DURATIONS: dict[LimitWindow, timedelta] = {
    LimitWindow.HALF_HOUR: timedelta(minutes=30),
    LimitWindow.HOUR: timedelta(hours=1),
    LimitWindow.HOURS_2: timedelta(hours=2),
    LimitWindow.HOURS_3: timedelta(hours=3),
    LimitWindow.HOURS_6: timedelta(hours=6),
    LimitWindow.HALF_DAY: timedelta(hours=12),
    LimitWindow.DAY: timedelta(days=1),
}

_LIMIT_LABELS: dict[LimitWindow, str] = {
    LimitWindow.HALF_HOUR: "Half hour",
    LimitWindow.HOUR: "Hour",
    LimitWindow.HOURS_2: "2 hours",
    LimitWindow.HOURS_3: "3 hours",
    LimitWindow.HOURS_6: "6 hours",
    LimitWindow.HALF_DAY: "Half day",
    LimitWindow.DAY: "Day",
}


class UsageWindow(str, Enum):
    """Spans offered by the usage report."""

    ONE_HOUR = "1h"
    TWO_HOURS = "2h"
    THREE_HOURS = "3h"
    SIX_HOURS = "6h"
    ONE_DAY = "24h"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"
    ALL = "all"

    @property
    def duration(self) -> Optional[timedelta]:
        """Span of the window, or None for ``all``."""
        return _USAGE_DURATIONS[self]

    def since(self, now: datetime) -> Optional[datetime]:
        duration = self.duration
        return None if duration is None else now - duration

    @classmethod
    def parse(cls, value: str) -> "UsageWindow":
        """Parse a report window. ``1d`` is accepted as an alias of ``24h``."""
        if value == "1d":
            return cls.ONE_DAY
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown usage window {value!r}. Supported: {[w.value for w in cls]}"
            ) from None


_USAGE_DURATIONS: dict[UsageWindow, Optional[timedelta]] = {
    UsageWindow.ONE_HOUR: timedelta(hours=1),
    UsageWindow.TWO_HOURS: timedelta(hours=2),
    UsageWindow.THREE_HOURS: timedelta(hours=3),
    UsageWindow.SIX_HOURS: timedelta(hours=6),
    UsageWindow.ONE_DAY: timedelta(days=1),
    UsageWindow.SEVEN_DAYS: timedelta(days=7),
    UsageWindow.THIRTY_DAYS: timedelta(days=30),
    UsageWindow.ALL: None,
}


def to_utc_iso(value: datetime) -> str:
    """Fixed-width UTC ISO 8601 string, safe for lexical range comparisons.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
