"""MemoryCounterCache — in-process counter cache on cachetools.TLRUCache.

Each entry carries its own absolute expiry, so rate counters (fixed short
TTL) and failure counters (TTL = failure window) share one cache. Counters
are per-process: with several workers, use RedisCounterCache instead.

Operations never await between read and write, so each one is atomic with
respect to other coroutines on the event loop.
"""

from __future__ import annotations

import time
from typing import Callable, NamedTuple, Optional

from cachetools import TLRUCache

from keygate.utils.logger import get_logger

logger = get_logger(__name__)


class _Entry(NamedTuple):
    value: int
    expires: float


def _time_to_use(_key: str, entry: _Entry, _now: float) -> float:
    return entry.expires


class MemoryCounterCache:
    """TTL counter cache held in process memory.

    Args:
        maxsize: Maximum number of counters kept; least recently used go first.
        timer:   Seconds clock. Tests pass one driven by the simulated clock.
    """

    def __init__(self, maxsize: int = 10_000, timer: Callable[[], float] = time.monotonic) -> None:
        self._timer = timer
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_time_to_use, timer=timer)

    async def get(self, key: str) -> Optional[int]:
        entry = self._cache.get(key)
        return entry.value if entry is not None else None

    async def set(self, key: str, value: int, ttl_s: int) -> None:
        self._cache[key] = _Entry(value, self._timer() + ttl_s)

    async def add(self, key: str, value: int, ttl_s: int) -> bool:
        if self._cache.get(key) is not None:
            return False
        self._cache[key] = _Entry(value, self._timer() + ttl_s)
        return True

    async def incr_existing(self, key: str) -> Optional[int]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        updated = _Entry(entry.value + 1, entry.expires)
        self._cache[key] = updated
        return updated.value

    async def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._cache.clear()
        logger.debug("memory_counter_cache_closed")
