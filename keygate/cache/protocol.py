"""CounterCache Protocol — the shared counter backend behind both counters.

One integer counter per (key_id, counter kind). Every operation is a single
atomic step on the backend: there is no read-modify-write at the
application layer.

Implementations:
    memory.py        — MemoryCounterCache (cachetools.TLRUCache, per-entry TTL)
    redis_backend.py — RedisCounterCache (redis.asyncio, shared across workers)
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from keygate.constants import CACHE_KEY_PREFIX

RATE_COUNTER = "rate"
FAILURE_COUNTER = "failures"


def counter_key(kind: str, key_id: str) -> str:
    """Namespaced cache key, e.g. ``keygate:failures:01HX...``."""
    return f"{CACHE_KEY_PREFIX}:{kind}:{key_id}"


@runtime_checkable
class CounterCache(Protocol):
    """Async TTL counter store.

    All methods may raise BackendUnavailableError; none of them swallow
    backend failures.
    """

    async def get(self, key: str) -> Optional[int]:
        """Current value, or None when absent or expired."""
        ...

    async def set(self, key: str, value: int, ttl_s: int) -> None:
        """Unconditionally store ``value`` for ``ttl_s`` seconds."""
        ...

    async def add(self, key: str, value: int, ttl_s: int) -> bool:
        """Store only if absent (SET NX). Returns True if this call stored it."""
        ...

    async def incr_existing(self, key: str) -> Optional[int]:
        """Increment an existing counter, keeping its TTL.

        Returns the new value, or None when the key is absent (nothing is
        created in that case).
        """
        ...

    async def delete(self, key: str) -> None:
        ...

    async def health_check(self) -> bool:
        """Returns True if the backend is reachable. Must not raise."""
        ...

    async def close(self) -> None:
        ...
