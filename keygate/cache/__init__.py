"""KeyGate counter cache package.

    from keygate.cache import CounterCache, MemoryCounterCache, create_counter_cache

Layout:
    protocol.py      — CounterCache Protocol + counter_key()
    memory.py        — MemoryCounterCache (cachetools)
    redis_backend.py — RedisCounterCache (redis.asyncio)
    factory.py       — create_counter_cache() — backend selection by config
"""

from keygate.cache.factory import create_counter_cache
from keygate.cache.memory import MemoryCounterCache
from keygate.cache.protocol import (
    FAILURE_COUNTER,
    RATE_COUNTER,
    CounterCache,
    counter_key,
)

__all__ = [
    "CounterCache",
    "FAILURE_COUNTER",
    "MemoryCounterCache",
    "RATE_COUNTER",
    "counter_key",
    "create_counter_cache",
]
