"""RedisCounterCache — shared counter backend on redis.asyncio.

Used when ``cache.redis_url`` (or KEYGATE_REDIS_URL) is set, so that every
worker process sees the same rate and failure counters.

Atomicity:
  - add()            — SET key value NX EX ttl (one command)
  - incr_existing()  — Lua script: INCR only if the key exists, one round trip.
                       The key's TTL is untouched by INCR.

Every RedisError is re-raised as BackendUnavailableError so the gate fails
closed.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from keygate.errors import BackendUnavailableError
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

_INCR_IF_EXISTS = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return redis.call('INCR', KEYS[1])
end
return nil
"""


class RedisCounterCache:
    """Redis-backed CounterCache.

    Usage:
        cache = RedisCounterCache.from_url("redis://localhost:6379/0")
        await cache.add("keygate:failures:01HX...", 3, ttl_s=3600)
        n = await cache.incr_existing("keygate:failures:01HX...")
        await cache.close()
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisCounterCache":
        client = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        return cls(client)

    async def get(self, key: str) -> Optional[int]:
        try:
            value = await self._client.get(key)
        except RedisError as exc:
            raise self._unavailable("get", exc) from exc
        return int(value) if value is not None else None

    async def set(self, key: str, value: int, ttl_s: int) -> None:
        try:
            await self._client.set(key, value, ex=max(ttl_s, 1))
        except RedisError as exc:
            raise self._unavailable("set", exc) from exc

    async def add(self, key: str, value: int, ttl_s: int) -> bool:
        try:
            stored = await self._client.set(key, value, ex=max(ttl_s, 1), nx=True)
        except RedisError as exc:
            raise self._unavailable("add", exc) from exc
        return bool(stored)

    async def incr_existing(self, key: str) -> Optional[int]:
        try:
            value = await self._client.eval(_INCR_IF_EXISTS, 1, key)
        except RedisError as exc:
            raise self._unavailable("incr_existing", exc) from exc
        return int(value) if value is not None else None

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise self._unavailable("delete", exc) from exc

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("redis_counter_cache_closed")

    @staticmethod
    def _unavailable(operation: str, exc: Exception) -> BackendUnavailableError:
        logger.error(
            "counter_cache_error",
            operation=operation,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return BackendUnavailableError(f"Counter cache {operation} failed: {exc}", backend="redis")
