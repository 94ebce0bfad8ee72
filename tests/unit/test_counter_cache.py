"""Unit tests for keygate/cache — MemoryCounterCache, RedisCounterCache, factory.

MemoryCounterCache runs on the simulated clock's seconds timer, so TTL expiry
is tested by advancing the clock. RedisCounterCache is tested against an
AsyncMock client: the assertions pin the exact commands it issues (SET NX EX,
the increment-if-exists script) and the RedisError → BackendUnavailableError
mapping.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from keygate.cache.factory import create_counter_cache
from keygate.cache.memory import MemoryCounterCache
from keygate.cache.protocol import FAILURE_COUNTER, RATE_COUNTER, CounterCache, counter_key
from keygate.cache.redis_backend import RedisCounterCache
from keygate.config import CacheConfig
from keygate.errors import BackendUnavailableError


class TestCounterKey:
    def test_namespaced_per_kind(self) -> None:
        assert counter_key(RATE_COUNTER, "01HX") == "keygate:rate:01HX"
        assert counter_key(FAILURE_COUNTER, "01HX") == "keygate:failures:01HX"
        assert counter_key(RATE_COUNTER, "01HX") != counter_key(FAILURE_COUNTER, "01HX")


# ─── MemoryCounterCache ───────────────────────────────────────────────────────


@pytest.fixture
def memory_cache(clock) -> MemoryCounterCache:
    return MemoryCounterCache(timer=clock.seconds)


class TestMemoryCounterCache:
    async def test_satisfies_protocol(self, memory_cache: MemoryCounterCache) -> None:
        assert isinstance(memory_cache, CounterCache)
        assert await memory_cache.health_check() is True

    async def test_get_missing_is_none(self, memory_cache: MemoryCounterCache) -> None:
        assert await memory_cache.get("k") is None

    async def test_set_and_get(self, memory_cache: MemoryCounterCache) -> None:
        await memory_cache.set("k", 5, ttl_s=60)
        assert await memory_cache.get("k") == 5

    async def test_entry_expires_after_ttl(self, memory_cache: MemoryCounterCache, clock) -> None:
        await memory_cache.set("k", 5, ttl_s=60)
        clock.advance(seconds=59)
        assert await memory_cache.get("k") == 5
        clock.advance(seconds=2)
        assert await memory_cache.get("k") is None

    async def test_add_only_when_absent(self, memory_cache: MemoryCounterCache) -> None:
        assert await memory_cache.add("k", 1, ttl_s=60) is True
        assert await memory_cache.add("k", 9, ttl_s=60) is False
        assert await memory_cache.get("k") == 1

    async def test_add_after_expiry(self, memory_cache: MemoryCounterCache, clock) -> None:
        await memory_cache.add("k", 1, ttl_s=10)
        clock.advance(seconds=11)
        assert await memory_cache.add("k", 4, ttl_s=10) is True
        assert await memory_cache.get("k") == 4

    async def test_incr_existing_never_creates(self, memory_cache: MemoryCounterCache) -> None:
        assert await memory_cache.incr_existing("k") is None
        assert await memory_cache.get("k") is None

    async def test_incr_existing_keeps_expiry(self, memory_cache: MemoryCounterCache, clock) -> None:
        await memory_cache.add("k", 1, ttl_s=60)
        clock.advance(seconds=50)
        assert await memory_cache.incr_existing("k") == 2
        assert await memory_cache.incr_existing("k") == 3
        clock.advance(seconds=11)
        assert await memory_cache.get("k") is None

    async def test_delete(self, memory_cache: MemoryCounterCache) -> None:
        await memory_cache.set("k", 1, ttl_s=60)
        await memory_cache.delete("k")
        await memory_cache.delete("never-set")
        assert await memory_cache.get("k") is None

    async def test_close_clears(self, memory_cache: MemoryCounterCache) -> None:
        await memory_cache.set("k", 1, ttl_s=60)
        await memory_cache.close()
        assert await memory_cache.get("k") is None


# ─── RedisCounterCache ────────────────────────────────────────────────────────


@pytest.fixture
def redis_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def redis_cache(redis_client: AsyncMock) -> RedisCounterCache:
    return RedisCounterCache(redis_client)


class TestRedisCounterCache:
    async def test_get_parses_int(self, redis_cache, redis_client) -> None:
        redis_client.get.return_value = "7"
        assert await redis_cache.get("k") == 7
        redis_client.get.return_value = None
        assert await redis_cache.get("k") is None

    async def test_set_uses_expiry(self, redis_cache, redis_client) -> None:
        await redis_cache.set("k", 3, ttl_s=3600)
        redis_client.set.assert_awaited_once_with("k", 3, ex=3600)

    async def test_add_is_set_nx(self, redis_cache, redis_client) -> None:
        redis_client.set.return_value = True
        assert await redis_cache.add("k", 2, ttl_s=60) is True
        redis_client.set.assert_awaited_once_with("k", 2, ex=60, nx=True)

        redis_client.set.return_value = None
        assert await redis_cache.add("k", 2, ttl_s=60) is False

    async def test_zero_ttl_clamped_to_one_second(self, redis_cache, redis_client) -> None:
        await redis_cache.add("k", 1, ttl_s=0)
        assert redis_client.set.await_args.kwargs["ex"] == 1

    async def test_incr_existing_runs_script(self, redis_cache, redis_client) -> None:
        redis_client.eval.return_value = 4
        assert await redis_cache.incr_existing("k") == 4
        script, numkeys, key = redis_client.eval.await_args.args
        assert "EXISTS" in script and "INCR" in script
        assert (numkeys, key) == (1, "k")

    async def test_incr_existing_absent(self, redis_cache, redis_client) -> None:
        redis_client.eval.return_value = None
        assert await redis_cache.incr_existing("k") is None

    async def test_delete(self, redis_cache, redis_client) -> None:
        await redis_cache.delete("k")
        redis_client.delete.assert_awaited_once_with("k")

    @pytest.mark.parametrize(
        "method, args",
        [
            ("get", ("k",)),
            ("set", ("k", 1, 60)),
            ("add", ("k", 1, 60)),
            ("incr_existing", ("k",)),
            ("delete", ("k",)),
        ],
    )
    async def test_redis_errors_become_backend_unavailable(
        self, redis_cache, redis_client, method, args
    ) -> None:
        for name in ("get", "set", "eval", "delete"):
            getattr(redis_client, name).side_effect = RedisConnectionError("refused")

        with pytest.raises(BackendUnavailableError) as exc_info:
            await getattr(redis_cache, method)(*args)
        assert exc_info.value.backend == "redis"

    async def test_health_check(self, redis_cache, redis_client) -> None:
        redis_client.ping.return_value = True
        assert await redis_cache.health_check() is True
        redis_client.ping.side_effect = RedisConnectionError("down")
        assert await redis_cache.health_check() is False

    async def test_close(self, redis_cache, redis_client) -> None:
        await redis_cache.close()
        redis_client.aclose.assert_awaited_once()


# ─── Factory ──────────────────────────────────────────────────────────────────


class TestFactory:
    def test_default_is_memory(self) -> None:
        assert isinstance(create_counter_cache(CacheConfig()), MemoryCounterCache)

    async def test_redis_url_selects_redis(self) -> None:
        cache = create_counter_cache(CacheConfig(redis_url="redis://localhost:6379/0"))
        assert isinstance(cache, RedisCounterCache)
        await cache.close()
