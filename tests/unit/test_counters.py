"""Unit tests for keygate/counters.py — RateLimiter and FailureGuard.

Counters run over MemoryUsageLedger + MemoryCounterCache on the simulated
clock, and a real KeyStore so auto-blocking writes the blocked flag. The
concurrency cases use SQLiteUsageLedger so concurrent callers interleave.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from keygate.cache.memory import MemoryCounterCache
from keygate.cache.protocol import FAILURE_COUNTER, RATE_COUNTER, counter_key
from keygate.counters import FailureGuard, RateLimiter
from keygate.keys.modes import HashedMode
from keygate.keys.store import KeyStore
from keygate.timeframe import LimitWindow
from keygate.usage.models import FAILURE, SUCCESS
from keygate.usage.protocol import MemoryUsageLedger
from keygate.usage.sqlite_backend import SQLiteUsageLedger


@pytest.fixture
def ledger(clock) -> MemoryUsageLedger:
    return MemoryUsageLedger(clock=clock)


@pytest.fixture
def cache(clock) -> MemoryCounterCache:
    return MemoryCounterCache(timer=clock.seconds)


@pytest.fixture
async def store(tmp_path: Path, clock) -> KeyStore:
    s = KeyStore(str(tmp_path / "keys.db"), mode=HashedMode(), clock=clock)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def key_id(store: KeyStore) -> str:
    await store.generate("42")
    return await store.has_key("42")


def make_guard(ledger, cache, store, clock, limit: int = 3) -> FailureGuard:
    return FailureGuard(ledger, cache, store, limit=limit, window=LimitWindow.HOUR, clock=clock)


def make_limiter(ledger, cache, clock, limit: int = 3) -> RateLimiter:
    return RateLimiter(ledger, cache, limit=limit, window=LimitWindow.HOUR, clock=clock)


# ─── FailureGuard ─────────────────────────────────────────────────────────────


class TestFailureGuard:
    async def test_blocks_on_reaching_limit(self, ledger, cache, store, clock, key_id) -> None:
        guard = make_guard(ledger, cache, store, clock)

        assert await guard.record_failure_and_check(key_id) is False
        assert await guard.record_failure_and_check(key_id) is False
        assert await store.get_status(key_id) is False

        assert await guard.record_failure_and_check(key_id) is True
        assert await store.get_status(key_id) is True

    async def test_writes_one_failure_per_call(self, ledger, cache, store, clock, key_id) -> None:
        guard = make_guard(ledger, cache, store, clock, limit=10)
        await guard.record_failure_and_check(key_id)
        await guard.record_failure_and_check(key_id)
        assert [e.outcome for e in ledger.events] == [FAILURE, FAILURE]

    async def test_counter_cleared_after_block(self, ledger, cache, store, clock, key_id) -> None:
        guard = make_guard(ledger, cache, store, clock)
        for _ in range(3):
            await guard.record_failure_and_check(key_id)
        assert await cache.get(counter_key(FAILURE_COUNTER, key_id)) is None

    async def test_failures_outside_window_not_counted(
        self, ledger, cache, store, clock, key_id
    ) -> None:
        guard = make_guard(ledger, cache, store, clock)
        await guard.record_failure_and_check(key_id)
        await guard.record_failure_and_check(key_id)

        clock.advance(minutes=61)
        assert await guard.record_failure_and_check(key_id) is False
        assert await cache.get(counter_key(FAILURE_COUNTER, key_id)) == 1
        assert await store.get_status(key_id) is False

    async def test_seeds_from_ledger_after_cache_loss(
        self, ledger, cache, store, clock, key_id
    ) -> None:
        guard = make_guard(ledger, cache, store, clock)
        await guard.record_failure_and_check(key_id)
        await guard.record_failure_and_check(key_id)

        await cache.delete(counter_key(FAILURE_COUNTER, key_id))

        assert await guard.record_failure_and_check(key_id) is True
        assert await store.get_status(key_id) is True

    async def test_counts_failures_written_elsewhere(
        self, ledger, cache, store, clock, key_id
    ) -> None:
        guard = make_guard(ledger, cache, store, clock)
        await ledger.record(key_id, FAILURE)
        await ledger.record(key_id, SUCCESS)

        # Cold counter seeds from the ledger: 1 earlier failure + this one.
        assert await guard.record_failure_and_check(key_id) is False
        assert await cache.get(counter_key(FAILURE_COUNTER, key_id)) == 2
        assert await guard.record_failure_and_check(key_id) is True

    async def test_already_blocked_still_reports_block(
        self, ledger, cache, store, clock, key_id
    ) -> None:
        guard = make_guard(ledger, cache, store, clock, limit=1)
        await store.set_blocked(key_id, True)
        assert await guard.record_failure_and_check(key_id) is True

    async def test_zero_limit_disables(self, ledger, cache, store, clock, key_id) -> None:
        guard = make_guard(ledger, cache, store, clock, limit=0)
        assert guard.enabled is False
        for _ in range(5):
            assert await guard.record_failure_and_check(key_id) is False
            assert await guard.check(key_id) is False
        assert ledger.events == []
        assert await store.get_status(key_id) is False


class TestFailureGuardCheck:
    async def test_cold_counter_passes(self, ledger, cache, store, clock, key_id) -> None:
        guard = make_guard(ledger, cache, store, clock)
        for _ in range(3):
            await ledger.record(key_id, FAILURE)

        # Read-only: never seeds from the ledger, never writes it.
        assert await guard.check(key_id) is False
        assert await cache.get(counter_key(FAILURE_COUNTER, key_id)) is None
        assert len(ledger.events) == 3
        assert await store.get_status(key_id) is False

    async def test_below_limit_passes(self, ledger, cache, store, clock, key_id) -> None:
        guard = make_guard(ledger, cache, store, clock)
        await guard.record_failure_and_check(key_id)
        await guard.record_failure_and_check(key_id)
        assert await guard.check(key_id) is False
        assert await cache.get(counter_key(FAILURE_COUNTER, key_id)) == 2

    async def test_counter_at_limit_blocks(self, ledger, cache, store, clock, key_id) -> None:
        guard = make_guard(ledger, cache, store, clock)
        await cache.set(counter_key(FAILURE_COUNTER, key_id), 3, 3600)

        assert await guard.check(key_id) is True
        assert await store.get_status(key_id) is True
        assert await cache.get(counter_key(FAILURE_COUNTER, key_id)) is None
        assert ledger.events == []


# ─── FailureGuard under concurrency ───────────────────────────────────────────


@pytest.fixture
async def sqlite_ledger(tmp_path: Path, clock) -> SQLiteUsageLedger:
    backend = SQLiteUsageLedger(str(tmp_path / "usage.db"), clock=clock)
    await backend.initialize()
    yield backend
    await backend.close()


class TestFailureGuardConcurrency:
    async def test_cold_counter_loses_no_failures(
        self, sqlite_ledger, cache, store, clock, key_id
    ) -> None:
        guard = make_guard(sqlite_ledger, cache, store, clock, limit=100)

        await asyncio.gather(*(guard.record_failure_and_check(key_id) for _ in range(8)))

        summary = await sqlite_ledger.summarize(key_id, None)
        assert summary.failure_count == 8
        assert await cache.get(counter_key(FAILURE_COUNTER, key_id)) >= 8

    async def test_threshold_crossed_once(
        self, sqlite_ledger, cache, store, clock, key_id, monkeypatch
    ) -> None:
        fake_logger = MagicMock()
        monkeypatch.setattr("keygate.counters.logger", fake_logger)
        guard = make_guard(sqlite_ledger, cache, store, clock)

        results = await asyncio.gather(
            *(guard.record_failure_and_check(key_id) for _ in range(6))
        )

        assert any(results)
        assert await store.get_status(key_id) is True
        blocked_events = [
            c for c in fake_logger.warning.call_args_list if c.args[0] == "api_key_auto_blocked"
        ]
        assert len(blocked_events) == 1

# ─── RateLimiter ──────────────────────────────────────────────────────────────


class TestRateLimiter:
    async def test_exceeded_at_limit(self, ledger, cache, clock) -> None:
        limiter = make_limiter(ledger, cache, clock)
        for _ in range(2):
            await ledger.record("key-1", SUCCESS)
        assert await limiter.exceeded("key-1") is False

        await ledger.record("key-1", FAILURE)
        await limiter.note_event("key-1")
        assert await limiter.exceeded("key-1") is True

    async def test_counts_both_outcomes(self, ledger, cache, clock) -> None:
        limiter = make_limiter(ledger, cache, clock)
        await ledger.record("key-1", SUCCESS)
        await ledger.record("key-1", FAILURE)
        await ledger.record("key-1", FAILURE)
        assert await limiter.exceeded("key-1") is True

    async def test_never_writes_ledger(self, ledger, cache, clock) -> None:
        limiter = make_limiter(ledger, cache, clock)
        for _ in range(5):
            await limiter.exceeded("key-1")
        assert ledger.events == []

    async def test_seeded_count_is_cached(self, ledger, cache, clock) -> None:
        limiter = make_limiter(ledger, cache, clock)
        await ledger.record("key-1", SUCCESS)
        await limiter.exceeded("key-1")
        assert await cache.get(counter_key(RATE_COUNTER, "key-1")) == 1

        await limiter.note_event("key-1")
        assert await cache.get(counter_key(RATE_COUNTER, "key-1")) == 2

    async def test_cached_count_reseeds_after_ttl(self, ledger, cache, clock) -> None:
        limiter = make_limiter(ledger, cache, clock)
        await limiter.exceeded("key-1")
        for _ in range(3):
            await ledger.record("key-1", SUCCESS)
        # Stale without note_event until the short count TTL lapses.
        assert await limiter.exceeded("key-1") is False

        clock.advance(seconds=61)
        assert await limiter.exceeded("key-1") is True

    async def test_window_slides(self, ledger, cache, clock) -> None:
        limiter = make_limiter(ledger, cache, clock)
        for _ in range(3):
            await ledger.record("key-1", SUCCESS)
        clock.advance(minutes=61)
        assert await limiter.exceeded("key-1") is False

    async def test_independent_of_failure_counter(self, ledger, cache, store, clock, key_id) -> None:
        limiter = make_limiter(ledger, cache, clock, limit=100)
        guard = make_guard(ledger, cache, store, clock, limit=100)
        await guard.record_failure_and_check(key_id)
        await limiter.exceeded(key_id)
        assert await cache.get(counter_key(RATE_COUNTER, key_id)) == 1
        assert await cache.get(counter_key(FAILURE_COUNTER, key_id)) == 1

    async def test_zero_limit_disables(self, ledger, cache, clock) -> None:
        limiter = make_limiter(ledger, cache, clock, limit=0)
        for _ in range(10):
            await ledger.record("key-1", SUCCESS)
        assert limiter.enabled is False
        assert await limiter.exceeded("key-1") is False
