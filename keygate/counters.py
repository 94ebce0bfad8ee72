"""RateLimiter and FailureGuard — window-bounded counters over the usage ledger.

Both counters are derived from the ledger and cached in a CounterCache; the
ledger stays the source of truth and every cache miss is re-seeded from it
against a fresh ``now``. They are independent: separate cache keys,
separate windows.

RateLimiter
    Counts every outcome in ``max_rate_limit_time``. The cached count lives for
    a fixed short TTL (COUNT_CACHE_TTL_S) regardless of the window. It is
    read-only with respect to the ledger; the gate calls note_event() after
    each ledger write so a warm cached count tracks new events.

FailureGuard
    Counts failures in ``failure_limit_time``. Only attempts that failed
    (blocked, expired, inactive owner) write a failure through
    record_failure_and_check(); allowed requests never touch it. The cached
    counter's TTL is the failure window itself. Crossing the threshold blocks
    the key through KeyStore.set_blocked() and clears the counter.

A limit of 0 disables either counter.
"""

from __future__ import annotations

from keygate.cache.protocol import FAILURE_COUNTER, RATE_COUNTER, CounterCache, counter_key
from keygate.constants import COUNT_CACHE_TTL_S
from keygate.keys.store import KeyStore
from keygate.timeframe import Clock, LimitWindow, utcnow
from keygate.usage.models import FAILURE
from keygate.usage.protocol import UsageLedger
from keygate.utils.logger import get_logger

logger = get_logger(__name__)


class RateLimiter:
    def __init__(
        self,
        ledger: UsageLedger,
        cache: CounterCache,
        limit: int,
        window: LimitWindow,
        clock: Clock = utcnow,
        count_ttl_s: int = COUNT_CACHE_TTL_S,
    ) -> None:
        self._ledger = ledger
        self._cache = cache
        self.limit = limit
        self.window = window
        self._clock = clock
        self._count_ttl_s = count_ttl_s

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    async def exceeded(self, key_id: str) -> bool:
        """True when the key already has ``limit`` or more events in the window.

        Does not append to the ledger.
        """
        if not self.enabled:
            return False

        key = counter_key(RATE_COUNTER, key_id)
        count = await self._cache.get(key)
        if count is None:
            count = await self._ledger.count_since(key_id, None, self.window.since(self._clock()))
            await self._cache.add(key, count, self._count_ttl_s)

        return count >= self.limit

    async def note_event(self, key_id: str) -> None:
        """Advance a warm cached count by one; a cold count is left for the next seed."""
        if self.enabled:
            await self._cache.incr_existing(counter_key(RATE_COUNTER, key_id))


class FailureGuard:
    def __init__(
        self,
        ledger: UsageLedger,
        cache: CounterCache,
        store: KeyStore,
        limit: int,
        window: LimitWindow,
        clock: Clock = utcnow,
    ) -> None:
        self._ledger = ledger
        self._cache = cache
        self._store = store
        self.limit = limit
        self.window = window
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    async def record_failure_and_check(self, key_id: str) -> bool:
        """Append a failure event, bump the failure counter, block at the threshold.

        Called for attempts that actually failed. Returns True when the key is
        blocked as a result of this call.
        """
        if not self.enabled:
            return False

        await self._ledger.record(key_id, FAILURE)

        key = counter_key(FAILURE_COUNTER, key_id)
        count = await self._cache.incr_existing(key)
        if count is None:
            # Seed from the ledger (includes the event just written) so an
            # evicted or restarted cache does not reset the count to 1.
            count = await self._ledger.count_since(
                key_id, FAILURE, self.window.since(self._clock())
            )
            if not await self._cache.add(key, count, self.window.seconds):
                # A concurrent caller seeded first: count on top of its value.
                count = await self._cache.incr_existing(key) or count

        if count < self.limit:
            return False

        await self._block(key_id, count)
        return True

    async def check(self, key_id: str) -> bool:
        """True when the warm failure counter already sits at the threshold.

        Read-only against the ledger. Catches a key whose counter was pushed
        over the limit by a concurrent failing attempt that has not finished
        blocking it yet; the key is blocked here as well.
        """
        if not self.enabled:
            return False

        count = await self._cache.get(counter_key(FAILURE_COUNTER, key_id))
        if count is None or count < self.limit:
            return False

        await self._block(key_id, count)
        return True

    async def _block(self, key_id: str, count: int) -> None:
        # Only the caller that flips the flag logs the event.
        changed = await self._store.set_blocked(key_id, True)
        await self._cache.delete(counter_key(FAILURE_COUNTER, key_id))
        if changed:
            logger.warning(
                "api_key_auto_blocked",
                key_id=key_id,
                failures=count,
                limit=self.limit,
                window=self.window.value,
            )
