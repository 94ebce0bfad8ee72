"""Root test configuration for KeyGate.

Shared fixtures:
  - clock         — mutable simulated UTC clock injected into every component
  - owners        — StaticIdentityProvider: 42 alice, 43 bob (inactive), 44 carol
  - make_context  — async factory for a KeyGateContext over tmp_path SQLite stores
                    and an in-memory counter cache driven by the simulated clock
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import pytest

from keygate.cache.memory import MemoryCounterCache
from keygate.config import Config, PolicyConfig, StorageConfig
from keygate.context import KeyGateContext
from keygate.identity import Owner, StaticIdentityProvider

ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"
OTHER_ENCRYPTION_KEY = "fedcba9876543210fedcba9876543210"


class MutableClock:
    """Callable clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def seconds(self) -> float:
        """Seconds timer for MemoryCounterCache, in step with the clock."""
        return self.now.timestamp()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def owners() -> StaticIdentityProvider:
    return StaticIdentityProvider(
        [
            Owner("42", "alice"),
            Owner("43", "bob", active=False),
            Owner("44", "carol"),
        ]
    )


@pytest.fixture
async def make_context(
    tmp_path: Path, clock: MutableClock, owners: StaticIdentityProvider
) -> AsyncIterator[Callable[..., Awaitable[KeyGateContext]]]:
    """Build contexts with policy overrides, e.g. ``await make_context(failure_limit=3)``."""
    built: list[KeyGateContext] = []

    async def _make(**policy_overrides: Any) -> KeyGateContext:
        config = Config(
            policy=replace(PolicyConfig(), **policy_overrides),
            storage=StorageConfig(
                keys_db_path=str(tmp_path / f"keys-{len(built)}.db"),
                usage_db_path=str(tmp_path / f"usage-{len(built)}.db"),
            ),
        )
        ctx = await KeyGateContext.build(
            config,
            identity=owners,
            cache=MemoryCounterCache(timer=clock.seconds),
            clock=clock,
        )
        built.append(ctx)
        return ctx

    yield _make

    for ctx in built:
        await ctx.close()


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset slowapi's in-memory storage so admin tests do not bleed 429s."""
    from keygate.admin.limiter import limiter

    try:
        limiter._storage.reset()
    except Exception:
        pass
