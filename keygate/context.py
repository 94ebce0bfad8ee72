"""KeyGateContext — explicit wiring of every KeyGate component.

There is no module-level service locator: the FastAPI app keeps one
context on ``app.state.keygate`` and every route reaches components through
it. Tests build contexts directly with in-memory collaborators.

Usage:
    ctx = await KeyGateContext.build(load_config())
    raw = await ctx.generate_key("42")
    decision = await ctx.authenticate(AuthRequest("198.51.100.4", "/api/x", {"X-API-KEY": raw}))
    await ctx.close()
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from keygate.cache.factory import create_counter_cache
from keygate.cache.protocol import CounterCache
from keygate.config import Config, PolicyConfig
from keygate.counters import FailureGuard, RateLimiter
from keygate.crypto import CryptoBox
from keygate.gate.decision import Decision
from keygate.gate.pipeline import AuthenticationGate, AuthRequest
from keygate.gate.policy import RequestPolicy
from keygate.identity import IdentityProvider, StaticIdentityProvider
from keygate.keys.models import ApiKeyRecord
from keygate.keys.modes import mode_for
from keygate.keys.store import KeyStore, UnknownKeyError
from keygate.timeframe import Clock, UsageWindow, utcnow
from keygate.usage.models import UsageSummary
from keygate.usage.protocol import UsageLedger
from keygate.usage.sqlite_backend import SQLiteUsageLedger
from keygate.utils.logger import get_logger

logger = get_logger(__name__)


class KeyGateContext:
    def __init__(
        self,
        config: Config,
        store: KeyStore,
        ledger: UsageLedger,
        cache: CounterCache,
        identity: IdentityProvider,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config
        self.store = store
        self.ledger = ledger
        self.cache = cache
        self.identity = identity
        self._clock = clock
        self.gate = self._build_gate()

    @classmethod
    async def build(
        cls,
        config: Config,
        identity: Optional[IdentityProvider] = None,
        cache: Optional[CounterCache] = None,
        clock: Clock = utcnow,
    ) -> "KeyGateContext":
        """Open both SQLite stores and select the counter cache from config.

        Raises:
            RuntimeError: A store's schema version is incompatible.
        """
        box = CryptoBox(config.policy.encryption_key)
        store = KeyStore(
            config.storage.keys_db_path,
            mode=mode_for(config.policy.use_encryption, box),
            clock=clock,
        )
        await store.initialize()

        ledger = SQLiteUsageLedger(config.storage.usage_db_path, clock=clock)
        try:
            await ledger.initialize()
        except Exception:
            await store.close()
            raise

        return cls(
            config=config,
            store=store,
            ledger=ledger,
            cache=cache or create_counter_cache(config.cache),
            identity=identity or StaticIdentityProvider.from_mapping(config.owners),
            clock=clock,
        )

    async def close(self) -> None:
        await self.cache.close()
        await self.ledger.close()
        await self.store.close()

    def _build_gate(self) -> AuthenticationGate:
        policy = self.config.policy
        rate_limiter = RateLimiter(
            self.ledger,
            self.cache,
            limit=policy.max_rate_limit,
            window=policy.max_rate_limit_time,
            clock=self._clock,
            count_ttl_s=self.config.cache.count_ttl_s,
        )
        failure_guard = FailureGuard(
            self.ledger,
            self.cache,
            self.store,
            limit=policy.failure_limit,
            window=policy.failure_limit_time,
            clock=self._clock,
        )
        return AuthenticationGate(
            store=self.store,
            ledger=self.ledger,
            rate_limiter=rate_limiter,
            failure_guard=failure_guard,
            identity=self.identity,
            policy=RequestPolicy.from_config(policy),
            auth_header=policy.custom_auth_header,
            query_param=policy.query_param,
            clock=self._clock,
            backend_timeout_s=self.config.storage.backend_timeout_ms / 1000.0,
        )

    def apply_policy(self, policy: PolicyConfig) -> None:
        """Swap in new policy values (IP lists, paths, limits, encryption mode).

        Changing ``use_encryption`` or ``encryption_key`` only affects new
        writes; call rotate_and_regenerate_all() to reissue existing keys.
        """
        self.config.policy = policy
        self.store.set_mode(mode_for(policy.use_encryption, CryptoBox(policy.encryption_key)))
        self.gate = self._build_gate()
        logger.info(
            "policy_applied",
            use_encryption=policy.use_encryption,
            failure_limit=policy.failure_limit,
            max_rate_limit=policy.max_rate_limit,
            allowed_paths=len(policy.allowed_paths),
        )

    # ── Request path ──────────────────────────────────────────────────────────

    async def authenticate(self, request: AuthRequest) -> Decision:
        return await self.gate.authenticate(request)

    # ── Key lifecycle ─────────────────────────────────────────────────────────

    async def generate_key(self, owner_id: str, expires_at: Optional[datetime] = None) -> str:
        return await self.store.generate(owner_id, expires_at)

    async def revoke_key(self, owner_id: str) -> bool:
        return await self.store.revoke(owner_id)

    async def regenerate_key(self, owner_id: str) -> str:
        return await self.store.regenerate(owner_id)

    async def toggle_block(self, key_id: str) -> bool:
        return await self.store.toggle_block(key_id)

    async def usage_since(self, key_id: str, window: UsageWindow | str) -> UsageSummary:
        """Success/failure counts and last use of ``key_id`` within ``window``.

        Raises:
            UnknownKeyError: If ``key_id`` does not exist.
            ValueError: If ``window`` is not a known usage window.
        """
        if not isinstance(window, UsageWindow):
            window = UsageWindow.parse(window)
        if await self.store.get(key_id) is None:
            raise UnknownKeyError(key_id)
        return await self.ledger.summarize(key_id, window.since(self._clock()))

    async def list_keys(self) -> list[ApiKeyRecord]:
        return await self.store.list_records()

    async def reveal(self, owner_id: str) -> Optional[str]:
        return await self.store.reveal(owner_id)

    # ── Bulk and maintenance ──────────────────────────────────────────────────

    async def generate_for_owners(
        self,
        owner_ids: Optional[Iterable[str]] = None,
        expires_at: Optional[datetime] = None,
    ) -> int:
        """Issue keys to active owners that hold none. Defaults to every known owner."""
        if owner_ids is None:
            owner_ids = await self.identity.list_owner_ids()

        eligible: list[str] = []
        for owner_id in owner_ids:
            owner = await self.identity.resolve_owner(owner_id)
            if owner is None or not owner.active:
                logger.debug("generate_for_owners: skipping owner", owner_id=owner_id)
                continue
            eligible.append(owner_id)
        return await self.store.generate_for_owners(eligible, expires_at)

    async def on_owner_created(self, owner_id: str) -> Optional[str]:
        """Issue a key for a new owner when auto-generation is enabled.

        Returns the raw secret, or None when auto-generation is off or the
        owner already holds a key.
        """
        auto = self.config.auto_generate
        if not auto.enabled:
            return None
        if await self.store.has_key(owner_id) is not None:
            return None
        return await self.store.generate(owner_id, auto.expiry_for_new_owner(self._clock()))

    async def rotate_and_regenerate_all(self, force: bool = False) -> dict[str, str]:
        return await self.store.rotate_and_regenerate_all(force=force)
