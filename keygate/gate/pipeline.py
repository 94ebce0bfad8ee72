"""AuthenticationGate — the per-request decision pipeline.

Strictly ordered; each step may short-circuit with Denied:

   1. applicability    — key header or query parameter present, else NOT_APPLICABLE
   2. blacklist        — client IP listed → IP_BLACKLISTED
   3. whitelist        — non-empty whitelist without the IP → IP_NOT_WHITELISTED
   4. path allow-list  — non-empty allow-list without a match → PATH_NOT_ALLOWED
   5. key extraction   — header, then query parameter → NO_KEY_PROVIDED
   6. lookup           — indexed lookup digest → INVALID_KEY
   7. blocked          — failure → KEY_BLOCKED
   8. expired          — failure → KEY_EXPIRED
   9. failure guard    — read-only; counter at the threshold → KEY_BLOCKED
  10. rate limit       — read-only → RATE_LIMITED
  11. owner            — missing/inactive owner, failure → OWNER_INACTIVE
  12. success          — ledger success → Allowed(owner_id, key_id)

Every attempt that identifies a key leaves exactly one ledger event, so each
counts once toward the rate limit. Only failures (steps 7, 8 and 11) go
through the failure guard and count toward ``failure_limit``; a failure that
crosses the threshold blocks the key on the spot.

Every store, ledger and cache call is bounded by ``backend_timeout_s``. A
BackendUnavailableError or a timeout becomes Denied(BACKEND_UNAVAILABLE):
no exception crosses the gate boundary and nothing fails open.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Mapping, Optional, TypeVar

from keygate.constants import DEFAULT_AUTH_HEADER, DEFAULT_QUERY_PARAM
from keygate.counters import FailureGuard, RateLimiter
from keygate.errors import BackendUnavailableError
from keygate.gate.decision import Allowed, Decision, Denied, DenyReason
from keygate.gate.policy import RequestPolicy
from keygate.identity import IdentityProvider
from keygate.keys.store import KeyStore
from keygate.timeframe import Clock, utcnow
from keygate.usage.models import FAILURE, SUCCESS
from keygate.usage.protocol import UsageLedger
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AuthRequest:
    """Transport-neutral view of an inbound request."""

    client_ip: Optional[str]
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)


def _lookup(mapping: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive get; Starlette Headers already are, plain dicts are not."""
    value = mapping.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    return next((v for k, v in mapping.items() if k.lower() == lowered), None)


class AuthenticationGate:
    def __init__(
        self,
        store: KeyStore,
        ledger: UsageLedger,
        rate_limiter: RateLimiter,
        failure_guard: FailureGuard,
        identity: IdentityProvider,
        policy: Optional[RequestPolicy] = None,
        auth_header: str = DEFAULT_AUTH_HEADER,
        query_param: str = DEFAULT_QUERY_PARAM,
        clock: Clock = utcnow,
        backend_timeout_s: Optional[float] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._rate_limiter = rate_limiter
        self._failure_guard = failure_guard
        self._identity = identity
        self._policy = policy or RequestPolicy()
        self._auth_header = auth_header
        self._query_param = query_param
        self._clock = clock
        self._timeout = backend_timeout_s or None

    def applies(self, request: AuthRequest) -> bool:
        return (
            _lookup(request.headers, self._auth_header) is not None
            or self._query_param in request.query
        )

    async def authenticate(self, request: AuthRequest) -> Decision:
        """Run the pipeline. Never raises for store, ledger or cache failures."""
        try:
            return await self._decide(request)
        except (BackendUnavailableError, asyncio.TimeoutError) as exc:
            return self._deny(
                DenyReason.BACKEND_UNAVAILABLE,
                request,
                error=str(exc) or type(exc).__name__,
            )

    async def _decide(self, request: AuthRequest) -> Decision:
        # ── 1. Applicability ──────────────────────────────────────────────────
        if not self.applies(request):
            logger.debug("auth_not_applicable", path=request.path)
            return Denied(DenyReason.NOT_APPLICABLE)

        # ── 2–4. IP and path policy (no key identified: no ledger write) ─────
        policy_reason = self._policy.check(request.client_ip, request.path)
        if policy_reason is not None:
            return self._deny(policy_reason, request)

        # ── 5. Key extraction ─────────────────────────────────────────────────
        raw_secret = _lookup(request.headers, self._auth_header) or request.query.get(
            self._query_param
        )
        if not raw_secret:
            return self._deny(DenyReason.NO_KEY_PROVIDED, request)

        # ── 6. Lookup ─────────────────────────────────────────────────────────
        record = await self._bounded(self._store.lookup_by_raw_secret(raw_secret))
        if record is None:
            return self._deny(DenyReason.INVALID_KEY, request)
        key_id = record.id

        # ── 7. Blocked ────────────────────────────────────────────────────────
        if record.blocked:
            await self._record_failure(key_id)
            return self._deny(DenyReason.KEY_BLOCKED, request, key_id=key_id)

        # ── 8. Expired ────────────────────────────────────────────────────────
        if record.is_expired(self._clock()):
            auto_blocked = await self._record_failure(key_id)
            return self._deny(
                DenyReason.KEY_EXPIRED, request, key_id=key_id, auto_blocked=auto_blocked
            )

        # ── 9. Failure guard (read-only) ──────────────────────────────────────
        if await self._bounded(self._failure_guard.check(key_id)):
            await self._record_failure(key_id)
            return self._deny(DenyReason.KEY_BLOCKED, request, key_id=key_id)

        # ── 10. Rate limit (read-only) ────────────────────────────────────────
        if await self._bounded(self._rate_limiter.exceeded(key_id)):
            return self._deny(DenyReason.RATE_LIMITED, request, key_id=key_id)

        # ── 11. Owner resolution ──────────────────────────────────────────────
        owner = await self._bounded(self._identity.resolve_owner(record.owner_id))
        if owner is None or not owner.active:
            auto_blocked = await self._record_failure(key_id)
            return self._deny(
                DenyReason.OWNER_INACTIVE,
                request,
                key_id=key_id,
                owner_id=record.owner_id,
                auto_blocked=auto_blocked,
            )

        # ── 12. Success ───────────────────────────────────────────────────────
        await self._bounded(self._ledger.record(key_id, SUCCESS))
        await self._bounded(self._rate_limiter.note_event(key_id))
        logger.info(
            "auth_allowed",
            owner_id=record.owner_id,
            key_id=key_id,
            client_ip=request.client_ip,
            path=request.path,
        )
        return Allowed(owner_id=record.owner_id, key_id=key_id)

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        if self._timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def _record_failure(self, key_id: str) -> bool:
        """Write one failure event; True when it pushed the key over failure_limit."""
        if self._failure_guard.enabled:
            blocked = await self._bounded(
                self._failure_guard.record_failure_and_check(key_id)
            )
        else:
            await self._bounded(self._ledger.record(key_id, FAILURE))
            blocked = False
        await self._bounded(self._rate_limiter.note_event(key_id))
        return blocked

    def _deny(self, reason: DenyReason, request: AuthRequest, **extra: Any) -> Denied:
        # Detailed reason is for the audit log only; callers see a generic 401.
        logger.warning(
            "auth_denied",
            reason=reason.value,
            client_ip=request.client_ip,
            path=request.path,
            **extra,
        )
        return Denied(reason)
