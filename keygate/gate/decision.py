"""Authentication decisions: Allowed | Denied(reason).

DenyReason values are for audit logging only. The HTTP layer collapses every
Denied into the same generic 401 so an unauthenticated caller cannot tell
"no such key" from "blocked" from "rate limited".
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class DenyReason(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    """No key header or query parameter: the request belongs to another auth scheme."""
    IP_BLACKLISTED = "ip_blacklisted"
    IP_NOT_WHITELISTED = "ip_not_whitelisted"
    PATH_NOT_ALLOWED = "path_not_allowed"
    NO_KEY_PROVIDED = "no_key_provided"
    INVALID_KEY = "invalid_key"
    KEY_BLOCKED = "key_blocked"
    KEY_EXPIRED = "key_expired"
    RATE_LIMITED = "rate_limited"
    OWNER_INACTIVE = "owner_inactive"
    CRYPTO_FAILURE = "crypto_failure"
    """Key generation/rotation only; never produced by authenticate()."""
    BACKEND_UNAVAILABLE = "backend_unavailable"
    """Store, ledger or cache failed or timed out (fail closed)."""


@dataclass(frozen=True)
class Allowed:
    owner_id: str
    key_id: str

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    reason: DenyReason

    @property
    def allowed(self) -> bool:
        return False


Decision = Union[Allowed, Denied]
