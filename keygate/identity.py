"""Identity provider port — maps an owner id to an account.

The account store itself is external. KeyGate only needs to know whether
the owner exists, whether it is active, and what to call it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class Owner:
    owner_id: str
    display_name: str
    active: bool = True


@runtime_checkable
class IdentityProvider(Protocol):
    async def resolve_owner(self, owner_id: str) -> Optional[Owner]:
        """The owner's account, or None when no such account exists."""
        ...

    async def list_owner_ids(self) -> list[str]:
        """Every known owner id — used by bulk key generation."""
        ...


class StaticIdentityProvider:
    """Dict-backed IdentityProvider for single-process deployments and tests.

    Usage:
        identity = StaticIdentityProvider([Owner("42", "alice")])
        identity.add(Owner("43", "bob", active=False))
    """

    def __init__(self, owners: Iterable[Owner] = ()) -> None:
        self._owners: dict[str, Owner] = {o.owner_id: o for o in owners}

    def add(self, owner: Owner) -> None:
        self._owners[owner.owner_id] = owner

    def remove(self, owner_id: str) -> None:
        self._owners.pop(owner_id, None)

    async def resolve_owner(self, owner_id: str) -> Optional[Owner]:
        return self._owners.get(owner_id)

    async def list_owner_ids(self) -> list[str]:
        return sorted(self._owners)

    @classmethod
    def from_mapping(cls, raw: dict) -> "StaticIdentityProvider":
        """Build from ``{owner_id: {"display_name": ..., "active": ...}}``."""
        return cls(
            Owner(
                owner_id=str(owner_id),
                display_name=str((spec or {}).get("display_name", owner_id)),
                active=bool((spec or {}).get("active", True)),
            )
            for owner_id, spec in raw.items()
        )
