"""ApiKeyRecord — the at-rest representation of one owner's API key.

Column names double as the wire format read by admin UIs:
    id, owner_id, secret_digest, lookup_digest, sample,
    created_at, expires_at, blocked

IMPORTANT: the raw secret is never a field here. secret_digest is either a
SHA-256 hex digest (hashed mode) or an AES-256-CBC blob (encrypted mode);
sample holds only the last 6 characters.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    """ULID — stable for the record's lifetime."""
    owner_id: str
    """External account id. Unique across the table."""
    secret_digest: str
    """Hash or ciphertext of the raw secret, depending on the active mode."""
    lookup_digest: str
    """SHA-256 of the raw secret in both modes — the indexed lookup column."""
    sample: str
    """Last 6 characters of the raw secret, for display."""
    created_at: datetime
    expires_at: Optional[datetime] = None
    """None means the key never expires."""
    blocked: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    @property
    def masked(self) -> str:
        """Display form, e.g. ``'…a1B2c3'``."""
        return f"…{self.sample}"

    def to_public_dict(self) -> dict[str, Any]:
        """Admin listing representation — no digests."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "sample": self.sample,
            "masked_key": self.masked,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "blocked": self.blocked,
        }
