"""At-rest digest strategies: HashedMode | EncryptedMode.

Both modes share one lookup path: a SHA-256 ``lookup_digest`` of the raw
secret stored in a uniquely indexed column. Lookup is therefore a single
indexed equality query in either mode — ciphertexts are never scanned or
decrypted during authentication (IV randomization makes them unindexable).

The modes differ only in ``secret_digest``:
  - HashedMode:    secret_digest == lookup_digest (irreversible)
  - EncryptedMode: secret_digest == CryptoBox.encrypt(raw) (revealable)
"""

from __future__ import annotations

import hashlib
from typing import Optional, Protocol, runtime_checkable

from keygate.crypto import CryptoBox


def lookup_digest(raw_secret: str) -> str:
    """SHA-256 hex digest used for indexed lookup in every mode."""
    return hashlib.sha256(raw_secret.encode("utf-8")).hexdigest()


@runtime_checkable
class DigestMode(Protocol):
    """Strategy for the storable ``secret_digest`` of a raw secret."""

    name: str

    def storable(self, raw_secret: str) -> str:
        """Value written to secret_digest. May raise CryptoFailure."""
        ...

    def reveal(self, secret_digest: str) -> Optional[str]:
        """Recover the raw secret, or None when the mode is irreversible."""
        ...

    def fingerprint(self) -> str:
        """Fingerprint of the mode (and key) — changes trigger regeneration."""
        ...


class HashedMode:
    """Irreversible storage: only the SHA-256 digest is kept."""

    name = "hashed"

    def __init__(self, box: Optional[CryptoBox] = None) -> None:
        self._box = box or CryptoBox(None)

    def storable(self, raw_secret: str) -> str:
        return lookup_digest(raw_secret)

    def reveal(self, secret_digest: str) -> Optional[str]:
        return None

    def fingerprint(self) -> str:
        return self._box.fingerprint(use_encryption=False)


class EncryptedMode:
    """Reversible storage: AES-256-CBC ciphertext of the raw secret."""

    name = "encrypted"

    def __init__(self, box: CryptoBox) -> None:
        self._box = box

    def storable(self, raw_secret: str) -> str:
        return self._box.encrypt(raw_secret)

    def reveal(self, secret_digest: str) -> Optional[str]:
        return self._box.decrypt(secret_digest)

    def fingerprint(self) -> str:
        return self._box.fingerprint(use_encryption=True)


def mode_for(use_encryption: bool, box: CryptoBox) -> DigestMode:
    """Select the digest strategy for the ``use_encryption`` policy flag."""
    return EncryptedMode(box) if use_encryption else HashedMode(box)
