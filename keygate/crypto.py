"""Symmetric encryption of API key material — AES-256-CBC.

Used only when ``policy.use_encryption`` is enabled: the raw secret is stored
reversibly so administrators can reveal it later. Lookup never depends on the
ciphertext (see keygate.keys.modes).

Blob format:
    base64( IV[16] || AES-256-CBC( PKCS7(raw) ) )

A fresh random IV is drawn on every encrypt() call, so encrypting the same
value twice never yields the same blob.

Key source: ``policy.encryption_key`` — or the KEYGATE_ENCRYPTION_KEY env var,
which config loading applies as a higher-priority override. The key string
must encode to exactly 32 bytes.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from keygate.constants import (
    CIPHER_IV_BYTES,
    ENCRYPTION_KEY_BYTES,
    HASHED_MODE_FINGERPRINT_INPUT,
)
from keygate.utils.logger import get_logger

logger = get_logger(__name__)


# ─── Exceptions ───────────────────────────────────────────────────────────────


class CryptoFailure(Exception):
    """Raised when key material cannot be produced, encrypted, or decrypted.

    Key generation must abort on this error — no key is issued with weak or
    missing material and no partial record is written.
    """

    code: str = "crypto_failure"

    def __init__(self, message: str = "Cryptographic operation failed") -> None:
        super().__init__(message)
        self.message = message


class InvalidEncryptionKeyError(CryptoFailure):
    """Raised when the configured encryption key is absent or not 32 bytes."""

    code: str = "invalid_key"

    def __init__(self, message: str = "Encryption key is invalid") -> None:
        super().__init__(message)


# ─── CryptoBox ────────────────────────────────────────────────────────────────


class CryptoBox:
    """AES-256-CBC encrypt/decrypt bound to one encryption key.

    The key is validated lazily: constructing a CryptoBox with an empty key is
    allowed (hashed mode never calls encrypt), but encrypt()/decrypt() raise
    InvalidEncryptionKeyError until a valid key is supplied.
    """

    def __init__(self, encryption_key: str | bytes | None) -> None:
        if isinstance(encryption_key, str):
            encryption_key = encryption_key.encode("utf-8")
        self._key: bytes = encryption_key or b""

    @property
    def has_valid_key(self) -> bool:
        return len(self._key) == ENCRYPTION_KEY_BYTES

    def _require_key(self) -> bytes:
        if not self.has_valid_key:
            raise InvalidEncryptionKeyError(
                f"Encryption key must be exactly {ENCRYPTION_KEY_BYTES} bytes "
                f"(got {len(self._key)})"
            )
        return self._key

    def encrypt(self, raw: str | bytes) -> str:
        """Encrypt ``raw`` and return the base64 blob (IV prepended)."""
        key = self._require_key()
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        try:
            iv = os.urandom(CIPHER_IV_BYTES)
        except NotImplementedError as exc:
            raise CryptoFailure("No secure random source available") from exc

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(raw) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt_bytes(self, blob: str) -> bytes:
        """Reverse encrypt(). Raises CryptoFailure on malformed or undecryptable input.

        A wrong key almost always fails the padding check; when it does not,
        the result is garbage — never the original plaintext.
        """
        key = self._require_key()
        try:
            data = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CryptoFailure("Ciphertext is not valid base64") from exc

        iv, ciphertext = data[:CIPHER_IV_BYTES], data[CIPHER_IV_BYTES:]
        if len(iv) != CIPHER_IV_BYTES or not ciphertext or len(ciphertext) % 16:
            raise CryptoFailure("Ciphertext has an invalid length")

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise CryptoFailure("Decryption failed (wrong key or corrupted data)") from exc

    def decrypt(self, blob: str) -> str:
        """Decrypt a blob produced by encrypt() back to the raw string."""
        raw = self.decrypt_bytes(blob)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CryptoFailure("Decrypted value is not valid UTF-8") from exc

    def fingerprint(self, use_encryption: bool) -> str:
        """SHA-256 fingerprint of the active at-rest configuration.

        Covers both the mode and (in encrypted mode) the key, so switching
        mode or replacing the key both register as a rotation.
        """
        if use_encryption:
            material = b"mode:encrypted:" + self._key
        else:
            material = HASHED_MODE_FINGERPRINT_INPUT.encode("utf-8")
        return hashlib.sha256(material).hexdigest()
