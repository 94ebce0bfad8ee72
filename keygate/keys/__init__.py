"""KeyGate key store package.

    from keygate.keys import KeyStore, ApiKeyRecord, HashedMode, EncryptedMode

Layout:
    models.py — ApiKeyRecord
    modes.py  — DigestMode Protocol + HashedMode | EncryptedMode + lookup_digest()
    store.py  — KeyStore (aiosqlite) + UnknownKeyError
"""

from keygate.keys.models import ApiKeyRecord
from keygate.keys.modes import DigestMode, EncryptedMode, HashedMode, lookup_digest, mode_for
from keygate.keys.store import KeyStore, UnknownKeyError

__all__ = [
    "ApiKeyRecord",
    "DigestMode",
    "EncryptedMode",
    "HashedMode",
    "KeyStore",
    "UnknownKeyError",
    "lookup_digest",
    "mode_for",
]
