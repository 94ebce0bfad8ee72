"""Shared constants for KeyGate.

Sizes, TTLs and defaults used across modules are defined here.
No magic numbers in other modules — import from here.
"""

# ─── Key Material ─────────────────────────────────────────────────────────────

# Bytes of CSPRNG output behind every raw secret (encoded urlsafe-base64, 43 chars).
SECRET_BYTES: int = 32

# Trailing characters of the raw secret kept for display in admin views.
SAMPLE_LENGTH: int = 6

# ─── Encryption (AES-256-CBC) ─────────────────────────────────────────────────

# AES-256 requires exactly 32 bytes of key material.
ENCRYPTION_KEY_BYTES: int = 32

# CBC initialization vector length == AES block size.
CIPHER_IV_BYTES: int = 16

# Fingerprint stored for hashed mode, where there is no encryption key to hash.
HASHED_MODE_FINGERPRINT_INPUT: str = "mode:hashed"

# ─── Counters ─────────────────────────────────────────────────────────────────

# Rate-limit counts are read-through cached for this long, independent of the
# configured window, to bound ledger reads under high QPS.
COUNT_CACHE_TTL_S: int = 60

# Cache key namespace: one counter per (key_id, kind).
CACHE_KEY_PREFIX: str = "keygate"

# ─── Backend Bounds ───────────────────────────────────────────────────────────

# Store/cache calls slower than this are treated as unavailable (fail closed).
DEFAULT_BACKEND_TIMEOUT_MS: int = 2000

# ─── Policy Defaults ──────────────────────────────────────────────────────────

DEFAULT_AUTH_HEADER: str = "X-API-KEY"
DEFAULT_QUERY_PARAM: str = "api_key"
DEFAULT_FAILURE_LIMIT: int = 100
DEFAULT_MAX_RATE_LIMIT: int = 100
DEFAULT_LIMIT_WINDOW: str = "hour"
