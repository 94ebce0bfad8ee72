"""Shared rate limiter for the KeyGate admin API.

Uses slowapi to cap key-management operations per client address. The
Limiter instance is shared between:
  - keygate/admin/router.py  (route decorators)
  - keygate/main.py          (app.state.limiter + SlowAPIMiddleware registration)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

# Default rate limit for key management endpoints
KEY_MANAGEMENT_RATE_LIMIT = "30/minute"

# Batch operations touch every key; keep them rare.
BULK_OPERATION_RATE_LIMIT = "5/minute"
