"""KeyGate admin API package — key management endpoints under /admin/api."""

from keygate.admin.limiter import limiter
from keygate.admin.router import require_admin, router

__all__ = ["limiter", "require_admin", "router"]
