"""KeyGate FastAPI dependency — ``require_api_key()``.

Adapts the Starlette request to an AuthRequest, runs the gate held on
``app.state.keygate`` and raises HTTP 401 for every denial.

CRITICAL INVARIANT: the 401 body is always ``{"error": "Unauthorized"}``.
The detailed DenyReason goes to the ``auth_denied`` log event only, never to
the caller (no oracle distinguishing unknown, blocked and rate-limited keys).
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from keygate.gate.decision import Allowed
from keygate.gate.pipeline import AuthRequest
from keygate.utils.logger import set_request_id
from keygate.utils.ulid import generate_ulid

UNAUTHORIZED_DETAIL = "Unauthorized"


def auth_request_from(request: Request) -> AuthRequest:
    return AuthRequest(
        client_ip=request.client.host if request.client else None,
        path=request.url.path,
        headers=request.headers,
        query=request.query_params,
    )


async def require_api_key(request: Request) -> Allowed:
    """FastAPI dependency: authenticate the caller's API key.

    Returns:
        Allowed(owner_id, key_id) on success.

    Raises:
        HTTPException(401): On any Denied decision, including NOT_APPLICABLE
                            and BACKEND_UNAVAILABLE (fail closed).
    """
    set_request_id(request.headers.get("X-Request-ID") or generate_ulid())

    decision = await request.app.state.keygate.authenticate(auth_request_from(request))
    if not isinstance(decision, Allowed):
        raise HTTPException(status_code=401, detail=UNAUTHORIZED_DETAIL)
    return decision
