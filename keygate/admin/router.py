"""Admin API endpoints for key management.

Provides (mounted under /admin/api):
  POST   /keys                          — issue a key for an owner (raw key shown once)
  POST   /keys/{owner_id}/regenerate    — replace an owner's key, keeping its expiry
  DELETE /keys/{owner_id}               — revoke an owner's key (idempotent)
  POST   /keys/{key_id}/toggle-block    — flip the blocked flag
  GET    /keys                          — list keys (sample only, never digests)
  GET    /keys/{key_id}/usage?window=   — success/failure counts and last use
  GET    /keys/{owner_id}/reveal        — decrypt an owner's key (encrypted mode only)
  POST   /keys/generate-all             — issue keys for every active owner without one
  POST   /keys/rotate                   — reissue all keys if the encryption config changed

Every endpoint requires ``Authorization: Bearer <KEYGATE_ADMIN_TOKEN>`` and is
rate limited by slowapi. With KEYGATE_ADMIN_TOKEN unset the admin API is
disabled (HTTP 403).

Error mapping (handlers registered in keygate/main.py):
  UnknownKeyError          → 404
  CryptoFailure            → 500 (generic message)
  BackendUnavailableError  → 503
"""

from __future__ import annotations

import os
import secrets
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from keygate.admin.limiter import BULK_OPERATION_RATE_LIMIT, KEY_MANAGEMENT_RATE_LIMIT, limiter
from keygate.context import KeyGateContext
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["api-keys"])

_ENV_ADMIN_TOKEN = "KEYGATE_ADMIN_TOKEN"


# ─── Dependencies ─────────────────────────────────────────────────────────────


def _admin_token() -> Optional[str]:
    """Read KEYGATE_ADMIN_TOKEN per request so tests can monkeypatch.setenv()."""
    return os.environ.get(_ENV_ADMIN_TOKEN) or None


async def require_admin(request: Request) -> None:
    expected = _admin_token()
    if expected is None:
        raise HTTPException(status_code=403, detail="Admin API disabled")

    authorization = request.headers.get("Authorization", "")
    scheme, _, presented = authorization.partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(
        presented.strip().encode(), expected.encode()
    ):
        logger.warning(
            "admin_auth_failed",
            path=str(request.url.path),
            client_ip=request.client.host if request.client else None,
        )
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_context(request: Request) -> KeyGateContext:
    return request.app.state.keygate


# ─── Request Models ───────────────────────────────────────────────────────────


class GenerateKeyRequest(BaseModel):
    owner_id: str
    expires_at: Optional[datetime] = None
    """Omit for a key that never expires."""


class GenerateAllRequest(BaseModel):
    owner_ids: Optional[list[str]] = None
    """Defaults to every owner the identity provider knows."""
    expires_at: Optional[datetime] = None


class RotateRequest(BaseModel):
    force: bool = False
    """Reissue every key even if the encryption configuration is unchanged."""


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/keys", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def create_key(
    body: GenerateKeyRequest,
    request: Request,
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    """Issue a key. The raw key is returned ONCE in this response."""
    raw = await ctx.generate_key(body.owner_id, body.expires_at)
    record = await ctx.store.get_by_owner(body.owner_id)
    return {
        "key": raw,
        "id": record.id if record else None,
        "owner_id": body.owner_id,
        "masked_key": record.masked if record else None,
        "expires_at": body.expires_at.isoformat() if body.expires_at else None,
        "message": "Store this key securely — it will not be shown again.",
    }


@router.post("/keys/generate-all", dependencies=[Depends(require_admin)])
@limiter.limit(BULK_OPERATION_RATE_LIMIT)
async def generate_all(
    body: GenerateAllRequest,
    request: Request,
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    created = await ctx.generate_for_owners(body.owner_ids, body.expires_at)
    return {"created": created}


@router.post("/keys/rotate", dependencies=[Depends(require_admin)])
@limiter.limit(BULK_OPERATION_RATE_LIMIT)
async def rotate_keys(
    body: RotateRequest,
    request: Request,
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    """Reissue every key after an encryption mode/key change.

    The new raw keys are returned once, keyed by owner id, for delivery.
    """
    regenerated = await ctx.rotate_and_regenerate_all(force=body.force)
    return {"regenerated": len(regenerated), "keys": regenerated}


@router.post("/keys/{owner_id}/regenerate", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def regenerate_key(
    owner_id: str,
    request: Request,
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    raw = await ctx.regenerate_key(owner_id)
    record = await ctx.store.get_by_owner(owner_id)
    return {
        "key": raw,
        "id": record.id if record else None,
        "owner_id": owner_id,
        "masked_key": record.masked if record else None,
        "message": "Store this key securely — it will not be shown again.",
    }


@router.delete("/keys/{owner_id}", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def revoke_key(
    owner_id: str,
    request: Request,
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    revoked = await ctx.revoke_key(owner_id)
    return {"owner_id": owner_id, "revoked": revoked}


@router.post("/keys/{key_id}/toggle-block", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def toggle_block(
    key_id: str,
    request: Request,
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    blocked = await ctx.toggle_block(key_id)
    return {"id": key_id, "blocked": blocked}


@router.get("/keys", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def list_keys(
    request: Request,
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    records = await ctx.list_keys()
    return {"keys": [record.to_public_dict() for record in records]}


@router.get("/keys/{key_id}/usage", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def key_usage(
    key_id: str,
    request: Request,
    window: str = Query("24h"),
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    try:
        summary = await ctx.usage_since(key_id, window)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": key_id, "window": window, **summary.to_dict()}


@router.get("/keys/{owner_id}/reveal", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def reveal_key(
    owner_id: str,
    request: Request,
    ctx: KeyGateContext = Depends(get_context),
) -> dict:
    if await ctx.store.has_key(owner_id) is None:
        raise HTTPException(status_code=404, detail="No API key for this owner")
    raw = await ctx.reveal(owner_id)
    if raw is None:
        raise HTTPException(
            status_code=409, detail="This key is not stored reversibly"
        )
    logger.info("api_key_revealed", owner_id=owner_id)
    return {"owner_id": owner_id, "key": raw}
