"""GET /health — liveness and backend status.

Returns:
  200 {"status": "ok", "keystore": "ok", "ledger": "ok", "cache": "ok"}
  503 {"status": "starting"}                   — before lifespan startup completes
  503 {"status": "degraded", ...}              — any backend health_check() fails
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=None)
async def health(request: Request) -> dict[str, Any] | JSONResponse:
    if not getattr(request.app.state, "ready", False):
        return JSONResponse(status_code=503, content={"status": "starting"})

    ctx = request.app.state.keygate
    checks = {
        "keystore": await ctx.store.health_check(),
        "ledger": await ctx.ledger.health_check(),
        "cache": await ctx.cache.health_check(),
    }
    body: dict[str, Any] = {name: "ok" if ok else "error" for name, ok in checks.items()}

    if not all(checks.values()):
        body["status"] = "degraded"
        return JSONResponse(status_code=503, content=body)

    body["status"] = "ok"
    return body
