"""KeyGate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - GET /api/protected — demo resource behind require_api_key()
  - /health — delegated to keygate/health.py
  - /admin/api/* — key management, delegated to keygate/admin/router.py
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()                     → app.state.config
  2. KeyGateContext.build()            → app.state.keygate (opens both SQLite stores)
  3. rotate_and_regenerate_all()       → reissue keys if the encryption config changed
  4. app.state.ready = True

Shutdown (reverse): ready = False → close context (cache, ledger, key store)
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from keygate.admin.limiter import limiter
from keygate.admin.router import router as admin_router
from keygate.config import Config, load_config
from keygate.context import KeyGateContext
from keygate.crypto import CryptoFailure
from keygate.errors import BackendUnavailableError
from keygate.gate.decision import Allowed
from keygate.gate.middleware import require_api_key
from keygate.health import router as health_router
from keygate.keys.store import UnknownKeyError
from keygate.utils.logger import clear_request_id, configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Protected Resource ───────────────────────────────────────────────────────

resource_router = APIRouter(tags=["resource"])


@resource_router.get("/api/protected")
async def protected(request: Request, allowed: Allowed = Depends(require_api_key)) -> dict:
    """Demo resource: reachable only with a valid, unblocked, unexpired key."""
    try:
        owner = await request.app.state.keygate.identity.resolve_owner(allowed.owner_id)
        return {
            "message": "Access granted!",
            "user": owner.display_name if owner else allowed.owner_id,
        }
    finally:
        clear_request_id()


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence.

    load_config() raises SystemExit and KeyGateContext.build() raises
    RuntimeError on an incompatible schema; either aborts startup before
    ready=True is set.
    """
    logger.info("KeyGate starting up...")

    config: Config = load_config()
    app.state.config = config

    ctx = await KeyGateContext.build(config)
    app.state.keygate = ctx

    # The config has just been (re)loaded: detect encryption mode/key changes.
    regenerated = await ctx.rotate_and_regenerate_all()
    if regenerated:
        logger.warning(
            "Encryption configuration changed — all API keys were reissued",
            count=len(regenerated),
        )

    app.state.ready = True
    logger.info(
        "KeyGate ready",
        use_encryption=config.policy.use_encryption,
        redis=bool(config.cache.redis_url),
    )

    yield

    logger.info("KeyGate shutting down...")
    app.state.ready = False
    await ctx.close()
    logger.info("KeyGate shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the KeyGate FastAPI application.

    Call this directly in tests and set ``app.state.keygate`` to a context
    built over temporary stores; ASGITransport does not run the lifespan.
    """
    application = FastAPI(
        title="KeyGate",
        description="API key authentication gate with rate limiting and failure blocking",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    application.state.ready = False

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    application.add_middleware(SlowAPIMiddleware)

    application.include_router(health_router)
    application.include_router(resource_router)
    application.include_router(admin_router, prefix="/admin/api")

    # Global exception handlers
    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers
        )

    @application.exception_handler(UnknownKeyError)
    async def unknown_key_handler(request: Request, exc: UnknownKeyError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc), "code": exc.code})

    @application.exception_handler(CryptoFailure)
    async def crypto_failure_handler(request: Request, exc: CryptoFailure) -> JSONResponse:
        logger.error(
            "Key material operation failed",
            code=exc.code,
            error=exc.message,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Key generation failed", "code": exc.code},
        )

    @application.exception_handler(BackendUnavailableError)
    async def backend_unavailable_handler(
        request: Request, exc: BackendUnavailableError
    ) -> JSONResponse:
        logger.error(
            "Backend unavailable",
            backend=exc.backend,
            error=exc.message,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=503,
            content={"error": "Service unavailable", "code": exc.code},
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
