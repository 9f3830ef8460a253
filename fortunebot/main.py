"""
main.py — fortunebot FastAPI application entry point.

Start with: uvicorn fortunebot.main:app --port 8000
(run from the repository root)
"""
import asyncio
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from mistralai import Mistral
from starlette.exceptions import HTTPException as StarletteHTTPException

from fortunebot.cache import (
    InMemoryIdempotencyGuard,
    InMemoryRateLimiter,
    RedisIdempotencyGuard,
    RedisRateLimiter,
    create_redis_pool,
)
from fortunebot.config import settings
from fortunebot.conversation.generation import GenerationClient
from fortunebot.conversation.state_machine import ConversationMachine
from fortunebot.database import AsyncSessionLocal, async_engine
from fortunebot.followups import FollowupWorker
from fortunebot.line.client import LineMessagingClient, LineResponder
from fortunebot.store import SessionStore

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Apply Alembic migrations on startup; there is no manual migration step."""
    package_dir = os.path.dirname(os.path.abspath(__file__))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=package_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    msg = result.stdout.strip() or "No pending migrations"
    logger.info("Alembic: %s", msg)


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations
      2. Idempotency / rate-limit guards (Redis pool, or in-memory when USE_REDIS=false)
      3. Mistral client + generation semaphore
      4. LINE HTTP client and responder
      5. Session store, conversation machine, follow-up worker task
    Shutdown (reverse order):
      stop worker, close HTTP client, close Redis pool, dispose engine
    """
    # --- 1. Database ---
    run_migrations()

    # --- 2. Guards ---
    if settings.use_redis:
        app.state.redis = await create_redis_pool()
        app.state.idempotency = RedisIdempotencyGuard(app.state.redis, settings.idempotency_ttl_seconds)
        app.state.rate_limiter = RedisRateLimiter(
            app.state.redis, settings.rate_limit_max_events, settings.rate_limit_window_seconds
        )
    else:
        logger.warning("USE_REDIS=false, idempotency and rate limits are per-process only")
        app.state.redis = None
        app.state.idempotency = InMemoryIdempotencyGuard(settings.idempotency_ttl_seconds)
        app.state.rate_limiter = InMemoryRateLimiter(
            settings.rate_limit_max_events, settings.rate_limit_window_seconds
        )

    # --- 3. Mistral client, a singleton for HTTP connection pool reuse ---
    app.state.mistral = Mistral(api_key=settings.mistral_api_key)
    # asyncio.Semaphore MUST be created inside async context (not module level)
    app.state.generation_semaphore = asyncio.Semaphore(settings.generation_concurrency)
    app.state.generator = GenerationClient(
        app.state.mistral, settings, semaphore=app.state.generation_semaphore
    )
    logger.info("Mistral client initialized (model=%s)", settings.generation_model)

    # --- 4. LINE ---
    app.state.http = httpx.AsyncClient()
    app.state.responder = LineResponder(LineMessagingClient(app.state.http, settings))

    # --- 5. Conversation core ---
    app.state.store = SessionStore(AsyncSessionLocal, settings.starting_credits)
    app.state.machine = ConversationMachine(
        app.state.store,
        app.state.generator,
        app.state.responder,
        app.state.idempotency,
        app.state.rate_limiter,
        settings,
    )
    worker = FollowupWorker(app.state.store, app.state.responder, settings)
    worker_stop = asyncio.Event()
    worker_task = asyncio.create_task(worker.run_forever(worker_stop))

    logger.info("fortunebot v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    worker_stop.set()
    try:
        await asyncio.wait_for(worker_task, timeout=settings.followup_poll_seconds + 5)
    except asyncio.TimeoutError:
        worker_task.cancel()
        logger.warning("Follow-up worker did not stop in time, cancelled")
    await app.state.http.aclose()
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    await async_engine.dispose()
    logger.info("fortunebot shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="fortunebot",
    version=settings.app_version,
    description=(
        "LINE webhook service for a credit-gated, multi-step fortune and personality "
        "reading conversation backed by an LLM."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers — registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Converts Pydantic / FastAPI 422 validation errors to standard format."""
    details = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Converts FastAPI HTTPException to standard error format with semantic code."""
    code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
        503: "SERVICE_UNAVAILABLE",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """Returns service health status. Used by load balancers and deployment pipelines."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from fortunebot.line.routes import router as line_router  # noqa: E402
from fortunebot.payments.routes import router as payments_router  # noqa: E402

app.include_router(line_router)
app.include_router(payments_router)
