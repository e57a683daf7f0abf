"""
main.py - ussdflow FastAPI application entry point.

Start with: uvicorn ussdflow.main:app --port 8000
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ussdflow.config import settings
from ussdflow.engine.errors import (
    ConcurrentModification,
    ConflictingActiveSession,
    EngineError,
    FlowMisconfigured,
    FlowNotFound,
    InternalFlowError,
    NodeNotFound,
    SessionNotActive,
    SessionNotFound,
)
from ussdflow.gateway.schemas import error_payload

# ---------------------------------------------------------------------------
# Logging - configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan - startup & shutdown hooks
# ---------------------------------------------------------------------------
def _run_migrations() -> None:
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


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (when run_migrations_on_startup)
      2. Initialize Redis connection pool for the flow cache (when enabled)
      3. Start the expiry sweep timer (when sweep_interval_seconds > 0)
    Shutdown:
      1. Stop the sweep timer
      2. Close Redis pool
    """
    # --- 1. Database: run Alembic migrations ---
    if settings.run_migrations_on_startup:
        _run_migrations()

    # --- 2. Redis: flow definition cache ---
    app.state.redis = None
    if settings.flow_cache_enabled:
        from ussdflow.cache import create_redis_pool
        try:
            app.state.redis = await create_redis_pool()
        except Exception as exc:
            # The cache only accelerates flow reads; PostgreSQL still answers
            logger.warning("Redis unavailable, flow cache disabled: %s", exc)

    # --- 3. Expiry sweep timer ---
    from ussdflow.scheduler import build_scheduler
    app.state.scheduler = build_scheduler(redis=app.state.redis)
    if app.state.scheduler is not None:
        app.state.scheduler.start()
        logger.info("Expiry sweep scheduler started")

    logger.info("ussdflow v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    if app.state.scheduler is not None:
        app.state.scheduler.shutdown(wait=False)
        logger.info("Expiry sweep scheduler stopped")
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    logger.info("ussdflow shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="ussdflow API",
    version=settings.app_version,
    description=(
        "USSD session engine: executes operator-authored menu flows, one "
        "handset turn at a time, with session expiry and an admin surface."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware - restricted to admin console origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
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
    return JSONResponse(
        status_code=status_code,
        content=error_payload(code=code, message=message, details=details),
    )


# Most specific class first: the first isinstance match wins
ENGINE_ERROR_STATUS: list[tuple[type[EngineError], int]] = [
    (FlowNotFound, 404),
    (SessionNotFound, 404),
    (NodeNotFound, 404),
    (ConflictingActiveSession, 409),
    (ConcurrentModification, 409),
    (SessionNotActive, 410),
    (InternalFlowError, 500),
    (FlowMisconfigured, 500),
]


def status_for(exc: EngineError) -> int:
    for error_type, status_code in ENGINE_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


# ---------------------------------------------------------------------------
# Global exception handlers - registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """
    Maps the engine's error taxonomy onto HTTP statuses.
    Flow definition problems are listed in details so operators can fix them.
    """
    status_code = status_for(exc)
    details: list[dict[str, Any]] = []
    if isinstance(exc, InternalFlowError):
        details = [{"field": None, "issue": p} for p in exc.cause.problems]
    elif isinstance(exc, FlowMisconfigured):
        details = [{"field": None, "issue": p} for p in exc.problems]
    if status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _make_error_response(
        code=exc.code,
        message=exc.message,
        details=details,
        status_code=status_code,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Converts Pydantic / FastAPI 422 validation errors to standard format.
    Returns ALL field violations in one response.
    """
    details = []
    for error in exc.errors():
        # Build dot-notation field path, excluding the top-level 'body' loc
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
    """
    Converts FastAPI HTTPException to standard error format with semantic code.
    """
    code_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
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
    DEBUG=true  -> includes exception type & message in details (dev only).
    DEBUG=false -> generic message; full traceback logged server-side only.
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
    """Returns service health status for load balancers and aggregators."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from ussdflow.gateway.routes import admin_router, router as sessions_router  # noqa: E402

app.include_router(sessions_router)
app.include_router(admin_router)
