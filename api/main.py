"""
api/main.py -- FastAPI application entry point for pmo-access.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the storage handle and every store on startup and tears them
down in reverse on shutdown: cleanup loop first, then the session-touch pool
(pending touches are awaited), then the database.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.extension import router as extension_router
from api.routes.v1.realtime import router as realtime_router
from auth.audit import AuditLog
from auth.dependencies import get_current_identity
from auth.errors import AuthError
from auth.extension import EXTENSION_KEY_HEADER
from auth.gate import RequestGate
from auth.lockout import LoginAttemptStore
from auth.models import AuthContext, SecurityPolicy
from auth.policy import PolicyStore
from auth.realtime import ChannelHub
from auth.service import AuthService
from auth.sessions import SessionStore, SessionToucher
from auth.tokens import TokenCodec
from auth.users import UserStore
from core.clock import Clock, utcnow
from core.config import Settings, get_settings
from core.database import Database

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pmoaccess.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def policy_seed(settings: Settings) -> SecurityPolicy:
    """Initial security_settings row, used only when the row does not exist yet."""
    return SecurityPolicy(
        max_login_attempts=settings.max_login_attempts,
        lockout_duration_minutes=settings.lockout_duration_minutes,
        session_lifetime_minutes=settings.session_lifetime_minutes,
        session_inactivity_minutes=settings.session_inactivity_minutes,
        password_min_length=settings.password_min_length,
    )


def init_state(app: FastAPI, db: Database, settings: Settings, clock: Clock = utcnow) -> None:
    """Construct every store and service on top of `db` and attach them to app.state.

    The lifespan below calls this with the configured database; tests call it
    with a throwaway database and a controllable clock.
    """
    app.state.db = db
    app.state.users = UserStore(db, clock=clock)
    app.state.attempts = LoginAttemptStore(db, clock=clock)
    app.state.sessions = SessionStore(db, clock=clock)
    app.state.audit = AuditLog(db, clock=clock)
    app.state.policy = PolicyStore(db, defaults=policy_seed(settings), clock=clock)
    app.state.codec = TokenCodec(settings.secret_key, settings.token_algorithm)
    app.state.toucher = SessionToucher(app.state.sessions, max_workers=settings.touch_workers)
    app.state.gate = RequestGate(
        app.state.codec,
        app.state.sessions,
        app.state.policy,
        app.state.audit,
        app.state.toucher,
    )
    app.state.auth_service = AuthService(
        app.state.users,
        app.state.attempts,
        app.state.sessions,
        app.state.audit,
        app.state.policy,
        app.state.codec,
    )
    app.state.hub = ChannelHub()


# ---------------------------------------------------------------------------
# Background session cleanup
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired and idle sessions every `interval_seconds`.

    The request gate already rejects such sessions on use; this loop removes
    the ones nobody presents again. CancelledError from task.cancel() during
    shutdown propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(app.state.auth_service.cleanup_sessions)
        except Exception:
            logger.exception("Session cleanup failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, in reverse dependency order.
    """
    settings = get_settings()
    logger.info("pmo-access API starting up")
    db = Database(settings.database_url)
    init_state(app, db, settings)
    if not settings.extension_api_key:
        logger.warning("EXTENSION_API_KEY not configured - extension endpoints are not secured!")
    logger.info(
        "Auth initialized (users=%s, realtime_require_session=%s)",
        app.state.users.has_users(),
        settings.realtime_require_session,
    )
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app, settings.session_cleanup_interval_seconds))

    yield

    # Shutdown
    app.state.cleanup_task.cancel()
    app.state.toucher.shutdown(wait=True)
    db.close()
    logger.info("pmo-access API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="pmo-access API",
    description="Sessions, lockout, audit and role-based access control for the PMO platform.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", EXTENSION_KEY_HEADER],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(extension_router, prefix="/api/v1", tags=["Extension"])
app.include_router(realtime_router, prefix="/api/v1", tags=["Realtime"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(ctx: AuthContext = Depends(get_current_identity)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="pmo-access API")


@app.get("/redoc", include_in_schema=False)
async def redoc(ctx: AuthContext = Depends(get_current_identity)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="pmo-access API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any access-control failure.

    Structured extras (failed_attempts, max_attempts, violations) are merged
    into the error object next to code and message.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, **exc.extra)).model_dump(),
    )
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit and no authentication.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and component status."""
    db: Database = request.app.state.db
    database_ok = await run_in_threadpool(db.ping)
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
