"""
api/main.py -- FastAPI application entry point for the admin dashboard.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- adds CORS headers for the configured browser origins
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan builds the object graph once per process and hangs it on app.state:
  user_store, log_store   -- SQLAlchemy Core repositories (auth/store.py)
  token_service, hasher   -- signing keys and bcrypt cost from Settings
  permissions             -- frozen PermissionTable
  audit                   -- AuditSink over log_store
  authenticator, authorizer
and starts the refresh-token purge loop. Shutdown cancels the loop and
disposes both engines.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.logs import router as logs_router
from api.routes.v1.stats import router as stats_router
from api.routes.v1.users import router as users_router
from auth.audit import AuditSink
from auth.authorizer import Authorizer
from auth.errors import AuthError
from auth.permissions import load_permission_table
from auth.service import Authenticator
from auth.store import ActivityLogStore, UserStore
from auth.tokens import BcryptHasher, TokenService
from core.config import get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("dashboard.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int, retention: int) -> None:
    """Drop expired refresh-token entries every `interval` seconds.

    Runs as a background asyncio task started in lifespan startup. The store
    call is synchronous and short; it runs in a worker thread so a slow
    database never stalls the event loop. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.user_store.purge_expired_refresh_tokens, retention)
        except AuthError as exc:
            logger.warning("Refresh-token purge skipped: %s", exc.message)
            continue
        if removed:
            logger.info("Purged %d expired refresh tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, database_url: str) -> None:
    """Construct stores and services from Settings and attach them to app.state.

    Split out of lifespan so tests can build the same graph against their
    own database URL.
    """
    app.state.user_store = UserStore(database_url)
    app.state.log_store = ActivityLogStore(database_url)
    app.state.token_service = TokenService(
        settings.secret_key,
        access_ttl=settings.access_token_expire_seconds,
        refresh_ttl=settings.refresh_token_expire_seconds,
    )
    app.state.hasher = BcryptHasher(rounds=settings.bcrypt_rounds)
    app.state.permissions = load_permission_table(settings.permissions_file)
    app.state.audit = AuditSink(app.state.log_store)
    app.state.authenticator = Authenticator(
        app.state.user_store,
        app.state.token_service,
        app.state.hasher,
        app.state.audit,
        lockout_threshold=settings.lockout_threshold,
        lockout_window_seconds=settings.lockout_window_seconds,
        refresh_retention_seconds=settings.refresh_token_retention_seconds,
    )
    app.state.authorizer = Authorizer(
        app.state.user_store,
        app.state.token_service,
        app.state.permissions,
        app.state.audit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task starts last because it references user_store.
    """
    logger.info("Admin dashboard API starting up")
    build_services(app, settings.database_url)
    logger.info("Stores initialized (roles=%s)", ",".join(app.state.permissions.roles))
    app.state.purge_task = asyncio.create_task(
        _purge_loop(app, settings.token_purge_interval_seconds, settings.refresh_token_retention_seconds)
    )

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    app.state.log_store.close()
    logger.info("Admin dashboard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Admin Dashboard API",
    description="User management, role-based access control, and audit logging.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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

app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])
app.include_router(users_router, prefix="/api/admin", tags=["Users"])
app.include_router(logs_router, prefix="/api/admin", tags=["Activity Logs"])
app.include_router(stats_router, prefix="/api/admin/stats", tags=["Statistics"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any core failure with its own code and status.

    StoreUnavailable keeps its generic message; the driver error chained
    onto it goes to the server log only.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path, exc_info=exc.__cause__)
    response = _error(exc.status_code, exc.code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After is the length of the limit window in seconds, the longest a
    client can have to wait.
    """
    retry_after = exc.limit.limit.get_expiry()
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). A structured dict is used directly as the error field rather
    than stringified.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the server log. The response carries the exception
    text only when DEBUG=true.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(
        500,
        "internal_error",
        "An unexpected error occurred.",
        f"{exc.__class__.__name__}: {exc}" if settings.debug else None,
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit: load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database_ok = request.app.state.user_store.ping()
    return HealthResponse(
        status="ok" if database_ok else "degraded",
        version=VERSION,
        components={"database": "ok" if database_ok else "unavailable"},
    )
