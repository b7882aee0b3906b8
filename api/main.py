"""
api/main.py -- FastAPI application entry point for Homeboard.

Serves the dashboard's auth surface: Home Assistant OAuth login, sessions,
the token broker, sealed third-party credentials, and permission-gated
mutation endpoints.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
                              (only when ALLOWED_HOSTS is set)
  2. CORSMiddleware        -- same-origin only unless APP_BASE_URL is set
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- one log line per request with latency
  5. session_gate          -- public allow-list, 401 / login redirect,
                              Origin/Referer check on unsafe API calls

Lifespan builds every service once and hangs it on app.state; routes reach
them through request.app.state. Shutdown cancels the purge task and closes
the database engines.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.csrf import UNSAFE_METHODS, is_same_origin
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.ha import router as ha_router
from api.routes.v1.settings import router as settings_router
from auth.credentials import CredentialVault
from auth.crypto import CredentialCipher
from auth.dependencies import get_current_user, try_get_session
from auth.errors import AuthError, RateLimited
from auth.homeassistant import HomeAssistantClient
from auth.models import User
from auth.oauth import HomeAssistantOAuth
from auth.permissions import PermissionResolver
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.throttle import LoginThrottle
from cache.store import KeyValueStore, MemoryKeyValueStore, SQLKeyValueStore, TTLCache
from core.config import Settings, get_settings

__version__ = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("homeboard.api")

# Reachable without a session. Everything else under /api/ answers 401;
# everything else outside /api/ redirects to the login page.
PUBLIC_PATHS = frozenset(
    {
        "/login",
        "/api/v1/auth/login",
        "/api/v1/auth/callback",
        "/api/v1/auth/logout",
        "/api/v1/status",
    }
)

PURGE_INTERVAL_SECONDS = 60

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_services(
    app: FastAPI,
    settings: Settings,
    *,
    user_store: UserStore | None = None,
    ha_client: HomeAssistantClient | None = None,
    kv_store: KeyValueStore | None = None,
) -> None:
    """Build every auth service and attach it to app.state.

    The keyword arguments let tests substitute in-memory stores and a fake
    Home Assistant client while keeping the production wiring.
    """
    store = user_store or UserStore(settings.database_url)
    cipher = CredentialCipher.from_hex(settings.encryption_key)
    client = ha_client or HomeAssistantClient(
        timeout=settings.oauth_timeout_seconds,
        scopes=settings.oauth_scope_list,
        pkce=settings.oauth_pkce_enabled,
    )

    if kv_store is None:
        if settings.pending_auth_backend == "database":
            kv_store = SQLKeyValueStore(settings.database_url)
        elif settings.pending_auth_backend == "memory":
            kv_store = MemoryKeyValueStore()
        else:
            raise ValueError(f"Unknown PENDING_AUTH_BACKEND: {settings.pending_auth_backend!r}")

    app.state.settings = settings
    app.state.user_store = store
    app.state.kv_store = kv_store
    app.state.ha_client = client
    app.state.oauth = HomeAssistantOAuth(
        store,
        cipher,
        client,
        kv_store,
        client_id=settings.app_base_url or None,
        pending_ttl=settings.oauth_pending_ttl_seconds,
        refresh_skew=settings.oauth_refresh_skew_seconds,
        pkce=settings.oauth_pkce_enabled,
    )
    app.state.sessions = SessionManager(store, lifetime_seconds=settings.session_expire_seconds)
    app.state.permission_cache = TTLCache(ttl=settings.permission_cache_ttl_seconds)
    app.state.config_cache = TTLCache(ttl=settings.config_cache_ttl_seconds)
    app.state.permissions = PermissionResolver(store, app.state.permission_cache)
    app.state.vault = CredentialVault(store, cipher)
    app.state.throttle = LoginThrottle(
        max_attempts=settings.login_max_attempts,
        window_seconds=settings.login_window_seconds,
        block_seconds=settings.login_block_seconds,
    )


def close_services(app: FastAPI) -> None:
    app.state.user_store.close()
    if isinstance(app.state.kv_store, SQLKeyValueStore):
        app.state.kv_store.close()


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_expired(app: FastAPI) -> dict[str, int]:
    """Drop expired throttle entries, sessions, cache entries, and pending logins."""
    return {
        "throttle": app.state.throttle.purge_expired(),
        "sessions": app.state.sessions.purge_expired(),
        "permission_cache": app.state.permission_cache.purge_expired(),
        "config_cache": app.state.config_cache.purge_expired(),
        "pending": app.state.kv_store.purge_expired(),
    }


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired state every PURGE_INTERVAL_SECONDS.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. Any other failure is
    logged and the loop keeps going; a missed purge only delays cleanup.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            counts = await run_in_threadpool(purge_expired, app)
        except Exception:
            logger.exception("Periodic purge failed")
            continue
        if any(counts.values()):
            logger.info("Purged expired state: %s", counts)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup, tear them down on shutdown.

    get_settings() runs first so a malformed SECRET_KEY or ENCRYPTION_KEY
    stops the process before it binds a port.
    """
    settings = get_settings()
    logger.info("Homeboard API starting up")
    init_services(app, settings)
    logger.info(
        "Auth initialized (pending_auth_backend=%s, pkce=%s)",
        settings.pending_auth_backend,
        settings.oauth_pkce_enabled,
    )
    if not settings.app_base_url:
        logger.warning("APP_BASE_URL is not set; the OAuth client_id is derived from the request host")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    close_services(app)
    logger.info("Homeboard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Homeboard API",
    description="Smart-home dashboard backend: Home Assistant login, sessions, and sealed credentials.",
    version=__version__,
    lifespan=lifespan,
    # Built-in docs are replaced below by session-protected equivalents.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST middleware added is
# the outermost. @app.middleware("http") functions are added the same way.
# Registration below is therefore innermost first.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def session_gate(request: Request, call_next):
    """Enforce authentication on everything outside the public allow-list.

    Session validation touches the database, so it runs in the threadpool.
    The resolved session is memoized on request.state for the route's own
    dependency.
    """
    path = request.url.path
    is_api = path.startswith("/api/")

    if is_api and request.method in UNSAFE_METHODS and not is_same_origin(request):
        logger.warning("Cross-origin %s %s rejected", request.method, path)
        return _error_response(403, "forbidden", "Cross-origin request rejected.", "csrf")

    if path in PUBLIC_PATHS or request.method == "OPTIONS":
        return await call_next(request)

    session = await run_in_threadpool(try_get_session, request)
    if session is None:
        if is_api:
            return _error_response(401, "unauthorized", "Authentication required.")
        target = path + (f"?{request.url.query}" if request.url.query else "")
        return RedirectResponse(f"/login?redirect={quote(target, safe='/')}", status_code=302)
    return await call_next(request)


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


app.add_middleware(SlowAPIMiddleware)

_startup_settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_startup_settings.app_base_url.rstrip("/")] if _startup_settings.app_base_url else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "X-CSRF-Token"],
    max_age=3600,
)

if _startup_settings.allowed_host_list:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=_startup_settings.allowed_host_list)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(ha_router, prefix="/api/v1", tags=["Home Assistant"])
app.include_router(settings_router, prefix="/api/v1", tags=["Settings"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Session-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Homeboard API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Homeboard API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render auth-core errors. The internal cause chain is logged, never returned."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    response = _error_response(exc.status_code, exc.code, exc.message, exc.detail)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# Public and not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/status", tags=["Health"])
def status(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the database answers."""
    components = {"database": "ok"}
    try:
        request.app.state.user_store.has_users()
    except Exception:
        logger.exception("Database health check failed")
        components["database"] = "error"
    overall = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=overall, version=__version__, components=components)
