"""
api/main.py -- FastAPI application entry point for Gatehouse.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
                              (credentials allowed: the session is a cookie)
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan wires the component graph onto app.state at startup:

    store    CredentialStore   (auth/store.py)
    context  AuthContext       (auth/context.py)
    sessions SessionManager    (auth/sessions.py)
    tokens   TokenIssuer       (auth/tokens.py)
    notifier LoggingNotifier   (accounts/notifier.py)
    flows    AccountFlows      (accounts/flows.py)
    oauth    authlib registry  (auth/oauth.py)

and tears it down symmetrically (cancel purge task, dispose the engine).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from accounts.flows import AccountFlows
from accounts.notifier import LoggingNotifier
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.emails import router as emails_router
from api.routes.oauth import router as oauth_router
from auth.context import AuthContext, NotAuthenticated
from auth.oauth import build_registry
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.config import get_settings

VERSION = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, _settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def wire(app: FastAPI, store: CredentialStore, notifier=None) -> None:
    """Build the component graph around a store and publish it on app.state.

    Shared by the lifespan and the test suite so both run the same graph.
    """
    settings = get_settings()
    context = AuthContext(store, settings)
    sessions = SessionManager(store, context, settings)
    tokens = TokenIssuer(store, settings)
    notifier = notifier or LoggingNotifier()
    app.state.settings = settings
    app.state.store = store
    app.state.context = context
    app.state.sessions = sessions
    app.state.tokens = tokens
    app.state.notifier = notifier
    app.state.flows = AccountFlows(store, context, sessions, tokens, notifier, settings)
    app.state.oauth = build_registry(settings)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired session rows every SESSION_PURGE_INTERVAL_SECONDS.

    Runs as a background asyncio task started in lifespan startup. The purge
    itself is a blocking database call, so it runs in the threadpool.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(app.state.settings.session_purge_interval_seconds)
        try:
            await run_in_threadpool(app.state.sessions.purge_expired)
        except Exception:
            logger.exception("Session purge failed; retrying next interval")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the store must exist before anything that wraps
    it, and the purge task references app.state.sessions.
    """
    logger.info("Gatehouse API starting up")
    wire(app, CredentialStore(_settings.database_url))
    logger.info("Credential store ready (%s)", app.state.store.dialect)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Sessions, credentials and account lifecycle flows.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time before and after call_next gives the latency.
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

app.include_router(auth_router, tags=["Account"])
app.include_router(emails_router, tags=["Emails"])
app.include_router(oauth_router, tags=["External identities"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=detail).model_dump())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc)))
    response.headers["Retry-After"] = str(retry_after)
    return response


def _field_name(loc: tuple) -> str | None:
    """Last string component of a pydantic error location, skipping the "body" root."""
    names = [part for part in loc if isinstance(part, str) and part not in ("body", "query", "path")]
    return names[-1] if names else None


def _clean_message(msg: str) -> str:
    return msg.removeprefix("Value error, ")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with per-field messages; model-level errors become form errors."""
    field_errors: dict[str, list[str]] = {}
    form_errors: list[str] = []
    for err in exc.errors():
        message = _clean_message(str(err.get("msg", "invalid value")))
        field = _field_name(tuple(err.get("loc", ())))
        if field is None:
            form_errors.append(message)
        else:
            field_errors.setdefault(field, []).append(message)
    return _error(
        400,
        ErrorDetail(
            code="validation_error",
            message="Request validation failed.",
            field_errors=field_errors,
            form_errors=form_errors,
        ),
    )


@app.exception_handler(NotAuthenticated)
async def not_authenticated_handler(request: Request, exc: NotAuthenticated) -> JSONResponse:
    """A session that died between resolution and use."""
    return _error(401, ErrorDetail(code="unauthorized", message="you must be logged in to do that!"))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail ({code, message}).
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged server-side only, never written to the
    response body. Any scoped access unit it escaped has already rolled back.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, ErrorDetail(code="internal_error", message="An unexpected error occurred."))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version and database reachability (503 when the database is down)."""
    try:
        database_ok = request.app.state.store.ping()
    except Exception:
        logger.exception("Health check could not reach the database")
        database_ok = False
    body = HealthResponse(
        status="ok" if database_ok else "degraded",
        version=VERSION,
        database="ok" if database_ok else "unavailable",
    )
    return JSONResponse(status_code=200 if database_ok else 503, content=body.model_dump())
