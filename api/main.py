"""
api/main.py -- FastAPI application entry point for the cooperative portal.

Run with:      uvicorn asgi:app --reload
               python main.py init-db   (schema + reference data only)

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (engine, schema, reference data, services, audit
worker, purge task) and shutdown (cancel purge task, drain audit worker,
dispose engine) symmetrically.

Every service lives on app.state so tests can swap the whole graph by
replacing app.router.lifespan_context and calling init_state() themselves.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.errors import (
    http_error_response,
    portal_error_response,
    unexpected_error_response,
    validation_error_response,
)
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.accounts import router as accounts_router
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.branches import router as branches_router
from audit.recorder import AuditRecorder
from audit.store import AuditStore
from auth.lifecycle import AccountLifecycle
from auth.outbound import LogNotifier, Mailer, Notifier, build_mailer
from auth.provisioning import BranchProvisioner
from auth.ratelimit import InMemoryLoginRateLimiter
from auth.schema import create_schema
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings
from core.database import connect, make_engine
from core.errors import PortalError, StoreUnavailable
from core.time_utils import Clock, utcnow

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("coopportal.api")

PURGE_INTERVAL_SECONDS = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_state(
    app: FastAPI,
    engine: Engine,
    settings: Settings | None = None,
    mailer: Mailer | None = None,
    notifier: Notifier | None = None,
    clock: Clock = utcnow,
) -> None:
    """Build every service over one engine and attach it to app.state.

    Schema creation and reference-data seeding are idempotent, so this is
    safe to call against an existing database.
    """
    settings = settings or get_settings()
    create_schema(engine)
    store = CredentialStore(engine)
    store.seed_reference_data()

    codec = TokenCodec(settings)
    limiter_ = InMemoryLoginRateLimiter(
        settings.login_max_attempts,
        timedelta(minutes=settings.login_lockout_minutes),
        clock=clock,
    )
    mailer = mailer or build_mailer(settings)
    notifier = notifier or LogNotifier()

    app.state.engine = engine
    app.state.credential_store = store
    app.state.token_codec = codec
    app.state.session_manager = SessionManager(store, codec, limiter_, settings, clock=clock)
    app.state.lifecycle = AccountLifecycle(store, mailer, notifier, settings, clock=clock)
    app.state.provisioner = BranchProvisioner(store, settings, clock=clock)
    app.state.audit_store = AuditStore(engine)
    app.state.audit_recorder = AuditRecorder(
        app.state.audit_store,
        store,
        maxsize=settings.audit_queue_size,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired sessions, reset tokens and verification codes every 6 hours.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            counts = await asyncio.to_thread(app.state.credential_store.purge_expired, utcnow())
        except (SQLAlchemyError, StoreUnavailable):
            logger.exception("Housekeeping purge failed")
            continue
        logger.info("Housekeeping purge: %s", counts)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine, schema and reference data -- every service reads roles.
      2. Services -- built over the one engine.
      3. Audit worker -- must run before the first audited request.
      4. Purge task last -- references app.state.credential_store.
    """
    settings = get_settings()
    logger.info("Portal API starting up")
    engine = make_engine(settings=settings)
    init_state(app, engine, settings)
    app.state.audit_recorder.start()
    logger.info("Services initialized (db=%s)", engine.url.render_as_string(hide_password=True))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    app.state.audit_recorder.stop(timeout=settings.audit_shutdown_timeout_seconds)
    engine.dispose()
    logger.info("Portal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="IMVCMPC Portal API",
    description="Authentication, sessions, account lifecycle and audit trail for the cooperative portal.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(accounts_router, prefix="/api/v1", tags=["Users"])
app.include_router(branches_router, prefix="/api/v1", tags=["Branches"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler returns the ErrorResponse envelope. Audited routes render
# their own errors in AuditedRoute with the same helpers.
# ---------------------------------------------------------------------------


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    return portal_error_response(exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a per-route limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="RATE_LIMIT_EXCEEDED",
                message="Too many requests. Please try again later.",
                detail=str(exc.detail),
                context={"retry_after": retry_after},
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return validation_error_response(exc)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return http_error_response(exc)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return unexpected_error_response(request, exc)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. No rate limit and no auth.
# ---------------------------------------------------------------------------


def _database_ok(engine: Engine) -> bool:
    try:
        with connect(engine) as conn:
            conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, StoreUnavailable) as exc:
        logger.warning("Health check database probe failed: %s", exc)
        return False
    return True


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, database reachability and the current version."""
    db_ok = _database_ok(request.app.state.engine)
    body = HealthResponse(
        status="ok" if db_ok else "degraded",
        database="ok" if db_ok else "unavailable",
        version=__version__,
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
