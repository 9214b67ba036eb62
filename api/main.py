"""
api/main.py -- FastAPI application entry point for tokengate.

Exposes the session engine over HTTP. The transport is thin:
routes parse the body, await one SessionEngine call, and serialize the
result. All auth decisions live in auth/.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware   -- adds CORS headers for allowed browser origins
  2. log_requests     -- method, path, status, latency (never bodies)

Lifespan handles startup (settings, key material, database, engine wiring)
and shutdown (dispose the database engine) symmetrically. Key loading happens
here so a missing or corrupt key aborts startup instead of failing the first
sign-in.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, ErrorCategory
from auth.keys import KeyPair, ephemeral_key_pair, load_key_pair
from auth.refresh_store import RefreshTokenStore
from auth.session import SessionEngine
from auth.store import CredentialStore, UserDirectory, create_auth_engine, create_schema
from auth.tokens import TokenSigner
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokengate.api")

_STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.INVALID_ARGUMENT: 400,
    ErrorCategory.UNAUTHENTICATED: 401,
    ErrorCategory.UNAVAILABLE: 503,
    ErrorCategory.INTERNAL: 500,
}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def load_keys(settings: Settings) -> KeyPair:
    """Load the RSA pair named by settings.

    DEBUG with neither key file present falls back to an ephemeral pair, the
    same way the dev-mode secret is generated rather than required. Any other
    failure raises AuthError(SIGNING_ERROR) and aborts startup.
    """
    private_path = Path(settings.private_key_path)
    public_path = Path(settings.public_key_path)
    if settings.debug and not private_path.exists() and not public_path.exists():
        return ephemeral_key_pair()
    return load_key_pair(private_path, public_path)


def build_session_engine(settings: Settings, keys: KeyPair, db_engine) -> SessionEngine:
    """Construct the SessionEngine and its collaborators from settings."""
    return SessionEngine(
        directory=UserDirectory(db_engine),
        credentials=CredentialStore(db_engine, rounds=settings.bcrypt_rounds),
        signer=TokenSigner(keys, expire_seconds=settings.access_token_expire_seconds),
        refresh_store=RefreshTokenStore(db_engine, expire_seconds=settings.refresh_token_expire_seconds),
        storage_timeout=settings.storage_timeout_seconds,
        refresh_token_bytes=settings.refresh_token_bytes,
        strict_rotation=settings.strict_refresh_rotation,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Key material first -- cheapest failure, and fatal.
      2. Database engine + schema.
      3. Session engine last -- depends on both.
    """
    settings = get_settings()
    logging.getLogger("tokengate").setLevel(settings.log_level.upper())
    logger.info("tokengate API starting up")

    keys = load_keys(settings)
    db_engine = create_auth_engine(settings.db_url, timeout=settings.storage_timeout_seconds)
    create_schema(db_engine)
    app.state.db_engine = db_engine
    app.state.engine = build_session_engine(settings, keys, db_engine)
    logger.info(
        "Session engine ready (access_ttl=%ss, refresh_ttl=%ss, strict_rotation=%s)",
        settings.access_token_expire_seconds,
        settings.refresh_token_expire_seconds,
        settings.strict_refresh_rotation,
    )

    yield

    db_engine.dispose()
    logger.info("tokengate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="tokengate API",
    description="Credential sign-in, RS256 access tokens and rotating refresh tokens.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Bodies are never logged: they carry passwords and tokens.
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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the error taxonomy onto HTTP status codes.

    The internal message and context are already in the log (session engine).
    The client only sees the public code and message.
    """
    status_code = _STATUS_BY_CATEGORY[exc.category]
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.public_code(), message=exc.public_message())).model_dump(),
    )
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body fails validation."""
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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and component status."""
    components = {"app": "ok"}
    try:
        with request.app.state.db_engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    components["signing"] = "ok" if request.app.state.engine.signer.can_sign else "verify_only"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=__version__, components=components)
