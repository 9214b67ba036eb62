"""
api/routes/v1/auth.py -- Session REST endpoints.

Routes:
  POST /api/v1/auth/sign-in    -- username/password -> token pair
  POST /api/v1/auth/refresh    -- access + refresh token -> new token pair
  POST /api/v1/auth/validate   -- access token -> subject (user id)
  GET  /api/v1/auth/me         -- current user (Bearer access token)

Errors are raised as AuthError by the session engine and rendered by the
handler in api/main.py. Wrong username and wrong password produce the same
"bad_credentials" response so the endpoint cannot be used to enumerate users.

Token responses carry Cache-Control: no-store so intermediaries never keep a
copy of a credential.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    MeResponse,
    RefreshRequest,
    SignInRequest,
    TokenResponse,
    ValidateRequest,
    ValidateResponse,
)
from auth.dependencies import get_current_user
from auth.models import TokenPair, User
from auth.session import SessionEngine

# Auth policy:
# - POST /api/v1/auth/sign-in:   public -- this is how a session starts
# - POST /api/v1/auth/refresh:   public -- possession of the refresh token is the credential
# - POST /api/v1/auth/validate:  public -- used by downstream services to check a token
# - GET  /api/v1/auth/me:        requires a valid access token (get_current_user)
router = APIRouter()


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=TokenResponse.from_pair(pair).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Pragma"] = "no-cache"
    return resp


@router.post("/auth/sign-in", response_model=TokenResponse)
async def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with username and password; return an access/refresh token pair."""
    engine: SessionEngine = request.app.state.engine
    pair = await engine.sign_in(body.username, body.password)
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenResponse)
async def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate the refresh token and issue a new access token.

    The presented refresh token is single-use: once this call succeeds it no
    longer resolves, and replaying it returns invalid_refresh_token.
    """
    engine: SessionEngine = request.app.state.engine
    pair = await engine.refresh_session(body.access_token, body.refresh_token)
    return _token_response(pair)


@router.post("/auth/validate", response_model=ValidateResponse)
async def validate(request: Request, body: ValidateRequest) -> ValidateResponse:
    """Check an access token's signature and expiry; return its subject."""
    engine: SessionEngine = request.app.state.engine
    subject = await engine.validate_access_token(body.access_token)
    return ValidateResponse(subject=subject)


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse.from_user(current_user)
