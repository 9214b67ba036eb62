"""
auth/dependencies.py -- FastAPI Depends() helpers for access token authentication.

Access tokens arrive as `Authorization: Bearer <token>`. The header is parsed
here; validation is delegated to the SessionEngine on app.state so the same
rules (signature, expiry) apply to every protected route.

get_current_user() raises AuthError, which api/main.py renders as 401 (or 503
when the user lookup itself fails).

Layer rule: auth/dependencies.py may import from fastapi (for Request) because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AuthError, ErrorKind
from auth.models import User
from auth.session import SessionEngine


def bearer_token(request: Request) -> str:
    """Return the Bearer token from the Authorization header, or ''."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def get_current_user(request: Request) -> User:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    token = bearer_token(request)
    if not token:
        raise AuthError(ErrorKind.TOKEN_MALFORMED, "Missing Bearer token.", operation="get_current_user")
    engine: SessionEngine = request.app.state.engine
    return await engine.current_user(token)
