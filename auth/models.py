"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the session
engine do the work; these types only carry shape across layer boundaries.

Credential rows are absent: the password hash never leaves
auth/store.py.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class User:
    """A provisioned identity.

    id is an opaque, stable identifier (UUID4 string) assigned at creation and
    embedded as the `sub` claim of every access token.
    """

    id: str
    username: str
    email: str
    created_at: str | None = None


@dataclass(frozen=True)
class AccessClaims:
    """The verified content of an access token."""

    subject: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshTokenRecord:
    """One persisted refresh token row, as seen through the store.

    token_hash is sha256(token_value). The raw value is returned to the client
    once and never written to the database.
    """

    user_id: str
    token_hash: str
    issued_at: str
    expires_at: str | None = None  # None = no expiry


@dataclass(frozen=True)
class TokenPair:
    """The result of a successful sign-in or refresh."""

    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
