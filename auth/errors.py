"""
auth/errors.py -- Error taxonomy for the token lifecycle engine.

Every failure raised by auth/ is an AuthError tagged with an ErrorKind. Callers
branch on the kind (err.is_kind(ErrorKind.TOKEN_EXPIRED)) or on its coarse
category, never on message text or object identity.

Categories drive the transport mapping in api/main.py:
  INVALID_ARGUMENT -> 400   client error, do not retry
  UNAUTHENTICATED  -> 401   re-authenticate
  UNAVAILABLE      -> 503   internal subsystem failure, caller may retry
  INTERNAL         -> 500

USER_NOT_FOUND and INVALID_CREDENTIALS stay distinct here so the logs can tell
them apart; public_message() collapses them so the wire response does not
reveal whether a username exists.

Layer rule: stdlib only.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    INVALID_ARGUMENT = "invalid_argument"
    UNAUTHENTICATED = "unauthenticated"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


class ErrorKind(str, Enum):
    # Input shape
    MISSING_USERNAME = "missing_username"
    MISSING_PASSWORD = "missing_password"
    USERNAME_TOO_SHORT = "username_too_short"
    PASSWORD_TOO_SHORT = "password_too_short"
    PASSWORD_TOO_LONG = "password_too_long"

    # Authentication
    USER_NOT_FOUND = "user_not_found"
    INVALID_CREDENTIALS = "invalid_credentials"

    # Access token validation
    TOKEN_MALFORMED = "token_malformed"
    SIGNATURE_INVALID = "signature_invalid"
    TOKEN_EXPIRED = "token_expired"

    # Refresh tokens
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    REFRESH_TOKEN_NOT_FOUND = "refresh_token_not_found"

    # Internal subsystems
    SIGNING_ERROR = "signing_error"
    TOKEN_GENERATION_FAILED = "token_generation_failed"
    PERSISTENCE_ERROR = "persistence_error"
    STORAGE_TIMEOUT = "storage_timeout"
    INTERNAL_ERROR = "internal_error"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.MISSING_USERNAME: ErrorCategory.INVALID_ARGUMENT,
    ErrorKind.MISSING_PASSWORD: ErrorCategory.INVALID_ARGUMENT,
    ErrorKind.USERNAME_TOO_SHORT: ErrorCategory.INVALID_ARGUMENT,
    ErrorKind.PASSWORD_TOO_SHORT: ErrorCategory.INVALID_ARGUMENT,
    ErrorKind.PASSWORD_TOO_LONG: ErrorCategory.INVALID_ARGUMENT,
    ErrorKind.USER_NOT_FOUND: ErrorCategory.UNAUTHENTICATED,
    ErrorKind.INVALID_CREDENTIALS: ErrorCategory.UNAUTHENTICATED,
    ErrorKind.TOKEN_MALFORMED: ErrorCategory.UNAUTHENTICATED,
    ErrorKind.SIGNATURE_INVALID: ErrorCategory.UNAUTHENTICATED,
    ErrorKind.TOKEN_EXPIRED: ErrorCategory.UNAUTHENTICATED,
    ErrorKind.INVALID_REFRESH_TOKEN: ErrorCategory.UNAUTHENTICATED,
    ErrorKind.REFRESH_TOKEN_NOT_FOUND: ErrorCategory.UNAUTHENTICATED,
    ErrorKind.SIGNING_ERROR: ErrorCategory.UNAVAILABLE,
    ErrorKind.TOKEN_GENERATION_FAILED: ErrorCategory.UNAVAILABLE,
    ErrorKind.PERSISTENCE_ERROR: ErrorCategory.UNAVAILABLE,
    ErrorKind.STORAGE_TIMEOUT: ErrorCategory.UNAVAILABLE,
    ErrorKind.INTERNAL_ERROR: ErrorCategory.INTERNAL,
}

_PUBLIC_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.MISSING_USERNAME: "Username is required.",
    ErrorKind.MISSING_PASSWORD: "Password is required.",
    ErrorKind.USERNAME_TOO_SHORT: "Username must be at least 3 characters long.",
    ErrorKind.PASSWORD_TOO_SHORT: "Password must be at least 4 characters long.",
    ErrorKind.PASSWORD_TOO_LONG: "Password must be at most 72 bytes long.",
    ErrorKind.USER_NOT_FOUND: "Invalid username or password.",
    ErrorKind.INVALID_CREDENTIALS: "Invalid username or password.",
    ErrorKind.TOKEN_MALFORMED: "Invalid access token. Please sign in again.",
    ErrorKind.SIGNATURE_INVALID: "Invalid access token. Please sign in again.",
    ErrorKind.TOKEN_EXPIRED: "Access token expired. Please sign in again.",
    ErrorKind.INVALID_REFRESH_TOKEN: "Session expired. Please sign in again.",
    ErrorKind.REFRESH_TOKEN_NOT_FOUND: "Session expired. Please sign in again.",
}

_UNAVAILABLE_MESSAGE = "Authentication service temporarily unavailable."


class AuthError(Exception):
    """A tagged failure from the token lifecycle engine.

    context holds structured fields for logging (user_id, operation, stage).
    It never contains passwords or token values.
    """

    def __init__(self, kind: ErrorKind, message: str = "", **context: Any) -> None:
        self.kind = kind
        self.message = message or kind.value.replace("_", " ")
        self.context: dict[str, Any] = context
        super().__init__(self.message)

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    def is_kind(self, *kinds: ErrorKind) -> bool:
        """Return True if this error is tagged with any of the given kinds."""
        return self.kind in kinds

    def with_context(self, **context: Any) -> AuthError:
        """Attach extra context fields and return self (for re-raise chains)."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def public_code(self) -> str:
        """Wire-level code. Authentication failures share one code."""
        if self.kind in (ErrorKind.USER_NOT_FOUND, ErrorKind.INVALID_CREDENTIALS):
            return "bad_credentials"
        if self.category in (ErrorCategory.UNAVAILABLE, ErrorCategory.INTERNAL):
            return "service_unavailable" if self.category is ErrorCategory.UNAVAILABLE else "internal_error"
        return self.kind.value

    def public_message(self) -> str:
        if self.category is ErrorCategory.INTERNAL:
            return "An unexpected error occurred."
        return _PUBLIC_MESSAGES.get(self.kind, _UNAVAILABLE_MESSAGE)

    def __repr__(self) -> str:
        return f"AuthError({self.kind.name}, {self.message!r}, context={self.context!r})"
