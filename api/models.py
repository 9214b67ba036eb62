"""
API request and response models for tokengate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only bound field sizes. Minimum lengths are NOT declared here:
the session engine owns those rules and reports them with specific error
kinds (username_too_short, ...) instead of a generic 422.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import TokenPair, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-in."""

    username: str = Field(default="", max_length=255)
    password: str = Field(default="", max_length=255)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    access_token: str = Field(default="", max_length=4096)
    refresh_token: str = Field(default="", max_length=512)


class ValidateRequest(BaseModel):
    """Request body for POST /api/v1/auth/validate."""

    access_token: str = Field(default="", max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair returned by sign-in and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )


class ValidateResponse(BaseModel):
    subject: str


class MeResponse(BaseModel):
    user_id: str
    username: str
    email: str

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(user_id=user.id, username=user.username, email=user.email)


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope for every non-2xx response."""

    error: ErrorDetail
