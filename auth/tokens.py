"""
auth/tokens.py -- Access token issuance and verification, refresh token values.

Security design decisions:
  Access tokens: python-jose with RS256. The private key signs, the public key
       verifies, so a downstream service can validate tokens without being able
       to mint them. Claims are {sub, iat, exp} only; identity details are
       looked up by sub when needed.

  Expiry: checked here against an injected clock rather than by jose's own
       wall-clock check, so tests can move time and the refresh path can accept
       an expired-but-genuine access token (verify_expiry=False).

  Failure kinds:
       TOKEN_MALFORMED    -- not a JWS / not JSON / required claims missing
       SIGNATURE_INVALID  -- well-formed but not signed by our key (or wrong alg)
       TOKEN_EXPIRED      -- genuine but exp has passed
       The HTTP layer maps all three to 401.

  Refresh tokens: secrets.token_urlsafe(32) gives 256 bits of entropy and is
       never derived from user input. The store keeps sha256(value) only;
       sha256 is sufficient because the input is already high entropy.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import jws, jwt
from jose.exceptions import JOSEError, JWSError, JWTError

from auth.errors import AuthError, ErrorKind
from auth.keys import ALGORITHM, KeyPair
from auth.models import AccessClaims

logger = logging.getLogger("tokengate.tokens")

Clock = Callable[[], datetime]

DEFAULT_ACCESS_TOKEN_SECONDS = 3600
MIN_REFRESH_TOKEN_BYTES = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


class TokenSigner:
    """Issue and verify RS256 access tokens.

    Stateless apart from the immutable key pair. Deterministic for a given key
    pair and clock: RSASSA-PKCS1-v1_5 signatures carry no randomness.

    Usage:
        signer = TokenSigner(load_key_pair("keys/private.pem", "keys/public.pem"))
        token = signer.issue(user.id)
        claims = signer.verify(token)
    """

    def __init__(
        self,
        keys: KeyPair,
        expire_seconds: int = DEFAULT_ACCESS_TOKEN_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        if expire_seconds <= 0:
            raise ValueError("expire_seconds must be positive")
        self._keys = keys
        self._clock = clock
        self.expire_seconds = expire_seconds

    @property
    def can_sign(self) -> bool:
        """False for a verify-only signer (public key loaded alone)."""
        return self._keys.can_sign

    def issue(self, user_id: str) -> str:
        """Sign a new access token for user_id. Raises AuthError(SIGNING_ERROR)."""
        if self._keys.private_key is None:
            raise AuthError(
                ErrorKind.SIGNING_ERROR,
                "No private key loaded; this signer can only verify.",
                user_id=user_id,
                operation="issue",
            )
        now = self._clock()
        claims = {
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.expire_seconds)).timestamp()),
        }
        try:
            return jwt.encode(claims, self._keys.private_key, algorithm=ALGORITHM)
        except JOSEError as exc:
            raise AuthError(
                ErrorKind.SIGNING_ERROR, f"Signing failed: {exc}", user_id=user_id, operation="issue"
            ) from exc

    def verify(self, token: str, verify_expiry: bool = True) -> AccessClaims:
        """Check structure, signature, then expiry. Returns the verified claims."""
        if not token:
            raise AuthError(ErrorKind.TOKEN_MALFORMED, "Empty token.", operation="verify")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise AuthError(ErrorKind.TOKEN_MALFORMED, "Token header cannot be decoded.", operation="verify") from exc

        if header.get("alg") != ALGORITHM:
            # Rejects alg=none and HS256-with-public-key confusion before any
            # key material is involved.
            raise AuthError(
                ErrorKind.SIGNATURE_INVALID,
                f"Unexpected signing algorithm {header.get('alg')!r}.",
                operation="verify",
            )

        # Structure first: jws.verify reports every failure as JWSError, so a
        # token that decodes cleanly here can only fail verify on its signature.
        try:
            jws.get_unverified_claims(token)
        except JWSError as exc:
            raise AuthError(ErrorKind.TOKEN_MALFORMED, f"Token cannot be parsed: {exc}", operation="verify") from exc

        try:
            payload = jws.verify(token, self._keys.public_key, algorithms=[ALGORITHM])
        except JWSError as exc:
            raise AuthError(ErrorKind.SIGNATURE_INVALID, "Signature verification failed.", operation="verify") from exc

        claims = _parse_claims(payload)
        now = self._clock()
        if verify_expiry and claims.expires_at <= now:
            raise AuthError(
                ErrorKind.TOKEN_EXPIRED,
                "Access token has expired.",
                user_id=claims.subject,
                operation="verify",
            )
        return claims


def _parse_claims(payload: bytes) -> AccessClaims:
    try:
        raw = json.loads(payload)
    except ValueError as exc:
        raise AuthError(ErrorKind.TOKEN_MALFORMED, "Claims are not valid JSON.", operation="verify") from exc
    if not isinstance(raw, dict):
        raise AuthError(ErrorKind.TOKEN_MALFORMED, "Claims must be a JSON object.", operation="verify")

    sub = raw.get("sub")
    exp = raw.get("exp")
    iat = raw.get("iat", exp)
    if not isinstance(sub, str) or not sub:
        raise AuthError(ErrorKind.TOKEN_MALFORMED, "Missing subject claim.", operation="verify")
    # bool is an int subclass; a JSON true is not a timestamp.
    for name, value in (("exp", exp), ("iat", iat)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise AuthError(ErrorKind.TOKEN_MALFORMED, f"Missing or non-numeric {name} claim.", operation="verify")

    try:
        return AccessClaims(
            subject=sub,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )
    except (OverflowError, ValueError, OSError) as exc:
        raise AuthError(ErrorKind.TOKEN_MALFORMED, "Timestamp claim out of range.", operation="verify") from exc


# ---------------------------------------------------------------------------
# Refresh token values
# ---------------------------------------------------------------------------


def generate_refresh_token(nbytes: int = MIN_REFRESH_TOKEN_BYTES) -> str:
    """Return a URL-safe random refresh token with at least 256 bits of entropy."""
    if nbytes < MIN_REFRESH_TOKEN_BYTES:
        raise ValueError(f"refresh tokens need at least {MIN_REFRESH_TOKEN_BYTES} random bytes")
    return secrets.token_urlsafe(nbytes)


def hash_refresh_token(raw_token: str) -> str:
    """Return sha256(raw_token) as hex. Deterministic, so lookups stay O(1)."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
