"""
auth/session.py -- Session engine: sign-in, refresh, access token validation.

The engine composes the four collaborators it is constructed with. It holds no
mutable state of its own and reads no global settings, so one instance can
serve any number of concurrent requests.

Stage machine per session-establishing call:

    VALIDATING -> AUTHENTICATING -> ISSUING -> PERSISTING -> COMPLETE
         \\______________\\______________\\____________\\____> FAILED

The stage reached is attached to every AuthError (context["stage"]) and logged.

Storage calls:
  The stores are synchronous SQLAlchemy code. Each call runs on a worker
  thread under asyncio.wait_for() with a bounded timeout; expiry raises
  AuthError(STORAGE_TIMEOUT) instead of hanging the request.

Persisting:
  The persist step is a single atomic statement. Once submitted it always
  settles before the engine reports anything: a timeout waits for the real
  outcome instead of raising STORAGE_TIMEOUT over a write that may still
  commit, and cancellation waits for it before CancelledError is re-raised.
  Before PERSISTING, cancellation propagates immediately and nothing has been
  written.

Refresh identity:
  The user is resolved from the refresh token store, never from the access
  token's claims. The access token must still carry our signature (expiry is
  ignored: refreshing an expired access token is the point), and its subject
  must match the stored owner.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from auth.errors import AuthError, ErrorCategory, ErrorKind
from auth.models import TokenPair, User
from auth.passwords import DUMMY_HASH, MAX_PASSWORD_BYTES, password_too_long, verify_password
from auth.refresh_store import RefreshTokenStore
from auth.store import CredentialStore, UserDirectory
from auth.tokens import MIN_REFRESH_TOKEN_BYTES, TokenSigner, generate_refresh_token

logger = logging.getLogger("tokengate.session")

T = TypeVar("T")

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 4
DEFAULT_STORAGE_TIMEOUT = 5.0


class Stage(str, Enum):
    VALIDATING = "validating"
    AUTHENTICATING = "authenticating"
    ISSUING = "issuing"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    FAILED = "failed"


def validate_sign_in_input(username: str, password: str) -> None:
    """Fail fast on input shape. Order matters: presence before length."""
    if not username:
        raise AuthError(ErrorKind.MISSING_USERNAME, "Username is required.", operation="sign_in")
    if not password:
        raise AuthError(ErrorKind.MISSING_PASSWORD, "Password is required.", operation="sign_in")
    if len(username) < MIN_USERNAME_LENGTH:
        raise AuthError(
            ErrorKind.USERNAME_TOO_SHORT,
            f"Username must be at least {MIN_USERNAME_LENGTH} characters long.",
            operation="sign_in",
            min_length=MIN_USERNAME_LENGTH,
        )
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError(
            ErrorKind.PASSWORD_TOO_SHORT,
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.",
            operation="sign_in",
            min_length=MIN_PASSWORD_LENGTH,
        )
    if password_too_long(password):
        raise AuthError(
            ErrorKind.PASSWORD_TOO_LONG,
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.",
            operation="sign_in",
            max_bytes=MAX_PASSWORD_BYTES,
        )


class SessionEngine:
    """Orchestrates credential checks, token issuance and refresh rotation.

    Usage:
        engine = SessionEngine(directory, credentials, signer, refresh_store)
        pair = await engine.sign_in("admin", "password123")
        pair = await engine.refresh_session(pair.access_token, pair.refresh_token)
        user_id = await engine.validate_access_token(pair.access_token)
    """

    def __init__(
        self,
        directory: UserDirectory,
        credentials: CredentialStore,
        signer: TokenSigner,
        refresh_store: RefreshTokenStore,
        *,
        storage_timeout: float = DEFAULT_STORAGE_TIMEOUT,
        refresh_token_bytes: int = MIN_REFRESH_TOKEN_BYTES,
        strict_rotation: bool = False,
        token_factory: Callable[[int], str] = generate_refresh_token,
    ) -> None:
        if storage_timeout <= 0:
            raise ValueError("storage_timeout must be positive")
        self.directory = directory
        self.credentials = credentials
        self.signer = signer
        self.refresh_store = refresh_store
        self.storage_timeout = storage_timeout
        self.refresh_token_bytes = refresh_token_bytes
        self.strict_rotation = strict_rotation
        self._token_factory = token_factory

    # ------------------------------------------------------------------
    # Storage calls
    # ------------------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking store call on a worker thread with a timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.storage_timeout)
        except asyncio.TimeoutError:
            logger.error("Storage call %s timed out after %.1fs", operation, self.storage_timeout)
            raise AuthError(
                ErrorKind.STORAGE_TIMEOUT,
                f"Storage call {operation} timed out after {self.storage_timeout}s.",
                operation=operation,
            ) from None

    async def _persist(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a write on a worker thread; its reported outcome is its real outcome.

        A thread cannot be abandoned: once submitted the write commits or
        fails on its own schedule. On timeout the engine therefore waits for
        it to settle and returns (or raises) what actually happened, so a
        caller never sees STORAGE_TIMEOUT for a write that later committed.
        The database busy timeout (create_auth_engine) bounds that wait.
        On cancellation the write settles before CancelledError is re-raised.
        """
        write = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.wait_for(asyncio.shield(write), timeout=self.storage_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Write %s exceeded %.1fs; waiting for it to settle", operation, self.storage_timeout
            )
            return await write
        except asyncio.CancelledError:
            try:
                await write
            except AuthError as exc:
                logger.warning("Write %s failed after cancellation: %s", operation, exc.kind.value)
            logger.info("Write %s settled; propagating cancellation", operation)
            raise

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _issue_access_token(self, user_id: str) -> str:
        try:
            return self.signer.issue(user_id)
        except AuthError as exc:
            logger.error("Access token signing failed (user_id=%s): %s", user_id, exc.message)
            raise AuthError(
                ErrorKind.TOKEN_GENERATION_FAILED,
                "Access token could not be generated.",
                user_id=user_id,
                operation="issue_access_token",
            ) from exc

    def _new_refresh_token(self, user_id: str) -> str:
        try:
            return self._token_factory(self.refresh_token_bytes)
        except (OSError, ValueError) as exc:
            logger.error("Refresh token generation failed (user_id=%s): %s", user_id, exc)
            raise AuthError(
                ErrorKind.TOKEN_GENERATION_FAILED,
                "Refresh token could not be generated.",
                user_id=user_id,
                operation="generate_refresh_token",
            ) from exc

    def _log_failure(self, operation: str, stage: Stage, exc: AuthError, **fields: Any) -> None:
        if exc.category in (ErrorCategory.UNAVAILABLE, ErrorCategory.INTERNAL):
            log = logger.error
        elif exc.category is ErrorCategory.UNAUTHENTICATED:
            log = logger.info
        else:
            log = logger.debug
        log("%s failed at %s: %s %s", operation, stage.value, exc.kind.value, {**exc.context, **fields})

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def sign_in(self, username: str, password: str) -> TokenPair:
        """Authenticate username/password and return a fresh token pair.

        Raises AuthError with one of: MISSING_USERNAME, MISSING_PASSWORD,
        USERNAME_TOO_SHORT, PASSWORD_TOO_SHORT, PASSWORD_TOO_LONG, USER_NOT_FOUND,
        INVALID_CREDENTIALS, TOKEN_GENERATION_FAILED, PERSISTENCE_ERROR,
        STORAGE_TIMEOUT. No token is returned unless the refresh token has
        been stored.
        """
        stage = Stage.VALIDATING
        try:
            validate_sign_in_input(username, password)

            stage = Stage.AUTHENTICATING
            try:
                user = await self._call("get_by_username", self.directory.get_by_username, username)
            except AuthError as exc:
                if exc.is_kind(ErrorKind.USER_NOT_FOUND):
                    # Same bcrypt cost as a wrong password.
                    await self._call("verify_password", verify_password, password, DUMMY_HASH)
                raise
            await self._call("verify_credentials", self.credentials.verify_credentials, user.id, password)

            stage = Stage.ISSUING
            access_token = self._issue_access_token(user.id)
            refresh_token = self._new_refresh_token(user.id)

            stage = Stage.PERSISTING
            await self._persist("upsert_refresh_token", self.refresh_store.upsert, user.id, refresh_token)
        except AuthError as exc:
            self._log_failure("sign_in", stage, exc, username=username)
            raise exc.with_context(stage=stage.value)

        logger.info("Sign-in complete (user_id=%s)", user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.signer.expire_seconds,
        )

    async def refresh_session(self, access_token: str, refresh_token: str) -> TokenPair:
        """Exchange a refresh token (plus its session's access token) for a new pair.

        The presented refresh token stops resolving once the new one is
        stored. If storing fails, the presented token is still valid.

        Raises AuthError with one of: TOKEN_MALFORMED, SIGNATURE_INVALID,
        INVALID_REFRESH_TOKEN, TOKEN_GENERATION_FAILED, PERSISTENCE_ERROR,
        STORAGE_TIMEOUT.
        """
        stage = Stage.VALIDATING
        user_id: str | None = None
        try:
            if not refresh_token:
                raise AuthError(ErrorKind.INVALID_REFRESH_TOKEN, "Refresh token is required.")
            claims = self.signer.verify(access_token, verify_expiry=False)

            stage = Stage.AUTHENTICATING
            try:
                user_id = await self._call(
                    "find_user_by_token", self.refresh_store.find_user_by_token, refresh_token
                )
            except AuthError as exc:
                if not exc.is_kind(ErrorKind.REFRESH_TOKEN_NOT_FOUND):
                    raise
                raise AuthError(ErrorKind.INVALID_REFRESH_TOKEN, "Refresh token is not active.") from exc
            if claims.subject != user_id:
                raise AuthError(
                    ErrorKind.INVALID_REFRESH_TOKEN,
                    "Refresh token does not belong to the access token's subject.",
                    user_id=user_id,
                )

            stage = Stage.ISSUING
            new_access_token = self._issue_access_token(user_id)
            new_refresh_token = self._new_refresh_token(user_id)

            stage = Stage.PERSISTING
            if self.strict_rotation:
                rotated = await self._persist(
                    "rotate_refresh_token",
                    self.refresh_store.rotate,
                    user_id,
                    refresh_token,
                    new_refresh_token,
                )
                if not rotated:
                    raise AuthError(
                        ErrorKind.INVALID_REFRESH_TOKEN,
                        "Refresh token was rotated by a concurrent request.",
                        user_id=user_id,
                    )
            else:
                await self._persist("upsert_refresh_token", self.refresh_store.upsert, user_id, new_refresh_token)
        except AuthError as exc:
            self._log_failure("refresh_session", stage, exc, user_id=user_id)
            raise exc.with_context(stage=stage.value, operation="refresh_session")

        logger.info("Session refreshed (user_id=%s)", user_id)
        return TokenPair(
            access_token=new_access_token,
            refresh_token=new_refresh_token,
            expires_in=self.signer.expire_seconds,
        )

    async def validate_access_token(self, token: str) -> str:
        """Return the token's subject (user id).

        Failures are the signer's kinds (TOKEN_MALFORMED, SIGNATURE_INVALID,
        TOKEN_EXPIRED), all in the UNAUTHENTICATED category.
        """
        try:
            return self.signer.verify(token).subject
        except AuthError as exc:
            self._log_failure("validate_access_token", Stage.VALIDATING, exc)
            raise

    async def current_user(self, token: str) -> User:
        """Validate token and load its user.

        A token whose subject has since been deleted raises USER_NOT_FOUND.
        """
        user_id = await self.validate_access_token(token)
        user = await self._call("get_by_id", self.directory.get_by_id, user_id)
        if user is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND, "Token subject no longer exists.", user_id=user_id)
        return user
