"""
auth/refresh_store.py -- Single-active-refresh-token-per-user registry.

One row per user. Issuing a new refresh token overwrites the previous one, so
the old value stops resolving the moment the new one is committed (rotation).
There is no multi-session history.

Security:
  Only sha256(token_value) is stored (same approach as API key hashing: the
  token is already 256-bit random, so a slow hash buys nothing). Lookups take
  the raw value and hash it, keeping the UNIQUE index usable.

Atomicity:
  upsert() is one INSERT ... ON CONFLICT (user_id) DO UPDATE statement on
  SQLite and PostgreSQL, so concurrent upserts for the same user resolve as
  last-writer-wins with no partial rows. Other dialects fall back to
  UPDATE-then-INSERT inside one transaction.

  rotate() is the compare-and-swap variant: it only replaces the row if it
  still holds the presented token, so two concurrent refreshes with the same
  token cannot both succeed.

Usage:
    store = RefreshTokenStore(engine, expire_seconds=7 * 24 * 3600)
    store.upsert(user.id, token)
    user_id = store.find_user_by_token(token)
    store.purge_expired()
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Column, ForeignKey, String, Table, delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthError, ErrorKind
from auth.models import RefreshTokenRecord
from auth.store import metadata
from auth.tokens import Clock, hash_refresh_token, utcnow

logger = logging.getLogger("tokengate.refresh_store")

DEFAULT_REFRESH_TOKEN_SECONDS = 7 * 24 * 3600

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # sha256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32)),  # NULL = no expiry
)

_INSERT_BY_DIALECT = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        user_id=row.user_id,
        token_hash=row.token_hash,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
    )


class RefreshTokenStore:
    """Persist and resolve refresh tokens. One active token per user id."""

    def __init__(
        self,
        engine: Engine,
        expire_seconds: int = DEFAULT_REFRESH_TOKEN_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        if expire_seconds < 0:
            raise ValueError("expire_seconds must be zero (no expiry) or positive")
        self.engine = engine
        self.expire_seconds = expire_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _row_values(self, user_id: str, token_value: str) -> dict:
        now = self._clock()
        expires_at = (now + timedelta(seconds=self.expire_seconds)).isoformat() if self.expire_seconds else None
        return {
            "user_id": user_id,
            "token_hash": hash_refresh_token(token_value),
            "issued_at": now.isoformat(),
            "expires_at": expires_at,
        }

    def _is_live(self, expires_at: str | None) -> bool:
        if expires_at is None:
            return True
        return datetime.fromisoformat(expires_at) > self._clock()

    def _fail(self, operation: str, exc: Exception, user_id: str | None = None) -> AuthError:
        logger.error("Refresh token storage failure during %s (user_id=%s): %s", operation, user_id, exc)
        return AuthError(
            ErrorKind.PERSISTENCE_ERROR,
            f"Refresh token storage failure during {operation}.",
            operation=operation,
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, user_id: str, token_value: str) -> bool:
        """True iff the live stored token for user_id equals token_value."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(refresh_tokens.c.expires_at).where(
                        (refresh_tokens.c.user_id == user_id)
                        & (refresh_tokens.c.token_hash == hash_refresh_token(token_value))
                    )
                ).fetchone()
        except SQLAlchemyError as exc:
            raise self._fail("exists", exc, user_id) from exc
        return row is not None and self._is_live(row.expires_at)

    def find_user_by_token(self, token_value: str) -> str:
        """Resolve a raw refresh token to its owner's user id.

        Raises AuthError(REFRESH_TOKEN_NOT_FOUND) when no live row matches.
        An expired row is reported exactly like a missing one.
        """
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    refresh_tokens.select().where(refresh_tokens.c.token_hash == hash_refresh_token(token_value))
                ).fetchone()
        except SQLAlchemyError as exc:
            raise self._fail("find_user_by_token", exc) from exc
        if row is None or not self._is_live(row.expires_at):
            raise AuthError(
                ErrorKind.REFRESH_TOKEN_NOT_FOUND,
                "Refresh token not found or expired.",
                operation="find_user_by_token",
            )
        return row.user_id

    def get(self, user_id: str) -> RefreshTokenRecord | None:
        """Return the stored row for user_id (live or expired), or None."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.user_id == user_id)).fetchone()
        except SQLAlchemyError as exc:
            raise self._fail("get", exc, user_id) from exc
        return _row_to_record(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, user_id: str, token_value: str) -> None:
        """Insert or overwrite the refresh token for user_id.

        Raises AuthError(PERSISTENCE_ERROR) on storage failure; in that case
        the previously stored token (if any) is unchanged.
        """
        values = self._row_values(user_id, token_value)
        insert = _INSERT_BY_DIALECT.get(self.engine.dialect.name)
        try:
            with self.engine.begin() as conn:
                if insert is not None:
                    stmt = insert(refresh_tokens).values(**values)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[refresh_tokens.c.user_id],
                        set_={
                            "token_hash": stmt.excluded.token_hash,
                            "issued_at": stmt.excluded.issued_at,
                            "expires_at": stmt.excluded.expires_at,
                        },
                    )
                    conn.execute(stmt)
                else:
                    result = conn.execute(
                        update(refresh_tokens).where(refresh_tokens.c.user_id == user_id).values(**values)
                    )
                    if result.rowcount == 0:
                        conn.execute(refresh_tokens.insert().values(**values))
        except SQLAlchemyError as exc:
            raise self._fail("upsert", exc, user_id) from exc
        logger.debug("Refresh token stored (user_id=%s)", user_id)

    def rotate(self, user_id: str, old_value: str, new_value: str) -> bool:
        """Replace old_value with new_value only if old_value is still current.

        Returns False when another rotation got there first (or the token was
        revoked); the stored row is then left untouched.
        """
        values = self._row_values(user_id, new_value)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(refresh_tokens)
                    .where(
                        (refresh_tokens.c.user_id == user_id)
                        & (refresh_tokens.c.token_hash == hash_refresh_token(old_value))
                    )
                    .values(
                        token_hash=values["token_hash"],
                        issued_at=values["issued_at"],
                        expires_at=values["expires_at"],
                    )
                )
        except SQLAlchemyError as exc:
            raise self._fail("rotate", exc, user_id) from exc
        return result.rowcount == 1

    def revoke(self, user_id: str) -> bool:
        """Delete the user's refresh token. Returns True if a row was removed."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(delete(refresh_tokens).where(refresh_tokens.c.user_id == user_id))
        except SQLAlchemyError as exc:
            raise self._fail("revoke", exc, user_id) from exc
        return result.rowcount > 0

    def purge_expired(self) -> int:
        """Delete expired rows. Returns number of rows removed."""
        cutoff = self._clock().isoformat()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(refresh_tokens).where(
                        refresh_tokens.c.expires_at.is_not(None) & (refresh_tokens.c.expires_at <= cutoff)
                    )
                )
        except SQLAlchemyError as exc:
            raise self._fail("purge_expired", exc) from exc
        if result.rowcount:
            logger.info("Purged %d expired refresh token(s)", result.rowcount)
        return result.rowcount
