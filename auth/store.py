"""
auth/store.py -- SQLAlchemy Core persistence for users and credentials.

Pattern: Repository + Data Mapper. UserDirectory and CredentialStore are the
repositories; _row_to_user is the mapper. The session engine never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Password hashes stay inside CredentialStore -- no method returns one.

Schema:
  users            id (UUID4 text), username (unique), email, created_at
  credentials      user_id (PK, FK users.id), password_hash, updated_at
  refresh_tokens   see auth/refresh_store.py

All three tables share one MetaData so create_schema() builds them together.
Each store takes an Engine built by create_auth_engine(); the stores do not own
it, and dispose() is the engine owner's job.

Storage failures surface as AuthError(PERSISTENCE_ERROR). The session engine
adds the per-call timeout on top (auth/session.py).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, ForeignKey, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthError, ErrorKind
from auth.models import User
from auth.passwords import (
    DEFAULT_ROUNDS,
    DUMMY_HASH,
    MAX_PASSWORD_BYTES,
    hash_password,
    password_too_long,
    verify_password,
)

logger = logging.getLogger("tokengate.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tokengate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

credentials = Table(
    "credentials",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("password_hash", Text, nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys. PRAGMAs are per-connection in SQLite."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def create_auth_engine(db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> Engine:
    """Build an Engine for the auth tables.

    For SQLite the busy timeout is set to the storage timeout so a locked
    database fails the call instead of hanging it. check_same_thread=False is
    required because the session engine runs store calls on worker threads.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    elif db_url.startswith("postgresql"):
        connect_args["connect_timeout"] = max(1, int(timeout))
    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def create_schema(engine: Engine) -> None:
    """Create all auth tables if they do not exist. Idempotent."""
    # refresh_tokens is declared in refresh_store.py against the same MetaData.
    import auth.refresh_store  # noqa: F401

    metadata.create_all(engine)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        created_at=row.created_at,
    )


def _storage_error(operation: str, exc: Exception, **context) -> AuthError:
    logger.error("Storage failure during %s (%s): %s", operation, context, exc)
    return AuthError(ErrorKind.PERSISTENCE_ERROR, f"Storage failure during {operation}.", operation=operation, **context)


# ---------------------------------------------------------------------------
# User Directory
# ---------------------------------------------------------------------------


class UserDirectory:
    """Resolve usernames to stable user ids. Users are provisioned out-of-band.

    Usage:
        directory = UserDirectory(engine)
        user = directory.create_user("admin", "admin@example.com")
        user = directory.get_by_username("admin")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_by_username(self, username: str) -> User:
        """Exact (case-sensitive) lookup. Raises AuthError(USER_NOT_FOUND)."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        except SQLAlchemyError as exc:
            raise _storage_error("get_by_username", exc) from exc
        if row is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND, "No user with that username.", operation="get_by_username")
        return _row_to_user(row)

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by id. Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        except SQLAlchemyError as exc:
            raise _storage_error("get_by_id", exc, user_id=user_id) from exc
        return _row_to_user(row) if row is not None else None

    def create_user(self, username: str, email: str = "") -> User:
        """Insert a new user with a fresh UUID4 id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists, so
        provisioning callers can report the conflict explicitly.
        """
        user = User(id=str(uuid.uuid4()), username=username, email=email, created_at=_now_iso())
        with self.engine.begin() as conn:
            conn.execute(
                users.insert().values(
                    id=user.id,
                    username=user.username,
                    email=user.email,
                    created_at=user.created_at,
                )
            )
        logger.info("User created (user_id=%s, username=%s)", user.id, username)
        return user

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(users.select().order_by(users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]


# ---------------------------------------------------------------------------
# Credential Store
# ---------------------------------------------------------------------------


class CredentialStore:
    """bcrypt password hashes keyed by user id.

    verify_credentials() always runs exactly one bcrypt check, against the
    stored hash or against DUMMY_HASH, so an unknown user and a wrong password
    cost the same time.
    """

    def __init__(self, engine: Engine, rounds: int = DEFAULT_ROUNDS) -> None:
        self.engine = engine
        self.rounds = rounds

    def _get_hash(self, user_id: str) -> str | None:
        try:
            with self.engine.connect() as conn:
                return conn.execute(
                    select(credentials.c.password_hash).where(credentials.c.user_id == user_id)
                ).scalar()
        except SQLAlchemyError as exc:
            raise _storage_error("verify_credentials", exc, user_id=user_id) from exc

    def verify_credentials(self, user_id: str, password: str) -> bool:
        """Return True when password matches the stored hash.

        Raises AuthError(USER_NOT_FOUND) when no credential row exists,
        AuthError(INVALID_CREDENTIALS) on mismatch, AuthError(PERSISTENCE_ERROR)
        on storage failure.
        """
        stored = self._get_hash(user_id)
        if stored is None:
            verify_password(password, DUMMY_HASH)
            raise AuthError(
                ErrorKind.USER_NOT_FOUND,
                "No credential on file.",
                user_id=user_id,
                operation="verify_credentials",
            )
        if not verify_password(password, stored):
            raise AuthError(
                ErrorKind.INVALID_CREDENTIALS,
                "Password does not match.",
                user_id=user_id,
                operation="verify_credentials",
            )
        return True

    def set_password(self, user_id: str, password: str) -> None:
        """Create or replace the credential for an existing user.

        Raises AuthError(PASSWORD_TOO_LONG) if the password exceeds bcrypt's
        input limit, AuthError(USER_NOT_FOUND) if user_id is not a provisioned user.
        Refresh tokens are not touched; callers that want a password change to
        end existing sessions revoke them explicitly.
        """
        if password_too_long(password):
            raise AuthError(
                ErrorKind.PASSWORD_TOO_LONG,
                f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.",
                user_id=user_id,
                operation="set_password",
            )
        password_hash = hash_password(password, rounds=self.rounds)
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                exists = conn.execute(select(users.c.id).where(users.c.id == user_id)).scalar()
                if exists is None:
                    raise AuthError(
                        ErrorKind.USER_NOT_FOUND, "No such user.", user_id=user_id, operation="set_password"
                    )
                updated = conn.execute(
                    credentials.update()
                    .where(credentials.c.user_id == user_id)
                    .values(password_hash=password_hash, updated_at=now)
                )
                if updated.rowcount == 0:
                    conn.execute(
                        credentials.insert().values(user_id=user_id, password_hash=password_hash, updated_at=now)
                    )
        except SQLAlchemyError as exc:
            raise _storage_error("set_password", exc, user_id=user_id) from exc
        logger.info("Password updated (user_id=%s)", user_id)

    def has_credential(self, user_id: str) -> bool:
        return self._get_hash(user_id) is not None
