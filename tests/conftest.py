"""
tests/conftest.py -- Shared test fixtures for tokengate.

This module provides:
  - rsa_pem / keys: one RSA pair per session (generation is the slow part)
  - FakeClock: a settable clock injected into TokenSigner and RefreshTokenStore
  - db_engine + stores: a fresh SQLite file per test under tmp_path
  - seeded_user: "admin" / "password123"
  - session_engine: SessionEngine wired to the stores above
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient for the HTTP integration tests

Design: SQLite files under tmp_path (not shared-cache :memory:) because the
session engine runs every store call on a worker thread. A file database with
WAL behaves like production; shared-cache memory databases raise table-lock
errors under concurrent threads.

The DEBUG env var must be set before any api/core import so get_settings()
accepts a missing key directory at import time.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.keys import KeyPair, generate_key_pair, key_pair_from_pem
from auth.models import User
from auth.refresh_store import RefreshTokenStore
from auth.session import SessionEngine
from auth.store import CredentialStore, UserDirectory, create_auth_engine, create_schema
from auth.tokens import TokenSigner

# Lowest cost bcrypt accepts. Production default is 12.
TEST_BCRYPT_ROUNDS = 4

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "password123"


class FakeClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_pem() -> tuple[bytes, bytes]:
    """(private_pem, public_pem), generated once for the whole run."""
    return generate_key_pair()


@pytest.fixture(scope="session")
def keys(rsa_pem) -> KeyPair:
    private_pem, public_pem = rsa_pem
    return key_pair_from_pem(private_pem, public_pem)


@pytest.fixture(scope="session")
def other_keys() -> KeyPair:
    """A second, unrelated pair for wrong-signer tests."""
    private_pem, public_pem = generate_key_pair()
    return key_pair_from_pem(private_pem, public_pem)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_engine(tmp_path):
    engine = create_auth_engine(f"sqlite:///{tmp_path / 'auth.db'}", timeout=5.0)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def directory(db_engine) -> UserDirectory:
    return UserDirectory(db_engine)


@pytest.fixture
def credentials(db_engine) -> CredentialStore:
    return CredentialStore(db_engine, rounds=TEST_BCRYPT_ROUNDS)


@pytest.fixture
def refresh_store(db_engine, clock) -> RefreshTokenStore:
    return RefreshTokenStore(db_engine, expire_seconds=7 * 24 * 3600, clock=clock)


@pytest.fixture
def seeded_user(directory, credentials) -> User:
    user = directory.create_user(ADMIN_USERNAME, email="admin@example.com")
    credentials.set_password(user.id, ADMIN_PASSWORD)
    return user


@pytest.fixture
def signer(keys, clock) -> TokenSigner:
    return TokenSigner(keys, expire_seconds=3600, clock=clock)


@pytest.fixture
def session_engine(directory, credentials, signer, refresh_store, seeded_user) -> SessionEngine:
    return SessionEngine(directory, credentials, signer, refresh_store, storage_timeout=5.0)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: SessionEngine, db_engine):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test objects into app.state so TestClient routes see the
    test database and test keys rather than the configured ones.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.db_engine = db_engine
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory, keys) -> Generator[tuple[TestClient, SessionEngine, User], None, None]:
    """Yield (client, session_engine, admin_user) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, exception handlers and middleware.
    """
    from api.main import app

    db_path = tmp_path_factory.mktemp("api") / "auth.db"
    db_engine = create_auth_engine(f"sqlite:///{db_path}")
    create_schema(db_engine)
    directory = UserDirectory(db_engine)
    credentials = CredentialStore(db_engine, rounds=TEST_BCRYPT_ROUNDS)
    admin = directory.create_user(ADMIN_USERNAME, email="admin@example.com")
    credentials.set_password(admin.id, ADMIN_PASSWORD)

    engine = SessionEngine(
        directory,
        credentials,
        TokenSigner(keys, expire_seconds=3600),
        RefreshTokenStore(db_engine),
        storage_timeout=5.0,
    )

    app.router.lifespan_context = _patch_lifespan(engine, db_engine)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, engine, admin

    db_engine.dispose()
