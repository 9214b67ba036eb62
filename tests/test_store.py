"""
tests/test_store.py -- Unit tests for UserDirectory and CredentialStore.

Covers:
  - exact, case-sensitive username lookup
  - duplicate usernames rejected with IntegrityError
  - verify_credentials: match, mismatch, missing credential row
  - set_password replaces the hash and refuses unknown users
  - bcrypt hashes only, never plaintext
"""

from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError, ErrorKind
from auth.passwords import hash_password, verify_password
from auth.store import CredentialStore, UserDirectory, credentials as credentials_table

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "password123"


class TestUserDirectory:
    def test_lookup_by_username(self, directory: UserDirectory, seeded_user) -> None:
        user = directory.get_by_username(ADMIN_USERNAME)
        assert user.id == seeded_user.id
        assert user.email == "admin@example.com"

    def test_lookup_is_case_sensitive(self, directory: UserDirectory, seeded_user) -> None:
        with pytest.raises(AuthError) as exc_info:
            directory.get_by_username(ADMIN_USERNAME.upper())
        assert exc_info.value.is_kind(ErrorKind.USER_NOT_FOUND)

    def test_get_by_id(self, directory: UserDirectory, seeded_user) -> None:
        assert directory.get_by_id(seeded_user.id).username == ADMIN_USERNAME
        assert directory.get_by_id("no-such-id") is None

    def test_duplicate_username_rejected(self, directory: UserDirectory, seeded_user) -> None:
        with pytest.raises(IntegrityError):
            directory.create_user(ADMIN_USERNAME)

    def test_ids_are_unique(self, directory: UserDirectory) -> None:
        a = directory.create_user("alice")
        b = directory.create_user("bob")
        assert a.id != b.id
        assert [u.username for u in directory.list_users()] == ["alice", "bob"]


class TestCredentialStore:
    def test_correct_password(self, credentials: CredentialStore, seeded_user) -> None:
        assert credentials.verify_credentials(seeded_user.id, ADMIN_PASSWORD) is True

    def test_wrong_password(self, credentials: CredentialStore, seeded_user) -> None:
        with pytest.raises(AuthError) as exc_info:
            credentials.verify_credentials(seeded_user.id, "wrong-password")
        assert exc_info.value.is_kind(ErrorKind.INVALID_CREDENTIALS)

    def test_missing_credential_row(self, credentials: CredentialStore, directory: UserDirectory) -> None:
        user = directory.create_user("no-password")
        assert credentials.has_credential(user.id) is False
        with pytest.raises(AuthError) as exc_info:
            credentials.verify_credentials(user.id, "anything")
        assert exc_info.value.is_kind(ErrorKind.USER_NOT_FOUND)

    def test_set_password_replaces_hash(self, credentials: CredentialStore, seeded_user) -> None:
        credentials.set_password(seeded_user.id, "new-password")
        assert credentials.verify_credentials(seeded_user.id, "new-password")
        with pytest.raises(AuthError):
            credentials.verify_credentials(seeded_user.id, ADMIN_PASSWORD)

    def test_set_password_unknown_user(self, credentials: CredentialStore) -> None:
        with pytest.raises(AuthError) as exc_info:
            credentials.set_password("no-such-user", "whatever")
        assert exc_info.value.is_kind(ErrorKind.USER_NOT_FOUND)

    def test_set_password_too_long(self, credentials: CredentialStore, seeded_user) -> None:
        with pytest.raises(AuthError) as exc_info:
            credentials.set_password(seeded_user.id, "x" * 100)
        assert exc_info.value.is_kind(ErrorKind.PASSWORD_TOO_LONG)
        assert credentials.verify_credentials(seeded_user.id, ADMIN_PASSWORD)

    def test_over_long_password_is_mismatch(self, credentials: CredentialStore, seeded_user) -> None:
        with pytest.raises(AuthError) as exc_info:
            credentials.verify_credentials(seeded_user.id, ADMIN_PASSWORD + "x" * 100)
        assert exc_info.value.is_kind(ErrorKind.INVALID_CREDENTIALS)

    def test_plaintext_never_stored(self, credentials: CredentialStore, db_engine, seeded_user) -> None:
        with db_engine.connect() as conn:
            stored = conn.execute(select(credentials_table.c.password_hash)).scalar()
        assert ADMIN_PASSWORD not in stored
        assert stored.startswith("$2")


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("secret", rounds=4)
        assert verify_password("secret", hashed)
        assert not verify_password("Secret", hashed)

    def test_corrupt_hash_is_mismatch(self) -> None:
        assert verify_password("secret", "not-a-bcrypt-hash") is False

    def test_72_byte_limit(self) -> None:
        hashed = hash_password("x" * 72, rounds=4)
        assert verify_password("x" * 72, hashed)
        assert verify_password("x" * 73, hashed) is False
        with pytest.raises(ValueError):
            hash_password("x" * 73, rounds=4)
        # Multi-byte characters count by their UTF-8 length.
        with pytest.raises(ValueError):
            hash_password("\u00e9" * 37, rounds=4)
