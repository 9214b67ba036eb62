"""
auth/passwords.py -- bcrypt password hashing.

Bcrypt is used directly (no passlib wrapper): passlib's wrap-bug detection
builds a password longer than 72 bytes, which bcrypt 4.x rejects.

bcrypt only consumes the first 72 bytes of its input, and bcrypt 5.x raises
ValueError for anything longer. MAX_PASSWORD_BYTES makes that limit explicit:
hash_password() refuses longer input with a clear message, verify_password()
reports it as a mismatch without calling bcrypt, and callers (sign-in
validation, CredentialStore.set_password, the CLI) reject it up front as
PASSWORD_TOO_LONG.

checkpw() compares in constant time. DUMMY_HASH lets callers burn the same
bcrypt cost when there is no stored hash, so response time does not reveal
whether a user exists.
"""

from __future__ import annotations

import logging

import bcrypt

logger = logging.getLogger("tokengate.passwords")

DEFAULT_ROUNDS = 12
MAX_PASSWORD_BYTES = 72


def password_too_long(plain: str) -> bool:
    """True when the UTF-8 encoding exceeds what bcrypt accepts."""
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError if the password is longer than MAX_PASSWORD_BYTES.
    """
    if password_too_long(plain):
        raise ValueError(f"password cannot be longer than {MAX_PASSWORD_BYTES} bytes (UTF-8)")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    An over-long password can never have been stored, so it is a mismatch.
    A corrupt stored hash is treated as a mismatch and logged; it must not
    surface as a different error kind than a wrong password.
    """
    if password_too_long(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Computed once at import so the first unknown-user attempt is not measurably
# slower than later ones.
DUMMY_HASH: str = hash_password("tokengate_timing_dummy")
