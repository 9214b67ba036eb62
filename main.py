#!/usr/bin/env python3
"""
tokengate -- Operator CLI for the session service.

The HTTP service never creates users or key material; this CLI does. It reads
the same settings (environment / .env) as the API so both always agree on the
database and key paths.

Usage:
  python main.py init-db
  python main.py gen-keys --out keys
  python main.py gen-keys --out keys --bits 4096 --force
  python main.py create-user admin --email admin@example.com
  python main.py set-password admin
  python main.py set-password admin --revoke-sessions
  python main.py purge-tokens

Passwords are read from a prompt (no echo) unless --password is given.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError
from auth.keys import DEFAULT_KEY_BITS, write_key_pair
from auth.passwords import MAX_PASSWORD_BYTES, password_too_long
from auth.refresh_store import RefreshTokenStore
from auth.session import MIN_PASSWORD_LENGTH, MIN_USERNAME_LENGTH
from auth.store import CredentialStore, UserDirectory, create_auth_engine, create_schema
from core.config import get_settings


def _read_password(supplied: Optional[str]) -> str:
    """Return the supplied password, or prompt twice until both entries match."""
    if supplied is not None:
        return supplied
    while True:
        first = getpass.getpass("  Password: ")
        second = getpass.getpass("  Repeat password: ")
        if first == second:
            return first
        print("  [!] Passwords do not match. Try again.")


def _open_stores():
    settings = get_settings()
    engine = create_auth_engine(settings.db_url, timeout=settings.storage_timeout_seconds)
    create_schema(engine)
    directory = UserDirectory(engine)
    credentials = CredentialStore(engine, rounds=settings.bcrypt_rounds)
    refresh_store = RefreshTokenStore(engine, expire_seconds=settings.refresh_token_expire_seconds)
    return engine, directory, credentials, refresh_store


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init_db(args: argparse.Namespace) -> int:
    engine, *_ = _open_stores()
    engine.dispose()
    print(f"  Schema ready at {get_settings().db_url}")
    return 0


def cmd_gen_keys(args: argparse.Namespace) -> int:
    try:
        private_path, public_path = write_key_pair(args.out, bits=args.bits, overwrite=args.force)
    except FileExistsError as e:
        print(f"  [!] {e}. Use --force to overwrite.")
        return 1
    print(f"  Private key: {private_path}")
    print(f"  Public key:  {public_path}")
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    if len(args.username) < MIN_USERNAME_LENGTH:
        print(f"  [!] Username must be at least {MIN_USERNAME_LENGTH} characters long.")
        return 1
    password = _read_password(args.password)
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
        return 1
    if password_too_long(password):
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
        return 1

    engine, directory, credentials, _ = _open_stores()
    try:
        user = directory.create_user(args.username, email=args.email)
        credentials.set_password(user.id, password)
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1
    finally:
        engine.dispose()
    print(f"  Created user {user.username} ({user.id})")
    return 0


def cmd_set_password(args: argparse.Namespace) -> int:
    engine, directory, credentials, refresh_store = _open_stores()
    try:
        user = directory.get_by_username(args.username)
        password = _read_password(args.password)
        if len(password) < MIN_PASSWORD_LENGTH:
            print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
            return 1
        if password_too_long(password):
            print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
            return 1
        credentials.set_password(user.id, password)
        revoked = refresh_store.revoke(user.id) if args.revoke_sessions else False
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1
    finally:
        engine.dispose()
    print(f"  Password updated for {user.username}.")
    if revoked:
        print("  Active refresh token revoked.")
    return 0


def cmd_purge_tokens(args: argparse.Namespace) -> int:
    engine, _, _, refresh_store = _open_stores()
    try:
        removed = refresh_store.purge_expired()
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1
    finally:
        engine.dispose()
    print(f"  Removed {removed} expired refresh token(s).")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokengate",
        description="Manage users and key material for the tokengate session service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py gen-keys --out keys
  python main.py create-user admin --email admin@example.com
  DB_URL=sqlite:///prod.db python main.py set-password admin --revoke-sessions
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("init-db", help="Create the database schema if missing")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("gen-keys", help="Generate an RSA key pair for RS256 signing")
    p.add_argument("--out", default="keys", metavar="DIR", help="Output directory (default: keys)")
    p.add_argument(
        "--bits",
        type=int,
        default=DEFAULT_KEY_BITS,
        help=f"RSA modulus size in bits (default: {DEFAULT_KEY_BITS})",
    )
    p.add_argument("--force", action="store_true", help="Overwrite existing key files")
    p.set_defaults(func=cmd_gen_keys)

    p = sub.add_parser("create-user", help="Create a user with a password credential")
    p.add_argument("username")
    p.add_argument("--email", default="", help="Contact email (optional)")
    p.add_argument("--password", default=None, help="Password (prompted when omitted)")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("set-password", help="Replace a user's password")
    p.add_argument("username")
    p.add_argument("--password", default=None, help="Password (prompted when omitted)")
    p.add_argument(
        "--revoke-sessions",
        action="store_true",
        help="Also revoke the user's active refresh token",
    )
    p.set_defaults(func=cmd_set_password)

    p = sub.add_parser("purge-tokens", help="Delete expired refresh tokens")
    p.set_defaults(func=cmd_purge_tokens)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
