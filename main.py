#!/usr/bin/env python3
"""
Admin dashboard -- operator command line.

Self-signup only ever creates role "user", so the first administrator has to
be created out of band. This CLI talks to the same database as the API
(DATABASE_URL) and is meant to be run on the server host.

Usage:
  python main.py create-admin --email admin@example.com --name "Site Admin"
  python main.py create-admin --email admin@example.com --name "Site Admin" --password 's3cret!'
  python main.py purge-tokens

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the dashboard database (default: dashboard.db)
  SECRET_KEY     Required unless DEBUG=true (same policy as the API)
  BCRYPT_ROUNDS  bcrypt cost factor for the admin password (default: 12)
"""

from __future__ import annotations

import argparse
import getpass
import sys

from pydantic import EmailStr, TypeAdapter, ValidationError

from api.models import PASSWORD_MAX, PASSWORD_MIN
from auth.errors import DuplicateKey
from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import BcryptHasher
from core.config import get_settings


_EMAIL = TypeAdapter(EmailStr)


def parse_email(raw: str) -> str | None:
    """Return the normalized address, or None if it is not a valid email."""
    try:
        return _EMAIL.validate_python(raw.strip()).lower()
    except ValidationError:
        return None


def _read_password(given: str | None) -> str:
    if given:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def create_admin(store: UserStore, hasher: BcryptHasher, email: str, name: str, password: str) -> User:
    """Create an admin account, or promote and re-password an existing one.

    Promotion also reactivates the account and clears its lockout counters
    and refresh tokens, so the operator starts from a clean session.
    """
    hashed = hasher.hash(password)
    existing = store.find_user_by_email(email)
    if existing is not None:
        return store.update_user(
            existing.id,
            role=Role.admin.value,
            hashed_password=hashed,
            is_active=True,
            failed_attempts=0,
            last_failed_at=None,
            refresh_tokens=[],
        )
    try:
        return store.insert_user(User(email=email, name=name, role=Role.admin.value, hashed_password=hashed))
    except DuplicateKey:
        # Created concurrently between the lookup and the insert.
        return create_admin(store, hasher, email, name, password)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="main.py",
        description="Admin dashboard operator commands.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command")

    admin = commands.add_parser("create-admin", help="Create or promote an administrator account.")
    admin.add_argument("--email", required=True, help="Login email of the administrator.")
    admin.add_argument("--name", required=True, help="Display name (2-50 characters).")
    admin.add_argument(
        "--password",
        default=None,
        help="Password. Prompted for interactively when omitted (preferred: keeps it out of shell history).",
    )

    commands.add_parser("purge-tokens", help="Drop refresh-token entries older than the retention window.")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        if args.command == "create-admin":
            email = parse_email(args.email)
            name = args.name.strip()
            if email is None:
                print(f"  [!] '{args.email}' is not a valid email address.")
                sys.exit(1)
            if not 2 <= len(name) <= 50:
                print("  [!] Name must be 2-50 characters.")
                sys.exit(1)
            password = _read_password(args.password)
            if not PASSWORD_MIN <= len(password) <= PASSWORD_MAX:
                print(f"  [!] Password must be {PASSWORD_MIN}-{PASSWORD_MAX} characters.")
                sys.exit(1)
            user = create_admin(store, BcryptHasher(settings.bcrypt_rounds), email, name, password)
            print(f"  Administrator ready: {user.email} (id {user.id})")

        elif args.command == "purge-tokens":
            removed = store.purge_expired_refresh_tokens(settings.refresh_token_retention_seconds)
            print(f"  Removed {removed} expired refresh token(s).")
    finally:
        store.close()


if __name__ == "__main__":
    main()
