#!/usr/bin/env python3
"""
Survista auth service -- management commands.

Usage:
  python main.py create-admin --email admin@example.com --name "Site Admin"
  python main.py create-admin --email admin@example.com --name "Site Admin" --password '...'
  python main.py purge-expired

Commands talk to the database in DATABASE_URL directly; the API server does
not need to be running. create-admin is how a fresh deployment gets its first
PLATFORM_ADMIN, since self-registration only ever creates SURVEY_MANAGERs.

Environment variables: see core/config.py (JWT_SECRET and JWT_REFRESH_SECRET
are required unless DEBUG=true).
"""

import argparse
import getpass
import sys
from typing import Optional

from api.models import PASSWORD_MIN_LENGTH
from auth.errors import ConflictError
from auth.models import Role
from auth.session import SessionManager
from auth.store import UserStore
from core.config import get_settings
from mail.service import MailService


def _read_password(explicit: Optional[str]) -> Optional[str]:
    """Return the password from the flag, or prompt twice for it."""
    if explicit is not None:
        return explicit
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _create_admin(store: UserStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    if len(password) < PASSWORD_MIN_LENGTH:
        print(f"  [!] Password must be at least {PASSWORD_MIN_LENGTH} characters.")
        return 1

    settings = get_settings()
    manager = SessionManager(store, MailService(settings), settings)
    try:
        user = manager.register(email=args.email, name=args.name, password=password, role=Role.PLATFORM_ADMIN)
    except ConflictError:
        print(f"  [!] A user with email {args.email!r} already exists.")
        return 1
    print(f"  Created PLATFORM_ADMIN {user.email} (id {user.id}).")
    return 0


def _purge_expired(store: UserStore, args: argparse.Namespace) -> int:
    removed = store.purge_expired()
    print(f"  Removed {removed} expired session/reset row(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="survista",
        description="Survista auth service management commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com --name "Site Admin"
  python main.py purge-expired
  DATABASE_URL=sqlite:////var/lib/survista/auth.db python main.py purge-expired
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-admin", help="Create a PLATFORM_ADMIN account")
    create.add_argument("--email", required=True, help="Login email for the new admin")
    create.add_argument("--name", required=True, help="Display name")
    create.add_argument(
        "--password",
        default=None,
        help="Initial password (prompted for when omitted; avoid on shared machines)",
    )
    create.set_defaults(handler=_create_admin)

    purge = sub.add_parser("purge-expired", help="Delete expired refresh sessions and reset links")
    purge.set_defaults(handler=_purge_expired)

    args = parser.parse_args(argv)

    store = UserStore(get_settings().database_url)
    try:
        return args.handler(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
