#!/usr/bin/env python3
"""
IMVCMPC portal -- administrative command line.

Usage:
  python main.py init-db
  python main.py create-admin --username admin --email admin@imvcmpc.local
  python main.py purge-expired

Environment variables (see core/config.py for the full list):
  DATABASE_URL  SQLAlchemy URL. Defaults to sqlite:///coopportal.db.
  SECRET_KEY    Required unless DEBUG=true.
"""

import argparse
import getpass
import logging
import sys

from auth.errors import DuplicateIdentity, WeakPassword
from auth.models import User
from auth.passwords import check_strength
from auth.schema import create_schema
from auth.store import CredentialStore
from auth.tokens import hash_password
from core.config import get_settings
from core.database import make_engine
from core.time_utils import utcnow


def _store() -> CredentialStore:
    engine = make_engine()
    create_schema(engine)
    store = CredentialStore(engine)
    store.seed_reference_data()
    return store


def cmd_init_db(args: argparse.Namespace) -> int:
    _store()
    print("  Schema created and reference data seeded.")
    return 0


def cmd_create_admin(args: argparse.Namespace) -> int:
    """Create a head-admin account on the main branch.

    The password is read from the terminal when --password is omitted so it
    never lands in shell history.
    """
    settings = get_settings()
    store = _store()
    password = args.password or getpass.getpass("  Password: ")
    try:
        check_strength(password, settings)
    except WeakPassword as e:
        print(f"  [!] {e.message}")
        return 1

    role = store.get_role_by_name(settings.head_admin_role)
    main_branch = next((b for b in store.list_branches() if b.is_main_branch), None)
    user = User(
        username=args.username,
        email=args.email,
        role_id=role.id,
        password_hash=hash_password(password),
        first_name=args.first_name,
        last_name=args.last_name,
        branch_id=main_branch.id if main_branch else None,
    )
    try:
        user_id = store.create_user(user, utcnow())
    except DuplicateIdentity as e:
        print(f"  [!] {e.message}")
        return 1
    print(f"  Created {args.username} (id={user_id}, role={role.name}).")
    return 0


def cmd_purge_expired(args: argparse.Namespace) -> int:
    counts = _store().purge_expired(utcnow())
    for name, count in counts.items():
        print(f"  {name}: {count} removed")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="coopportal",
        description="Administrative commands for the IMVCMPC portal.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables and seed roles, permissions and the main branch").set_defaults(
        func=cmd_init_db
    )

    admin = sub.add_parser("create-admin", help="Create a head-admin account on the main branch")
    admin.add_argument("--username", required=True)
    admin.add_argument("--email", required=True)
    admin.add_argument("--password", help="Prompted for when omitted")
    admin.add_argument("--first-name", default="System")
    admin.add_argument("--last-name", default="Administrator")
    admin.set_defaults(func=cmd_create_admin)

    sub.add_parser("purge-expired", help="Delete expired sessions, reset tokens and verification codes").set_defaults(
        func=cmd_purge_expired
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)-5s %(name)s %(message)s")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
