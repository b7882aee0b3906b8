#!/usr/bin/env python3
"""
Homeboard -- administrative CLI for the smart-home dashboard backend.

Usage:
  python main.py generate-key
  python main.py create-admin --username alice
  python main.py create-admin --username alice --display-name "Alice" --password-stdin < pw.txt
  python main.py seed-roles
  python main.py purge
  python main.py migrate-credentials

Environment variables (see core/config.py):
  DATABASE_URL    SQLAlchemy URL of the auth database (default sqlite:///homeboard.db)
  SECRET_KEY      >= 32 chars. Required unless DEBUG=true.
  ENCRYPTION_KEY  64 hex chars (AES-256 key). Required unless DEBUG=true.
"""

import argparse
import getpass
import logging
import sys
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.credentials import CredentialVault
from auth.crypto import CredentialCipher, generate_key
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings

logger = logging.getLogger("homeboard.cli")

# Bootstrap seed only. Which keys exist is deployment policy; the resolver
# treats them as opaque strings.
PERMISSION_KEYS = [
    "settings:view",
    "settings:manage",
    "users:view",
    "users:manage",
    "module:dashboard",
    "module:energy",
    "module:cameras",
    "module:climate",
    "module:lights",
    "module:covers",
    "module:intercom",
    "module:calendar",
    "action:lights",
    "action:covers",
    "action:locks",
    "action:climate",
    "action:scenes",
    "action:intercom",
]

DEFAULT_ROLES = {
    "owner": PERMISSION_KEYS,
    "member": [k for k in PERMISSION_KEYS if k.startswith(("module:", "action:")) or k == "settings:view"],
}

MIN_PASSWORD_LENGTH = 12


def seed_roles(store: UserStore) -> dict[str, int]:
    """Create any missing default role. Existing roles are left untouched.

    Returns role name -> id for every default role.
    """
    ids: dict[str, int] = {}
    for name, keys in DEFAULT_ROLES.items():
        role = store.get_role_by_name(name)
        if role is None:
            ids[name] = store.create_role(name, keys)
            print(f"  Created role '{name}' ({len(keys)} permissions).")
        else:
            ids[name] = role.id
    return ids


def _read_password(args: argparse.Namespace) -> str | None:
    if args.password_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def cmd_create_admin(args: argparse.Namespace) -> int:
    password = _read_password(args)
    if password is None:
        return 1
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        return 1

    store = UserStore(get_settings().database_url)
    try:
        role_ids = seed_roles(store)
        try:
            user_id = store.create_user(
                User(
                    display_name=args.display_name or args.username,
                    username=args.username,
                    password_hash=hash_password(password),
                    role_id=role_ids["owner"],
                )
            )
        except IntegrityError:
            print(f"  [!] A user named '{args.username}' already exists.")
            return 1
        print(f"  Created owner account '{args.username}' (id {user_id}).")
        return 0
    finally:
        store.close()


def cmd_seed_roles(args: argparse.Namespace) -> int:
    store = UserStore(get_settings().database_url)
    try:
        seed_roles(store)
    finally:
        store.close()
    return 0


def cmd_generate_key(args: argparse.Namespace) -> int:
    print(generate_key())
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    """Delete expired sessions. Throttle and cache state is in-process and needs no purge here."""
    store = UserStore(get_settings().database_url)
    try:
        removed = store.purge_expired_sessions(datetime.now(timezone.utc))
    finally:
        store.close()
    print(f"  Removed {removed} expired session(s).")
    return 0


def cmd_migrate_credentials(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        vault = CredentialVault(store, CredentialCipher.from_hex(settings.encryption_key))
        migrated = vault.migrate_plaintext()
    finally:
        store.close()
    print(f"  Sealed {migrated} plaintext credential(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="homeboard",
        description="Administrative commands for the Homeboard dashboard backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py generate-key >> .env
  python main.py create-admin --username alice
  DATABASE_URL=sqlite:///prod.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("generate-key", help="Print a new random ENCRYPTION_KEY (64 hex chars)").set_defaults(
        func=cmd_generate_key
    )

    admin = sub.add_parser("create-admin", help="Create a local owner account (seeds default roles)")
    admin.add_argument("--username", required=True, help="Login name for the local account")
    admin.add_argument("--display-name", default=None, help="Name shown in the dashboard (default: username)")
    admin.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )
    admin.set_defaults(func=cmd_create_admin)

    sub.add_parser("seed-roles", help="Create the default owner/member roles if missing").set_defaults(
        func=cmd_seed_roles
    )
    sub.add_parser("purge", help="Delete expired sessions").set_defaults(func=cmd_purge)
    sub.add_parser(
        "migrate-credentials",
        help="Seal any plaintext credentials left from before encryption at rest",
    ).set_defaults(func=cmd_migrate_credentials)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    try:
        return args.func(args)
    except ValueError as exc:
        # Settings validation (missing / malformed keys) lands here.
        print(f"  [!] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
