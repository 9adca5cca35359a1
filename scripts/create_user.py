#!/usr/bin/env python3
"""Create an account from the command line (e.g. a reviewer with ROLE_ADMIN).

Usage:
  python scripts/create_user.py USERNAME [--role ROLE_ADMIN]

The password is read from $CLAIMDESK_USER_PASSWORD, or prompted for when unset.
Passing it as a second positional argument still works but leaves it in shell history.
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.claimdesk.accounts import register_user  # noqa: E402
from app.claimdesk.errors import DuplicateUsername, ValidationError  # noqa: E402
from app.claimdesk.rbac import ROLE_PERMISSIONS  # noqa: E402
from scripts._db_utils import database_url, script_session  # noqa: E402

PASSWORD_ENV = "CLAIMDESK_USER_PASSWORD"


def _read_password(explicit: str | None) -> tuple[str, str | None]:
    """Returns (password, confirm). confirm is None when no prompt was shown."""
    if explicit:
        return explicit, None
    from_env = os.environ.get(PASSWORD_ENV)
    if from_env:
        return from_env, None
    password = getpass.getpass("Password: ")
    confirm = getpass.getpass("Confirm password: ")
    return password, confirm


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create a ClaimDesk user.")
    parser.add_argument("username")
    parser.add_argument("password", nargs="?", default=None, help=argparse.SUPPRESS)
    parser.add_argument("--role", default="ROLE_USER", choices=sorted(ROLE_PERMISSIONS))
    parser.add_argument("--database-url", default=None, help="Defaults to $DATABASE_URL")
    args = parser.parse_args(argv)

    load_dotenv()
    password, confirm = _read_password(args.password)
    try:
        with script_session(database_url(args.database_url)) as s:
            user_id = register_user(s, args.username, password, role=args.role, confirm_password=confirm)
    except (DuplicateUsername, ValidationError) as e:
        print(str(e), file=sys.stderr)
        return 1
    print(f"Created user '{args.username.strip()}' (id={user_id}) with role {args.role}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
