"""Seed the first admin account (idempotent).

Does NOT overwrite an existing admin user's password.

Usage:
  python scripts/init_db.py
"""
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.claimdesk.accounts import register_user  # noqa: E402
from app.claimdesk.models import User  # noqa: E402
from scripts._db_utils import database_url, script_session  # noqa: E402


def seed_only(*, database_url_override: str | None = None) -> None:
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    with script_session(database_url(database_url_override)) as s:
        user = s.query(User).filter(User.username == admin_username).one_or_none()
        if user is None:
            register_user(s, admin_username, admin_password, role="ROLE_ADMIN")
            print(f"Created admin user: {admin_username}")
        elif user.role != "ROLE_ADMIN":
            user.role = "ROLE_ADMIN"
            print(f"Promoted existing user to ROLE_ADMIN: {admin_username}")
        else:
            print(f"Admin user already present: {admin_username}")

    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    load_dotenv()
    seed_only()


if __name__ == "__main__":
    main()
