#!/usr/bin/env python3
"""
Grant (or revoke) the admin role for an existing account.

Admins post without limits and are not charged for AI tools. Run from project root:
  python scripts/set_admin.py --email you@example.com
  python scripts/set_admin.py --user-id 42 --revoke

Requires: DATABASE_URL in environment (.env or export).
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Run from project root; ensure app is importable
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

load_dotenv(project_root / ".env")

from app.core.config import get_settings
from app.core.errors import AccountNotFound
from app.db.session import create_db_engine, create_session_factory
from app.services.accounts import set_admin


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Grant or revoke the admin role.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", type=str, help="Account email")
    target.add_argument("--user-id", type=int, help="Account id (users.id)")
    parser.add_argument("--revoke", action="store_true", help="Remove the admin role instead")
    args = parser.parse_args(argv)

    engine = create_db_engine(get_settings().DATABASE_URL)
    db = create_session_factory(engine)()
    try:
        user = set_admin(db, args.user_id if args.user_id is not None else args.email, not args.revoke)
    except AccountNotFound:
        print(f"No account found for {args.email or args.user_id}", file=sys.stderr)
        return 1
    finally:
        db.close()
        engine.dispose()

    print(f"User {user.id} ({user.email}) is_admin={user.is_admin}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
