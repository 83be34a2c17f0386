#!/usr/bin/env python3
"""Grant the admin role to an existing account.

Usage:
    # By username or email:
    python scripts/bootstrap_admin.py --login alice
    ADMIN_LOGIN=alice@example.com python scripts/bootstrap_admin.py

Promotion revokes the account's sessions, so the user must log in again to
receive tokens that carry the new role.

Environment Variables:
    ADMIN_LOGIN: Username or email of the account to promote
    DATABASE_URL: PostgreSQL connection string (uses the memory store if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(login: str, dry_run: bool = False, runtime=None) -> dict:
    """Promote the account identified by ``login``.

    Returns:
        dict with user_id, login, and status ('promoted', 'already_admin',
        'not_found' or 'dry_run')
    """
    # Import here so the environment is settled before settings load
    from inkwell.service.runtime import get_runtime
    from inkwell.storage.models import ROLE_ADMIN

    runtime = runtime or get_runtime()
    account = await asyncio.to_thread(runtime.store.get_user_by_login, login)
    if not account:
        print(f"No account matches {login}")
        return {"user_id": None, "login": login, "status": "not_found"}

    if account.role == ROLE_ADMIN:
        print(f"{account.username} is already an admin (id: {account.id})")
        return {"user_id": account.id, "login": login, "status": "already_admin"}

    if dry_run:
        print(f"[DRY RUN] Would promote {account.username} to admin")
        return {"user_id": account.id, "login": login, "status": "dry_run"}

    await runtime.auth.promote_user(account.id)
    print(f"Promoted {account.username} to admin (id: {account.id})")
    return {"user_id": account.id, "login": login, "status": "promoted"}


def main():
    parser = argparse.ArgumentParser(
        description="Promote an Inkwell account to admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--login",
        default=os.environ.get("ADMIN_LOGIN"),
        help="Username or email (or set ADMIN_LOGIN env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.login:
        print("Error: --login or ADMIN_LOGIN environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using the memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.login, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "not_found":
        sys.exit(2)


if __name__ == "__main__":
    main()
