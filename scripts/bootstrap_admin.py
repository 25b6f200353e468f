#!/usr/bin/env python3
"""Create the first ADMIN account, or promote an existing user to ADMIN.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='...' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password '...'

Without DATABASE_URL the in-memory store under SHARED_FS_ROOT is used.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # Imported late so the environment defaults below are in place first
    from tokenward.service.runtime import get_runtime
    from tokenward.storage.models import Role

    runtime = get_runtime()
    existing = runtime.credentials.find_user(email)
    if existing:
        if existing.role == Role.ADMIN:
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        await runtime.users.set_role(existing.id, Role.ADMIN)
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}
    user = runtime.users.register_user(email, password, role=Role.ADMIN)
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for tokenward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password or len(args.password) < 12:
        print("Error: --password or ADMIN_PASSWORD must be at least 12 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the in-memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
