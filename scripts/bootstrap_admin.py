#!/usr/bin/env python3
"""Create the first super admin, or reset an existing admin's password and role.

Usage:
    ADMIN_USERNAME=root ADMIN_PASSWORD='long passphrase' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username root --password 'long passphrase' --role SUPER_ADMIN

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (the file-backed memory store is used if unset)
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(username: str, password: str, role: str, dry_run: bool = False) -> dict:
    """Create or update an admin account.

    Returns:
        dict with admin_id, username, role and status
        ('created', 'updated' or 'dry_run')
    """
    # imported late so the environment defaults below are in place first
    from fraudwatch.service.runtime import get_runtime
    from fraudwatch.storage.models import AdminRole

    runtime = get_runtime()
    admin_role = AdminRole(role)
    existing = runtime.store.get_admin_by_username(username)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} admin {username} with role {admin_role.value}")
        return {
            "admin_id": existing.id if existing else None,
            "username": username,
            "role": admin_role.value,
            "status": "dry_run",
        }

    password_hash = runtime.auth._hash_password(password)
    if existing:
        admin = runtime.store.update_admin(
            existing.id, password_hash=password_hash, role=admin_role
        )
        status = "updated"
    else:
        admin = runtime.store.create_admin(username, password_hash, role=admin_role)
        status = "created"
    runtime.store.close()
    return {
        "admin_id": admin.id,
        "username": admin.username,
        "role": admin.role.value,
        "status": status,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for FraudWatch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        choices=["SUPER_ADMIN", "MODERATOR"],
        default="SUPER_ADMIN",
        help="Admin role (default: SUPER_ADMIN)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if len(args.password) < 6:
        print("Error: Password must be at least 6 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for PostgreSQL)")

    # rate limits are irrelevant to a one-shot script
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.username, args.password, args.role, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created successfully!")
    elif result["status"] == "updated":
        print("\nExisting admin updated.")
    if result["admin_id"]:
        print(f"  Username: {result['username']}")
        print(f"  Role: {result['role']}")
        print(f"  Admin ID: {result['admin_id']}")


if __name__ == "__main__":
    main()
