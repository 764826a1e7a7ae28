#!/usr/bin/env python3
"""Provision the first admin account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_SECRET: Signing secret; generated for this run when absent
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account unless one already exists for ``email``.

    Returns:
        dict with account_id, email, and status ('created', 'already_admin',
        'exists_not_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from forkauth.service.passwords import validate_password_strength
    from forkauth.service.permissions import Role
    from forkauth.service.runtime import get_runtime

    validate_password_strength(password)
    runtime = get_runtime()

    existing = runtime.store.get_account_by_email(email)
    if existing:
        status = "already_admin" if existing.role == Role.ADMIN.value else "exists_not_admin"
        return {"account_id": existing.id, "email": existing.email, "status": status}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(email, role=Role.ADMIN.value)
    runtime.passwords.set_password(account.id, password)
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Provision a ForkAuth admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from forkauth.service.errors import ServiceError
    from forkauth.storage.errors import StorageError

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except (ServiceError, StorageError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("Admin account created")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "already_admin":
        print(f"No changes needed: {result['email']} is already an admin")
    elif result["status"] == "exists_not_admin":
        print(f"Error: {result['email']} exists with a non-admin role")
        sys.exit(1)
    else:
        print(f"[DRY RUN] Would create admin account: {result['email']}")


if __name__ == "__main__":
    main()
