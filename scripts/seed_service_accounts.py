#!/usr/bin/env python3
"""Create one service account per internal service.

Each account gets the service's full scope catalogue. Client secrets are
printed once and cannot be recovered afterwards; existing accounts are
left untouched.

Usage:
    python scripts/seed_service_accounts.py
    python scripts/seed_service_accounts.py --service order-service --service payment-service

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required unless --memory)
    JWT_SECRET: Signing secret shared with the running service
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def seed(services: list[str]) -> list[dict]:
    from forkauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = {account.name for account in runtime.service_credentials.list()}
    results = []
    for service_name in services:
        name = f"{service_name}-client"
        if name in existing:
            results.append({"name": name, "service_name": service_name, "status": "exists"})
            continue
        account, secret = runtime.service_credentials.create(
            name,
            service_name,
            description=f"Seeded credentials for {service_name}",
            created_by="seed_service_accounts",
        )
        results.append(
            {
                "name": name,
                "service_name": service_name,
                "status": "created",
                "client_id": account.client_id,
                "client_secret": secret,
                "scopes": account.scopes,
            }
        )
    return results


def main():
    from forkauth.service.scopes import ServiceName

    parser = argparse.ArgumentParser(description="Seed ForkAuth service accounts")
    parser.add_argument(
        "--service",
        action="append",
        choices=[s.value for s in ServiceName],
        help="Service to seed (repeatable); defaults to every service",
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the in-memory store (for trying the script out)",
    )
    args = parser.parse_args()

    if args.memory:
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
    elif not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required (or pass --memory)")
        sys.exit(1)

    from forkauth.service.errors import ServiceError
    from forkauth.storage.errors import StorageError

    try:
        results = seed(args.service or [s.value for s in ServiceName])
    except (ServiceError, StorageError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    for entry in results:
        if entry["status"] == "exists":
            print(f"{entry['name']}: already exists, skipped")
            continue
        print(f"{entry['name']}:")
        print(f"  client_id:     {entry['client_id']}")
        print(f"  client_secret: {entry['client_secret']}")
        print(f"  scopes:        {', '.join(entry['scopes'])}")
    print("\nStore the client secrets now; they are not shown again.")


if __name__ == "__main__":
    main()
