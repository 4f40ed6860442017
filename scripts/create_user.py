#!/usr/bin/env python3
"""Provision a user in the credential store.

Usage:
    # Using environment variables:
    AUTH_EMAIL=alice@example.com AUTH_PASSWORD=hunter2hunter2 python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --email alice@example.com --password hunter2hunter2

Environment Variables:
    AUTH_EMAIL: Email for the new user
    AUTH_PASSWORD: Password for the new user
    DATABASE_URL: PostgreSQL connection string (required unless --dry-run)
    JWT_SECRET: Signing secret; a throwaway one is generated when unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(email: str, password: str, dry_run: bool = False) -> dict:
    """Register ``email`` unless it already exists.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authkernel.service.runtime import get_runtime
    from authkernel.storage.errors import DuplicateEmail

    runtime = get_runtime()
    try:
        if dry_run:
            print(f"[DRY RUN] Would create user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}
        try:
            user = await runtime.authenticator.register(email, password)
        except DuplicateEmail:
            print(f"User {email} already exists")
            return {"user_id": None, "email": email, "status": "exists"}
        return {"user_id": user.id, "email": user.email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create a user for authkernel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("AUTH_EMAIL"),
        help="User email (or set AUTH_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("AUTH_PASSWORD"),
        help="User password (or set AUTH_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or AUTH_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or AUTH_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET") and not os.environ.get("JWT_SECRET_FILE"):
        # Registration mints no tokens, any secret will do
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        if not args.dry_run:
            print("Error: DATABASE_URL must point at the credential store")
            sys.exit(1)
        os.environ["USE_MEMORY_STORE"] = "true"

    # Registration never touches the revocation cache
    os.environ.setdefault("ALLOW_MEMORY_REVOCATION", "true")

    try:
        result = asyncio.run(create_user(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        sys.exit(2)


if __name__ == "__main__":
    main()
