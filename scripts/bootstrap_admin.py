#!/usr/bin/env python3
"""Bootstrap an administrator account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='a long passphrase' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'a long passphrase'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account or promote an existing one.

    Returns:
        dict with account_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from authkernel.schemas import AccountResponse
    from authkernel.service.runtime import get_runtime
    from authkernel.storage.models import ROLE_ADMIN

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if ROLE_ADMIN in existing.roles:
            print(f"Account {email} already has {ROLE_ADMIN} (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant {ROLE_ADMIN} to existing account {email}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.auth.grant_role(existing.id, ROLE_ADMIN)
        print(f"Granted {ROLE_ADMIN} to existing account {email} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, display_name="Administrator")
    runtime.auth.grant_role(result.account.id, ROLE_ADMIN)
    account = runtime.auth.confirm_email(result.account.id)

    print(f"Created admin account: {email} (id: {result.account.id})")
    return {
        "account_id": result.account.id,
        "email": email,
        "status": "created",
        "account": AccountResponse.from_account(account).model_dump(mode="json"),
        "access_token": result.tokens.access_token if result.tokens else None,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
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

    # Signing secrets must be distinct; generate throwaway ones when unset
    for name in ("ACCESS_TOKEN_SECRET", "REFRESH_TOKEN_SECRET"):
        if not os.environ.get(name):
            os.environ[name] = secrets.token_urlsafe(48)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authkernel-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from authkernel.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ServiceError as e:
        print(f"Error: {e.message} ({e.error_code})")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        print(f"  Roles: {', '.join(result['account']['roles'])}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
