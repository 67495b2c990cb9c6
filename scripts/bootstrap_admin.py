#!/usr/bin/env python3
"""Create or promote an administrator account.

The account ends up ADMIN, ACTIVE and email-verified, so it can sign in
immediately without going through the OTP and profile-completion flows.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure!Passw0rd' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure!Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (same rules as sign-up)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so the environment set up in main() is what config sees
    from useraccess.service.runtime import get_runtime
    from useraccess.storage.models import AccountStatus, Role

    runtime = get_runtime()
    admin_fields = {
        "role": Role.ADMIN,
        "status": AccountStatus.ACTIVE,
        "email_verified": True,
    }

    existing = runtime.store.get_account_by_email(email)
    if existing:
        if existing.role == Role.ADMIN and existing.status == AccountStatus.ACTIVE:
            print(f"Account {email} is already an active admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_account(existing.id, **admin_fields)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = await runtime.auth.sign_up(email, password)
    runtime.store.update_account(account.id, **admin_fields)
    tokens = await runtime.auth.sign_in(email, password)
    print(f"Created admin account: {email} (id: {account.id})")
    return {
        "account_id": account.id,
        "email": email,
        "status": "created",
        "access_token": tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account",
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

    from useraccess.api.schemas import _validate_email, _validate_password_strength

    try:
        email = _validate_email(args.email)
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
