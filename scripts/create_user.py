#!/usr/bin/env python3
"""Register a user directly against the configured store.

Usage:
    python scripts/create_user.py --username alice --email alice@example.com --password 'Passw0rd!'

    # Also enroll an authenticator app and print its provisioning URI:
    python scripts/create_user.py --username alice --email alice@example.com \
        --password 'Passw0rd!' --enroll-totp

Environment Variables:
    NEW_USER_PASSWORD: Password when --password is omitted
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(
    username: str,
    email: str,
    password: str,
    *,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    enroll_totp: bool = False,
    dry_run: bool = False,
) -> dict:
    """Register the user and optionally enroll TOTP.

    Returns:
        dict with user_id, username, status ('created', 'exists' or 'dry_run')
        and, when enrolled, the TOTP secret and provisioning URI
    """
    # Import here so env defaults set by main() are seen by the settings loader
    from identityd.logging import bind_auth_context
    from identityd.service.runtime import get_runtime

    bind_auth_context(client_id="create_user_script")
    runtime = get_runtime()

    existing = runtime.store.get_user_by_username(username) or runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {existing.username} already exists (id: {existing.id})")
        return {"user_id": existing.id, "username": existing.username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {username} <{email}>")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = await runtime.auth.register(
        username, email, password, first_name=first_name, last_name=last_name
    )
    result = {"user_id": user.id, "username": user.username, "status": "created"}
    if enroll_totp:
        secret, uri = await runtime.auth.setup_persistent_secret(user)
        result["totp_secret"] = secret
        result["provisioning_uri"] = uri
    await runtime.email.wait_for_pending()
    print(f"Created user: {username} (id: {user.id})")
    return result


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Register a user for the identity service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", required=True, help="Unique login name")
    parser.add_argument("--email", required=True, help="Unique email address")
    parser.add_argument(
        "--password",
        default=os.environ.get("NEW_USER_PASSWORD"),
        help="Password (or set NEW_USER_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    parser.add_argument(
        "--enroll-totp",
        action="store_true",
        help="Enable two-factor login and print the authenticator secret",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.password:
        print("Error: --password or NEW_USER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/identityd-cli"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from identityd.service.errors import ServiceError

    try:
        result = asyncio.run(
            create_user(
                args.username,
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                enroll_totp=args.enroll_totp,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
        if result.get("provisioning_uri"):
            print(f"  TOTP secret: {result['totp_secret']}")
            print(f"  Provisioning URI: {result['provisioning_uri']}")


if __name__ == "__main__":
    main()
