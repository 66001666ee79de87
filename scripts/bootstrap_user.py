#!/usr/bin/env python3
"""Seed a demo user and log in with it to smoke-test a deployment's token setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_USER_ID=alice BOOTSTRAP_PASSWORD='P@ss1' python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --user-id alice --password 'P@ss1' --roles Admin,Doctor

Environment Variables:
    BOOTSTRAP_USER_ID: login id of the seeded user
    BOOTSTRAP_PASSWORD: password of the seeded user
    BOOTSTRAP_EMAIL / BOOTSTRAP_MOBILE: optional alternate identifiers
    BOOTSTRAP_ROLES: comma-separated role names (default Admin)
    REDIS_URL: session cache (falls back to in-process memory if unreachable)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(user_id: str, password: str, dry_run: bool = False) -> dict:
    """Build the runtime (which seeds the user) and log in once.

    Returns:
        dict with user_id, status ('created', 'dry_run' or 'login_failed') and tokens
    """
    # Import here to avoid loading config before env vars are set
    from clinicauth.service.runtime import get_runtime

    if dry_run:
        print(f"[DRY RUN] Would seed user {user_id} and log in")
        return {"user_id": user_id, "status": "dry_run"}

    runtime = get_runtime()
    result = await runtime.auth.login(user_id, password)
    if not result.ok:
        print(f"Login with the seeded user failed: {result.error.message}")
        return {"user_id": user_id, "status": "login_failed"}

    session = result.value
    return {
        "user_id": user_id,
        "status": "created",
        "session_id": session["sessionId"],
        "access_token": session["accessToken"],
        "refresh_token": session["refreshToken"],
    }


def main():
    parser = argparse.ArgumentParser(
        description="Seed a demo clinic user and verify login",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("BOOTSTRAP_USER_ID"),
        help="User id (or set BOOTSTRAP_USER_ID env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--email", default=os.environ.get("BOOTSTRAP_EMAIL"))
    parser.add_argument("--mobile", default=os.environ.get("BOOTSTRAP_MOBILE"))
    parser.add_argument(
        "--roles",
        default=os.environ.get("BOOTSTRAP_ROLES", "Admin"),
        help="Comma-separated role names",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.user_id:
        print("Error: --user-id or BOOTSTRAP_USER_ID environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    os.environ["BOOTSTRAP_USER_ID"] = args.user_id
    os.environ["BOOTSTRAP_PASSWORD"] = args.password
    os.environ["BOOTSTRAP_ROLES"] = args.roles
    if args.email:
        os.environ["BOOTSTRAP_EMAIL"] = args.email
    if args.mobile:
        os.environ["BOOTSTRAP_MOBILE"] = args.mobile

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/clinicauth-bootstrap"

    os.environ.setdefault("USE_MEMORY_STORE", "true")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_user(args.user_id, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser seeded and logged in successfully!")
        print(f"  User ID: {result['user_id']}")
        print(f"  Session ID: {result['session_id']}")
        print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "login_failed":
        sys.exit(1)


if __name__ == "__main__":
    main()
