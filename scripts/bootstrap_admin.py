#!/usr/bin/env python3
"""Seed an admin profile so invitations can be sent.

Accounts are normally created by redeeming an invitation, but the first
administrator has to exist before anyone can invite. This script creates it
(or promotes an existing profile) directly in the configured store.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=secret1 ADMIN_NAME="Site Admin" \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password secret1 --name "Site Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin profile
    ADMIN_PASSWORD: Password for the admin profile
    ADMIN_NAME: Display name (defaults to "Admin")
    DATABASE_URL: PostgreSQL connection string (memory store with SHARED_FS_ROOT
        persistence is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str, min_length: int) -> bool:
    return min_length <= len(password) <= 128


def bootstrap_admin(email: str, password: str, full_name: str, dry_run: bool = False) -> dict:
    """Create or promote an admin profile.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from classportal.service.runtime import get_runtime
    from classportal.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.get_profile_by_email(email)

    if existing:
        if existing.role is Role.ADMIN:
            print(f"Profile {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing profile {email} to admin")
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.update_profile_role(existing.id, Role.ADMIN)
        runtime.store.reset_password(existing.email, password)
        print(f"Promoted existing profile {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin profile: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    profile = runtime.store.create_profile(email, full_name, Role.ADMIN, password=password)
    print(f"Created admin profile: {profile.email} (id: {profile.id})")
    return {"user_id": profile.id, "email": profile.email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed an admin profile for classportal",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Admin"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/classportal-bootstrap")
        print("Note: Using memory store (set DATABASE_URL to write to Postgres)")

    from classportal.config import get_settings

    min_length = get_settings().min_password_length
    if not validate_password(args.password, min_length):
        print(f"Error: Password must be between {min_length} and 128 characters")
        return 1

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nAdmin profile created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting profile promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - profile is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
