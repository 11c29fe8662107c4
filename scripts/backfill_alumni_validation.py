#!/usr/bin/env python3
"""Mark alumni that predate the validation workflow as validated.

Alumni accounts that never went through "request alumni status" have no
``alumni_status_requested_at``; they were confirmed before the board review
existed. Accounts with a pending request are left alone.

Usage:
    IDENTITY_DATABASE_URL=postgresql://... python scripts/backfill_alumni_validation.py [--dry-run]
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def backfill_alumni_validation(identity, dry_run: bool = False) -> list[str]:
    """Validate grandfathered alumni in ``identity``; returns the affected user ids."""
    from intranet_auth.service.roles import Role

    pending = identity.list_users(role=Role.ALUMNI.value, is_alumni_validated=False)
    grandfathered = [user for user in pending if user.alumni_status_requested_at is None]
    for user in grandfathered:
        if dry_run:
            print(f"[DRY RUN] Would validate alumni {user.email} (id: {user.id})")
            continue
        identity.set_alumni_validated(user.id, True)
        print(f"Validated alumni {user.email} (id: {user.id})")
    return [user.id for user in grandfathered]


def main():
    parser = argparse.ArgumentParser(
        description="Grandfather pre-existing alumni accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    dsn = os.environ.get("IDENTITY_DATABASE_URL")
    if not dsn:
        print("Error: IDENTITY_DATABASE_URL environment variable required")
        sys.exit(1)

    from intranet_auth.storage.postgres import PostgresIdentityStore

    try:
        store = PostgresIdentityStore(
            dsn, totp_encryption_key=os.environ.get("TOTP_ENCRYPTION_KEY")
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        affected = backfill_alumni_validation(store, dry_run=args.dry_run)
    finally:
        store.close()
    print(f"\n{len(affected)} alumni account(s) {'would be ' if args.dry_run else ''}validated.")


if __name__ == "__main__":
    main()
