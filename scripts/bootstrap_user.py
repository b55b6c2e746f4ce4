#!/usr/bin/env python3
"""Create a till user for initial setup or local testing.

Usage:
    python scripts/bootstrap_user.py --username manager --password 'S3cure-Pass' --role admin
    TILL_USERNAME=cashier1 TILL_PASSWORD=... TILL_PIN=4821 python scripts/bootstrap_user.py

Environment Variables:
    TILL_USERNAME / TILL_PASSWORD / TILL_PIN / TILL_ROLE: defaults for the flags
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    username: str,
    password: str,
    *,
    role: str = "staff",
    pin: str | None = None,
    user_id: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the user, or report it when the username is taken."""
    from tillguard.service.pin_security import validate_pin_complexity
    from tillguard.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)
    if existing:
        print(f"User {username} already exists (id: {existing.id}, role: {existing.role})")
        return {"user_id": existing.id, "username": username, "status": "exists"}

    if pin is not None:
        ok, reason = validate_pin_complexity(pin)
        if not ok:
            raise ValueError(reason)

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.store.create_user(
        username,
        role=role,
        password_hash=runtime.auth.hash_password(password),
        pin_hash=runtime.auth.hash_pin(pin) if pin else None,
        user_id=user_id,
    )
    print(f"Created {role} user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a till user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("TILL_USERNAME"))
    parser.add_argument("--password", default=os.environ.get("TILL_PASSWORD"))
    parser.add_argument("--pin", default=os.environ.get("TILL_PIN"))
    parser.add_argument("--role", default=os.environ.get("TILL_ROLE", "staff"))
    parser.add_argument("--user-id", default=None, help="Explicit user id (e.g. a staff number)")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.username or not args.password:
        print("Error: --username and --password (or TILL_USERNAME/TILL_PASSWORD) are required")
        sys.exit(1)
    if len(args.password) < 8:
        print("Error: Password must be at least 8 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/tillguard-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(
            args.username,
            args.password,
            role=args.role,
            pin=args.pin,
            user_id=args.user_id,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if result["status"] == "created":
        print("\nUser created successfully!")


if __name__ == "__main__":
    main()
