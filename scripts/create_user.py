#!/usr/bin/env python3
"""Create a login-capable user, or reset an existing user's password.

Usage:
    # Using environment variables:
    AUTH_USERNAME=alice AUTH_PASSWORD='correct horse' python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --username alice --password 'correct horse' --role admin

    # Replace the password of an existing user:
    python scripts/create_user.py --username alice --password 'new secret' --rehash-only

Environment Variables:
    AUTH_USERNAME: Username to create
    AUTH_PASSWORD: Plaintext password, hashed with the configured argon2 target
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from typing import Optional, Sequence


def create_user(
    username: str,
    password: str,
    *,
    roles: Sequence[str] = ("login",),
    email: Optional[str] = None,
    rehash_only: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or update a user.

    Returns:
        dict with user_id, username, and status ('created', 'rehashed',
        'exists', 'missing' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessionauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_by_username(username)

    if rehash_only:
        if existing is None:
            print(f"User {username} does not exist")
            return {"user_id": None, "username": username, "status": "missing"}
        if dry_run:
            print(f"[DRY RUN] Would replace the password of {username}")
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        runtime.store.save(replace(existing, password_hash=runtime.verifier.hash(password)))
        print(f"Replaced password for {username} (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "rehashed"}

    if existing is not None:
        print(f"User {username} already exists (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user {username} with roles {sorted(set(roles))}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.store.create_user(
        username,
        runtime.verifier.hash(password),
        roles=set(roles),
        email=email,
    )
    print(f"Created user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Create a user for session authentication",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("AUTH_USERNAME"),
        help="Username (or set AUTH_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("AUTH_PASSWORD"),
        help="Password (or set AUTH_PASSWORD env var)",
    )
    parser.add_argument("--email", default=None, help="Optional contact email")
    parser.add_argument(
        "--role",
        dest="roles",
        action="append",
        default=None,
        help="Role to grant; repeatable (default: login)",
    )
    parser.add_argument(
        "--rehash-only",
        action="store_true",
        help="Replace the password of an existing user instead of creating one",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.username:
        print("Error: --username or AUTH_USERNAME environment variable required")
        return 1
    if not args.password:
        print("Error: --password or AUTH_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL or AUTH_STATE_ROOT for persistence)")

    try:
        result = create_user(
            args.username,
            args.password,
            roles=args.roles or ["login"],
            email=args.email,
            rehash_only=args.rehash_only,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1
    return 1 if result["status"] == "missing" else 0


if __name__ == "__main__":
    sys.exit(main())
