#!/usr/bin/env python3
"""Bootstrap the permission catalog, the Admin role and an admin user.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py --migrate

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password SecurePassword123!

Environment Variables:
    ADMIN_USERNAME: Username for the admin user (default: admin)
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET: Signing secret; required by the settings loader
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def apply_migrations(database_url: str) -> None:
    from backoffice.storage.postgres import PostgresStore

    store = PostgresStore(database_url, verify_schema=False)
    try:
        store.apply_schema()
    finally:
        store.close()
    print("Schema applied")


def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin user or grant the Admin role to an existing one.

    Returns:
        dict with user_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from backoffice.service.context import RequestContext
    from backoffice.service.runtime import get_runtime
    from backoffice.service.seed import ADMIN_ROLE_NAME

    # runtime start-up seeds the catalog and the Admin role
    runtime = get_runtime()
    admin_role = runtime.store.get_role_by_name(ADMIN_ROLE_NAME)
    ctx = RequestContext(correlation_id="bootstrap", username="bootstrap")

    existing_user = runtime.store.get_user_by_username(username)
    if existing_user:
        role_names = [role.name for role in runtime.store.list_user_roles(existing_user.id)]
        if ADMIN_ROLE_NAME in role_names:
            print(f"User {username} already holds {ADMIN_ROLE_NAME} (id: {existing_user.id})")
            return {"user_id": existing_user.id, "username": username, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant {ADMIN_ROLE_NAME} to existing user {username}")
            return {"user_id": existing_user.id, "username": username, "status": "dry_run"}
        role_ids = [role.id for role in runtime.store.list_user_roles(existing_user.id)]
        runtime.store.set_user_roles(
            existing_user.id, role_ids + [admin_role.id], now=runtime.clock.now()
        )
        print(f"Granted {ADMIN_ROLE_NAME} to existing user {username} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "username": username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    view = runtime.admin.create_user(
        ctx,
        username=username,
        email=email,
        password=password,
        full_name="Administrator",
        role_ids=[admin_role.id],
    )
    print(f"Created admin user: {username} (id: {view.user.id})")
    return {"user_id": view.user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the back-office API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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
        "--migrate",
        action="store_true",
        help="Apply storage/schema.sql to DATABASE_URL before bootstrapping",
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

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        if args.migrate:
            if not database_url:
                print("Error: --migrate requires DATABASE_URL")
                sys.exit(1)
            if args.dry_run:
                print("[DRY RUN] Would apply schema")
            else:
                apply_migrations(database_url)

        result = bootstrap_admin(args.username, args.email, args.password, args.dry_run)

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Username: {result['username']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user granted the Admin role!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
