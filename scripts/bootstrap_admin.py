#!/usr/bin/env python3
"""Bootstrap an administrator identity for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PHONE=+639171234567 ADMIN_PASSWORD='Secure#Pass123' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com \
        --phone +639171234567 --password 'Secure#Pass123'

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PHONE: Phone number in international format
    ADMIN_PASSWORD: Password (must meet the configured complexity rules)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


async def bootstrap_admin(
    email: str, phone_number: str, password: str, dry_run: bool = False
) -> dict:
    """Create an admin identity or promote an existing one.

    Returns:
        dict with identity_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so settings are read after the env defaults below are set
    from fineguard.service.runtime import get_runtime
    from fineguard.storage.models import Role

    runtime = get_runtime()
    existing = runtime.auth.credentials.find_by_email(email)

    if existing:
        if existing.role == Role.ADMIN:
            print(f"Identity {email} is already an admin (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing identity {email} to admin")
            return {"identity_id": existing.id, "email": email, "status": "dry_run"}

        await runtime.auth.set_role(existing.id, Role.ADMIN)
        print(f"Promoted existing identity {email} to admin (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "promoted"}

    # Fail on a weak password before anything is written
    runtime.auth.credentials.validate_password(password)

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {email}")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    view = await runtime.auth.register(
        email=email,
        phone_number=phone_number,
        password=password,
        role=Role.ADMIN,
        send_verification=False,
    )
    print(f"Created admin identity: {email} (id: {view.id})")
    return {"identity_id": view.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for the traffic fine portal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("ADMIN_PHONE"),
        help="Admin phone number (or set ADMIN_PHONE env var)",
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

    if not args.phone:
        print("Error: --phone or ADMIN_PHONE environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("STATE_DIR", "/tmp/fineguard-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from fineguard.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.phone, args.password, args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity is already an admin.")


if __name__ == "__main__":
    main()
