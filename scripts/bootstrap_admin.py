#!/usr/bin/env python3
"""Create or promote the first Elika administrator.

Privileged accounts must enroll in two-factor authentication, so the script
also starts enrollment and prints the provisioning URI and backup codes. The
administrator confirms enrollment with a code from their app on first login.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='S3cure-Passw0rd' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --generate-password

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (the file-backed memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str | None, dry_run: bool = False) -> dict:
    # Imported late so the environment tweaks in main() apply
    from vendorportal.service.runtime import get_runtime
    from vendorportal.storage.models import RoleKind, StaffRole

    runtime = get_runtime()
    auth = runtime.auth
    admin_role = StaffRole(RoleKind.ELIKA_ADMIN)

    existing = runtime.store.get_user_by_email(email)
    if existing and RoleKind.ELIKA_ADMIN in existing.role_kinds:
        result = {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
    elif dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} {email} as {admin_role.kind.value}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}
    elif existing:
        await auth.set_user_roles(existing.id, existing.roles + (admin_role,))
        result = {"user_id": existing.id, "email": existing.email, "status": "promoted"}
    else:
        user, generated = await auth.admin_create_user(
            email=email, roles=[admin_role], password=password
        )
        result = {"user_id": user.id, "email": user.email, "status": "created"}
        if not password:
            result["password"] = generated

    if not auth.two_factor.is_enabled(result["user_id"]):
        setup = await auth.setup_two_factor(result["user_id"])
        result["two_factor"] = {
            "provisioning_uri": setup.qr_code_payload,
            "backup_codes": setup.backup_codes,
        }
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an Elika administrator for the vendor portal",
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
        "--generate-password",
        action="store_true",
        help="Generate a random password for a new account and print it once",
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
    if args.password and not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)
    if not args.password and not args.generate_password:
        print("Error: provide --password (or ADMIN_PASSWORD) or pass --generate-password")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"\nAdmin user created: {result['email']} (id: {result['user_id']})")
        if result.get("password"):
            print(f"  Generated password: {result['password']}")
    elif status == "promoted":
        print(f"\nExisting user promoted to admin: {result['email']}")
    elif status == "already_admin":
        print(f"\nNo role changes needed; {result['email']} is already an admin.")

    two_factor = result.get("two_factor")
    if two_factor:
        print("\nTwo-factor enrollment started. Add this URI to an authenticator app:")
        print(f"  {two_factor['provisioning_uri']}")
        print("Backup codes (each works once):")
        for code in two_factor["backup_codes"]:
            print(f"  {code}")


if __name__ == "__main__":
    main()
