#!/usr/bin/env python3
"""Bootstrap a tenant and its first administrator identity.

Usage:
    # Using environment variables:
    TENANT_ID=acme ADMIN_IDENTIFIER=root@acme ADMIN_SECRET=SecureSecret123! python scripts/bootstrap_tenant.py

    # Or with command line args:
    python scripts/bootstrap_tenant.py --tenant acme --identifier root@acme --secret SecureSecret123!

Environment Variables:
    TENANT_ID: Tenant to create (reused if it already exists)
    ADMIN_IDENTIFIER: Login identifier for the administrator
    ADMIN_SECRET: Secret for the administrator (must meet complexity requirements)
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


def validate_secret(secret: str) -> bool:
    """Check the secret meets complexity requirements."""
    if len(secret) < 12:
        return False
    has_upper = any(c.isupper() for c in secret)
    has_lower = any(c.islower() for c in secret)
    has_digit = any(c.isdigit() for c in secret)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in secret)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_tenant(
    tenant_id: str, identifier: str, secret: str, dry_run: bool = False
) -> dict:
    """Create the tenant if needed and give ``identifier`` the admin capability.

    Returns:
        dict with tenant_id, identity_id, identifier and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from warden.service.gateway import ADMIN_CAPABILITY
    from warden.service.runtime import get_runtime
    from warden.storage.models import AuditEvent, IdentityKind

    runtime = get_runtime()
    store = runtime.store

    if store.get_tenant(tenant_id) is None:
        if dry_run:
            print(f"[DRY RUN] Would create tenant: {tenant_id}")
        else:
            store.create_tenant(tenant_id)
            print(f"Created tenant: {tenant_id}")

    existing = store.get_identity_by_identifier(tenant_id, identifier)
    if existing:
        if ADMIN_CAPABILITY in existing.capabilities:
            print(f"Identity {identifier} already holds {ADMIN_CAPABILITY} (id: {existing.id})")
            return {
                "tenant_id": tenant_id,
                "identity_id": existing.id,
                "identifier": identifier,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would grant {ADMIN_CAPABILITY} to {identifier}")
            return {
                "tenant_id": tenant_id,
                "identity_id": existing.id,
                "identifier": identifier,
                "status": "dry_run",
            }

        await runtime.gateway.permissions.grant(tenant_id, existing.id, ADMIN_CAPABILITY)
        await runtime.gateway.stop()
        print(f"Granted {ADMIN_CAPABILITY} to {identifier} (id: {existing.id})")
        return {
            "tenant_id": tenant_id,
            "identity_id": existing.id,
            "identifier": identifier,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {identifier}")
        return {
            "tenant_id": tenant_id,
            "identity_id": None,
            "identifier": identifier,
            "status": "dry_run",
        }

    identity = store.create_identity(
        tenant_id,
        identifier,
        runtime.gateway.credentials.hash_secret(secret),
        capabilities=(ADMIN_CAPABILITY,),
        kind=IdentityKind.USER,
    )
    runtime.gateway.audit.record(
        AuditEvent.new(
            tenant_id=tenant_id,
            action="identity.registered",
            resource_type="identity",
            resource_id=identity.id,
            metadata={"kind": identity.kind.value, "capabilities": [ADMIN_CAPABILITY]},
        )
    )
    pair = await runtime.gateway.login(tenant_id, identifier, secret)
    await runtime.gateway.stop()

    print(f"Created admin identity: {identifier} (id: {identity.id})")
    return {
        "tenant_id": tenant_id,
        "identity_id": identity.id,
        "identifier": identifier,
        "status": "created",
        "access_token": pair.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant administrator for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--tenant",
        default=os.environ.get("TENANT_ID"),
        help="Tenant id (or set TENANT_ID env var)",
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("ADMIN_IDENTIFIER"),
        help="Admin identifier (or set ADMIN_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--secret",
        default=os.environ.get("ADMIN_SECRET"),
        help="Admin secret (or set ADMIN_SECRET env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.tenant:
        print("Error: --tenant or TENANT_ID environment variable required")
        sys.exit(1)

    if not args.identifier:
        print("Error: --identifier or ADMIN_IDENTIFIER environment variable required")
        sys.exit(1)

    if not args.secret:
        print("Error: --secret or ADMIN_SECRET environment variable required")
        sys.exit(1)

    if not validate_secret(args.secret):
        print("Error: Secret must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_tenant(args.tenant, args.identifier, args.secret, args.dry_run)
        )

        if result["status"] == "created":
            print("\nAdministrator created successfully!")
            print(f"  Tenant: {result['tenant_id']}")
            print(f"  Identity ID: {result['identity_id']}")
            if result.get("access_token"):
                print(f"  Access Token: {result['access_token'][:50]}...")
        elif result["status"] == "promoted":
            print("\nExisting identity promoted to administrator!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - identity is already an administrator.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
