#!/usr/bin/env python3
"""Create or promote a principal and print a one-time login link.

Usage:
    python scripts/issue_magic_link.py --external-id 123456789 --role platform_manager

    # Merchant owners need the merchant they own:
    python scripts/issue_magic_link.py --external-id 42 --role merchant --tenant-id m_abc

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: Where the memory store and generated JWT secret live
    PUBLIC_BASE_URL: Origin used to build the link
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


async def issue_link(
    external_id: str,
    role: Optional[str] = None,
    *,
    tenant_id: Optional[str] = None,
    display_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Ensure the principal exists with the requested role and mint a link.

    Returns:
        dict with principal_id, role, status and, unless dry_run, url and expires_at
    """
    # Import here to avoid loading config before env vars are set
    from identitygate.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store

    principal = store.get_principal_by_external_id(external_id)
    status = "existing"
    if principal is None:
        if dry_run:
            print(f"[DRY RUN] Would create principal for external id {external_id}")
            return {"principal_id": None, "role": role or "user", "status": "dry_run"}
        principal = store.create_principal(
            external_id, role="user", display_name=display_name
        )
        status = "created"
    elif principal.is_deleted:
        raise ValueError(f"principal {principal.id} is deleted")

    if role and (role != principal.role or tenant_id != principal.tenant_id):
        if dry_run:
            print(f"[DRY RUN] Would change role of {principal.id} to {role}")
            return {"principal_id": principal.id, "role": role, "status": "dry_run"}
        principal = await runtime.auth.set_role(principal.id, role, tenant_id=tenant_id)
        status = "promoted" if status == "existing" else status

    if dry_run:
        return {"principal_id": principal.id, "role": principal.role, "status": "dry_run"}

    link = runtime.auth.issue_magic_link(principal.id)
    return {
        "principal_id": principal.id,
        "role": principal.role,
        "status": status,
        "url": link.url,
        "expires_at": link.expires_at.isoformat(),
    }


def main():
    from identitygate.config import KNOWN_ROLES

    parser = argparse.ArgumentParser(
        description="Issue a one-time login link for IdentityGate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--external-id", required=True, help="Embedded-client user id")
    parser.add_argument(
        "--role",
        choices=sorted(KNOWN_ROLES),
        help="Role to assign; changing it revokes existing sessions",
    )
    parser.add_argument("--tenant-id", help="Owned merchant id for merchant roles")
    parser.add_argument("--display-name", help="Display name for a newly created principal")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            issue_link(
                args.external_id,
                args.role,
                tenant_id=args.tenant_id,
                display_name=args.display_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Principal: {result['principal_id']} ({result['role']}, {result['status']})")
    if result.get("url"):
        print(f"  Link: {result['url']}")
        print(f"  Expires: {result['expires_at']}")


if __name__ == "__main__":
    main()
