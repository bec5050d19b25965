"""Storage contract and helpers shared between memory and postgres implementations."""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Dict, Optional, Protocol

from identitygate.storage.models import Principal, StampRecord


class IdentityStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_external_id(self, external_id: str) -> Optional[Principal]: ...

    def create_principal(
        self,
        external_id: str,
        *,
        role: str = "user",
        tenant_id: Optional[str] = None,
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Principal: ...

    def update_principal_profile(
        self,
        principal_id: str,
        *,
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Optional[Principal]: ...

    def get_stamp_record(self, principal_id: str) -> Optional[StampRecord]: ...

    def rotate_security_stamp(self, principal_id: str, new_stamp: str) -> bool: ...

    def update_principal_role(
        self, principal_id: str, role: str, tenant_id: Optional[str], new_stamp: str
    ) -> Optional[Principal]: ...

    def soft_delete_principal(self, principal_id: str) -> bool: ...

    def create_magic_token(
        self, principal_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def consume_magic_token(self, token_hash: str, now: datetime) -> Optional[str]: ...

    def purge_expired_magic_tokens(self, now: datetime) -> int: ...


def hash_magic_token(token: str) -> str:
    """Magic tokens are only ever stored as their SHA-256 digest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_external_id(external_id: object) -> str:
    value = str(external_id).strip()
    if not value:
        raise ValueError("external_id must be non-empty")
    return value
