from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_security_stamp() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class Principal:
    id: str
    external_id: str
    role: str = "user"
    tenant_id: Optional[str] = None
    security_stamp: str = field(default_factory=new_security_stamp)
    display_name: Optional[str] = None
    username: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        external_id: str,
        *,
        role: str = "user",
        tenant_id: Optional[str] = None,
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        meta: Dict | None = None,
    ) -> "Principal":
        now = _utcnow()
        return cls(
            id=uuid.uuid4().hex,
            external_id=external_id,
            role=role,
            tenant_id=tenant_id,
            display_name=display_name,
            username=username,
            created_at=now,
            updated_at=now,
            meta=meta,
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class StampRecord:
    """The two columns consulted on every verification."""

    stamp: str
    deleted: bool = False


@dataclass
class MagicTokenRecord:
    token_hash: str
    principal_id: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    used_at: Optional[datetime] = None
