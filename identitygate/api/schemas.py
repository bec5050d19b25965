from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from identitygate.config import KNOWN_ROLES
from identitygate.storage.models import Principal

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "unavailable",
    "server_error",
})

_TENANT_HINT_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_PRINCIPAL_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _normalize_unicode(value: str) -> str:
    """Drop zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class PrincipalResponse(BaseModel):
    id: str
    role: str
    tenant_id: Optional[str] = None
    display_name: Optional[str] = None
    username: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id,
            role=principal.role,
            tenant_id=principal.tenant_id,
            display_name=principal.display_name,
            username=principal.username,
            created_at=principal.created_at,
        )


class SessionResponse(BaseModel):
    principal: PrincipalResponse
    token: str
    expires_at: datetime


class ProfileResponse(BaseModel):
    principal: PrincipalResponse
    session_expires_at: Optional[datetime] = None
    source: str = "token"


class LogoutResponse(BaseModel):
    clear_stored_credentials: bool = True
    sessions_revoked: bool = False


class MagicLinkResponse(BaseModel):
    token: str
    url: str
    expires_at: datetime


class HandshakeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    init_data: str = Field(..., min_length=1, max_length=4096)
    tenant_hint: Optional[str] = Field(default=None, max_length=64)

    @field_validator("tenant_hint")
    @classmethod
    def _validate_tenant_hint(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = _normalize_unicode(value.strip())
        if not value:
            return None
        if not _TENANT_HINT_PATTERN.match(value):
            raise ValueError("tenant_hint must be alphanumeric with '-' or '_'")
        return value


class LogoutRequest(BaseModel):
    revoke_all: bool = False


class MagicLinkRequest(BaseModel):
    principal_id: str = Field(..., min_length=1, max_length=64)

    @field_validator("principal_id")
    @classmethod
    def _validate_principal_id(cls, value: str) -> str:
        if not _PRINCIPAL_ID_PATTERN.match(value):
            raise ValueError("invalid principal id")
        return value


class RoleChangeRequest(BaseModel):
    role: str
    tenant_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        if value not in KNOWN_ROLES:
            raise ValueError(f"role must be one of: {', '.join(sorted(KNOWN_ROLES))}")
        return value


class RevokeResponse(BaseModel):
    principal_id: str
    sessions_revoked: bool = True
