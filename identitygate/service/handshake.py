"""Embedded-client handshake.

The host messenger shell signs a urlencoded ``initData`` payload with a key
derived from the bot token. Verifying it proves the payload came from the
shell for this bot, after which the embedded user id maps to a principal.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qsl

from identitygate.logging import get_logger
from identitygate.service.errors import (
    RejectionReason,
    SessionRejected,
    SigningKeyUnavailable,
    TransientError,
)
from identitygate.service.issuer import IssuedToken, TokenIssuer
from identitygate.storage.common import IdentityStore
from identitygate.storage.errors import ConstraintViolation, StoreUnavailable
from identitygate.storage.models import Principal

_SECRET_LABEL = b"WebAppData"
MAX_INIT_DATA_LENGTH = 4096
MAX_TENANT_HINT_LENGTH = 64


@dataclass(frozen=True)
class HandshakeIdentity:
    external_id: str
    auth_date: int
    display_name: Optional[str] = None
    username: Optional[str] = None


def _display_name(user: Dict[str, Any]) -> Optional[str]:
    parts = [str(user.get(k)).strip() for k in ("first_name", "last_name") if user.get(k)]
    return " ".join(p for p in parts if p) or None


class InitDataValidator:
    def __init__(
        self,
        bot_token: Optional[str],
        *,
        max_age_seconds: int = 86400,
        leeway_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not bot_token:
            raise SigningKeyUnavailable("handshake bot token is not configured")
        self._secret = hmac.new(_SECRET_LABEL, bot_token.encode("utf-8"), hashlib.sha256).digest()
        self.max_age_seconds = max_age_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def sign(self, fields: Dict[str, str]) -> str:
        """Return the hash the shell would attach to ``fields``."""
        check_string = "\n".join(f"{k}={v}" for k, v in sorted(fields.items()))
        return hmac.new(self._secret, check_string.encode("utf-8"), hashlib.sha256).hexdigest()

    def validate(self, init_data: str) -> HandshakeIdentity:
        if not init_data or len(init_data) > MAX_INIT_DATA_LENGTH:
            raise SessionRejected(RejectionReason.MALFORMED)
        try:
            pairs = parse_qsl(init_data, keep_blank_values=True, strict_parsing=True)
        except ValueError:
            raise SessionRejected(RejectionReason.MALFORMED)
        fields: Dict[str, str] = {}
        for key, value in pairs:
            if key in fields:
                raise SessionRejected(RejectionReason.MALFORMED)
            fields[key] = value

        received = fields.pop("hash", None)
        if not received:
            raise SessionRejected(RejectionReason.MALFORMED)
        if not hmac.compare_digest(self.sign(fields).encode(), received.lower().encode()):
            raise SessionRejected(RejectionReason.MALFORMED)

        try:
            auth_date = int(fields.get("auth_date", ""))
        except ValueError:
            raise SessionRejected(RejectionReason.MALFORMED)
        now = int(self._clock())
        if auth_date > now + self.leeway_seconds:
            raise SessionRejected(RejectionReason.NOT_YET_VALID)
        if now - auth_date > self.max_age_seconds:
            raise SessionRejected(RejectionReason.EXPIRED, "handshake payload expired")

        try:
            user = json.loads(fields.get("user", ""))
        except ValueError:
            raise SessionRejected(RejectionReason.MALFORMED)
        if not isinstance(user, dict) or user.get("id") in (None, ""):
            raise SessionRejected(RejectionReason.MALFORMED)
        username = user.get("username")
        return HandshakeIdentity(
            external_id=str(user["id"]),
            auth_date=auth_date,
            display_name=_display_name(user),
            username=str(username) if username else None,
        )


class HandshakeService:
    """Validates the payload, finds or creates the principal, then issues."""

    def __init__(
        self, validator: InitDataValidator, store: IdentityStore, issuer: TokenIssuer
    ) -> None:
        self.validator = validator
        self.store = store
        self.issuer = issuer
        self.logger = get_logger(__name__)

    def _find_or_create(self, identity: HandshakeIdentity, meta: Dict[str, Any]) -> Principal:
        principal = self.store.get_principal_by_external_id(identity.external_id)
        if principal is None:
            try:
                principal = self.store.create_principal(
                    identity.external_id,
                    display_name=identity.display_name,
                    username=identity.username,
                    meta=meta,
                )
                self.logger.info("principal_created", principal_id=principal.id)
                return principal
            except ConstraintViolation:
                # A concurrent first handshake created it between our read and insert
                principal = self.store.get_principal_by_external_id(identity.external_id)
                if principal is None:
                    raise
        if principal.is_deleted:
            return principal
        refreshed = self.store.update_principal_profile(
            principal.id,
            display_name=identity.display_name,
            username=identity.username,
            meta=meta or None,
        )
        return refreshed or principal

    def handshake(
        self, init_data: str, *, tenant_hint: Optional[str] = None
    ) -> tuple[Principal, IssuedToken]:
        try:
            identity = self.validator.validate(init_data)
        except SessionRejected as exc:
            self.logger.info("handshake_rejected", reason=exc.reason.value)
            raise

        meta: Dict[str, Any] = {}
        # The hint is recorded for downstream consumers; it never grants tenancy
        if tenant_hint and len(tenant_hint) <= MAX_TENANT_HINT_LENGTH:
            meta["last_tenant_hint"] = tenant_hint

        try:
            principal = self._find_or_create(identity, meta)
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
        if principal.is_deleted:
            self.logger.warning("handshake_rejected", reason="revoked", principal_id=principal.id)
            raise SessionRejected(RejectionReason.REVOKED)

        issued = self.issuer.issue(principal)
        self.logger.info("handshake_completed", principal_id=principal.id, role=principal.role)
        return principal, issued
