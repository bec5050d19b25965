from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urlencode

from identitygate.logging import fingerprint, get_logger
from identitygate.service.errors import (
    NotFoundError,
    RejectionReason,
    SessionRejected,
    TransientError,
)
from identitygate.service.issuer import IssuedToken, TokenIssuer
from identitygate.storage.common import IdentityStore, hash_magic_token
from identitygate.storage.errors import StoreUnavailable
from identitygate.storage.models import Principal

MAGIC_PATH = "/v1/auth/magic"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MagicLink:
    token: str
    url: str
    expires_at: datetime


class MagicTokenService:
    """Single-use exchange tokens for assisted and out-of-band logins.

    Only the SHA-256 of a token is stored. Redemption relies on the store's
    atomic consume so two racing redeemers cannot both succeed, and every
    failure looks the same to the caller.
    """

    def __init__(
        self,
        store: IdentityStore,
        issuer: TokenIssuer,
        *,
        ttl: timedelta = timedelta(minutes=10),
        base_url: str = "http://localhost:8000",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.ttl = ttl
        self.base_url = base_url.rstrip("/")
        self._clock = clock
        self.logger = get_logger(__name__)

    def issue(self, principal_id: str) -> MagicLink:
        try:
            principal = self.store.get_principal(principal_id)
            if principal is None or principal.is_deleted:
                raise NotFoundError("principal not found")
            token = secrets.token_urlsafe(32)
            expires_at = self._clock() + self.ttl
            self.store.create_magic_token(principal.id, hash_magic_token(token), expires_at)
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
        self.logger.info(
            "magic_token_issued",
            principal_id=principal.id,
            expires_at=expires_at.isoformat(),
            token_fingerprint=fingerprint(token),
        )
        url = f"{self.base_url}{MAGIC_PATH}?{urlencode({'token': token})}"
        return MagicLink(token=token, url=url, expires_at=expires_at)

    def redeem(self, token: Optional[str]) -> tuple[Principal, IssuedToken]:
        if not token or len(token) > 256:
            raise SessionRejected(RejectionReason.NOT_FOUND)
        try:
            principal_id = self.store.consume_magic_token(
                hash_magic_token(token), self._clock()
            )
            # Fresh read so the issued token carries the current stamp
            principal = self.store.get_principal(principal_id) if principal_id else None
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc

        if principal_id is None:
            self.logger.info(
                "magic_token_rejected",
                cause="unknown_used_or_expired",
                token_fingerprint=fingerprint(token),
            )
            raise SessionRejected(RejectionReason.NOT_FOUND)
        if principal is None or principal.is_deleted:
            self.logger.warning(
                "magic_token_rejected",
                cause="principal_unavailable",
                principal_id=principal_id,
                token_fingerprint=fingerprint(token),
            )
            raise SessionRejected(RejectionReason.NOT_FOUND)

        issued = self.issuer.issue(principal)
        self.logger.info("magic_token_redeemed", principal_id=principal.id)
        return principal, issued

    def purge_expired(self) -> int:
        try:
            return self.store.purge_expired_magic_tokens(self._clock())
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
