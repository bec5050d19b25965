from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from identitygate.logging import fingerprint, get_logger
from identitygate.service.claims import ClaimsCodec
from identitygate.service.errors import RejectionReason, SessionRejected
from identitygate.service.revocation import RevocationStore


@dataclass(frozen=True)
class AuthContext:
    """Identity resolved for one request, built from claims or trusted headers."""

    principal_id: str
    role: str
    tenant_id: Optional[str]
    security_stamp: str
    expires_at: Optional[int] = None
    source: str = "token"


class SessionVerifier:
    """Signature and skew checks followed by the stamp comparison.

    The cryptographic half is stateless; the stamp lookup is the single
    stateful step and is what makes rotation revoke outstanding tokens.
    """

    def __init__(self, codec: ClaimsCodec, revocation: RevocationStore) -> None:
        self.codec = codec
        self.revocation = revocation
        self.logger = get_logger(__name__)

    async def verify(self, token: str) -> AuthContext:
        try:
            claims = self.codec.decode(token)
        except SessionRejected as exc:
            self.logger.info(
                "session_rejected",
                reason=exc.reason.value,
                token_fingerprint=fingerprint(token),
            )
            raise

        record = await self.revocation.current_stamp(claims.sub)
        if record is None or record.deleted or record.stamp != claims.stamp:
            self.logger.info(
                "session_rejected",
                reason=RejectionReason.REVOKED.value,
                principal_id=claims.sub,
                cause="missing" if record is None else ("deleted" if record.deleted else "stamp_mismatch"),
                token_fingerprint=fingerprint(token),
            )
            raise SessionRejected(RejectionReason.REVOKED)

        return AuthContext(
            principal_id=claims.sub,
            role=claims.role,
            tenant_id=claims.tenant_id,
            security_stamp=claims.stamp,
            expires_at=claims.exp,
            source="token",
        )
