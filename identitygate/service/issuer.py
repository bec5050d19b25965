from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from identitygate.logging import fingerprint, get_logger
from identitygate.service.claims import ClaimsCodec, SessionClaims
from identitygate.service.errors import ValidationError
from identitygate.storage.models import Principal


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    max_age_seconds: int


class TokenIssuer:
    """Signs session tokens whose lifetime is fixed by the principal's role.

    Elevated roles get the short tier so a stolen privileged token is only
    useful for a day; everyone else gets the long tier.
    """

    def __init__(
        self,
        codec: ClaimsCodec,
        *,
        elevated_roles: Iterable[str],
        elevated_ttl: timedelta = timedelta(hours=24),
        standard_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.codec = codec
        self.elevated_roles = frozenset(elevated_roles)
        self.elevated_ttl = elevated_ttl
        self.standard_ttl = standard_ttl
        self.logger = get_logger(__name__)

    def lifetime_for(self, role: str) -> timedelta:
        return self.elevated_ttl if role in self.elevated_roles else self.standard_ttl

    def issue(self, principal: Principal) -> IssuedToken:
        """Sign a token for ``principal``.

        The caller must pass a record freshly read from the store; the stamp
        embedded here is what every later verification compares against.
        """
        if principal.is_deleted:
            raise ValidationError("cannot issue a session for a deleted principal")
        lifetime = int(self.lifetime_for(principal.role).total_seconds())
        iat = self.codec.now()
        claims = SessionClaims(
            sub=principal.id,
            role=principal.role,
            tenant_id=principal.tenant_id,
            stamp=principal.security_stamp,
            iat=iat,
            exp=iat + lifetime,
        )
        token = self.codec.encode(claims)
        self.logger.info(
            "session_token_issued",
            principal_id=principal.id,
            role=principal.role,
            lifetime_seconds=lifetime,
            token_fingerprint=fingerprint(token),
        )
        return IssuedToken(
            token=token,
            expires_at=datetime.fromtimestamp(claims.exp, tz=timezone.utc),
            max_age_seconds=lifetime,
        )
