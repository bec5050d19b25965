from __future__ import annotations

from datetime import timedelta
from typing import Optional

from identitygate.config import KNOWN_ROLES, Settings
from identitygate.logging import get_logger
from identitygate.service.claims import ClaimsCodec
from identitygate.service.errors import (
    NotFoundError,
    ServerError,
    TransientError,
    ValidationError,
)
from identitygate.service.handshake import HandshakeService, InitDataValidator
from identitygate.service.issuer import IssuedToken, TokenIssuer
from identitygate.service.magic import MagicLink, MagicTokenService
from identitygate.service.resolution import (
    FastPathResolver,
    RequestContext,
    TokenResolver,
    TrustedHeaderResolver,
    TrustedHopPolicy,
    select_resolver,
)
from identitygate.service.revocation import RevocationStore
from identitygate.service.verifier import AuthContext, SessionVerifier
from identitygate.storage.common import IdentityStore
from identitygate.storage.errors import StoreUnavailable
from identitygate.storage.models import Principal, new_security_stamp
from identitygate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthService:
    """Wires the session protocol together for the HTTP layer.

    Issuance, verification, magic links and the embedded handshake all share
    one codec and one revocation store so a rotation is observed everywhere.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger

        self.codec = ClaimsCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_seconds,
        )
        self.issuer = TokenIssuer(
            self.codec,
            elevated_roles=settings.elevated_roles,
            elevated_ttl=timedelta(hours=settings.elevated_token_ttl_hours),
            standard_ttl=timedelta(days=settings.standard_token_ttl_days),
        )
        self.revocation = RevocationStore(
            store, cache, ttl_seconds=settings.stamp_cache_ttl_seconds
        )
        self.verifier = SessionVerifier(self.codec, self.revocation)
        self.magic = MagicTokenService(
            store,
            self.issuer,
            ttl=timedelta(minutes=settings.magic_token_ttl_minutes),
            base_url=settings.public_base_url,
        )
        self.handshakes: Optional[HandshakeService] = None
        if settings.bot_token:
            validator = InitDataValidator(
                settings.bot_token,
                max_age_seconds=settings.handshake_max_age_seconds,
                leeway_seconds=settings.clock_skew_seconds,
            )
            self.handshakes = HandshakeService(validator, store, self.issuer)
        else:
            self.logger.warning("handshake_disabled", reason="bot_token_missing")

        self.hop_policy = TrustedHopPolicy(
            settings.trusted_proxy_cidrs, settings.internal_hop_secret
        )
        self.fast_path = FastPathResolver(self.revocation)
        self._token_resolver = TokenResolver(self.verifier)
        self._header_resolver = TrustedHeaderResolver(self.fast_path)

    async def resolve_request(self, ctx: RequestContext) -> AuthContext:
        resolver = select_resolver(
            ctx, token_resolver=self._token_resolver, header_resolver=self._header_resolver
        )
        return await resolver.resolve(ctx)

    async def verify(self, token: str) -> AuthContext:
        return await self.verifier.verify(token)

    async def handshake(
        self, init_data: str, *, tenant_hint: Optional[str] = None
    ) -> tuple[Principal, IssuedToken]:
        if self.handshakes is None:
            raise ServerError(
                "embedded handshake is not configured",
                status_code=503,
                error_code="unavailable",
            )
        return self.handshakes.handshake(init_data, tenant_hint=tenant_hint)

    def issue_magic_link(self, principal_id: str) -> MagicLink:
        return self.magic.issue(principal_id)

    async def redeem_magic_token(self, token: Optional[str]) -> tuple[Principal, IssuedToken]:
        return self.magic.redeem(token)

    def get_principal(self, principal_id: str) -> Principal:
        try:
            principal = self.store.get_principal(principal_id)
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
        if principal is None or principal.is_deleted:
            raise NotFoundError("principal not found")
        return principal

    async def revoke_all_sessions(self, principal_id: str) -> str:
        """Rotate the stamp; every token issued before this call stops verifying."""
        return await self.revocation.rotate(principal_id)

    async def set_role(
        self, principal_id: str, role: str, *, tenant_id: Optional[str] = None
    ) -> Principal:
        """Change role and tenant, always rotating the stamp in the same write.

        Tokens embed the role at issue time, so a downgrade would otherwise
        leave the old privilege usable until the token expired.
        """
        if role not in KNOWN_ROLES:
            raise ValidationError("unknown role", detail={"field": "role"})
        try:
            principal = self.store.update_principal_role(
                principal_id, role, tenant_id, new_security_stamp()
            )
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
        if principal is None:
            raise NotFoundError("principal not found")
        await self.revocation.evict(principal_id)
        self.logger.info(
            "principal_role_updated_sessions_revoked",
            principal_id=principal_id,
            new_role=role,
            tenant_id=tenant_id,
        )
        return principal

    async def soft_delete(self, principal_id: str) -> None:
        try:
            deleted = self.store.soft_delete_principal(principal_id)
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
        if not deleted:
            raise NotFoundError("principal not found")
        await self.revocation.evict(principal_id)
        self.logger.info("principal_soft_deleted", principal_id=principal_id)

    def purge_expired_magic_tokens(self) -> int:
        purged = self.magic.purge_expired()
        if purged:
            self.logger.info("magic_tokens_purged", count=purged)
        return purged
