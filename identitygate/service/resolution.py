"""Request identity resolution.

Two strategies sit behind one ``PrincipalResolver`` interface: cryptographic
verification of a bearer or cookie token, and the fast path that trusts
identity headers injected by an internal hop. Which one runs is decided by
``select_resolver`` from the transport context, and the only place identity
headers survive into that context is ``build_request_context``.
"""

from __future__ import annotations

import hmac
import ipaddress
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Protocol

from identitygate.logging import get_logger
from identitygate.service.errors import RejectionReason, SessionRejected
from identitygate.service.revocation import RevocationStore
from identitygate.service.verifier import AuthContext, SessionVerifier

logger = get_logger(__name__)

IDENTITY_ID_HEADER = "x-identity-id"
IDENTITY_ROLE_HEADER = "x-identity-role"
IDENTITY_STAMP_HEADER = "x-identity-stamp"
IDENTITY_TENANT_HEADER = "x-identity-tenant"
HOP_SECRET_HEADER = "x-internal-hop-secret"
IDENTITY_HEADERS = frozenset(
    {IDENTITY_ID_HEADER, IDENTITY_ROLE_HEADER, IDENTITY_STAMP_HEADER, IDENTITY_TENANT_HEADER}
)

# Placeholder strings that upstream serializers emit for "no value"
_SENTINELS = frozenset({"", "undefined", "null", "none", "nil", "nan", "anonymous", "0", "-"})


def clean_header_value(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    if stripped.lower() in _SENTINELS:
        return None
    return stripped


@dataclass(frozen=True)
class RequestContext:
    headers: Mapping[str, str] = field(default_factory=dict)
    bearer_token: Optional[str] = None
    cookie_token: Optional[str] = None
    client_host: Optional[str] = None
    trusted_hop: bool = False

    @property
    def token(self) -> Optional[str]:
        # An explicit bearer wins over a cookie the browser attached on its own
        return self.bearer_token or self.cookie_token


class TrustedHopPolicy:
    """Decides whether a connection came from a verified internal hop.

    Both conditions must hold: the peer address is inside a configured
    network and the shared hop secret matches.
    """

    def __init__(self, cidrs: Iterable[str], secret: Optional[str]) -> None:
        self.networks = [ipaddress.ip_network(c, strict=False) for c in cidrs]
        self._secret = secret.encode("utf-8") if secret else None

    @property
    def enabled(self) -> bool:
        return bool(self.networks) and self._secret is not None

    def is_trusted(self, client_host: Optional[str], headers: Mapping[str, str]) -> bool:
        if not self.enabled or not client_host:
            return False
        try:
            address = ipaddress.ip_address(client_host)
        except ValueError:
            return False
        if not any(address in network for network in self.networks):
            return False
        presented = headers.get(HOP_SECRET_HEADER)
        if not presented:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), self._secret)


def _bearer_from(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return clean_header_value(credentials)


def build_request_context(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    *,
    client_host: Optional[str],
    policy: TrustedHopPolicy,
    cookie_name: str,
) -> RequestContext:
    normalized = {k.lower(): v for k, v in headers.items()}
    trusted = policy.is_trusted(client_host, normalized)
    if not trusted:
        dropped = [h for h in IDENTITY_HEADERS if h in normalized]
        if dropped:
            logger.warning(
                "untrusted_identity_headers_dropped",
                client_host=client_host,
                headers=sorted(dropped),
            )
        normalized = {k: v for k, v in normalized.items() if k not in IDENTITY_HEADERS}
    normalized.pop(HOP_SECRET_HEADER, None)
    return RequestContext(
        headers=normalized,
        bearer_token=_bearer_from(normalized.get("authorization")),
        cookie_token=clean_header_value(cookies.get(cookie_name)),
        client_host=client_host,
        trusted_hop=trusted,
    )


class PrincipalResolver(Protocol):
    async def resolve(self, ctx: RequestContext) -> AuthContext: ...


class FastPathResolver:
    """Identity from edge-injected headers, still subject to the stamp check."""

    def __init__(self, revocation: RevocationStore) -> None:
        self.revocation = revocation

    @staticmethod
    def has_identity(headers: Mapping[str, str]) -> bool:
        return all(
            clean_header_value(headers.get(name))
            for name in (IDENTITY_ID_HEADER, IDENTITY_ROLE_HEADER, IDENTITY_STAMP_HEADER)
        )

    async def resolve_from_headers(self, headers: Mapping[str, str]) -> Optional[AuthContext]:
        principal_id = clean_header_value(headers.get(IDENTITY_ID_HEADER))
        stamp = clean_header_value(headers.get(IDENTITY_STAMP_HEADER))
        role = clean_header_value(headers.get(IDENTITY_ROLE_HEADER))
        if not principal_id or not stamp or not role:
            return None
        record = await self.revocation.current_stamp(principal_id)
        if record is None or record.deleted or record.stamp != stamp:
            logger.info(
                "fast_path_rejected", reason=RejectionReason.REVOKED.value, principal_id=principal_id
            )
            raise SessionRejected(RejectionReason.REVOKED)
        return AuthContext(
            principal_id=principal_id,
            role=role,
            tenant_id=clean_header_value(headers.get(IDENTITY_TENANT_HEADER)),
            security_stamp=stamp,
            source="trusted_headers",
        )


class TrustedHeaderResolver:
    def __init__(self, fast_path: FastPathResolver) -> None:
        self.fast_path = fast_path

    async def resolve(self, ctx: RequestContext) -> AuthContext:
        if not ctx.trusted_hop:
            raise SessionRejected(RejectionReason.INVALID, "authentication required")
        auth = await self.fast_path.resolve_from_headers(ctx.headers)
        if auth is None:
            raise SessionRejected(RejectionReason.INVALID, "authentication required")
        return auth


class TokenResolver:
    def __init__(self, verifier: SessionVerifier) -> None:
        self.verifier = verifier

    async def resolve(self, ctx: RequestContext) -> AuthContext:
        token = ctx.token
        if not token:
            raise SessionRejected(RejectionReason.INVALID, "authentication required")
        return await self.verifier.verify(token)


def select_resolver(
    ctx: RequestContext,
    *,
    token_resolver: TokenResolver,
    header_resolver: TrustedHeaderResolver,
) -> PrincipalResolver:
    if ctx.trusted_hop and FastPathResolver.has_identity(ctx.headers):
        return header_resolver
    return token_resolver
