"""Compact HS256 session token encoding.

Tokens are standard three-segment JWS strings. The algorithm is pinned: a
header naming anything other than HS256 is rejected before the signature is
even computed, which closes the ``alg=none`` and RS/HS confusion holes.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from identitygate.logging import get_logger
from identitygate.service.errors import (
    RejectionReason,
    SessionRejected,
    SigningKeyUnavailable,
)

logger = get_logger(__name__)

ALGORITHM = "HS256"
_HEADER = {"alg": ALGORITHM, "typ": "JWT"}
_REQUIRED_CLAIMS = ("sub", "role", "stamp", "iat", "exp")


@dataclass(frozen=True)
class SessionClaims:
    sub: str
    role: str
    tenant_id: Optional[str]
    stamp: str
    iat: int
    exp: int

    @property
    def lifetime_seconds(self) -> int:
        return self.exp - self.iat


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _as_int(value: Any) -> int:
    # bool is an int subclass; a boolean timestamp is never legitimate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("timestamp claim must be numeric")
    return int(value)


class ClaimsCodec:
    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise SigningKeyUnavailable("session signing key is not configured")
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        return _encode_segment(digest)

    def encode(self, claims: SessionClaims) -> str:
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": claims.sub,
            "role": claims.role,
            "tenantId": claims.tenant_id,
            "stamp": claims.stamp,
            "iat": claims.iat,
            "exp": claims.exp,
        }
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> SessionClaims:
        """Validate ``token`` and return its claims.

        Raises SessionRejected with MALFORMED for anything structurally or
        cryptographically wrong, EXPIRED once ``exp`` is more than the leeway
        in the past and NOT_YET_VALID when ``iat`` is more than the leeway in
        the future.
        """
        if not token or not isinstance(token, str):
            raise SessionRejected(RejectionReason.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3:
            raise SessionRejected(RejectionReason.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise SessionRejected(RejectionReason.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise SessionRejected(RejectionReason.MALFORMED)

        try:
            expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        except UnicodeEncodeError:
            raise SessionRejected(RejectionReason.MALFORMED)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise SessionRejected(RejectionReason.MALFORMED)

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise SessionRejected(RejectionReason.MALFORMED)
        if not isinstance(payload, dict):
            raise SessionRejected(RejectionReason.MALFORMED)

        if payload.get("iss") != self.issuer:
            raise SessionRejected(RejectionReason.MALFORMED)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise SessionRejected(RejectionReason.MALFORMED)

        if any(payload.get(name) in (None, "") for name in _REQUIRED_CLAIMS):
            raise SessionRejected(RejectionReason.MALFORMED)
        try:
            iat = _as_int(payload["iat"])
            exp = _as_int(payload["exp"])
        except ValueError:
            raise SessionRejected(RejectionReason.MALFORMED)
        tenant_id = payload.get("tenantId")
        if tenant_id is not None and not isinstance(tenant_id, str):
            raise SessionRejected(RejectionReason.MALFORMED)

        now = self.now()
        if exp < now - self.leeway_seconds:
            raise SessionRejected(RejectionReason.EXPIRED)
        if iat > now + self.leeway_seconds:
            raise SessionRejected(RejectionReason.NOT_YET_VALID)

        return SessionClaims(
            sub=str(payload["sub"]),
            role=str(payload["role"]),
            tenant_id=tenant_id,
            stamp=str(payload["stamp"]),
            iat=iat,
            exp=exp,
        )
