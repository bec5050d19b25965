from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RejectionReason(str, Enum):
    """Why a credential was refused.

    The full reason is logged; clients only ever see the coarse form from
    ``client_reason`` so responses cannot be used as an oracle.
    """

    MALFORMED = "malformed"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    REVOKED = "revoked"
    NOT_FOUND = "not_found"
    INVALID = "invalid"

    @property
    def client_reason(self) -> str:
        if self in (RejectionReason.EXPIRED, RejectionReason.REVOKED):
            return self.value
        return RejectionReason.INVALID.value


_DEFAULT_MESSAGES = {
    RejectionReason.EXPIRED: "session expired",
    RejectionReason.REVOKED: "session revoked",
    RejectionReason.NOT_FOUND: "invalid or expired",
}


class SessionRejected(AuthenticationError):
    """A session token, magic token or handshake payload was refused (401)."""

    def __init__(self, reason: RejectionReason, message: Optional[str] = None) -> None:
        self.reason = RejectionReason(reason)
        super().__init__(
            message or _DEFAULT_MESSAGES.get(self.reason, "invalid credentials"),
            detail={"reason": self.reason.client_reason},
        )


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TransientError(ServiceError):
    """A backing store or cache is temporarily unreachable (503)."""
    status_code = 503
    error_code = "unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class SigningKeyUnavailable(ServerError):
    """No usable signing key; the process cannot serve authentication."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "RejectionReason",
    "SessionRejected",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "TransientError",
    "ServerError",
    "SigningKeyUnavailable",
]
