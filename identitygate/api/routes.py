from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from identitygate.api.cookies import clear_session_cookie, set_session_cookie
from identitygate.api.schemas import (
    Envelope,
    HandshakeRequest,
    LogoutRequest,
    LogoutResponse,
    MagicLinkRequest,
    MagicLinkResponse,
    PrincipalResponse,
    ProfileResponse,
    RevokeResponse,
    RoleChangeRequest,
    SessionResponse,
)
from identitygate.config import STAFF_ROLES, Role
from identitygate.logging import get_logger
from identitygate.service.errors import SessionRejected
from identitygate.service.issuer import IssuedToken
from identitygate.service.resolution import RequestContext, build_request_context
from identitygate.service.runtime import check_rate_limit, get_runtime
from identitygate.service.verifier import AuthContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_host(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "status": "error",
                "error": {"code": "rate_limited", "message": "rate limit exceeded"},
            },
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


def get_request_context(request: Request) -> RequestContext:
    runtime = get_runtime()
    return build_request_context(
        request.headers,
        request.cookies,
        client_host=_client_host(request),
        policy=runtime.auth.hop_policy,
        cookie_name=runtime.settings.cookie_name,
    )


async def get_principal(ctx: RequestContext = Depends(get_request_context)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.resolve_request(ctx)


async def get_staff_principal(principal: AuthContext = Depends(get_principal)) -> AuthContext:
    if principal.role not in STAFF_ROLES:
        raise _http_error("forbidden", "staff access required", status_code=403)
    return principal


def _apply_session_cookie(response: Response, issued: IssuedToken) -> None:
    settings = get_runtime().settings
    set_session_cookie(
        response,
        settings.cookie_name,
        issued.token,
        max_age=issued.max_age_seconds,
        domain=settings.cookie_domain,
        embedded=settings.cookie_embedded,
    )


@router.post("/auth/handshake", response_model=Envelope, tags=["auth"])
async def handshake(body: HandshakeRequest, request: Request, response: Response):
    """Exchange a signed embedded-client payload for a session.

    Sets the session cookie and also returns the token so the client can
    keep a copy in secure storage for when the cookie is dropped.

    Raises:
        401: If the payload signature, shape or age is invalid
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"handshake:{_client_host(request)}",
        runtime.settings.handshake_rate_limit_per_minute,
    )
    principal, issued = await runtime.auth.handshake(
        body.init_data, tenant_hint=body.tenant_hint
    )
    _apply_session_cookie(response, issued)
    return Envelope(
        status="ok",
        data=SessionResponse(
            principal=PrincipalResponse.from_principal(principal),
            token=issued.token,
            expires_at=issued.expires_at,
        ),
    )


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    record = runtime.auth.get_principal(principal.principal_id)
    expires_at = None
    if principal.expires_at is not None:
        expires_at = datetime.fromtimestamp(principal.expires_at, tz=timezone.utc)
    return Envelope(
        status="ok",
        data=ProfileResponse(
            principal=PrincipalResponse.from_principal(record),
            session_expires_at=expires_at,
            source=principal.source,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    """Clear the session cookie and tell the client to wipe stored bearers.

    With ``revoke_all`` the caller's stamp is rotated, which ends every
    session the principal holds on any device.
    """
    runtime = get_runtime()
    settings = runtime.settings
    revoked = False
    if body is not None and body.revoke_all:
        principal = await runtime.auth.resolve_request(ctx)
        await runtime.auth.revoke_all_sessions(principal.principal_id)
        revoked = True
    clear_session_cookie(
        response,
        settings.cookie_name,
        domain=settings.cookie_domain,
        embedded=settings.cookie_embedded,
    )
    return Envelope(
        status="ok",
        data=LogoutResponse(clear_stored_credentials=True, sessions_revoked=revoked),
    )


@router.get("/auth/magic", tags=["auth"])
async def redeem_magic(request: Request, token: Optional[str] = Query(None)):
    """Redeem a one-time link, set the session cookie and redirect.

    Every failure redirects to the same page; the reason is only logged.
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"magic:{_client_host(request)}",
        settings.magic_rate_limit_per_minute,
    )
    try:
        _, issued = await runtime.auth.redeem_magic_token(token)
    except SessionRejected:
        return RedirectResponse(settings.magic_failure_path, status_code=303)
    redirect = RedirectResponse(settings.magic_redirect_path, status_code=303)
    _apply_session_cookie(redirect, issued)
    return redirect


@router.post("/auth/magic", response_model=Envelope, status_code=201, tags=["auth"])
async def issue_magic(
    body: MagicLinkRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    """Create a magic link for a principal.

    Only callable from the trusted internal hop (the bot server) or by staff.
    """
    runtime = get_runtime()
    if not ctx.trusted_hop:
        caller = await runtime.auth.resolve_request(ctx)
        if caller.role not in STAFF_ROLES:
            raise _http_error("forbidden", "staff access required", status_code=403)
    link = runtime.auth.issue_magic_link(body.principal_id)
    return Envelope(
        status="ok",
        data=MagicLinkResponse(token=link.token, url=link.url, expires_at=link.expires_at),
    )


@router.post("/admin/principals/{principal_id}/role", response_model=Envelope, tags=["admin"])
async def change_role(
    principal_id: str,
    body: RoleChangeRequest,
    caller: AuthContext = Depends(get_staff_principal),
):
    """Change a principal's role; their existing sessions are revoked."""
    if (
        body.role in STAFF_ROLES or principal_id == caller.principal_id
    ) and caller.role != Role.SUPER_ADMIN.value:
        raise _http_error("forbidden", "super admin required", status_code=403)
    runtime = get_runtime()
    principal = await runtime.auth.set_role(principal_id, body.role, tenant_id=body.tenant_id)
    logger.info(
        "admin_role_change",
        actor_id=caller.principal_id,
        principal_id=principal_id,
        new_role=body.role,
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/admin/principals/{principal_id}/revoke", response_model=Envelope, tags=["admin"])
async def revoke_sessions(principal_id: str, caller: AuthContext = Depends(get_principal)):
    """Remote wipe: end every session the principal holds."""
    if caller.principal_id != principal_id and caller.role not in STAFF_ROLES:
        raise _http_error("forbidden", "cannot revoke other principals", status_code=403)
    runtime = get_runtime()
    await runtime.auth.revoke_all_sessions(principal_id)
    logger.info("admin_sessions_revoked", actor_id=caller.principal_id, principal_id=principal_id)
    return Envelope(status="ok", data=RevokeResponse(principal_id=principal_id))


@router.delete("/admin/principals/{principal_id}", response_model=Envelope, tags=["admin"])
async def delete_principal(
    principal_id: str, caller: AuthContext = Depends(get_staff_principal)
):
    runtime = get_runtime()
    await runtime.auth.soft_delete(principal_id)
    logger.info("admin_principal_deleted", actor_id=caller.principal_id, principal_id=principal_id)
    return Envelope(status="ok", data=RevokeResponse(principal_id=principal_id))
