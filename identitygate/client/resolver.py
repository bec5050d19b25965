"""Client-side credential discovery.

Embedded browser contexts drop third-party cookies without notice, so the
client cannot assume its session cookie survived. Resolution tries, in order:

1. the ambient cookie,
2. a bearer token recovered from the credential vault,
3. a full embedded handshake, which is the most expensive and user-visible.

Only one resolution runs at a time per resolver; concurrent callers share the
result of the one in flight.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from identitygate.client.bridge import EmbeddedClientBridge
from identitygate.client.vault import CredentialVault
from identitygate.logging import fingerprint, get_logger

logger = get_logger(__name__)

PROFILE_PATH = "/v1/auth/profile"
HANDSHAKE_PATH = "/v1/auth/handshake"
LOGOUT_PATH = "/v1/auth/logout"

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.5


class ResolutionState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    UNAUTHENTICATED = "unauthenticated"


class CredentialChannel(str, Enum):
    COOKIE = "cookie"
    STORED_BEARER = "stored_bearer"
    HANDSHAKE = "handshake"


class ErrorKind(str, Enum):
    NEEDS_REAUTH = "needs_reauth"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class Unauthenticated:
    pass


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Authenticated:
    principal: Dict[str, Any]
    channel: CredentialChannel


@dataclass(frozen=True)
class Error:
    kind: ErrorKind
    message: str = ""


AuthView = Union[Unauthenticated, Pending, Authenticated, Error]


class TransientFailure(Exception):
    """The server could not be reached after every retry."""


class NotAuthenticated(Exception):
    def __init__(self, view: AuthView) -> None:
        super().__init__(type(view).__name__)
        self.view = view


def _rejection_reason(response: httpx.Response) -> str:
    try:
        return str(response.json()["error"]["details"]["reason"])
    except (ValueError, KeyError, TypeError):
        return "invalid"


def _payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        # Captive portals and proxies answer 200 with HTML
        raise TransientFailure(
            f"unparseable response body (status {response.status_code})"
        ) from exc
    data = body.get("data") if isinstance(body, dict) else None
    return data if isinstance(data, dict) else {}


class ClientCredentialResolver:
    def __init__(
        self,
        base_url: str,
        bridge: EmbeddedClientBridge,
        vault: Optional[CredentialVault] = None,
        *,
        tenant_hint: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.bridge = bridge
        self.vault = vault or CredentialVault(bridge)
        self.tenant_hint = tenant_hint
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

        self.state = ResolutionState.UNRESOLVED
        self.channel: Optional[CredentialChannel] = None
        self._bearer: Optional[str] = None
        self._view: AuthView = Unauthenticated()
        self._is_resolving = False
        self._inflight: Optional[asyncio.Future] = None

    @property
    def view(self) -> AuthView:
        if self._is_resolving:
            return Pending()
        return self._view

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        bearer: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send with bounded retries; 5xx, 429 and transport errors are transient."""
        headers = dict(kwargs.pop("headers", None) or {})
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.request(method, path, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code < 500 and response.status_code != 429:
                    return response
                last_error = f"status {response.status_code}"
            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "client_request_retry",
                    method=method,
                    path=path,
                    attempt=attempt,
                    delay=delay,
                    error=last_error,
                )
                await self._sleep(delay)
        logger.error(
            "client_request_failed",
            method=method,
            path=path,
            attempts=self.max_attempts,
            error=last_error,
        )
        raise TransientFailure(f"{method} {path} failed: {last_error}")

    def _settle(
        self,
        state: ResolutionState,
        view: AuthView,
        *,
        channel: Optional[CredentialChannel] = None,
        bearer: Optional[str] = None,
    ) -> AuthView:
        self.state = state
        self.channel = channel
        self._bearer = bearer
        self._view = view
        return view

    def _authenticated(
        self, response: httpx.Response, channel: CredentialChannel, bearer: Optional[str]
    ) -> AuthView:
        principal = _payload(response).get("principal") or {}
        logger.info("client_session_resolved", channel=channel.value)
        return self._settle(
            ResolutionState.RESOLVED,
            Authenticated(principal=principal, channel=channel),
            channel=channel,
            bearer=bearer,
        )

    async def _discover(self) -> AuthView:
        revoked = False

        response = await self._send("GET", PROFILE_PATH)
        if response.status_code == 200:
            return self._authenticated(response, CredentialChannel.COOKIE, None)
        if response.status_code != 401:
            return self._settle(
                ResolutionState.UNAUTHENTICATED,
                Error(ErrorKind.NEEDS_REAUTH, f"profile returned {response.status_code}"),
            )
        if _rejection_reason(response) == "revoked":
            revoked = True
            await self.vault.wipe()

        if not revoked:
            rejected: set[str] = set()
            for entry in await self.vault.entries():
                if entry.token in rejected:
                    await self.vault.discard(entry.tier)
                    continue
                response = await self._send("GET", PROFILE_PATH, bearer=entry.token)
                if response.status_code == 200:
                    view = self._authenticated(
                        response, CredentialChannel.STORED_BEARER, entry.token
                    )
                    if rejected:
                        # Refill the tiers that only held stale tokens
                        await self.vault.write(entry.token)
                    return view
                reason = _rejection_reason(response)
                logger.info(
                    "client_stored_bearer_rejected",
                    tier=entry.tier,
                    reason=reason,
                    token_fingerprint=fingerprint(entry.token),
                )
                if reason == "revoked":
                    revoked = True
                    await self.vault.wipe()
                    break
                rejected.add(entry.token)
                await self.vault.discard(entry.tier)

        if self.bridge.initialized and self.bridge.init_data:
            body: Dict[str, Any] = {"init_data": self.bridge.init_data}
            if self.tenant_hint:
                body["tenant_hint"] = self.tenant_hint
            response = await self._send("POST", HANDSHAKE_PATH, json=body)
            if response.status_code == 200:
                token = _payload(response).get("token")
                if token:
                    await self.vault.write(token)
                return self._authenticated(response, CredentialChannel.HANDSHAKE, token)
            logger.warning(
                "client_handshake_rejected",
                status_code=response.status_code,
                reason=_rejection_reason(response),
            )

        if revoked:
            return self._settle(
                ResolutionState.UNAUTHENTICATED,
                Error(ErrorKind.NEEDS_REAUTH, "session revoked"),
            )
        return self._settle(ResolutionState.UNAUTHENTICATED, Unauthenticated())

    async def resolve(self, *, force: bool = False) -> AuthView:
        if self._is_resolving:
            assert self._inflight is not None
            return await asyncio.shield(self._inflight)
        if not force and self.state in (
            ResolutionState.RESOLVED,
            ResolutionState.UNAUTHENTICATED,
        ):
            return self._view

        self._is_resolving = True
        self.state = ResolutionState.RESOLVING
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight = future
        try:
            try:
                view = await self._discover()
            except TransientFailure as exc:
                # Stay unresolved so the next call tries again
                view = self._settle(
                    ResolutionState.UNRESOLVED, Error(ErrorKind.TRANSIENT, str(exc))
                )
            except asyncio.CancelledError:
                self.state = ResolutionState.UNRESOLVED
                future.cancel()
                raise
            except Exception as exc:
                self.state = ResolutionState.UNRESOLVED
                future.set_exception(exc)
                # Waiters re-raise it; mark it retrieved for when there are none
                future.exception()
                raise
            future.set_result(view)
            return view
        finally:
            self._is_resolving = False
            self._inflight = None

    def invalidate(self) -> None:
        """Forget the resolved channel; the next call re-runs discovery."""
        if self._is_resolving:
            return
        self._settle(ResolutionState.UNRESOLVED, Unauthenticated())

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request over the remembered channel.

        An ``expired`` rejection triggers one silent re-resolution and retry;
        ``revoked`` wipes stored credentials and ends the session.
        """
        view = await self.resolve()
        if not isinstance(view, Authenticated):
            raise NotAuthenticated(view)
        response = await self._send(method, path, bearer=self._bearer, **kwargs)
        if response.status_code != 401:
            return response

        reason = _rejection_reason(response)
        if reason == "revoked":
            await self.vault.wipe()
            self._settle(
                ResolutionState.UNAUTHENTICATED,
                Error(ErrorKind.NEEDS_REAUTH, "session revoked"),
            )
            return response
        if reason != "expired":
            return response

        if self.channel in (CredentialChannel.STORED_BEARER, CredentialChannel.HANDSHAKE):
            await self.vault.wipe()
        self.invalidate()
        view = await self.resolve()
        if not isinstance(view, Authenticated):
            return response
        return await self._send(method, path, bearer=self._bearer, **kwargs)

    async def logout(self, *, revoke_all: bool = False) -> None:
        try:
            await self._send(
                "POST", LOGOUT_PATH, bearer=self._bearer, json={"revoke_all": revoke_all}
            )
        except TransientFailure as exc:
            # Local credentials are still cleared below
            logger.warning("client_logout_request_failed", error=str(exc))
        await self.vault.wipe()
        self._client.cookies.clear()
        self._settle(ResolutionState.UNAUTHENTICATED, Unauthenticated())
        logger.info("client_logged_out", revoke_all=revoke_all)
