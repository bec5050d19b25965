"""Client credential discovery against a mocked server."""

import asyncio
import gc

import httpx
import pytest

from identitygate.client.bridge import EmbeddedClientBridge, InMemoryCredentialStorage
from identitygate.client.resolver import (
    Authenticated,
    ClientCredentialResolver,
    CredentialChannel,
    Error,
    ErrorKind,
    NotAuthenticated,
    Pending,
    ResolutionState,
    Unauthenticated,
)
from identitygate.client.vault import SESSION_TOKEN_KEY, CredentialVault

PRINCIPAL = {"id": "p1", "role": "user"}


def _ok(data):
    return httpx.Response(200, json={"status": "ok", "data": data})


def _unauthorized(reason):
    return httpx.Response(
        401,
        json={
            "status": "error",
            "error": {"code": "unauthorized", "message": "no", "details": {"reason": reason}},
        },
    )


class FakeServer:
    """Minimal stand-in for the auth endpoints."""

    def __init__(self, *, cookie_reason=None, valid_bearers=(), bearer_reason="invalid",
                 handshake_token="hs-token", unavailable=False):
        self.cookie_reason = cookie_reason
        self.valid_bearers = set(valid_bearers)
        self.bearer_reason = bearer_reason
        self.handshake_token = handshake_token
        self.unavailable = unavailable
        self.calls = []

    def count(self, path):
        return sum(1 for _, p, _ in self.calls if p == path)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        auth = request.headers.get("authorization")
        self.calls.append((request.method, request.url.path, auth))
        if self.unavailable:
            return httpx.Response(503, json={"status": "error"})
        path = request.url.path
        if path == "/v1/auth/profile":
            if auth:
                token = auth.split(" ", 1)[1]
                if token in self.valid_bearers:
                    return _ok({"principal": PRINCIPAL})
                return _unauthorized(self.bearer_reason)
            if self.cookie_reason is None:
                return _ok({"principal": PRINCIPAL})
            return _unauthorized(self.cookie_reason)
        if path == "/v1/auth/handshake":
            # Yield so concurrent resolvers would overlap if not single-flighted
            await asyncio.sleep(0.01)
            self.valid_bearers.add(self.handshake_token)
            return _ok({"principal": PRINCIPAL, "token": self.handshake_token})
        if path == "/v1/auth/logout":
            return _ok({"clear_stored_credentials": True})
        if path == "/v1/things":
            if auth and auth.split(" ", 1)[1] in self.valid_bearers:
                return _ok({"things": []})
            return _unauthorized("expired")
        return httpx.Response(404)


class RecordingStorage(InMemoryCredentialStorage):
    def __init__(self, name="secure"):
        super().__init__(name)
        self.ops = []

    async def get(self, key):
        self.ops.append("get")
        return await super().get(key)

    async def set(self, key, value):
        self.ops.append("set")
        return await super().set(key, value)

    async def remove(self, key):
        self.ops.append("remove")
        return await super().remove(key)


def _resolver(server, *, init_data="signed-payload", stored=None, cloud=None, local=None):
    secure = RecordingStorage()
    if stored:
        secure._values[SESSION_TOKEN_KEY] = stored
    bridge = EmbeddedClientBridge(
        initialized=True,
        version="8.0",
        init_data=init_data,
        secure_storage=secure,
        cloud_storage=cloud,
    )
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    resolver = ClientCredentialResolver(
        "https://id.example.test",
        bridge,
        CredentialVault(bridge, local),
        transport=httpx.MockTransport(server),
        sleep=fake_sleep,
    )
    return resolver, secure, sleeps


async def test_valid_cookie_needs_nothing_else():
    server = FakeServer()
    resolver, secure, _ = _resolver(server, stored="stored-tok")

    view = await resolver.resolve()

    assert view == Authenticated(principal=PRINCIPAL, channel=CredentialChannel.COOKIE)
    assert resolver.state == ResolutionState.RESOLVED
    assert secure.ops == []
    assert server.count("/v1/auth/handshake") == 0
    await resolver.aclose()


async def test_stored_bearer_recovers_without_handshake():
    server = FakeServer(cookie_reason="invalid", valid_bearers={"stored-tok"})
    resolver, _, _ = _resolver(server, stored="stored-tok")

    view = await resolver.resolve()

    assert isinstance(view, Authenticated)
    assert view.channel == CredentialChannel.STORED_BEARER
    bearer_calls = [c for c in server.calls if c[2] == "Bearer stored-tok"]
    assert len(bearer_calls) == 1
    assert server.count("/v1/auth/handshake") == 0

    response = await resolver.request("GET", "/v1/things")
    assert response.status_code == 200
    assert server.calls[-1][2] == "Bearer stored-tok"
    await resolver.aclose()


async def test_concurrent_callers_share_one_handshake():
    server = FakeServer(cookie_reason="invalid")
    resolver, secure, _ = _resolver(server)

    views = await asyncio.gather(resolver.resolve(), resolver.resolve(), resolver.resolve())

    assert server.count("/v1/auth/handshake") == 1
    assert all(v == Authenticated(principal=PRINCIPAL, channel=CredentialChannel.HANDSHAKE) for v in views)
    assert secure._values[SESSION_TOKEN_KEY] == "hs-token"
    await resolver.aclose()


async def test_view_is_pending_while_resolving():
    server = FakeServer(cookie_reason="invalid")
    resolver, _, _ = _resolver(server)
    task = asyncio.create_task(resolver.resolve())
    await asyncio.sleep(0)
    assert resolver.view == Pending()
    await task
    assert isinstance(resolver.view, Authenticated)
    await resolver.aclose()


async def test_no_credentials_and_no_payload_is_unauthenticated():
    server = FakeServer(cookie_reason="invalid")
    resolver, _, _ = _resolver(server, init_data=None)

    assert await resolver.resolve() == Unauthenticated()
    assert resolver.state == ResolutionState.UNAUTHENTICATED
    # Settled; a second call does not hit the network again
    calls = len(server.calls)
    assert await resolver.resolve() == Unauthenticated()
    assert len(server.calls) == calls
    await resolver.aclose()


async def test_transient_failures_never_trigger_handshake():
    server = FakeServer(unavailable=True)
    resolver, _, sleeps = _resolver(server)

    view = await resolver.resolve()

    assert isinstance(view, Error) and view.kind == ErrorKind.TRANSIENT
    assert resolver.state == ResolutionState.UNRESOLVED
    assert server.count("/v1/auth/profile") == 3
    assert server.count("/v1/auth/handshake") == 0
    assert sleeps == [0.5, 1.0]
    await resolver.aclose()


async def test_revoked_session_wipes_vault():
    server = FakeServer(cookie_reason="revoked", valid_bearers={"stored-tok"})
    resolver, secure, _ = _resolver(server, init_data=None, stored="stored-tok")

    view = await resolver.resolve()

    assert view == Error(ErrorKind.NEEDS_REAUTH, "session revoked")
    assert SESSION_TOKEN_KEY not in secure._values
    assert not any(c[2] for c in server.calls)
    await resolver.aclose()


async def test_stale_stored_bearer_is_discarded_before_handshake():
    server = FakeServer(cookie_reason="invalid", bearer_reason="expired")
    resolver, secure, _ = _resolver(server, stored="old-tok")

    view = await resolver.resolve()

    assert view.channel == CredentialChannel.HANDSHAKE
    assert secure.ops == ["get", "remove", "set"]
    assert secure._values[SESSION_TOKEN_KEY] == "hs-token"
    await resolver.aclose()


async def test_expired_during_request_resolves_again_once():
    server = FakeServer(cookie_reason="invalid", valid_bearers={"stored-tok"})
    resolver, _, _ = _resolver(server, stored="stored-tok")
    await resolver.resolve()

    server.valid_bearers.clear()
    response = await resolver.request("GET", "/v1/things")

    assert response.status_code == 200
    assert server.count("/v1/auth/handshake") == 1
    assert server.calls[-1] == ("GET", "/v1/things", "Bearer hs-token")
    await resolver.aclose()


async def test_request_without_session_raises():
    server = FakeServer(cookie_reason="invalid")
    resolver, _, _ = _resolver(server, init_data=None)
    with pytest.raises(NotAuthenticated) as exc_info:
        await resolver.request("GET", "/v1/things")
    assert exc_info.value.view == Unauthenticated()
    await resolver.aclose()


async def test_logout_wipes_every_tier():
    server = FakeServer(cookie_reason="invalid", valid_bearers={"stored-tok"})
    cloud = RecordingStorage("cloud")
    local = RecordingStorage("local")
    cloud._values[SESSION_TOKEN_KEY] = "stored-tok"
    local._values[SESSION_TOKEN_KEY] = "stored-tok"
    resolver, secure, _ = _resolver(server, stored="stored-tok", cloud=cloud, local=local)
    await resolver.resolve()

    await resolver.logout(revoke_all=True)

    assert ("POST", "/v1/auth/logout", "Bearer stored-tok") in server.calls
    for tier in (secure, cloud, local):
        assert SESSION_TOKEN_KEY not in tier._values
    assert resolver.state == ResolutionState.UNAUTHENTICATED
    assert resolver.view == Unauthenticated()
    await resolver.aclose()


async def test_logout_clears_locally_when_server_unreachable():
    server = FakeServer(unavailable=True)
    resolver, secure, _ = _resolver(server, stored="stored-tok")
    await resolver.logout()
    assert SESSION_TOKEN_KEY not in secure._values
    assert resolver.state == ResolutionState.UNAUTHENTICATED
    await resolver.aclose()


async def test_handshake_token_is_saved_to_secure_and_cloud():
    server = FakeServer(cookie_reason="invalid")
    cloud = RecordingStorage("cloud")
    resolver, secure, _ = _resolver(server, cloud=cloud)

    view = await resolver.resolve()

    assert view.channel == CredentialChannel.HANDSHAKE
    assert secure._values[SESSION_TOKEN_KEY] == "hs-token"
    assert cloud._values[SESSION_TOKEN_KEY] == "hs-token"
    await resolver.aclose()


async def test_valid_token_in_lower_tier_avoids_handshake():
    server = FakeServer(cookie_reason="invalid", valid_bearers={"fresh"}, bearer_reason="expired")
    cloud = RecordingStorage("cloud")
    cloud._values[SESSION_TOKEN_KEY] = "fresh"
    resolver, secure, _ = _resolver(server, stored="stale", cloud=cloud)

    view = await resolver.resolve()

    assert view.channel == CredentialChannel.STORED_BEARER
    assert server.count("/v1/auth/handshake") == 0
    assert [c[2] for c in server.calls if c[2]] == ["Bearer stale", "Bearer fresh"]
    # The stale tier is refilled with the token that worked
    assert secure._values[SESSION_TOKEN_KEY] == "fresh"
    await resolver.aclose()


async def test_html_answer_is_transient_not_an_exception():
    async def captive_portal(request):
        return httpx.Response(200, text="<html>captive portal</html>")

    resolver, _, _ = _resolver(captive_portal)

    view = await resolver.resolve()

    assert isinstance(view, Error) and view.kind == ErrorKind.TRANSIENT
    assert resolver.state == ResolutionState.UNRESOLVED
    await resolver.aclose()


async def test_unexpected_failure_leaves_no_unretrieved_future():
    server = FakeServer(cookie_reason="invalid")
    resolver, _, _ = _resolver(server)
    reported = []
    asyncio.get_running_loop().set_exception_handler(lambda loop, ctx: reported.append(ctx))

    async def broken():
        raise RuntimeError("bug in discovery")

    resolver._discover = broken

    with pytest.raises(RuntimeError):
        await resolver.resolve()
    gc.collect()

    assert reported == []
    assert resolver.state == ResolutionState.UNRESOLVED
    await resolver.aclose()
