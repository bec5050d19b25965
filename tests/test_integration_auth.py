"""End-to-end tests for the /v1/auth endpoints."""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from conftest import make_init_data
from identitygate import app as app_module
from identitygate.service.runtime import get_runtime, reset_runtime_for_tests


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _cookie_value(response, name="ig_session"):
    for header in response.headers.get_list("set-cookie"):
        first = header.split(";", 1)[0]
        key, _, value = first.partition("=")
        if key == name:
            return value, header
    return None, None


def _handshake(client, user_id=777, **kwargs):
    return client.post("/v1/auth/handshake", json={"init_data": make_init_data(user_id), **kwargs})


class TestHandshake:
    def test_handshake_returns_session_and_sets_cookie(self, client):
        response = _handshake(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["principal"]["role"] == "user"
        cookie, header = _cookie_value(response)
        assert cookie == body["data"]["token"]
        assert "SameSite=None" in header and "Partitioned" in header
        assert f"Max-Age={7 * 24 * 3600}" in header
        assert response.headers["X-Request-ID"]

    def test_bad_signature_is_401_invalid(self, client):
        response = client.post(
            "/v1/auth/handshake",
            json={"init_data": make_init_data(1, bot_token="999:not-ours")},
        )
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"] == {"reason": "invalid"}
        assert response.headers["WWW-Authenticate"].startswith("Bearer")

    def test_unknown_fields_are_rejected(self, client):
        response = client.post(
            "/v1/auth/handshake",
            json={"init_data": make_init_data(1), "role": "super_admin"},
        )
        assert response.status_code == 422

    def test_rate_limited(self, client, monkeypatch):
        monkeypatch.setenv("HANDSHAKE_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()
        assert _handshake(client).status_code == 200
        assert _handshake(client).status_code == 200
        response = _handshake(client)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

    def test_disabled_without_bot_token(self, client, monkeypatch):
        monkeypatch.setenv("BOT_TOKEN", "")
        reset_runtime_for_tests()
        response = _handshake(client)
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "unavailable"


class TestProfile:
    def test_cookie_and_bearer_both_work(self, client):
        token = _handshake(client).json()["data"]["token"]

        by_cookie = client.get("/v1/auth/profile", headers={"Cookie": f"ig_session={token}"})
        by_bearer = client.get("/v1/auth/profile", headers={"Authorization": f"Bearer {token}"})

        assert by_cookie.status_code == by_bearer.status_code == 200
        assert by_cookie.json()["data"]["principal"]["id"] == by_bearer.json()["data"]["principal"]["id"]
        assert by_bearer.json()["data"]["source"] == "token"
        assert by_bearer.json()["data"]["session_expires_at"]

    def test_missing_credentials(self, client):
        response = client.get("/v1/auth/profile")
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "invalid"

    def test_garbage_token_is_invalid(self, client):
        response = client.get("/v1/auth/profile", headers={"Authorization": "Bearer x.y.z"})
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "invalid"

    def test_spoofed_identity_headers_are_ignored(self, client):
        principal_id = _handshake(client).json()["data"]["principal"]["id"]
        stamp = get_runtime().store.get_principal(principal_id).security_stamp
        response = client.get(
            "/v1/auth/profile",
            headers={
                "X-Identity-Id": principal_id,
                "X-Identity-Role": "super_admin",
                "X-Identity-Stamp": stamp,
            },
        )
        assert response.status_code == 401


class TestLogout:
    def test_logout_clears_cookie(self, client):
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert response.json()["data"] == {
            "clear_stored_credentials": True,
            "sessions_revoked": False,
        }
        value, header = _cookie_value(response)
        assert value == ""
        assert "Max-Age=0" in header

    def test_revoke_all_is_a_remote_wipe(self, client):
        first = _handshake(client).json()["data"]["token"]
        second = _handshake(client).json()["data"]["token"]

        response = client.post(
            "/v1/auth/logout",
            json={"revoke_all": True},
            headers={"Authorization": f"Bearer {first}"},
        )
        assert response.json()["data"]["sessions_revoked"] is True

        for token in (first, second):
            rejected = client.get("/v1/auth/profile", headers={"Authorization": f"Bearer {token}"})
            assert rejected.status_code == 401
            assert rejected.json()["error"]["details"]["reason"] == "revoked"

        third = _handshake(client).json()["data"]["token"]
        assert client.get("/v1/auth/profile", headers={"Authorization": f"Bearer {third}"}).status_code == 200

    def test_revoke_all_requires_session(self, client):
        response = client.post("/v1/auth/logout", json={"revoke_all": True})
        assert response.status_code == 401


class TestMagicLinks:
    def _staff_token(self, client):
        body = _handshake(client, user_id=1).json()["data"]
        runtime = get_runtime()
        principal = runtime.store.get_principal(body["principal"]["id"])
        runtime.store.update_principal_role(principal.id, "platform_support", None, "staff-stamp")
        return runtime.auth.issuer.issue(runtime.store.get_principal(principal.id)).token

    def test_issue_and_redeem(self, client):
        target = _handshake(client, user_id=2).json()["data"]["principal"]["id"]
        staff = self._staff_token(client)

        issued = client.post(
            "/v1/auth/magic",
            json={"principal_id": target},
            headers={"Authorization": f"Bearer {staff}"},
        )
        assert issued.status_code == 201
        url = issued.json()["data"]["url"]
        assert url.startswith("https://id.example.test/v1/auth/magic?token=")
        token = parse_qs(urlparse(url).query)["token"][0]

        redeemed = client.get("/v1/auth/magic", params={"token": token}, follow_redirects=False)
        assert redeemed.status_code == 303
        assert redeemed.headers["location"] == "/"
        session, _ = _cookie_value(redeemed)
        profile = client.get("/v1/auth/profile", headers={"Authorization": f"Bearer {session}"})
        assert profile.json()["data"]["principal"]["id"] == target

        replay = client.get("/v1/auth/magic", params={"token": token}, follow_redirects=False)
        assert replay.status_code == 303
        assert replay.headers["location"] == "/login?error=link"
        assert _cookie_value(replay) == (None, None)

    def test_unknown_token_redirects_to_failure(self, client):
        response = client.get("/v1/auth/magic", params={"token": "nope"}, follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login?error=link"

    @pytest.mark.parametrize("params", [{"token": "a" * 300}, {}])
    def test_mangled_link_redirects_to_failure(self, client, params):
        response = client.get("/v1/auth/magic", params=params, follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login?error=link"
        assert _cookie_value(response) == (None, None)

    def test_regular_user_cannot_issue(self, client):
        body = _handshake(client, user_id=3).json()["data"]
        response = client.post(
            "/v1/auth/magic",
            json={"principal_id": body["principal"]["id"]},
            headers={"Authorization": f"Bearer {body['token']}"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "memory"
    assert body["checks"]["cache"]["status"] == "not_configured"
