"""Issuance tiers and the stamp check performed on every verification."""

from datetime import timedelta

import pytest

from identitygate.config import DEFAULT_ELEVATED_ROLES
from identitygate.service.claims import ClaimsCodec
from identitygate.service.errors import RejectionReason, SessionRejected, ValidationError
from identitygate.service.issuer import TokenIssuer
from identitygate.service.revocation import RevocationStore
from identitygate.service.verifier import SessionVerifier
from identitygate.storage.memory import MemoryStore

SECRET = "verifier-test-secret-0123456789abcdef"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def codec():
    return ClaimsCodec(SECRET, issuer="identitygate", audience="identitygate-clients")


@pytest.fixture
def issuer(codec):
    return TokenIssuer(codec, elevated_roles=DEFAULT_ELEVATED_ROLES)


@pytest.fixture
def revocation(store):
    # No local caching so rotation is visible immediately in these tests
    return RevocationStore(store, ttl_seconds=0)


@pytest.fixture
def verifier(codec, revocation):
    return SessionVerifier(codec, revocation)


class TestTieredExpiry:
    @pytest.mark.parametrize("role", ["super_admin", "platform_manager", "platform_support", "merchant"])
    def test_elevated_roles_get_24_hours(self, store, issuer, codec, role):
        principal = store.create_principal("ext-" + role, role=role)
        issued = issuer.issue(principal)
        claims = codec.decode(issued.token)
        assert claims.lifetime_seconds == 24 * 3600
        assert issued.max_age_seconds == 24 * 3600

    def test_standard_role_gets_7_days(self, store, issuer, codec):
        principal = store.create_principal("ext-user")
        claims = codec.decode(issuer.issue(principal).token)
        assert claims.lifetime_seconds == 7 * 24 * 3600

    def test_custom_tiers(self, store, codec):
        issuer = TokenIssuer(
            codec,
            elevated_roles=["merchant"],
            elevated_ttl=timedelta(hours=1),
            standard_ttl=timedelta(days=2),
        )
        assert issuer.lifetime_for("merchant") == timedelta(hours=1)
        assert issuer.lifetime_for("platform_manager") == timedelta(days=2)

    def test_deleted_principal_cannot_be_issued(self, store, issuer):
        principal = store.create_principal("ext-gone")
        store.soft_delete_principal(principal.id)
        with pytest.raises(ValidationError):
            issuer.issue(store.get_principal(principal.id))


async def test_valid_token_verifies(store, issuer, verifier):
    principal = store.create_principal("ext-1", role="merchant", tenant_id="m_1")
    auth = await verifier.verify(issuer.issue(principal).token)
    assert auth.principal_id == principal.id
    assert auth.role == "merchant"
    assert auth.tenant_id == "m_1"
    assert auth.source == "token"


async def test_rotation_revokes_earlier_tokens_only(store, issuer, verifier, revocation):
    principal = store.create_principal("ext-rotate")
    first = issuer.issue(store.get_principal(principal.id))

    await revocation.rotate(principal.id)
    second = issuer.issue(store.get_principal(principal.id))

    with pytest.raises(SessionRejected) as exc_info:
        await verifier.verify(first.token)
    assert exc_info.value.reason == RejectionReason.REVOKED

    auth = await verifier.verify(second.token)
    assert auth.principal_id == principal.id


async def test_soft_deleted_principal_is_revoked(store, issuer, verifier):
    principal = store.create_principal("ext-del")
    issued = issuer.issue(principal)
    store.soft_delete_principal(principal.id)
    with pytest.raises(SessionRejected) as exc_info:
        await verifier.verify(issued.token)
    assert exc_info.value.reason == RejectionReason.REVOKED


async def test_unknown_principal_is_revoked(store, codec, issuer, verifier, tmp_path):
    other_store = MemoryStore(fs_root=str(tmp_path / "other"), persist=False)
    stranger = other_store.create_principal("ext-stranger")
    with pytest.raises(SessionRejected) as exc_info:
        await verifier.verify(issuer.issue(stranger).token)
    assert exc_info.value.reason == RejectionReason.REVOKED


async def test_malformed_token_short_circuits_before_stamp_lookup(codec):
    class ExplodingRevocation:
        async def current_stamp(self, principal_id):
            raise AssertionError("stamp lookup must not run for malformed tokens")

    verifier = SessionVerifier(codec, ExplodingRevocation())
    with pytest.raises(SessionRejected) as exc_info:
        await verifier.verify("garbage")
    assert exc_info.value.reason == RejectionReason.MALFORMED
