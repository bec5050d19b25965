"""MemoryStore persistence and record isolation."""

from datetime import datetime, timedelta, timezone

import pytest

from identitygate.storage.common import hash_magic_token
from identitygate.storage.errors import ConstraintViolation
from identitygate.storage.memory import MemoryStore


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    principal = store.create_principal(" 555 ", role="merchant", tenant_id="m_1", meta={"k": "v"})
    expires = datetime.now(timezone.utc) + timedelta(minutes=5)
    store.create_magic_token(principal.id, hash_magic_token("tok"), expires)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    again = reloaded.get_principal_by_external_id("555")
    assert again.id == principal.id
    assert again.role == "merchant"
    assert again.meta == {"k": "v"}
    assert again.security_stamp == principal.security_stamp
    assert reloaded.consume_magic_token(hash_magic_token("tok"), datetime.now(timezone.utc)) == principal.id


def test_corrupt_snapshot_starts_empty(tmp_path):
    state = tmp_path / "state"
    state.mkdir()
    (state / "identity_store.json").write_text("{not json")
    store = MemoryStore(fs_root=str(tmp_path))
    assert store.principals == {}


def test_returned_records_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    principal = store.create_principal("1")
    principal.role = "super_admin"
    assert store.get_principal(principal.id).role == "user"


def test_duplicate_external_id(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.create_principal("1")
    with pytest.raises(ConstraintViolation):
        store.create_principal("1")


def test_role_update_rotates_stamp_and_skips_deleted(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    principal = store.create_principal("1")
    updated = store.update_principal_role(principal.id, "merchant", "m_9", "new-stamp")
    assert (updated.role, updated.tenant_id, updated.security_stamp) == ("merchant", "m_9", "new-stamp")

    store.soft_delete_principal(principal.id)
    assert store.update_principal_role(principal.id, "user", None, "again") is None
    record = store.get_stamp_record(principal.id)
    assert record.deleted is True
    assert record.stamp == "new-stamp"
    assert store.soft_delete_principal(principal.id) is False


def test_magic_token_needs_existing_principal(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    with pytest.raises(ConstraintViolation):
        store.create_magic_token("missing", "h", datetime.now(timezone.utc))
