"""Tiered credential storage on the client."""

import asyncio

from identitygate.client.bridge import (
    EmbeddedClientBridge,
    FileCredentialStorage,
    InMemoryCredentialStorage,
    StorageResult,
)
from identitygate.client.vault import SESSION_TOKEN_KEY, CredentialVault


class HangingStorage:
    name = "secure"

    async def get(self, key):
        await asyncio.sleep(10)
        return StorageResult.success("never")

    async def set(self, key, value):
        await asyncio.sleep(10)
        return StorageResult.success(value)

    async def remove(self, key):
        await asyncio.sleep(10)
        return StorageResult.success()


class BrokenStorage(InMemoryCredentialStorage):
    async def set(self, key, value):
        raise RuntimeError("native bridge error")


def _tier_names(vault):
    return [t.name for t in vault.tiers()]


def test_version_gates_tiers():
    secure = InMemoryCredentialStorage("secure")
    cloud = InMemoryCredentialStorage("cloud")
    local = InMemoryCredentialStorage("local")

    def vault_for(version, initialized=True):
        bridge = EmbeddedClientBridge(
            initialized=initialized, version=version, secure_storage=secure, cloud_storage=cloud
        )
        return CredentialVault(bridge, local)

    assert _tier_names(vault_for("8.0")) == ["secure", "cloud", "local"]
    assert _tier_names(vault_for("7.10")) == ["cloud", "local"]
    assert _tier_names(vault_for("6.9")) == ["cloud", "local"]
    assert _tier_names(vault_for("6.2")) == ["local"]
    assert _tier_names(vault_for("9.1", initialized=False)) == ["local"]


def test_version_comparison():
    bridge = EmbeddedClientBridge(version="7.10")
    assert bridge.is_version_at_least("7.2")
    assert bridge.is_version_at_least("7.10.0")
    assert not bridge.is_version_at_least("8")


async def test_hanging_tier_falls_through_to_next():
    local = InMemoryCredentialStorage("local")
    await local.set(SESSION_TOKEN_KEY, "from-local")
    bridge = EmbeddedClientBridge(initialized=True, version="8.0", secure_storage=HangingStorage())
    vault = CredentialVault(bridge, local, timeout_seconds=0.01)

    entries = await vault.entries()

    assert [(e.token, e.tier) for e in entries] == [("from-local", "local")]
    assert await vault.write("new") == ["local"]


async def test_failing_write_moves_to_next_tier():
    broken = BrokenStorage("secure")
    cloud = InMemoryCredentialStorage("cloud")
    bridge = EmbeddedClientBridge(
        initialized=True, version="8.0", secure_storage=broken, cloud_storage=cloud
    )
    vault = CredentialVault(bridge)
    assert await vault.write("tok") == ["cloud"]
    assert (await cloud.get(SESSION_TOKEN_KEY)).value == "tok"


async def test_absent_value_is_normal():
    vault = CredentialVault(EmbeddedClientBridge(), InMemoryCredentialStorage("local"))
    assert await vault.entries() == []
    assert await vault.wipe() == 1


async def test_encrypted_file_storage(tmp_path):
    path = tmp_path / "creds.bin"
    storage = FileCredentialStorage(path, key_material="device-key-material")

    assert (await storage.get(SESSION_TOKEN_KEY)).value is None
    assert (await storage.set(SESSION_TOKEN_KEY, "secret-token")).ok
    assert b"secret-token" not in path.read_bytes()
    assert (await storage.get(SESSION_TOKEN_KEY)).value == "secret-token"

    other_key = FileCredentialStorage(path, key_material="different")
    assert (await other_key.get(SESSION_TOKEN_KEY)).value is None

    assert (await storage.remove(SESSION_TOKEN_KEY)).ok
    assert (await storage.get(SESSION_TOKEN_KEY)).value is None


async def test_write_reaches_every_tier():
    secure = InMemoryCredentialStorage("secure")
    cloud = InMemoryCredentialStorage("cloud")
    local = InMemoryCredentialStorage("local")
    await cloud.set(SESSION_TOKEN_KEY, "older")
    bridge = EmbeddedClientBridge(
        initialized=True, version="8.0", secure_storage=secure, cloud_storage=cloud
    )
    vault = CredentialVault(bridge, local)

    assert [e.tier for e in await vault.entries()] == ["cloud"]
    assert await vault.write("tok") == ["secure", "cloud", "local"]

    entries = await vault.entries()
    assert [(e.token, e.tier) for e in entries] == [
        ("tok", "secure"),
        ("tok", "cloud"),
        ("tok", "local"),
    ]
