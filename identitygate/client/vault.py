from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional

from identitygate.client.bridge import CredentialStorage, EmbeddedClientBridge, StorageResult
from identitygate.logging import get_logger

logger = get_logger(__name__)

SESSION_TOKEN_KEY = "ig_session_token"
SECURE_STORAGE_MIN_VERSION = "8.0"
CLOUD_STORAGE_MIN_VERSION = "6.9"
STORAGE_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class VaultEntry:
    token: str
    tier: str


class CredentialVault:
    """Stores the bearer token in every storage tier the host offers.

    Tiers in order: device secure storage, host cloud storage, local file.
    Hardware-backed APIs can hang on some devices, so every call is bounded
    and a timeout simply moves on to the next tier.
    """

    def __init__(
        self,
        bridge: EmbeddedClientBridge,
        local: Optional[CredentialStorage] = None,
        *,
        key: str = SESSION_TOKEN_KEY,
        timeout_seconds: float = STORAGE_TIMEOUT_SECONDS,
    ) -> None:
        self.bridge = bridge
        self.local = local
        self.key = key
        self.timeout_seconds = timeout_seconds

    def tiers(self) -> List[CredentialStorage]:
        tiers: List[CredentialStorage] = []
        bridge = self.bridge
        if bridge.initialized:
            if bridge.secure_storage is not None and bridge.is_version_at_least(
                SECURE_STORAGE_MIN_VERSION
            ):
                tiers.append(bridge.secure_storage)
            if bridge.cloud_storage is not None and bridge.is_version_at_least(
                CLOUD_STORAGE_MIN_VERSION
            ):
                tiers.append(bridge.cloud_storage)
        if self.local is not None:
            tiers.append(self.local)
        return tiers

    async def _call(self, tier: CredentialStorage, op: str, *args: str) -> StorageResult:
        method = getattr(tier, op)
        try:
            result = await asyncio.wait_for(method(self.key, *args), self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("credential_storage_timeout", tier=tier.name, op=op)
            return StorageResult.failure("timeout")
        except Exception as exc:
            # Host storage adapters are third-party; any failure means "try the next tier"
            logger.warning(
                "credential_storage_error",
                tier=tier.name,
                op=op,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return StorageResult.failure(str(exc))
        if not result.ok:
            logger.warning("credential_storage_failed", tier=tier.name, op=op, error=result.error)
        return result

    async def entries(self) -> List[VaultEntry]:
        """Every stored token in tier order; tiers may hold different tokens."""
        found: List[VaultEntry] = []
        for tier in self.tiers():
            result = await self._call(tier, "get")
            if result.ok and result.value:
                found.append(VaultEntry(token=result.value, tier=tier.name))
        return found

    async def write(self, token: str) -> List[str]:
        """Persist to every tier so another device can recover the session.

        Returns the names of the tiers that accepted the write.
        """
        stored: List[str] = []
        for tier in self.tiers():
            result = await self._call(tier, "set", token)
            if result.ok:
                stored.append(tier.name)
        if stored:
            logger.info("credential_stored", tiers=stored)
        else:
            logger.warning("credential_store_unavailable", tiers=[t.name for t in self.tiers()])
        return stored

    async def discard(self, tier_name: str) -> None:
        for tier in self.tiers():
            if tier.name == tier_name:
                await self._call(tier, "remove")
                return

    async def wipe(self) -> int:
        """Remove the token from every tier, returning how many removals succeeded."""
        removed = 0
        for tier in self.tiers():
            result = await self._call(tier, "remove")
            if result.ok:
                removed += 1
        logger.info("credential_vault_wiped", tiers_cleared=removed)
        return removed
