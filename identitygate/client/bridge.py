"""Embedded client bridge and credential storage backends.

The host shell exposes device storage through a bridge object whose
capabilities depend on its version. Nothing here is global: callers build an
``EmbeddedClientBridge`` at startup and hand it to the resolver, which keeps
tests free to pass fakes.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

from cryptography.fernet import Fernet, InvalidToken

from identitygate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StorageResult:
    """Outcome of one storage call. A missing key is ``ok`` with no value."""

    ok: bool
    value: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[str] = None) -> "StorageResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "StorageResult":
        return cls(ok=False, error=error)


class CredentialStorage(Protocol):
    name: str

    async def get(self, key: str) -> StorageResult: ...

    async def set(self, key: str, value: str) -> StorageResult: ...

    async def remove(self, key: str) -> StorageResult: ...


def _parse_version(version: str) -> Tuple[int, ...]:
    parts = []
    for chunk in str(version).split("."):
        digits = "".join(ch for ch in chunk if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


@dataclass
class EmbeddedClientBridge:
    initialized: bool = False
    version: str = "0.0"
    init_data: Optional[str] = None
    secure_storage: Optional[CredentialStorage] = None
    cloud_storage: Optional[CredentialStorage] = None

    def is_version_at_least(self, minimum: str) -> bool:
        current = _parse_version(self.version)
        wanted = _parse_version(minimum)
        width = max(len(current), len(wanted))
        current += (0,) * (width - len(current))
        wanted += (0,) * (width - len(wanted))
        return current >= wanted


class InMemoryCredentialStorage:
    """Process-local storage; used when the host offers nothing better."""

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._values: Dict[str, str] = {}

    async def get(self, key: str) -> StorageResult:
        return StorageResult.success(self._values.get(key))

    async def set(self, key: str, value: str) -> StorageResult:
        self._values[key] = value
        return StorageResult.success(value)

    async def remove(self, key: str) -> StorageResult:
        self._values.pop(key, None)
        return StorageResult.success()


class FileCredentialStorage:
    """Local file tier, optionally encrypted with Fernet.

    The whole key/value map is rewritten atomically on every change. A file
    that cannot be decrypted is treated as empty so a rotated key never locks
    the client out; the next write replaces it.
    """

    name = "local"

    def __init__(self, path: str | Path, *, key_material: Optional[str] = None) -> None:
        self.path = Path(path)
        self._cipher = Fernet(self._derive_cipher_key(key_material)) if key_material else None

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _read_all(self) -> Dict[str, str]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return {}
        if self._cipher is not None:
            try:
                raw = self._cipher.decrypt(raw)
            except InvalidToken:
                logger.warning("credential_file_undecryptable", path=str(self.path))
                return {}
        try:
            data = json.loads(raw.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("credential_file_corrupt", path=str(self.path))
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _write_all(self, values: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(values).encode()
        if self._cipher is not None:
            payload = self._cipher.encrypt(payload)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _set_sync(self, key: str, value: Optional[str]) -> None:
        values = self._read_all()
        if value is None:
            if key not in values:
                return
            values.pop(key)
        else:
            values[key] = value
        self._write_all(values)

    async def get(self, key: str) -> StorageResult:
        try:
            values = await asyncio.to_thread(self._read_all)
        except OSError as exc:
            return StorageResult.failure(str(exc))
        return StorageResult.success(values.get(key))

    async def set(self, key: str, value: str) -> StorageResult:
        try:
            await asyncio.to_thread(self._set_sync, key, value)
        except OSError as exc:
            return StorageResult.failure(str(exc))
        return StorageResult.success(value)

    async def remove(self, key: str) -> StorageResult:
        try:
            await asyncio.to_thread(self._set_sync, key, None)
        except OSError as exc:
            return StorageResult.failure(str(exc))
        return StorageResult.success()
