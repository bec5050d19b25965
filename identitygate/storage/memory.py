from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from identitygate.logging import get_logger
from identitygate.storage.common import normalize_external_id
from identitygate.storage.errors import ConstraintViolation
from identitygate.storage.models import MagicTokenRecord, Principal, StampRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process identity store persisted to a JSON snapshot.

    Suitable for development and tests. Every mutation happens under a single
    RLock so the magic-token consume is a true check-and-set.
    """

    def __init__(self, fs_root: str = "/tmp/identitygate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._by_external_id: Dict[str, str] = {}
        self.magic_tokens: Dict[str, MagicTokenRecord] = {}
        # RLock allows nested acquisition from helper methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- principals -------------------------------------------------------

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_external_id(self, external_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._by_external_id.get(normalize_external_id(external_id))
            if not principal_id:
                return None
            return self.get_principal(principal_id)

    def create_principal(
        self,
        external_id: str,
        *,
        role: str = "user",
        tenant_id: Optional[str] = None,
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Principal:
        external_id = normalize_external_id(external_id)
        with self._data_lock:
            if external_id in self._by_external_id:
                raise ConstraintViolation(
                    "external id already registered", {"field": "external_id"}
                )
            principal = Principal.new(
                external_id,
                role=role,
                tenant_id=tenant_id,
                display_name=display_name,
                username=username,
                meta=dict(meta) if meta else {},
            )
            self.principals[principal.id] = principal
            self._by_external_id[external_id] = principal.id
            self._persist_state()
            return replace(principal)

    def update_principal_profile(
        self,
        principal_id: str,
        *,
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if display_name is not None:
                principal.display_name = display_name
            if username is not None:
                principal.username = username
            if meta:
                principal.meta = {**(principal.meta or {}), **meta}
            principal.updated_at = _utcnow()
            self._persist_state()
            return replace(principal)

    def get_stamp_record(self, principal_id: str) -> Optional[StampRecord]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            return StampRecord(stamp=principal.security_stamp, deleted=principal.is_deleted)

    def rotate_security_stamp(self, principal_id: str, new_stamp: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return False
            principal.security_stamp = new_stamp
            principal.updated_at = _utcnow()
            self._persist_state()
            return True

    def update_principal_role(
        self, principal_id: str, role: str, tenant_id: Optional[str], new_stamp: str
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.is_deleted:
                return None
            principal.role = role
            principal.tenant_id = tenant_id
            principal.security_stamp = new_stamp
            principal.updated_at = _utcnow()
            self._persist_state()
            return replace(principal)

    def soft_delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.is_deleted:
                return False
            principal.deleted_at = _utcnow()
            principal.updated_at = principal.deleted_at
            self._persist_state()
            return True

    # -- magic tokens -----------------------------------------------------

    def create_magic_token(
        self, principal_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation("principal not found", {"field": "principal_id"})
            if token_hash in self.magic_tokens:
                raise ConstraintViolation("magic token collision", {"field": "token"})
            self.magic_tokens[token_hash] = MagicTokenRecord(
                token_hash=token_hash, principal_id=principal_id, expires_at=expires_at
            )
            self._persist_state()

    def consume_magic_token(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._data_lock:
            record = self.magic_tokens.get(token_hash)
            if record is None or record.used or record.expires_at <= now:
                return None
            record.used = True
            record.used_at = now
            self._persist_state()
            return record.principal_id

    def purge_expired_magic_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, record in self.magic_tokens.items()
                if record.used or record.expires_at <= now
            ]
            for token_hash in stale:
                self.magic_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence ------------------------------------------------------

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "external_id": principal.external_id,
            "role": principal.role,
            "tenant_id": principal.tenant_id,
            "security_stamp": principal.security_stamp,
            "display_name": principal.display_name,
            "username": principal.username,
            "created_at": self._serialize_datetime(principal.created_at),
            "updated_at": self._serialize_datetime(principal.updated_at),
            "deleted_at": self._serialize_datetime(principal.deleted_at),
            "meta": principal.meta or {},
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=data["id"],
            external_id=data["external_id"],
            role=data.get("role", "user"),
            tenant_id=data.get("tenant_id"),
            security_stamp=data["security_stamp"],
            display_name=data.get("display_name"),
            username=data.get("username"),
            created_at=self._deserialize_datetime(data.get("created_at")) or _utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or _utcnow(),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            meta=data.get("meta") or {},
        )

    def _serialize_magic_token(self, record: MagicTokenRecord) -> dict:
        return {
            "token_hash": record.token_hash,
            "principal_id": record.principal_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "used": record.used,
            "created_at": self._serialize_datetime(record.created_at),
            "used_at": self._serialize_datetime(record.used_at),
        }

    def _deserialize_magic_token(self, data: dict) -> MagicTokenRecord:
        return MagicTokenRecord(
            token_hash=data["token_hash"],
            principal_id=data["principal_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=bool(data.get("used", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or _utcnow(),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "magic_tokens": [
                self._serialize_magic_token(m) for m in self.magic_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly rather than exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        principals: List[Principal] = [
            self._deserialize_principal(p) for p in data.get("principals", [])
        ]
        self.principals = {p.id: p for p in principals}
        self._by_external_id = {p.external_id: p.id for p in principals}
        self.magic_tokens = {
            m["token_hash"]: self._deserialize_magic_token(m)
            for m in data.get("magic_tokens", [])
        }
        return True
