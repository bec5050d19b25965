"""Per-principal security stamps.

Rotating the stamp is the only revocation primitive: every token embeds the
stamp it was issued with, so one UPDATE invalidates all outstanding sessions
for a principal regardless of how many were issued.

Reads go through a short-TTL cache. A rotation evicts the entry in this
process and in the shared Redis cache; processes that only hold a local copy
keep honouring the old stamp until their entry lapses, so revocation is
bounded-delay (at most ``ttl_seconds``), not instantaneous.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from identitygate.logging import get_logger
from identitygate.service.errors import NotFoundError, TransientError
from identitygate.storage.common import IdentityStore
from identitygate.storage.errors import StoreUnavailable
from identitygate.storage.models import StampRecord, new_security_stamp
from identitygate.storage.redis_cache import RedisCache


class RevocationStore:
    def __init__(
        self,
        store: IdentityStore,
        cache: Optional[RedisCache] = None,
        *,
        ttl_seconds: int = 120,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._local: Dict[str, Tuple[StampRecord, float]] = {}
        self._local_lock = threading.Lock()
        self.logger = get_logger(__name__)

    def _local_get(self, principal_id: str) -> Optional[StampRecord]:
        with self._local_lock:
            entry = self._local.get(principal_id)
            if entry is None:
                return None
            record, expires_at = entry
            if expires_at <= self._clock():
                self._local.pop(principal_id, None)
                return None
            return record

    def _local_put(self, principal_id: str, record: StampRecord) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._local_lock:
            self._local[principal_id] = (record, self._clock() + self.ttl_seconds)

    async def current_stamp(self, principal_id: str) -> Optional[StampRecord]:
        """Return the current stamp and soft-delete flag, or None if unknown."""
        # With a shared cache the local layer is skipped so an eviction in Redis
        # is seen by every process.
        if self.cache is None:
            cached = self._local_get(principal_id)
            if cached is not None:
                return cached
        else:
            try:
                cached = await self.cache.get_stamp(principal_id)
            except (RedisError, OSError) as exc:
                self.logger.warning(
                    "stamp_cache_read_failed", principal_id=principal_id, error=str(exc)
                )
                cached = None
            if cached is not None:
                return cached

        try:
            record = self.store.get_stamp_record(principal_id)
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
        if record is None:
            return None

        if self.cache is None:
            self._local_put(principal_id, record)
        elif self.ttl_seconds > 0:
            try:
                await self.cache.set_stamp(principal_id, record, self.ttl_seconds)
            except (RedisError, OSError) as exc:
                self.logger.warning(
                    "stamp_cache_write_failed", principal_id=principal_id, error=str(exc)
                )
            else:
                record = await self._confirm_fill(principal_id, record)
        return record

    async def _confirm_fill(
        self, principal_id: str, record: StampRecord
    ) -> Optional[StampRecord]:
        """Re-read the store after filling the shared cache.

        A rotation in another process can land between our store read and our
        cache write, in which case its eviction ran before the stale fill.
        """
        try:
            latest = self.store.get_stamp_record(principal_id)
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
        if latest == record:
            return record
        self.logger.info("stamp_cache_fill_raced_rotation", principal_id=principal_id)
        try:
            await self.cache.evict_stamp(principal_id)
        except (RedisError, OSError) as exc:
            self.logger.error(
                "stamp_cache_evict_failed", principal_id=principal_id, error=str(exc)
            )
        return latest

    async def rotate(self, principal_id: str) -> str:
        new_stamp = new_security_stamp()
        try:
            rotated = self.store.rotate_security_stamp(principal_id, new_stamp)
        except StoreUnavailable as exc:
            raise TransientError("identity store unavailable") from exc
        if not rotated:
            raise NotFoundError("principal not found")
        await self.evict(principal_id)
        self.logger.info("security_stamp_rotated", principal_id=principal_id)
        return new_stamp

    async def evict(self, principal_id: str) -> None:
        with self._local_lock:
            self._local.pop(principal_id, None)
        if self.cache is None:
            return
        try:
            await self.cache.evict_stamp(principal_id)
        except (RedisError, OSError) as exc:
            # The entry still lapses after ttl_seconds
            self.logger.error(
                "stamp_cache_evict_failed", principal_id=principal_id, error=str(exc)
            )
