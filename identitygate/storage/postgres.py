from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from identitygate.logging import get_logger
from identitygate.storage.common import normalize_external_id
from identitygate.storage.errors import ConstraintViolation, StoreUnavailable
from identitygate.storage.models import Principal, StampRecord

_REQUIRED_TABLES = ("principal", "magic_token")


class PostgresStore:
    """Postgres-backed identity store.

    The schema lives in ``scripts/schema.sql``; the store only verifies it.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__)
            raise StoreUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return Principal(
            id=str(row["id"]),
            external_id=row["external_id"],
            role=row.get("role", "user"),
            tenant_id=row.get("tenant_id"),
            security_stamp=row["security_stamp"],
            display_name=row.get("display_name"),
            username=row.get("username"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
            meta=meta or {},
        )

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_external_id(self, external_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE external_id = %s",
                (normalize_external_id(external_id),),
            ).fetchone()
        return self._principal_from_row(row) if row else None

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
        principal = Principal.new(
            normalize_external_id(external_id),
            role=role,
            tenant_id=tenant_id,
            display_name=display_name,
            username=username,
            meta=dict(meta) if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (
                        id, external_id, role, tenant_id, security_stamp,
                        display_name, username, meta, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        principal.external_id,
                        principal.role,
                        principal.tenant_id,
                        principal.security_stamp,
                        principal.display_name,
                        principal.username,
                        json.dumps(principal.meta or {}),
                        principal.created_at,
                        principal.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "external id already registered", {"field": "external_id"}
            )
        return principal

    def update_principal_profile(
        self,
        principal_id: str,
        *,
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET display_name = COALESCE(%s, display_name),
                    username = COALESCE(%s, username),
                    meta = COALESCE(meta, '{}'::jsonb) || %s::jsonb,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (display_name, username, json.dumps(meta or {}), principal_id),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_stamp_record(self, principal_id: str) -> Optional[StampRecord]:
        # Hot path: two columns, primary key lookup, no joins
        with self._connect() as conn:
            row = conn.execute(
                "SELECT security_stamp, deleted_at IS NOT NULL AS deleted FROM principal WHERE id = %s",
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return StampRecord(stamp=row["security_stamp"], deleted=bool(row["deleted"]))

    def rotate_security_stamp(self, principal_id: str, new_stamp: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET security_stamp = %s, updated_at = now() WHERE id = %s RETURNING id",
                (new_stamp, principal_id),
            ).fetchone()
        return row is not None

    def update_principal_role(
        self, principal_id: str, role: str, tenant_id: Optional[str], new_stamp: str
    ) -> Optional[Principal]:
        # Role and stamp change together so no token keeps the old privilege
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET role = %s, tenant_id = %s, security_stamp = %s, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (role, tenant_id, new_stamp, principal_id),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def soft_delete_principal(self, principal_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET deleted_at = now(), updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (principal_id,),
            ).fetchone()
        return row is not None

    def create_magic_token(
        self, principal_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO magic_token (token_hash, principal_id, expires_at)
                    VALUES (%s, %s, %s)
                    """,
                    (token_hash, principal_id, expires_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("magic token collision", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("principal not found", {"field": "principal_id"})

    def consume_magic_token(self, token_hash: str, now: datetime) -> Optional[str]:
        # Single statement: the row lock taken by UPDATE serialises racing redeemers
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE magic_token
                SET used = TRUE, used_at = %s
                WHERE token_hash = %s AND used = FALSE AND expires_at > %s
                RETURNING principal_id
                """,
                (now, token_hash, now),
            ).fetchone()
        return str(row["principal_id"]) if row else None

    def purge_expired_magic_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM magic_token WHERE used = TRUE OR expires_at <= %s", (now,)
            )
            return cur.rowcount or 0
