from __future__ import annotations

import ipaddress
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from identitygate.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Principal roles; every role except USER is elevated by default."""

    SUPER_ADMIN = "super_admin"
    PLATFORM_MANAGER = "platform_manager"
    PLATFORM_SUPPORT = "platform_support"
    MERCHANT = "merchant"
    USER = "user"


KNOWN_ROLES = frozenset(role.value for role in Role)
DEFAULT_ELEVATED_ROLES = [
    Role.SUPER_ADMIN.value,
    Role.PLATFORM_MANAGER.value,
    Role.PLATFORM_SUPPORT.value,
    Role.MERCHANT.value,
]
# Roles allowed to administer other principals
STAFF_ROLES = frozenset(
    {Role.SUPER_ADMIN.value, Role.PLATFORM_MANAGER.value, Role.PLATFORM_SUPPORT.value}
)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/identitygate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/identitygate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; permits running without Redis.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("identitygate", "JWT_ISSUER")
    jwt_audience: str = env_field("identitygate-clients", "JWT_AUDIENCE")
    clock_skew_seconds: int = env_field(
        60,
        "CLOCK_SKEW_SECONDS",
        ge=0,
        le=600,
        description="Tolerated drift between issuer and verifier clocks",
    )
    elevated_roles: list[str] = env_field(
        list(DEFAULT_ELEVATED_ROLES),
        "ELEVATED_ROLES",
        description="Roles that receive the short session tier (comma separated)",
    )
    elevated_token_ttl_hours: int = env_field(24, "ELEVATED_TOKEN_TTL_HOURS", gt=0)
    standard_token_ttl_days: int = env_field(7, "STANDARD_TOKEN_TTL_DAYS", gt=0)
    magic_token_ttl_minutes: int = env_field(10, "MAGIC_TOKEN_TTL_MINUTES", gt=0)
    stamp_cache_ttl_seconds: int = env_field(
        120,
        "STAMP_CACHE_TTL_SECONDS",
        ge=0,
        description="Upper bound on how long a rotated stamp may still be honoured",
    )

    bot_token: str | None = env_field(None, "BOT_TOKEN")
    handshake_max_age_seconds: int = env_field(86400, "HANDSHAKE_MAX_AGE_SECONDS", gt=0)

    cookie_name: str = env_field("ig_session", "COOKIE_NAME")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_embedded: bool = env_field(
        True,
        "COOKIE_EMBEDDED",
        description="Emit SameSite=None; Partitioned for cross-site embedded shells",
    )

    trusted_proxy_cidrs: list[str] = env_field([], "TRUSTED_PROXY_CIDRS")
    internal_hop_secret: str | None = env_field(None, "INTERNAL_HOP_SECRET")

    public_base_url: str = env_field("http://localhost:8000", "PUBLIC_BASE_URL")
    magic_redirect_path: str = env_field("/", "MAGIC_REDIRECT_PATH")
    magic_failure_path: str = env_field("/login?error=link", "MAGIC_FAILURE_PATH")
    magic_purge_interval_seconds: int = env_field(3600, "MAGIC_PURGE_INTERVAL_SECONDS", ge=0)

    handshake_rate_limit_per_minute: int = env_field(
        30, "HANDSHAKE_RATE_LIMIT_PER_MINUTE", ge=0
    )
    magic_rate_limit_per_minute: int = env_field(20, "MAGIC_RATE_LIMIT_PER_MINUTE", ge=0)

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("elevated_roles", "trusted_proxy_cidrs", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("elevated_roles")
    @classmethod
    def _validate_elevated_roles(cls, value: list[str]) -> list[str]:
        unknown = sorted(set(value) - KNOWN_ROLES)
        if unknown:
            raise ValueError(f"unknown roles in ELEVATED_ROLES: {', '.join(unknown)}")
        return value

    @field_validator("trusted_proxy_cidrs")
    @classmethod
    def _validate_cidrs(cls, value: list[str]) -> list[str]:
        for cidr in value:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError as exc:
                raise ValueError(f"invalid CIDR in TRUSTED_PROXY_CIDRS: {cidr}") from exc
        return value

    @field_validator("redis_url", "bot_token", "internal_hop_secret", "cookie_domain", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("magic_redirect_path", "magic_failure_path")
    @classmethod
    def _validate_local_path(cls, value: str) -> str:
        # Only same-origin redirects; "//host" would leave the site
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError("redirect paths must be absolute paths on this origin")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/identitygate"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _validate_hop_secret(self) -> "Settings":
        if self.trusted_proxy_cidrs and not self.internal_hop_secret:
            raise ValueError("TRUSTED_PROXY_CIDRS requires INTERNAL_HOP_SECRET")
        return self

    def is_elevated(self, role: str) -> bool:
        return role in self.elevated_roles


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
