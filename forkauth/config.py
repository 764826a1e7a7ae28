from __future__ import annotations

import os
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from forkauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; production switches cookies to ``secure``."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/forkauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits an ephemeral JWT secret.",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("forkauth", "JWT_ISSUER")
    jwt_audience: str = env_field("forkauth-clients", "JWT_AUDIENCE")
    token_leeway_seconds: int = env_field(
        0, "TOKEN_LEEWAY_SECONDS", description="Clock skew tolerated on exp/iat"
    )
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    service_token_ttl_minutes: int = env_field(60, "SERVICE_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    rotate_refresh_tokens: bool = env_field(
        True,
        "ROTATE_REFRESH_TOKENS",
        description="Consume the presented refresh token and issue a new one on refresh",
    )
    resolve_permissions_at_request: bool = env_field(
        False,
        "RESOLVE_PERMISSIONS_AT_REQUEST",
        description="Recompute user permissions from the account on every request "
        "instead of trusting the permissions embedded in the access token",
    )

    # Revocation store
    blacklist_key_prefix: str = env_field("bl_", "BLACKLIST_KEY_PREFIX")
    blacklist_default_ttl_seconds: int = env_field(
        24 * 60 * 60, "BLACKLIST_DEFAULT_TTL_SECONDS"
    )
    blacklist_ttl_buffer_seconds: int = env_field(60, "BLACKLIST_TTL_BUFFER_SECONDS")
    blacklist_sweep_interval_seconds: float = env_field(
        60.0, "BLACKLIST_SWEEP_INTERVAL_SECONDS"
    )

    # I/O bounds
    cache_timeout_seconds: float = env_field(
        2.0, "CACHE_TIMEOUT_SECONDS", description="Upper bound for a single Redis call"
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Pool checkout and statement timeout for Postgres",
    )

    # HTTP surface
    refresh_cookie_path: str = env_field("/api/auth/refresh", "REFRESH_COOKIE_PATH")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

    legacy_password_migration_deadline: datetime | None = env_field(
        None,
        "LEGACY_PASSWORD_MIGRATION_DEADLINE",
        description="While set and in the future, plaintext password records are "
        "accepted once and rehashed; afterwards they never verify",
    )

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("legacy_password_migration_deadline", mode="before")
    @classmethod
    def _blank_deadline(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("legacy_password_migration_deadline")
    @classmethod
    def _deadline_is_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "service_token_ttl_minutes",
        "refresh_token_ttl_days",
        "blacklist_default_ttl_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # Tokens signed with an ephemeral secret die with the process
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_ephemeral", environment=self.environment.value)
        return self


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
