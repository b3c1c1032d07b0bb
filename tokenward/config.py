from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the refresh-token service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenward", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory for the memory store's JSON snapshot; unset keeps state in-process only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    # Refresh token policy
    refresh_token_ttl_days: int = env_field(
        14,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Absolute refresh token lifetime, fixed at issuance",
    )
    refresh_idle_days: int = env_field(
        7,
        "REFRESH_IDLE_DAYS",
        description="A refresh token unused for longer than this is invalid",
    )
    revoked_retention_days: int = env_field(
        30,
        "REVOKED_RETENTION_DAYS",
        description="How long revoked tokens stay queryable for reuse detection",
    )
    refresh_token_bytes: int = env_field(
        64,
        "REFRESH_TOKEN_BYTES",
        description="Entropy of generated refresh tokens in bytes",
    )

    # Cleanup sweeper
    token_cleanup_enabled: bool = env_field(True, "TOKEN_CLEANUP_ENABLED")
    token_cleanup_interval_hours: float = env_field(
        6,
        "TOKEN_CLEANUP_INTERVAL_HOURS",
        description="Hours between stale refresh token purges",
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

    @field_validator(
        "refresh_token_ttl_days",
        "refresh_idle_days",
        "revoked_retention_days",
        "token_cleanup_interval_hours",
    )
    @classmethod
    def _require_positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("refresh_token_bytes")
    @classmethod
    def _require_entropy(cls, value: int) -> int:
        if value < 32:
            raise ValueError("refresh tokens need at least 32 bytes of entropy")
        return value

    @model_validator(mode="after")
    def _check_windows(self) -> "Settings":
        if self.refresh_idle_days > self.refresh_token_ttl_days:
            raise ValueError("refresh_idle_days cannot exceed refresh_token_ttl_days")
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ValueError("db_pool_min_size cannot exceed db_pool_max_size")
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
