from __future__ import annotations

import os
import re
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service."""

    jwt_secret: str | None = env_field(
        None, "JWT_SECRET", description="Active HS256 signing secret"
    )
    jwt_secret_file: str | None = env_field(
        None,
        "JWT_SECRET_FILE",
        description="Path to a mounted secret file holding the active signing secret",
    )
    jwt_previous_secrets: list[str] = env_field(
        [],
        "JWT_PREVIOUS_SECRETS",
        description="Retired secrets still accepted for verification (comma-separated)",
    )
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    token_ttl_seconds: int = env_field(24 * 60 * 60, "TOKEN_TTL_SECONDS", ge=0)
    clock_skew_seconds: int = env_field(0, "CLOCK_SKEW_SECONDS", ge=0)
    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    users_table: str = env_field("auth_user", "USERS_TABLE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_memory_revocation: bool = env_field(
        False,
        "ALLOW_MEMORY_REVOCATION",
        description="Keep revocations in process memory when Redis is unreachable",
    )
    operation_timeout_seconds: float = env_field(
        5.0, "OPERATION_TIMEOUT_SECONDS", gt=0
    )
    revoke_on_refresh: bool = env_field(
        True,
        "REVOKE_ON_REFRESH",
        description="Revoke the presented token when it is exchanged for a new one",
    )
    revoke_on_password_reset: bool = env_field(
        False,
        "REVOKE_ON_PASSWORD_RESET",
        description="Invalidate every token of a user whose password is reset",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("jwt_previous_secrets", mode="before")
    @classmethod
    def _split_previous_secrets(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _check_secret_length(cls, value: str | None) -> str | None:
        if value is not None and len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("users_table")
    @classmethod
    def _validate_table(cls, value: str) -> str:
        if not _TABLE_NAME.match(value):
            raise ValueError("USERS_TABLE must be a plain SQL identifier")
        return value

    @model_validator(mode="after")
    def _require_signing_secret(self):
        if not self.jwt_secret and not self.jwt_secret_file:
            raise ValueError("JWT_SECRET or JWT_SECRET_FILE must be configured")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            memory_store=_settings_cache.use_memory_store,
            token_ttl_seconds=_settings_cache.token_ttl_seconds,
            previous_keys=len(_settings_cache.jwt_previous_secrets),
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
