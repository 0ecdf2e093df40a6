from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Environment(str, Enum):
    """Deployment environments with distinct secret and subject rules."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"

    @property
    def is_production(self) -> bool:
        return self is Environment.PRODUCTION


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance and rotation.

    Secrets are carried as plain values here and are only validated when a
    ``SecretProvider`` resolves them for an explicit environment.
    """

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_secret_test: str | None = env_field(
        None,
        "JWT_SECRET_TEST",
        description="Signing secret used only when APP_ENV=test",
    )
    jwt_issuer: str = env_field("refreshguard", "JWT_ISSUER")
    jwt_audience: list[str] = env_field(
        ["refreshguard-api"],
        "JWT_AUDIENCE",
        description="Comma separated list of accepted audiences",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    max_token_lifetime_minutes: int = env_field(
        7 * 24 * 60,
        "MAX_TOKEN_LIFETIME_MINUTES",
        description="Absolute ceiling on exp - iat for any signed token",
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")
    test_subject_marker: str = env_field("7e577e57", "TEST_SUBJECT_MARKER")
    demo_subject_prefix: str = env_field("de300000", "DEMO_SUBJECT_PREFIX")
    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    revoked_retention_days: int = env_field(30, "REVOKED_RETENTION_DAYS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets between test cases",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("jwt_audience", mode="before")
    @classmethod
    def _split_audience(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("jwt_audience")
    @classmethod
    def _require_audience(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one JWT audience is required")
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_minutes",
        "max_token_lifetime_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token and session lifetimes must be positive")
        return value

    @field_validator("test_subject_marker", "demo_subject_prefix")
    @classmethod
    def _hex_marker(cls, value: str) -> str:
        lowered = value.lower()
        if len(lowered) != 8 or any(c not in "0123456789abcdef" for c in lowered):
            raise ValueError("subject markers must be 8 hex characters")
        return lowered

    def secret_source(self) -> dict[str, str]:
        """Expose configured secrets keyed by their variable names."""

        source: dict[str, str] = {}
        if self.jwt_secret is not None:
            source["JWT_SECRET"] = self.jwt_secret
        if self.jwt_secret_test is not None:
            source["JWT_SECRET_TEST"] = self.jwt_secret_test
        return source


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
