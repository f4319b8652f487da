"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the token refresh engine
and the operational scripts share a consistent configuration surface.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

import os

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


class RefreshSettings(BaseSettings):
    """Token refresh behaviour shared by every provider."""

    model_config = SettingsConfigDict(env_prefix="REFRESH_")

    buffer_minutes: Optional[float] = Field(
        None,
        description=(
            "Refresh tokens this many minutes before expiry. "
            "Defaults to the provider's own buffer when omitted."
        ),
    )
    max_attempts: int = Field(3, ge=1)
    request_timeout_seconds: float = Field(15.0, gt=0)
    max_backoff_ms: int = Field(30000, ge=1000, le=60000)
    sweep_interval_seconds: int = Field(
        300,
        ge=0,
        description="Interval for refreshing expiring tokens in the background. 0 disables it.",
    )
    sweep_batch_size: int = Field(10, ge=1)


class CircuitBreakerSettings(BaseSettings):
    """Thresholds for the breakers guarding token endpoints."""

    model_config = SettingsConfigDict(env_prefix="CIRCUIT_")

    failure_threshold: int = Field(5, ge=1)
    reset_timeout_ms: int = Field(60000, ge=0)


class BrokerSettings(BaseSettings):
    """Centralized OAuth broker configuration."""

    model_config = SettingsConfigDict(env_prefix="OAUTH_BROKER_")

    url: Optional[AnyHttpUrl] = Field(
        None,
        description="Base URL of the OAuth broker. Direct refresh only when omitted.",
    )
    disabled_providers: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        description="Providers that always bypass the broker.",
    )
    timeout_seconds: float = Field(10.0, gt=0)

    @field_validator("disabled_providers", mode="before")
    @classmethod
    def _split_providers(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        """Support providing providers as a comma-separated string."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(value)
        return tuple(
            provider.strip().lower() for provider in value.split(",") if provider.strip()
        )


class ValidationSettings(BaseSettings):
    """Credential validation cache and probe configuration."""

    model_config = SettingsConfigDict(env_prefix="VALIDATION_")

    cache_ttl_seconds: int = Field(300, ge=0)
    probe_enabled: bool = True


class MetricsSettings(BaseSettings):
    """Token metrics retention and reporting."""

    model_config = SettingsConfigDict(env_prefix="METRICS_")

    recent_activity_size: int = Field(20, ge=1)
    summary_interval_seconds: int = Field(
        0,
        ge=0,
        description="Interval for periodic metrics summary logging. 0 disables it.",
    )


class SecuritySettings(BaseSettings):
    """Security-related configuration."""

    model_config = SettingsConfigDict(populate_by_name=True)

    token_encryption_secret: str = Field(
        ...,
        validation_alias="TOKEN_ENCRYPTION_SECRET",
        description=(
            "Secret used to derive the symmetric key for encrypting stored tokens."
        ),
    )
    previous_token_encryption_secrets: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        validation_alias="TOKEN_ENCRYPTION_PREVIOUS_SECRETS",
        description="Retired secrets still accepted for decryption during key rotation.",
    )

    @field_validator("previous_token_encryption_secrets", mode="before")
    @classmethod
    def _split_secrets(cls, value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
        if isinstance(value, (tuple, list)):
            return tuple(value)
        return tuple(secret.strip() for secret in value.split(",") if secret.strip())


class StorageSettings(BaseSettings):
    """Credential store location."""

    model_config = SettingsConfigDict(populate_by_name=True)

    credential_db_path: str = Field(
        "data/credentials.db", validation_alias="CREDENTIAL_DB_PATH"
    )


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "BrokerSettings",
    "CircuitBreakerSettings",
    "MetricsSettings",
    "RefreshSettings",
    "SecuritySettings",
    "StorageSettings",
    "ValidationSettings",
    "get_settings",
]
