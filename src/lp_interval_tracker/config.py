"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
LP interval tracker, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_SUPPORTED_DATABASE_SCHEMES = (
    "postgresql://",
    "postgresql+asyncpg://",
    "sqlite+aiosqlite://",
)


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or aiosqlite) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(_SUPPORTED_DATABASE_SCHEMES):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (metadata cache); caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """Ledger RPC settings used by the metadata resolver."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Rate limit for RPC calls",
    )
    max_retries: int = Field(
        default=3,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per endpoint before failing over",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class MetadataSettings(BaseSettings):
    """Entity metadata resolution settings."""

    model_config = SettingsConfigDict(env_prefix="METADATA_", extra="ignore")

    cache_ttl_seconds: int = Field(
        default=3600,
        alias="METADATA_CACHE_TTL_SECONDS",
        ge=1,
        le=7 * 24 * 3600,
        description="TTL for resolved metadata cached in Redis",
    )
    static_file: Path | None = Field(
        default=None,
        alias="METADATA_STATIC_FILE",
        description="JSON file of pre-resolved entity metadata (used instead of RPC)",
    )


class EngineSettings(BaseSettings):
    """Event application settings."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_", extra="ignore")

    workers: int = Field(
        default=1,
        alias="ENGINE_WORKERS",
        ge=1,
        le=64,
        description="Worker count; events are partitioned by entity id",
    )
    queue_size: int = Field(
        default=1000,
        alias="ENGINE_QUEUE_SIZE",
        ge=1,
        le=1_000_000,
        description="Bounded queue size per worker",
    )
    max_retries: int = Field(
        default=5,
        alias="ENGINE_MAX_RETRIES",
        ge=0,
        le=100,
        description="Retries for an event whose application failed retriably",
    )
    retry_base_delay_seconds: float = Field(
        default=0.5,
        alias="ENGINE_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Base delay (doubles per attempt) between retries",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from lp_interval_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.engine.workers)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    metadata: MetadataSettings = Field(
        default_factory=lambda: MetadataSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    engine: EngineSettings = Field(
        default_factory=lambda: EngineSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Apply each event inside its transaction, then roll it back so nothing persists",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url or "(not set)",
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "max_requests_per_second": str(self.chain.max_requests_per_second),
            },
            "metadata": {
                "cache_ttl_seconds": str(self.metadata.cache_ttl_seconds),
                "static_file": str(self.metadata.static_file) if self.metadata.static_file else "(not set)",
            },
            "engine": {
                "workers": str(self.engine.workers),
                "queue_size": str(self.engine.queue_size),
                "max_retries": str(self.engine.max_retries),
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["init-db", "ingest", "show-config"]) -> None:
        """Validate command-specific requirements.

        New entities can only be registered with resolved metadata, so
        ingestion refuses to start without a metadata source.
        """
        if command == "ingest":
            if self.metadata.static_file is None and self.chain.rpc_url is None:
                raise ValueError("CHAIN_RPC_URL or METADATA_STATIC_FILE is required for ingestion")
            if self.metadata.static_file is not None and not self.metadata.static_file.is_file():
                raise ValueError(f"METADATA_STATIC_FILE does not exist: {self.metadata.static_file}")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
