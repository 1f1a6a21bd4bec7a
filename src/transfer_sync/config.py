"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
transfer sync engine and its read API, loading and validating
environment variables at startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for development) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Optional Redis cache settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string for the block timestamp cache",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class RpcSettings(BaseSettings):
    """Blockchain RPC endpoint settings."""

    model_config = SettingsConfigDict(env_prefix="RPC_", extra="ignore")

    url: str = Field(
        alias="RPC_URL",
        description="Primary JSON-RPC HTTP endpoint",
    )
    fallback_url: str | None = Field(
        default=None,
        alias="RPC_FALLBACK_URL",
        description="Fallback JSON-RPC HTTP endpoint",
    )
    ws_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("RPC_WS_URL", "RPC_WSS_URL"),
        description="WebSocket endpoint for eth_subscribe; polling is used when unset",
    )
    max_requests_per_second: float = Field(
        default=25,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=10_000,
        description="Client-side rate limit for RPC calls",
    )
    confirmations: int = Field(
        default=0,
        alias="RPC_CONFIRMATIONS",
        ge=0,
        le=1_000,
        description="Blocks behind latest considered confirmed",
    )
    poa: bool = Field(
        default=False,
        alias="RPC_POA",
        description="Inject the proof-of-authority extraData middleware",
    )

    @field_validator("url", "fallback_url")
    @classmethod
    def validate_http_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str | None) -> str | None:
        """Validate WebSocket URL format."""
        if v is None:
            return v
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("RPC_WS_URL must start with ws:// or wss://")
        return v


class SyncSettings(BaseSettings):
    """Synchronization engine settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    contract_address: str = Field(
        alias="CONTRACT_ADDRESS",
        description="Address of the watched token contract",
    )
    start_block: int = Field(
        default=0,
        alias="START_BLOCK",
        ge=0,
        description="First block to index when no checkpoint exists",
    )
    batch_window: int = Field(
        default=10,
        alias="SYNC_BATCH_WINDOW",
        ge=1,
        le=100_000,
        description="Blocks per historical log query",
    )
    timestamp_chunk_size: int = Field(
        default=10,
        alias="SYNC_TIMESTAMP_CHUNK_SIZE",
        ge=1,
        le=1_000,
        description="Concurrent block timestamp lookups per chunk",
    )
    timestamp_chunk_delay_ms: int = Field(
        default=100,
        alias="SYNC_TIMESTAMP_CHUNK_DELAY_MS",
        ge=0,
        le=60_000,
        description="Pause between timestamp lookup chunks",
    )
    retry_initial_delay_seconds: float = Field(
        default=1.0,
        alias="SYNC_RETRY_INITIAL_DELAY_SECONDS",
        ge=0,
        description="First backoff delay after a failed batch",
    )
    retry_max_delay_seconds: float = Field(
        default=60.0,
        alias="SYNC_RETRY_MAX_DELAY_SECONDS",
        ge=0,
        description="Backoff cap for failed batches",
    )
    retry_max_attempts: int = Field(
        default=0,
        alias="SYNC_RETRY_MAX_ATTEMPTS",
        ge=0,
        description="Attempts per batch before giving up (0 = unbounded)",
    )
    resubscribe: bool = Field(
        default=False,
        alias="SYNC_RESUBSCRIBE",
        description="Re-enter catch-up and resubscribe after a fatal subscription error",
    )
    queue_size: int = Field(
        default=100,
        alias="SYNC_QUEUE_SIZE",
        ge=1,
        le=100_000,
        description="Bounded queue between the subscription and the orchestrator",
    )
    poll_interval_seconds: float = Field(
        default=4.0,
        alias="SYNC_POLL_INTERVAL_SECONDS",
        gt=0,
        description="Head polling interval when no WebSocket endpoint is configured",
    )
    ws_flush_interval_seconds: float = Field(
        default=1.0,
        alias="SYNC_WS_FLUSH_INTERVAL_SECONDS",
        gt=0,
        description="Idle time after which buffered subscription logs are delivered",
    )

    @field_validator("contract_address")
    @classmethod
    def validate_contract_address(cls, v: str) -> str:
        """Validate and lower-case the contract address."""
        v = v.strip()
        if not _ADDRESS_RE.match(v):
            raise ValueError("CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v.lower()


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables and an optional .env
    file, read by pydantic-settings.

    Example:
        ```python
        from transfer_sync.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.contract_address)
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
    rpc: RpcSettings = Field(
        default_factory=lambda: RpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    api_host: str = Field(
        default="0.0.0.0",
        alias="API_HOST",
        description="Bind address for the read API",
    )
    api_port: int = Field(
        default=3000,
        alias="PORT",
        description="HTTP port for the read API",
        ge=1,
        le=65535,
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
            "rpc": {
                "url": self._redact_url(self.rpc.url),
                "fallback_url": self._redact_url(self.rpc.fallback_url) if self.rpc.fallback_url else "(not set)",
                "ws_url": self._redact_url(self.rpc.ws_url) if self.rpc.ws_url else "(not set)",
                "confirmations": str(self.rpc.confirmations),
            },
            "sync": {
                "contract_address": self.sync.contract_address,
                "start_block": str(self.sync.start_block),
                "batch_window": str(self.sync.batch_window),
                "resubscribe": str(self.sync.resubscribe),
            },
            "log_level": self.log_level,
            "api_port": str(self.api_port),
        }

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
