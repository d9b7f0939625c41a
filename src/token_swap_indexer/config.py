"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
token swap indexer, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string (empty disables cache invalidation)",
    )

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not str(v).startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return str(v)


class ChainSettings(BaseSettings):
    """Chain RPC and contract settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://sepolia.drpc.org",
        alias="CHAIN_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    contract_address: str = Field(
        alias="CHAIN_CONTRACT_ADDRESS",
        description="Address of the token sale contract emitting the indexed events",
    )
    start_block: int = Field(
        default=0,
        alias="CHAIN_START_BLOCK",
        ge=0,
        description="First block to index when no cursor has been persisted",
    )
    confirmations: int = Field(
        default=0,
        alias="CHAIN_CONFIRMATIONS",
        ge=0,
        le=1000,
        description="Blocks to stay behind the chain head",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="Upper bound for a single RPC call",
    )
    max_retries: int = Field(
        default=3,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=20,
        description="Retry attempts per endpoint before failing over",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        description="Client-side RPC rate limit",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("contract_address")
    @classmethod
    def validate_contract_address(cls, v: str) -> str:
        if not _ADDRESS_RE.match(v):
            raise ValueError("CHAIN_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v.lower()


class IndexerSettings(BaseSettings):
    """Indexer loop settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    poll_interval_seconds: float = Field(
        default=5.0,
        alias="INDEXER_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Sleep between successful indexing cycles",
    )
    error_backoff_seconds: float = Field(
        default=10.0,
        alias="INDEXER_ERROR_BACKOFF_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Sleep after a failed indexing cycle before retrying the same range",
    )
    max_block_range: int = Field(
        default=2000,
        alias="INDEXER_MAX_BLOCK_RANGE",
        ge=1,
        le=100_000,
        description="Maximum blocks per eth_getLogs request",
    )
    cursor_name: str = Field(
        default="swap_indexer",
        alias="INDEXER_CURSOR_NAME",
        min_length=1,
        max_length=64,
        description="Key of the persisted cursor row",
    )


class AggregationSettings(BaseSettings):
    """Metrics and leaderboard aggregation settings."""

    model_config = SettingsConfigDict(env_prefix="AGGREGATION_", extra="ignore")

    metrics_interval_seconds: float = Field(
        default=300.0,
        alias="AGGREGATION_METRICS_INTERVAL_SECONDS",
        ge=1.0,
        le=86_400.0,
        description="How often to write a token metrics snapshot",
    )
    leaderboard_interval_seconds: float = Field(
        default=3600.0,
        alias="AGGREGATION_LEADERBOARD_INTERVAL_SECONDS",
        ge=1.0,
        le=86_400.0,
        description="How often to recompute leaderboards",
    )
    leaderboard_cache_size: int = Field(
        default=100,
        alias="AGGREGATION_LEADERBOARD_CACHE_SIZE",
        ge=1,
        le=10_000,
        description="Top-N leaderboard entries published to the cache",
    )
    cache_ttl_seconds: int = Field(
        default=300,
        alias="AGGREGATION_CACHE_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="TTL of published aggregate cache entries",
    )
    total_supply_wei: int = Field(
        default=10**27,
        alias="AGGREGATION_TOTAL_SUPPLY_WEI",
        ge=0,
        description="Fixed token supply reported in metrics snapshots",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from token_swap_indexer.config import get_settings

        settings = get_settings()
        print(settings.chain.contract_address)
        print(settings.log_level)
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
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    aggregation: AggregationSettings = Field(
        default_factory=lambda: AggregationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    shutdown_grace_seconds: float = Field(
        default=30.0,
        alias="SHUTDOWN_GRACE_SECONDS",
        ge=0.0,
        le=600.0,
        description="Time background tasks get to finish their unit of work on shutdown",
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
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(disabled)",
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "contract_address": self.chain.contract_address,
                "start_block": str(self.chain.start_block),
                "confirmations": str(self.chain.confirmations),
            },
            "indexer": {
                "poll_interval_seconds": str(self.indexer.poll_interval_seconds),
                "error_backoff_seconds": str(self.indexer.error_backoff_seconds),
                "max_block_range": str(self.indexer.max_block_range),
            },
            "aggregation": {
                "metrics_interval_seconds": str(self.aggregation.metrics_interval_seconds),
                "leaderboard_interval_seconds": str(self.aggregation.leaderboard_interval_seconds),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
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
