"""Tests for environment-driven settings."""

from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from token_swap_indexer.config import ChainSettings, RedisSettings, Settings, clear_settings_cache, get_settings

CONTRACT = "0xA451b908c7AD183aBd55F8Ad48C055DA8CB4264D"


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Minimal valid environment."""
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://indexer:s3cret@db:5432/indexer")
    monkeypatch.setenv("CHAIN_CONTRACT_ADDRESS", CONTRACT)
    monkeypatch.delenv("REDIS_URL", raising=False)
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()


class TestSettings:
    def test_defaults(self, env: pytest.MonkeyPatch) -> None:
        settings = Settings()

        assert settings.chain.contract_address == CONTRACT.lower()
        assert settings.chain.start_block == 0
        assert settings.chain.confirmations == 0
        assert settings.indexer.max_block_range == 2000
        assert settings.indexer.cursor_name == "swap_indexer"
        assert settings.aggregation.total_supply_wei == 10**27
        assert settings.redis.url == "redis://localhost:6379"
        assert settings.get_logging_level() == logging.INFO

    def test_overrides(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("CHAIN_START_BLOCK", "5000000")
        env.setenv("CHAIN_CONFIRMATIONS", "3")
        env.setenv("INDEXER_MAX_BLOCK_RANGE", "500")
        env.setenv("AGGREGATION_LEADERBOARD_INTERVAL_SECONDS", "60")
        env.setenv("LOG_LEVEL", "DEBUG")

        settings = Settings()

        assert settings.chain.start_block == 5_000_000
        assert settings.chain.confirmations == 3
        assert settings.indexer.max_block_range == 500
        assert settings.aggregation.leaderboard_interval_seconds == 60.0
        assert settings.get_logging_level() == logging.DEBUG

    def test_get_settings_is_cached(self, env: pytest.MonkeyPatch) -> None:
        assert get_settings() is get_settings()

    def test_missing_contract_address(self, env: pytest.MonkeyPatch) -> None:
        env.delenv("CHAIN_CONTRACT_ADDRESS")

        with pytest.raises(ValidationError):
            ChainSettings()

    def test_invalid_contract_address(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("CHAIN_CONTRACT_ADDRESS", "0x1234")

        with pytest.raises(ValidationError):
            ChainSettings()

    def test_invalid_rpc_url(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("CHAIN_RPC_URL", "wss://node.example")

        with pytest.raises(ValidationError):
            ChainSettings()

    def test_block_range_must_be_positive(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("INDEXER_MAX_BLOCK_RANGE", "0")

        with pytest.raises(ValidationError):
            Settings()

    def test_empty_redis_url_disables_cache(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("REDIS_URL", "")

        assert RedisSettings().url is None

    def test_invalid_redis_url(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("REDIS_URL", "http://cache")

        with pytest.raises(ValidationError):
            RedisSettings()


class TestRedactedSummary:
    def test_password_is_masked(self, env: pytest.MonkeyPatch) -> None:
        summary = Settings().redacted_summary()

        assert summary["database_url"] == "postgresql+asyncpg://indexer:***@db:5432/indexer"
        assert "s3cret" not in str(summary)

    def test_disabled_redis(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("REDIS_URL", "")

        assert Settings().redacted_summary()["redis_url"] == "(disabled)"
