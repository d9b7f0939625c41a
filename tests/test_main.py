"""Tests for the command line entry point."""

from __future__ import annotations

import asyncio

import pytest
from factories import CONTRACT
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine

from token_swap_indexer.__main__ import build_parser, main
from token_swap_indexer.config import clear_settings_cache


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, sqlite_url: str):
    monkeypatch.setenv("DATABASE_URL", sqlite_url)
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("CHAIN_CONTRACT_ADDRESS", CONTRACT)
    clear_settings_cache()
    yield sqlite_url
    clear_settings_cache()


def _table_names(url: str) -> set[str]:
    async def inner() -> set[str]:
        engine = create_async_engine(url)
        try:
            async with engine.connect() as conn:
                return set(await conn.run_sync(lambda c: inspect(c).get_table_names()))
        finally:
            await engine.dispose()

    return asyncio.run(inner())


class TestParser:
    def test_default_command(self) -> None:
        assert build_parser().parse_args([]).command is None

    def test_aggregate_flags(self) -> None:
        args = build_parser().parse_args(["aggregate", "--leaderboard"])

        assert args.command == "aggregate"
        assert args.leaderboard
        assert not args.metrics

    def test_unknown_command(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["reindex"])


class TestMain:
    def test_init_db_then_aggregate(self, cli_env: str) -> None:
        assert main(["init-db"]) == 0
        assert {
            "users",
            "transactions",
            "swap_events",
            "rate_updates",
            "token_metrics",
            "leaderboard",
            "indexer_cursors",
        } <= _table_names(cli_env)

        assert main(["aggregate"]) == 0
