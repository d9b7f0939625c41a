"""Command line entry point.

Usage:
    python -m token_swap_indexer [run]     # indexer + aggregators until SIGINT/SIGTERM
    python -m token_swap_indexer index-once
    python -m token_swap_indexer aggregate [--metrics] [--leaderboard]
    python -m token_swap_indexer init-db
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from token_swap_indexer.config import Settings, get_settings
from token_swap_indexer.pipeline import AppContext, Pipeline

logger = logging.getLogger("token_swap_indexer")


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


async def _run(settings: Settings) -> int:
    await Pipeline(settings).run()
    return 0


async def _index_once(settings: Settings) -> int:
    context = AppContext.from_settings(settings)
    try:
        cursor = await context.build_indexer().run_cycle()
    finally:
        await context.aclose()
    logger.info("Indexed up to block %d", cursor)
    return 0


async def _aggregate(settings: Settings, *, metrics: bool, leaderboard: bool) -> int:
    context = AppContext.from_settings(settings)
    try:
        if metrics:
            await context.build_metrics().tick()
        if leaderboard:
            await context.build_leaderboard().tick()
    finally:
        await context.aclose()
    return 0


async def _init_db(settings: Settings) -> int:
    context = AppContext.from_settings(settings)
    try:
        await context.db.init_schema_async()
    finally:
        await context.aclose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="token-swap-indexer",
        description="Index token sale events and maintain metrics and leaderboards",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the indexer and aggregators until stopped (default)")
    sub.add_parser("index-once", help="Run a single indexing cycle and exit")
    aggregate = sub.add_parser("aggregate", help="Run aggregation ticks once and exit")
    aggregate.add_argument("--metrics", action="store_true", help="Only write a metrics snapshot")
    aggregate.add_argument("--leaderboard", action="store_true", help="Only recompute leaderboards")
    sub.add_parser("init-db", help="Create tables directly from the models (development only)")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)

    command = args.command or "run"
    if command == "run":
        return asyncio.run(_run(settings))
    if command == "index-once":
        return asyncio.run(_index_once(settings))
    if command == "aggregate":
        both = not (args.metrics or args.leaderboard)
        return asyncio.run(
            _aggregate(settings, metrics=both or args.metrics, leaderboard=both or args.leaderboard)
        )
    if command == "init-db":
        return asyncio.run(_init_db(settings))
    raise AssertionError(f"unhandled command {command}")


if __name__ == "__main__":
    sys.exit(main())
