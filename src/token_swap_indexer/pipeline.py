"""Pipeline orchestrator for the token swap indexer.

This module wires the chain client, storage, cache and the three periodic
activities (indexer loop, metrics snapshots, leaderboards) together and
manages their lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from token_swap_indexer.aggregation.leaderboard import LeaderboardCalculator
from token_swap_indexer.aggregation.metrics import MetricsAggregator
from token_swap_indexer.cache import CacheInvalidator
from token_swap_indexer.chain.client import ChainClient
from token_swap_indexer.chain.events import EventDecoder
from token_swap_indexer.config import Settings, get_settings
from token_swap_indexer.indexer import BlockRangeProcessor, Indexer
from token_swap_indexer.scheduler import RepeatingTask, Scheduler
from token_swap_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass
class AppContext:
    """Shared collaborators, built once at startup and passed to every component."""

    settings: Settings
    db: DatabaseManager
    chain: ChainClient
    cache: CacheInvalidator
    decoder: EventDecoder
    redis: Redis | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> AppContext:
        logger.debug("Initializing Redis connection...")
        redis = Redis.from_url(settings.redis.url) if settings.redis.url else None

        logger.debug("Initializing database manager...")
        db = DatabaseManager(settings.database.url)

        logger.debug("Initializing chain client...")
        chain = ChainClient(
            settings.chain.rpc_url,
            fallback_rpc_url=settings.chain.fallback_rpc_url,
            redis=redis,
            max_requests_per_second=settings.chain.max_requests_per_second,
            max_retries=settings.chain.max_retries,
            request_timeout_seconds=settings.chain.request_timeout_seconds,
        )
        return cls(
            settings=settings,
            db=db,
            chain=chain,
            cache=CacheInvalidator(redis),
            decoder=EventDecoder(settings.chain.contract_address),
            redis=redis,
        )

    def build_indexer(self, stop_event: asyncio.Event | None = None) -> Indexer:
        processor = BlockRangeProcessor(
            db=self.db,
            chain=self.chain,
            decoder=self.decoder,
            cache=self.cache,
            contract_address=self.settings.chain.contract_address,
            cursor_name=self.settings.indexer.cursor_name,
        )
        return Indexer(
            db=self.db,
            chain=self.chain,
            processor=processor,
            cursor_name=self.settings.indexer.cursor_name,
            start_block=self.settings.chain.start_block,
            confirmations=self.settings.chain.confirmations,
            max_block_range=self.settings.indexer.max_block_range,
            stop_event=stop_event,
        )

    def build_metrics(self) -> MetricsAggregator:
        return MetricsAggregator(
            db=self.db,
            cache=self.cache,
            total_supply_wei=self.settings.aggregation.total_supply_wei,
            cache_ttl_seconds=self.settings.aggregation.cache_ttl_seconds,
        )

    def build_leaderboard(self) -> LeaderboardCalculator:
        return LeaderboardCalculator(
            db=self.db,
            cache=self.cache,
            cache_size=self.settings.aggregation.leaderboard_cache_size,
            cache_ttl_seconds=self.settings.aggregation.cache_ttl_seconds,
        )

    async def aclose(self) -> None:
        """Release RPC sessions, database connections and Redis."""
        await self.chain.aclose()
        await self.db.dispose_async()
        await self.cache.aclose()
        logger.debug("Resources cleaned up")


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Runs the indexer and both aggregators until stopped.

    Example:
        ```python
        from token_swap_indexer.config import get_settings
        from token_swap_indexer.pipeline import Pipeline

        pipeline = Pipeline(get_settings())
        await pipeline.run()  # returns after SIGINT/SIGTERM
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        context: AppContext | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            context: Pre-built collaborators (tests inject fakes here).
        """
        self._settings = context.settings if context is not None else (settings or get_settings())
        self._context = context
        self._owns_context = context is None

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()
        self._scheduler: Scheduler | None = None
        self._indexer: Indexer | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def indexer(self) -> Indexer | None:
        return self._indexer

    @property
    def scheduler(self) -> Scheduler | None:
        return self._scheduler

    def _build_scheduler(self, context: AppContext) -> Scheduler:
        settings = self._settings
        scheduler = Scheduler()
        self._indexer = context.build_indexer(scheduler.stop_event)
        metrics = context.build_metrics()
        leaderboard = context.build_leaderboard()

        scheduler.add(
            RepeatingTask(
                "indexer",
                self._indexer.run_cycle,
                interval_seconds=settings.indexer.poll_interval_seconds,
                error_interval_seconds=settings.indexer.error_backoff_seconds,
            )
        )
        scheduler.add(
            RepeatingTask(
                "metrics",
                metrics.tick,
                interval_seconds=settings.aggregation.metrics_interval_seconds,
                failure_log_level=logging.INFO,
            )
        )
        scheduler.add(
            RepeatingTask(
                "leaderboard",
                leaderboard.tick,
                interval_seconds=settings.aggregation.leaderboard_interval_seconds,
                failure_log_level=logging.INFO,
            )
        )
        return scheduler

    async def start(self) -> None:
        """Start the background tasks.

        Raises:
            RuntimeError: If pipeline is already running.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        logger.info("Starting pipeline: %s", self._settings.redacted_summary())
        try:
            if self._context is None:
                self._context = AppContext.from_settings(self._settings)
            self._scheduler = self._build_scheduler(self._context)
            self._scheduler.start()
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

        self._stats.started_at = datetime.now(UTC)
        self._state = PipelineState.RUNNING
        logger.info("Pipeline started successfully")

    async def stop(self) -> None:
        """Stop gracefully: finish in-flight work within the grace period, then cancel."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")
        if self._scheduler is not None:
            await self._scheduler.stop(grace_seconds=self._settings.shutdown_grace_seconds)
        await self._cleanup()

        self._stats.stopped_at = datetime.now(UTC)
        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def request_stop(self) -> None:
        """Ask the background tasks to stop (safe to call from a signal handler)."""
        if self._scheduler is not None:
            self._scheduler.stop_event.set()

    async def _cleanup(self) -> None:
        if self._context is not None and self._owns_context:
            await self._context.aclose()
            self._context = None

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_stop)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)

    async def run(self) -> None:
        """Start the pipeline and run until a stop signal is received."""
        await self.start()
        self._install_signal_handlers()

        try:
            if self._scheduler is not None:
                await self._scheduler.stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            self._remove_signal_handlers()
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
