"""Per-period wallet leaderboards ranked by ETH volume.

For each period the swaps indexed between the period start and now are
grouped by buyer with exact integer sums, sorted by ETH volume (descending,
then wallet address ascending) and assigned ranks 1..N. Rows are upserted
on `(period, wallet_address, period_start)`. Rows for earlier period starts
are kept as a history of closed periods.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from token_swap_indexer.cache import CacheInvalidator, leaderboard_key
from token_swap_indexer.storage.database import DatabaseManager
from token_swap_indexer.storage.repos import (
    LeaderboardEntryDTO,
    LeaderboardRepository,
    SwapEventRepository,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
DEFAULT_CACHE_SIZE = 100
DEFAULT_CACHE_TTL_SECONDS = 300


class Period(str, Enum):
    """Leaderboard aggregation window."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    ALL_TIME = "ALL_TIME"


class LeaderboardError(Exception):
    """Raised when one or more periods failed to compute."""


def period_bounds(period: Period, now: datetime) -> tuple[datetime, datetime]:
    """Return `(period_start, period_end)` for the period containing `now` (UTC).

    Weeks start on Sunday.
    """
    now = now.astimezone(UTC) if now.tzinfo else now.replace(tzinfo=UTC)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is Period.DAILY:
        start = midnight
    elif period is Period.WEEKLY:
        days_since_sunday = (now.weekday() + 1) % 7
        start = midnight - timedelta(days=days_since_sunday)
    elif period is Period.MONTHLY:
        start = midnight.replace(day=1)
    else:
        start = EPOCH
    return start, now


@dataclass
class _WalletTotals:
    total_swaps: int = 0
    total_volume_eth: int = 0
    total_volume_tokens: int = 0


def rank_wallets(totals: dict[str, _WalletTotals]) -> list[tuple[int, str, _WalletTotals]]:
    """Order wallets by ETH volume desc, then address asc, and number them from 1."""
    ordered = sorted(totals.items(), key=lambda item: (-item[1].total_volume_eth, item[0]))
    return [(rank, wallet, stats) for rank, (wallet, stats) in enumerate(ordered, start=1)]


class LeaderboardCalculator:
    """Recomputes the leaderboards of all four periods.

    Example:
        ```python
        calculator = LeaderboardCalculator(db=db, cache=cache)
        written = await calculator.tick()
        print(written[Period.DAILY])
        ```
    """

    def __init__(
        self,
        *,
        db: DatabaseManager,
        cache: CacheInvalidator,
        cache_size: int = DEFAULT_CACHE_SIZE,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._cache = cache
        self._cache_size = cache_size
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    async def compute_period(self, period: Period, now: datetime) -> list[LeaderboardEntryDTO]:
        """Recompute and upsert one period's leaderboard."""
        period_start, period_end = period_bounds(period, now)

        async with self._db.get_async_session() as session:
            totals: dict[str, _WalletTotals] = {}
            async for swap in SwapEventRepository(session).iter_amounts(
                since=period_start, until=period_end
            ):
                wallet = totals.setdefault(swap.buyer.lower(), _WalletTotals())
                wallet.total_swaps += 1
                wallet.total_volume_eth += swap.eth_amount
                wallet.total_volume_tokens += swap.token_amount

            entries = [
                LeaderboardEntryDTO(
                    period=period.value,
                    wallet_address=wallet,
                    period_start=period_start,
                    period_end=period_end,
                    total_swaps=stats.total_swaps,
                    total_volume_eth=stats.total_volume_eth,
                    total_volume_tokens=stats.total_volume_tokens,
                    rank=rank,
                )
                for rank, wallet, stats in rank_wallets(totals)
            ]

            repo = LeaderboardRepository(session)
            for entry in entries:
                await repo.upsert(entry)

        # An empty period still overwrites the key so a rollover clears the previous ranking.
        await self._cache.set_json(
            leaderboard_key(period.value),
            entries[: self._cache_size],
            ttl_seconds=self._cache_ttl,
        )
        logger.info("Leaderboard %s from %s: %d wallets", period.value, period_start.isoformat(), len(entries))
        return entries

    async def tick(self) -> dict[Period, int]:
        """Recompute every period.

        Each period is computed in its own transaction; a failing period does
        not prevent the others from being written.

        Raises:
            LeaderboardError: If any period failed.
        """
        now = self._clock()
        written: dict[Period, int] = {}
        failed: list[str] = []
        for period in Period:
            try:
                written[period] = len(await self.compute_period(period, now))
            except Exception as e:
                logger.info("Leaderboard %s failed: %s", period.value, e)
                failed.append(period.value)

        if failed:
            raise LeaderboardError(f"Leaderboard computation failed for {', '.join(failed)}")
        return written
