"""Periodic token metrics snapshots.

A snapshot rolls up the full swap history (count, exact ETH and token
volume, distinct buyers) together with the latest observed exchange rate
and the price derived from it. Snapshots are insert-only.
"""

from __future__ import annotations

import decimal
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from token_swap_indexer.cache import TOKEN_METRICS_KEY, CacheInvalidator
from token_swap_indexer.storage.database import DatabaseManager
from token_swap_indexer.storage.repos import (
    RateUpdateRepository,
    SwapEventRepository,
    TokenMetricsDTO,
    TokenMetricsRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_TOTAL_SUPPLY_WEI = 10**27
DEFAULT_CACHE_TTL_SECONDS = 300
PRICE_DECIMAL_PLACES = 30

_PRICE_QUANTUM = Decimal(1).scaleb(-PRICE_DECIMAL_PLACES)


def price_in_eth(tokens_per_eth: int) -> Decimal:
    """ETH paid per token at `tokens_per_eth`.

    Raises:
        ZeroDivisionError: If `tokens_per_eth` is zero.
    """
    if tokens_per_eth == 0:
        raise ZeroDivisionError("tokens_per_eth is zero")
    with decimal.localcontext() as ctx:
        ctx.prec = 100
        return (Decimal(1) / Decimal(tokens_per_eth)).quantize(_PRICE_QUANTUM, rounding=decimal.ROUND_HALF_EVEN)


@dataclass(frozen=True)
class RateQuote:
    """Best known exchange rate and where it came from."""

    tokens_per_eth: int
    price_in_eth: Decimal | None
    source: str  # snapshot | rate_update
    as_of: datetime | None = None


class MetricsAggregator:
    """Writes token metrics snapshots from persisted swap events.

    Example:
        ```python
        aggregator = MetricsAggregator(db=db, cache=cache)
        snapshot = await aggregator.tick()  # None when there is nothing to report
        quote = await aggregator.current_rate()
        ```
    """

    def __init__(
        self,
        *,
        db: DatabaseManager,
        cache: CacheInvalidator,
        total_supply_wei: int = DEFAULT_TOTAL_SUPPLY_WEI,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._cache = cache
        self._total_supply = total_supply_wei
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    async def tick(self) -> TokenMetricsDTO | None:
        """Compute and store one snapshot.

        Returns:
            The written snapshot, or None if the tick was skipped.
        """
        async with self._db.get_async_session() as session:
            swaps = SwapEventRepository(session)
            latest = await swaps.latest()
            if latest is None:
                logger.info("No swap events found, skipping metrics snapshot")
                return None
            if latest.tokens_per_eth == 0:
                logger.info("Latest swap %s has a zero rate, skipping metrics snapshot", latest.tx_hash)
                return None

            total_swaps = 0
            total_volume_eth = 0
            total_volume_tokens = 0
            async for amounts in swaps.iter_amounts():
                total_swaps += 1
                total_volume_eth += amounts.eth_amount
                total_volume_tokens += amounts.token_amount

            snapshot = TokenMetricsDTO(
                timestamp=self._clock(),
                total_supply=self._total_supply,
                contract_balance=0,
                total_swaps=total_swaps,
                total_volume_eth=total_volume_eth,
                total_volume_tokens=total_volume_tokens,
                unique_users=await swaps.count_unique_buyers(),
                tokens_per_eth=latest.tokens_per_eth,
                price_in_eth=price_in_eth(latest.tokens_per_eth),
            )
            await TokenMetricsRepository(session).insert(snapshot)

        await self._cache.set_json(TOKEN_METRICS_KEY, snapshot, ttl_seconds=self._cache_ttl)
        logger.info(
            "Token metrics snapshot: %d swaps, %d wei volume, %d users, rate %d",
            snapshot.total_swaps,
            snapshot.total_volume_eth,
            snapshot.unique_users,
            snapshot.tokens_per_eth,
        )
        return snapshot

    async def current_rate(self) -> RateQuote | None:
        """Latest rate from a snapshot, else from the rate update log.

        Returns None when neither exists, never a value derived from a zero rate.
        """
        async with self._db.get_async_session() as session:
            snapshot = await TokenMetricsRepository(session).get_latest()
            if snapshot is not None and snapshot.tokens_per_eth > 0:
                return RateQuote(
                    tokens_per_eth=snapshot.tokens_per_eth,
                    price_in_eth=snapshot.price_in_eth,
                    source="snapshot",
                    as_of=snapshot.timestamp,
                )
            update = await RateUpdateRepository(session).latest()

        if update is None:
            return None
        return RateQuote(
            tokens_per_eth=update.new_rate,
            price_in_eth=price_in_eth(update.new_rate) if update.new_rate > 0 else None,
            source="rate_update",
            as_of=update.created_at,
        )
