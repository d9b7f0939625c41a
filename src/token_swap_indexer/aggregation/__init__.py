"""Aggregation - token metrics snapshots and leaderboards."""

from token_swap_indexer.aggregation.leaderboard import (
    LeaderboardCalculator,
    LeaderboardError,
    Period,
    period_bounds,
)
from token_swap_indexer.aggregation.metrics import MetricsAggregator, RateQuote, price_in_eth

__all__ = [
    "LeaderboardCalculator",
    "LeaderboardError",
    "MetricsAggregator",
    "Period",
    "RateQuote",
    "period_bounds",
    "price_in_eth",
]
