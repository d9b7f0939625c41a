"""SQLAlchemy models for persistent storage.

This module defines the database schema for the indexer cursor, the
transactional tables written by the indexer (users, transactions, swap
events, rate updates) and the derived tables written by the aggregators
(token metrics snapshots, leaderboards).
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from token_swap_indexer.storage.types import ExactDecimal, Uint256


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IndexerCursorModel(Base):
    """Highest block whose logs have been fully persisted."""

    __tablename__ = "indexer_cursors"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class UserModel(Base):
    """Wallet observed interacting with the contract."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class TransactionModel(Base):
    """On-chain transaction that emitted at least one indexed event."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)

    eth_amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    token_amount: Mapped[int] = mapped_column(Uint256, nullable=False)

    tx_type: Mapped[str] = mapped_column(String(24), nullable=False)  # SWAP_ETH_TO_TOKEN|OTHER
    status: Mapped[str] = mapped_column(String(12), nullable=False)  # PENDING|CONFIRMED|FAILED

    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    gas_used: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    gas_price: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_transactions_user_created", "user_id", "created_at"),
        Index("idx_transactions_status_type", "status", "tx_type"),
        Index("idx_transactions_block", "block_number"),
    )


class SwapEventModel(Base):
    """Decoded `TokensPurchased` log (durable truth for aggregation)."""

    __tablename__ = "swap_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)

    buyer: Mapped[str] = mapped_column(String(42), nullable=False)
    eth_amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    token_amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    tokens_per_eth: Mapped[int] = mapped_column(Uint256, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_swap_events_tx_log"),
        Index("idx_swap_events_buyer", "buyer"),
        Index("idx_swap_events_created", "created_at"),
        Index("idx_swap_events_block", "block_number", "log_index"),
    )


class RateUpdateModel(Base):
    """Append-only log of `TokensPerEthUpdated` events."""

    __tablename__ = "rate_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    old_rate: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    new_rate: Mapped[int] = mapped_column(Uint256, nullable=False)
    updated_by: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_rate_updates_tx_log", "tx_hash", "log_index", unique=True),
        Index("idx_rate_updates_block", "block_number", "log_index"),
    )


class TokenMetricsModel(Base):
    """Immutable point-in-time rollup of swap activity."""

    __tablename__ = "token_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    total_supply: Mapped[int] = mapped_column(Uint256, nullable=False)
    contract_balance: Mapped[int] = mapped_column(Uint256, nullable=False)
    total_swaps: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_volume_eth: Mapped[int] = mapped_column(Uint256, nullable=False)
    total_volume_tokens: Mapped[int] = mapped_column(Uint256, nullable=False)
    unique_users: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tokens_per_eth: Mapped[int] = mapped_column(Uint256, nullable=False)
    price_in_eth: Mapped[Decimal] = mapped_column(ExactDecimal(40, 30), nullable=False)

    __table_args__ = (Index("idx_token_metrics_timestamp", "timestamp"),)


class LeaderboardEntryModel(Base):
    """Per-period wallet ranking by ETH volume (recomputed each tick)."""

    __tablename__ = "leaderboard"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period: Mapped[str] = mapped_column(String(10), nullable=False)  # DAILY|WEEKLY|MONTHLY|ALL_TIME
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    total_swaps: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_volume_eth: Mapped[int] = mapped_column(Uint256, nullable=False)
    total_volume_tokens: Mapped[int] = mapped_column(Uint256, nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "period", "wallet_address", "period_start", name="uq_leaderboard_period_wallet_start"
        ),
        Index("idx_leaderboard_period_start_rank", "period", "period_start", "rank"),
    )
