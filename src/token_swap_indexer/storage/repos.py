"""Repository pattern implementations for data access.

This module provides data access abstractions for the indexer cursor,
users, transactions, swap events, rate updates, token metrics snapshots
and leaderboard entries.

Writes that can be replayed (the indexer re-processes a block range after
a failure) are expressed as native `INSERT ... ON CONFLICT` statements so
that they are idempotent under concurrency.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from token_swap_indexer.storage.models import (
    IndexerCursorModel,
    LeaderboardEntryModel,
    RateUpdateModel,
    SwapEventModel,
    TokenMetricsModel,
    TransactionModel,
    UserModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

TX_TYPE_SWAP = "SWAP_ETH_TO_TOKEN"
TX_TYPE_OTHER = "OTHER"

TX_STATUS_PENDING = "PENDING"
TX_STATUS_CONFIRMED = "CONFIRMED"
TX_STATUS_FAILED = "FAILED"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class UserDTO:
    """Data transfer object for users."""

    id: int
    wallet_address: str
    created_at: datetime

    @classmethod
    def from_model(cls, model: UserModel) -> UserDTO:
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            created_at=_as_utc(model.created_at),
        )


@dataclass
class TransactionDTO:
    """Data transfer object for transactions."""

    tx_hash: str
    from_address: str
    to_address: str
    token_address: str
    eth_amount: int
    token_amount: int
    tx_type: str
    status: str
    user_id: int | None = None
    block_number: int | None = None
    block_hash: str | None = None
    gas_used: int | None = None
    gas_price: int | None = None
    confirmations: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            tx_hash=model.tx_hash,
            from_address=model.from_address,
            to_address=model.to_address,
            token_address=model.token_address,
            eth_amount=model.eth_amount,
            token_amount=model.token_amount,
            tx_type=model.tx_type,
            status=model.status,
            user_id=model.user_id,
            block_number=model.block_number,
            block_hash=model.block_hash,
            gas_used=model.gas_used,
            gas_price=model.gas_price,
            confirmations=model.confirmations,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class TransactionStatsDTO:
    """Counts by status plus confirmed swap volume."""

    total: int
    confirmed: int
    failed: int
    pending: int
    total_volume_eth: int


@dataclass
class SwapEventDTO:
    """Data transfer object for decoded swap events."""

    tx_hash: str
    log_index: int
    block_number: int
    block_hash: str
    buyer: str
    eth_amount: int
    token_amount: int
    tokens_per_eth: int
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SwapEventModel) -> SwapEventDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            block_hash=model.block_hash,
            buyer=model.buyer,
            eth_amount=model.eth_amount,
            token_amount=model.token_amount,
            tokens_per_eth=model.tokens_per_eth,
            created_at=_as_utc(model.created_at),
        )


@dataclass(frozen=True)
class SwapAmounts:
    """Projection of a swap event used by the aggregators."""

    buyer: str
    eth_amount: int
    token_amount: int


@dataclass
class RateUpdateDTO:
    """Data transfer object for rate updates."""

    new_rate: int
    updated_by: str
    block_number: int
    tx_hash: str
    log_index: int
    old_rate: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RateUpdateModel) -> RateUpdateDTO:
        return cls(
            new_rate=model.new_rate,
            updated_by=model.updated_by,
            block_number=model.block_number,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            old_rate=model.old_rate,
            created_at=_as_utc(model.created_at),
        )


@dataclass
class TokenMetricsDTO:
    """Data transfer object for token metrics snapshots."""

    timestamp: datetime
    total_supply: int
    contract_balance: int
    total_swaps: int
    total_volume_eth: int
    total_volume_tokens: int
    unique_users: int
    tokens_per_eth: int
    price_in_eth: Decimal

    @classmethod
    def from_model(cls, model: TokenMetricsModel) -> TokenMetricsDTO:
        return cls(
            timestamp=_as_utc(model.timestamp),
            total_supply=model.total_supply,
            contract_balance=model.contract_balance,
            total_swaps=model.total_swaps,
            total_volume_eth=model.total_volume_eth,
            total_volume_tokens=model.total_volume_tokens,
            unique_users=model.unique_users,
            tokens_per_eth=model.tokens_per_eth,
            price_in_eth=Decimal(model.price_in_eth),
        )


@dataclass
class LeaderboardEntryDTO:
    """Data transfer object for leaderboard rows."""

    period: str
    wallet_address: str
    period_start: datetime
    period_end: datetime
    total_swaps: int
    total_volume_eth: int
    total_volume_tokens: int
    rank: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: LeaderboardEntryModel) -> LeaderboardEntryDTO:
        return cls(
            period=model.period,
            wallet_address=model.wallet_address,
            period_start=_as_utc(model.period_start),
            period_end=_as_utc(model.period_end),
            total_swaps=model.total_swaps,
            total_volume_eth=model.total_volume_eth,
            total_volume_tokens=model.total_volume_tokens,
            rank=model.rank,
            updated_at=_as_utc(model.updated_at),
        )


class CursorRepository:
    """Durable, monotonically increasing indexer cursor."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, name: str) -> int | None:
        result = await self.session.execute(
            select(IndexerCursorModel.last_processed_block).where(IndexerCursorModel.name == name)
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def advance(self, name: str, block_number: int) -> None:
        """Move the cursor forward to `block_number`.

        Re-advancing to the current value is a no-op. The ON CONFLICT guard
        keeps a concurrent writer from lowering the stored value.

        Raises:
            ValueError: If `block_number` is below the stored cursor.
        """
        current = await self.get(name)
        if current is not None and block_number < current:
            raise ValueError(f"Cursor {name!r} cannot move backwards from {current} to {block_number}")

        stmt = _insert_for(self.session, IndexerCursorModel).values(
            name=name,
            last_processed_block=block_number,
            updated_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={
                "last_processed_block": stmt.excluded.last_processed_block,
                "updated_at": stmt.excluded.updated_at,
            },
            where=IndexerCursorModel.last_processed_block <= stmt.excluded.last_processed_block,
        )
        await self.session.execute(stmt)
        await self.session.flush()


class UserRepository:
    """Repository for wallets seen by the indexer."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_wallet(self, wallet_address: str) -> UserDTO | None:
        result = await self.session.execute(
            select(UserModel).where(UserModel.wallet_address == wallet_address.lower())
        )
        model = result.scalar_one_or_none()
        return UserDTO.from_model(model) if model else None

    async def find_or_create(self, wallet_address: str) -> UserDTO:
        """Return the user for `wallet_address`, creating it if needed.

        Safe under concurrent callers: the insert is a no-op when another
        writer created the row first.
        """
        wallet = wallet_address.lower()
        stmt = _insert_for(self.session, UserModel).values(
            wallet_address=wallet,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["wallet_address"])
        await self.session.execute(stmt)

        result = await self.session.execute(select(UserModel).where(UserModel.wallet_address == wallet))
        return UserDTO.from_model(result.scalar_one())

    async def count(self) -> int:
        result = await self.session.execute(select(sa.func.count()).select_from(UserModel))
        return int(result.scalar_one() or 0)


class TransactionRepository:
    """Repository for indexed transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_hash(self, tx_hash: str) -> TransactionDTO | None:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.tx_hash == tx_hash.lower())
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def upsert(self, dto: TransactionDTO) -> None:
        """Insert a transaction, or refresh its confirmation fields.

        On conflict only status, block position, gas and confirmation data
        change; the owning user and amounts are never overwritten.
        """
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, TransactionModel).values(
            tx_hash=dto.tx_hash.lower(),
            user_id=dto.user_id,
            from_address=dto.from_address.lower(),
            to_address=dto.to_address.lower(),
            token_address=dto.token_address.lower(),
            eth_amount=dto.eth_amount,
            token_amount=dto.token_amount,
            tx_type=dto.tx_type,
            status=dto.status,
            block_number=dto.block_number,
            block_hash=dto.block_hash,
            gas_used=dto.gas_used,
            gas_price=dto.gas_price,
            confirmations=dto.confirmations,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tx_hash"],
            set_={
                "status": stmt.excluded.status,
                "block_number": stmt.excluded.block_number,
                "block_hash": stmt.excluded.block_hash,
                "gas_used": stmt.excluded.gas_used,
                "gas_price": stmt.excluded.gas_price,
                "confirmations": stmt.excluded.confirmations,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_transactions(
        self,
        *,
        status: str | None = None,
        tx_type: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[TransactionDTO], int]:
        """Page through transactions, newest first.

        Returns:
            The page of transactions and the total matching count.
        """
        conditions = []
        if status is not None:
            conditions.append(TransactionModel.status == status)
        if tx_type is not None:
            conditions.append(TransactionModel.tx_type == tx_type)

        count_result = await self.session.execute(
            select(sa.func.count()).select_from(TransactionModel).where(*conditions)
        )
        total = int(count_result.scalar_one() or 0)

        result = await self.session.execute(
            select(TransactionModel)
            .where(*conditions)
            .order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
        )
        return [TransactionDTO.from_model(m) for m in result.scalars().all()], total

    async def list_for_wallet(
        self, wallet_address: str, *, page: int = 1, limit: int = 20
    ) -> tuple[list[TransactionDTO], int]:
        conditions = [UserModel.wallet_address == wallet_address.lower()]

        count_result = await self.session.execute(
            select(sa.func.count())
            .select_from(TransactionModel)
            .join(UserModel, UserModel.id == TransactionModel.user_id)
            .where(*conditions)
        )
        total = int(count_result.scalar_one() or 0)

        result = await self.session.execute(
            select(TransactionModel)
            .join(UserModel, UserModel.id == TransactionModel.user_id)
            .where(*conditions)
            .order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
        )
        return [TransactionDTO.from_model(m) for m in result.scalars().all()], total

    async def stats_summary(self) -> TransactionStatsDTO:
        result = await self.session.execute(
            select(TransactionModel.status, sa.func.count()).group_by(TransactionModel.status)
        )
        by_status = {status: int(n) for status, n in result.all()}
        total = sum(by_status.values())
        confirmed = by_status.get(TX_STATUS_CONFIRMED, 0)
        failed = by_status.get(TX_STATUS_FAILED, 0)

        # Summed in Python: SQLite would add the text-encoded amounts as floats.
        volume_result = await self.session.execute(
            select(TransactionModel.eth_amount).where(
                (TransactionModel.status == TX_STATUS_CONFIRMED)
                & (TransactionModel.tx_type == TX_TYPE_SWAP)
            )
        )
        total_volume_eth = sum(volume_result.scalars().all())

        return TransactionStatsDTO(
            total=total,
            confirmed=confirmed,
            failed=failed,
            pending=total - confirmed - failed,
            total_volume_eth=total_volume_eth,
        )


class SwapEventRepository:
    """Repository for decoded swap events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: SwapEventDTO) -> bool:
        """Insert a swap event unless `(tx_hash, log_index)` already exists.

        Returns:
            True if a new row was written.
        """
        stmt = _insert_for(self.session, SwapEventModel).values(
            tx_hash=dto.tx_hash.lower(),
            log_index=dto.log_index,
            block_number=dto.block_number,
            block_hash=dto.block_hash,
            buyer=dto.buyer.lower(),
            eth_amount=dto.eth_amount,
            token_amount=dto.token_amount,
            tokens_per_eth=dto.tokens_per_eth,
            created_at=dto.created_at or datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def count(self) -> int:
        result = await self.session.execute(select(sa.func.count()).select_from(SwapEventModel))
        return int(result.scalar_one() or 0)

    async def count_unique_buyers(self) -> int:
        result = await self.session.execute(select(sa.func.count(sa.distinct(SwapEventModel.buyer))))
        return int(result.scalar_one() or 0)

    async def iter_amounts(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> AsyncIterator[SwapAmounts]:
        """Stream `(buyer, eth_amount, token_amount)` for swaps indexed in [since, until]."""
        stmt = select(SwapEventModel.buyer, SwapEventModel.eth_amount, SwapEventModel.token_amount)
        if since is not None:
            stmt = stmt.where(SwapEventModel.created_at >= since)
        if until is not None:
            stmt = stmt.where(SwapEventModel.created_at <= until)

        result = await self.session.stream(stmt.order_by(SwapEventModel.id.asc()))
        async for buyer, eth_amount, token_amount in result:
            yield SwapAmounts(buyer=buyer, eth_amount=eth_amount, token_amount=token_amount)

    async def list_between(self, *, since: datetime, until: datetime) -> list[SwapEventDTO]:
        result = await self.session.execute(
            select(SwapEventModel)
            .where((SwapEventModel.created_at >= since) & (SwapEventModel.created_at <= until))
            .order_by(SwapEventModel.block_number.asc(), SwapEventModel.log_index.asc())
        )
        return [SwapEventDTO.from_model(m) for m in result.scalars().all()]

    async def latest(self) -> SwapEventDTO | None:
        """Most recent swap by chain position."""
        result = await self.session.execute(
            select(SwapEventModel)
            .order_by(SwapEventModel.block_number.desc(), SwapEventModel.log_index.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return SwapEventDTO.from_model(model) if model else None


class RateUpdateRepository:
    """Repository for the append-only rate update log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, tx_hash: str, log_index: int) -> bool:
        result = await self.session.execute(
            select(RateUpdateModel.id)
            .where((RateUpdateModel.tx_hash == tx_hash.lower()) & (RateUpdateModel.log_index == log_index))
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def insert_if_absent(self, dto: RateUpdateDTO) -> bool:
        """Append a rate update unless one exists for the same log.

        Returns:
            True if a new row was written.
        """
        stmt = _insert_for(self.session, RateUpdateModel).values(
            old_rate=dto.old_rate,
            new_rate=dto.new_rate,
            updated_by=dto.updated_by.lower(),
            block_number=dto.block_number,
            tx_hash=dto.tx_hash.lower(),
            log_index=dto.log_index,
            created_at=dto.created_at or datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def latest(self) -> RateUpdateDTO | None:
        result = await self.session.execute(
            select(RateUpdateModel)
            .order_by(RateUpdateModel.block_number.desc(), RateUpdateModel.log_index.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return RateUpdateDTO.from_model(model) if model else None


class TokenMetricsRepository:
    """Repository for insert-only token metrics snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: TokenMetricsDTO) -> TokenMetricsDTO:
        self.session.add(
            TokenMetricsModel(
                timestamp=dto.timestamp,
                total_supply=dto.total_supply,
                contract_balance=dto.contract_balance,
                total_swaps=dto.total_swaps,
                total_volume_eth=dto.total_volume_eth,
                total_volume_tokens=dto.total_volume_tokens,
                unique_users=dto.unique_users,
                tokens_per_eth=dto.tokens_per_eth,
                price_in_eth=dto.price_in_eth,
            )
        )
        await self.session.flush()
        return dto

    async def get_latest(self) -> TokenMetricsDTO | None:
        result = await self.session.execute(
            select(TokenMetricsModel)
            .order_by(TokenMetricsModel.timestamp.desc(), TokenMetricsModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return TokenMetricsDTO.from_model(model) if model else None

    async def list_since(self, *, since: datetime, limit: int = 1000) -> list[TokenMetricsDTO]:
        result = await self.session.execute(
            select(TokenMetricsModel)
            .where(TokenMetricsModel.timestamp >= since)
            .order_by(TokenMetricsModel.timestamp.asc(), TokenMetricsModel.id.asc())
            .limit(limit)
        )
        return [TokenMetricsDTO.from_model(m) for m in result.scalars().all()]


class LeaderboardRepository:
    """Repository for per-period leaderboard rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: LeaderboardEntryDTO) -> None:
        """Upsert keyed by `(period, wallet_address, period_start)`."""
        stmt = _insert_for(self.session, LeaderboardEntryModel).values(
            period=dto.period,
            wallet_address=dto.wallet_address.lower(),
            period_start=dto.period_start,
            period_end=dto.period_end,
            total_swaps=dto.total_swaps,
            total_volume_eth=dto.total_volume_eth,
            total_volume_tokens=dto.total_volume_tokens,
            rank=dto.rank,
            updated_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["period", "wallet_address", "period_start"],
            set_={
                "period_end": stmt.excluded.period_end,
                "total_swaps": stmt.excluded.total_swaps,
                "total_volume_eth": stmt.excluded.total_volume_eth,
                "total_volume_tokens": stmt.excluded.total_volume_tokens,
                "rank": stmt.excluded.rank,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_period(
        self, period: str, *, period_start: datetime, limit: int = 100
    ) -> list[LeaderboardEntryDTO]:
        result = await self.session.execute(
            select(LeaderboardEntryModel)
            .where(
                (LeaderboardEntryModel.period == period)
                & (LeaderboardEntryModel.period_start == period_start)
            )
            .order_by(LeaderboardEntryModel.rank.asc())
            .limit(limit)
        )
        return [LeaderboardEntryDTO.from_model(m) for m in result.scalars().all()]

    async def get_wallet_entry(
        self, period: str, wallet_address: str, *, period_start: datetime
    ) -> LeaderboardEntryDTO | None:
        result = await self.session.execute(
            select(LeaderboardEntryModel).where(
                (LeaderboardEntryModel.period == period)
                & (LeaderboardEntryModel.wallet_address == wallet_address.lower())
                & (LeaderboardEntryModel.period_start == period_start)
            )
        )
        model = result.scalar_one_or_none()
        return LeaderboardEntryDTO.from_model(model) if model else None
