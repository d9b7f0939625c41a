"""Tests for the block range processor and indexer loop."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import BUYER_1, BUYER_2, CONTRACT, ETH, OWNER, rate_log, receipt_for, swap_log, tx_hash

from token_swap_indexer.cache import CacheInvalidator
from token_swap_indexer.chain.client import RPCError
from token_swap_indexer.chain.events import EventDecoder
from token_swap_indexer.indexer import BlockRangeProcessor, Indexer, IndexerError
from token_swap_indexer.storage.database import DatabaseManager
from token_swap_indexer.storage.repos import (
    TX_STATUS_CONFIRMED,
    CursorRepository,
    RateUpdateRepository,
    SwapEventRepository,
    TransactionRepository,
    UserRepository,
)

CURSOR = "test_indexer"


class FakeChain:
    """In-memory chain: serves logs by block range and receipts by hash."""

    def __init__(self, head: int, logs: list[dict[str, Any]] | None = None) -> None:
        self.logs = list(logs or [])
        self.senders: dict[str, str] = {}
        self.get_block_number = AsyncMock(return_value=head)
        self.get_logs = AsyncMock(side_effect=self._get_logs)
        self.get_transaction_receipt = AsyncMock(side_effect=self._receipt)
        self.get_tokens_per_eth = AsyncMock(return_value=1000)

    async def _get_logs(self, *, address: str, topics: Any, from_block: int, to_block: int) -> list[dict[str, Any]]:
        return [dict(log) for log in self.logs if from_block <= log["blockNumber"] <= to_block]

    async def _receipt(self, tx: str) -> dict[str, Any]:
        log = next(log for log in self.logs if log["transactionHash"] == tx)
        return receipt_for(tx, sender=self.senders.get(tx, BUYER_1), block=log["blockNumber"])


def build(
    db: DatabaseManager,
    chain: FakeChain,
    *,
    cache: CacheInvalidator | None = None,
    start_block: int = 100,
    confirmations: int = 0,
    max_block_range: int = 2000,
    stop_event: asyncio.Event | None = None,
) -> tuple[BlockRangeProcessor, Indexer]:
    processor = BlockRangeProcessor(
        db=db,
        chain=chain,  # type: ignore[arg-type]
        decoder=EventDecoder(CONTRACT),
        cache=cache or CacheInvalidator(None),
        contract_address=CONTRACT,
        cursor_name=CURSOR,
    )
    indexer = Indexer(
        db=db,
        chain=chain,  # type: ignore[arg-type]
        processor=processor,
        cursor_name=CURSOR,
        start_block=start_block,
        confirmations=confirmations,
        max_block_range=max_block_range,
        stop_event=stop_event,
    )
    return processor, indexer


async def swap_count(db: DatabaseManager) -> int:
    async with db.get_async_session() as session:
        return await SwapEventRepository(session).count()


async def stored_cursor(db: DatabaseManager) -> int | None:
    async with db.get_async_session() as session:
        return await CursorRepository(session).get(CURSOR)


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_indexes_swaps_and_advances_cursor(self, db: DatabaseManager) -> None:
        chain = FakeChain(
            head=110,
            logs=[
                swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=1000 * ETH, block=101, tx=1),
                swap_log(buyer=BUYER_2, eth_amount=2 * ETH, token_amount=2000 * ETH, block=105, tx=2),
            ],
        )
        chain.senders[tx_hash(2)] = BUYER_2
        _, indexer = build(db, chain)

        assert await indexer.run_cycle() == 110

        assert await stored_cursor(db) == 110
        assert await swap_count(db) == 2
        async with db.get_async_session() as session:
            tx = await TransactionRepository(session).get_by_hash(tx_hash(2))
            user = await UserRepository(session).get_by_wallet(BUYER_2)
        assert tx is not None and user is not None
        assert tx.status == TX_STATUS_CONFIRMED
        assert tx.user_id == user.id
        assert tx.from_address == BUYER_2
        assert tx.to_address == CONTRACT
        assert tx.gas_used == 52_000
        assert tx.gas_price == 3_000_000_000
        assert tx.confirmations == 6
        assert indexer.stats.events_persisted == 2
        assert indexer.stats.last_processed_block == 110

    @pytest.mark.asyncio
    async def test_nothing_new(self, db: DatabaseManager) -> None:
        chain = FakeChain(head=99)
        _, indexer = build(db, chain)

        assert await indexer.run_cycle() == 99

        chain.get_logs.assert_not_awaited()
        assert await stored_cursor(db) is None

    @pytest.mark.asyncio
    async def test_ranges_are_chunked_in_increasing_order(self, db: DatabaseManager) -> None:
        chain = FakeChain(head=104)
        _, indexer = build(db, chain, max_block_range=2)

        assert await indexer.run_cycle() == 104

        ranges = [(c.kwargs["from_block"], c.kwargs["to_block"]) for c in chain.get_logs.await_args_list]
        assert ranges == [(100, 101), (102, 103), (104, 104)]
        assert indexer.stats.ranges_processed == 3

    @pytest.mark.asyncio
    async def test_stays_behind_head_by_confirmations(self, db: DatabaseManager) -> None:
        chain = FakeChain(
            head=110,
            logs=[swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=ETH, block=108, tx=1)],
        )
        _, indexer = build(db, chain, confirmations=5)

        assert await indexer.run_cycle() == 105
        assert await swap_count(db) == 0

        chain.get_block_number.return_value = 113
        assert await indexer.run_cycle() == 108
        assert await swap_count(db) == 1

    @pytest.mark.asyncio
    async def test_resumes_from_stored_cursor(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await CursorRepository(session).advance(CURSOR, 150)
        chain = FakeChain(head=160)
        _, indexer = build(db, chain)

        await indexer.run_cycle()

        assert chain.get_logs.await_args.kwargs["from_block"] == 151

    @pytest.mark.asyncio
    async def test_stop_event_interrupts_catch_up(self, db: DatabaseManager) -> None:
        stop = asyncio.Event()
        stop.set()
        chain = FakeChain(head=5000)
        _, indexer = build(db, chain, max_block_range=10, stop_event=stop)

        assert await indexer.run_cycle() == 99
        chain.get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rpc_failure_leaves_cursor_and_counts_failure(self, db: DatabaseManager) -> None:
        chain = FakeChain(head=110)
        chain.get_logs.side_effect = RPCError("timeout")
        _, indexer = build(db, chain)

        with pytest.raises(RPCError):
            await indexer.run_cycle()

        assert await stored_cursor(db) is None
        assert indexer.stats.failed_cycles == 1
        assert indexer.stats.last_error == "timeout"


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_same_log_in_two_cycles_is_stored_once(self, db: DatabaseManager) -> None:
        log = swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=500 * ETH, block=100, tx=7, log_index=2)
        chain = FakeChain(head=100, logs=[log])
        processor, _ = build(db, chain)

        first = await processor.process_range(100, 100, head=100)
        second = await processor.process_range(100, 100, head=100)

        assert first.swaps_written == 1
        assert second.swaps_written == 0
        assert await swap_count(db) == 1
        async with db.get_async_session() as session:
            _, total = await TransactionRepository(session).list_transactions()
            users = await UserRepository(session).count()
        assert total == 1
        assert users == 1

    @pytest.mark.asyncio
    async def test_failure_mid_batch_rolls_back_and_replays_cleanly(
        self, db: DatabaseManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        logs = [
            swap_log(buyer=BUYER_1 if b % 2 else BUYER_2, eth_amount=ETH, token_amount=ETH * b, block=b, tx=b)
            for b in range(100, 111)
        ]
        chain = FakeChain(head=110, logs=logs)
        _, indexer = build(db, chain)

        original = SwapEventRepository.upsert

        async def crash_at_105(self: SwapEventRepository, dto: Any) -> bool:
            if dto.block_number == 105:
                raise RuntimeError("connection lost")
            return await original(self, dto)

        monkeypatch.setattr(SwapEventRepository, "upsert", crash_at_105)
        with pytest.raises(RuntimeError):
            await indexer.run_cycle()

        assert await stored_cursor(db) is None
        assert await indexer.load_cursor() == 99
        assert await swap_count(db) == 0

        monkeypatch.setattr(SwapEventRepository, "upsert", original)
        assert await indexer.run_cycle() == 110
        assert await swap_count(db) == 11

    @pytest.mark.asyncio
    async def test_cursor_regression_is_refused(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await CursorRepository(session).advance(CURSOR, 200)
        chain = FakeChain(
            head=200,
            logs=[swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=ETH, block=150, tx=1)],
        )
        processor, _ = build(db, chain)

        with pytest.raises(IndexerError):
            await processor.process_range(150, 160, head=200)

        assert await stored_cursor(db) == 200
        assert await swap_count(db) == 0


class TestDecodingInBatch:
    @pytest.mark.asyncio
    async def test_malformed_log_is_skipped_not_fatal(self, db: DatabaseManager) -> None:
        chain = FakeChain(
            head=101,
            logs=[
                swap_log(buyer=BUYER_1, eth_amount=0, token_amount=ETH, block=100, tx=1),
                swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=ETH, block=101, tx=2),
            ],
        )
        _, indexer = build(db, chain)

        assert await indexer.run_cycle() == 101
        assert await swap_count(db) == 1
        assert indexer.stats.logs_skipped == 1

    @pytest.mark.asyncio
    async def test_rate_updates_record_previous_rate(self, db: DatabaseManager) -> None:
        chain = FakeChain(
            head=120,
            logs=[
                rate_log(new_rate=1200, block=101, tx=1),
                rate_log(new_rate=1500, block=102, tx=2),
                rate_log(new_rate=900, block=115, tx=3),
            ],
        )
        for n in (1, 2, 3):
            chain.senders[tx_hash(n)] = OWNER
        processor, _ = build(db, chain)

        await processor.process_range(100, 110, head=120)
        await processor.process_range(111, 120, head=120)

        chain.get_tokens_per_eth.assert_awaited_once()
        assert chain.get_tokens_per_eth.await_args.kwargs["block_identifier"] == 100
        async with db.get_async_session() as session:
            latest = await RateUpdateRepository(session).latest()
            first_exists = await RateUpdateRepository(session).exists(tx_hash(1), 0)
        assert first_exists
        assert latest is not None
        assert latest.new_rate == 900
        assert latest.old_rate == 1500
        assert latest.updated_by == OWNER

    @pytest.mark.asyncio
    async def test_unreadable_previous_rate_is_left_unknown(self, db: DatabaseManager) -> None:
        chain = FakeChain(head=101, logs=[rate_log(new_rate=1200, block=101, tx=1)])
        chain.senders[tx_hash(1)] = OWNER
        chain.get_tokens_per_eth.side_effect = RPCError("header not found")
        processor, _ = build(db, chain)

        result = await processor.process_range(100, 101, head=101)

        assert result.rate_updates_written == 1
        async with db.get_async_session() as session:
            latest = await RateUpdateRepository(session).latest()
        assert latest is not None
        assert latest.new_rate == 1200
        assert latest.old_rate is None

    @pytest.mark.asyncio
    async def test_receipt_fetched_once_per_transaction(self, db: DatabaseManager) -> None:
        chain = FakeChain(
            head=100,
            logs=[
                swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=ETH, block=100, tx=1, log_index=0),
                swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=ETH, block=100, tx=1, log_index=1),
            ],
        )
        processor, _ = build(db, chain)

        result = await processor.process_range(100, 100, head=100)

        assert result.swaps_written == 2
        chain.get_transaction_receipt.assert_awaited_once_with(tx_hash(1))


class TestCacheInvalidation:
    @pytest.mark.asyncio
    async def test_invalidates_after_commit(self, db: DatabaseManager) -> None:
        redis = MagicMock()
        redis.delete = AsyncMock(return_value=3)
        chain = FakeChain(
            head=100,
            logs=[
                swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=ETH, block=100, tx=1),
                rate_log(new_rate=5, block=100, tx=2, log_index=1),
            ],
        )
        processor, _ = build(db, chain, cache=CacheInvalidator(redis))

        await processor.process_range(100, 100, head=100)

        keys = set(redis.delete.await_args.args)
        assert keys == {f"tx:{tx_hash(1)}", "tx:stats:summary", "token:metrics", "token:rate"}

    @pytest.mark.asyncio
    async def test_cache_failure_does_not_fail_batch(self, db: DatabaseManager) -> None:
        from redis.exceptions import ConnectionError as RedisConnectionError

        redis = MagicMock()
        redis.delete = AsyncMock(side_effect=RedisConnectionError("down"))
        chain = FakeChain(
            head=100,
            logs=[swap_log(buyer=BUYER_1, eth_amount=ETH, token_amount=ETH, block=100, tx=1)],
        )
        processor, _ = build(db, chain, cache=CacheInvalidator(redis))

        result = await processor.process_range(100, 100, head=100)

        assert result.swaps_written == 1
        assert await stored_cursor(db) == 100
