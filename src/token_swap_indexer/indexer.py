"""Block range processor and indexer loop.

Each cycle reads the chain head, then walks `(cursor, head - confirmations]`
in strictly increasing chunks. For every chunk the decoded events and the
new cursor value are written in one database transaction, so the cursor
only ever names a height whose complete log set is durable. A failed chunk
leaves the cursor untouched and the same range is retried next cycle;
replays are harmless because every write is an idempotent upsert.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from token_swap_indexer.cache import (
    TOKEN_METRICS_KEY,
    TOKEN_RATE_KEY,
    TX_STATS_SUMMARY_KEY,
    CacheInvalidator,
    tx_key,
)
from token_swap_indexer.chain.client import ChainClient, RPCError
from token_swap_indexer.chain.events import EventDecoder, RateChanged, SwapOccurred
from token_swap_indexer.storage.database import DatabaseManager
from token_swap_indexer.storage.repos import (
    TX_STATUS_CONFIRMED,
    TX_STATUS_FAILED,
    TX_TYPE_SWAP,
    CursorRepository,
    RateUpdateDTO,
    RateUpdateRepository,
    SwapEventDTO,
    SwapEventRepository,
    TransactionDTO,
    TransactionRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)


class IndexerError(Exception):
    """Raised when a range cannot be committed without breaking cursor ordering."""


@dataclass
class RangeResult:
    """Summary of one committed block range."""

    from_block: int
    to_block: int
    logs_fetched: int = 0
    swaps_written: int = 0
    rate_updates_written: int = 0
    unrecognized: int = 0
    skipped: int = 0


@dataclass
class IndexerStats:
    """Statistics for the indexer loop."""

    cycles: int = 0
    failed_cycles: int = 0
    ranges_processed: int = 0
    events_persisted: int = 0
    logs_skipped: int = 0
    last_processed_block: int | None = None
    last_cycle_time: datetime | None = None
    last_error: str | None = None


class BlockRangeProcessor:
    """Fetches, decodes and persists the logs of one closed block range."""

    def __init__(
        self,
        *,
        db: DatabaseManager,
        chain: ChainClient,
        decoder: EventDecoder,
        cache: CacheInvalidator,
        contract_address: str,
        cursor_name: str,
    ) -> None:
        self._db = db
        self._chain = chain
        self._decoder = decoder
        self._cache = cache
        self._contract_address = contract_address.lower()
        self._cursor_name = cursor_name

    async def _fetch_receipts(self, tx_hashes: list[str]) -> dict[str, dict[str, Any]]:
        receipts: dict[str, dict[str, Any]] = {}
        for tx_hash in tx_hashes:
            if tx_hash not in receipts:
                receipts[tx_hash] = await self._chain.get_transaction_receipt(tx_hash)
        return receipts

    async def _previous_rate_before(self, block_number: int) -> int | None:
        """Rate in force just before `block_number`, read from the contract."""
        try:
            return await self._chain.get_tokens_per_eth(
                self._contract_address,
                block_identifier=max(block_number - 1, 0),
            )
        except RPCError as e:
            logger.warning("Could not read tokensPerEth before block %d: %s", block_number, e)
            return None

    async def _resolve_old_rates(self, rates: list[RateChanged]) -> dict[tuple[str, int], int | None]:
        """Map each rate event to the rate it replaced.

        The first event falls back to the last stored update, then to the
        contract state one block earlier; later events chain off each other.
        """
        old_rates: dict[tuple[str, int], int | None] = {}
        if not rates:
            return old_rates

        async with self._db.get_async_session() as session:
            latest = await RateUpdateRepository(session).latest()

        previous = latest.new_rate if latest is not None else None
        if previous is None:
            previous = await self._previous_rate_before(rates[0].ref.block_number)

        for event in rates:
            old_rates[(event.ref.tx_hash, event.ref.log_index)] = previous
            previous = event.new_rate
        return old_rates

    async def process_range(self, from_block: int, to_block: int, *, head: int) -> RangeResult:
        """Index `[from_block, to_block]` and advance the cursor to `to_block`.

        Raises:
            RPCError: If a chain read fails (nothing is written).
            IndexerError: If committing would move the cursor backwards.
        """
        if to_block < from_block:
            raise ValueError(f"Invalid block range [{from_block}, {to_block}]")

        logs = await self._chain.get_logs(
            address=self._contract_address,
            topics=self._decoder.topics,
            from_block=from_block,
            to_block=to_block,
        )
        decoded = self._decoder.decode_logs(logs)
        result = RangeResult(
            from_block=from_block,
            to_block=to_block,
            logs_fetched=len(logs),
            unrecognized=decoded.unrecognized,
            skipped=decoded.skipped,
        )

        swaps = [e for e in decoded.events if isinstance(e, SwapOccurred)]
        rates = [e for e in decoded.events if isinstance(e, RateChanged)]
        receipts = await self._fetch_receipts([e.ref.tx_hash for e in decoded.events])
        old_rates = await self._resolve_old_rates(rates)

        now = datetime.now(UTC)
        touched_txs: set[str] = set()
        async with self._db.get_async_session() as session:
            users = UserRepository(session)
            transactions = TransactionRepository(session)
            swap_events = SwapEventRepository(session)
            rate_updates = RateUpdateRepository(session)

            for event in decoded.events:
                receipt = receipts[event.ref.tx_hash]
                if isinstance(event, SwapOccurred):
                    if event.ref.tx_hash not in touched_txs:
                        user = await users.find_or_create(event.buyer)
                        await transactions.upsert(
                            TransactionDTO(
                                tx_hash=event.ref.tx_hash,
                                user_id=user.id,
                                from_address=event.buyer,
                                to_address=self._contract_address,
                                token_address=self._contract_address,
                                eth_amount=event.eth_amount,
                                token_amount=event.token_amount,
                                tx_type=TX_TYPE_SWAP,
                                status=TX_STATUS_CONFIRMED if receipt["status"] == 1 else TX_STATUS_FAILED,
                                block_number=event.ref.block_number,
                                block_hash=event.ref.block_hash or receipt.get("blockHash"),
                                gas_used=receipt.get("gasUsed"),
                                gas_price=receipt.get("effectiveGasPrice"),
                                confirmations=max(head - event.ref.block_number + 1, 0),
                            )
                        )
                        touched_txs.add(event.ref.tx_hash)
                    written = await swap_events.upsert(
                        SwapEventDTO(
                            tx_hash=event.ref.tx_hash,
                            log_index=event.ref.log_index,
                            block_number=event.ref.block_number,
                            block_hash=event.ref.block_hash or receipt.get("blockHash") or "",
                            buyer=event.buyer,
                            eth_amount=event.eth_amount,
                            token_amount=event.token_amount,
                            tokens_per_eth=event.tokens_per_eth,
                            created_at=now,
                        )
                    )
                    if written:
                        result.swaps_written += 1
                    logger.debug(
                        "Swap %s#%d buyer=%s eth=%d tokens=%d",
                        event.ref.tx_hash,
                        event.ref.log_index,
                        event.buyer,
                        event.eth_amount,
                        event.token_amount,
                    )
                else:
                    written = await rate_updates.insert_if_absent(
                        RateUpdateDTO(
                            old_rate=old_rates[(event.ref.tx_hash, event.ref.log_index)],
                            new_rate=event.new_rate,
                            updated_by=receipt["from"],
                            block_number=event.ref.block_number,
                            tx_hash=event.ref.tx_hash,
                            log_index=event.ref.log_index,
                            created_at=now,
                        )
                    )
                    if written:
                        result.rate_updates_written += 1
                    logger.debug("Rate update %s#%d -> %d", event.ref.tx_hash, event.ref.log_index, event.new_rate)

            try:
                await CursorRepository(session).advance(self._cursor_name, to_block)
            except ValueError as e:
                raise IndexerError(str(e)) from e

        keys: list[str] = [tx_key(tx_hash) for tx_hash in touched_txs]
        if swaps:
            keys += [TX_STATS_SUMMARY_KEY, TOKEN_METRICS_KEY]
        if rates:
            keys += [TOKEN_METRICS_KEY, TOKEN_RATE_KEY]
        await self._cache.invalidate(keys)

        logger.info(
            "Indexed blocks %d-%d: %d logs, %d swaps, %d rate updates, %d skipped",
            from_block,
            to_block,
            result.logs_fetched,
            result.swaps_written,
            result.rate_updates_written,
            result.skipped,
        )
        return result


class Indexer:
    """Drives block range processing from the persisted cursor to the head.

    Example:
        ```python
        indexer = Indexer(
            db=db,
            chain=chain,
            processor=processor,
            cursor_name="swap_indexer",
            start_block=5_000_000,
            confirmations=2,
        )
        new_cursor = await indexer.run_cycle()
        ```
    """

    def __init__(
        self,
        *,
        db: DatabaseManager,
        chain: ChainClient,
        processor: BlockRangeProcessor,
        cursor_name: str,
        start_block: int = 0,
        confirmations: int = 0,
        max_block_range: int = 2000,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        if max_block_range < 1:
            raise ValueError("max_block_range must be >= 1")
        self._db = db
        self._chain = chain
        self._processor = processor
        self._cursor_name = cursor_name
        self._start_block = start_block
        self._confirmations = confirmations
        self._max_block_range = max_block_range
        self._stop_event = stop_event
        self._stats = IndexerStats()

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    async def load_cursor(self) -> int:
        """Last fully indexed block, or `start_block - 1` if none is stored."""
        async with self._db.get_async_session() as session:
            stored = await CursorRepository(session).get(self._cursor_name)
        if stored is None:
            return max(self._start_block - 1, -1)
        return stored

    async def run_cycle(self) -> int:
        """Index everything between the cursor and the confirmed head.

        Returns:
            The cursor after the cycle.
        """
        self._stats.cycles += 1
        self._stats.last_cycle_time = datetime.now(UTC)
        try:
            cursor = await self._run_cycle()
        except Exception as e:
            self._stats.failed_cycles += 1
            self._stats.last_error = str(e) or type(e).__name__
            raise
        self._stats.last_processed_block = cursor
        return cursor

    async def _run_cycle(self) -> int:
        cursor = await self.load_cursor()
        head = await self._chain.get_block_number()
        target = head - self._confirmations
        if target <= cursor:
            logger.debug("No new confirmed blocks (cursor=%d head=%d)", cursor, head)
            return cursor

        from_block = cursor + 1
        while from_block <= target:
            if self._stop_event is not None and self._stop_event.is_set():
                logger.info("Stop requested; indexer paused at block %d", cursor)
                break
            to_block = min(from_block + self._max_block_range - 1, target)
            result = await self._processor.process_range(from_block, to_block, head=head)

            self._stats.ranges_processed += 1
            self._stats.events_persisted += result.swaps_written + result.rate_updates_written
            self._stats.logs_skipped += result.skipped
            cursor = to_block
            from_block = to_block + 1

        return cursor
