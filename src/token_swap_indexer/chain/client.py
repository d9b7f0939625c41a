"""Read-only chain client with retries, failover and bounded calls.

This module provides the chain reader used by the indexer with:
- Retry logic with exponential backoff
- Failover to a secondary RPC URL
- Rate limiting to respect provider limits
- A hard timeout on every RPC call
- Optional Redis caching of (immutable) transaction receipts
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
RECEIPT_CACHE_TTL_SECONDS = 3600

TOKENS_PER_ETH_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [],
        "name": "tokensPerEth",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]

# Errors that mean "the endpoint is unhealthy right now", as opposed to bugs.
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    TimeoutError,
    OSError,
)


def to_hex(value: Any) -> str:
    """Render HexBytes/bytes/str values as a lower-case 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    hexed = value.hex() if hasattr(value, "hex") and not isinstance(value, str) else str(value)
    if not hexed.startswith("0x"):
        hexed = "0x" + hexed
    return hexed.lower()


def _normalize_receipt(receipt: Any) -> dict[str, Any]:
    raw = dict(receipt)
    to_address = raw.get("to")
    gas_price = raw.get("effectiveGasPrice")
    if gas_price is None:
        gas_price = raw.get("gasPrice")
    return {
        "transactionHash": to_hex(raw["transactionHash"]),
        "blockNumber": int(raw["blockNumber"]),
        "blockHash": to_hex(raw["blockHash"]),
        "status": int(raw.get("status", 1)),
        "from": str(raw["from"]).lower(),
        "to": str(to_address).lower() if to_address else None,
        "gasUsed": int(raw["gasUsed"]) if raw.get("gasUsed") is not None else None,
        "effectiveGasPrice": int(gas_price) if gas_price is not None else None,
    }


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after retries and failover."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Read-only JSON-RPC client for the indexed contract's chain.

    Example:
        ```python
        client = ChainClient(
            "https://sepolia.drpc.org",
            fallback_rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
            request_timeout_seconds=15,
        )

        head = await client.get_block_number()
        logs = await client.get_logs(
            address="0x...",
            topics=[[swap_topic, rate_topic]],
            from_block=head - 100,
            to_block=head,
        )
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for receipt caching.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            request_timeout_seconds: Hard upper bound for a single call.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._timeout = request_timeout_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "chain:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        return AsyncWeb3(AsyncHTTPProvider(rpc_url))

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_endpoint(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
    ) -> tuple[bool, Any, BaseException | None]:
        last_error: BaseException | None = None
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                result = await asyncio.wait_for(method(*args), timeout=self._timeout)
                return True, result, None
            except _TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e or type(e).__name__,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False, None, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: BaseException | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._call_endpoint(self._w3, "Primary", func_name, *args)
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, error = await self._call_endpoint(
                self._w3_fallback, "Fallback", func_name, *args
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = error

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error!r}")

    async def get_block_number(self) -> int:
        """Get the current chain head height."""
        return int(await self._execute_with_retry("get_block_number"))

    async def get_logs(
        self,
        *,
        address: str,
        topics: Sequence[Any],
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Fetch logs emitted by `address` matching `topics` in [from_block, to_block]."""
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range [{from_block}, {to_block}]")
        logs = await self._execute_with_retry(
            "get_logs",
            {
                "address": AsyncWeb3.to_checksum_address(address),
                "topics": list(topics),
                "fromBlock": from_block,
                "toBlock": to_block,
            },
        )
        return [dict(log) for log in logs]

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        """Get a transaction receipt as a plain dict.

        Receipts of mined transactions never change, so they are cached.
        """
        cache_key = f"{self._cache_prefix}receipt:{tx_hash.lower()}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return dict(json.loads(cached))

        receipt = await self._execute_with_retry("get_transaction_receipt", tx_hash)
        if receipt is None:
            raise RPCError(f"Receipt not found for {tx_hash}")
        normalized = _normalize_receipt(receipt)
        await self._set_cached(cache_key, json.dumps(normalized), RECEIPT_CACHE_TTL_SECONDS)
        return normalized

    async def get_tokens_per_eth(self, contract_address: str, *, block_identifier: int | str = "latest") -> int:
        """Read the contract's `tokensPerEth()` view as of a block."""
        await self._rate_limiter.acquire()
        w3 = self._w3 if self._primary_healthy else (self._w3_fallback or self._w3)
        contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=TOKENS_PER_ETH_ABI,
        )
        try:
            rate = await asyncio.wait_for(
                contract.functions.tokensPerEth().call(block_identifier=block_identifier),
                timeout=self._timeout,
            )
        except _TRANSIENT_ERRORS as e:
            raise RPCError(f"Failed to read tokensPerEth: {e!r}") from e
        return int(rate)

    async def health_check(self) -> bool:
        """Check if the client can reach an RPC endpoint."""
        try:
            await self.get_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
