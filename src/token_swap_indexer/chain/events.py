"""Typed decoding of the token sale contract's event logs.

Raw `eth_getLogs` entries are turned into one of a closed set of event
types. Logs with topics this decoder does not know are returned as
`UnrecognizedEvent` and ignored downstream, so new contract events do not
break indexing. A log whose topic is known but whose payload cannot be
decoded raises `DecodeError` from `decode_log`; `decode_logs` skips such
logs with a warning instead of failing the whole batch.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, TypeAlias

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from token_swap_indexer.chain.client import to_hex

logger = logging.getLogger(__name__)

TOKENS_PURCHASED_SIGNATURE = "TokensPurchased(address,uint256,uint256)"
TOKENS_PER_ETH_UPDATED_SIGNATURE = "TokensPerEthUpdated(uint256)"

TOKENS_PURCHASED_TOPIC = to_hex(Web3.keccak(text=TOKENS_PURCHASED_SIGNATURE))
TOKENS_PER_ETH_UPDATED_TOPIC = to_hex(Web3.keccak(text=TOKENS_PER_ETH_UPDATED_SIGNATURE))


class DecodeError(Exception):
    """Raised when a log with a recognized topic cannot be decoded."""


@dataclass(frozen=True)
class LogRef:
    """Position of a log on chain."""

    tx_hash: str
    log_index: int
    block_number: int
    block_hash: str


@dataclass(frozen=True)
class SwapOccurred:
    """A `TokensPurchased(buyer, ethAmount, tokenAmount)` event."""

    ref: LogRef
    buyer: str
    eth_amount: int
    token_amount: int

    @property
    def tokens_per_eth(self) -> int:
        """Exchange rate paid by this swap (integer division, wei/wei)."""
        return self.token_amount // self.eth_amount


@dataclass(frozen=True)
class RateChanged:
    """A `TokensPerEthUpdated(newRate)` event."""

    ref: LogRef
    new_rate: int


@dataclass(frozen=True)
class UnrecognizedEvent:
    """Any other log; always ignored."""

    ref: LogRef
    topic0: str | None


DecodedEvent: TypeAlias = SwapOccurred | RateChanged | UnrecognizedEvent


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding a batch of logs."""

    events: list[SwapOccurred | RateChanged]
    unrecognized: int
    skipped: int


def _topic_to_address(topic: Any) -> str:
    hexed = to_hex(topic)[2:]
    if len(hexed) != 64:
        raise DecodeError(f"Address topic must be 32 bytes, got {len(hexed) // 2}")
    return ("0x" + hexed[-40:]).lower()


def _data_bytes(data: Any) -> bytes:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    text = str(data)
    if text.startswith("0x"):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise DecodeError(f"Log data is not hex: {e}") from e


def _log_ref(log: dict[str, Any]) -> LogRef:
    log_index = log.get("logIndex")
    if log_index is None:
        log_index = log.get("log_index")
    if log_index is None:
        raise DecodeError(f"Log in {log.get('transactionHash')!r} has no logIndex")
    return LogRef(
        tx_hash=to_hex(log["transactionHash"]),
        log_index=int(log_index),
        block_number=int(log["blockNumber"]),
        block_hash=to_hex(log["blockHash"]) if log.get("blockHash") is not None else "",
    )


class EventDecoder:
    """Decodes raw logs emitted by a single contract."""

    def __init__(self, contract_address: str) -> None:
        self._contract_address = contract_address.lower()

    @property
    def topics(self) -> list[list[str]]:
        """Topic filter (topic0 OR-list) selecting every decodable event."""
        return [[TOKENS_PURCHASED_TOPIC, TOKENS_PER_ETH_UPDATED_TOPIC]]

    def decode_log(self, log: dict[str, Any]) -> DecodedEvent:
        """Decode one raw log.

        Raises:
            DecodeError: If the topic is recognized but the payload is malformed.
        """
        try:
            ref = _log_ref(log)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Log is missing position fields: {e}") from e

        topics = [to_hex(t) for t in (log.get("topics") or [])]
        topic0 = topics[0] if topics else None

        address = log.get("address")
        if address is not None and str(address).lower() != self._contract_address:
            return UnrecognizedEvent(ref=ref, topic0=topic0)

        if topic0 == TOKENS_PURCHASED_TOPIC:
            return self._decode_swap(ref, topics, log.get("data"))
        if topic0 == TOKENS_PER_ETH_UPDATED_TOPIC:
            return self._decode_rate(ref, log.get("data"))
        return UnrecognizedEvent(ref=ref, topic0=topic0)

    def _decode_swap(self, ref: LogRef, topics: list[str], data: Any) -> SwapOccurred:
        if len(topics) < 2:
            raise DecodeError("TokensPurchased log is missing the indexed buyer topic")
        buyer = _topic_to_address(topics[1])
        try:
            eth_amount, token_amount = abi_decode(["uint256", "uint256"], _data_bytes(data))
        except (DecodingError, TypeError) as e:
            raise DecodeError(f"Malformed TokensPurchased data: {e}") from e
        if eth_amount <= 0:
            raise DecodeError("TokensPurchased with zero ethAmount has no exchange rate")
        return SwapOccurred(
            ref=ref,
            buyer=buyer,
            eth_amount=int(eth_amount),
            token_amount=int(token_amount),
        )

    def _decode_rate(self, ref: LogRef, data: Any) -> RateChanged:
        try:
            (new_rate,) = abi_decode(["uint256"], _data_bytes(data))
        except (DecodingError, TypeError) as e:
            raise DecodeError(f"Malformed TokensPerEthUpdated data: {e}") from e
        return RateChanged(ref=ref, new_rate=int(new_rate))

    def decode_logs(self, logs: Iterable[dict[str, Any]]) -> DecodeResult:
        """Decode a batch, skipping malformed logs, ordered by chain position."""
        events: list[SwapOccurred | RateChanged] = []
        unrecognized = 0
        skipped = 0
        for log in logs:
            try:
                event = self.decode_log(log)
            except DecodeError as e:
                skipped += 1
                logger.warning(
                    "Skipping undecodable log tx=%s index=%s: %s",
                    log.get("transactionHash"),
                    log.get("logIndex"),
                    e,
                )
                continue
            if isinstance(event, UnrecognizedEvent):
                unrecognized += 1
                continue
            events.append(event)

        events.sort(key=lambda ev: (ev.ref.block_number, ev.ref.log_index))
        return DecodeResult(events=events, unrecognized=unrecognized, skipped=skipped)
