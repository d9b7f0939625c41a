"""Chain access - RPC client and event decoding."""

from token_swap_indexer.chain.client import ChainClient, ChainClientError, RPCError
from token_swap_indexer.chain.events import (
    DecodedEvent,
    DecodeError,
    EventDecoder,
    RateChanged,
    SwapOccurred,
    UnrecognizedEvent,
)

__all__ = [
    "ChainClient",
    "ChainClientError",
    "DecodeError",
    "DecodedEvent",
    "EventDecoder",
    "RPCError",
    "RateChanged",
    "SwapOccurred",
    "UnrecognizedEvent",
]
