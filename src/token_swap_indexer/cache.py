"""Redis cache keys, invalidation and publishing of aggregates.

The durable store is the source of truth. Redis only holds derived views
for readers, so every failure here is logged and swallowed rather than
allowed to abort an indexing batch or aggregation tick.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

TX_STATS_SUMMARY_KEY = "tx:stats:summary"
TOKEN_METRICS_KEY = "token:metrics"
TOKEN_RATE_KEY = "token:rate"


def tx_key(tx_hash: str) -> str:
    return f"tx:{tx_hash.lower()}"


def leaderboard_key(period: str) -> str:
    return f"leaderboard:{period}"


def _to_jsonable(value: Any) -> Any:
    # Wei amounts exceed 2**53, so integers travel as decimal strings.
    if is_dataclass(value) and not isinstance(value, type):
        return _to_jsonable(asdict(value))
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def dumps(value: Any) -> str:
    """Serialize DTOs (or plain structures) for the cache."""
    return json.dumps(_to_jsonable(value), separators=(",", ":"))


class CacheInvalidator:
    """Deletes and publishes cache entries; a no-op when Redis is absent.

    Example:
        ```python
        cache = CacheInvalidator(Redis.from_url("redis://localhost:6379"))
        await cache.invalidate([tx_key(tx_hash), TX_STATS_SUMMARY_KEY])
        await cache.set_json(TOKEN_METRICS_KEY, snapshot, ttl_seconds=300)
        ```
    """

    def __init__(self, redis: Redis | None) -> None:
        self._redis = redis

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    async def invalidate(self, keys: Iterable[str]) -> int:
        """Delete `keys`, returning how many existed."""
        unique = sorted(set(keys))
        if self._redis is None or not unique:
            return 0
        try:
            deleted = await self._redis.delete(*unique)
        except (RedisError, OSError) as e:
            logger.warning("Cache invalidation failed for %d keys: %s", len(unique), e)
            return 0
        logger.debug("Invalidated %d/%d cache keys", deleted, len(unique))
        return int(deleted)

    async def set_json(self, key: str, value: Any, *, ttl_seconds: int) -> bool:
        """Publish `value` under `key` with a TTL."""
        if self._redis is None:
            return False
        try:
            await self._redis.set(key, dumps(value), ex=ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning("Cache set failed for %s: %s", key, e)
            return False
        return True

    async def aclose(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
