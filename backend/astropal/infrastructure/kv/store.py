"""
Key/Value Store

Shared TTL'd key/value space for the content cache, metrics records and
the email queue. Redis in production; an in-process dictionary when no
REDIS_URL is configured (development and tests).
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis


logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """String values with a per-key expiry."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def keys(self, prefix: str) -> List[str]:
        ...

    async def close(self) -> None:
        ...


class RedisKeyValueStore:
    """Redis-backed store (SET key value EX ttl)."""

    def __init__(self, url: str, client: Optional[aioredis.Redis] = None):
        self._url = url
        self._client = client or aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def keys(self, prefix: str) -> List[str]:
        return [key async for key in self._client.scan_iter(match=f"{prefix}*")]

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis connection closed")


class MemoryKeyValueStore:
    """
    In-process store with lazy expiry.

    Not shared between processes; only for development and tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        return sorted(
            key for key in list(self._data)
            if key.startswith(prefix) and self._live(key) is not None
        )

    async def close(self) -> None:
        self._data.clear()


def create_key_value_store(redis_url: Optional[str]) -> KeyValueStore:
    """Redis when a URL is configured, otherwise the in-process store."""
    if redis_url:
        logger.info("Using Redis key/value store")
        return RedisKeyValueStore(redis_url)
    logger.warning("REDIS_URL not set, using in-memory key/value store")
    return MemoryKeyValueStore()
