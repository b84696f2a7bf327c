"""Key/value stores backing the durable verified set and volume history."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, *, ttl: float | None = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def scan_prefix(self, prefix: str) -> list[tuple[str, str]]:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store used when no Redis URL is configured.

    Entries are ``(value, deadline)`` pairs; a ``None`` deadline never
    expires. Expired keys are dropped lazily on read.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    def _live(self) -> Iterator[tuple[str, str]]:
        now = self._clock()
        for key, (value, deadline) in list(self._data.items()):
            if deadline is not None and deadline <= now:
                del self._data[key]
                continue
            yield key, value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            if key not in self._data:
                return None
            return dict(self._live()).get(key)

    async def set(self, key: str, value: str, *, ttl: float | None = None) -> None:
        deadline = None if ttl is None else self._clock() + max(ttl, 0.0)
        async with self._lock:
            self._data[key] = (value, deadline)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def scan_prefix(self, prefix: str) -> list[tuple[str, str]]:
        async with self._lock:
            return sorted(item for item in self._live() if item[0].startswith(prefix))


class RedisKeyValueStore(KeyValueStore):
    """``redis.asyncio`` backed store; last write wins per key."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        data = await self._client.get(key)
        if data is None:
            return None
        if isinstance(data, bytes):
            return data.decode()
        return str(data)

    async def set(self, key: str, value: str, *, ttl: float | None = None) -> None:
        expiry = int(ttl) if ttl and ttl > 0 else None
        await self._client.set(key, value, ex=expiry)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def scan_prefix(self, prefix: str) -> list[tuple[str, str]]:
        items: list[tuple[str, str]] = []
        async for raw_key in self._client.scan_iter(match=f"{prefix}*"):
            key = raw_key.decode() if isinstance(raw_key, bytes) else str(raw_key)
            value = await self.get(key)
            if value is not None:
                items.append((key, value))
        return sorted(items)

    async def close(self) -> None:
        await self._client.aclose()


def create_store(redis_url: str | None) -> KeyValueStore:
    """Return a Redis store when ``redis_url`` is set, else an in-memory one."""

    if redis_url:
        logger.info("Using Redis key/value store at %s", redis_url.split("@")[-1])
        return RedisKeyValueStore.from_url(redis_url)
    logger.info("REDIS_URL not set; verified set will not survive restarts")
    return InMemoryKeyValueStore()


__all__ = [
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "create_store",
]
