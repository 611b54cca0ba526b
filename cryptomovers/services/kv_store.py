"""Key-value store adapters with TTLs and no transactions.

Two backends share one contract: an in-process TTL store (development and
tests) and Redis. Values are strings; every write carries an explicit TTL.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..config import Settings, settings as default_settings
from ..core.errors import ConfigurationError, StoreError

logger = logging.getLogger(__name__)


class KVStore(ABC):
    """Async get/put/delete with TTL."""

    name: str = "kv"
    # True when put_if_absent is a single atomic operation in the backend.
    atomic_conditional_put: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        """Store value under key, expiring after ttl_seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Deleting a missing key is not an error."""

    async def put_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool:
        """Write only when key is absent. Returns True if the write happened.

        The default is a read followed by a write and can race; backends with
        a conditional write primitive override it.
        """
        if await self.get(key) is not None:
            return False
        await self.put(key, value, ttl_seconds=ttl_seconds)
        return True

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


@dataclass
class _Entry:
    value: str
    expires_at: float


class MemoryKVStore(KVStore):
    """In-memory TTL store with LRU eviction."""

    name = "memory"
    atomic_conditional_put = True

    def __init__(self, max_size: int = 1000, clock: Optional[Callable[[], float]] = None):
        self.max_size = max_size
        self._clock = clock or time.time
        self._entries: Dict[str, _Entry] = {}
        self._access_order: List[str] = []
        self._lock = asyncio.Lock()

    def _live_entry(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._forget(key)
            return None
        return entry

    def _forget(self, key: str) -> None:
        self._entries.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)

    def _store(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)
        if key in self._access_order:
            self._access_order.remove(key)
        self._access_order.append(key)

        # Evict least recently used
        while len(self._entries) > self.max_size:
            oldest = self._access_order.pop(0)
            self._entries.pop(oldest, None)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            self._access_order.remove(key)
            self._access_order.append(key)
            return entry.value

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        async with self._lock:
            self._store(key, value, ttl_seconds)

    async def put_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._store(key, value, ttl_seconds)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._forget(key)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._access_order.clear()

    def size(self) -> int:
        return len(self._entries)


class RedisKVStore(KVStore):
    """Redis-backed store. Conditional writes use SET NX EX."""

    name = "redis"
    atomic_conditional_put = True

    def __init__(self, url: str, *, client: Optional[redis.Redis] = None):
        self._url = url
        self._client = client or redis.from_url(url, encoding="utf-8", decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as exc:
            raise StoreError(f"KV get failed for {key}: {exc}") from exc

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise StoreError(f"KV put failed for {key}: {exc}") from exc

    async def put_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool:
        try:
            return bool(await self._client.set(key, value, ex=ttl_seconds, nx=True))
        except RedisError as exc:
            raise StoreError(f"KV conditional put failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise StoreError(f"KV delete failed for {key}: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._client.aclose()


def create_kv_store(config: Optional[Settings] = None) -> KVStore:
    """Build the store named by settings.kv_url."""
    config = config or default_settings
    if not config.has_kv_binding:
        raise ConfigurationError("KV_STORE binding missing")

    url = config.kv_url.strip()
    if url.startswith("memory://"):
        return MemoryKVStore(max_size=config.memory_kv_max_size)
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisKVStore(url)
    raise ConfigurationError(f"Unsupported KV_STORE url scheme: {url.split('://', 1)[0]}")


__all__ = [
    "KVStore",
    "MemoryKVStore",
    "RedisKVStore",
    "create_kv_store",
]
