"""TTL key-value backends.

Provides:
- KVStore: Abstract base class shared by the event store and the caches
- MemoryKV: In-process store with TTL (tests and single-process deployments)
- RedisKV: Redis-backed store for distributed deployments

Both backends serialize values as JSON and offer an atomic
``set_if_absent`` used for event dedup keys and fetch fingerprints.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from cortex.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class KVEntry:
    """A single stored value with expiration."""

    data: str
    expires_at: float | None = None  # Unix timestamp, None = no expiration

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class KVStore(ABC):
    """Abstract base class for TTL key-value stores."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get a value, or None if absent or expired."""

    @abstractmethod
    async def mget(self, keys: list[str]) -> list[Any | None]:
        """Get several values; missing entries come back as None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Set a value with an optional TTL in seconds."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Atomically set *key* only if it does not exist. Returns True if written."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]:
        """List live keys starting with *prefix*."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


class MemoryKV(KVStore):
    """In-memory key-value store with TTL support.

    Thread-safe and atomic for ``set_if_absent``. Expired entries are
    dropped lazily on access.

    Args:
        clock: Callable returning the current Unix time (injectable for tests)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: dict[str, KVEntry] = {}
        self._lock = Lock()
        self._clock = clock

    def _live(self, key: str) -> KVEntry | None:
        """Return the live entry for *key*. Must be called with lock held."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: int | None) -> float | None:
        return self._clock() + ttl if ttl else None

    async def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key)
        return json.loads(entry.data) if entry else None

    async def mget(self, keys: list[str]) -> list[Any | None]:
        with self._lock:
            entries = [self._live(k) for k in keys]
        return [json.loads(e.data) if e else None for e in entries]

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        data = json.dumps(value)
        with self._lock:
            self._data[key] = KVEntry(data=data, expires_at=self._expiry(ttl))

    async def set_if_absent(self, key: str, value: Any, ttl: int | None = None) -> bool:
        data = json.dumps(value)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = KVEntry(data=data, expires_at=self._expiry(ttl))
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def keys(self, prefix: str) -> list[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k)]


class RedisKV(KVStore):
    """Redis-backed key-value store.

    Every Redis failure is raised as :class:`StoreUnavailableError` so callers
    abort instead of treating an unreachable store as an empty one.

    Args:
        url: Redis URL (default: redis://localhost:6379/0)
        prefix: Key prefix for namespacing (default: "cortex:")
        client: Pre-built ``redis.asyncio`` client (tests)
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "cortex:",
        client: aioredis.Redis | None = None,
    ):
        self._url = url
        self._prefix = prefix
        self._client = client

    def _get_client(self) -> aioredis.Redis:
        """Lazy-load the async Redis client."""
        if self._client is None:
            self._client = aioredis.from_url(self._url)
        return self._client

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def _decode(data: bytes | str | None) -> Any | None:
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        return json.loads(data)

    async def get(self, key: str) -> Any | None:
        try:
            data = await self._get_client().get(self._make_key(key))
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis get failed: {exc}", store="redis") from exc
        return self._decode(data)

    async def mget(self, keys: list[str]) -> list[Any | None]:
        if not keys:
            return []
        try:
            values = await self._get_client().mget([self._make_key(k) for k in keys])
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis mget failed: {exc}", store="redis") from exc
        return [self._decode(v) for v in values]

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            await self._get_client().set(self._make_key(key), json.dumps(value), ex=ttl or None)
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis set failed: {exc}", store="redis") from exc

    async def set_if_absent(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            written = await self._get_client().set(
                self._make_key(key), json.dumps(value), ex=ttl or None, nx=True
            )
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis set NX failed: {exc}", store="redis") from exc
        return bool(written)

    async def delete(self, key: str) -> bool:
        try:
            return await self._get_client().delete(self._make_key(key)) > 0
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis delete failed: {exc}", store="redis") from exc

    async def keys(self, prefix: str) -> list[str]:
        client = self._get_client()
        found: list[str] = []
        cursor = 0
        try:
            while True:
                cursor, batch = await client.scan(
                    cursor=cursor, match=f"{self._make_key(prefix)}*", count=100
                )
                for raw in batch:
                    name = raw.decode() if isinstance(raw, bytes) else raw
                    found.append(name[len(self._prefix) :])
                if cursor == 0:
                    break
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis scan failed: {exc}", store="redis") from exc
        return found

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_kv(backend: str, redis_url: str = "", prefix: str = "cortex:") -> KVStore:
    """Create the configured key-value backend."""
    if backend == "redis":
        logger.info("Using Redis key-value store at %s", redis_url)
        return RedisKV(url=redis_url, prefix=prefix)
    if backend != "memory":
        raise ValueError(f"Unknown kv backend: {backend!r}")
    logger.debug("Using in-memory key-value store")
    return MemoryKV()
