"""
Key-value store boundary.

Flow snapshots and dedup records persist through this interface. The
contract is deliberately small: ``put(key, value, ttl?)``, ``get(key)``,
``delete(key)``, plus ``add`` (set-if-absent) so the dedup ledger can
record an event id atomically. Reads see the latest write to the same
key.

Backends:
    - InMemoryKeyValueStore: single process, development and tests
    - RedisKeyValueStore: shared across processes, survives restarts

Usage:
    store = create_store("redis", redis_url="redis://localhost:6379")
    await store.put("snapshot:demo:telegram:42:1", payload, ttl=86400)
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Persisted state boundary."""

    async def put(self, key: str, value: str, ttl: float | None = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl`` seconds if given."""
        ...

    async def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        """Store only if ``key`` is absent. Returns True when stored."""
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it existed."""
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================


class InMemoryKeyValueStore:
    """
    In-process store with per-key expiry.

    Bounded by ``max_entries``: expired entries are purged first, then the
    least recently written ones. Not shared between processes.
    """

    def __init__(
        self,
        max_entries: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._data: OrderedDict[str, tuple[str, float | None]] = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            return None
        return value

    def _store(self, key: str, value: str, ttl: float | None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expires_at)
        self._data.move_to_end(key)
        if len(self._data) > self._max_entries:
            self._cleanup()

    def _cleanup(self) -> None:
        for key in [k for k, (_, exp) in self._data.items() if self._expired(exp)]:
            del self._data[key]
        while len(self._data) > self._max_entries:
            evicted, _ = self._data.popitem(last=False)
            logger.debug(f"[store:inmemory] Evicted {evicted} (capacity)")

    async def put(self, key: str, value: str, ttl: float | None = None) -> None:
        self._store(key, value, ttl)

    async def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        if self._live(key) is not None:
            return False
        self._store(key, value, ttl)
        return True

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def delete(self, key: str) -> bool:
        exists = self._live(key) is not None
        self._data.pop(key, None)
        return exists

    def __len__(self) -> int:
        self._cleanup()
        return len(self._data)

    def keys(self, prefix: str = "") -> list[str]:
        """Live keys with ``prefix`` (for tests and diagnostics)."""
        return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]

    async def close(self) -> None:
        self._data.clear()


# =============================================================================
# Redis Implementation
# =============================================================================


class RedisKeyValueStore:
    """
    Redis-backed store.

    Storage Format:
        - Key: f"{key_prefix}:{key}"
        - Value: the string as given (JSON from callers)
        - Expiry: PX milliseconds when a ttl is given
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "packhost",
        client: Any = None,
    ) -> None:
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._client: Any = client  # redis.asyncio.Redis

    async def _get_client(self) -> Any:
        if self._client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError as e:
                raise ImportError(
                    "redis package required for RedisKeyValueStore. "
                    "Install with: pip install 'packhost[redis]'"
                ) from e
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    @staticmethod
    def _px(ttl: float | None) -> int | None:
        if ttl is None:
            return None
        return max(1, int(ttl * 1000))

    async def put(self, key: str, value: str, ttl: float | None = None) -> None:
        client = await self._get_client()
        await client.set(self._key(key), value, px=self._px(ttl))

    async def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        client = await self._get_client()
        stored = await client.set(self._key(key), value, px=self._px(ttl), nx=True)
        return bool(stored)

    async def get(self, key: str) -> str | None:
        client = await self._get_client()
        return await client.get(self._key(key))

    async def delete(self, key: str) -> bool:
        client = await self._get_client()
        return bool(await client.delete(self._key(key)))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_store(
    backend: Literal["inmemory", "redis"] = "inmemory",
    **kwargs: Any,
) -> InMemoryKeyValueStore | RedisKeyValueStore:
    """
    Create a key-value store backend.

    Example:
        store = create_store("inmemory")
        store = create_store("redis", redis_url="redis://localhost:6379")
    """
    if backend == "inmemory":
        return InMemoryKeyValueStore(**kwargs)
    elif backend == "redis":
        return RedisKeyValueStore(**kwargs)
    else:
        raise ValueError(f"Unknown backend: {backend}")
