"""
Persistent key/value store used for the hot cache, closed-month snapshots,
alert dedup records, stored monitoring configuration and job leases.

Redis is the production backend. The in-memory backend is kept for
single-instance dev/test; it is NOT shared across workers.
"""

import time
from collections.abc import Callable
from typing import Optional, Protocol, cast

import structlog
from redis.asyncio import Redis, from_url

from app.shared.core.async_utils import maybe_await
from app.shared.core.config import get_settings

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def put_if_absent(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> bool: ...

    async def delete(self, key: str) -> None: ...


class RedisStore:
    """redis.asyncio backed store. Errors propagate to the caller."""

    def __init__(self, client: Redis):
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        data = await maybe_await(self.client.get(key))
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return cast(Optional[str], data)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await maybe_await(self.client.set(key, value, ex=ttl_seconds))

    async def put_if_absent(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> bool:
        acquired = await maybe_await(
            self.client.set(key, value, ex=ttl_seconds, nx=True)
        )
        return bool(acquired)

    async def delete(self, key: str) -> None:
        await maybe_await(self.client.delete(key))

    async def close(self) -> None:
        await maybe_await(self.client.aclose())


class MemoryStore:
    """Process-local store honouring per-key TTLs."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._data[key] = (value, self._expiry(ttl_seconds))

    async def put_if_absent(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl_seconds))
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        self._data.clear()


_store: Optional[KeyValueStore] = None


def get_store() -> KeyValueStore:
    """Lazily build the process-wide store from settings."""
    global _store
    if _store is not None:
        return _store

    settings = get_settings()
    if settings.REDIS_URL:
        redis_from_url = cast(Callable[..., Redis], from_url)
        _store = RedisStore(redis_from_url(settings.REDIS_URL, decode_responses=True))
        logger.info("store_initialized", backend="redis")
    else:
        if not settings.TESTING:
            logger.warning(
                "store_in_memory_fallback",
                msg="Set REDIS_URL to share cache state across workers",
            )
        _store = MemoryStore()
    return _store


async def close_store() -> None:
    global _store
    if _store is None:
        return
    close = getattr(_store, "close", None)
    if callable(close):
        await maybe_await(close())
    _store = None
    logger.info("store_closed")
