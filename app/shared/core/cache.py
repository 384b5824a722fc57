"""
JSON cache service over the shared key/value store.

Reads fail soft: a store error or an undecodable payload is logged and
treated as a miss. Writes fail loud with CacheWriteError so callers can
decide whether persisting was essential.
"""

import json
from datetime import timedelta
from typing import Any, Optional

import structlog

from app.shared.core.exceptions import CacheWriteError
from app.shared.core.store import KeyValueStore, get_store

logger = structlog.get_logger()


def _safe_json_loads(payload: str, key: str) -> Optional[Any]:
    """Strict JSON decode with bounded-failure behavior."""
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as exc:
        logger.warning("cache_payload_invalid_json", key=key, error=str(exc))
        return None


def _ttl_seconds(ttl: Optional[timedelta]) -> Optional[int]:
    if ttl is None:
        return None
    return max(1, int(ttl.total_seconds()))


class CacheService:
    def __init__(self, store: Optional[KeyValueStore] = None) -> None:
        self.store = store if store is not None else get_store()

    async def get(self, key: str) -> Optional[str]:
        """Raw GET; store errors read as a miss."""
        try:
            data = await self.store.get(key)
        except Exception as e:
            logger.warning("cache_get_error", key=key, error=str(e))
            return None
        if data is None:
            logger.debug("cache_miss", key=key)
        else:
            logger.debug("cache_hit", key=key)
        return data

    async def get_json(self, key: str) -> Optional[Any]:
        data = await self.get(key)
        if data is None:
            return None
        return _safe_json_loads(data, key=key)

    async def set(self, key: str, payload: str, ttl: Optional[timedelta] = None) -> None:
        try:
            await self.store.put(key, payload, _ttl_seconds(ttl))
        except Exception as e:
            logger.warning("cache_set_error", key=key, error=str(e))
            raise CacheWriteError(f"Failed to write cache key {key}: {e}", key=key) from e

    async def set_if_absent(
        self, key: str, payload: str, ttl: Optional[timedelta] = None
    ) -> bool:
        """Write only when ``key`` holds no live value. Returns True if written."""
        try:
            return await self.store.put_if_absent(key, payload, _ttl_seconds(ttl))
        except Exception as e:
            logger.warning("cache_set_error", key=key, error=str(e))
            raise CacheWriteError(f"Failed to write cache key {key}: {e}", key=key) from e

    async def delete(self, key: str) -> bool:
        try:
            await self.store.delete(key)
            logger.info("cache_invalidated", key=key)
            return True
        except Exception as e:
            logger.warning("cache_invalidate_error", key=key, error=str(e))
            return False
