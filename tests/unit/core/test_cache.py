from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.shared.core.cache import CacheService
from app.shared.core.exceptions import CacheWriteError


@pytest.mark.asyncio
async def test_cache_set_and_get_json(cache_service: CacheService):
    await cache_service.set("k", '{"foo": "bar"}', ttl=timedelta(seconds=60))
    assert await cache_service.get("k") == '{"foo": "bar"}'
    assert await cache_service.get_json("k") == {"foo": "bar"}


@pytest.mark.asyncio
async def test_cache_get_json_invalid_payload_is_a_miss(cache_service: CacheService):
    await cache_service.set("k", "{not json")
    assert await cache_service.get_json("k") is None


@pytest.mark.asyncio
async def test_cache_get_store_error_is_a_miss():
    store = AsyncMock()
    store.get.side_effect = ConnectionError("redis down")
    service = CacheService(store)

    assert await service.get("k") is None


@pytest.mark.asyncio
async def test_cache_set_store_error_raises_cache_write_error():
    store = AsyncMock()
    store.put.side_effect = ConnectionError("redis down")
    service = CacheService(store)

    with pytest.raises(CacheWriteError) as exc:
        await service.set("hot:a", "{}", ttl=timedelta(hours=6))
    assert exc.value.key == "hot:a"
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_cache_set_passes_ttl_in_seconds():
    store = AsyncMock()
    service = CacheService(store)

    await service.set("k", "v", ttl=timedelta(hours=6))
    store.put.assert_awaited_once_with("k", "v", 21600)


@pytest.mark.asyncio
async def test_cache_set_if_absent_is_write_once(cache_service: CacheService):
    assert await cache_service.set_if_absent("k", "1") is True
    assert await cache_service.set_if_absent("k", "2") is False
    assert await cache_service.get("k") == "1"


@pytest.mark.asyncio
async def test_cache_delete_reports_failure_without_raising():
    store = AsyncMock()
    store.delete.side_effect = ConnectionError("redis down")
    service = CacheService(store)

    assert await service.delete("k") is False
