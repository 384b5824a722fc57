"""
Global pytest fixtures for the Usage Sentinel test suite.

Provides:
- Test environment variables set before any app import
- Isolation of the settings cache and the store / HTTP singletons
- An in-memory store and cache service
- A fake analytics source and an orchestrator factory over it
- A FastAPI test client
"""
import os

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["REDIS_URL"] = ""
os.environ["ANALYTICS_API_TOKEN"] = "test-analytics-token"
os.environ["SCHEDULER_ENABLED"] = "false"

from typing import Generator

import pytest
from fastapi.testclient import TestClient

import app.shared.core.http as http_module
import app.shared.core.store as store_module
from app.modules.usage.domain.cache_manager import CacheManager
from app.modules.usage.domain.fetcher import AccountFetcher
from app.modules.usage.domain.orchestrator import ProgressiveFetchOrchestrator
from app.shared.core.cache import CacheService
from app.shared.core.config import get_settings
from app.shared.core.exceptions import UpstreamFetchError
from app.shared.core.store import MemoryStore
from app.shared.core.timeout import TimeoutManager


@pytest.fixture(autouse=True)
def isolate_singletons() -> Generator[None, None, None]:
    """Reset process-wide singletons so tests never share state."""
    get_settings.cache_clear()
    store_module._store = None
    http_module._client = None
    yield
    get_settings.cache_clear()
    store_module._store = None
    http_module._client = None


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def cache_service(memory_store: MemoryStore) -> CacheService:
    return CacheService(memory_store)


class FakeAnalyticsSource:
    """
    In-memory analytics source.

    ``usage`` and ``zone_usage`` are keyed by ``(id, sku_id, "YYYY-MM")``;
    anything missing reads as an empty payload. ``failing`` holds account or
    zone ids (optionally ``(id, sku_id)`` or ``(id, sku_id, month)``) whose
    queries raise UpstreamFetchError.
    """

    def __init__(self, zones=None, usage=None, zone_usage=None, failing=None):
        self.zones = zones or {}
        self.usage = usage or {}
        self.zone_usage = zone_usage or {}
        self.failing = set(failing or ())
        self.calls: list[tuple] = []

    def _check(self, target_id, sku_id=None, month=None):
        for key in (target_id, (target_id, sku_id), (target_id, sku_id, month)):
            if key in self.failing:
                raise UpstreamFetchError(
                    f"upstream unavailable for {target_id}",
                    account_id=target_id,
                    sku_id=sku_id,
                )

    async def list_zones(self, account_id):
        self.calls.append(("zones", account_id))
        self._check(account_id)
        return list(self.zones.get(account_id, []))

    async def query_usage(self, account_id, sku_id, start, end):
        month = f"{start.year:04d}-{start.month:02d}"
        self.calls.append(("usage", account_id, sku_id, month))
        self._check(account_id, sku_id, month)
        return self.usage.get((account_id, sku_id, month), {})

    async def query_zone_usage(self, zone_id, sku_id, start, end):
        month = f"{start.year:04d}-{start.month:02d}"
        self.calls.append(("zone_usage", zone_id, sku_id, month))
        self._check(zone_id, sku_id, month)
        return self.zone_usage.get((zone_id, sku_id, month), {})

    def usage_calls(self, month=None):
        return [
            call
            for call in self.calls
            if call[0] in {"usage", "zone_usage"} and (month is None or call[3] == month)
        ]


@pytest.fixture
def source_factory():
    return FakeAnalyticsSource


@pytest.fixture
def cache_manager(cache_service: CacheService) -> CacheManager:
    return CacheManager(cache_service)


@pytest.fixture
def make_orchestrator(cache_manager: CacheManager):
    """Build an orchestrator over a fake source and the in-memory cache."""

    def _build(source: FakeAnalyticsSource, history_months: int = 3):
        fetcher = AccountFetcher(
            source, cache_manager, timeout=TimeoutManager("upstream", total=5.0)
        )
        return ProgressiveFetchOrchestrator(
            fetcher, cache_manager, history_months=history_months
        )

    return _build


@pytest.fixture
def app():
    from app.main import app as fastapi_app

    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client
