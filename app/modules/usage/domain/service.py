"""Wiring for the usage domain, shared by the API routes and scheduled jobs."""

from app.modules.usage.domain.analytics import HttpAnalyticsSource
from app.modules.usage.domain.cache_manager import CacheManager
from app.modules.usage.domain.config_repository import MonitoringConfigRepository
from app.modules.usage.domain.fetcher import AccountFetcher
from app.modules.usage.domain.orchestrator import ProgressiveFetchOrchestrator
from app.modules.usage.domain.prewarm import CachePrewarmJob
from app.shared.core.cache import CacheService
from app.shared.core.config import get_settings
from app.shared.core.store import get_store


def get_cache_manager() -> CacheManager:
    return CacheManager.from_settings(get_store())


def get_config_repository() -> MonitoringConfigRepository:
    return MonitoringConfigRepository(CacheService(get_store()))


def get_orchestrator() -> ProgressiveFetchOrchestrator:
    """Raises ConfigurationError when analytics credentials are missing."""
    settings = get_settings()
    cache = get_cache_manager()
    fetcher = AccountFetcher(
        HttpAnalyticsSource.from_settings(),
        cache,
        max_concurrency=settings.MAX_CONCURRENT_UPSTREAM,
    )
    return ProgressiveFetchOrchestrator(
        fetcher,
        cache,
        history_months=settings.HISTORY_MONTHS,
    )


def get_prewarm_job() -> CachePrewarmJob:
    orchestrator = get_orchestrator()
    return CachePrewarmJob(
        orchestrator,
        orchestrator.cache,
        get_store(),
        lock_ttl_seconds=get_settings().PREWARM_LOCK_TTL_SECONDS,
    )
