from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, Depends
from pydantic import Field
import structlog

from app.modules.usage.domain.cache_manager import CacheManager
from app.modules.usage.domain.config_repository import MonitoringConfigRepository
from app.modules.usage.domain.models import CamelModel
from app.modules.usage.domain.prewarm import CachePrewarmJob, PrewarmResult
from app.modules.usage.domain.service import (
    get_cache_manager,
    get_config_repository,
    get_prewarm_job,
)

router = APIRouter(tags=["Cache"])
logger = structlog.get_logger()


class PrewarmRequest(CamelModel):
    # Defaults to the configured account set
    account_ids: Optional[list[str]] = None


class CacheStatusRequest(CamelModel):
    account_ids: list[str]


class CacheStatusResponse(CamelModel):
    key: str
    cached: bool
    complete: bool = False
    cache_age_ms: Optional[int] = None
    written_at: Optional[datetime] = None
    ttl_seconds: Optional[int] = None
    missing_skus: list[str] = Field(default_factory=list)
    failed_accounts: list[str] = Field(default_factory=list)


@router.post("/prewarm", response_model=PrewarmResult)
async def prewarm_cache(
    job: Annotated[CachePrewarmJob, Depends(get_prewarm_job)],
    repository: Annotated[MonitoringConfigRepository, Depends(get_config_repository)],
    body: Optional[PrewarmRequest] = None,
) -> PrewarmResult:
    """Synchronously recompute and store the hot bundle."""
    config = await repository.load()
    account_ids = body.account_ids if body and body.account_ids else None
    return await job.run(config, account_ids)


@router.post("/status", response_model=CacheStatusResponse)
async def cache_status(
    body: CacheStatusRequest,
    cache: Annotated[CacheManager, Depends(get_cache_manager)],
    repository: Annotated[MonitoringConfigRepository, Depends(get_config_repository)],
) -> CacheStatusResponse:
    key = cache.hot_key(body.account_ids)
    now = datetime.now(timezone.utc)
    entry = await cache.get_hot(body.account_ids, now=now)
    if entry is None:
        return CacheStatusResponse(key=key, cached=False)

    config = await repository.load()
    missing = cache.missing_skus(entry.data, config)
    return CacheStatusResponse(
        key=key,
        cached=True,
        complete=not missing,
        cache_age_ms=entry.age_ms(now),
        written_at=entry.written_at,
        ttl_seconds=entry.ttl_seconds,
        missing_skus=missing,
        failed_accounts=entry.data.failed_accounts,
    )
