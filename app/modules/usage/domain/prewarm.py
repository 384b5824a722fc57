"""
Cache prewarm job.

Forces a full recompute for the configured account set and replaces the
hot entry. Runs are guarded by a lease so overlapping invocations (two
workers firing the same schedule, or a manual trigger during a scheduled
run) skip instead of racing on the same key.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import uuid4

import structlog
from pydantic import Field

from app.modules.usage.domain.cache_manager import CacheManager, accounts_key
from app.modules.usage.domain.models import CamelModel
from app.modules.usage.domain.monitoring import MonitoringConfig
from app.modules.usage.domain.orchestrator import ProgressiveFetchOrchestrator
from app.shared.core.exceptions import CacheWriteError
from app.shared.core.store import KeyValueStore

logger = structlog.get_logger()

PREFIX_LOCK = "lock:prewarm"


class PrewarmResult(CamelModel):
    status: Literal["ok", "skipped", "failed"]
    accounts_key: str
    skus: list[str] = Field(default_factory=list)
    failed_accounts: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    error: Optional[str] = None


class CachePrewarmJob:
    def __init__(
        self,
        orchestrator: ProgressiveFetchOrchestrator,
        cache: CacheManager,
        store: KeyValueStore,
        *,
        lock_ttl_seconds: int = 900,
    ) -> None:
        self.orchestrator = orchestrator
        self.cache = cache
        self.store = store
        self.lock_ttl_seconds = lock_ttl_seconds

    async def _acquire_lease(self, key: str, token: str) -> bool:
        try:
            return await self.store.put_if_absent(key, token, self.lock_ttl_seconds)
        except Exception as exc:
            # Fail-open: a broken lock backend must not stop the cache refresh.
            logger.warning("prewarm_lock_error", lock_key=key, error=str(exc))
            return True

    async def _release_lease(self, key: str, token: str) -> None:
        try:
            if await self.store.get(key) == token:
                await self.store.delete(key)
        except Exception as exc:
            logger.warning("prewarm_lock_release_error", lock_key=key, error=str(exc))

    async def run(
        self,
        config: MonitoringConfig,
        account_ids: Optional[Iterable[str]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> PrewarmResult:
        """
        Recompute and store the hot bundle.

        Without explicit ``account_ids`` the configured account set is used.
        Raises ConfigurationError when there are no accounts at all.
        """
        key = accounts_key(account_ids if account_ids is not None else config.account_ids)
        ids = key.split(",")
        lock_key = f"{PREFIX_LOCK}:{key}"
        token = uuid4().hex

        if not await self._acquire_lease(lock_key, token):
            logger.info("prewarm_skipped_lock_held", accounts_key=key)
            return PrewarmResult(status="skipped", accounts_key=key)

        started = time.perf_counter()
        logger.info("prewarm_started", accounts_key=key)
        try:
            bundle = await self.orchestrator.build_bundle(
                ids, config, now=now or datetime.now(timezone.utc)
            )
            duration_ms = int((time.perf_counter() - started) * 1000)
            try:
                await self.cache.put_hot(ids, bundle, now=now)
            except CacheWriteError as exc:
                logger.error("prewarm_cache_write_failed", accounts_key=key, error=exc.message)
                return PrewarmResult(
                    status="failed",
                    accounts_key=key,
                    skus=sorted(bundle.snapshots()),
                    failed_accounts=bundle.failed_accounts,
                    duration_ms=duration_ms,
                    error=exc.message,
                )
        finally:
            await self._release_lease(lock_key, token)

        logger.info(
            "prewarm_completed",
            accounts_key=key,
            skus=sorted(bundle.snapshots()),
            failed_accounts=bundle.failed_accounts,
            duration_ms=duration_ms,
        )
        return PrewarmResult(
            status="ok",
            accounts_key=key,
            skus=sorted(bundle.snapshots()),
            failed_accounts=bundle.failed_accounts,
            duration_ms=duration_ms,
        )
