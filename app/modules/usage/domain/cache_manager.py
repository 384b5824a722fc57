"""
Cache policy for usage data.

Two disjoint namespaces live in the store:

- ``hot:<accountsKey>``: the full aggregated bundle, short TTL
- ``closed-month:<accountId>:<sku>:<YYYY-MM>``: one finalized month, long
  TTL, written once

Entries are whole-value replacements; nothing is updated field by field.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from pydantic import ValidationError

from app.modules.usage.domain.models import CacheEntry, UsageBundle, UsagePeriodRecord
from app.modules.usage.domain.monitoring import MonitoringConfig
from app.shared.core.cache import CacheService
from app.shared.core.config import get_settings
from app.shared.core.exceptions import CacheIncompleteError, ConfigurationError
from app.shared.core.store import KeyValueStore

logger = structlog.get_logger()

PREFIX_HOT = "hot"
PREFIX_CLOSED_MONTH = "closed-month"


def accounts_key(account_ids: Iterable[str]) -> str:
    """Deterministic key for an account set: sorted, de-duplicated, comma-joined."""
    ids = sorted({str(a).strip() for a in account_ids if str(a).strip()})
    if not ids:
        raise ConfigurationError(
            "At least one account id is required",
            code="no_accounts",
            status_code=400,
        )
    return ",".join(ids)


class CacheManager:
    def __init__(
        self,
        cache: CacheService,
        *,
        hot_ttl: timedelta = timedelta(hours=6),
        closed_month_ttl: timedelta = timedelta(days=365),
    ) -> None:
        self.cache = cache
        self.hot_ttl = hot_ttl
        self.closed_month_ttl = closed_month_ttl

    @classmethod
    def from_settings(cls, store: Optional[KeyValueStore] = None) -> CacheManager:
        settings = get_settings()
        return cls(
            CacheService(store),
            hot_ttl=timedelta(seconds=settings.HOT_CACHE_TTL_SECONDS),
            closed_month_ttl=timedelta(seconds=settings.CLOSED_MONTH_TTL_SECONDS),
        )

    @staticmethod
    def hot_key(account_ids: Iterable[str]) -> str:
        return f"{PREFIX_HOT}:{accounts_key(account_ids)}"

    @staticmethod
    def closed_month_key(account_id: str, sku_id: str, month_key: str) -> str:
        return f"{PREFIX_CLOSED_MONTH}:{account_id}:{sku_id}:{month_key}"

    async def get_hot(
        self, account_ids: Iterable[str], now: Optional[datetime] = None
    ) -> Optional[CacheEntry]:
        key = self.hot_key(account_ids)
        payload = await self.cache.get_json(key)
        if payload is None:
            return None
        try:
            entry = CacheEntry.model_validate(payload)
        except ValidationError as exc:
            logger.warning("hot_cache_entry_invalid", key=key, error=str(exc))
            return None
        if not entry.is_live(now or datetime.now(timezone.utc)):
            logger.info("hot_cache_entry_expired", key=key)
            return None
        return entry

    async def put_hot(
        self,
        account_ids: Iterable[str],
        bundle: UsageBundle,
        now: Optional[datetime] = None,
    ) -> CacheEntry:
        """Replace the hot entry. Raises CacheWriteError if the store rejects it."""
        key = self.hot_key(account_ids)
        entry = CacheEntry(
            key=key,
            data=bundle,
            written_at=now or datetime.now(timezone.utc),
            ttl_seconds=int(self.hot_ttl.total_seconds()),
        )
        await self.cache.set(key, entry.model_dump_json(by_alias=True), self.hot_ttl)
        logger.info("hot_cache_written", key=key, skus=sorted(bundle.snapshots()))
        return entry

    async def invalidate_hot(self, account_ids: Iterable[str]) -> bool:
        return await self.cache.delete(self.hot_key(account_ids))

    async def get_closed_month(
        self, account_id: str, sku_id: str, month_key: str
    ) -> Optional[UsagePeriodRecord]:
        key = self.closed_month_key(account_id, sku_id, month_key)
        payload = await self.cache.get_json(key)
        if payload is None:
            return None
        try:
            return UsagePeriodRecord.model_validate(payload)
        except ValidationError as exc:
            logger.warning("closed_month_entry_invalid", key=key, error=str(exc))
            return None

    async def put_closed_month(
        self,
        account_id: str,
        sku_id: str,
        month_key: str,
        record: UsagePeriodRecord,
    ) -> bool:
        """Write once; an existing entry is left untouched. Returns True if written."""
        key = self.closed_month_key(account_id, sku_id, month_key)
        written = await self.cache.set_if_absent(
            key, record.model_dump_json(by_alias=True), self.closed_month_ttl
        )
        if written:
            logger.info("closed_month_cached", key=key)
        else:
            logger.debug("closed_month_already_cached", key=key)
        return written

    @staticmethod
    def missing_skus(bundle: UsageBundle, config: MonitoringConfig) -> list[str]:
        return [
            sku_id
            for sku_id in config.enabled_sku_ids()
            if bundle.snapshot(sku_id) is None
        ]

    def ensure_complete(self, entry: CacheEntry, config: MonitoringConfig) -> None:
        """Raise CacheIncompleteError when an enabled SKU has no cached snapshot."""
        missing = self.missing_skus(entry.data, config)
        if missing:
            raise CacheIncompleteError(missing, key=entry.key)
