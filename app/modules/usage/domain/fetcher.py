"""
Per-account usage retrieval for one SKU.

Current-month figures are always queried live. Closed months (previous
month and history) come from the long-TTL closed-month cache and are
queried and written back only on a miss.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Optional, TypeVar, Union

import structlog

from app.modules.usage.domain.aggregator import combine_all, merge_confidence
from app.modules.usage.domain.analytics import AnalyticsSource
from app.modules.usage.domain.cache_manager import CacheManager
from app.modules.usage.domain.models import (
    Confidence,
    MonthPoint,
    UsagePeriodRecord,
    ZoneUsage,
)
from app.modules.usage.domain.monitoring import SkuConfig, ZoneRef
from app.modules.usage.domain.periods import MonthRange, UsageWindow
from app.modules.usage.domain.skus import SkuDefinition, SkuScope, get_sku
from app.shared.core.async_utils import gather_settled
from app.shared.core.exceptions import CacheWriteError
from app.shared.core.timeout import TimeoutManager

logger = structlog.get_logger()

T = TypeVar("T")


class FetchDepth(str, Enum):
    CURRENT = "current"  # live current month only
    FULL = "full"  # current, previous and closed-month history


class AccountFetcher:
    def __init__(
        self,
        source: AnalyticsSource,
        cache: CacheManager,
        *,
        timeout: Optional[TimeoutManager] = None,
        max_concurrency: int = 8,
    ) -> None:
        self.source = source
        self.cache = cache
        self.timeout = timeout or TimeoutManager("upstream")
        # Every analytics request from every fan-out level takes a slot here.
        self.upstream_slots = asyncio.Semaphore(max_concurrency)

    async def _call_upstream(
        self,
        call: Callable[..., Awaitable[T]],
        *args: Any,
        account_id: str,
        sku_id: Optional[str] = None,
    ) -> T:
        async with self.upstream_slots:
            return await self._timed(call, *args, account_id=account_id, sku_id=sku_id)

    async def _timed(
        self,
        call: Callable[..., Awaitable[T]],
        *args: Any,
        account_id: str,
        sku_id: Optional[str] = None,
    ) -> T:
        return await self.timeout.execute_with_timeout(
            call, *args, account_id=account_id, sku_id=sku_id
        )

    async def zone_count(self, account_id: str) -> int:
        zones = await self._call_upstream(
            self.source.list_zones, account_id, account_id=account_id
        )
        return len(zones)

    async def fetch_sku_for_account(
        self,
        account_id: str,
        sku: Union[SkuDefinition, str],
        sku_config: SkuConfig,
        window: UsageWindow,
        depth: FetchDepth = FetchDepth.FULL,
    ) -> Optional[UsagePeriodRecord]:
        """
        Usage of one SKU for one account.

        Returns None when the SKU is not contracted for this account, which
        callers must keep distinct from zero usage. Raises UpstreamFetchError
        when the live or previous-month query fails.
        """
        if isinstance(sku, str):
            sku = get_sku(sku)
        if not sku_config.enabled or not sku_config.applies_to(account_id):
            return None

        zones: list[ZoneRef] = []
        if sku.scope is SkuScope.ZONE:
            zones = sku_config.zones_for(account_id)
            if not zones:
                return None

        current = await self._month_record(account_id, sku, window.current, window.now, zones)
        if depth is FetchDepth.CURRENT:
            return self._assemble(account_id, window, current, None, {})

        months = list(window.history)
        if window.previous not in months:
            months.append(window.previous)
        history, failures = await gather_settled(
            {
                month.key: partial(
                    self._month_record, account_id, sku, month, window.now, zones
                )
                for month in months
            },
            log_event="history_month_fetch_failed",
        )
        previous_failure = failures.get(window.previous.key)
        if previous_failure is not None:
            raise previous_failure
        return self._assemble(
            account_id, window, current, history[window.previous.key], history
        )

    async def _month_record(
        self,
        account_id: str,
        sku: SkuDefinition,
        month: MonthRange,
        now: datetime,
        zones: list[ZoneRef],
    ) -> UsagePeriodRecord:
        closed = month.is_closed(now)
        if closed:
            cached = await self.cache.get_closed_month(account_id, sku.id, month.key)
            if cached is not None:
                return cached

        record = await self._query_month(account_id, sku, month, now, zones)
        if closed:
            try:
                await self.cache.put_closed_month(account_id, sku.id, month.key, record)
            except CacheWriteError as exc:
                logger.warning(
                    "closed_month_cache_write_failed",
                    account_id=account_id,
                    sku_id=sku.id,
                    month=month.key,
                    error=exc.message,
                )
        return record

    async def _query_month(
        self,
        account_id: str,
        sku: SkuDefinition,
        month: MonthRange,
        now: datetime,
        zones: list[ZoneRef],
    ) -> UsagePeriodRecord:
        start, end = month.start, month.query_end(now)

        if sku.scope is SkuScope.ZONE:
            raws, failures = await gather_settled(
                {
                    zone.zone_id: partial(
                        self._timed,
                        self.source.query_zone_usage,
                        zone.zone_id,
                        sku.id,
                        start,
                        end,
                        account_id=account_id,
                        sku_id=sku.id,
                    )
                    for zone in zones
                },
                semaphore=self.upstream_slots,
                log_event="zone_usage_fetch_failed",
            )
            if failures:
                # A partial zone set would understate the account total.
                raise next(iter(failures.values()))
            return self._zone_record(account_id, sku, month, start, end, zones, raws)

        raw = await self._call_upstream(
            self.source.query_usage,
            account_id,
            sku.id,
            start,
            end,
            account_id=account_id,
            sku_id=sku.id,
        )
        built = sku.build(raw, start, end)
        return UsagePeriodRecord(
            current=built.values,
            confidence=built.confidence,
            time_series=[_point(month, built.values)],
            zones=[
                ZoneUsage(
                    zone_id=zone.zone_id,
                    zone_name=zone.zone_name,
                    account_id=account_id,
                    current=zone.values,
                    time_series=[_point(month, zone.values)],
                )
                for zone in built.zones
            ],
        )

    @staticmethod
    def _zone_record(
        account_id: str,
        sku: SkuDefinition,
        month: MonthRange,
        start: datetime,
        end: datetime,
        zones: list[ZoneRef],
        raws: Mapping[str, Mapping[str, Any]],
    ) -> UsagePeriodRecord:
        zone_usage: list[ZoneUsage] = []
        confidence: dict[str, Confidence] = {}
        for zone in zones:
            built = sku.build(raws.get(zone.zone_id), start, end)
            confidence = merge_confidence(confidence, built.confidence)
            zone_usage.append(
                ZoneUsage(
                    zone_id=zone.zone_id,
                    zone_name=zone.zone_name,
                    account_id=account_id,
                    current=built.values,
                    time_series=[_point(month, built.values)],
                )
            )
        values = combine_all(sku, (z.current for z in zone_usage))
        return UsagePeriodRecord(
            current=values,
            confidence=confidence,
            time_series=[_point(month, values)],
            zones=zone_usage,
        )

    @staticmethod
    def _assemble(
        account_id: str,
        window: UsageWindow,
        current: UsagePeriodRecord,
        previous: Optional[UsagePeriodRecord],
        history: Mapping[str, UsagePeriodRecord],
    ) -> UsagePeriodRecord:
        """Fold per-month records into one record with an ordered time series."""
        month_records = dict(history)
        month_records[window.current.key] = current

        series = {
            key: _point(MonthRange.from_key(key), record.current)
            for key, record in month_records.items()
        }

        zone_names: dict[str, str] = {}
        zone_series: dict[str, dict[str, MonthPoint]] = {}
        for key, record in month_records.items():
            for zone in record.zones:
                zone_names.setdefault(zone.zone_id, zone.zone_name)
                zone_series.setdefault(zone.zone_id, {})[key] = _point(
                    MonthRange.from_key(key), zone.current
                )
        previous_zones = {z.zone_id: z for z in previous.zones} if previous else {}
        current_zones = {z.zone_id: z for z in current.zones}
        for zone_id, zone in current_zones.items():
            zone_names[zone_id] = zone.zone_name or zone_names.get(zone_id, "")

        zones = [
            ZoneUsage(
                zone_id=zone_id,
                zone_name=zone_names.get(zone_id, ""),
                account_id=account_id,
                current=dict(current_zones[zone_id].current) if zone_id in current_zones else {},
                previous=dict(previous_zones[zone_id].current) if zone_id in previous_zones else {},
                time_series=sorted(points.values(), key=lambda p: p.timestamp),
            )
            for zone_id, points in zone_series.items()
        ]

        return UsagePeriodRecord(
            current=dict(current.current),
            previous=dict(previous.current) if previous else {},
            time_series=sorted(series.values(), key=lambda p: p.timestamp),
            confidence=dict(current.confidence),
            zones=zones,
        )


def _point(month: MonthRange, values: Mapping[str, float]) -> MonthPoint:
    return MonthPoint(month=month.key, timestamp=month.timestamp_ms, values=dict(values))
