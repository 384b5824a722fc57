"""
Cross-account and cross-zone merge of usage records.

Aggregated values are the sum of the per-account (or per-zone) values for
counters and the max for gauges. Summing P95 figures would overstate the
true aggregate P95, so gauges never sum.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Optional, Union

import structlog

from app.modules.usage.domain.models import (
    AccountUsage,
    AggregatedSnapshot,
    Confidence,
    MetricValues,
    MonthPoint,
    UsagePeriodRecord,
    ZoneUsage,
)
from app.modules.usage.domain.skus import SkuDefinition, SkuScope, get_sku

logger = structlog.get_logger()


def zero_values(sku: SkuDefinition) -> MetricValues:
    return {f.key: 0.0 for f in sku.fields}


def combine_values(
    sku: SkuDefinition, left: MetricValues, right: MetricValues
) -> MetricValues:
    merged = dict(left)
    for key, value in right.items():
        merged[key] = sku.combine(merged[key], value) if key in merged else value
    return merged


def combine_all(sku: SkuDefinition, values: Iterable[MetricValues]) -> MetricValues:
    merged = zero_values(sku)
    for item in values:
        merged = combine_values(sku, merged, item)
    return merged


def merge_time_series(
    sku: SkuDefinition, series: Iterable[Sequence[MonthPoint]]
) -> list[MonthPoint]:
    """
    Merge month points keyed by month string.

    Overlapping months are combined, new months are inserted, and the result
    is ordered by timestamp regardless of input order.
    """
    by_month: dict[str, MonthPoint] = {}
    for points in series:
        for point in points:
            existing = by_month.get(point.month)
            if existing is None:
                by_month[point.month] = MonthPoint(
                    month=point.month,
                    timestamp=point.timestamp,
                    values=dict(point.values),
                )
            else:
                existing.values = combine_values(sku, existing.values, point.values)
    return sorted(by_month.values(), key=lambda p: p.timestamp)


def merge_confidence(
    left: dict[str, Confidence], right: dict[str, Confidence]
) -> dict[str, Confidence]:
    """Sum interval bounds and sample sizes per metric, then rescore."""
    merged = dict(left)
    for key, interval in right.items():
        existing = merged.get(key)
        if existing is None:
            merged[key] = interval
            continue
        combined = Confidence.from_interval(
            existing.estimate + interval.estimate,
            existing.lower + interval.lower,
            existing.upper + interval.upper,
            existing.sample_size + interval.sample_size,
        )
        if combined is not None:
            merged[key] = combined
    return merged


def _merge_confidences(
    sku: SkuDefinition, items: Iterable[dict[str, Confidence]]
) -> dict[str, Confidence]:
    if sku.is_gauge:
        return {}
    merged: dict[str, Confidence] = {}
    for item in items:
        merged = merge_confidence(merged, item)
    return merged


def rollup_zones(
    sku: SkuDefinition, zones: Sequence[ZoneUsage], account_id: str
) -> AccountUsage:
    """Rebuild one account's view from the zones it owns."""
    owned = [zone for zone in zones if zone.account_id == account_id]
    return AccountUsage(
        account_id=account_id,
        current=combine_all(sku, (z.current for z in owned)),
        previous=combine_all(sku, (z.previous for z in owned)),
        time_series=merge_time_series(sku, (z.time_series for z in owned)),
    )


def aggregate(
    sku: Union[SkuDefinition, str],
    per_account_records: Sequence[tuple[str, Optional[UsagePeriodRecord]]],
    failed_accounts: Iterable[str] = (),
) -> AggregatedSnapshot:
    """
    Merge N per-account records for one SKU.

    A None record means "not contracted for this account": it contributes
    nothing and gets no perAccountData entry.
    """
    if isinstance(sku, str):
        sku = get_sku(sku)
    present = [(account_id, r) for account_id, r in per_account_records if r is not None]

    zone_data: Optional[list[ZoneUsage]] = None
    if sku.scope is SkuScope.ZONE:
        zone_data = [
            zone.model_copy(update={"account_id": account_id})
            for account_id, record in present
            for zone in record.zones
        ]
        per_account = [rollup_zones(sku, zone_data, account_id) for account_id, _ in present]
        for usage, (_, record) in zip(per_account, present):
            usage.confidence = dict(record.confidence)
    else:
        per_account = [
            AccountUsage(
                account_id=account_id,
                current=dict(record.current),
                previous=dict(record.previous),
                time_series=list(record.time_series),
                confidence=dict(record.confidence),
            )
            for account_id, record in present
        ]
        if any(record.zones for _, record in present):
            zone_data = [zone for _, record in present for zone in record.zones]

    snapshot = AggregatedSnapshot(
        sku_id=sku.id,
        kind=sku.kind.value,
        current=combine_all(sku, (a.current for a in per_account)),
        previous=combine_all(sku, (a.previous for a in per_account)),
        time_series=merge_time_series(sku, (a.time_series for a in per_account)),
        confidence=_merge_confidences(sku, (a.confidence for a in per_account)),
        per_account_data=per_account,
        per_zone_data=zone_data,
        failed_accounts=sorted(set(failed_accounts)),
    )
    logger.debug(
        "sku_aggregated",
        sku_id=sku.id,
        accounts=len(per_account),
        zones=len(zone_data or []),
        failed=len(snapshot.failed_accounts),
    )
    return snapshot
