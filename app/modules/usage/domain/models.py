"""
Usage data shapes shared by the fetcher, aggregator, cache and alert engine.

Models serialize with camelCase aliases, which is the shape the dashboard
reads and the shape persisted in the cache.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CORE_SKU_ID = "core"

MetricValues = dict[str, float]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def confidence_percent(estimate: float, lower: float, upper: float) -> Optional[float]:
    """Turn a sampled estimate's interval into a 0-100 confidence score."""
    if estimate <= 0:
        return None
    relative_width = (upper - lower) / (2 * estimate)
    return round(max(0.0, min(100.0, 100 * (1 - relative_width))), 1)


class Confidence(CamelModel):
    estimate: float
    lower: float
    upper: float
    sample_size: int = 0
    percent: Optional[float] = None

    @classmethod
    def from_interval(
        cls,
        estimate: float,
        lower: Optional[float] = None,
        upper: Optional[float] = None,
        sample_size: int = 0,
    ) -> Optional[Confidence]:
        if not estimate:
            return None
        lower = estimate if lower is None else lower
        upper = estimate if upper is None else upper
        return cls(
            estimate=estimate,
            lower=lower,
            upper=upper,
            sample_size=sample_size,
            percent=confidence_percent(estimate, lower, upper),
        )


class MonthPoint(CamelModel):
    month: str
    timestamp: int  # epoch ms of the month start
    values: MetricValues = Field(default_factory=dict)


class ZoneUsage(CamelModel):
    zone_id: str
    zone_name: str = ""
    account_id: str
    current: MetricValues = Field(default_factory=dict)
    previous: MetricValues = Field(default_factory=dict)
    time_series: list[MonthPoint] = Field(default_factory=list)


class UsagePeriodRecord(CamelModel):
    """One SKU for one account: live current month, previous month and history."""

    current: MetricValues = Field(default_factory=dict)
    previous: MetricValues = Field(default_factory=dict)
    time_series: list[MonthPoint] = Field(default_factory=list)
    confidence: dict[str, Confidence] = Field(default_factory=dict)
    zones: list[ZoneUsage] = Field(default_factory=list)


class AccountUsage(CamelModel):
    account_id: str
    current: MetricValues = Field(default_factory=dict)
    previous: MetricValues = Field(default_factory=dict)
    time_series: list[MonthPoint] = Field(default_factory=list)
    confidence: dict[str, Confidence] = Field(default_factory=dict)


class AggregatedSnapshot(CamelModel):
    sku_id: str
    kind: str
    current: MetricValues = Field(default_factory=dict)
    previous: MetricValues = Field(default_factory=dict)
    time_series: list[MonthPoint] = Field(default_factory=list)
    confidence: dict[str, Confidence] = Field(default_factory=dict)
    per_account_data: list[AccountUsage] = Field(default_factory=list)
    per_zone_data: Optional[list[ZoneUsage]] = None
    failed_accounts: list[str] = Field(default_factory=list)


class UsageBundle(CamelModel):
    account_ids: list[str]
    core_metrics: Optional[AggregatedSnapshot] = None
    sku_snapshots: dict[str, AggregatedSnapshot] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    failed_accounts: list[str] = Field(default_factory=list)

    def snapshot(self, sku_id: str) -> Optional[AggregatedSnapshot]:
        if sku_id == CORE_SKU_ID:
            return self.core_metrics
        return self.sku_snapshots.get(sku_id)

    def snapshots(self) -> dict[str, AggregatedSnapshot]:
        merged = dict(self.sku_snapshots)
        if self.core_metrics is not None:
            merged[CORE_SKU_ID] = self.core_metrics
        return merged


class CacheEntry(CamelModel):
    key: str
    data: UsageBundle
    written_at: datetime
    ttl_seconds: int

    def age_ms(self, now: datetime) -> int:
        return max(0, int((now - self.written_at).total_seconds() * 1000))

    def is_live(self, now: datetime) -> bool:
        return self.age_ms(now) < self.ttl_seconds * 1000


PhaseKind = Literal["cached", "zoneCount", "core", "complete"]


class PhaseResult(CamelModel):
    phase: int
    kind: PhaseKind
    cache_age_ms: Optional[int] = None
    data: Optional[UsageBundle] = None
    core: Optional[AggregatedSnapshot] = None
    core_zone_counts: Optional[dict[str, int]] = None
    failed_accounts: list[str] = Field(default_factory=list)
    cache_written: Optional[bool] = None
