"""
SKU catalog and per-SKU metric builders.

Every billable product is one SkuDefinition, a closed set of kinds:

- counter-account: monthly totals measured per account, merged by sum
- counter-zone: monthly totals measured per zone, merged by sum
- gauge-account: rate values such as P95 Mbps, merged by max

Builders turn a raw analytics payload into MetricValues. Payloads may omit
fields for low-traffic periods; a missing field reads as zero.
"""

from __future__ import annotations

import ipaddress
import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional

from app.modules.usage.domain.models import CORE_SKU_ID, Confidence, MetricValues
from app.shared.core.exceptions import ConfigurationError

PRIMARY_ZONE_BYTES = 50 * 1024**3
FIVE_MINUTES_SECONDS = 300
BYTES_PER_GB = 1024**3


class SkuScope(str, Enum):
    ACCOUNT = "account"
    ZONE = "zone"


class SkuKind(str, Enum):
    COUNTER_ACCOUNT = "counter-account"
    COUNTER_ZONE = "counter-zone"
    GAUGE_ACCOUNT = "gauge-account"

    @property
    def scope(self) -> SkuScope:
        return SkuScope.ZONE if self is SkuKind.COUNTER_ZONE else SkuScope.ACCOUNT

    @property
    def is_gauge(self) -> bool:
        return self is SkuKind.GAUGE_ACCOUNT


@dataclass(frozen=True, slots=True)
class MetricField:
    key: str
    label: str
    unit: str


class ZoneBreakdown(NamedTuple):
    zone_id: str
    zone_name: str
    values: MetricValues


class BuiltMetrics(NamedTuple):
    values: MetricValues
    confidence: dict[str, Confidence]
    zones: list[ZoneBreakdown]


MetricBuilder = Callable[[Mapping[str, Any], datetime, datetime], BuiltMetrics]


@dataclass(frozen=True, slots=True)
class SkuDefinition:
    id: str
    label: str
    kind: SkuKind
    fields: tuple[MetricField, ...]
    builder: MetricBuilder = field(compare=False, repr=False)

    @property
    def scope(self) -> SkuScope:
        return self.kind.scope

    @property
    def is_gauge(self) -> bool:
        return self.kind.is_gauge

    def metric(self, key: str) -> Optional[MetricField]:
        return next((f for f in self.fields if f.key == key), None)

    def combine(self, left: float, right: float) -> float:
        """Cross-account merge of one value: max for gauges, sum otherwise."""
        return max(left, right) if self.is_gauge else left + right

    def build(
        self, raw: Optional[Mapping[str, Any]], start: datetime, end: datetime
    ) -> BuiltMetrics:
        return self.builder(raw or {}, start, end)


def _number(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def read_metric(raw: Mapping[str, Any], key: str) -> tuple[float, Optional[Confidence]]:
    """Read one metric, which is either a plain number or a sampled estimate."""
    value = raw.get(key)
    if value is None:
        return 0.0, None
    if isinstance(value, Mapping):
        estimate = _number(value.get("estimate", value.get("value")))
        lower = value.get("lower")
        upper = value.get("upper")
        confidence = Confidence.from_interval(
            estimate,
            _number(lower) if lower is not None else None,
            _number(upper) if upper is not None else None,
            int(_number(value.get("sampleSize"))),
        )
        return estimate, confidence
    return _number(value), None


def _counter_builder(*keys: str) -> MetricBuilder:
    def build(raw: Mapping[str, Any], _start: datetime, _end: datetime) -> BuiltMetrics:
        values: MetricValues = {}
        confidence: dict[str, Confidence] = {}
        for key in keys:
            values[key], interval = read_metric(raw, key)
            if interval is not None:
                confidence[key] = interval
        return BuiltMetrics(values, confidence, [])

    return build


_CORE_KEYS = ("requests", "bytes", "dnsQueries")


def build_core(raw: Mapping[str, Any], start: datetime, end: datetime) -> BuiltMetrics:
    """Account traffic totals plus the per-zone breakdown and zone counts."""
    breakdown: list[ZoneBreakdown] = []
    for zone in raw.get("zones") or []:
        if not isinstance(zone, Mapping) or not zone.get("zoneId"):
            continue
        breakdown.append(
            ZoneBreakdown(
                str(zone["zoneId"]),
                str(zone.get("zoneName") or ""),
                {key: read_metric(zone, key)[0] for key in _CORE_KEYS},
            )
        )

    values, confidence, _ = _counter_builder(*_CORE_KEYS)(raw, start, end)
    for key in _CORE_KEYS:
        if raw.get(key) is None and breakdown:
            values[key] = sum(zone.values[key] for zone in breakdown)

    primary = sum(1 for zone in breakdown if zone.values["bytes"] >= PRIMARY_ZONE_BYTES)
    values["zones"] = float(len(breakdown))
    values["primaryZones"] = float(primary)
    values["secondaryZones"] = float(len(breakdown) - primary)
    return BuiltMetrics(values, confidence, breakdown)


def build_r2_storage(raw: Mapping[str, Any], start: datetime, end: datetime) -> BuiltMetrics:
    values, confidence, _ = _counter_builder("classAOps", "classBOps", "storageGB")(
        raw, start, end
    )
    if raw.get("storageGB") is None and raw.get("storageBytes") is not None:
        values["storageGB"] = _number(raw["storageBytes"]) / BYTES_PER_GB
    return BuiltMetrics(values, confidence, [])


def is_private_address(address: str) -> bool:
    try:
        return ipaddress.ip_address(address.split("/", 1)[0]).is_private
    except ValueError:
        return False


def classify_tunnels(tunnels: Iterable[Mapping[str, Any]]) -> dict[str, str]:
    """A tunnel with any private address is WAN; anything else is Transit."""
    classified: dict[str, str] = {}
    for tunnel in tunnels:
        name = tunnel.get("name")
        if not name:
            continue
        addresses = [str(a) for a in tunnel.get("addresses") or []]
        classified[str(name)] = (
            "magicWan" if any(is_private_address(a) for a in addresses) else "magicTransit"
        )
    return classified


def _epoch_seconds(value: Any) -> Optional[int]:
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())
    return None


def p95_mbps(
    entries: Iterable[Mapping[str, Any]],
    start: datetime,
    end: datetime,
    *,
    sku_id: str,
    classification: Mapping[str, str],
) -> float:
    """
    Account-level P95 over five-minute intervals.

    Matching tunnels are summed per interval, intervals with no samples
    count as zero, and the value at index floor(n * 0.95) of the sorted
    samples is returned in Mbps.
    """
    intervals: dict[int, float] = {}
    for entry in entries:
        tunnel = entry.get("tunnelName")
        if not tunnel:
            continue
        classified = classification.get(str(tunnel))
        if classified and classified != sku_id:
            continue
        ts = _epoch_seconds(entry.get("time"))
        if ts is None:
            continue
        bucket = ts - ts % FIVE_MINUTES_SECONDS
        intervals[bucket] = intervals.get(bucket, 0.0) + _number(entry.get("bitRate"))

    start_ts = int(start.timestamp())
    total = int((end.timestamp() - start_ts) // FIVE_MINUTES_SECONDS)
    if total > 0:
        samples = [
            intervals.get(start_ts + i * FIVE_MINUTES_SECONDS, 0.0) for i in range(total)
        ]
    else:
        samples = list(intervals.values())
    if not samples:
        return 0.0
    samples.sort()
    index = min(math.floor(len(samples) * 0.95), len(samples) - 1)
    return samples[index] / 1e6


def _gauge_builder(sku_id: str, *, include_egress: bool) -> MetricBuilder:
    def build(raw: Mapping[str, Any], start: datetime, end: datetime) -> BuiltMetrics:
        classification = classify_tunnels(raw.get("tunnels") or [])
        ingress = p95_mbps(
            raw.get("ingress") or [],
            start,
            end,
            sku_id=sku_id,
            classification=classification,
        )
        values: MetricValues = {"ingressP95Mbps": ingress}
        if include_egress:
            egress = p95_mbps(
                raw.get("egress") or [],
                start,
                end,
                sku_id=sku_id,
                classification=classification,
            )
            values["egressP95Mbps"] = egress
            values["p95Mbps"] = max(ingress, egress)
        else:
            values["p95Mbps"] = ingress
        return BuiltMetrics(values, {}, [])

    return build


SKU_DEFINITIONS: tuple[SkuDefinition, ...] = (
    SkuDefinition(
        id=CORE_SKU_ID,
        label="Application Services",
        kind=SkuKind.COUNTER_ACCOUNT,
        fields=(
            MetricField("requests", "HTTP Requests", "requests"),
            MetricField("bytes", "Data Transfer", "bytes"),
            MetricField("dnsQueries", "DNS Queries", "queries"),
            MetricField("zones", "Enterprise Zones", "zones"),
            MetricField("primaryZones", "Primary Zones", "zones"),
            MetricField("secondaryZones", "Secondary Zones", "zones"),
        ),
        builder=build_core,
    ),
    SkuDefinition(
        id="botManagement",
        label="Bot Management",
        kind=SkuKind.COUNTER_ZONE,
        fields=(MetricField("likelyHuman", "Likely Human Requests", "requests"),),
        builder=_counter_builder("likelyHuman"),
    ),
    SkuDefinition(
        id="apiShield",
        label="API Shield",
        kind=SkuKind.COUNTER_ZONE,
        fields=(MetricField("requests", "HTTP Requests", "requests"),),
        builder=_counter_builder("requests"),
    ),
    SkuDefinition(
        id="pageShield",
        label="Page Shield",
        kind=SkuKind.COUNTER_ZONE,
        fields=(MetricField("requests", "HTTP Requests", "requests"),),
        builder=_counter_builder("requests"),
    ),
    SkuDefinition(
        id="advancedRateLimiting",
        label="Advanced Rate Limiting",
        kind=SkuKind.COUNTER_ZONE,
        fields=(MetricField("requests", "HTTP Requests", "requests"),),
        builder=_counter_builder("requests"),
    ),
    SkuDefinition(
        id="zeroTrustSeats",
        label="Zero Trust Seats",
        kind=SkuKind.COUNTER_ACCOUNT,
        fields=(MetricField("seats", "Seats", "seats"),),
        builder=_counter_builder("seats"),
    ),
    SkuDefinition(
        id="workersPages",
        label="Workers & Pages",
        kind=SkuKind.COUNTER_ACCOUNT,
        fields=(
            MetricField("requests", "Requests", "requests"),
            MetricField("cpuTimeMs", "CPU Time", "ms"),
        ),
        builder=_counter_builder("requests", "cpuTimeMs"),
    ),
    SkuDefinition(
        id="r2Storage",
        label="R2 Storage",
        kind=SkuKind.COUNTER_ACCOUNT,
        fields=(
            MetricField("classAOps", "Class A Operations", "operations"),
            MetricField("classBOps", "Class B Operations", "operations"),
            MetricField("storageGB", "Storage", "GB"),
        ),
        builder=build_r2_storage,
    ),
    SkuDefinition(
        id="magicTransit",
        label="Magic Transit",
        kind=SkuKind.GAUGE_ACCOUNT,
        fields=(
            MetricField("p95Mbps", "P95 Bandwidth", "Mbps"),
            MetricField("ingressP95Mbps", "Ingress P95", "Mbps"),
        ),
        builder=_gauge_builder("magicTransit", include_egress=False),
    ),
    SkuDefinition(
        id="magicWan",
        label="Magic WAN",
        kind=SkuKind.GAUGE_ACCOUNT,
        fields=(
            MetricField("p95Mbps", "P95 Bandwidth", "Mbps"),
            MetricField("ingressP95Mbps", "Ingress P95", "Mbps"),
            MetricField("egressP95Mbps", "Egress P95", "Mbps"),
        ),
        builder=_gauge_builder("magicWan", include_egress=True),
    ),
)

SKU_REGISTRY: dict[str, SkuDefinition] = {sku.id: sku for sku in SKU_DEFINITIONS}


def get_sku(sku_id: str) -> SkuDefinition:
    try:
        return SKU_REGISTRY[sku_id]
    except KeyError:
        raise ConfigurationError(
            f"Unknown SKU: {sku_id}",
            code="unknown_sku",
            details={"sku_id": sku_id},
            status_code=400,
        ) from None
