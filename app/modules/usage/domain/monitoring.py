"""
Operator-facing monitoring configuration.

A MonitoringConfig value is passed explicitly into the orchestrator, prewarm
job and alert engine; nothing reads it from ambient state.
"""

from __future__ import annotations

from typing import Optional

from pydantic import Field, field_validator

from app.modules.usage.domain.models import CORE_SKU_ID, CamelModel
from app.modules.usage.domain.periods import AlertPeriod
from app.modules.usage.domain.skus import SKU_REGISTRY


class ZoneRef(CamelModel):
    zone_id: str
    zone_name: str = ""
    account_id: str


class SkuConfig(CamelModel):
    enabled: bool = False
    # metric key -> contracted threshold; None means "not tracked"
    thresholds: dict[str, Optional[float]] = Field(default_factory=dict)
    # restricts the SKU to these accounts; empty means every monitored account
    account_ids: list[str] = Field(default_factory=list)
    zones: list[ZoneRef] = Field(default_factory=list)

    def applies_to(self, account_id: str) -> bool:
        return not self.account_ids or account_id in self.account_ids

    def zones_for(self, account_id: str) -> list[ZoneRef]:
        return [zone for zone in self.zones if zone.account_id == account_id]


class AlertSettings(CamelModel):
    enabled: bool = True
    webhook_url: Optional[str] = None
    period: AlertPeriod = "monthly"


class MonitoringConfig(CamelModel):
    account_ids: list[str] = Field(default_factory=list)
    skus: dict[str, SkuConfig] = Field(default_factory=dict)
    alerts: AlertSettings = Field(default_factory=AlertSettings)

    @field_validator("skus")
    @classmethod
    def _known_skus(cls, value: dict[str, SkuConfig]) -> dict[str, SkuConfig]:
        unknown = sorted(set(value) - set(SKU_REGISTRY))
        if unknown:
            raise ValueError(f"Unknown SKU ids: {', '.join(unknown)}")
        return value

    def sku_config(self, sku_id: str) -> SkuConfig:
        """Core traffic is monitored unless explicitly disabled."""
        config = self.skus.get(sku_id)
        if config is None:
            return SkuConfig(enabled=sku_id == CORE_SKU_ID)
        return config

    def enabled_sku_ids(self) -> list[str]:
        return [sku_id for sku_id in SKU_REGISTRY if self.sku_config(sku_id).enabled]

    def enabled_addon_ids(self) -> list[str]:
        return [sku_id for sku_id in self.enabled_sku_ids() if sku_id != CORE_SKU_ID]
