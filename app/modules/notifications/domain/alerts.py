"""
Threshold alert engine.

In "alert" mode a metric qualifies once it reaches the trigger percentage
(90% by default) of its contracted threshold, and each qualifying metric is
sent at most once per billing period for a given account set. The dedup key
is claimed before delivery and released again if delivery fails, so checks
racing on the same period send once. In "report" mode every metric of every
enabled SKU is sent, with or without a threshold, and nothing is recorded.
Either way one summarized message is delivered, whatever the number of metrics.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional

import structlog
from pydantic import Field

from app.modules.notifications.domain.webhook import WebhookNotifier, _truncate
from app.modules.usage.domain.cache_manager import accounts_key
from app.modules.usage.domain.models import CamelModel, UsageBundle
from app.modules.usage.domain.monitoring import MonitoringConfig
from app.modules.usage.domain.periods import period_key
from app.modules.usage.domain.skus import SKU_REGISTRY
from app.shared.core.cache import CacheService
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    CacheWriteError,
    ConfigurationError,
    NotificationDeliveryError,
)

logger = structlog.get_logger()

AlertMode = Literal["alert", "report"]
PREFIX_ALERT_SENT = "alert-sent"


class TriggeredMetric(CamelModel):
    sku_id: str
    sku_label: str
    metric_key: str
    field: str
    label: str
    unit: str
    current: float
    # None when the metric has no contracted threshold (report mode only)
    threshold: Optional[float] = None
    percentage: Optional[float] = None


class AlertResult(CamelModel):
    mode: AlertMode
    period_key: str
    accounts_key: str
    evaluated: int = 0
    triggered: list[TriggeredMetric] = Field(default_factory=list)
    skipped_duplicates: list[str] = Field(default_factory=list)
    sent: bool = False
    delivery_error: Optional[str] = None


def usage_percentage(current: float, threshold: Optional[float]) -> float:
    if not threshold:
        return 0.0
    return current / threshold * 100


def dedup_key(accounts: str, metric_key: str, period: str) -> str:
    return f"{PREFIX_ALERT_SENT}:{accounts}:{metric_key}:{period}"


_UNIT_SCALES = (
    (1024**4, "TB"),
    (1024**3, "GB"),
    (1024**2, "MB"),
)


def format_quantity(value: float, unit: str) -> str:
    if unit == "bytes":
        for scale, suffix in _UNIT_SCALES:
            if value >= scale:
                return f"{value / scale:,.2f} {suffix}"
        return f"{value:,.0f} B"
    if unit in {"Mbps", "GB", "ms"}:
        return f"{value:,.2f} {unit}"
    return f"{value:,.0f}"


def _metric_fields(metric: TriggeredMetric) -> list[dict[str, str]]:
    current = format_quantity(metric.current, metric.unit)
    if metric.threshold is None:
        return [
            {"type": "mrkdwn", "text": f"*{metric.sku_label}: {metric.label}*\nNo threshold set"},
            {"type": "mrkdwn", "text": f"*Current:* {current}\n*Threshold:* not set"},
        ]
    return [
        {
            "type": "mrkdwn",
            "text": f"*{metric.sku_label}: {metric.label}*\n{metric.percentage or 0.0:.1f}% used",
        },
        {
            "type": "mrkdwn",
            "text": (
                f"*Current:* {current}\n"
                f"*Threshold:* {format_quantity(metric.threshold, metric.unit)}"
            ),
        },
    ]


def build_usage_message(
    metrics: Sequence[TriggeredMetric],
    *,
    mode: AlertMode,
    account_ids: Iterable[str],
    period: str,
    trigger_percent: float,
    dashboard_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Slack block-kit payload summarizing every selected metric."""
    now = now or datetime.now(timezone.utc)
    if mode == "report":
        title = "📊 Usage Report"
        summary = f"*Usage summary for {period}*\nCurrent consumption against contracted thresholds:"
    else:
        title = "⚠️ Usage Alert"
        summary = (
            f"*Threshold Warning: {trigger_percent:g}% Reached*\n"
            f"Usage has reached *{trigger_percent:g}% or more* of your contracted thresholds:"
        )

    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": title, "emoji": True}},
        {"type": "section", "text": {"type": "mrkdwn", "text": summary}},
        {"type": "divider"},
    ]
    for metric in metrics:
        blocks.append({"type": "section", "fields": _metric_fields(metric)})
    if not metrics:
        blocks.append(
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "_No usage data is available for the enabled products._"},
            }
        )
    blocks.append({"type": "divider"})
    accounts_text = _truncate(", ".join(account_ids), 300)
    blocks.append(
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"🕐 {now.strftime('%Y-%m-%d %H:%M UTC')} · Period {period} · Accounts: {accounts_text}",
                }
            ],
        }
    )
    if dashboard_url:
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "View Dashboard", "emoji": True},
                        "url": dashboard_url,
                        "style": "primary",
                    }
                ],
            }
        )
    return {"text": title, "blocks": blocks}


class ThresholdAlertEngine:
    def __init__(
        self,
        cache: CacheService,
        notifier: WebhookNotifier,
        *,
        trigger_percent: float = 90.0,
        dedup_ttl_days_monthly: int = 45,
        dedup_ttl_days_weekly: int = 14,
        dashboard_url: Optional[str] = None,
    ) -> None:
        self.cache = cache
        self.notifier = notifier
        self.trigger_percent = trigger_percent
        self.dedup_ttl = {
            "monthly": timedelta(days=dedup_ttl_days_monthly),
            "weekly": timedelta(days=dedup_ttl_days_weekly),
        }
        self.dashboard_url = dashboard_url

    @classmethod
    def from_settings(
        cls, cache: CacheService, notifier: Optional[WebhookNotifier] = None
    ) -> ThresholdAlertEngine:
        settings = get_settings()
        return cls(
            cache,
            notifier or WebhookNotifier.from_settings(),
            trigger_percent=settings.ALERT_TRIGGER_PERCENT,
            dedup_ttl_days_monthly=settings.ALERT_DEDUP_TTL_DAYS_MONTHLY,
            dedup_ttl_days_weekly=settings.ALERT_DEDUP_TTL_DAYS_WEEKLY,
            dashboard_url=settings.DASHBOARD_URL,
        )

    @staticmethod
    def evaluate(
        bundle: UsageBundle, config: MonitoringConfig, *, every_field: bool = False
    ) -> list[TriggeredMetric]:
        """
        Usage percentage for every enabled SKU metric that has a threshold.

        With ``every_field`` each metric of each enabled SKU is included, and
        metrics without a threshold carry ``threshold=None, percentage=None``.
        """
        metrics: list[TriggeredMetric] = []
        for sku_id in config.enabled_sku_ids():
            snapshot = bundle.snapshot(sku_id)
            if snapshot is None:
                continue
            sku = SKU_REGISTRY[sku_id]
            thresholds = config.sku_config(sku_id).thresholds
            keys = [f.key for f in sku.fields] if every_field else []
            keys += [k for k, v in thresholds.items() if v is not None and k not in keys]
            for key in keys:
                threshold = thresholds.get(key)
                metric = sku.metric(key)
                current = float(snapshot.current.get(key, 0.0))
                metrics.append(
                    TriggeredMetric(
                        sku_id=sku_id,
                        sku_label=sku.label,
                        metric_key=f"{sku_id}.{key}",
                        field=key,
                        label=metric.label if metric else key,
                        unit=metric.unit if metric else "",
                        current=current,
                        threshold=threshold,
                        percentage=(
                            usage_percentage(current, threshold)
                            if threshold is not None
                            else None
                        ),
                    )
                )
        return metrics

    async def check_thresholds(
        self,
        bundle: UsageBundle,
        config: MonitoringConfig,
        mode: AlertMode = "alert",
        *,
        account_ids: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> AlertResult:
        now = now or datetime.now(timezone.utc)
        ids = sorted(set(account_ids)) if account_ids is not None else list(bundle.account_ids)
        accounts = accounts_key(ids)
        period = period_key(now, config.alerts.period)
        metrics = self.evaluate(bundle, config, every_field=mode == "report")
        result = AlertResult(
            mode=mode, period_key=period, accounts_key=accounts, evaluated=len(metrics)
        )

        claimed: list[str] = []
        if mode == "alert":
            if not config.alerts.enabled:
                logger.info("alerts_disabled", accounts_key=accounts)
                return result
            candidates = [
                m
                for m in metrics
                if m.percentage is not None and m.percentage >= self.trigger_percent
            ]
            if not candidates:
                logger.info("alert_check_nothing_to_send", mode=mode, evaluated=len(metrics))
                return result
            webhook_url = self._webhook_url(config)
            selected, claimed = await self._claim(
                accounts, period, config.alerts.period, candidates, result, now
            )
            if not selected:
                logger.info("alert_check_nothing_to_send", mode=mode, evaluated=len(metrics))
                return result
        else:
            webhook_url = self._webhook_url(config)
            selected = list(metrics)

        result.triggered = selected
        message = build_usage_message(
            selected,
            mode=mode,
            account_ids=ids,
            period=period,
            trigger_percent=self.trigger_percent,
            dashboard_url=self.dashboard_url,
            now=now,
        )
        try:
            await self.notifier.send(webhook_url, message)
        except NotificationDeliveryError as exc:
            logger.error(
                "alert_delivery_failed",
                mode=mode,
                metrics=[m.metric_key for m in selected],
                error=exc.message,
            )
            await self._release(claimed)
            result.delivery_error = exc.message
            return result

        result.sent = True
        logger.info(
            "alert_sent",
            mode=mode,
            period_key=period,
            metrics=[m.metric_key for m in selected],
        )
        return result

    @staticmethod
    def _webhook_url(config: MonitoringConfig) -> str:
        if not config.alerts.webhook_url:
            raise ConfigurationError(
                "No alert webhook URL is configured",
                code="missing_webhook",
                status_code=400,
            )
        return config.alerts.webhook_url

    async def _claim(
        self,
        accounts: str,
        period: str,
        granularity: str,
        candidates: Sequence[TriggeredMetric],
        result: AlertResult,
        now: datetime,
    ) -> tuple[list[TriggeredMetric], list[str]]:
        """Claim each metric's dedup key; metrics already claimed this period are skipped."""
        ttl = self.dedup_ttl.get(granularity, self.dedup_ttl["monthly"])
        selected: list[TriggeredMetric] = []
        claimed: list[str] = []
        for metric in candidates:
            key = dedup_key(accounts, metric.metric_key, period)
            record = json.dumps(
                {
                    "accountsKey": accounts,
                    "metricKey": metric.metric_key,
                    "periodKey": period,
                    "percentage": round(metric.percentage or 0.0, 2),
                    "claimedAt": now.isoformat(),
                }
            )
            try:
                fresh = await self.cache.set_if_absent(key, record, ttl)
            except CacheWriteError as exc:
                # Store outage: send unclaimed.
                logger.warning(
                    "alert_dedup_claim_failed",
                    metric_key=metric.metric_key,
                    error=exc.message,
                )
                selected.append(metric)
                continue
            if not fresh:
                logger.info(
                    "alert_skipped_duplicate",
                    metric_key=metric.metric_key,
                    period_key=period,
                )
                result.skipped_duplicates.append(metric.metric_key)
                continue
            claimed.append(key)
            selected.append(metric)
        return selected, claimed

    async def _release(self, keys: Iterable[str]) -> None:
        for key in keys:
            await self.cache.delete(key)
