import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.modules.notifications.domain.alerts import (
    ThresholdAlertEngine,
    build_usage_message,
    dedup_key,
    format_quantity,
)
from app.modules.usage.domain.models import AggregatedSnapshot, UsageBundle
from app.modules.usage.domain.monitoring import AlertSettings, MonitoringConfig, SkuConfig
from app.shared.core.exceptions import ConfigurationError, NotificationDeliveryError

NOW = datetime(2024, 3, 15, 12, tzinfo=timezone.utc)
SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"


def _bundle(requests: float = 15e6, bytes_: float = 1.5e12) -> UsageBundle:
    return UsageBundle(
        account_ids=["acc-a", "acc-b"],
        core_metrics=AggregatedSnapshot(
            sku_id="core",
            kind="counter-account",
            current={"requests": requests, "bytes": bytes_},
        ),
        generated_at=NOW,
    )


def _config(period: str = "monthly", enabled: bool = True, **thresholds) -> MonitoringConfig:
    return MonitoringConfig(
        account_ids=["acc-a", "acc-b"],
        skus={"core": SkuConfig(enabled=True, thresholds=thresholds or {"requests": 12e6})},
        alerts=AlertSettings(enabled=enabled, webhook_url=SLACK_URL, period=period),
    )


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send = AsyncMock()
    return mock


@pytest.fixture
def engine(cache_service, notifier) -> ThresholdAlertEngine:
    return ThresholdAlertEngine(cache_service, notifier, dashboard_url="https://dash.test")


@pytest.mark.asyncio
async def test_end_to_end_two_accounts_trigger_one_alert(
    source_factory, make_orchestrator, engine, notifier
):
    source = source_factory(
        usage={
            ("acc-a", "core", "2024-03"): {"requests": 10e6, "bytes": 1e12},
            ("acc-b", "core", "2024-03"): {"requests": 5e6, "bytes": 0.5e12},
        }
    )
    config = _config()
    phase = await make_orchestrator(source).fetch(["acc-a", "acc-b"], 3, config, now=NOW)
    assert phase.data.core_metrics.current["requests"] == 15e6
    assert phase.data.core_metrics.current["bytes"] == 1.5e12

    result = await engine.check_thresholds(phase.data, config, "alert", now=NOW)

    assert result.sent is True
    assert [m.metric_key for m in result.triggered] == ["core.requests"]
    assert result.triggered[0].percentage == 125.0
    notifier.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_alert_is_sent_once_per_period(engine, notifier, cache_service):
    config = _config()
    first = await engine.check_thresholds(_bundle(), config, "alert", now=NOW)
    second = await engine.check_thresholds(_bundle(), config, "alert", now=NOW)

    assert first.sent is True
    assert second.sent is False
    assert second.skipped_duplicates == ["core.requests"]
    assert notifier.send.await_count == 1

    record = json.loads(
        await cache_service.get(dedup_key("acc-a,acc-b", "core.requests", "2024-03"))
    )
    assert record["periodKey"] == "2024-03"
    assert record["percentage"] == 125.0


@pytest.mark.asyncio
async def test_new_period_sends_again(engine, notifier):
    config = _config()
    await engine.check_thresholds(_bundle(), config, "alert", now=NOW)
    result = await engine.check_thresholds(
        _bundle(), config, "alert", now=datetime(2024, 4, 1, tzinfo=timezone.utc)
    )

    assert result.sent is True
    assert result.period_key == "2024-04"
    assert notifier.send.await_count == 2


@pytest.mark.asyncio
async def test_weekly_period_uses_iso_week_key(engine, cache_service):
    result = await engine.check_thresholds(_bundle(), _config(period="weekly"), "alert", now=NOW)

    assert result.period_key == "2024-W11"
    assert await cache_service.get(dedup_key("acc-a,acc-b", "core.requests", "2024-W11"))


@pytest.mark.asyncio
async def test_dedup_record_ttl_follows_period_granularity(notifier):
    cache = MagicMock()
    cache.set_if_absent = AsyncMock(return_value=True)
    engine = ThresholdAlertEngine(cache, notifier, dedup_ttl_days_weekly=14)

    await engine.check_thresholds(_bundle(), _config(period="weekly"), "alert", now=NOW)

    ttl = cache.set_if_absent.await_args.args[2]
    assert ttl.days == 14


@pytest.mark.asyncio
async def test_trigger_boundary_is_inclusive(engine, notifier):
    below = await engine.check_thresholds(
        _bundle(requests=8_999_999), _config(requests=10e6), "alert", now=NOW
    )
    assert below.triggered == []
    assert below.evaluated == 1
    notifier.send.assert_not_awaited()

    at = await engine.check_thresholds(
        _bundle(requests=9e6), _config(requests=10e6), "alert", now=NOW
    )
    assert at.sent is True


@pytest.mark.asyncio
async def test_report_mode_sends_every_enabled_metric_without_dedup(engine, notifier):
    config = _config(requests=100e6, bytes=None)
    report = await engine.check_thresholds(_bundle(), config, "report", now=NOW)

    assert report.sent is True
    keys = [m.metric_key for m in report.triggered]
    assert keys[:3] == ["core.requests", "core.bytes", "core.dnsQueries"]
    requests, bytes_ = report.triggered[0], report.triggered[1]
    assert requests.percentage == pytest.approx(15.0)
    assert bytes_.threshold is None and bytes_.percentage is None

    again = await engine.check_thresholds(_bundle(), config, "report", now=NOW)
    assert again.sent is True
    assert notifier.send.await_count == 2


@pytest.mark.asyncio
async def test_report_does_not_suppress_alerts(engine, notifier):
    config = _config()
    await engine.check_thresholds(_bundle(), config, "report", now=NOW)
    alert = await engine.check_thresholds(_bundle(), config, "alert", now=NOW)
    assert alert.sent is True


@pytest.mark.asyncio
async def test_delivery_failure_records_nothing(engine, notifier):
    notifier.send.side_effect = NotificationDeliveryError("status 500", status_code=500)
    config = _config()

    failed = await engine.check_thresholds(_bundle(), config, "alert", now=NOW)
    assert failed.sent is False
    assert failed.delivery_error == "status 500"

    notifier.send.side_effect = None
    retried = await engine.check_thresholds(_bundle(), config, "alert", now=NOW)
    assert retried.sent is True


@pytest.mark.asyncio
async def test_multiple_metrics_produce_one_message(engine, notifier):
    config = _config(requests=10e6, bytes=1e12)
    result = await engine.check_thresholds(_bundle(), config, "alert", now=NOW)

    assert len(result.triggered) == 2
    notifier.send.assert_awaited_once()
    url, message = notifier.send.await_args.args
    assert url == SLACK_URL
    sections = [b for b in message["blocks"] if b["type"] == "section" and "fields" in b]
    assert len(sections) == 2


@pytest.mark.asyncio
async def test_missing_webhook_is_a_configuration_error(engine):
    config = _config()
    config.alerts.webhook_url = None
    with pytest.raises(ConfigurationError) as exc:
        await engine.check_thresholds(_bundle(), config, "alert", now=NOW)
    assert exc.value.code == "missing_webhook"


@pytest.mark.asyncio
async def test_disabled_alerts_send_nothing(engine, notifier):
    result = await engine.check_thresholds(_bundle(), _config(enabled=False), "alert", now=NOW)
    assert result.sent is False
    notifier.send.assert_not_awaited()


def test_usage_message_layout():
    metrics = ThresholdAlertEngine.evaluate(_bundle(), _config())
    message = build_usage_message(
        metrics,
        mode="alert",
        account_ids=["acc-a", "acc-b"],
        period="2024-03",
        trigger_percent=90,
        dashboard_url="https://dash.test",
        now=NOW,
    )
    types = [block["type"] for block in message["blocks"]]
    assert types == ["header", "section", "divider", "section", "divider", "context", "actions"]
    assert "125.0% used" in message["blocks"][3]["fields"][0]["text"]
    assert message["text"] == "⚠️ Usage Alert"


def test_format_quantity():
    assert format_quantity(1.5 * 1024**4, "bytes") == "1.50 TB"
    assert format_quantity(12_000_000, "requests") == "12,000,000"
    assert format_quantity(412.5, "Mbps") == "412.50 Mbps"


@pytest.mark.asyncio
async def test_report_without_thresholds_sends_current_usage(engine, notifier):
    config = MonitoringConfig(
        account_ids=["acc-a", "acc-b"],
        skus={"core": SkuConfig(enabled=True)},
        alerts=AlertSettings(enabled=False, webhook_url=SLACK_URL),
    )

    result = await engine.check_thresholds(_bundle(), config, "report", now=NOW)

    assert result.sent is True
    by_key = {m.metric_key: m for m in result.triggered}
    assert by_key["core.requests"].current == 15e6
    assert by_key["core.requests"].threshold is None
    notifier.send.assert_awaited_once()
    _, message = notifier.send.await_args.args
    assert "No threshold set" in json.dumps(message)


@pytest.mark.asyncio
async def test_report_without_enabled_data_still_sends(engine, notifier):
    bundle = UsageBundle(account_ids=["acc-a"], generated_at=NOW)
    config = MonitoringConfig(
        account_ids=["acc-a"], alerts=AlertSettings(webhook_url=SLACK_URL)
    )

    result = await engine.check_thresholds(bundle, config, "report", now=NOW)

    assert result.sent is True
    assert result.triggered == []
    notifier.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_concurrent_alert_checks_send_once(engine, notifier):
    async def slow_send(url, message):
        await asyncio.sleep(0.01)

    notifier.send.side_effect = slow_send
    config = _config()

    first, second = await asyncio.gather(
        engine.check_thresholds(_bundle(), config, "alert", now=NOW),
        engine.check_thresholds(_bundle(), config, "alert", now=NOW),
    )

    assert sorted([first.sent, second.sent]) == [False, True]
    assert notifier.send.await_count == 1
    loser = second if first.sent else first
    assert loser.skipped_duplicates == ["core.requests"]


@pytest.mark.asyncio
async def test_failed_delivery_releases_the_dedup_claim(engine, notifier, cache_service):
    notifier.send.side_effect = NotificationDeliveryError("status 500", status_code=500)

    await engine.check_thresholds(_bundle(), _config(), "alert", now=NOW)

    assert await cache_service.get(dedup_key("acc-a,acc-b", "core.requests", "2024-03")) is None
