"""
API endpoint tests over the in-memory store and a fake analytics source.
"""
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.modules.notifications.domain.alerts import ThresholdAlertEngine
from app.modules.notifications.domain.service import get_alert_engine
from app.modules.usage.domain.cache_manager import CacheManager
from app.modules.usage.domain.fetcher import AccountFetcher
from app.modules.usage.domain.orchestrator import ProgressiveFetchOrchestrator
from app.modules.usage.domain.prewarm import CachePrewarmJob
from app.modules.usage.domain.service import get_orchestrator, get_prewarm_job
from app.shared.core.cache import CacheService
from app.shared.core.store import get_store
from app.shared.core.timeout import TimeoutManager

SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"
ACCOUNTS = ["acc-a", "acc-b"]


@pytest.fixture
def wired(app, source_factory):
    month = datetime.now(timezone.utc).strftime("%Y-%m")
    source = source_factory(
        zones={"acc-a": [{"id": "z1"}], "acc-b": [{"id": "z2"}, {"id": "z3"}]},
        usage={
            ("acc-a", "core", month): {"requests": 10e6, "bytes": 1e12},
            ("acc-b", "core", month): {"requests": 5e6, "bytes": 0.5e12},
        },
    )
    store = get_store()
    cache = CacheManager(CacheService(store))
    fetcher = AccountFetcher(source, cache, timeout=TimeoutManager("upstream", total=5.0))
    orchestrator = ProgressiveFetchOrchestrator(fetcher, cache, history_months=2)
    notifier = MagicMock()
    notifier.send = AsyncMock()

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_prewarm_job] = lambda: CachePrewarmJob(
        orchestrator, cache, store
    )
    app.dependency_overrides[get_alert_engine] = lambda: ThresholdAlertEngine(
        CacheService(store), notifier
    )
    return SimpleNamespace(source=source, notifier=notifier)


def _save_config(client, **alerts):
    payload = {
        "accountIds": ACCOUNTS,
        "skus": {"core": {"enabled": True, "thresholds": {"requests": 12e6}}},
        "alerts": {"webhookUrl": SLACK_URL, **alerts},
    }
    response = client.post("/config", json=payload)
    assert response.status_code == 200
    return response.json()


def test_lifecycle_endpoints(client):
    assert client.get("/").json()["status"] == "ok"
    assert client.get("/health/live").json() == {"status": "healthy"}

    health = client.get("/health")
    assert health.status_code == 200
    body = health.json()
    assert body["store"]["status"] == "up"
    assert body["scheduler"]["running"] is False


def test_request_id_header_is_echoed(client):
    response = client.get("/health/live", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_unsafe_request_id_is_replaced(client):
    response = client.get("/health/live", headers={"X-Request-ID": "bad id <script>"})
    echoed = response.headers["X-Request-ID"]
    assert echoed != "bad id <script>"
    assert len(echoed) == 36


def test_config_round_trip(client, wired):
    saved = _save_config(client)
    assert saved["accountIds"] == ACCOUNTS

    loaded = client.get("/config").json()
    assert loaded["skus"]["core"]["thresholds"] == {"requests": 12e6}
    assert loaded["alerts"]["webhookUrl"] == SLACK_URL


def test_config_rejects_unknown_sku(client, wired):
    response = client.post("/config", json={"skus": {"quantumShield": {"enabled": True}}})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


def test_progressive_protocol_miss_then_cached(client, wired):
    _save_config(client)

    phase1 = client.post("/metrics/progressive", json={"accountIds": ACCOUNTS, "phase": 1})
    assert phase1.status_code == 200
    assert phase1.json()["kind"] == "zoneCount"
    assert phase1.json()["coreZoneCounts"] == {"acc-a": 1, "acc-b": 2}

    phase2 = client.post("/metrics/progressive", json={"accountIds": ACCOUNTS, "phase": 2})
    assert phase2.json()["core"]["current"]["requests"] == 15e6

    phase3 = client.post("/metrics/progressive", json={"accountIds": ACCOUNTS, "phase": 3})
    body = phase3.json()
    assert body["kind"] == "complete"
    assert body["cacheWritten"] is True
    assert body["data"]["coreMetrics"]["current"]["bytes"] == 1.5e12

    cached = client.post(
        "/metrics/progressive", json={"accountIds": list(reversed(ACCOUNTS)), "phase": 1}
    )
    assert cached.json()["kind"] == "cached"
    assert cached.json()["cacheAgeMs"] >= 0


def test_progressive_rejects_invalid_phase(client, wired):
    response = client.post("/metrics/progressive", json={"accountIds": ACCOUNTS, "phase": 4})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_phase"


def test_progressive_rejects_empty_accounts(client, wired):
    response = client.post("/metrics/progressive", json={"accountIds": [], "phase": 1})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "no_accounts"


def test_prewarm_then_status(client, wired):
    _save_config(client)

    before = client.post("/cache/status", json={"accountIds": ACCOUNTS}).json()
    assert before["cached"] is False
    assert before["key"] == "hot:acc-a,acc-b"

    prewarm = client.post("/cache/prewarm")
    assert prewarm.status_code == 200
    assert prewarm.json()["status"] == "ok"
    assert prewarm.json()["accountsKey"] == "acc-a,acc-b"

    after = client.post("/cache/status", json={"accountIds": ACCOUNTS}).json()
    assert after["cached"] is True
    assert after["complete"] is True
    assert after["missingSkus"] == []


def test_prewarm_without_accounts_is_rejected(client, wired):
    response = client.post("/cache/prewarm", json={})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "no_accounts"


def test_webhook_check_sends_once_per_period(client, wired):
    _save_config(client)

    first = client.post("/webhook/check", json={"mode": "alert"})
    assert first.status_code == 200
    assert first.json()["sent"] is True
    assert first.json()["triggered"][0]["metricKey"] == "core.requests"

    second = client.post("/webhook/check", json={"mode": "alert"})
    assert second.json()["sent"] is False
    assert second.json()["skippedDuplicates"] == ["core.requests"]
    wired.notifier.send.assert_awaited_once()


def test_webhook_check_report_mode(client, wired):
    _save_config(client)
    response = client.post("/webhook/check", json={"mode": "report", "accountIds": ["acc-a"]})

    body = response.json()
    assert body["mode"] == "report"
    assert body["accountsKey"] == "acc-a"
    assert body["sent"] is True


def test_webhook_check_without_webhook_is_rejected(client, wired):
    _save_config(client, webhookUrl=None)
    response = client.post("/webhook/check", json={"mode": "alert"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "missing_webhook"
