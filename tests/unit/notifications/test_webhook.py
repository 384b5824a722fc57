from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.modules.notifications.domain.webhook import WebhookNotifier, _validate_webhook_url
from app.shared.core.exceptions import NotificationDeliveryError

SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"


def _notifier() -> WebhookNotifier:
    return WebhookNotifier(timeout_seconds=3.0, allowlist={"hooks.slack.com"})


def _validate(url: str) -> None:
    _validate_webhook_url(
        url, {"hooks.slack.com"}, require_https=True, block_private_ips=True
    )


def test_validate_accepts_allowlisted_https_url():
    _validate(SLACK_URL)


@pytest.mark.parametrize(
    "url,message",
    [
        ("http://hooks.slack.com/services/x", "HTTPS"),
        ("https://user:pw@hooks.slack.com/x", "credentials"),
        ("https://localhost/hook", "local hostnames"),
        ("https://10.0.0.5/hook", "private"),
        ("https://example.com/hook", "allowlist"),
    ],
)
def test_validate_rejects_unsafe_urls(url, message):
    with pytest.raises(ValueError, match=message):
        _validate(url)


@pytest.mark.asyncio
async def test_send_posts_message_with_timeout():
    client = MagicMock()
    client.post = AsyncMock(return_value=SimpleNamespace(status_code=200, text="ok"))
    message = {"text": "hello", "blocks": []}

    with patch("app.modules.notifications.domain.webhook.get_http_client", return_value=client):
        await _notifier().send(SLACK_URL, message)

    client.post.assert_awaited_once_with(SLACK_URL, json=message, timeout=3.0)


@pytest.mark.asyncio
async def test_send_non_2xx_raises_delivery_error():
    client = MagicMock()
    client.post = AsyncMock(return_value=SimpleNamespace(status_code=404, text="no_service"))

    with patch("app.modules.notifications.domain.webhook.get_http_client", return_value=client):
        with pytest.raises(NotificationDeliveryError) as exc:
            await _notifier().send(SLACK_URL, {"text": "x"})
    assert exc.value.upstream_status == 404


@pytest.mark.asyncio
async def test_send_transport_error_raises_delivery_error():
    client = MagicMock()
    client.post = AsyncMock(side_effect=httpx.ConnectTimeout("timed out"))

    with patch("app.modules.notifications.domain.webhook.get_http_client", return_value=client):
        with pytest.raises(NotificationDeliveryError, match="delivery failed"):
            await _notifier().send(SLACK_URL, {"text": "x"})


@pytest.mark.asyncio
async def test_send_rejects_invalid_url_without_network():
    client = MagicMock()
    client.post = AsyncMock()

    with patch("app.modules.notifications.domain.webhook.get_http_client", return_value=client):
        with pytest.raises(NotificationDeliveryError, match="rejected"):
            await _notifier().send("https://evil.example/hook", {"text": "x"})
    client.post.assert_not_awaited()
