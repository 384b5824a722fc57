"""
Outbound webhook delivery (Slack-compatible incoming webhooks).

The webhook URL is treated as a secret because it grants message-post
capability into a channel. URLs are validated before every send:
HTTPS only, no embedded credentials, no private or link-local targets,
host must be on the allowlist.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from app.shared.core.config import get_settings
from app.shared.core.exceptions import NotificationDeliveryError
from app.shared.core.http import get_http_client

logger = structlog.get_logger()


def _is_private_or_link_local(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
    )


def _host_allowed(host: str, allowlist: set[str]) -> bool:
    if not allowlist:
        return False
    if host in allowlist:
        return True
    return any(host.endswith(f".{allowed}") for allowed in allowlist)


def _validate_webhook_url(
    url: str,
    allowlist: set[str],
    *,
    require_https: bool,
    block_private_ips: bool,
) -> None:
    parsed = urlparse(url)
    if require_https and parsed.scheme.lower() != "https":
        raise ValueError("Webhook URL must use HTTPS")
    if not parsed.hostname:
        raise ValueError("Webhook URL must include a host")
    if parsed.username or parsed.password:
        raise ValueError("Webhook URL must not include credentials")

    host = parsed.hostname.lower()
    if block_private_ips and (host in {"localhost"} or host.endswith(".local")):
        raise ValueError("Webhook URL must not target local hostnames")
    if block_private_ips and _is_private_or_link_local(host):
        raise ValueError("Webhook URL must not target private or link-local addresses")
    if not _host_allowed(host, allowlist):
        raise ValueError("Webhook URL host is not in allowlist")


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 12)] + "… (truncated)"


@dataclass(slots=True)
class WebhookNotifier:
    timeout_seconds: float = 10.0
    allowlist: set[str] = field(default_factory=set)
    require_https: bool = True
    block_private_ips: bool = True

    @classmethod
    def from_settings(cls) -> WebhookNotifier:
        settings = get_settings()
        return cls(
            timeout_seconds=settings.NOTIFICATION_TIMEOUT_SECONDS,
            allowlist={d.lower() for d in settings.WEBHOOK_ALLOWED_DOMAINS if d},
            require_https=settings.WEBHOOK_REQUIRE_HTTPS,
            block_private_ips=settings.WEBHOOK_BLOCK_PRIVATE_IPS,
        )

    def validate(self, webhook_url: str) -> None:
        _validate_webhook_url(
            webhook_url,
            self.allowlist,
            require_https=self.require_https,
            block_private_ips=self.block_private_ips,
        )

    async def send(self, webhook_url: str, message: dict[str, Any]) -> None:
        """
        POST one message. Raises NotificationDeliveryError on an unsafe URL,
        a transport failure or a non-2xx response. Never retries.
        """
        try:
            self.validate(webhook_url)
        except ValueError as exc:
            logger.warning("webhook_url_invalid", error=str(exc))
            raise NotificationDeliveryError(f"Webhook URL rejected: {exc}") from exc

        try:
            resp = await get_http_client().post(
                webhook_url, json=message, timeout=self.timeout_seconds
            )
        except httpx.HTTPError as exc:
            logger.warning("webhook_send_exception", error=str(exc))
            raise NotificationDeliveryError(f"Webhook delivery failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            logger.warning(
                "webhook_send_failed",
                status_code=resp.status_code,
                response=_truncate(resp.text, 300),
            )
            raise NotificationDeliveryError(
                f"Webhook responded with status {resp.status_code}",
                status_code=resp.status_code,
            )
        logger.info("webhook_delivered", blocks=len(message.get("blocks", [])))
