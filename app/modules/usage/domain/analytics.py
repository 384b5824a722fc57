"""
Analytics source client.

The source answers three questions: which zones an account owns, and what
usage one account or one zone recorded for a SKU over a time range. The
payload for a usage query is the raw mapping the SKU builders consume.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError, UpstreamFetchError
from app.shared.core.http import get_http_client

logger = structlog.get_logger()

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class AnalyticsSource(Protocol):
    async def list_zones(self, account_id: str) -> list[dict[str, Any]]: ...

    async def query_usage(
        self, account_id: str, sku_id: str, start: datetime, end: datetime
    ) -> Mapping[str, Any]: ...

    async def query_zone_usage(
        self, zone_id: str, sku_id: str, start: datetime, end: datetime
    ) -> Mapping[str, Any]: ...


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class HttpAnalyticsSource:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        retry_wait_seconds: float = 0.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client
        self.max_retries = max(1, max_retries)
        self.retry_wait_seconds = retry_wait_seconds

    @classmethod
    def from_settings(cls) -> HttpAnalyticsSource:
        settings = get_settings()
        if not settings.ANALYTICS_API_TOKEN:
            raise ConfigurationError(
                "ANALYTICS_API_TOKEN is not configured",
                code="missing_credentials",
            )
        return cls(
            settings.ANALYTICS_API_URL,
            settings.ANALYTICS_API_TOKEN,
            max_retries=settings.UPSTREAM_MAX_RETRIES,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_http_client()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[dict[str, Any]] = None,
        account_id: Optional[str] = None,
        sku_id: Optional[str] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}"}
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=8),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "analytics_request_retry",
                            attempt=attempt.retry_state.attempt_number,
                            max_attempts=self.max_retries,
                            path=path,
                        )
                    response = await self.client.request(
                        method, url, headers=headers, json=body
                    )
                    response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamFetchError(
                f"Analytics request failed with status {exc.response.status_code}",
                account_id=account_id,
                sku_id=sku_id,
                details={"path": path, "status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFetchError(
                f"Analytics request transport error: {exc}",
                account_id=account_id,
                sku_id=sku_id,
                details={"path": path},
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamFetchError(
                "Analytics response is not valid JSON",
                account_id=account_id,
                sku_id=sku_id,
                details={"path": path},
            ) from exc
        if not isinstance(payload, Mapping) or payload.get("success") is False:
            errors = payload.get("errors") if isinstance(payload, Mapping) else None
            raise UpstreamFetchError(
                "Analytics source reported an error",
                account_id=account_id,
                sku_id=sku_id,
                details={"path": path, "errors": errors},
            )
        return payload.get("result")

    async def list_zones(self, account_id: str) -> list[dict[str, Any]]:
        result = await self._request(
            "GET", f"/accounts/{account_id}/zones", account_id=account_id
        )
        return [zone for zone in result or [] if isinstance(zone, dict)]

    async def query_usage(
        self, account_id: str, sku_id: str, start: datetime, end: datetime
    ) -> Mapping[str, Any]:
        result = await self._request(
            "POST",
            f"/accounts/{account_id}/usage/{sku_id}",
            body={"since": _iso(start), "until": _iso(end)},
            account_id=account_id,
            sku_id=sku_id,
        )
        return result if isinstance(result, Mapping) else {}

    async def query_zone_usage(
        self, zone_id: str, sku_id: str, start: datetime, end: datetime
    ) -> Mapping[str, Any]:
        result = await self._request(
            "POST",
            f"/zones/{zone_id}/usage/{sku_id}",
            body={"since": _iso(start), "until": _iso(end)},
            sku_id=sku_id,
        )
        return result if isinstance(result, Mapping) else {}
