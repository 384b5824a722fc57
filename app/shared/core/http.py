"""
Shared async HTTP client.

One httpx.AsyncClient is used by the FastAPI lifespan, the scheduler jobs
and the analytics/webhook clients so connection pools are reused.
"""

import inspect
from typing import Optional
import httpx
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None

_LIMITS = httpx.Limits(
    max_connections=100, max_keepalive_connections=20, keepalive_expiry=30.0
)


def _build_client() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        http2=True,
        timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS, connect=10.0),
        limits=_LIMITS,
        headers={"User-Agent": f"usage-sentinel/{settings.VERSION}"},
    )


def get_http_client() -> httpx.AsyncClient:
    """Returns the global shared httpx.AsyncClient, creating it lazily."""
    global _client
    if _client is None:
        logger.warning(
            "http_client_lazy_initialized",
            msg="Client was not pre-initialized",
        )
        _client = _build_client()
    return _client


async def init_http_client() -> None:
    """Initializes the global httpx.AsyncClient."""
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return

    _client = _build_client()
    logger.info("http_client_initialized", http2=True)


async def close_http_client() -> None:
    """Gracefully shuts down the global client, flushing its connection pool."""
    global _client
    if _client is None:
        return

    close_result = _client.aclose()
    if inspect.isawaitable(close_result):
        await close_result
    _client = None
    logger.info("http_client_closed")
