"""
Per-call timeouts for outbound operations.

Each upstream account/SKU query runs under a fixed bound; a timed-out call
fails only that account/SKU.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from app.shared.core.config import get_settings
from app.shared.core.exceptions import UpstreamFetchError

logger = structlog.get_logger()

T = TypeVar("T")

# Default timeout configurations (seconds)
TIMEOUT_CONFIGS: dict[str, float] = {
    "default": 30.0,
    "upstream": 25.0,
    "webhook": 10.0,
    "cache": 2.0,
}


class TimeoutManager:
    """Manages timeouts for external operations."""

    def __init__(self, operation_type: str = "default", total: float | None = None):
        self.operation_type = operation_type
        if total is None and operation_type == "upstream":
            total = get_settings().UPSTREAM_TIMEOUT_SECONDS
        self.total = total or TIMEOUT_CONFIGS.get(
            operation_type, TIMEOUT_CONFIGS["default"]
        )

    async def execute_with_timeout(
        self,
        coro: Callable[..., Awaitable[T]],
        *args: Any,
        account_id: str | None = None,
        sku_id: str | None = None,
        **kwargs: Any,
    ) -> T:
        """Execute a coroutine, raising UpstreamFetchError when it overruns."""
        start_time = time.perf_counter()

        try:
            result = await asyncio.wait_for(coro(*args, **kwargs), timeout=self.total)
        except asyncio.TimeoutError:
            execution_time = time.perf_counter() - start_time
            logger.warning(
                "operation_timed_out",
                operation_type=self.operation_type,
                account_id=account_id,
                sku_id=sku_id,
                execution_time_seconds=round(execution_time, 3),
                timeout_seconds=self.total,
            )
            raise UpstreamFetchError(
                f"Operation timed out after {self.total} seconds",
                account_id=account_id,
                sku_id=sku_id,
                details={
                    "operation_type": self.operation_type,
                    "timeout_seconds": self.total,
                },
            )

        logger.debug(
            "operation_completed_within_timeout",
            operation_type=self.operation_type,
            execution_time_seconds=round(time.perf_counter() - start_time, 3),
        )
        return result
