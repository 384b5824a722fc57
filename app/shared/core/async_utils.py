import asyncio
import inspect
from collections.abc import Awaitable, Callable, Hashable, Mapping
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger()

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


async def maybe_await(value: Any) -> Any:
    """Await `value` if it's awaitable, otherwise return it directly.

    Lets store clients that are synchronous in some backends and async in
    others be driven uniformly.
    """
    if inspect.isawaitable(value):
        return await value
    return value


async def gather_settled(
    calls: Mapping[K, Callable[[], Awaitable[T]]],
    *,
    semaphore: asyncio.Semaphore | None = None,
    log_event: str = "concurrent_call_failed",
) -> tuple[dict[K, T], dict[K, Exception]]:
    """Run labelled calls concurrently and collect every outcome.

    Failures are logged and returned next to the successes instead of
    propagating, so one failing call never aborts its siblings. Each call
    holds ``semaphore`` while it runs, so only pass one to a fan-out of leaf
    requests; held across a nested fan-out it would starve the inner calls.
    """

    async def _run(call: Callable[[], Awaitable[T]]) -> T:
        if semaphore is None:
            return await call()
        async with semaphore:
            return await call()

    labels = list(calls.keys())
    results = await asyncio.gather(
        *(_run(calls[label]) for label in labels), return_exceptions=True
    )

    successes: dict[K, T] = {}
    failures: dict[K, Exception] = {}
    for label, result in zip(labels, results):
        if isinstance(result, Exception):
            logger.warning(
                log_event,
                label=str(label),
                error=str(result),
                error_type=type(result).__name__,
            )
            failures[label] = result
        elif isinstance(result, BaseException):
            raise result
        else:
            successes[label] = result
    return successes, failures
