from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from app.shared.core.store import get_store

logger = structlog.get_logger()

_REQUIRED_API_PREFIXES = {
    "/cache",
    "/config",
    "/metrics",
    "/webhook",
}

_HEALTH_CHECK_KEY = "health:check"


def _validate_router_registry(routes: list[tuple[Any, str | None]]) -> None:
    seen_prefixes: set[str] = set()
    for router, prefix in routes:
        route_list = getattr(router, "routes", None)
        if not isinstance(route_list, list) or not route_list:
            raise RuntimeError("Router registry includes an empty router definition")
        if prefix is None:
            continue
        normalized_prefix = prefix.strip()
        if not normalized_prefix.startswith("/"):
            raise RuntimeError(f"Router prefix must start with '/': {prefix!r}")
        if normalized_prefix in seen_prefixes:
            raise RuntimeError(f"Duplicate router prefix registered: {normalized_prefix}")
        seen_prefixes.add(normalized_prefix)

    missing_prefixes = sorted(_REQUIRED_API_PREFIXES - seen_prefixes)
    if missing_prefixes:
        raise RuntimeError(
            "Router registry is missing required API prefixes: "
            + ", ".join(missing_prefixes)
        )

    unexpected_prefixes = sorted(seen_prefixes - _REQUIRED_API_PREFIXES)
    if unexpected_prefixes:
        raise RuntimeError(
            "Router registry includes unexpected API prefixes: "
            + ", ".join(unexpected_prefixes)
        )


async def _check_store() -> dict[str, Any]:
    try:
        store = get_store()
        await store.put(_HEALTH_CHECK_KEY, "ok", 30)
        value = await store.get(_HEALTH_CHECK_KEY)
    except Exception as exc:
        logger.warning("health_store_check_failed", error=str(exc))
        return {"status": "down", "backend": None, "error": str(exc)}
    return {
        "status": "up" if value == "ok" else "degraded",
        "backend": type(store).__name__,
    }


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        """Root endpoint for basic reachability."""
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check(request: Request) -> Any:
        """Readiness check covering the key-value store and the scheduler."""
        store = await _check_store()
        scheduler = getattr(request.app.state, "scheduler", None)
        health = {
            "status": "healthy" if store["status"] == "up" else "unhealthy",
            "store": store,
            "scheduler": scheduler.get_status() if scheduler is not None else None,
        }
        if store["status"] == "down":
            return JSONResponse(status_code=503, content=health)
        return health


def register_api_routers(app: FastAPI) -> None:
    """Register API route modules in one place to keep app entrypoint focused."""
    from app.modules.notifications.api.v1.webhook import router as webhook_router
    from app.modules.usage.api.v1.cache import router as cache_router
    from app.modules.usage.api.v1.config import router as config_router
    from app.modules.usage.api.v1.metrics import router as metrics_router

    routes: list[tuple[Any, str | None]] = [
        (metrics_router, "/metrics"),
        (cache_router, "/cache"),
        (config_router, "/config"),
        (webhook_router, "/webhook"),
    ]

    _validate_router_registry(routes)

    for router, prefix in routes:
        if prefix is None:
            app.include_router(router)
        else:
            app.include_router(router, prefix=prefix)
