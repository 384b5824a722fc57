import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import UsageSentinelException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME)

    from app.modules.usage.domain.scheduler import SchedulerService
    from app.shared.core.http import close_http_client, init_http_client
    from app.shared.core.store import close_store

    scheduler = SchedulerService()
    if settings.TESTING:
        logger.info("scheduler_skipped_in_testing")
    elif not settings.SCHEDULER_ENABLED:
        logger.info("scheduler_skipped_disabled")
    else:
        scheduler.start()
        logger.info("scheduler_started", hours=settings.PREWARM_CRON_HOURS)
    app.state.scheduler = scheduler

    await init_http_client()

    yield

    logger.info("app_shutting_down")
    scheduler.stop()
    await close_http_client()
    await close_store()


sentinel_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn looks up 'app' by default.
app: FastAPI = sentinel_app  # noqa: A001

__all__ = ["app", "sentinel_app", "lifespan"]


@sentinel_app.exception_handler(UsageSentinelException)
async def usage_sentinel_exception_handler(
    request: Request, exc: UsageSentinelException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@sentinel_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": detail_text, "code": "http_error"}},
    )


@sentinel_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "validation_error",
                "details": _sanitize_errors(exc.errors()),
            }
        },
    )


@sentinel_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Sanitized response for anything unhandled."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    sentinel_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

sentinel_app.add_middleware(GZipMiddleware, minimum_size=1000)
sentinel_app.add_middleware(RequestIDMiddleware)

register_api_routers(sentinel_app)
