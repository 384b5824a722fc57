"""
Unified error handling.

Classifies exceptions into UsageSentinelException, logs them once with a
correlation id and returns a standardized JSON body.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.config import get_settings
from app.shared.core.exceptions import UsageSentinelException

logger = structlog.get_logger()

# Codes whose messages and details are safe to return in production
SAFE_CODES = {
    "unknown_sku",
    "no_accounts",
    "invalid_phase",
    "missing_webhook",
    "cache_incomplete",
    "value_error",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """Classify and log an exception, returning a standardized JSON response."""
    error_id = error_id or str(uuid4())
    settings = get_settings()
    is_prod = settings.is_production

    if isinstance(exc, UsageSentinelException):
        app_exc = exc
    elif isinstance(exc, ValueError):
        app_exc = UsageSentinelException(
            message="Invalid request parameters" if is_prod else str(exc),
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        # Never echo raw messages of unexpected failures
        app_exc = UsageSentinelException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.error(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
            exc_info=exc,
        )

    message = app_exc.message
    response_details: Optional[Dict[str, Any]] = app_exc.details or None
    if is_prod and app_exc.code not in SAFE_CODES:
        message = "An error occurred while processing your request"
        response_details = None

    log = logger.error if app_exc.status_code >= 500 else logger.warning
    log(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    return JSONResponse(
        status_code=app_exc.status_code,
        content={
            "error": {
                "message": message,
                "code": app_exc.code,
                "id": error_id,
                "details": response_details,
            }
        },
    )
