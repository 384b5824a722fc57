import re
import sys
import structlog
import logging
from typing import Any, cast
from app.shared.core.config import get_settings

_SENSITIVE_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "api_key",
    "apikey",
    "access_token",
    "webhook_url",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_api_key", "private_key")
_BEARER_PATTERN = re.compile(r"(?i)bearer\s+[a-z0-9._\-]+")
_SLACK_HOOK_PATTERN = re.compile(r"https://hooks\.slack\.com/\S+")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _SENSITIVE_FIELDS:
        return True
    return key_norm.endswith(_SENSITIVE_SUFFIXES)


def secret_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact credentials and webhook URLs from log events.
    Webhook URLs grant message-post capability, so they are treated as secrets.
    """

    def redact_text(text: str) -> str:
        text = _BEARER_PATTERN.sub("Bearer [REDACTED]", text)
        return _SLACK_HOOK_PATTERN.sub("[WEBHOOK_REDACTED]", text)

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if _is_sensitive_key(k) else redact_recursive(v))
                for k, v in data.items()
            }
        elif isinstance(data, list):
            return [redact_recursive(item) for item in data]
        elif isinstance(data, str):
            return redact_text(data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    # 1. Common processors
    base_processors = [
        structlog.contextvars.merge_contextvars,  # Support async context
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        secret_redactor,  # Redact before rendering
    ]

    # 2. Choose the renderer based on environment
    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # 3. Route stdlib logging (uvicorn, apscheduler, httpx) to the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
