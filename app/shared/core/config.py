from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for Usage Sentinel.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Usage Sentinel"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Persistent key/value store. Without REDIS_URL an in-process store is used,
    # which only suits single-instance dev/test runs.
    REDIS_URL: Optional[str] = None
    ALLOW_IN_MEMORY_STORE: bool = False

    # Analytics source
    ANALYTICS_API_URL: str = "https://api.cloudflare.com/client/v4"
    ANALYTICS_API_TOKEN: Optional[str] = None
    UPSTREAM_TIMEOUT_SECONDS: float = 25.0
    UPSTREAM_MAX_RETRIES: int = 3
    MAX_CONCURRENT_UPSTREAM: int = 8

    # Accounts monitored when no configuration has been stored yet
    DEFAULT_ACCOUNT_IDS: list[str] = []

    # Cache policy
    HOT_CACHE_TTL_SECONDS: int = 6 * 60 * 60
    CLOSED_MONTH_TTL_SECONDS: int = 365 * 24 * 60 * 60
    HISTORY_MONTHS: int = 12

    # Alerting
    ALERT_TRIGGER_PERCENT: float = 90.0
    ALERT_DEDUP_TTL_DAYS_MONTHLY: int = 45
    ALERT_DEDUP_TTL_DAYS_WEEKLY: int = 14
    DASHBOARD_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_ALLOWED_DOMAINS: list[str] = ["hooks.slack.com"]
    WEBHOOK_REQUIRE_HTTPS: bool = True
    WEBHOOK_BLOCK_PRIVATE_IPS: bool = True

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    PREWARM_CRON_HOURS: str = "0,6,12,18"
    PREWARM_LOCK_TTL_SECONDS: int = 15 * 60

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """
        Centralized validation orchestrator.
        Groups validation by concern for clarity and specificity.
        """
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_cache_policy()
        self._validate_upstream_config()
        self._validate_environment_safety()

        return self

    def _validate_cache_policy(self) -> None:
        """TTLs must be positive and the hot cache must expire before closed months."""
        if self.HOT_CACHE_TTL_SECONDS <= 0 or self.CLOSED_MONTH_TTL_SECONDS <= 0:
            raise ValueError("Cache TTLs must be positive.")
        if self.HOT_CACHE_TTL_SECONDS >= self.CLOSED_MONTH_TTL_SECONDS:
            raise ValueError(
                "HOT_CACHE_TTL_SECONDS must be shorter than CLOSED_MONTH_TTL_SECONDS."
            )
        if self.HISTORY_MONTHS < 1 or self.HISTORY_MONTHS > 36:
            raise ValueError("HISTORY_MONTHS must be between 1 and 36.")
        if self.PREWARM_LOCK_TTL_SECONDS <= 0:
            raise ValueError("PREWARM_LOCK_TTL_SECONDS must be positive.")

    def _validate_upstream_config(self) -> None:
        """Validates analytics client bounds."""
        if self.UPSTREAM_TIMEOUT_SECONDS <= 0:
            raise ValueError("UPSTREAM_TIMEOUT_SECONDS must be positive.")
        if self.UPSTREAM_MAX_RETRIES < 1 or self.UPSTREAM_MAX_RETRIES > 10:
            raise ValueError("UPSTREAM_MAX_RETRIES must be between 1 and 10.")
        if self.MAX_CONCURRENT_UPSTREAM < 1:
            raise ValueError("MAX_CONCURRENT_UPSTREAM must be at least 1.")
        if not 0 < self.ALERT_TRIGGER_PERCENT <= 100:
            raise ValueError("ALERT_TRIGGER_PERCENT must be within (0, 100].")

    def _validate_environment_safety(self) -> None:
        """Production needs a shared store and upstream credentials."""
        if self.is_production or self.ENVIRONMENT == ENV_STAGING:
            if not self.REDIS_URL and not self.ALLOW_IN_MEMORY_STORE:
                raise ValueError(
                    "REDIS_URL is required in staging/production. Set "
                    "ALLOW_IN_MEMORY_STORE=true only for temporary break-glass usage."
                )
            if not self.ANALYTICS_API_TOKEN:
                raise ValueError(
                    "ANALYTICS_API_TOKEN must be set in staging/production."
                )

            logger = structlog.get_logger()
            if self.DASHBOARD_URL and self.DASHBOARD_URL.startswith("http://"):
                logger.warning("insecure_url_in_production", url=self.DASHBOARD_URL)
            if not self.WEBHOOK_REQUIRE_HTTPS:
                logger.warning("webhook_https_not_required_in_production")

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
