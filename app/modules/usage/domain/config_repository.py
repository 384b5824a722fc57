from __future__ import annotations

from typing import Optional

import structlog
from pydantic import ValidationError

from app.modules.usage.domain.monitoring import MonitoringConfig
from app.shared.core.cache import CacheService
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()

PREFIX_CONFIG = "config"
DEFAULT_CONFIG_NAME = "default"


class MonitoringConfigRepository:
    """Stores the operator's monitoring configuration next to the cache."""

    def __init__(self, cache: CacheService) -> None:
        self.cache = cache

    @staticmethod
    def key(name: str = DEFAULT_CONFIG_NAME) -> str:
        return f"{PREFIX_CONFIG}:{name}"

    async def load(self, name: str = DEFAULT_CONFIG_NAME) -> MonitoringConfig:
        payload = await self.cache.get_json(self.key(name))
        if payload is None:
            logger.info("monitoring_config_default_used", name=name)
            return MonitoringConfig(account_ids=list(get_settings().DEFAULT_ACCOUNT_IDS))
        try:
            return MonitoringConfig.model_validate(payload)
        except ValidationError as exc:
            logger.error("monitoring_config_invalid", name=name, error=str(exc))
            raise ConfigurationError(
                "Stored monitoring configuration is invalid",
                code="invalid_monitoring_config",
                details={"name": name},
            ) from exc

    async def save(
        self, config: MonitoringConfig, name: Optional[str] = None
    ) -> MonitoringConfig:
        name = name or DEFAULT_CONFIG_NAME
        await self.cache.set(self.key(name), config.model_dump_json(by_alias=True))
        logger.info(
            "monitoring_config_saved",
            name=name,
            accounts=len(config.account_ids),
            enabled_skus=config.enabled_sku_ids(),
        )
        return config
