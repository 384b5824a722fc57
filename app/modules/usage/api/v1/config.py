from typing import Annotated

from fastapi import APIRouter, Depends
import structlog

from app.modules.usage.domain.config_repository import MonitoringConfigRepository
from app.modules.usage.domain.monitoring import MonitoringConfig
from app.modules.usage.domain.service import get_config_repository

router = APIRouter(tags=["Configuration"])
logger = structlog.get_logger()


@router.get("", response_model=MonitoringConfig)
async def read_config(
    repository: Annotated[MonitoringConfigRepository, Depends(get_config_repository)],
) -> MonitoringConfig:
    return await repository.load()


@router.post("", response_model=MonitoringConfig)
async def replace_config(
    body: MonitoringConfig,
    repository: Annotated[MonitoringConfigRepository, Depends(get_config_repository)],
) -> MonitoringConfig:
    """Replace the stored configuration. Newly enabled SKUs make cached bundles incomplete."""
    return await repository.save(body)
