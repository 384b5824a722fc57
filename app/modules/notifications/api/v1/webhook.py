from typing import Annotated, Optional

from fastapi import APIRouter, Depends
import structlog

from app.modules.notifications.domain.alerts import (
    AlertMode,
    AlertResult,
    ThresholdAlertEngine,
)
from app.modules.notifications.domain.service import get_alert_engine
from app.modules.usage.domain.config_repository import MonitoringConfigRepository
from app.modules.usage.domain.models import CamelModel
from app.modules.usage.domain.orchestrator import ProgressiveFetchOrchestrator
from app.modules.usage.domain.service import get_config_repository, get_orchestrator

router = APIRouter(tags=["Alerts"])
logger = structlog.get_logger()


class WebhookCheckRequest(CamelModel):
    mode: AlertMode = "alert"
    # Defaults to the configured account set
    account_ids: Optional[list[str]] = None


@router.post("/check", response_model=AlertResult)
async def check_webhook(
    body: WebhookCheckRequest,
    engine: Annotated[ThresholdAlertEngine, Depends(get_alert_engine)],
    orchestrator: Annotated[ProgressiveFetchOrchestrator, Depends(get_orchestrator)],
    repository: Annotated[MonitoringConfigRepository, Depends(get_config_repository)],
) -> AlertResult:
    """
    Evaluate thresholds against the latest bundle.

    "alert" sends metrics at or above the trigger percentage, once per
    period. "report" sends every tracked metric and records nothing.
    """
    config = await repository.load()
    account_ids = body.account_ids or config.account_ids
    bundle = await orchestrator.latest_bundle(account_ids, config)
    result = await engine.check_thresholds(
        bundle, config, body.mode, account_ids=account_ids
    )
    logger.info(
        "webhook_check_completed",
        mode=body.mode,
        sent=result.sent,
        triggered=len(result.triggered),
    )
    return result
