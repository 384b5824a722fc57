from typing import Annotated

from fastapi import APIRouter, Depends
import structlog

from app.modules.usage.domain.config_repository import MonitoringConfigRepository
from app.modules.usage.domain.models import CamelModel, PhaseResult
from app.modules.usage.domain.orchestrator import ProgressiveFetchOrchestrator
from app.modules.usage.domain.service import get_config_repository, get_orchestrator

router = APIRouter(tags=["Metrics"])
logger = structlog.get_logger()


class ProgressiveRequest(CamelModel):
    account_ids: list[str]
    # Out-of-range phases are rejected by the orchestrator as a configuration error
    phase: int = 1


@router.post(
    "/progressive", response_model=PhaseResult, response_model_exclude_none=True
)
async def progressive_metrics(
    body: ProgressiveRequest,
    orchestrator: Annotated[ProgressiveFetchOrchestrator, Depends(get_orchestrator)],
    repository: Annotated[MonitoringConfigRepository, Depends(get_config_repository)],
) -> PhaseResult:
    """
    One step of the progressive load protocol.

    Phase 1 returns the hot bundle when it is live and complete ("cached"),
    otherwise zone counts. Phases 2 and 3 are only requested after a miss.
    """
    config = await repository.load()
    result = await orchestrator.fetch(body.account_ids, body.phase, config)
    logger.info(
        "progressive_phase_served",
        phase=body.phase,
        kind=result.kind,
        failed_accounts=result.failed_accounts,
    )
    return result
