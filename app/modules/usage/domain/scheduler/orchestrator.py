from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.shared.core.config import get_settings
from app.shared.core.exceptions import UsageSentinelException
from app.shared.core.store import get_store

logger = structlog.get_logger()

USAGE_REFRESH_JOB_ID = "usage_refresh"


class SchedulerOrchestrator:
    """Manages APScheduler and the periodic cache refresh and alert check."""

    def __init__(self) -> None:
        self.scheduler = AsyncIOScheduler()
        self._last_run_success: Optional[bool] = None
        self._last_run_time: Optional[str] = None
        self._last_prewarm_status: Optional[str] = None

    async def _acquire_dispatch_lock(
        self, job_name: str, ttl_seconds: int = 180
    ) -> bool:
        """
        Acquire a distributed dispatch lock to prevent duplicate schedule dispatches
        when multiple API instances run APScheduler against the same store.
        """
        if get_settings().TESTING:
            return True

        lock_key = f"scheduler:dispatch-lock:{job_name}"
        try:
            acquired = await get_store().put_if_absent(lock_key, "1", ttl_seconds)
            if not acquired:
                logger.info("scheduler_dispatch_skipped_lock_held", job=job_name)
                return False
            return True
        except Exception as exc:
            # Fail-open: if lock infrastructure fails, keep scheduler functional.
            logger.warning(
                "scheduler_dispatch_lock_error", job=job_name, error=str(exc)
            )
            return True

    async def usage_refresh_job(self) -> None:
        """
        Prewarm the hot cache for the configured accounts, then run the
        threshold check in alert mode against the refreshed bundle.
        """
        logger.info("scheduler_dispatching_usage_refresh")
        if not await self._acquire_dispatch_lock(USAGE_REFRESH_JOB_ID):
            return

        from app.modules.notifications.domain.service import get_alert_engine
        from app.modules.usage.domain.service import (
            get_config_repository,
            get_prewarm_job,
        )

        self._last_run_time = datetime.now(timezone.utc).isoformat()
        try:
            config = await get_config_repository().load()
            if not config.account_ids:
                logger.warning("scheduler_usage_refresh_no_accounts")
                self._last_run_success = False
                return

            job = get_prewarm_job()
            prewarm = await job.run(config)
            self._last_prewarm_status = prewarm.status

            bundle = await job.orchestrator.latest_bundle(config.account_ids, config)
            alerts = await get_alert_engine().check_thresholds(bundle, config, "alert")
        except UsageSentinelException as exc:
            logger.error(
                "scheduler_usage_refresh_failed",
                code=exc.code,
                error=exc.message,
            )
            self._last_run_success = False
            return
        except Exception as exc:
            logger.error("scheduler_usage_refresh_crashed", error=str(exc), exc_info=exc)
            self._last_run_success = False
            return

        self._last_run_success = prewarm.status != "failed" and not alerts.delivery_error
        logger.info(
            "scheduler_usage_refresh_completed",
            prewarm_status=prewarm.status,
            alerts_sent=alerts.sent,
            triggered=len(alerts.triggered),
        )

    def start(self) -> None:
        """Defines cron schedules and starts APScheduler."""
        self.scheduler.add_job(
            self.usage_refresh_job,
            trigger=CronTrigger(
                hour=get_settings().PREWARM_CRON_HOURS, minute=0, timezone="UTC"
            ),
            id=USAGE_REFRESH_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()

    def stop(self) -> None:
        if not self.scheduler.running:
            logger.debug("scheduler_stop_skipped_not_running")
            return
        self.scheduler.shutdown(wait=True)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "last_prewarm_status": self._last_prewarm_status,
            "jobs": [str(job.id) for job in self.scheduler.get_jobs()],
        }


class SchedulerService(SchedulerOrchestrator):
    """Scheduler API used by the app lifespan and the health endpoint."""

    async def run_now(self) -> None:
        """Run the refresh sequence outside of its cron slot."""
        await self.usage_refresh_job()
