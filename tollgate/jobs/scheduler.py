"""
Job Scheduler
=============
APScheduler-based retention job for the call log.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import structlog

from tollgate.schemas.telemetry import PurgeResult
from tollgate.services.storage import CallStore

logger = structlog.get_logger()


class JobScheduler:
    """
    Owns the retention purge: once at startup (called by the runtime)
    and then daily at purge_hour.
    """

    def __init__(self, store: CallStore, retention_days: int, purge_hour: int = 3):
        self.scheduler = AsyncIOScheduler()
        self.store = store
        self.retention_days = retention_days
        self.purge_hour = purge_hour

    async def run_purge(self) -> PurgeResult | None:
        """Delete records older than the retention window."""
        try:
            logger.info("Running retention purge", retention_days=self.retention_days)
            return await self.store.purge_old(self.retention_days)
        except Exception as e:
            logger.error("Retention purge failed", error=str(e))
            return None

    def setup(self) -> None:
        """Configure scheduled jobs."""
        # Retention purge - runs daily at configured hour (default 3 AM)
        self.scheduler.add_job(
            self.run_purge,
            CronTrigger(hour=self.purge_hour, minute=0),
            id="retention_purge",
            name="Call Log Retention Purge",
            replace_existing=True,
        )

        logger.info(
            "Scheduler configured",
            purge_hour=self.purge_hour,
            retention_days=self.retention_days,
        )

    def start(self) -> None:
        """Start the scheduler."""
        self.scheduler.start()
        job = self.scheduler.get_job("retention_purge")
        logger.info("Scheduler started", next_purge=str(job.next_run_time) if job else None)

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
