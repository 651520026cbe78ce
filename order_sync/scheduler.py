import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from models.base import SyncMode
from order_sync.runner import SyncOrchestrator
from core.exceptions import SyncAlreadyRunningError

logger = logging.getLogger(__name__)

JOB_ID = "scheduled_sync"


class SyncScheduler:
    """
    Recurring sync trigger.

    Holds at most one job. Starting again replaces the job's trigger;
    stopping removes the job but never interrupts a run in progress.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_minutes: int = 15,
        cron: Optional[str] = None,
        full_sync_interval_hours: int = 24,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.orchestrator = orchestrator
        self.interval_minutes = interval_minutes
        self.cron = cron
        self.full_sync_interval = timedelta(hours=full_sync_interval_hours)
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    @property
    def is_scheduled(self) -> bool:
        return self.scheduler.get_job(JOB_ID) is not None

    def _full_sync_due(self) -> bool:
        last_full = self.orchestrator.last_full_sync_at
        if last_full is None:
            return True
        return datetime.now(timezone.utc) - last_full >= self.full_sync_interval

    async def run_scheduled_sync(self):
        """Job body: incremental run, or a full run when one is due"""
        full_sync = self._full_sync_due()
        logger.info(f"Scheduler: starting {'full' if full_sync else 'incremental'} sync")
        try:
            run = await self.orchestrator.trigger_sync(
                full_sync=full_sync,
                mode=SyncMode.FULL if full_sync else SyncMode.SCHEDULED
            )
            logger.info(f"Scheduler: sync {run.id} finished with status {run.status.value}")
        except SyncAlreadyRunningError as e:
            logger.info(f"Scheduler: skipping tick, sync {e.running_sync_id} still running")

    def _trigger(self, interval_minutes: Optional[int]):
        if interval_minutes is None and self.cron:
            return CronTrigger.from_crontab(self.cron, timezone="UTC")
        return IntervalTrigger(minutes=interval_minutes or self.interval_minutes)

    def start(self, interval_minutes: Optional[int] = None):
        """Add (or replace) the sync job and start the scheduler"""
        trigger = self._trigger(interval_minutes)
        if interval_minutes is not None:
            # An explicit interval replaces any crontab schedule
            self.interval_minutes = interval_minutes
            self.cron = None

        self.scheduler.add_job(
            self.run_scheduled_sync,
            trigger=trigger,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Sync scheduler started ({trigger})")

    def stop(self):
        """Remove the sync job; no-op when not scheduled"""
        if self.scheduler.get_job(JOB_ID) is None:
            logger.info("Sync scheduler not running, nothing to stop")
            return
        self.scheduler.remove_job(JOB_ID)
        logger.info("Sync scheduler stopped")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Sync scheduler shut down")

    def get_status(self):
        job = self.scheduler.get_job(JOB_ID)
        next_run = getattr(job, "next_run_time", None) if job else None
        return {
            "scheduled": job is not None,
            "interval_minutes": self.interval_minutes,
            "cron": self.cron,
            "next_run_time": next_run.isoformat() if next_run else None,
        }
