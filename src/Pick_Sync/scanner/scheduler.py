"""Timer trigger for scans, built on APScheduler's ``AsyncIOScheduler``.

The cron job calls the same ``ScanCoordinator.run_scan`` entry point as a
manual request, so both share the coordinator's single-flight guard.  The job
itself is also limited to one instance and coalesces missed firings.
"""

from __future__ import annotations

import logging
from typing import Final

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from Pick_Sync.data.repository import Repository
from Pick_Sync.models import SchedulerStatus, ScanTrigger
from Pick_Sync.scanner.coordinator import ScanCoordinator

logger = logging.getLogger(__name__)

SCAN_JOB_ID: Final[str] = "scheduled_scan"
SCHEDULER_EVENT: Final[str] = "scheduler"
MISFIRE_GRACE_SECONDS: Final[int] = 600


class ScanScheduler:
    """Fire ``run_scan`` on a crontab schedule.

    Usage::

        scheduler = ScanScheduler(coordinator, repo, cron="0 12,20 * * *")
        await scheduler.start()   # needs a running event loop
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        coordinator: ScanCoordinator,
        repository: Repository,
        *,
        cron: str = "0 12,20 * * *",
        timezone: str = "America/New_York",
    ) -> None:
        self._coordinator = coordinator
        self._repository = repository
        self._cron = cron
        self._timezone = timezone
        # Validate the expression up front so a typo fails at startup.
        self._trigger = CronTrigger.from_crontab(cron, timezone=timezone)
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def active(self) -> bool:
        return self._scheduler is not None

    async def start(self) -> None:
        """Register the scan job and start the scheduler (idempotent)."""
        if self._scheduler is not None:
            logger.warning("Scheduler already running")
            return

        scheduler = AsyncIOScheduler(
            timezone=self._timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": MISFIRE_GRACE_SECONDS,
            },
        )
        scheduler.add_job(
            self.run_scheduled_scan,
            trigger=self._trigger,
            id=SCAN_JOB_ID,
            name=f"Pick scan ({self._cron})",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler

        for job in scheduler.get_jobs():
            logger.info("Scheduled job: %s - next run: %s", job.id, job.next_run_time)
        await self._log_event(f"Scheduler started ({self._cron} {self._timezone})")

    async def stop(self) -> None:
        """Shut the scheduler down without waiting for a running scan."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")
        await self._log_event("Scheduler stopped")

    async def run_scheduled_scan(self) -> None:
        """Job body: one timer-triggered scan."""
        logger.info("Scheduled scan triggered")
        result = await self._coordinator.run_scan(ScanTrigger.SCHEDULE)
        if result.busy:
            logger.info("Scheduled scan skipped: %s", result.message)

    def status(self) -> SchedulerStatus:
        next_run_at = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(SCAN_JOB_ID)
            next_run_at = job.next_run_time if job is not None else None
        return SchedulerStatus(
            active=self.active,
            scan_running=self._coordinator.is_running,
            schedule=self._cron,
            timezone=self._timezone,
            next_run_at=next_run_at,
        )

    async def _log_event(self, message: str) -> None:
        try:
            await self._repository.log_scheduler_event(
                SCHEDULER_EVENT, scan_id=None, success=True, message=message
            )
        except Exception:
            logger.exception("Failed to write scheduler log entry")
