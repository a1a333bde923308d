"""
Scheduler infrastructure for the recurring caching run.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter


logger = logging.getLogger(__name__)


def build_trigger(
    interval_seconds: Optional[int] = None,
    cron_expression: Optional[str] = None,
    timezone: str = "UTC",
) -> BaseTrigger:
    """Cron trigger when an expression is given, interval trigger otherwise."""
    if cron_expression:
        if len(cron_expression.split()) != 5:
            raise ValueError("Cron expression must have 5 parts: minute hour day month day_of_week")
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")
        return CronTrigger.from_crontab(cron_expression, timezone=timezone)

    if not interval_seconds or interval_seconds <= 0:
        raise ValueError("Either a cron expression or a positive interval is required")
    return IntervalTrigger(seconds=interval_seconds, timezone=timezone)


class Scheduler:
    """APScheduler wrapper with an in-memory job store.

    Jobs are rebuilt from configuration on every start, so nothing is
    persisted. Up to ``max_instances`` runs of one job may overlap.
    """

    def __init__(self, timezone: str = "UTC", max_instances: int = 3):
        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": max_instances,
                "misfire_grace_time": 60,  # seconds
            },
            timezone=timezone,
        )
        self._started = False

    async def start(self) -> None:
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info("Scheduler started")

    async def stop(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

    def add_job(
        self,
        func: Callable[[], Awaitable[Any]],
        job_id: str,
        *,
        interval_seconds: Optional[int] = None,
        cron_expression: Optional[str] = None,
    ) -> None:
        """Register ``func`` on a cron or interval schedule, replacing ``job_id``."""
        trigger = build_trigger(interval_seconds, cron_expression, self.timezone)
        self._scheduler.add_job(func, trigger=trigger, id=job_id, name=job_id, replace_existing=True)
        logger.info(f"Scheduled job {job_id}: {trigger}")

    def list_jobs(self) -> Dict[str, Dict[str, Any]]:
        return {
            job.id: {
                "name": job.name,
                "next_run": getattr(job, "next_run_time", None),
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        }
