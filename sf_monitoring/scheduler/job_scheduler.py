"""Cron job scheduling on top of APScheduler."""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED, JobEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

logger = structlog.get_logger(__name__)


def parse_cron_expression(cron_expression: str) -> CronTrigger:
    """Build a trigger from "minute hour day month day_of_week"."""
    cron_parts = cron_expression.split()
    if len(cron_parts) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expression}")

    minute, hour, day, month, day_of_week = cron_parts
    return CronTrigger(minute=minute, hour=hour, day=day, month=month, day_of_week=day_of_week)


class JobScheduler:
    """Runs cron jobs on the asyncio loop, never more than one instance each.

    Fires that APScheduler drops (missed beyond the grace time, or still
    running) are counted per job.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None, misfire_grace_seconds: int = 60):
        self.scheduler = scheduler or AsyncIOScheduler()
        self.misfire_grace_seconds = misfire_grace_seconds
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.dropped: Dict[str, int] = {}
        self.running = False
        self.scheduler.add_listener(
            self._on_job_event,
            EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES | EVENT_JOB_ERROR,
        )

    def _on_job_event(self, event: JobEvent) -> None:
        if event.code == EVENT_JOB_ERROR:
            logger.error("Scheduled job raised",
                         job_id=event.job_id,
                         error=str(getattr(event, "exception", "")))
            return

        self.dropped[event.job_id] = self.dropped.get(event.job_id, 0) + 1
        logger.warning("Scheduled fire dropped",
                       job_id=event.job_id,
                       reason="missed" if event.code == EVENT_JOB_MISSED else "still_running",
                       dropped=self.dropped[event.job_id])

    async def start(self):
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started", jobs=list(self.jobs))

    async def stop(self):
        """Stop firing. Runs already started are not awaited here."""
        if not self.running:
            return

        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def add_cron_job(
        self,
        job_id: str,
        func: Callable,
        cron_expression: str,
        description: Optional[str] = None
    ):
        """Schedule ``func`` on a cron expression, replacing a job with the same id."""
        trigger = parse_cron_expression(cron_expression)

        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        job = self.scheduler.add_job(
            func=func,
            trigger=trigger,
            id=job_id,
            name=description or job_id,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.misfire_grace_seconds
        )

        self.jobs[job_id] = {
            "job": job,
            "cron": cron_expression,
            "description": description,
            "added_at": datetime.now(timezone.utc)
        }
        self.dropped.setdefault(job_id, 0)

        logger.info("Added cron job",
                    job_id=job_id,
                    cron=cron_expression,
                    description=description)

    def remove_job(self, job_id: str) -> bool:
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False

        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        self.dropped.pop(job_id, None)
        logger.info("Removed job", job_id=job_id)
        return True

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job_info = self.jobs.get(job_id)
        if job_info is None:
            return None

        scheduler_job = self.scheduler.get_job(job_id)
        if scheduler_job is None:
            return None

        # Pending jobs (scheduler not started yet) have no next_run_time.
        next_run_time = getattr(scheduler_job, "next_run_time", None)
        return {
            "job_id": job_id,
            "name": scheduler_job.name,
            "cron": job_info["cron"],
            "next_run": next_run_time.isoformat() if next_run_time else None,
            "added_at": job_info["added_at"].isoformat(),
            "dropped": self.dropped.get(job_id, 0),
            "description": job_info.get("description")
        }

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [status for status in (self.get_job_status(job_id) for job_id in self.jobs) if status]
