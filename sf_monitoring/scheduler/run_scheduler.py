"""Recurring monitoring runs driven by a cron expression."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from .job_scheduler import JobScheduler, parse_cron_expression

logger = structlog.get_logger(__name__)

MONITORING_JOB_ID = "monitoring_run"


class RunScheduler:
    """Triggers a run callable on a cron schedule, one run at a time.

    A trigger that fires while a previous run is still in progress is
    skipped and counted in ``skipped_triggers``.
    """

    def __init__(
        self,
        run: Callable[[], Awaitable[Any]],
        cron_expression: str = "0 * * * *",
        run_on_startup: bool = True,
        job_scheduler: Optional[JobScheduler] = None,
    ):
        parse_cron_expression(cron_expression)
        self.run = run
        self.cron_expression = cron_expression
        self.run_on_startup = run_on_startup
        self.job_scheduler = job_scheduler or JobScheduler()
        self.skipped_triggers = 0
        self.completed_triggers = 0
        self._lock = asyncio.Lock()
        self._current: Optional[asyncio.Task] = None
        self._startup_task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def trigger(self, reason: str = "scheduled") -> Any:
        """Run once unless a run is already in progress; returns the run's result or None."""
        if self._stopped:
            logger.info("Scheduler stopped, ignoring trigger", reason=reason)
            return None
        if self._lock.locked():
            self.skipped_triggers += 1
            logger.warning("Previous run still in progress, skipping trigger",
                           reason=reason,
                           skipped=self.skipped_triggers)
            return None

        async with self._lock:
            self._current = asyncio.current_task()
            logger.info("Triggering monitoring run", reason=reason)
            try:
                result = await self.run()
            finally:
                self._current = None
            self.completed_triggers += 1
            return result

    async def _scheduled_trigger(self) -> None:
        await self.trigger("scheduled")

    async def start(self) -> None:
        """Register the cron job, start the scheduler, and optionally run once now."""
        self.job_scheduler.add_cron_job(
            MONITORING_JOB_ID,
            self._scheduled_trigger,
            self.cron_expression,
            description="Salesforce org monitoring run",
        )
        await self.job_scheduler.start()
        logger.info("Scheduler started", schedule=self.cron_expression)

        if self.run_on_startup:
            self._startup_task = asyncio.create_task(self.trigger("startup"))

    async def stop(self, wait: bool = True) -> None:
        """Stop firing triggers.

        With ``wait`` the in-flight run is allowed to finish; otherwise it
        is cancelled and the run is recorded as failed by the orchestrator.
        """
        self._stopped = True
        await self.job_scheduler.stop()

        current = self._current
        if current is None or current.done():
            logger.info("Scheduler stopped")
            return

        if wait:
            logger.info("Waiting for in-flight run to finish")
            await asyncio.wait({current})
        else:
            logger.warning("Cancelling in-flight run")
            current.cancel()
            await asyncio.gather(current, return_exceptions=True)
        logger.info("Scheduler stopped")
