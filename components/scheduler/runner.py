"""In-process job runner on top of APScheduler's asyncio scheduler."""

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel

from components.core.clock import Clock
from components.core.config import Settings
from components.scheduler.jobs import ReminderJobs
from components.scheduler.schemas import JobStatus, SchedulerStatus, TriggerResult
from components.scheduler.triggers import daily_at, every_minutes, hourly_at, next_fire

logger = logging.getLogger(__name__)

REMINDER_PASS = "reminder_pass"
PENDING_DRAIN = "pending_drain"
DPD_SWEEP = "dpd_sweep"

# A run that is late by more than this is skipped; missed runs collapse into one
JOB_DEFAULTS = {"coalesce": True, "max_instances": 1, "misfire_grace_time": 300}


class JobState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class ScheduledJob:
    name: str
    trigger: CronTrigger
    func: Callable[[Optional[datetime]], Awaitable[Any]]
    state: JobState = JobState.IDLE
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None


class Scheduler:
    """
    Runs the reminder pass daily, the pending drain every few minutes and
    the DPD sweep hourly, all in the configured timezone.

    A failing run is logged and recorded on its job; it never stops the
    schedule or the other jobs.
    """

    def __init__(self, jobs: ReminderJobs, clock: Clock, settings: Settings):
        self.clock = clock
        self.settings = settings
        self._apscheduler: Optional[AsyncIOScheduler] = None
        tz = clock.tz
        self._jobs: Dict[str, ScheduledJob] = {
            REMINDER_PASS: ScheduledJob(
                REMINDER_PASS,
                daily_at(settings.REMINDER_HOUR, settings.REMINDER_MINUTE, tz),
                jobs.run_reminder_pass,
            ),
            PENDING_DRAIN: ScheduledJob(
                PENDING_DRAIN,
                every_minutes(settings.DRAIN_INTERVAL_MINUTES, tz),
                jobs.drain_pending,
            ),
            DPD_SWEEP: ScheduledJob(
                DPD_SWEEP,
                hourly_at(settings.DPD_MINUTE, tz),
                jobs.recalculate_dpd,
            ),
        }

    @property
    def jobs(self) -> Dict[str, ScheduledJob]:
        return self._jobs

    @property
    def running(self) -> bool:
        return self._apscheduler is not None and self._apscheduler.running

    async def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return

        # Wakeups are computed against UTC; each trigger carries the local zone
        self._apscheduler = AsyncIOScheduler(
            timezone=timezone.utc,
            event_loop=asyncio.get_running_loop(),
            job_defaults=JOB_DEFAULTS,
        )
        for job in self._jobs.values():
            self._apscheduler.add_job(
                self.run_job, trigger=job.trigger, args=[job], id=job.name, name=job.name,
            )
        self._apscheduler.start()
        logger.info("Scheduler started with %d jobs in %s", len(self._jobs), self.clock.tz.key)

    async def stop(self) -> None:
        if not self.running:
            return

        self._apscheduler.shutdown(wait=False)
        self._apscheduler = None
        logger.info("Scheduler stopped")

    def get_status(self) -> SchedulerStatus:
        now = self.clock.aware_now()
        jobs = {}
        for name, job in self._jobs.items():
            jobs[name] = JobStatus(
                name=name,
                trigger=str(job.trigger),
                state=job.state.value,
                next_run=self._next_run(job, now),
                last_run=job.last_run,
                last_error=job.last_error,
            )
        return SchedulerStatus(
            running=self.running,
            job_count=len(self._jobs),
            timezone=self.clock.tz.key,
            next_run_times={name: status.next_run for name, status in jobs.items()},
            jobs=jobs,
        )

    async def trigger_reminder_pass(self) -> TriggerResult:
        return await self._trigger(REMINDER_PASS, "Reminder pass")

    async def trigger_pending_drain(self) -> TriggerResult:
        return await self._trigger(PENDING_DRAIN, "Pending notification drain")

    async def trigger_dpd_sweep(self) -> TriggerResult:
        return await self._trigger(DPD_SWEEP, "DPD recalculation")

    async def _trigger(self, name: str, label: str) -> TriggerResult:
        logger.info("Manual trigger: %s", label)
        ok, outcome = await self.run_job(self._jobs[name])
        if not ok:
            return TriggerResult(success=False, message=f"{label} failed: {outcome}")

        if isinstance(outcome, BaseModel):
            data = outcome.model_dump()
        else:
            data = {"updated": outcome}
        return TriggerResult(success=True, message=f"{label} completed", data=data)

    async def run_job(self, job: ScheduledJob, now: Optional[datetime] = None) -> Tuple[bool, Any]:
        """Run a job once. Returns (True, result) or (False, error message)."""
        job.state = JobState.RUNNING
        job.last_run = self.clock.now()
        try:
            result = await job.func(now)
        except Exception as exc:
            logger.exception("Job %s failed", job.name)
            job.last_error = str(exc)
            return False, str(exc)
        finally:
            job.state = JobState.IDLE

        job.last_error = None
        return True, result

    def _next_run(self, job: ScheduledJob, now: datetime) -> Optional[datetime]:
        if self.running:
            scheduled = self._apscheduler.get_job(job.name)
            if scheduled is not None:
                return scheduled.next_run_time
        return next_fire(job.trigger, now)
