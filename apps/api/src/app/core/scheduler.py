"""
Background Job Scheduler

Runs the periodic billing jobs using APScheduler with AsyncIO support.

Design Principles:
- One SchedulerHandle per process, created by the FastAPI lifespan and kept
  on ``app.state.scheduler``
- Initialization is idempotent: stable job ids plus ``replace_existing`` and
  an ``initialized`` flag, so a second call never registers a job twice
- A malformed cron expression is logged and skipped; the other jobs still run
- Every fire goes through ``_run_job_safely``; a failing job is logged and the
  scheduler keeps its registration
- Jobs are idempotent, so overlapping fires of the same job are allowed

Usage:
    from app.core.scheduler import JobDefinition, SchedulerHandle

    handle = SchedulerHandle()
    handle.init_scheduler([JobDefinition("mark-overdue", "0 8 * * *", run_mark_overdue)])
    ...
    handle.stop()
"""

import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC
from typing import Any

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED, JobEvent
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)


class SchedulerConfig:
    """Configuration for the background scheduler."""

    # Cron expressions are evaluated in UTC
    TIMEZONE = UTC

    JOB_COALESCE = True  # Combine missed executions into one
    JOB_MAX_INSTANCES = 3  # Overlapping fires are allowed, jobs are idempotent
    JOB_MISFIRE_GRACE_TIME = 60 * 5

    @classmethod
    def executors(cls) -> dict[str, Any]:
        # One fresh dict per scheduler: APScheduler consumes the config it is given
        return {"default": AsyncIOExecutor()}

    @classmethod
    def job_defaults(cls) -> dict[str, Any]:
        return {
            "coalesce": cls.JOB_COALESCE,
            "max_instances": cls.JOB_MAX_INSTANCES,
            "misfire_grace_time": cls.JOB_MISFIRE_GRACE_TIME,
        }


@dataclass(frozen=True)
class JobDefinition:
    """
    A periodic job: its stable name, cron expression and async entry point.

    ``failure_message`` is the fixed text returned by the manual trigger
    endpoint when the job raises.
    """

    name: str
    cron: str
    func: Callable[[], Awaitable[Any]]
    failure_message: str = "Job execution failed"


def _summarize(result: Any) -> str:
    if result is None:
        return "no result"
    processed = getattr(result, "processed", None)
    if processed is None:
        return str(result)
    errors = getattr(result, "errors", []) or []
    skipped = getattr(result, "skipped", 0)
    return f"processed={processed} skipped={skipped} errors={len(errors)}"


async def _run_job_safely(job: JobDefinition) -> Any:
    """
    Execute a job, logging its result and containing any exception.

    Args:
        job: The job to run

    Returns:
        The job's result, or None if it raised
    """
    started = time.monotonic()
    logger.info(f"Job {job.name} started")

    try:
        result = await job.func()
    except Exception as e:
        logger.error(f"Job {job.name} failed: {e}", exc_info=True)
        return None

    elapsed = time.monotonic() - started
    logger.info(f"Job {job.name} finished in {elapsed:.2f}s: {_summarize(result)}")
    return result


def _job_listener(event: JobEvent) -> None:
    if event.code == EVENT_JOB_MISSED:
        logger.warning(f"Job {event.job_id} missed its scheduled run time")
    elif event.code == EVENT_JOB_MAX_INSTANCES:
        logger.warning(f"Job {event.job_id} skipped: too many concurrent instances")


class SchedulerHandle:
    """Owns the AsyncIOScheduler and the registered job definitions."""

    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler(
            timezone=SchedulerConfig.TIMEZONE,
            executors=SchedulerConfig.executors(),
            job_defaults=SchedulerConfig.job_defaults(),
        )
        self._scheduler.add_listener(_job_listener, EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES)
        self._definitions: dict[str, JobDefinition] = {}
        self.initialized = False

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def init_scheduler(self, jobs: Iterable[JobDefinition], start: bool = True) -> int:
        """
        Register the jobs and start the scheduler.

        Calling this again on an initialized handle is a no-op. The count of
        jobs armed by the call is returned so callers and tests can tell a
        fresh registration from a repeated one.

        Args:
            jobs: Job definitions to arm
            start: Start the scheduler after registration (needs a running loop)

        Returns:
            Number of jobs registered by this call
        """
        if self.initialized:
            logger.info("Scheduler already initialized, skipping job registration")
            return 0

        registered = 0
        for job in jobs:
            try:
                trigger = CronTrigger.from_crontab(job.cron, timezone=SchedulerConfig.TIMEZONE)
            except ValueError as e:
                logger.error(f"Invalid cron expression '{job.cron}' for job {job.name}: {e}")
                continue

            self._scheduler.add_job(
                _run_job_safely,
                trigger=trigger,
                args=[job],
                id=job.name,
                name=job.name,
                replace_existing=True,
            )
            self._definitions[job.name] = job
            registered += 1
            logger.info(f"Registered job: {job.name} ({job.cron} UTC)")

        if start and not self._scheduler.running:
            self._scheduler.start()
            logger.info("Background job scheduler started")

        self.initialized = True
        return registered

    def stop(self) -> None:
        """Stop the scheduler. Jobs already running are cancelled."""
        if self._scheduler.running:
            logger.info("Stopping background job scheduler...")
            self._scheduler.shutdown(wait=False)
            logger.info("Background job scheduler stopped")
        self.initialized = False

    def get_job_definition(self, name: str) -> JobDefinition | None:
        return self._definitions.get(name)

    def list_jobs(self) -> list[dict[str, Any]]:
        """
        List the armed jobs.

        Returns:
            One dict per job with job_id, trigger and next_run_time
        """
        jobs = []
        for job in self._scheduler.get_jobs():
            next_run_time = getattr(job, "next_run_time", None)
            jobs.append(
                {
                    "job_id": job.id,
                    "trigger": str(job.trigger),
                    "next_run_time": next_run_time.isoformat() if next_run_time else None,
                }
            )
        return jobs
