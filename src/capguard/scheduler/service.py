"""Interval job host for the sweep, redelivery and pruning jobs."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,  # a sweep never overlaps itself
    "misfire_grace_time": 300,
}


def _describe(job: Job) -> dict[str, Any]:
    # Jobs added before start() have no next_run_time attribute yet
    return {
        "id": job.id,
        "name": job.name,
        "next_run_time": getattr(job, "next_run_time", None),
        "pending": job.pending,
    }


def _log_job_event(event: JobExecutionEvent) -> None:
    if event.code == EVENT_JOB_MISSED:
        logger.warning(f"Job '{event.job_id}' missed its run at {event.scheduled_run_time}")
    else:
        logger.error(f"Job '{event.job_id}' raised {event.exception!r}")


class SchedulerService:
    """
    Runs capguard's periodic jobs on a background thread pool.

    Persistent stores (``database_url`` set) pickle job references, so jobs
    must be given as ``"package.module:function"`` strings. With
    ``database_url=None`` the store is in memory and any callable is accepted.
    """

    def __init__(
        self,
        database_url: str | None = "sqlite:///data/scheduler.db",
        max_workers: int = 4,
        timezone: str = "UTC",
    ) -> None:
        self._database_url = database_url
        self._max_workers = max_workers
        self._timezone = timezone
        self._scheduler: BackgroundScheduler | None = None

    @property
    def scheduler(self) -> BackgroundScheduler:
        if self._scheduler is None:
            self._scheduler = self._build()
        return self._scheduler

    def _build(self) -> BackgroundScheduler:
        if self._database_url:
            store: Any = SQLAlchemyJobStore(url=self._database_url)
        else:
            store = MemoryJobStore()

        scheduler = BackgroundScheduler(
            jobstores={"default": store},
            executors={"default": ThreadPoolExecutor(max_workers=self._max_workers)},
            job_defaults=JOB_DEFAULTS,
            timezone=self._timezone,
        )
        scheduler.add_listener(_log_job_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)

        logger.info(
            f"Scheduler using {type(store).__name__} with {self._max_workers} worker(s) "
            f"in {self._timezone}"
        )
        return scheduler

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler already running; start ignored")
            return
        self.scheduler.start()
        logger.info(f"Scheduler started with {len(self.scheduler.get_jobs())} job(s)")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler; with ``wait`` the call blocks until running jobs finish."""
        if not self.is_running:
            return
        self._scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def add_job(
        self,
        job_id: str,
        func: Callable[..., Any] | str,
        interval_minutes: int,
        run_immediately: bool = False,
    ) -> None:
        """
        Register ``func`` every ``interval_minutes``, replacing any job with the same id.

        With ``run_immediately`` the first run is due now rather than one
        interval after registration.
        """
        extra: dict[str, Any] = {}
        if run_immediately:
            # next_run_time=None would add the job paused
            extra["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            func,
            IntervalTrigger(minutes=interval_minutes, timezone=self._timezone),
            id=job_id,
            name=job_id,
            replace_existing=True,
            **extra,
        )
        logger.info(
            f"Registered job '{job_id}' every {interval_minutes}m"
            + (" (first run now)" if run_immediately else "")
        )

    def remove_job(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Unregistered job '{job_id}'")
        return True

    def get_job_status(self, job_id: str) -> dict[str, Any] | None:
        job = self.scheduler.get_job(job_id)
        return _describe(job) if job is not None else None

    def list_jobs(self) -> list[dict[str, Any]]:
        return [_describe(job) for job in self.scheduler.get_jobs()]
