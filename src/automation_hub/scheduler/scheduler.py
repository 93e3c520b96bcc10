"""Task scheduler for cron and interval jobs.

This module wraps APScheduler's ``AsyncIOScheduler`` to provide:
- Cron expression validation (five-field crontab)
- Cron and interval job registration
- Job error logging
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..core.config import SchedulerConfig
from ..core.logger import get_logger

logger = get_logger("scheduler")


def parse_cron(expression: str, timezone: str | None = None) -> CronTrigger:
    """Build a ``CronTrigger`` from a five-field crontab expression.

    Args:
        expression: Crontab expression such as ``"*/5 * * * *"``
        timezone: Optional timezone name

    Returns:
        CronTrigger instance

    Raises:
        ValueError: If the expression or timezone is invalid
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ValueError("Cron expression must be a non-empty string")
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=timezone)
    except (ValueError, KeyError, TypeError) as exc:
        raise ValueError(f"Invalid cron expression {expression!r}: {exc}") from exc


def is_valid_cron(expression: str, timezone: str | None = None) -> bool:
    """Check whether ``expression`` is an acceptable crontab expression."""
    try:
        parse_cron(expression, timezone)
    except ValueError:
        return False
    return True


class TaskScheduler:
    """Scheduler for cron and interval jobs running on the asyncio event loop.

    Coroutine functions are awaited on the loop the scheduler was started on.
    Jobs added before ``start()`` are queued by APScheduler and begin firing
    once it starts.

    Example:
        ```python
        scheduler = TaskScheduler(SchedulerConfig())
        scheduler.start()  # inside a running event loop

        scheduler.add_job(my_coroutine, trigger="cron", cron="0 9 * * 1-5")
        scheduler.add_job(my_coroutine, trigger="interval", minutes=5)
        ```
    """

    def __init__(self, config: SchedulerConfig | None = None):
        """Initialize the task scheduler.

        Args:
            config: Scheduler configuration
        """
        self.config = config or SchedulerConfig()
        job_defaults = {
            "coalesce": self.config.coalesce,
            "max_instances": 1,
            "misfire_grace_time": self.config.misfire_grace_time,
        }
        self._scheduler = AsyncIOScheduler(
            job_defaults=job_defaults,
            timezone=self.config.timezone,
        )
        self._scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._job_missed, EVENT_JOB_MISSED)

    def _job_error(self, event: JobExecutionEvent) -> None:
        logger.error(
            f"Job {event.job_id} failed with exception: {event.exception}",
            exc_info=event.exception,
        )

    def _job_missed(self, event: JobExecutionEvent) -> None:
        logger.warning(f"Job {event.job_id} missed its run time {event.scheduled_run_time}")

    def start(self) -> None:
        """Start the scheduler on the running event loop.

        Raises:
            RuntimeError: If scheduler is not enabled in config
        """
        if not self.config.enabled:
            raise RuntimeError("Scheduler is disabled in configuration")

        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        """Shutdown the scheduler.

        Args:
            wait: Whether to wait for running jobs to complete
        """
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return bool(self._scheduler.running)

    def add_job(
        self,
        func: Callable,
        trigger: str = "interval",
        job_id: str | None = None,
        replace_existing: bool = True,
        args: list[Any] | tuple[Any, ...] | None = None,
        **trigger_args: Any,
    ) -> str:
        """Add a job to the scheduler.

        Args:
            func: Function or coroutine function to execute
            trigger: Trigger type ('interval' or 'cron')
            job_id: Unique job ID (auto-generated if None)
            replace_existing: Whether to replace existing job with same ID
            args: Positional arguments passed to ``func``
            **trigger_args: Trigger-specific arguments. For 'cron' pass
                ``cron=<crontab expression>`` and optionally ``timezone``;
                for 'interval' pass the ``IntervalTrigger`` keywords.

        Returns:
            Job ID

        Raises:
            ValueError: If the trigger type or cron expression is invalid
        """
        if job_id is None:
            job_id = f"{func.__module__}.{func.__name__}-{uuid.uuid4().hex}"

        trigger_obj: Any
        if trigger == "interval":
            trigger_obj = IntervalTrigger(**trigger_args)
        elif trigger == "cron":
            expression = trigger_args.pop("cron")
            timezone = trigger_args.pop("timezone", None) or self.config.timezone
            trigger_obj = parse_cron(expression, timezone)
        else:
            raise ValueError(f"Unsupported trigger type: {trigger}")

        self._scheduler.add_job(
            func,
            trigger_obj,
            args=list(args or []),
            id=job_id,
            replace_existing=replace_existing,
        )

        logger.info(f"Job added: {job_id} with trigger {trigger}")
        return job_id

    def remove_job(self, job_id: str) -> bool:
        """Remove a job from the scheduler.

        Args:
            job_id: Job ID to remove

        Returns:
            True if the job existed
        """
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Job removed: {job_id}")
        return True

    def get_job(self, job_id: str) -> Any | None:
        """Get a specific job by ID.

        Args:
            job_id: Job ID

        Returns:
            Job object or None if not found
        """
        return self._scheduler.get_job(job_id)

    def get_jobs(self) -> list[Any]:
        """Get all scheduled jobs."""
        return self._scheduler.get_jobs()
