"""Mock scheduler for testing."""

from collections.abc import Callable
from typing import Any

from automation_hub.core.config import SchedulerConfig
from automation_hub.scheduler import parse_cron


class MockJob:
    """Mock APScheduler job."""

    def __init__(self, job_id: str, func: Callable, trigger: Any, args: list[Any], **kwargs):
        self.id = job_id
        self.func = func
        self.trigger = trigger
        self.args = args
        self.kwargs = kwargs

    def __repr__(self):
        return f"MockJob(id={self.id})"


class MockScheduler:
    """Recording stand-in for ``TaskScheduler``; jobs only run when executed."""

    def __init__(self, config: SchedulerConfig | None = None):
        self.config = config or SchedulerConfig()
        self.jobs: dict[str, MockJob] = {}
        self.removed: list[str] = []
        self.running = False

    def add_job(
        self,
        func: Callable,
        trigger: str = "interval",
        job_id: str | None = None,
        replace_existing: bool = True,
        args: list[Any] | None = None,
        **trigger_args: Any,
    ) -> str:
        """Add a job, validating cron expressions like the real scheduler."""
        if job_id is None:
            job_id = f"job_{len(self.jobs)}"
        if trigger == "cron":
            parse_cron(trigger_args["cron"], trigger_args.get("timezone"))
        elif trigger != "interval":
            raise ValueError(f"Unsupported trigger type: {trigger}")
        if job_id in self.jobs and not replace_existing:
            raise ValueError(f"Job {job_id} already exists")
        self.jobs[job_id] = MockJob(job_id, func, trigger, list(args or []), **trigger_args)
        return job_id

    def remove_job(self, job_id: str) -> bool:
        if job_id in self.jobs:
            del self.jobs[job_id]
            self.removed.append(job_id)
            return True
        return False

    def get_job(self, job_id: str) -> MockJob | None:
        return self.jobs.get(job_id)

    def get_jobs(self) -> list[MockJob]:
        return list(self.jobs.values())

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = False) -> None:
        self.running = False

    @property
    def is_running(self) -> bool:
        return self.running

    async def execute_job(self, job_id: str) -> Any:
        """Run a job's coroutine function as a scheduler tick would."""
        job = self.jobs[job_id]
        return await job.func(*job.args)
