"""Scheduler for periodic background jobs.

Each scheduled task is a fire-then-reschedule loop: it sleeps one full
interval, enqueues its job type on the JobQueue, and only then starts the
next interval. The first fire happens one interval after scheduling, never
immediately, and a slow consumer cannot cause overlapping fires.

Default schedules:
- Retention sweep: daily removal of expired failed deliveries and finished
  job records
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from hookrelay.worker.handlers.retention import RETENTION_SWEEP

if TYPE_CHECKING:
    from hookrelay.core.config import Settings
    from hookrelay.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """Definition of a scheduled periodic job.

    Attributes:
        job_type: Type of job to enqueue.
        interval: Time between fires.
        payload: Payload passed with every enqueued job.
        enabled: Whether this scheduled job is active.
    """

    job_type: str
    interval: timedelta
    payload: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True


@dataclass(eq=False)
class ScheduledTask:
    """Handle for a running periodic schedule.

    Attributes:
        job_type: Type of job enqueued on each fire.
        interval: Time between fires.
        payload: Payload passed with every enqueued job.
        fires: Number of times the task has fired.
        last_fired_at: When the task last fired.
    """

    job_type: str
    interval: timedelta
    payload: dict[str, Any] = field(default_factory=dict)
    fires: int = 0
    last_fired_at: datetime | None = None
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        """Whether future fires are still planned."""
        return self._task is not None and not self._task.done()


def default_schedules(settings: Settings) -> list[ScheduledJob]:
    """Build the default periodic jobs from configuration."""
    return [
        # Runs at most once per interval; retention window comes from config
        ScheduledJob(
            job_type=RETENTION_SWEEP,
            interval=timedelta(hours=settings.retention.sweep_interval_hours),
        ),
    ]


class Scheduler:
    """Periodic-timer facade over the JobQueue.

    Example:
        scheduler = Scheduler(queue)
        handle = scheduler.schedule("report.daily", timedelta(days=1))
        ...
        scheduler.cancel(handle)
    """

    def __init__(self, queue: JobQueue) -> None:
        """Initialize the scheduler.

        Args:
            queue: Queue receiving the periodic jobs.
        """
        self.queue = queue
        self._tasks: dict[tuple[str, float], ScheduledTask] = {}

    @property
    def tasks(self) -> list[ScheduledTask]:
        """Active scheduled tasks."""
        return [task for task in self._tasks.values() if task.active]

    def schedule(
        self,
        job_type: str,
        interval: timedelta,
        payload: dict[str, Any] | None = None,
    ) -> ScheduledTask:
        """Start enqueuing job_type every interval.

        Scheduling the same (job_type, interval) pair again returns the
        existing task.

        Args:
            job_type: Type of job to enqueue.
            interval: Time between fires; must be positive.
            payload: Payload passed with every enqueued job.

        Returns:
            Handle usable with cancel().

        Raises:
            ValueError: If interval is not positive.
        """
        seconds = interval.total_seconds()
        if seconds <= 0:
            msg = f"interval must be positive, got {interval}"
            raise ValueError(msg)

        key = (job_type, seconds)
        existing = self._tasks.get(key)
        if existing is not None and existing.active:
            return existing

        task = ScheduledTask(job_type=job_type, interval=interval, payload=dict(payload or {}))
        task._task = asyncio.create_task(self._run(task), name=f"schedule:{job_type}")
        self._tasks[key] = task

        logger.info("Scheduled job: job_type=%s, interval=%s", job_type, interval)
        return task

    def add_schedules(self, schedules: list[ScheduledJob]) -> list[ScheduledTask]:
        """Schedule every enabled definition."""
        return [
            self.schedule(definition.job_type, definition.interval, definition.payload)
            for definition in schedules
            if definition.enabled
        ]

    def cancel(self, task: ScheduledTask) -> None:
        """Stop future fires of task; cancelling twice is a no-op."""
        if task._task is not None and not task._task.done():
            task._task.cancel()
            logger.info("Cancelled schedule: job_type=%s, interval=%s", task.job_type, task.interval)

        key = (task.job_type, task.interval.total_seconds())
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def cancel_all(self) -> None:
        """Stop every scheduled task."""
        for task in list(self._tasks.values()):
            self.cancel(task)

    async def _run(self, task: ScheduledTask) -> None:
        seconds = task.interval.total_seconds()
        while True:
            await asyncio.sleep(seconds)
            try:
                self.queue.enqueue(task.job_type, dict(task.payload))
            except Exception as e:
                logger.exception("Failed to enqueue scheduled job: job_type=%s, error=%s", task.job_type, e)
            task.fires += 1
            task.last_fired_at = datetime.now(UTC)
