"""In-process job queue with bounded concurrency, delays and crash recovery.

Key features:
- One handler per job type; handlers are awaited as independent tasks
- Bounded parallelism through a running-count gate
- Delayed jobs held in a min-heap keyed by due time, woken by a single timer
- Immediate retry on handler failure until max_attempts, then dead letter
- Optional durable persistence through a JobStore, applied best-effort so a
  failing database never stalls dispatch

The queue applies no backoff of its own. Handlers that need backoff (such
as webhook delivery) swallow their failure and enqueue a fresh delayed job,
so delay is never applied twice.

Usage:
    queue = JobQueue(concurrency=4, metrics=metrics)
    queue.register("report.build", build_report)
    queue.enqueue("report.build", {"report_id": "r-1"}, delay=30)

All methods must be called from within the running event loop.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from hookrelay.db.models.base import JobStatus

if TYPE_CHECKING:
    from hookrelay.services.metrics import Metrics

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 2
DEFAULT_MAX_ATTEMPTS = 3


class JobEvent(str, Enum):
    """Events emitted by the queue to registered listeners.

    Listener arguments:
        PROCESSED: (job)
        FAILED: (job, error) for every failed attempt
        RETRIED: (job) when a failed attempt is put back on the queue
        DEAD: (job) when a job will not be attempted again
        PAUSED / RESUMED: ()
    """

    PROCESSED = "processed"
    FAILED = "failed"
    RETRIED = "retried"
    DEAD = "dead"
    PAUSED = "paused"
    RESUMED = "resumed"


class JobQueueError(Exception):
    """Base exception for job queue operations."""

    pass


class NoHandlerError(JobQueueError):
    """Raised when a job's type has no registered handler."""

    def __init__(self, job_type: str) -> None:
        self.job_type = job_type
        super().__init__(f"No handler registered for job_type={job_type}")


@dataclass
class Job:
    """A unit of asynchronous work.

    Timestamps are epoch seconds. A job is dispatchable once scheduled_for
    has elapsed, or immediately when it is unset.
    """

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    enqueued_at: float = field(default_factory=time.time)
    scheduled_for: float | None = None
    last_error: str | None = None

    @property
    def due_at(self) -> float:
        """Time the job becomes eligible for dispatch."""
        return self.scheduled_for if self.scheduled_for is not None else self.enqueued_at

    def is_due(self, now: float) -> bool:
        """Check whether the job may be dispatched at now."""
        return self.scheduled_for is None or self.scheduled_for <= now


# Type alias for job handlers
JobHandler = Callable[[Job], Awaitable[Any]]


class JobStore(Protocol):
    """Durable persistence collaborator for job records."""

    async def create(self, job: Job) -> None:
        """Persist a newly enqueued job as pending."""
        ...

    async def find_pending(self) -> list[Job]:
        """Return every persisted job in pending status."""
        ...

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        attempts: int | None = None,
        last_error: str | None = None,
    ) -> None:
        """Record a status change for a job."""
        ...

    async def reset_running(self) -> int:
        """Move jobs left in running status back to pending; return the count."""
        ...


@dataclass(frozen=True)
class JobQueueStats:
    """Snapshot of queue state for operators."""

    queued: int
    running: int
    concurrency: int
    handlers: list[str]
    paused: bool


async def best_effort(description: str, operation: Callable[[], Awaitable[Any]]) -> None:
    """Run a persistence side effect, logging and discarding any failure.

    Args:
        description: Short label used in the log line.
        operation: Zero-argument callable returning the awaitable to run.
    """
    try:
        await operation()
    except Exception as e:
        logger.warning("Best-effort persistence failed: operation=%s, error=%s", description, e)


class JobQueue:
    """Bounded-concurrency executor for typed asynchronous jobs.

    Attributes:
        concurrency: Maximum number of handlers running at once.
        default_max_attempts: Attempts given to jobs that do not specify any.
    """

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        store: JobStore | None = None,
        metrics: Metrics | None = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Initialize the queue.

        Args:
            concurrency: Maximum number of handlers running at once.
            store: Optional durable persistence; None keeps the queue in memory.
            metrics: Optional metrics sink.
            default_max_attempts: Attempts for jobs enqueued without a value.
        """
        if concurrency < 1:
            msg = "concurrency must be at least 1"
            raise ValueError(msg)

        self.concurrency = concurrency
        self.default_max_attempts = default_max_attempts
        self._store = store
        self._metrics = metrics

        self._handlers: dict[str, JobHandler] = {}
        self._listeners: dict[JobEvent, list[Callable[..., Any]]] = {event: [] for event in JobEvent}

        # Ready set: (due_at, sequence, job); sequence keeps FIFO order on ties
        self._heap: list[tuple[float, int, Job]] = []
        self._sequence = itertools.count()
        self._queued_ids: set[str] = set()
        self._active: dict[str, Job] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

        self._paused = False
        self._timer: asyncio.TimerHandle | None = None
        self._timer_due: float | None = None

        self._pending_writes: deque[tuple[str, Callable[[], Awaitable[Any]]]] = deque()
        self._writer: asyncio.Task[None] | None = None

        if metrics is not None:
            metrics.jobs_queue_length.set_function(lambda: len(self._heap))
            metrics.jobs_queue_running.set_function(lambda: len(self._active))
            metrics.jobs_pending_oldest_age.set_function(self._oldest_pending_age)

    @property
    def paused(self) -> bool:
        """Whether dispatch of new jobs is suspended."""
        return self._paused

    @property
    def persistent(self) -> bool:
        """Whether jobs are written to a durable store."""
        return self._store is not None

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Bind handler to job_type, replacing any previous handler.

        Args:
            job_type: Job type string selecting the handler.
            handler: Async callable invoked with the Job.
        """
        if job_type in self._handlers:
            logger.info("Replacing handler for job_type=%s", job_type)
        self._handlers[job_type] = handler
        logger.debug("Registered handler for job_type=%s", job_type)

    def add_listener(self, event: JobEvent, callback: Callable[..., Any]) -> None:
        """Subscribe callback to a queue event."""
        self._listeners[JobEvent(event)].append(callback)

    def remove_listener(self, event: JobEvent, callback: Callable[..., Any]) -> None:
        """Unsubscribe callback; unknown callbacks are ignored."""
        listeners = self._listeners[JobEvent(event)]
        if callback in listeners:
            listeners.remove(callback)

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        max_attempts: int | None = None,
        delay: float = 0.0,
    ) -> Job:
        """Add a new job to the queue.

        Args:
            job_type: Type of job (determines which handler processes it).
            payload: JSON-compatible data passed to the handler.
            max_attempts: Maximum execution attempts. Defaults to default_max_attempts.
            delay: Seconds before the job becomes eligible for dispatch.

        Returns:
            The created Job.

        Raises:
            ValueError: If max_attempts is below 1 or delay is negative.
        """
        attempts_allowed = max_attempts if max_attempts is not None else self.default_max_attempts
        if attempts_allowed < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if delay < 0:
            msg = "delay cannot be negative"
            raise ValueError(msg)

        now = time.time()
        job = Job(
            type=job_type,
            payload=payload if payload is not None else {},
            max_attempts=attempts_allowed,
            enqueued_at=now,
            scheduled_for=now + delay if delay > 0 else None,
        )

        self._push(job)
        if self._metrics is not None:
            self._metrics.jobs_enqueued.inc()

        logger.info(
            "Job enqueued: job_id=%s, job_type=%s, max_attempts=%d, delay=%ss",
            job.id,
            job.type,
            job.max_attempts,
            delay,
        )

        store = self._store
        if store is not None:
            self._persist("create", lambda: store.create(job))

        self._drain()
        return job

    def pause(self) -> None:
        """Stop dispatching new jobs; running jobs continue to completion."""
        if self._paused:
            return
        self._paused = True
        self._cancel_timer()
        logger.info("Job queue paused: queued=%d, running=%d", len(self._heap), len(self._active))
        self._emit(JobEvent.PAUSED)

    def resume(self) -> None:
        """Restart dispatching and drain any due backlog immediately."""
        if not self._paused:
            return
        self._paused = False
        logger.info("Job queue resumed: queued=%d", len(self._heap))
        self._emit(JobEvent.RESUMED)
        self._drain()

    def get_stats(self) -> JobQueueStats:
        """Return a snapshot of the queue state."""
        return JobQueueStats(
            queued=len(self._heap),
            running=len(self._active),
            concurrency=self.concurrency,
            handlers=sorted(self._handlers),
            paused=self._paused,
        )

    async def recover_persisted(self) -> int:
        """Reload persisted pending jobs after a restart.

        Jobs left in running status by a crashed process are first reset to
        pending, then every pending job is put back on the ready set with the
        attempt count it was persisted with. Jobs already queued or running in
        this process are skipped.

        Returns:
            Number of jobs added to the ready set.
        """
        if self._store is None:
            return 0

        try:
            reset = await self._store.reset_running()
            jobs = await self._store.find_pending()
        except Exception as e:
            logger.warning("Job recovery failed: error=%s", e)
            return 0

        recovered = 0
        for job in jobs:
            if job.id in self._queued_ids or job.id in self._active:
                continue
            self._push(job)
            recovered += 1

        logger.info("Recovered persisted jobs: recovered=%d, reset_running=%d", recovered, reset)
        self._drain()
        return recovered

    async def wait_until_idle(self) -> None:
        """Wait until no job is executing."""
        await self._idle.wait()

    async def flush(self) -> None:
        """Wait for queued persistence writes to finish."""
        while self._writer is not None and not self._writer.done():
            await self._writer

    async def close(self) -> None:
        """Stop the wake timer and flush pending persistence writes."""
        self._cancel_timer()
        await self.flush()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _push(self, job: Job) -> None:
        heapq.heappush(self._heap, (job.due_at, next(self._sequence), job))
        self._queued_ids.add(job.id)

    def _drain(self) -> None:
        """Start every due job that fits under the concurrency gate.

        When the earliest job is not yet due, arm the wake timer for it and
        stop; nothing later in the heap can be due either.
        """
        if self._paused:
            return

        now = time.time()
        while len(self._active) < self.concurrency and self._heap:
            due_at, _, job = self._heap[0]
            if not job.is_due(now):
                self._arm_timer(due_at, now)
                break
            heapq.heappop(self._heap)
            self._queued_ids.discard(job.id)
            self._start(job)

    def _arm_timer(self, due_at: float, now: float) -> None:
        if self._timer is not None and self._timer_due is not None and self._timer_due <= due_at:
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(due_at - now, 0.0), self._on_timer)
        self._timer_due = due_at

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_due = None

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_due = None
        self._drain()

    def _start(self, job: Job) -> None:
        self._active[job.id] = job
        self._idle.clear()
        task = asyncio.create_task(self._run(job), name=f"job:{job.type}:{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Job) -> None:
        job.attempts += 1
        try:
            handler = self._handlers.get(job.type)
            if handler is None:
                raise NoHandlerError(job.type)

            self._persist_status(job, JobStatus.RUNNING)
            logger.info(
                "Processing job: job_id=%s, job_type=%s, attempt=%d/%d",
                job.id,
                job.type,
                job.attempts,
                job.max_attempts,
            )
            await handler(job)

        except NoHandlerError as e:
            # Configuration error: dead-letter without further attempts
            job.last_error = str(e)
            logger.error("%s: job_id=%s", e, job.id)
            if self._metrics is not None:
                self._metrics.jobs_failed.inc()
            self._emit(JobEvent.FAILED, job, e)
            self._dead_letter(job)

        except Exception as e:
            self._handle_failure(job, e)

        else:
            self._complete(job)

        finally:
            self._active.pop(job.id, None)
            if not self._active:
                self._idle.set()
            self._drain()

    def _complete(self, job: Job) -> None:
        latency = time.time() - job.enqueued_at
        if self._metrics is not None:
            self._metrics.jobs_latency.observe(max(latency, 0.0))
            self._metrics.jobs_processed.inc()

        logger.info(
            "Job completed: job_id=%s, job_type=%s, attempts=%d, latency=%.3fs",
            job.id,
            job.type,
            job.attempts,
            latency,
        )
        self._persist_status(job, JobStatus.COMPLETED)
        self._emit(JobEvent.PROCESSED, job)

    def _handle_failure(self, job: Job, error: Exception) -> None:
        job.last_error = str(error)
        if self._metrics is not None:
            self._metrics.jobs_failed.inc()

        logger.exception(
            "Job failed: job_id=%s, job_type=%s, attempt=%d/%d, error=%s",
            job.id,
            job.type,
            job.attempts,
            job.max_attempts,
            error,
        )
        self._emit(JobEvent.FAILED, job, error)

        if job.attempts < job.max_attempts:
            self._push(job)
            if self._metrics is not None:
                self._metrics.jobs_retried.inc()
            self._persist_status(job, JobStatus.PENDING)
            self._emit(JobEvent.RETRIED, job)
        else:
            self._dead_letter(job)

    def _dead_letter(self, job: Job) -> None:
        if self._metrics is not None:
            self._metrics.jobs_dead.inc()

        logger.warning(
            "Job dead-lettered: job_id=%s, job_type=%s, attempts=%d, error=%s",
            job.id,
            job.type,
            job.attempts,
            job.last_error,
        )
        self._persist_status(job, JobStatus.FAILED)
        self._emit(JobEvent.DEAD, job)

    def _emit(self, event: JobEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("Job queue listener failed: event=%s", event.value)

    def _oldest_pending_age(self) -> float:
        if not self._heap:
            return 0.0
        oldest = min(job.enqueued_at for _, _, job in self._heap)
        return max(time.time() - oldest, 0.0)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_status(self, job: Job, status: JobStatus) -> None:
        store = self._store
        if store is None:
            return
        attempts = job.attempts
        last_error = job.last_error
        self._persist(
            f"update_status:{status.value}",
            lambda: store.update_status(job.id, status, attempts=attempts, last_error=last_error),
        )

    def _persist(self, description: str, operation: Callable[[], Awaitable[Any]]) -> None:
        """Queue a persistence write for the background writer.

        Writes are applied one at a time in submission order, so a job's
        create always lands before its status updates.
        """
        self._pending_writes.append((description, operation))
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._write_loop(), name="job-queue-persistence")

    async def _write_loop(self) -> None:
        while self._pending_writes:
            description, operation = self._pending_writes.popleft()
            await best_effort(description, operation)
