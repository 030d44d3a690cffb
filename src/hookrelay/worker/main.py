"""hookrelay worker process entry point.

This module provides the Worker class that:
- Wires settings, metrics, persistence, the job queue, the delivery circuit
  and the webhook service together
- Recovers persisted jobs left over from a previous run
- Runs periodic schedules (retention sweep)
- Handles graceful shutdown via SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from dataclasses import asdict
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, NoReturn

from hookrelay.db import close_engine, create_tables, get_session_factory
from hookrelay.services.circuit_breaker import CircuitBreakerRegistry
from hookrelay.services.job_queue import JobQueue, best_effort
from hookrelay.services.job_store import SqlJobStore
from hookrelay.services.metrics import Metrics
from hookrelay.services.webhook_store import SqlWebhookStore
from hookrelay.services.webhooks import WebhookConfig, WebhookService
from hookrelay.worker.handlers.retention import RETENTION_SWEEP, RetentionSweepHandler
from hookrelay.worker.scheduler import Scheduler, default_schedules

if TYPE_CHECKING:
    import httpx
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from hookrelay.core.config import Settings

logger = logging.getLogger(__name__)


class Worker:
    """Single-process runtime for job execution and webhook delivery.

    Components are built eagerly so in-process producers can publish events
    through worker.webhooks before start() is awaited.

    Example:
        worker = Worker(get_settings())
        await worker.webhooks.publish_event("invoice.paid", {"invoice_id": "inv-1"})
        await worker.start()  # runs until stop()
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            settings: Application settings.
            session_factory: Session factory; the shared engine is used when omitted.
            http_client: Client for webhook requests; one is created when omitted.
            metrics: Metrics container; a fresh one is created when omitted.
        """
        self.settings = settings
        self.metrics = metrics or Metrics()
        self._owns_engine = session_factory is None
        self.session_factory = session_factory or get_session_factory(settings.database)

        self.job_store = SqlJobStore(self.session_factory) if settings.jobs.persist_jobs else None
        self.queue = JobQueue(
            concurrency=settings.jobs.concurrency,
            store=self.job_store,
            metrics=self.metrics,
            default_max_attempts=settings.jobs.default_max_attempts,
        )
        self.circuits = CircuitBreakerRegistry(metrics=self.metrics)
        self.webhook_store = SqlWebhookStore(self.session_factory)
        self.webhooks = WebhookService(
            store=self.webhook_store,
            queue=self.queue,
            circuits=self.circuits,
            config=WebhookConfig.from_settings(settings.webhooks),
            http_client=http_client,
            metrics=self.metrics,
        )
        self.scheduler = Scheduler(self.queue)

        self.webhooks.register()
        self.queue.register(
            RETENTION_SWEEP,
            RetentionSweepHandler(
                webhook_store=self.webhook_store,
                job_store=self.job_store,
                retention_days=settings.retention.failed_delivery_retention_days,
                metrics=self.metrics,
            ),
        )

        self._shutdown_event = asyncio.Event()
        self._started_at: datetime | None = None

    async def start(self) -> None:
        """Start the worker and process jobs until stop() is called."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: environment=%s, concurrency=%d, persist_jobs=%s",
            self.settings.environment.value,
            self.settings.jobs.concurrency,
            self.settings.jobs.persist_jobs,
        )

        try:
            if self.settings.database.create_tables:
                await create_tables()
                logger.info("Database tables created")

            if self.settings.metrics.enabled:
                self.metrics.serve(self.settings.metrics.port)

            recovered = await self.queue.recover_persisted()
            self.scheduler.add_schedules(default_schedules(self.settings))
            logger.info(
                "Worker running: recovered_jobs=%d, schedules=%d",
                recovered,
                len(self.scheduler.tasks),
            )

            await self._shutdown_event.wait()
        finally:
            await self._shutdown()
            logger.info(
                "Worker stopped: processed=%s, dead=%s, uptime=%s",
                self.metrics.sample("hookrelay_jobs_processed_total"),
                self.metrics.sample("hookrelay_jobs_dead_total"),
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown of the worker."""
        logger.info("Worker shutdown requested")
        self._shutdown_event.set()

    def status(self) -> dict[str, Any]:
        """Operator view of the queue, circuits and schedules."""
        return {
            "uptime": self._get_uptime(),
            "queue": asdict(self.queue.get_stats()),
            "circuits": [
                {
                    "name": snapshot.name,
                    "state": snapshot.state.value,
                    "failures": snapshot.failures,
                    "opened_at": snapshot.opened_at,
                }
                for snapshot in self.circuits.snapshot()
            ],
            "schedules": [
                {"job_type": task.job_type, "interval": str(task.interval), "fires": task.fires}
                for task in self.scheduler.tasks
            ],
        }

    async def _shutdown(self) -> None:
        """Stop dispatching, let running jobs finish, release resources."""
        self.queue.pause()
        self.scheduler.cancel_all()

        timeout = self.settings.jobs.shutdown_timeout
        try:
            await asyncio.wait_for(self.queue.wait_until_idle(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Running jobs did not finish within %ss: running=%d",
                timeout,
                self.queue.get_stats().running,
            )

        await self.queue.close()

        job_store = self.job_store
        if job_store is not None:
            # Interrupted jobs are picked up by recover_persisted on next start
            await best_effort("reset_running", job_store.reset_running)

        await self.webhooks.aclose()
        if self._owns_engine:
            await close_engine()

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(shutdown_event: asyncio.Event) -> None:
    """Async entry point for the worker.

    Args:
        shutdown_event: Event to signal shutdown request.
    """
    from hookrelay.core.settings import get_settings

    settings = get_settings()
    worker = Worker(settings)

    worker_task = asyncio.create_task(worker.start())
    signal_task = asyncio.create_task(shutdown_event.wait())

    done, _ = await asyncio.wait({worker_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)
    if worker_task in done:
        # Startup failed; surface the error
        signal_task.cancel()
        worker_task.result()
        return

    await worker.stop()

    # The worker bounds its own wait for running jobs; allow a little more for cleanup
    try:
        await asyncio.wait_for(worker_task, timeout=settings.jobs.shutdown_timeout + 5)
    except TimeoutError:
        logger.warning("Worker did not stop within timeout, forcing shutdown")
        worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker_task


def run() -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Sets up logging
    - Registers signal handlers for graceful shutdown
    - Loads configuration from HOOKRELAY_* environment variables
    - Runs the async worker until a shutdown signal arrives
    """
    global _shutdown_event

    log_level = os.environ.get("HOOKRELAY_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("hookrelay worker starting...")

    async def _run_with_event() -> None:
        """Create event loop context and run main."""
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("hookrelay worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
