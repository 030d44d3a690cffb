"""Tests for the hookrelay worker process.

Tests cover:
- Component wiring from settings
- Startup: table creation, metrics endpoint, recovery, default schedules
- Graceful shutdown
- Operator status and uptime reporting
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hookrelay.core.config import Settings
from hookrelay.services.webhooks import DELIVER_JOB_TYPE
from hookrelay.worker.handlers.retention import RETENTION_SWEEP
from hookrelay.worker.main import Worker


def make_settings(minimal_env: dict[str, str], **extra: str) -> Settings:
    with patch.dict(os.environ, {**minimal_env, **extra}, clear=False):
        return Settings()


def make_worker(settings: Settings) -> Worker:
    return Worker(settings, session_factory=MagicMock(), http_client=MagicMock())


async def run_until_started(worker: Worker) -> asyncio.Task[None]:
    task = asyncio.create_task(worker.start())
    for _ in range(200):
        if worker.scheduler.tasks:
            break
        await asyncio.sleep(0.005)
    return task


class TestWorkerInit:
    """Tests for Worker construction."""

    def test_worker_wires_components(self, minimal_env):
        """Test that handlers are registered and settings applied."""
        settings = make_settings(minimal_env, HOOKRELAY_JOBS__CONCURRENCY="3")
        worker = make_worker(settings)

        stats = worker.queue.get_stats()
        assert stats.concurrency == 3
        assert stats.handlers == sorted([DELIVER_JOB_TYPE, RETENTION_SWEEP])
        assert worker.job_store is None
        assert worker.queue.persistent is False
        assert worker.webhooks.config.retry_backoff == (30.0, 120.0, 600.0, 1800.0, 7200.0)
        assert [b.name for b in worker.circuits.breakers()] == ["webhook_delivery"]

    def test_worker_persistent_mode(self, minimal_env):
        """Test that persist_jobs attaches a durable job store."""
        settings = make_settings(minimal_env, HOOKRELAY_JOBS__PERSIST_JOBS="true")
        worker = make_worker(settings)

        assert worker.job_store is not None
        assert worker.queue.persistent is True


class TestWorkerLifecycle:
    """Tests for start and graceful shutdown."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, minimal_env):
        """Test that start schedules the sweep and stop shuts down cleanly."""
        worker = make_worker(make_settings(minimal_env))

        with (
            patch("hookrelay.worker.main.create_tables", new_callable=AsyncMock) as create_tables,
            patch("hookrelay.worker.main.close_engine", new_callable=AsyncMock) as close_engine,
        ):
            task = await run_until_started(worker)
            [schedule] = worker.scheduler.tasks
            assert schedule.job_type == RETENTION_SWEEP
            assert schedule.interval == timedelta(hours=24)

            await worker.stop()
            await asyncio.wait_for(task, timeout=2)

        create_tables.assert_not_called()
        # Engine is owned by whoever passed the session factory
        close_engine.assert_not_called()
        assert worker.queue.paused is True
        assert worker.scheduler.tasks == []

    @pytest.mark.asyncio
    async def test_start_creates_tables_and_serves_metrics(self, minimal_env):
        """Test optional startup steps driven by settings."""
        settings = make_settings(
            minimal_env,
            HOOKRELAY_DATABASE__CREATE_TABLES="true",
            HOOKRELAY_METRICS__ENABLED="true",
            HOOKRELAY_METRICS__PORT="9200",
        )
        worker = make_worker(settings)

        with (
            patch("hookrelay.worker.main.create_tables", new_callable=AsyncMock) as create_tables,
            patch.object(worker.metrics, "serve") as serve,
        ):
            task = await run_until_started(worker)
            await worker.stop()
            await asyncio.wait_for(task, timeout=2)

        create_tables.assert_awaited_once()
        serve.assert_called_once_with(9200)

    @pytest.mark.asyncio
    async def test_persistent_worker_recovers_and_resets(self, minimal_env):
        """Test recovery on start and running-to-pending reset on shutdown."""
        worker = make_worker(make_settings(minimal_env, HOOKRELAY_JOBS__PERSIST_JOBS="true"))
        worker.job_store.reset_running = AsyncMock(return_value=0)
        worker.job_store.find_pending = AsyncMock(return_value=[])

        task = await run_until_started(worker)
        await worker.stop()
        await asyncio.wait_for(task, timeout=2)

        worker.job_store.find_pending.assert_awaited_once()
        # Once during recovery, once during shutdown
        assert worker.job_store.reset_running.await_count == 2

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_running_jobs(self, minimal_env):
        """Test that running jobs finish before shutdown completes."""
        worker = make_worker(make_settings(minimal_env))
        finished = asyncio.Event()

        async def slow_job(job) -> None:
            await asyncio.sleep(0.05)
            finished.set()

        worker.queue.register("slow", slow_job)
        task = await run_until_started(worker)
        worker.queue.enqueue("slow")

        await worker.stop()
        await asyncio.wait_for(task, timeout=2)

        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_status(self, minimal_env):
        """Test the operator status view."""
        worker = make_worker(make_settings(minimal_env))
        task = await run_until_started(worker)

        status = worker.status()

        assert status["queue"]["concurrency"] == 2
        assert status["circuits"][0]["name"] == "webhook_delivery"
        assert status["circuits"][0]["state"] == "closed"
        assert status["schedules"][0]["job_type"] == RETENTION_SWEEP

        await worker.stop()
        await asyncio.wait_for(task, timeout=2)


class TestWorkerUptime:
    """Tests for uptime formatting."""

    def test_uptime_not_started(self, minimal_env):
        """Test uptime before start."""
        worker = make_worker(make_settings(minimal_env))
        assert worker._get_uptime() == "0s"

    def test_uptime_seconds(self, minimal_env):
        """Test uptime formatting in seconds."""
        worker = make_worker(make_settings(minimal_env))
        worker._started_at = datetime.now(UTC) - timedelta(seconds=45)
        assert worker._get_uptime() == "45s"

    def test_uptime_minutes(self, minimal_env):
        """Test uptime formatting in minutes."""
        worker = make_worker(make_settings(minimal_env))
        worker._started_at = datetime.now(UTC) - timedelta(minutes=5, seconds=30)
        assert worker._get_uptime() == "5m 30s"

    def test_uptime_hours(self, minimal_env):
        """Test uptime formatting in hours."""
        worker = make_worker(make_settings(minimal_env))
        worker._started_at = datetime.now(UTC) - timedelta(hours=2, minutes=15, seconds=10)
        assert worker._get_uptime() == "2h 15m 10s"
