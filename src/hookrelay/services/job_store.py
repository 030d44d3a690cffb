"""PostgreSQL-backed job persistence for crash recovery.

Implements the JobStore protocol used by JobQueue when durable mode is
enabled. Every method opens its own short session; the queue calls these
through its best-effort writer, so errors raised here are logged by the
queue and never reach a handler.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from hookrelay.db.models.base import JobStatus
from hookrelay.db.models.jobs import JobRecord
from hookrelay.services.job_queue import Job, JobQueueError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def _to_datetime(timestamp: float | None) -> datetime | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def record_to_job(record: JobRecord) -> Job:
    """Rebuild an in-memory Job from its persisted record."""
    return Job(
        id=str(record.job_id),
        type=record.job_type,
        payload=dict(record.payload_json or {}),
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        enqueued_at=record.enqueued_at.timestamp(),
        scheduled_for=record.scheduled_for.timestamp() if record.scheduled_for else None,
        last_error=record.last_error,
    )


class SqlJobStore:
    """JobStore backed by the job_records table.

    Attributes:
        session_factory: Factory for short-lived async sessions.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def create(self, job: Job) -> None:
        """Insert a pending record for a newly enqueued job.

        Raises:
            JobQueueError: If the insert fails.
        """
        record = JobRecord(
            job_id=uuid.UUID(job.id),
            job_type=job.type,
            status=JobStatus.PENDING,
            payload_json=job.payload,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            enqueued_at=_to_datetime(job.enqueued_at),
            scheduled_for=_to_datetime(job.scheduled_for),
        )

        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise JobQueueError(f"Failed to persist job {job.id}: {e}") from e

    async def find_pending(self) -> list[Job]:
        """Return all pending job records, oldest first."""
        stmt = (
            select(JobRecord)
            .where(JobRecord.status == JobStatus.PENDING)
            .order_by(JobRecord.enqueued_at)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [record_to_job(record) for record in result.scalars().all()]

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        attempts: int | None = None,
        last_error: str | None = None,
    ) -> None:
        """Record a status transition for a job.

        Raises:
            JobQueueError: If the update fails.
        """
        values: dict[str, object] = {
            "status": status,
            "updated_at": datetime.now(UTC),
        }
        if attempts is not None:
            values["attempts"] = attempts
        if last_error is not None:
            values["last_error"] = last_error

        stmt = update(JobRecord).where(JobRecord.job_id == uuid.UUID(job_id)).values(**values)
        try:
            async with self.session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise JobQueueError(f"Failed to update job {job_id}: {e}") from e

    async def reset_running(self) -> int:
        """Move records left in running status back to pending.

        Returns:
            Number of records reset.
        """
        stmt = (
            update(JobRecord)
            .where(JobRecord.status == JobStatus.RUNNING)
            .values(status=JobStatus.PENDING, updated_at=datetime.now(UTC))
            .returning(JobRecord.job_id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            reset_ids = list(result.scalars().all())
            await session.commit()

        if reset_ids:
            logger.warning("Reset %d interrupted jobs to pending", len(reset_ids))
        return len(reset_ids)

    async def purge_finished(self, older_than: timedelta) -> int:
        """Delete completed and failed records not touched within older_than.

        Returns:
            Number of records deleted.
        """
        cutoff = datetime.now(UTC) - older_than
        stmt = (
            delete(JobRecord)
            .where(
                JobRecord.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]),
                JobRecord.updated_at < cutoff,
            )
            .returning(JobRecord.job_id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            deleted = len(list(result.scalars().all()))
            await session.commit()
        return deleted
