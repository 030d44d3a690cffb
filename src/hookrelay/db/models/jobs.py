"""Job record model for durable job persistence.

The in-memory JobQueue stays authoritative for the running process; these
rows let a restarted process recover jobs that were pending or interrupted.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, Enum, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from hookrelay.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class JobRecord(Base):
    """Persisted copy of a queued job.

    job_id is the same identifier the in-memory job carries, so status
    updates are keyed without a lookup.
    """

    __tablename__ = "job_records"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Handler selector, e.g. 'webhook.deliver', 'retention.sweep'
    job_type: Mapped[str] = mapped_column(String(120), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_constraint=True),
        nullable=False,
        default=JobStatus.PENDING,
    )

    payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_for: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_job_records_status", "status"),
        Index("ix_job_records_job_type", "job_type"),
        Index("ix_job_records_scheduled_for", "scheduled_for"),
    )
