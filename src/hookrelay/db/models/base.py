"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable column type annotations
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key, generated client-side so callers know the id before flush
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    ),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
LongString = Annotated[str, mapped_column(String(2048))]


class Base(DeclarativeBase):
    """Declarative base for all hookrelay models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class JobStatus(enum.Enum):
    """Status of a persisted background job.

    Values:
        PENDING: Job is waiting to be dispatched
        RUNNING: Job is currently being executed
        COMPLETED: Job finished successfully
        FAILED: Job exhausted its attempts (dead-lettered)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DeliveryStatus(enum.Enum):
    """Status of a webhook delivery.

    Values:
        PENDING: Delivery created, first attempt not yet made
        DELIVERED: Target acknowledged with a 2xx response (terminal)
        FAILED: Last attempt failed; terminal unless next_retry_at is set
    """

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
