"""SQLAlchemy ORM models for hookrelay.

- base: Common metadata, column types and enums
- jobs: Durable job records for crash recovery
- webhooks: Webhook subscriptions and deliveries
"""

from hookrelay.db.models.base import Base, DeliveryStatus, JobStatus, metadata
from hookrelay.db.models.jobs import JobRecord
from hookrelay.db.models.webhooks import WebhookDelivery, WebhookSubscription

__all__ = [
    "Base",
    "DeliveryStatus",
    "JobRecord",
    "JobStatus",
    "WebhookDelivery",
    "WebhookSubscription",
    "metadata",
]
