"""Retention sweep handler.

Removes records that are no longer useful to operators:
- Terminally failed webhook deliveries (no pending retry) older than the
  retention window
- Completed and dead-lettered job records of the same age, when durable job
  persistence is enabled

Delivered rows are kept; they are the audit trail of what reached each
subscriber.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hookrelay.services.job_queue import Job
    from hookrelay.services.job_store import SqlJobStore
    from hookrelay.services.metrics import Metrics
    from hookrelay.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)

RETENTION_SWEEP = "retention.sweep"

DEFAULT_RETENTION_DAYS = 60


class RetentionSweepHandler:
    """Job handler for retention.sweep.

    Expected job payload:
        retention_days: (optional) Overrides the configured retention window

    Attributes:
        webhook_store: Store holding webhook deliveries.
        job_store: Durable job store, or None when jobs are memory-only.
        retention_days: Age in days after which records are removed.
    """

    def __init__(
        self,
        webhook_store: WebhookStore,
        job_store: SqlJobStore | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        metrics: Metrics | None = None,
    ) -> None:
        self.webhook_store = webhook_store
        self.job_store = job_store
        self.retention_days = retention_days
        self._metrics = metrics

    async def __call__(self, job: Job) -> dict[str, Any]:
        """Run one sweep.

        Returns:
            Counts of removed records per kind.
        """
        days = int(job.payload.get("retention_days", self.retention_days))
        if days < 1:
            msg = f"retention_days must be at least 1, got {days}"
            raise ValueError(msg)
        older_than = timedelta(days=days)

        deliveries = await self.webhook_store.purge_failed_deliveries(older_than)
        self._record("webhook_deliveries", deliveries)

        job_records = 0
        if self.job_store is not None:
            job_records = await self.job_store.purge_finished(older_than)
            self._record("job_records", job_records)

        logger.info(
            "Retention sweep finished: retention_days=%d, deliveries_removed=%d, job_records_removed=%d",
            days,
            deliveries,
            job_records,
        )
        return {"webhook_deliveries": deliveries, "job_records": job_records}

    def _record(self, kind: str, count: int) -> None:
        if self._metrics is not None and count:
            self._metrics.retention_records_removed.labels(kind=kind).inc(count)
