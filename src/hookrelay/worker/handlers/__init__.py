"""Job handlers run by the hookrelay worker.

Webhook delivery registers its own handler (see hookrelay.services.webhooks);
the handlers here cover periodic maintenance:
- retention: Remove expired failed deliveries and finished job records
"""

from hookrelay.worker.handlers.retention import RETENTION_SWEEP, RetentionSweepHandler

__all__ = [
    "RETENTION_SWEEP",
    "RetentionSweepHandler",
]
