"""hookrelay service layer.

- CircuitBreaker / CircuitBreakerRegistry: failure isolation for dependencies
- JobQueue: in-process bounded-concurrency job execution
- SqlJobStore: durable job records for crash recovery
- WebhookService: event publication and signed webhook delivery
- SqlWebhookStore: subscription and delivery persistence
- Metrics: Prometheus instruments
"""

from hookrelay.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
)
from hookrelay.services.job_queue import (
    Job,
    JobEvent,
    JobQueue,
    JobQueueError,
    NoHandlerError,
)
from hookrelay.services.job_store import SqlJobStore
from hookrelay.services.metrics import Metrics
from hookrelay.services.webhook_store import SqlWebhookStore, WebhookStore
from hookrelay.services.webhooks import (
    DeliveryNotFoundError,
    SubscriptionNotFoundError,
    WebhookConfig,
    WebhookError,
    WebhookService,
    sign_payload,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "DeliveryNotFoundError",
    "Job",
    "JobEvent",
    "JobQueue",
    "JobQueueError",
    "Metrics",
    "NoHandlerError",
    "SqlJobStore",
    "SqlWebhookStore",
    "SubscriptionNotFoundError",
    "WebhookConfig",
    "WebhookError",
    "WebhookService",
    "WebhookStore",
    "sign_payload",
]
