"""Prometheus metrics for the job queue, circuit breakers and webhook delivery.

All instruments live on a single CollectorRegistry owned by a Metrics
instance. The worker creates one per process and passes it to every
component; tests build isolated instances so registrations never collide.

Metrics are advisory: no functional path reads them back.
"""

from __future__ import annotations

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

NAMESPACE = "hookrelay"

# Circuit state codes exported by the circuit_state gauge
CIRCUIT_STATE_CODES = {"closed": 0, "open": 1, "half_open": 2}


class Metrics:
    """Container for every hookrelay instrument.

    Attributes:
        registry: Collector registry the instruments are registered on.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        # Job queue
        self.jobs_enqueued = Counter(
            "jobs_enqueued",
            "Jobs added to the queue.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.jobs_processed = Counter(
            "jobs_processed",
            "Jobs whose handler completed successfully.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.jobs_failed = Counter(
            "jobs_failed",
            "Job execution attempts that raised.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.jobs_retried = Counter(
            "jobs_retried",
            "Failed job attempts put back on the queue.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.jobs_dead = Counter(
            "jobs_dead",
            "Jobs dead-lettered after exhausting their attempts.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.jobs_queue_length = Gauge(
            "jobs_queue_length",
            "Jobs waiting in the ready set.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.jobs_queue_running = Gauge(
            "jobs_queue_running",
            "Jobs currently executing.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.jobs_pending_oldest_age = Gauge(
            "jobs_pending_oldest_age_seconds",
            "Age of the oldest job waiting in the ready set.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.jobs_latency = Histogram(
            "jobs_latency_seconds",
            "Time from enqueue to successful completion.",
            namespace=NAMESPACE,
            registry=self.registry,
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 15, 60, 300, 1800, 7200),
        )

        # Circuit breakers
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit state code (0 closed, 1 open, 2 half-open).",
            labelnames=("circuit",),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.circuit_consecutive_failures = Gauge(
            "circuit_consecutive_failures",
            "Consecutive failures recorded by the circuit.",
            labelnames=("circuit",),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.circuit_transitions = Counter(
            "circuit_transitions",
            "Circuit state changes by target state.",
            labelnames=("circuit", "state"),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.circuit_calls = Counter(
            "circuit_calls",
            "Calls through a circuit by outcome.",
            labelnames=("circuit", "outcome"),
            namespace=NAMESPACE,
            registry=self.registry,
        )

        # Webhooks
        self.webhooks_enqueued = Counter(
            "webhooks_enqueued",
            "Webhook deliveries created and queued.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.webhooks_delivered = Counter(
            "webhooks_delivered",
            "Webhook deliveries acknowledged with a 2xx response.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.webhooks_failed = Counter(
            "webhooks_failed",
            "Webhook deliveries that exhausted their retry schedule.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.webhooks_retried = Counter(
            "webhooks_retried",
            "Webhook delivery retries scheduled with backoff.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.webhooks_auto_disabled = Counter(
            "webhooks_auto_disabled",
            "Subscriptions disabled after repeated terminal failures.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.webhooks_manual_retry = Counter(
            "webhooks_manual_retry",
            "Operator-triggered delivery retries.",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.webhook_latency = Histogram(
            "webhook_delivery_latency_seconds",
            "Round-trip time of outbound webhook requests.",
            namespace=NAMESPACE,
            registry=self.registry,
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 15, 30),
        )

        # Retention
        self.retention_records_removed = Counter(
            "retention_records_removed",
            "Records deleted by retention sweeps.",
            labelnames=("kind",),
            namespace=NAMESPACE,
            registry=self.registry,
        )

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Read the current value of a sample by its full exported name."""
        return self.registry.get_sample_value(name, labels or {})

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:  # noqa: S104
        """Expose this registry over HTTP for Prometheus scraping."""
        start_http_server(port, addr=addr, registry=self.registry)
        logger.info("Metrics endpoint listening: addr=%s, port=%d", addr, port)
