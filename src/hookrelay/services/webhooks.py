"""Webhook event publication and at-least-once delivery.

Publishing an event creates one delivery row per active subscription to
that event type and enqueues one webhook.deliver job per row. The job
handler signs the body with the subscription secret, POSTs it through the
shared webhook_delivery circuit breaker, and records the outcome:

- 2xx: delivery becomes delivered; the subscription failure counter resets
- anything else: the delivery is retried after the next backoff in the
  schedule (with jitter). Once the schedule is exhausted the delivery is
  terminally failed, the subscription failure counter increments, and at
  the auto-disable threshold the subscription is deactivated and a
  webhook.subscription.disabled event is published.

Outbound request headers:
    X-Webhook-Signature: sha256=<hex hmac of body>
    X-Webhook-Event: <event type>
    X-Webhook-Idempotency-Key: <uuid shared by every attempt of one publish>

Publishing is fire-and-forget: delivery and storage failures surface in
delivery status, logs and metrics, never as exceptions to the publisher.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import random
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel

from hookrelay.db.models.base import DeliveryStatus
from hookrelay.services.circuit_breaker import CircuitOpenError

if TYPE_CHECKING:
    from hookrelay.core.config import WebhookSettings
    from hookrelay.db.models.webhooks import WebhookDelivery, WebhookSubscription
    from hookrelay.services.circuit_breaker import CircuitBreakerRegistry
    from hookrelay.services.job_queue import Job, JobQueue
    from hookrelay.services.metrics import Metrics
    from hookrelay.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)

DELIVER_JOB_TYPE = "webhook.deliver"
DISABLE_EVENT = "webhook.subscription.disabled"
CIRCUIT_NAME = "webhook_delivery"

SIGNATURE_SCHEME = "sha256"
SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
IDEMPOTENCY_HEADER = "X-Webhook-Idempotency-Key"

# Characters of a failing response body kept in the error message
ERROR_BODY_SNIPPET = 120


class WebhookError(Exception):
    """Base exception for webhook operations."""

    pass


class SubscriptionNotFoundError(WebhookError):
    """Raised when a subscription id does not exist."""

    pass


class DeliveryNotFoundError(WebhookError):
    """Raised when a delivery id does not exist."""

    pass


class DeliveryResponseError(WebhookError):
    """Target answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code} {body[:ERROR_BODY_SNIPPET]}".rstrip())


class DeliverJobPayload(BaseModel):
    """Payload of a webhook.deliver job.

    attempt_count is the delivery's attempt count when the job was
    enqueued; a job whose count no longer matches the stored row has been
    superseded by another attempt and is dropped.
    """

    delivery_id: uuid.UUID
    attempt_count: int | None = None


@dataclass(frozen=True)
class WebhookConfig:
    """Delivery tuning, usually built from WebhookSettings.

    Durations are in seconds. A delivery gets len(retry_backoff) + 1
    attempts in total.
    """

    timeout: float = 15.0
    retry_backoff: tuple[float, ...] = (30.0, 120.0, 600.0, 1800.0, 7200.0)
    retry_jitter: float = 0.2
    max_payload_bytes: int = 50_000
    auto_disable_threshold: int = 10
    job_max_attempts: int = 5
    circuit_failure_threshold: int = 8
    circuit_half_open_after: float = 60.0

    @classmethod
    def from_settings(cls, settings: WebhookSettings) -> WebhookConfig:
        """Build the config from the webhooks settings group."""
        return cls(
            timeout=settings.timeout_seconds,
            retry_backoff=tuple(settings.retry_backoff_seconds),
            retry_jitter=settings.retry_jitter,
            max_payload_bytes=settings.max_payload_bytes,
            auto_disable_threshold=settings.auto_disable_threshold,
            job_max_attempts=settings.job_max_attempts,
            circuit_failure_threshold=settings.circuit_failure_threshold,
            circuit_half_open_after=settings.circuit_half_open_after_seconds,
        )


def serialize_envelope(envelope: dict[str, Any]) -> str:
    """Serialize an envelope to the compact JSON sent on the wire."""
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False, default=str)


def sign_payload(secret: str, body: str | bytes) -> str:
    """Compute the signature header value for a request body.

    The scheme prefix allows the algorithm to change without breaking
    receivers that parse it.
    """
    raw = body.encode("utf-8") if isinstance(body, str) else body
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_SCHEME}={digest}"


def verify_signature(secret: str, body: str | bytes, signature: str) -> bool:
    """Check a signature header in constant time (receiver side helper)."""
    return hmac.compare_digest(sign_payload(secret, body), signature)


def build_envelope(event_type: str, data: Any, idempotency_key: str | None = None) -> dict[str, Any]:
    """Wrap event data in the delivery envelope."""
    return {
        "event": event_type,
        "data": data,
        "timestamp": datetime.now(UTC).isoformat(),
        "idempotencyKey": idempotency_key or str(uuid.uuid4()),
    }


def is_truncated(payload: dict[str, Any] | None) -> bool:
    """Check whether a stored payload is a truncation marker."""
    return bool(payload and payload.get("truncated"))


class WebhookService:
    """Event publication, delivery handling and subscription administration.

    Attributes:
        store: Subscription and delivery persistence.
        queue: Job queue the deliver jobs run on.
        config: Delivery tuning.
    """

    def __init__(
        self,
        store: WebhookStore,
        queue: JobQueue,
        circuits: CircuitBreakerRegistry,
        config: WebhookConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: Metrics | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            store: Subscription and delivery persistence.
            queue: Job queue the deliver jobs run on.
            circuits: Registry providing the shared delivery circuit.
            config: Delivery tuning; defaults apply when omitted.
            http_client: Client for outbound requests; created and owned
                by the service when omitted.
            metrics: Optional metrics sink.
            rng: Random source for jitter, injectable for tests.
        """
        self.store = store
        self.queue = queue
        self.config = config or WebhookConfig()
        self._metrics = metrics
        self._rng = rng or random.Random()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.config.timeout)
        self._circuit = circuits.get(
            CIRCUIT_NAME,
            failure_threshold=self.config.circuit_failure_threshold,
            half_open_after=self.config.circuit_half_open_after,
        )
        # Full envelopes of oversized events, kept in memory for live sends
        self._live_envelopes: dict[uuid.UUID, dict[str, Any]] = {}

    def register(self) -> None:
        """Register the webhook.deliver handler on the queue."""
        self.queue.register(DELIVER_JOB_TYPE, self.handle_deliver_job)

    async def aclose(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._owns_client:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    async def publish_event(self, event_type: str, data: Any) -> list[WebhookDelivery]:
        """Fan an event out to every active subscription for its type.

        Args:
            event_type: Event type, e.g. "invoice.paid".
            data: JSON-compatible event data.

        Returns:
            The delivery rows created (empty when nobody subscribes).
        """
        try:
            subscriptions = await self.store.list_subscriptions(event_type=event_type, is_active=True)
        except Exception:
            logger.exception("Failed to load subscriptions: event_type=%s", event_type)
            return []

        if not subscriptions:
            logger.debug("No active subscriptions: event_type=%s", event_type)
            return []

        envelope = build_envelope(event_type, data)
        raw = serialize_envelope(envelope)
        oversized = len(raw.encode("utf-8")) > self.config.max_payload_bytes
        stored_payload: dict[str, Any] = (
            {
                "truncated": True,
                "event": event_type,
                "idempotencyKey": envelope["idempotencyKey"],
                "preview": raw[: self.config.max_payload_bytes],
            }
            if oversized
            else envelope
        )
        if oversized:
            logger.warning(
                "Webhook payload truncated for storage: event_type=%s, bytes=%d, limit=%d",
                event_type,
                len(raw.encode("utf-8")),
                self.config.max_payload_bytes,
            )

        deliveries: list[WebhookDelivery] = []
        for subscription in subscriptions:
            try:
                delivery = await self.store.create_delivery(subscription.id, event_type, stored_payload)
            except Exception:
                logger.exception(
                    "Failed to create delivery: event_type=%s, subscription_id=%s",
                    event_type,
                    subscription.id,
                )
                continue

            if oversized:
                self._live_envelopes[delivery.id] = envelope
            self._enqueue_delivery(delivery.id, delivery.attempt_count)
            deliveries.append(delivery)
            if self._metrics is not None:
                self._metrics.webhooks_enqueued.inc()

        logger.info(
            "Event published: event_type=%s, deliveries=%d, idempotency_key=%s",
            event_type,
            len(deliveries),
            envelope["idempotencyKey"],
        )
        return deliveries

    async def retry_delivery(self, delivery_id: uuid.UUID) -> bool:
        """Re-enqueue a delivery on operator request.

        Returns:
            True if a job was enqueued; False if the delivery is already
            delivered or its subscription is missing or inactive.

        Raises:
            DeliveryNotFoundError: If the delivery does not exist.
        """
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(f"Delivery not found: {delivery_id}")
        if delivery.status == DeliveryStatus.DELIVERED:
            return False

        subscription = await self.store.get_subscription(delivery.subscription_id)
        if subscription is None or not subscription.is_active:
            return False

        self._enqueue_delivery(delivery.id, delivery.attempt_count)
        if self._metrics is not None:
            self._metrics.webhooks_manual_retry.inc()
        logger.info("Manual delivery retry enqueued: delivery_id=%s", delivery_id)
        return True

    def _enqueue_delivery(self, delivery_id: uuid.UUID, attempt_count: int, delay: float = 0.0) -> None:
        self.queue.enqueue(
            DELIVER_JOB_TYPE,
            {"delivery_id": str(delivery_id), "attempt_count": attempt_count},
            max_attempts=self.config.job_max_attempts,
            delay=delay,
        )

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def handle_deliver_job(self, job: Job) -> None:
        """Job handler for webhook.deliver."""
        payload = DeliverJobPayload.model_validate(job.payload)
        await self.deliver(payload.delivery_id, expected_attempt_count=payload.attempt_count)

    async def deliver(self, delivery_id: uuid.UUID, expected_attempt_count: int | None = None) -> None:
        """Make one delivery attempt and record its outcome.

        Every failure of the attempt itself is converted into retry or
        terminal-failure bookkeeping; only storage errors propagate, which
        the job queue handles as a failed job attempt.

        Outcomes are written only if the delivery's attempt_count is still
        the one read at the start, so of two overlapping attempts on the
        same delivery only the first to finish is recorded.

        Args:
            delivery_id: Delivery to attempt.
            expected_attempt_count: Attempt count the job was enqueued for;
                the job is dropped if the delivery has moved past it.
        """
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None:
            logger.warning("Delivery not found, skipping: delivery_id=%s", delivery_id)
            self._live_envelopes.pop(delivery_id, None)
            return
        if delivery.status == DeliveryStatus.DELIVERED:
            logger.info("Delivery already delivered, skipping: delivery_id=%s", delivery_id)
            return
        if expected_attempt_count is not None and delivery.attempt_count != expected_attempt_count:
            logger.info(
                "Superseded deliver job dropped: delivery_id=%s, job_attempt_count=%d, attempt_count=%d",
                delivery_id,
                expected_attempt_count,
                delivery.attempt_count,
            )
            return

        subscription = await self.store.get_subscription(delivery.subscription_id)
        if subscription is None or not subscription.is_active:
            await self.store.update_delivery(
                delivery.id,
                expected_attempt_count=delivery.attempt_count,
                status=DeliveryStatus.FAILED,
                error_message="Subscription inactive",
                next_retry_at=None,
            )
            self._live_envelopes.pop(delivery.id, None)
            logger.warning(
                "Delivery abandoned, subscription missing or inactive: delivery_id=%s, subscription_id=%s",
                delivery.id,
                delivery.subscription_id,
            )
            return

        attempt = delivery.attempt_count + 1
        try:
            request = self._build_request(delivery, subscription)
        except Exception as e:
            # Unsendable request (bad URL, header not encodable); the target was never reached
            logger.warning("Webhook request could not be built: delivery_id=%s, error=%r", delivery.id, e)
            await self._record_failure(delivery, subscription, attempt, f"Invalid request: {e}", None)
            return

        response_code: int | None = None
        started = time.perf_counter()
        try:
            response = await self._circuit.call(lambda: self._http.send(request))
            if self._metrics is not None:
                self._metrics.webhook_latency.observe(time.perf_counter() - started)
            response_code = response.status_code
            if not response.is_success:
                raise DeliveryResponseError(response.status_code, response.text)

        except CircuitOpenError:
            await self._record_failure(delivery, subscription, attempt, "Circuit open", response_code)
        except httpx.TimeoutException:
            await self._record_failure(delivery, subscription, attempt, "Timeout", response_code)
        except DeliveryResponseError as e:
            await self._record_failure(delivery, subscription, attempt, str(e), response_code)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            await self._record_failure(delivery, subscription, attempt, message, response_code)
        else:
            await self._record_success(delivery, subscription, attempt, response_code)

    def _build_request(self, delivery: WebhookDelivery, subscription: WebhookSubscription) -> httpx.Request:
        body = self._request_body(delivery)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(subscription.secret, body),
            EVENT_HEADER: delivery.event_type,
            IDEMPOTENCY_HEADER: self._idempotency_key(delivery),
        }
        return self._http.build_request(
            "POST",
            subscription.target_url,
            content=body.encode("utf-8"),
            headers=headers,
            timeout=self.config.timeout,
        )

    def _request_body(self, delivery: WebhookDelivery) -> str:
        envelope = self._live_envelopes.get(delivery.id)
        if envelope is not None:
            return serialize_envelope(envelope)
        if is_truncated(delivery.payload):
            return serialize_envelope(
                {
                    "truncated": True,
                    "event": delivery.event_type,
                    "idempotencyKey": self._idempotency_key(delivery),
                }
            )
        return serialize_envelope(delivery.payload)

    def _idempotency_key(self, delivery: WebhookDelivery) -> str:
        envelope = self._live_envelopes.get(delivery.id) or delivery.payload or {}
        return str(envelope.get("idempotencyKey") or delivery.id)

    async def _record_success(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempt: int,
        response_code: int | None,
    ) -> None:
        recorded = await self.store.update_delivery(
            delivery.id,
            expected_attempt_count=delivery.attempt_count,
            status=DeliveryStatus.DELIVERED,
            response_code=response_code,
            attempt_count=attempt,
            error_message=None,
            next_retry_at=None,
        )
        if not recorded:
            logger.info("Delivery outcome superseded: delivery_id=%s, attempt=%d", delivery.id, attempt)
            return

        await self.store.update_subscription(subscription.id, failure_count=0, last_success_at=datetime.now(UTC))
        self._live_envelopes.pop(delivery.id, None)

        if self._metrics is not None:
            self._metrics.webhooks_delivered.inc()
        logger.info(
            "Webhook delivered: delivery_id=%s, subscription_id=%s, status=%s, attempt=%d",
            delivery.id,
            subscription.id,
            response_code,
            attempt,
        )

    async def _record_failure(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempt: int,
        error_message: str,
        response_code: int | None,
    ) -> None:
        now = datetime.now(UTC)
        retry = attempt <= len(self.config.retry_backoff)
        delay = self.backoff_delay(attempt) if retry else 0.0

        recorded = await self.store.update_delivery(
            delivery.id,
            expected_attempt_count=delivery.attempt_count,
            status=DeliveryStatus.FAILED,
            error_message=error_message,
            response_code=response_code,
            attempt_count=attempt,
            next_retry_at=now + timedelta(seconds=delay) if retry else None,
        )
        if not recorded:
            logger.info("Delivery outcome superseded: delivery_id=%s, attempt=%d", delivery.id, attempt)
            return

        if retry:
            self._enqueue_delivery(delivery.id, attempt, delay=delay)
            if self._metrics is not None:
                self._metrics.webhooks_retried.inc()
            logger.info(
                "Webhook delivery failed, retry scheduled: delivery_id=%s, attempt=%d, "
                "delay=%.1fs, error=%s",
                delivery.id,
                attempt,
                delay,
                error_message,
            )
            return

        self._live_envelopes.pop(delivery.id, None)
        if self._metrics is not None:
            self._metrics.webhooks_failed.inc()

        updated = await self.store.increment_failure_count(subscription.id, now)
        if updated is None:
            logger.warning(
                "Webhook delivery failed permanently, subscription gone: delivery_id=%s, subscription_id=%s",
                delivery.id,
                subscription.id,
            )
            return

        failure_count = updated.failure_count
        logger.warning(
            "Webhook delivery failed permanently: delivery_id=%s, subscription_id=%s, "
            "attempts=%d, failure_count=%d, error=%s",
            delivery.id,
            subscription.id,
            attempt,
            failure_count,
            error_message,
        )

        if not updated.is_active or failure_count < self.config.auto_disable_threshold:
            return
        # Only the caller that actually flips is_active publishes the notice
        if not await self.store.deactivate_subscription(subscription.id):
            return

        if self._metrics is not None:
            self._metrics.webhooks_auto_disabled.inc()
        logger.warning(
            "Webhook subscription auto-disabled: subscription_id=%s, failure_count=%d",
            subscription.id,
            failure_count,
        )
        # Different event type from the failing delivery, so this cannot loop
        await self.publish_event(
            DISABLE_EVENT,
            {
                "subscriptionId": str(subscription.id),
                "eventType": updated.event_type,
                "targetUrl": updated.target_url,
                "failureCount": failure_count,
            },
        )

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number attempt (1-based)."""
        base = self.config.retry_backoff[attempt - 1]
        jitter = self.config.retry_jitter
        factor = 1 - jitter + self._rng.random() * 2 * jitter
        return round(base * factor, 3)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def create_subscription(
        self, event_type: str, target_url: str, secret: str | None = None
    ) -> WebhookSubscription:
        """Register a subscription; a secret is generated when none is given.

        Raises:
            ValueError: If event_type is empty or not ASCII (it is sent as
                a header value), or target_url is not http(s).
        """
        if not event_type:
            msg = "event_type is required"
            raise ValueError(msg)
        if not event_type.isascii():
            msg = f"event_type must be ASCII: {event_type}"
            raise ValueError(msg)
        _validate_target_url(target_url)

        subscription = await self.store.create_subscription(
            event_type=event_type,
            target_url=target_url,
            secret=secret or secrets.token_hex(16),
        )
        logger.info(
            "Webhook subscription created: subscription_id=%s, event_type=%s",
            subscription.id,
            event_type,
        )
        return subscription

    async def get_subscription(self, subscription_id: uuid.UUID) -> WebhookSubscription:
        """Fetch a subscription.

        Raises:
            SubscriptionNotFoundError: If it does not exist.
        """
        subscription = await self.store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    async def list_subscriptions(self, event_type: str | None = None) -> list[WebhookSubscription]:
        """List subscriptions, optionally for one event type."""
        return await self.store.list_subscriptions(event_type=event_type)

    async def update_subscription(
        self,
        subscription_id: uuid.UUID,
        is_active: bool | None = None,
        target_url: str | None = None,
    ) -> WebhookSubscription:
        """Change activity and/or target URL of a subscription.

        Raises:
            ValueError: If no field is given or the URL is invalid.
            SubscriptionNotFoundError: If it does not exist.
        """
        fields: dict[str, Any] = {}
        if is_active is not None:
            fields["is_active"] = is_active
        if target_url:
            _validate_target_url(target_url)
            fields["target_url"] = target_url
        if not fields:
            msg = "No valid fields provided"
            raise ValueError(msg)

        return await self._update_subscription(subscription_id, **fields)

    async def enable_subscription(self, subscription_id: uuid.UUID) -> WebhookSubscription:
        """Re-activate a subscription and clear its failure counter."""
        subscription = await self._update_subscription(subscription_id, is_active=True, failure_count=0)
        logger.info("Webhook subscription enabled: subscription_id=%s", subscription_id)
        return subscription

    async def disable_subscription(self, subscription_id: uuid.UUID) -> WebhookSubscription:
        """Deactivate a subscription."""
        subscription = await self._update_subscription(subscription_id, is_active=False)
        logger.info("Webhook subscription disabled: subscription_id=%s", subscription_id)
        return subscription

    async def rotate_secret(self, subscription_id: uuid.UUID) -> WebhookSubscription:
        """Issue a new signing secret; also re-activates a quarantined subscription."""
        subscription = await self._update_subscription(
            subscription_id,
            secret=secrets.token_hex(16),
            is_active=True,
            failure_count=0,
        )
        logger.info("Webhook secret rotated: subscription_id=%s", subscription_id)
        return subscription

    async def delete_subscription(self, subscription_id: uuid.UUID) -> None:
        """Delete a subscription (operator action only).

        Raises:
            SubscriptionNotFoundError: If it does not exist.
        """
        if not await self.store.delete_subscription(subscription_id):
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        logger.info("Webhook subscription deleted: subscription_id=%s", subscription_id)

    async def list_deliveries(
        self,
        subscription_id: uuid.UUID | None = None,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[WebhookDelivery]:
        """List recent deliveries with optional filters."""
        return await self.store.list_deliveries(
            subscription_id=subscription_id,
            status=status,
            event_type=event_type,
            limit=limit,
        )

    async def _update_subscription(self, subscription_id: uuid.UUID, **fields: Any) -> WebhookSubscription:
        subscription = await self.store.update_subscription(subscription_id, **fields)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return subscription


def _validate_target_url(target_url: str) -> None:
    try:
        url = httpx.URL(target_url)
    except httpx.InvalidURL as e:
        msg = f"Invalid target_url: {target_url}"
        raise ValueError(msg) from e
    if url.scheme not in ("http", "https") or not url.host:
        msg = f"target_url must be an absolute http(s) URL: {target_url}"
        raise ValueError(msg)
