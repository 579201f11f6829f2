"""
Webhook delivery: fan-out of stored events to subscribers and the retrying
dispatch of pending deliveries. Ingestion creates deliveries in the event's own
transaction (``RelayRepository.insert_event_if_absent``); ``enqueue_for_event``
fans out an event that is already stored.

Delivery state machine::

    pending --2xx--> delivered (terminal)
    pending --else--> failed --retry elapsed--> (attempt) --> delivered | failed

A failed delivery stops being retried once ``attempts`` reaches the
configured maximum; its ``next_retry_at`` stays null from then on.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import httpx

from ..core.errors import DeliveryFailure
from ..core.logging import get_logger
from ..core.metrics import inc
from ..models.events import Event
from ..models.webhooks import DELIVERY_DELIVERED, DELIVERY_FAILED, WebhookDelivery
from ..utils.clock import isoformat, utcnow
from .repository import DeliveryJob, RelayRepository

SIGNATURE_HEADER = "X-Relay-Signature"
EVENT_HEADER = "X-Relay-Event"
DELIVERY_HEADER = "X-Relay-Delivery"


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_envelope(event: Event) -> bytes:
    envelope = {
        "event": event.event_type,
        "timestamp": isoformat(event.timestamp),
        "data": event.data,
        "signature": event.signature,
    }
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def retry_delay_seconds(attempts: int, base_seconds: float, max_delay_seconds: float) -> float:
    """Delay before the next attempt given the attempts made so far (0-based exponent)."""
    return min(base_seconds * (2**attempts), max_delay_seconds)


@dataclass
class DispatchSummary:
    selected: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0


class WebhookDispatcher:
    def __init__(
        self,
        repository: RelayRepository,
        *,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int = 6,
        retry_base_seconds: float = 1.0,
        retry_max_delay_seconds: float = 3600.0,
        timeout_seconds: float = 10.0,
        claim_lease_seconds: float = 60.0,
        batch_limit: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()
        self.max_attempts = max_attempts
        self._retry_base = retry_base_seconds
        self._retry_max_delay = retry_max_delay_seconds
        self._timeout = timeout_seconds
        self._claim_lease = timedelta(seconds=claim_lease_seconds)
        self._batch_limit = batch_limit
        self._clock = clock
        self._logger = get_logger(__name__)

    def enqueue_for_event(self, event_id: int, event_type: str) -> list[WebhookDelivery]:
        deliveries = self._repository.create_deliveries_for_event(event_id, event_type)
        if deliveries:
            self._logger.info(
                "webhook.deliveries_enqueued",
                event_id=event_id,
                event_type=event_type,
                count=len(deliveries),
            )
        return deliveries

    async def dispatch_pending(self, batch_limit: int | None = None) -> DispatchSummary:
        now = self._clock()
        jobs = self._repository.list_dispatchable(
            now=now,
            max_attempts=self.max_attempts,
            limit=batch_limit or self._batch_limit,
        )
        summary = DispatchSummary(selected=len(jobs))
        for job in jobs:
            # The lease runs from the claim, not from the start of the cycle
            claimed_at = self._clock()
            lease_until = claimed_at + self._claim_lease
            claimed = self._repository.claim_delivery(
                job.delivery.id,
                now=claimed_at,
                lease_until=lease_until,
                max_attempts=self.max_attempts,
            )
            if not claimed:
                summary.skipped += 1
                continue
            status = await self._attempt(job, lease_until)
            if status == DELIVERY_DELIVERED:
                summary.delivered += 1
            elif status == DELIVERY_FAILED:
                summary.failed += 1
            else:
                summary.skipped += 1
        return summary

    async def _send(self, job: DeliveryJob) -> int:
        body = build_envelope(job.event)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: f"sha256={sign_payload(job.webhook.secret, body)}",
            EVENT_HEADER: job.event.event_type,
            DELIVERY_HEADER: str(job.delivery.id),
        }
        try:
            response = await self._client.post(
                job.webhook.url, content=body, headers=headers, timeout=self._timeout
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise DeliveryFailure(f"{type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            raise DeliveryFailure(
                f"endpoint returned {response.status_code}",
                response_code=response.status_code,
            )
        return response.status_code

    async def _attempt(self, job: DeliveryJob, lease_until: datetime) -> str | None:
        """Send once and record the outcome; None when the lease was lost meanwhile."""
        delivery = job.delivery
        attempts = delivery.attempts + 1
        next_retry_at = None
        try:
            response_code = await self._send(job)
            status = DELIVERY_DELIVERED
        except DeliveryFailure as exc:
            response_code = exc.response_code
            status = DELIVERY_FAILED
            self._logger.warning(
                "webhook.delivery_failed",
                delivery_id=delivery.id,
                webhook_id=job.webhook.id,
                attempts=attempts,
                response_code=response_code,
                error=exc.message,
            )
        finished_at = self._clock()
        if status == DELIVERY_FAILED and attempts < self.max_attempts:
            delay = retry_delay_seconds(delivery.attempts, self._retry_base, self._retry_max_delay)
            next_retry_at = finished_at + timedelta(seconds=delay)
        recorded = self._repository.record_attempt(
            delivery.id,
            status=status,
            attempts=attempts,
            last_attempt_at=finished_at,
            next_retry_at=next_retry_at,
            response_code=response_code,
            claimed_until=lease_until,
        )
        if not recorded:
            self._logger.warning(
                "webhook.lease_lost",
                delivery_id=delivery.id,
                webhook_id=job.webhook.id,
                outcome=status,
            )
            return None
        inc("webhook_attempts_total", outcome=status)
        if status == DELIVERY_DELIVERED:
            self._logger.info(
                "webhook.delivered",
                delivery_id=delivery.id,
                webhook_id=job.webhook.id,
                attempts=attempts,
            )
        return status

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
