"""
Durable store for operations, events, webhooks, deliveries and indexer state.

Every public method opens its own session from the injected factory and
commits a single statement (or a single short transaction), so callers never
hold a transaction across an await point.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.events import Event
from ..models.indexer_state import INDEXER_STATE_ID, IndexerState
from ..models.operations import (
    OPERATION_COMPLETED,
    OPERATION_FAILED,
    OPERATION_PENDING,
    Operation,
)
from ..models.webhooks import (
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    Webhook,
    WebhookDelivery,
)
from ..utils.clock import utcnow

RETRYABLE_DELIVERY_STATUSES = (DELIVERY_PENDING, DELIVERY_FAILED)


@dataclass
class DeliveryJob:
    """A dispatchable delivery with the webhook and event it refers to."""

    delivery: WebhookDelivery
    webhook: Webhook
    event: Event


@dataclass
class Page:
    items: list[Any]
    total: int


def _pending_delivery(webhook_id: int, event_id: int) -> WebhookDelivery:
    return WebhookDelivery(
        webhook_id=webhook_id,
        event_id=event_id,
        status=DELIVERY_PENDING,
        attempts=0,
        next_retry_at=None,
    )


def _paginate(page: int, limit: int) -> tuple[int, int]:
    limit = max(1, limit)
    offset = max(0, (page - 1) * limit)
    return limit, offset


class RelayRepository:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # -- operations -------------------------------------------------------

    def create_operation(
        self,
        *,
        kind: str,
        target: str,
        amount: str,
        memo: str | None,
        idempotency_key: str | None,
    ) -> Operation:
        with self._session_factory() as session:
            operation = Operation(
                kind=kind,
                target=target,
                amount=amount,
                memo=memo,
                idempotency_key=idempotency_key,
                status=OPERATION_PENDING,
            )
            session.add(operation)
            session.commit()
            session.refresh(operation)
            return operation

    def complete_operation(self, operation_id: int, signature: str) -> None:
        self._finish_operation(
            operation_id, status=OPERATION_COMPLETED, signature=signature
        )

    def fail_operation(self, operation_id: int, reason: str) -> None:
        self._finish_operation(operation_id, status=OPERATION_FAILED, failure_reason=reason)

    def _finish_operation(self, operation_id: int, **values: Any) -> None:
        with self._session_factory() as session:
            # Completed operations are immutable
            session.execute(
                update(Operation)
                .where(Operation.id == operation_id, Operation.status == OPERATION_PENDING)
                .values(**values)
            )
            session.commit()

    def get_operation(self, operation_id: int) -> Operation | None:
        with self._session_factory() as session:
            return session.get(Operation, operation_id)

    def list_operations(
        self,
        *,
        kind: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        filters = []
        if kind:
            filters.append(Operation.kind == kind)
        if created_from is not None:
            filters.append(Operation.created_at >= created_from)
        if created_to is not None:
            filters.append(Operation.created_at <= created_to)
        limit, offset = _paginate(page, limit)
        with self._session_factory() as session:
            total = session.execute(
                select(func.count()).select_from(Operation).where(*filters)
            ).scalar_one()
            rows = (
                session.execute(
                    select(Operation)
                    .where(*filters)
                    .order_by(Operation.created_at.desc(), Operation.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
            return Page(items=list(rows), total=total)

    # -- events -----------------------------------------------------------

    def insert_event_if_absent(
        self,
        *,
        event_type: str,
        subject: str,
        signature: str,
        slot: int,
        timestamp: datetime,
        data: dict,
        enqueue_deliveries: bool = False,
    ) -> Event | None:
        """Insert an event unless its signature is already stored.

        Returns the new row, or None when the signature existed. A duplicate
        is not an error: the log source redelivers on reconnect.

        With ``enqueue_deliveries`` one pending delivery per matching active
        webhook is written in the same transaction, so a stored event always
        has its deliveries.
        """
        with self._session_factory() as session:
            event = Event(
                event_type=event_type,
                subject=subject,
                signature=signature,
                slot=slot,
                timestamp=timestamp,
                data=data,
            )
            session.add(event)
            try:
                session.flush()
                if enqueue_deliveries:
                    session.add_all(
                        _pending_delivery(webhook.id, event.id)
                        for webhook in self._matching_webhooks(session, event_type)
                    )
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(event)
            return event

    def get_event(self, event_id: int) -> Event | None:
        with self._session_factory() as session:
            return session.get(Event, event_id)

    def count_events(self, signature: str | None = None) -> int:
        stmt = select(func.count()).select_from(Event)
        if signature is not None:
            stmt = stmt.where(Event.signature == signature)
        with self._session_factory() as session:
            return session.execute(stmt).scalar_one()

    def list_events(
        self,
        *,
        event_type: str | None = None,
        subject: str | None = None,
        time_from: datetime | None = None,
        time_to: datetime | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page:
        filters = []
        if event_type:
            filters.append(Event.event_type == event_type)
        if subject:
            filters.append(Event.subject == subject)
        if time_from is not None:
            filters.append(Event.timestamp >= time_from)
        if time_to is not None:
            filters.append(Event.timestamp <= time_to)
        limit, offset = _paginate(page, limit)
        with self._session_factory() as session:
            total = session.execute(
                select(func.count()).select_from(Event).where(*filters)
            ).scalar_one()
            rows = (
                session.execute(
                    select(Event)
                    .where(*filters)
                    .order_by(Event.timestamp.desc(), Event.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
            return Page(items=list(rows), total=total)

    # -- indexer state ----------------------------------------------------

    def get_watermark(self) -> int | None:
        with self._session_factory() as session:
            state = session.get(IndexerState, INDEXER_STATE_ID)
            return state.last_slot if state is not None else None

    def advance_watermark(self, slot: int) -> int:
        """Move the watermark forward to ``slot``; never backward.

        Returns the watermark after the call.
        """
        with self._session_factory() as session:
            result = session.execute(
                update(IndexerState)
                .where(IndexerState.id == INDEXER_STATE_ID, IndexerState.last_slot < slot)
                .values(last_slot=slot, updated_at=utcnow())
            )
            if result.rowcount == 1:
                session.commit()
                return slot
            state = session.get(IndexerState, INDEXER_STATE_ID)
            if state is not None:
                session.rollback()
                return state.last_slot
            session.add(IndexerState(id=INDEXER_STATE_ID, last_slot=slot))
            try:
                session.commit()
            except IntegrityError:
                # Another writer created the row first; retry as an update
                session.rollback()
                return self.advance_watermark(slot)
            return slot

    # -- webhooks ---------------------------------------------------------

    def create_webhook(self, *, url: str, event_types: list[str], secret: str) -> Webhook:
        with self._session_factory() as session:
            webhook = Webhook(url=url, event_types=list(event_types), secret=secret, is_active=True)
            session.add(webhook)
            session.commit()
            session.refresh(webhook)
            return webhook

    def get_webhook(self, webhook_id: int) -> Webhook | None:
        with self._session_factory() as session:
            return session.get(Webhook, webhook_id)

    def list_webhooks(self) -> list[Webhook]:
        with self._session_factory() as session:
            return list(session.execute(select(Webhook).order_by(Webhook.id)).scalars().all())

    def delete_webhook(self, webhook_id: int) -> bool:
        with self._session_factory() as session:
            webhook = session.get(Webhook, webhook_id)
            if webhook is None:
                return False
            # Keep the delivery audit trail; detach it from the webhook
            session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.webhook_id == webhook_id)
                .values(webhook_id=None)
            )
            session.delete(webhook)
            session.commit()
            return True

    @staticmethod
    def _matching_webhooks(session: Session, event_type: str) -> list[Webhook]:
        active = session.execute(
            select(Webhook).where(Webhook.is_active.is_(True)).order_by(Webhook.id)
        ).scalars()
        # Exact string match against the subscription list
        return [w for w in active if event_type in (w.event_types or [])]

    # -- deliveries -------------------------------------------------------

    def create_deliveries_for_event(self, event_id: int, event_type: str) -> list[WebhookDelivery]:
        with self._session_factory() as session:
            deliveries = [
                _pending_delivery(webhook.id, event_id)
                for webhook in self._matching_webhooks(session, event_type)
            ]
            session.add_all(deliveries)
            session.commit()
            for delivery in deliveries:
                session.refresh(delivery)
            return deliveries

    def create_deliveries(self, event_id: int, webhook_ids: list[int]) -> list[WebhookDelivery]:
        if not webhook_ids:
            return []
        with self._session_factory() as session:
            deliveries = [_pending_delivery(webhook_id, event_id) for webhook_id in webhook_ids]
            session.add_all(deliveries)
            session.commit()
            for delivery in deliveries:
                session.refresh(delivery)
            return deliveries

    def get_delivery(self, delivery_id: int) -> WebhookDelivery | None:
        with self._session_factory() as session:
            return session.get(WebhookDelivery, delivery_id)

    def list_deliveries(
        self, *, webhook_id: int | None = None, event_id: int | None = None
    ) -> list[WebhookDelivery]:
        stmt = select(WebhookDelivery)
        if webhook_id is not None:
            stmt = stmt.where(WebhookDelivery.webhook_id == webhook_id)
        if event_id is not None:
            stmt = stmt.where(WebhookDelivery.event_id == event_id)
        with self._session_factory() as session:
            return list(session.execute(stmt.order_by(WebhookDelivery.id)).scalars().all())

    def _dispatchable_filters(self, now: datetime, max_attempts: int) -> list:
        return [
            WebhookDelivery.status.in_(RETRYABLE_DELIVERY_STATUSES),
            WebhookDelivery.attempts < max_attempts,
            or_(WebhookDelivery.next_retry_at.is_(None), WebhookDelivery.next_retry_at <= now),
            or_(WebhookDelivery.claimed_until.is_(None), WebhookDelivery.claimed_until < now),
        ]

    def list_dispatchable(self, *, now: datetime, max_attempts: int, limit: int) -> list[DeliveryJob]:
        stmt = (
            select(WebhookDelivery, Webhook, Event)
            .join(Webhook, Webhook.id == WebhookDelivery.webhook_id)
            .join(Event, Event.id == WebhookDelivery.event_id)
            .where(Webhook.is_active.is_(True), *self._dispatchable_filters(now, max_attempts))
            .order_by(WebhookDelivery.created_at.asc(), WebhookDelivery.id.asc())
            .limit(max(1, limit))
        )
        with self._session_factory() as session:
            return [DeliveryJob(d, w, e) for d, w, e in session.execute(stmt).all()]

    def claim_delivery(
        self, delivery_id: int, *, now: datetime, lease_until: datetime, max_attempts: int
    ) -> bool:
        """Take the claim lease on a delivery with one conditional UPDATE.

        False means another dispatcher holds it or it stopped being
        dispatchable since it was listed.
        """
        with self._session_factory() as session:
            result = session.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    *self._dispatchable_filters(now, max_attempts),
                )
                .values(claimed_until=lease_until)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def record_attempt(
        self,
        delivery_id: int,
        *,
        status: str,
        attempts: int,
        last_attempt_at: datetime,
        next_retry_at: datetime | None,
        response_code: int | None,
        claimed_until: datetime,
    ) -> bool:
        """Store an attempt outcome and release the lease.

        Only applies while ``claimed_until`` is still the lease on the row;
        False means the lease lapsed and another dispatcher took it over.
        """
        with self._session_factory() as session:
            result = session.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.claimed_until == claimed_until,
                )
                .values(
                    status=status,
                    attempts=attempts,
                    last_attempt_at=last_attempt_at,
                    next_retry_at=next_retry_at,
                    response_code=response_code,
                    claimed_until=None,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1
