"""
Event ingestion pipeline.

The log source callback only enqueues batches; a single consumer task
parses, normalizes, dedups and persists them, then notifies webhook
delivery and live listeners. An event and its webhook deliveries commit in
one transaction; notification happens strictly after that commit, and never
for a duplicate signature.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from ..core.logging import get_logger
from ..core.metrics import inc
from ..models.events import Event
from ..schemas.events import serialize_event
from ..utils.clock import utcnow
from .dispatch_scheduler import DispatchScheduler
from .event_parser import (
    EventParser,
    ParsedEvent,
    event_subject,
    event_timestamp,
    normalize_payload,
)
from .event_stream import EventStream
from .log_source import LogBatch, LogSource
from .repository import RelayRepository
from .webhook_dispatcher import WebhookDispatcher

_STOP = object()


@dataclass
class IngestionStats:
    batches_received: int = 0
    batches_discarded: int = 0
    batches_dropped: int = 0
    events_stored: int = 0
    duplicates: int = 0
    parse_errors: int = 0
    store_errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class IngestionPipeline:
    def __init__(
        self,
        repository: RelayRepository,
        log_source: LogSource,
        parser: EventParser,
        *,
        program_id: str,
        commitment: str = "confirmed",
        dispatcher: WebhookDispatcher | None = None,
        scheduler: DispatchScheduler | None = None,
        event_stream: EventStream | None = None,
        queue_size: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._log_source = log_source
        self._parser = parser
        self._program_id = program_id
        self._commitment = commitment
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._event_stream = event_stream
        self._queue_size = queue_size
        self._clock = clock
        self._queue: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None
        self._handle: int | None = None
        self._logger = get_logger(__name__)
        self.stats = IngestionStats()
        self.subscription_lost = False
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._handle is not None

    @property
    def backlog(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def accepting(self) -> bool:
        return self.running and self._queue is not None and not self._queue.full()

    def start(self) -> None:
        if self._handle is not None:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._task = asyncio.create_task(self._consume(), name="relay-ingestion")
        self.subscription_lost = False
        self.last_error = None
        self._handle = self._log_source.subscribe(
            self._program_id, self._commitment, self._enqueue, on_error=self._on_source_error
        )
        self._logger.info(
            "ingestion.started", program_id=self._program_id, commitment=self._commitment
        )

    async def stop(self) -> None:
        """Unsubscribe, then drain the batches already received."""
        if self._handle is None:
            return
        self._log_source.unsubscribe(self._handle)
        self._handle = None
        queue, task = self._queue, self._task
        self._task = None
        if queue is not None and task is not None:
            await queue.put(_STOP)
            await task
        self._queue = None
        self._logger.info("ingestion.stopped", **self.stats.as_dict())

    def _enqueue(self, batch: LogBatch) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(batch)
        except asyncio.QueueFull:
            self.stats.batches_dropped += 1
            self._logger.error(
                "ingestion.queue_full", signature=batch.signature, slot=batch.slot
            )

    def _on_source_error(self, exc: Exception) -> None:
        self.subscription_lost = True
        self.last_error = str(exc)
        self._logger.error("ingestion.subscription_lost", error=str(exc))

    async def _consume(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            batch = await queue.get()
            try:
                if batch is _STOP:
                    return
                await self.handle_batch(batch)
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "ingestion.batch_error",
                    signature=getattr(batch, "signature", None),
                    error=str(exc),
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def handle_batch(self, batch: LogBatch) -> list[Event]:
        """Process one batch end to end; returns the newly stored events."""
        self.stats.batches_received += 1
        if batch.err is not None:
            self.stats.batches_discarded += 1
            self._logger.info("ingestion.batch_discarded", signature=batch.signature)
            return []
        try:
            parsed = self._parser.parse_logs(
                batch.logs,
                on_error=lambda line, exc: self._on_parse_error(batch, exc),
            )
        except Exception as exc:  # noqa: BLE001
            self._on_parse_error(batch, exc)
            return []

        stored: list[Event] = []
        for event in parsed:
            try:
                record = self._store(event, batch)
            except SQLAlchemyError as exc:
                self.stats.store_errors += 1
                self._logger.error(
                    "ingestion.store_error",
                    signature=batch.signature,
                    event_type=event.name,
                    error=str(exc),
                )
                continue
            if record is not None:
                self._notify(record)
                stored.append(record)
        return stored

    def _on_parse_error(self, batch: LogBatch, exc: Exception) -> None:
        self.stats.parse_errors += 1
        inc("ingestion_parse_errors_total")
        self._logger.warning("ingestion.parse_error", signature=batch.signature, error=str(exc))

    def _store(self, parsed: ParsedEvent, batch: LogBatch) -> Event | None:
        data = normalize_payload(parsed.data)
        record = self._repository.insert_event_if_absent(
            event_type=parsed.name,
            subject=event_subject(data),
            signature=batch.signature,
            slot=batch.slot,
            timestamp=event_timestamp(data, self._clock()),
            data=data,
            enqueue_deliveries=self._dispatcher is not None,
        )
        if record is None:
            self.stats.duplicates += 1
            inc("events_duplicate_total")
            self._logger.info(
                "ingestion.duplicate", signature=batch.signature, event_type=parsed.name
            )
            return None
        try:
            self._repository.advance_watermark(batch.slot)
        except SQLAlchemyError as exc:
            # The event row is already committed
            self.stats.store_errors += 1
            self._logger.error(
                "ingestion.watermark_error", slot=batch.slot, error=str(exc)
            )
        self.stats.events_stored += 1
        inc("events_ingested_total", event_type=record.event_type)
        self._logger.info(
            "ingestion.event_stored",
            event_id=record.id,
            event_type=record.event_type,
            signature=record.signature,
            slot=record.slot,
        )
        return record

    def _notify(self, record: Event) -> None:
        if self._dispatcher is not None and self._scheduler is not None:
            self._scheduler.trigger()
        if self._event_stream is not None:
            self._event_stream.broadcast(record.event_type, serialize_event(record))
