"""
Runtime wiring: every long-lived collaborator of the service, created once at
startup, attached to ``app.state.relay`` and closed at shutdown.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .core.config import Settings
from .core.logging import get_logger
from .db import create_schema, get_engine, get_sessionmaker
from .services.command_gateway import CommandGateway
from .services.dispatch_scheduler import DispatchScheduler
from .services.event_parser import EventParser, JsonLogEventParser
from .services.event_stream import EventStream
from .services.executors import CommandExecutor, HttpCommandExecutor, MockLedgerExecutor
from .services.idempotency import IdempotencyStore, build_idempotency_store
from .services.ingestion import IngestionPipeline
from .services.log_source import MemoryLogSource
from .services.repository import RelayRepository
from .services.webhook_dispatcher import WebhookDispatcher

logger = get_logger(__name__)


@dataclass
class RelayContext:
    settings: Settings
    engine: Engine
    repository: RelayRepository
    idempotency: IdempotencyStore
    executor: CommandExecutor
    gateway: CommandGateway
    dispatcher: WebhookDispatcher
    scheduler: DispatchScheduler
    log_source: MemoryLogSource
    ingestion: IngestionPipeline
    event_stream: EventStream
    started: bool = False

    async def start(self) -> None:
        if self.started:
            return
        if self.settings.ingestion_enabled:
            self.ingestion.start()
        else:
            logger.info("ingestion.disabled")
        if self.settings.dispatcher_enabled:
            self.scheduler.start()
        else:
            logger.info("dispatch_scheduler.disabled")
        self.started = True

    async def stop(self) -> None:
        # Drain received batches before the dispatcher and stream go away
        await self.ingestion.stop()
        await self.scheduler.stop()
        await self.event_stream.close()
        await self.dispatcher.close()
        await self.executor.close()
        await self.idempotency.close()
        self.started = False
        logger.info("relay.stopped")


def build_executor(settings: Settings) -> CommandExecutor:
    if settings.service_mode == "live":
        return HttpCommandExecutor(
            settings.executor_url or "", timeout_seconds=settings.executor_timeout_seconds
        )
    return MockLedgerExecutor()


def build_context(
    settings: Settings,
    *,
    engine: Engine | None = None,
    session_factory: Callable[[], Session] | None = None,
    idempotency: IdempotencyStore | None = None,
    executor: CommandExecutor | None = None,
    http_client: httpx.AsyncClient | None = None,
    parser: EventParser | None = None,
) -> RelayContext:
    engine = engine or get_engine()
    if session_factory is None:
        session_factory = get_sessionmaker()
    if settings.auto_create_schema:
        create_schema(engine)

    repository = RelayRepository(session_factory)
    idempotency = idempotency or build_idempotency_store(
        settings.redis_url, settings.idempotency_ttl_seconds
    )
    executor = executor or build_executor(settings)
    gateway = CommandGateway(
        repository,
        idempotency,
        executor,
        wait_seconds=settings.idempotency_wait_seconds,
        poll_interval_seconds=settings.idempotency_poll_interval_seconds,
    )
    dispatcher = WebhookDispatcher(
        repository,
        http_client=http_client,
        max_attempts=settings.webhook_max_attempts,
        retry_base_seconds=settings.webhook_retry_base_seconds,
        retry_max_delay_seconds=settings.webhook_retry_max_delay_seconds,
        timeout_seconds=settings.webhook_timeout_seconds,
        claim_lease_seconds=settings.webhook_claim_lease_seconds,
        batch_limit=settings.webhook_dispatch_batch_limit,
    )
    scheduler = DispatchScheduler(dispatcher, settings.webhook_dispatch_interval_seconds)
    event_stream = EventStream(keepalive_seconds=settings.stream_keepalive_seconds)
    log_source = MemoryLogSource()
    ingestion = IngestionPipeline(
        repository,
        log_source,
        parser or JsonLogEventParser(),
        program_id=settings.program_id,
        commitment=settings.commitment,
        dispatcher=dispatcher,
        scheduler=scheduler,
        event_stream=event_stream,
        queue_size=settings.ingestion_queue_size,
    )
    logger.info(
        "relay.context_built",
        service_mode=settings.service_mode,
        idempotency_store=type(idempotency).__name__,
        executor=type(executor).__name__,
    )
    return RelayContext(
        settings=settings,
        engine=engine,
        repository=repository,
        idempotency=idempotency,
        executor=executor,
        gateway=gateway,
        dispatcher=dispatcher,
        scheduler=scheduler,
        log_source=log_source,
        ingestion=ingestion,
        event_stream=event_stream,
    )
