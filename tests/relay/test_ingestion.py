"""
Tests for the ingestion pipeline: dedup, watermark, notification ordering
and failure handling.
"""
import asyncio
from datetime import UTC, datetime
from unittest.mock import Mock

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from services.relay.app.services.event_parser import JsonLogEventParser
from services.relay.app.services.event_stream import EventStream
from services.relay.app.services.ingestion import IngestionPipeline
from services.relay.app.services.log_source import LogBatch, MemoryLogSource
from services.relay.app.services.webhook_dispatcher import WebhookDispatcher


@pytest.fixture
def endpoint_requests():
    return []


@pytest.fixture
def dispatcher(repository, endpoint_requests):
    def handler(request):
        endpoint_requests.append(request)
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookDispatcher(repository, http_client=client, max_attempts=3)


@pytest.fixture
def log_source():
    return MemoryLogSource()


@pytest.fixture
def scheduler():
    return Mock()


@pytest.fixture
def stream():
    return EventStream(keepalive_seconds=1)


@pytest.fixture
def pipeline(repository, log_source, dispatcher, scheduler, stream):
    return IngestionPipeline(
        repository,
        log_source,
        JsonLogEventParser(),
        program_id="relay-program",
        commitment="confirmed",
        dispatcher=dispatcher,
        scheduler=scheduler,
        event_stream=stream,
        queue_size=10,
    )


class TestHandleBatch:
    @pytest.mark.asyncio
    async def test_stores_event_and_advances_watermark(self, pipeline, repository, sample_batch):
        stored = await pipeline.handle_batch(sample_batch(signature="sig1", slot=42))

        assert len(stored) == 1
        event = stored[0]
        assert event.event_type == "TokensMinted"
        assert event.subject == "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
        assert event.timestamp.replace(tzinfo=UTC) == datetime.fromtimestamp(1_700_000_000, tz=UTC)
        assert event.data["amount"] == 1_000_000
        assert repository.get_watermark() == 42
        assert pipeline.stats.events_stored == 1

    @pytest.mark.asyncio
    async def test_error_batch_is_discarded(self, pipeline, repository, sample_batch):
        stored = await pipeline.handle_batch(sample_batch(err={"InstructionError": [0, "Custom"]}))

        assert stored == []
        assert repository.count_events() == 0
        assert repository.get_watermark() is None
        assert pipeline.stats.batches_discarded == 1

    @pytest.mark.asyncio
    async def test_parse_error_is_skipped(self, pipeline, repository, sample_batch):
        bad = LogBatch(signature="bad", logs=["Program data: {broken"], slot=5)

        assert await pipeline.handle_batch(bad) == []
        assert pipeline.stats.parse_errors == 1

        # The pipeline keeps going with the next batch
        stored = await pipeline.handle_batch(sample_batch(signature="good", slot=6))
        assert len(stored) == 1
        assert repository.get_watermark() == 6

    @pytest.mark.asyncio
    async def test_bad_line_does_not_drop_good_sibling(self, pipeline, repository, sample_batch):
        batch = sample_batch(signature="mixed", slot=8)
        batch.logs.append("Program data: {not json")

        stored = await pipeline.handle_batch(batch)

        assert [e.event_type for e in stored] == ["TokensMinted"]
        assert repository.count_events(signature="mixed") == 1
        assert pipeline.stats.parse_errors == 1
        assert pipeline.stats.events_stored == 1

    @pytest.mark.asyncio
    async def test_big_integers_are_stored_as_strings(self, pipeline, sample_batch):
        batch = sample_batch(data={"amount": 2**64 - 1, "config": "cfg"})

        (event,) = await pipeline.handle_batch(batch)

        assert event.data["amount"] == "18446744073709551615"

    @pytest.mark.asyncio
    async def test_missing_config_gives_unknown_subject(self, pipeline, sample_batch):
        (event,) = await pipeline.handle_batch(sample_batch(data={"amount": 1}))

        assert event.subject == "unknown"

    @pytest.mark.asyncio
    async def test_watermark_not_moved_back_by_late_batch(self, pipeline, repository, sample_batch):
        await pipeline.handle_batch(sample_batch(signature="s-late-1", slot=90))
        await pipeline.handle_batch(sample_batch(signature="s-late-2", slot=70))

        assert repository.get_watermark() == 90


class TestDedupScenario:
    @pytest.mark.asyncio
    async def test_same_signature_twice_one_delivery_one_attempt(
        self, pipeline, repository, dispatcher, scheduler, endpoint_requests, sample_batch
    ):
        webhook = repository.create_webhook(
            url="https://subscriber.example/hook", event_types=["TokensMinted"], secret="s"
        )

        first = await pipeline.handle_batch(sample_batch(signature="sigA", slot=10))
        second = await pipeline.handle_batch(sample_batch(signature="sigA", slot=10))
        await dispatcher.dispatch_pending()
        await dispatcher.dispatch_pending()

        assert len(first) == 1
        assert second == []
        assert repository.count_events(signature="sigA") == 1
        assert len(repository.list_deliveries(webhook_id=webhook.id)) == 1
        assert len(endpoint_requests) == 1
        assert pipeline.stats.duplicates == 1
        # Eager dispatch requested only for the stored event
        assert scheduler.trigger.call_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_is_not_broadcast(self, pipeline, stream, sample_batch):
        client = stream.subscribe()

        await pipeline.handle_batch(sample_batch(signature="sigB"))
        await pipeline.handle_batch(sample_batch(signature="sigB"))

        assert client.queue.qsize() == 1
        frame = client.queue.get_nowait()
        assert frame.startswith("event: TokensMinted\n")
        assert '"signature":"sigB"' in frame


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_watermark_failure_keeps_deliveries_and_notifies(
        self, pipeline, repository, scheduler, stream, sample_batch, mocker
    ):
        webhook = repository.create_webhook(
            url="https://subscriber.example/hook", event_types=["TokensMinted"], secret="s"
        )
        mocker.patch.object(
            repository,
            "advance_watermark",
            side_effect=OperationalError("UPDATE indexer_state", {}, Exception("locked")),
        )
        client = stream.subscribe()

        stored = await pipeline.handle_batch(sample_batch(signature="sigW", slot=30))

        assert len(stored) == 1
        (delivery,) = repository.list_deliveries(webhook_id=webhook.id)
        assert delivery.event_id == stored[0].id
        assert scheduler.trigger.call_count == 1
        assert client.queue.qsize() == 1
        assert pipeline.stats.store_errors == 1
        assert pipeline.stats.events_stored == 1

    @pytest.mark.asyncio
    async def test_failed_insert_leaves_no_orphan_deliveries(
        self, pipeline, repository, scheduler, sample_batch, session_factory, mocker
    ):
        from services.relay.app.models.webhooks import WebhookDelivery

        repository.create_webhook(
            url="https://subscriber.example/hook", event_types=["TokensMinted"], secret="s"
        )
        mocker.patch(
            "services.relay.app.services.repository._pending_delivery",
            side_effect=OperationalError("INSERT webhook_deliveries", {}, Exception("disk full")),
        )

        stored = await pipeline.handle_batch(sample_batch(signature="sigX", slot=31))

        assert stored == []
        assert repository.count_events(signature="sigX") == 0
        with session_factory() as session:
            assert session.query(WebhookDelivery).count() == 0
        assert pipeline.stats.store_errors == 1
        scheduler.trigger.assert_not_called()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, pipeline):
        await pipeline.stop()

        assert pipeline.running is False

    @pytest.mark.asyncio
    async def test_start_twice_subscribes_once(self, pipeline, log_source):
        pipeline.start()
        pipeline.start()

        assert log_source.subscriber_count == 1
        await pipeline.stop()
        assert log_source.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_published_batches_are_consumed(self, pipeline, log_source, repository, sample_batch):
        pipeline.start()

        log_source.publish(sample_batch(signature="q1", slot=1))
        log_source.publish(sample_batch(signature="q2", slot=2))
        await pipeline.stop()

        assert repository.count_events() == 2
        assert repository.get_watermark() == 2

    @pytest.mark.asyncio
    async def test_stop_drains_received_batches(self, pipeline, log_source, repository, sample_batch):
        pipeline.start()
        for i in range(5):
            log_source.publish(sample_batch(signature=f"d{i}", slot=i + 1))

        await pipeline.stop()

        assert repository.count_events() == 5
        # Nothing arrives after unsubscribe
        log_source.publish(sample_batch(signature="late", slot=99))
        await asyncio.sleep(0)
        assert repository.count_events() == 5

    @pytest.mark.asyncio
    async def test_queue_overflow_is_counted(self, repository, log_source, sample_batch):
        pipeline = IngestionPipeline(
            repository, log_source, JsonLogEventParser(), program_id="p", queue_size=1
        )
        pipeline.start()

        log_source.publish(sample_batch(signature="o1"))
        log_source.publish(sample_batch(signature="o2"))
        await pipeline.stop()

        assert pipeline.stats.batches_dropped == 1
        assert repository.count_events() == 1

    @pytest.mark.asyncio
    async def test_subscription_loss_is_reported(self, pipeline, log_source):
        pipeline.start()

        log_source.fail(ConnectionError("socket closed"))

        assert pipeline.subscription_lost is True
        assert pipeline.last_error == "socket closed"
        await pipeline.stop()
