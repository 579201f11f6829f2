"""Tests for the HTTP surface: history, webhooks, ingestion push and auth."""
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from services.relay.app.main import create_app

VALID_ADDRESS = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
BASE_TIME = datetime(2026, 1, 1, tzinfo=UTC)


def _store_event(repository, signature, event_type="TokensMinted", subject="cfg", minutes=0):
    return repository.insert_event_if_absent(
        event_type=event_type,
        subject=subject,
        signature=signature,
        slot=100 + minutes,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        data={"amount": "5", "recipient": VALID_ADDRESS},
    )


def _client_for(make_context, settings):
    application = create_app()
    application.state.relay = make_context(settings=settings)
    return TestClient(application)


class TestRoot:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json() == {"service": "relay", "status": "ok"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestOperations:
    def test_empty_history(self, client):
        response = client.get("/operations")

        assert response.status_code == 200
        assert response.json() == {"page": 1, "limit": 20, "total": 0, "items": []}

    def test_history_filtered_by_type(self, client, repository):
        repository.create_operation(
            kind="mint", target=VALID_ADDRESS, amount="10", memo=None, idempotency_key="a"
        )
        repository.create_operation(
            kind="burn", target="self", amount="3", memo=None, idempotency_key="b"
        )

        response = client.get("/operations", params={"type": "burn"})

        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["kind"] == "burn"
        assert body["items"][0]["status"] == "pending"
        assert body["items"][0]["amount"] == "3"

    def test_newest_first_and_paged(self, client, repository):
        for n in range(3):
            repository.create_operation(
                kind="mint", target=VALID_ADDRESS, amount=str(n), memo=None, idempotency_key=str(n)
            )

        body = client.get("/operations", params={"limit": 2, "page": 1}).json()

        assert body["total"] == 3
        assert [item["amount"] for item in body["items"]] == ["2", "1"]

    def test_limit_above_maximum(self, client):
        response = client.get("/operations", params={"limit": 1000})

        assert response.status_code == 400
        assert response.json()["detail"] == "invalid_request"


class TestEvents:
    def test_list_and_filter(self, client, repository):
        _store_event(repository, "s1", minutes=0)
        _store_event(repository, "s2", event_type="TokensBurned", minutes=1)
        _store_event(repository, "s3", subject="other", minutes=2)

        body = client.get("/events").json()
        assert body["total"] == 3
        assert [item["signature"] for item in body["items"]] == ["s3", "s2", "s1"]

        by_type = client.get("/events", params={"type": "TokensBurned"}).json()
        assert [item["signature"] for item in by_type["items"]] == ["s2"]

        by_subject = client.get("/events", params={"subject": "other"}).json()
        assert [item["signature"] for item in by_subject["items"]] == ["s3"]

    def test_time_window(self, client, repository):
        _store_event(repository, "early", minutes=0)
        _store_event(repository, "late", minutes=30)

        body = client.get(
            "/events",
            params={"from": "2026-01-01T00:10:00Z", "to": "2026-01-01T01:00:00Z"},
        ).json()

        assert [item["signature"] for item in body["items"]] == ["late"]

    def test_event_shape(self, client, repository):
        _store_event(repository, "s1")

        item = client.get("/events").json()["items"][0]

        assert item["event_type"] == "TokensMinted"
        assert item["slot"] == 100
        assert item["data"] == {"amount": "5", "recipient": VALID_ADDRESS}
        assert item["timestamp"].startswith("2026-01-01T00:00:00")

    @pytest.mark.asyncio
    async def test_stream_unavailable_after_close(self, relay_context):
        application = create_app()
        application.state.relay = relay_context
        await relay_context.event_stream.close()

        transport = httpx.ASGITransport(app=application)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/events/stream")

        assert response.status_code == 503
        assert response.json()["detail"] == "stream_not_ready"


class TestWebhooks:
    def test_register_list_delete(self, client):
        created = client.post(
            "/webhooks",
            json={
                "url": "https://subscriber.example/hook",
                "eventTypes": ["TokensMinted", "TokensMinted", "TokensBurned"],
                "secret": "shh",
            },
        )

        assert created.status_code == 201
        body = created.json()
        assert body["event_types"] == ["TokensMinted", "TokensBurned"]
        assert body["is_active"] is True
        assert "secret" not in body

        listed = client.get("/webhooks").json()
        assert [w["id"] for w in listed] == [body["id"]]

        assert client.delete(f"/webhooks/{body['id']}").status_code == 204
        assert client.get("/webhooks").json() == []
        assert client.delete(f"/webhooks/{body['id']}").status_code == 404

    @pytest.mark.parametrize(
        "payload",
        [
            {"url": "ftp://x", "eventTypes": ["A"], "secret": "s"},
            {"url": "https://x", "eventTypes": [], "secret": "s"},
            {"url": "https://x", "eventTypes": ["A"]},
            {"url": "https://x", "eventTypes": [" "], "secret": "s"},
        ],
    )
    def test_invalid_registration(self, client, payload):
        response = client.post("/webhooks", json=payload)

        assert response.status_code == 400

    def test_deliveries_for_webhook(self, client, repository):
        webhook = repository.create_webhook(
            url="https://subscriber.example/hook", event_types=["TokensMinted"], secret="s"
        )
        event = _store_event(repository, "s1")
        repository.create_deliveries(event.id, [webhook.id])

        response = client.get(f"/webhooks/{webhook.id}/deliveries")

        assert response.status_code == 200
        (delivery,) = response.json()
        assert delivery["event_id"] == event.id
        assert delivery["status"] == "pending"
        assert delivery["attempts"] == 0

    def test_deliveries_for_unknown_webhook(self, client):
        assert client.get("/webhooks/999/deliveries").status_code == 404


class TestIngestEndpoint:
    def test_rejected_when_ingestion_stopped(self, client):
        response = client.post("/ingest/logs", json={"signature": "s", "logs": [], "slot": 1})

        assert response.status_code == 503
        assert response.json()["detail"] == "ingestion_not_running"

    def test_pushed_batch_is_stored(self, make_context, test_settings, repository):
        settings = test_settings.model_copy(update={"ingestion_enabled": True})
        line = (
            'Program data: {"name": "TokensMinted", '
            '"data": {"config": "cfg", "amount": 7, "timestamp": 1700000000}}'
        )

        with _client_for(make_context, settings) as client:
            response = client.post(
                "/ingest/logs", json={"signature": "push-1", "logs": [line], "slot": 12}
            )
            assert response.status_code == 202
            assert response.json()["accepted"] is True

        # Shutdown drains the ingestion queue
        assert repository.count_events(signature="push-1") == 1
        assert repository.get_watermark() == 12

    def test_ingest_token_required_when_configured(self, make_context, test_settings):
        settings = test_settings.model_copy(
            update={"ingestion_enabled": True, "ingest_token": "feed-token"}
        )
        batch = {"signature": "s", "logs": [], "slot": 1}

        with _client_for(make_context, settings) as client:
            assert client.post("/ingest/logs", json=batch).status_code == 401
            response = client.post(
                "/ingest/logs", json=batch, headers={"Authorization": "Bearer feed-token"}
            )
            assert response.status_code == 202


class TestAuthentication:
    def test_commands_require_api_key(self, make_context, test_settings):
        settings = test_settings.model_copy(update={"api_key": "secret-key"})
        body = {"kind": "mint", "target": VALID_ADDRESS, "amount": "1"}

        with _client_for(make_context, settings) as client:
            missing = client.post("/commands", json=body, headers={"X-Idempotency-Key": "a1"})
            wrong = client.post(
                "/commands",
                json=body,
                headers={"X-Idempotency-Key": "a1", "Authorization": "Bearer nope"},
            )
            ok = client.post(
                "/commands",
                json=body,
                headers={"X-Idempotency-Key": "a1", "Authorization": "Bearer secret-key"},
            )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert wrong.json()["detail"] == "unauthorized"
        assert ok.status_code == 201

    def test_reads_stay_open(self, make_context, test_settings):
        settings = test_settings.model_copy(update={"api_key": "secret-key"})

        with _client_for(make_context, settings) as client:
            assert client.get("/operations").status_code == 200
            assert client.get("/events").status_code == 200
            assert client.get("/webhooks").status_code == 200
