"""
Root conftest.py for pytest configuration and shared fixtures.
"""
import json
import os
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# Set test environment BEFORE importing any app code
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["TESTING"] = "true"

# Background tasks are started explicitly by the tests that need them
os.environ["DISPATCHER_ENABLED"] = "false"
os.environ["INGESTION_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"

VALID_ADDRESS = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
OTHER_ADDRESS = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


@pytest.fixture(scope="function")
def test_db_engine():
    """
    Fresh in-memory SQLite database per test.

    Relay components commit through their own sessions, so isolation comes
    from a new database rather than a rolled-back transaction.
    """
    from services.relay.app.core.config import Settings
    from services.relay.app.db import build_engine, create_schema

    # In-memory SQLite on a StaticPool with foreign keys enforced
    engine = build_engine(Settings(database_url="sqlite:///:memory:"))
    create_schema(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(bind=test_db_engine, expire_on_commit=False, future=True)


@pytest.fixture
def repository(session_factory):
    from services.relay.app.services.repository import RelayRepository

    return RelayRepository(session_factory)


@pytest.fixture
def test_settings():
    from services.relay.app.core.config import Settings

    return Settings(
        env="test",
        database_url="sqlite:///:memory:",
        dispatcher_enabled=False,
        ingestion_enabled=False,
        rate_limit_enabled=False,
        idempotency_wait_seconds=2.0,
        idempotency_poll_interval_seconds=0.01,
        webhook_max_attempts=3,
        webhook_retry_base_seconds=1.0,
    )


@pytest.fixture
def make_context(test_settings, test_db_engine, session_factory):
    """Build a RelayContext on the test database; keyword arguments override collaborators."""
    from services.relay.app.context import build_context

    def _make(settings=None, **overrides):
        return build_context(
            settings or test_settings,
            engine=test_db_engine,
            session_factory=session_factory,
            **overrides,
        )

    return _make


@pytest.fixture
def relay_context(make_context):
    return make_context()


@pytest.fixture
def app(relay_context):
    from services.relay.app.main import create_app

    application = create_app()
    application.state.relay = relay_context
    return application


@pytest.fixture(scope="function")
def client(app) -> Generator[TestClient, None, None]:
    """
    Create a FastAPI test client bound to the per-test relay context.
    """
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sample_batch():
    """A log batch carrying one TokensMinted event."""
    from services.relay.app.services.log_source import LogBatch

    def _make(signature="sigA", slot=100, name="TokensMinted", data=None, err=None):
        payload = {
            "name": name,
            "data": data
            if data is not None
            else {
                "config": VALID_ADDRESS,
                "minter": OTHER_ADDRESS,
                "recipient": VALID_ADDRESS,
                "amount": 1_000_000,
                "timestamp": 1_700_000_000,
            },
        }
        return LogBatch(
            signature=signature,
            logs=[
                "Program log: Instruction: Mint",
                f"Program data: {json.dumps(payload)}",
            ],
            slot=slot,
            err=err,
        )

    return _make


@pytest.fixture(autouse=True)
def reset_environment():
    """Reset environment variables after each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)
