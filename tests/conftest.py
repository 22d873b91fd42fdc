"""
Test Configuration
==================
Pytest fixtures for Tollgate tests.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import httpx
import pytest
from fastapi import FastAPI

from tollgate.config import Settings
from tollgate.core.alerts import AlertMonitor
from tollgate.database import close_db, create_engine, create_session_factory, init_db
from tollgate.main import Tollgate, create_dashboard_app
from tollgate.proxy.app import create_proxy_app
from tollgate.schemas.telemetry import AlertPolicy
from tollgate.services.events import EventBroadcaster
from tollgate.services.storage import CallStore

from factories import UPSTREAM_URL, FakeUpstream, RecordingNotifier

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def settings() -> Settings:
    """Settings for an isolated in-memory runtime."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        upstream_url=UPSTREAM_URL,
        scheduler_enabled=False,
        routing_enabled=True,
        routing_threshold=80,
        routing_known_limit=400_000,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def runtime(
    settings: Settings,
    upstream: FakeUpstream,
    notifier: RecordingNotifier,
) -> AsyncGenerator[Tollgate, None]:
    """Fully wired runtime whose upstream is the fake."""
    client = httpx.AsyncClient(base_url=UPSTREAM_URL, transport=httpx.MockTransport(upstream))
    runtime = Tollgate(settings, client=client)
    runtime.alerts.notifier = notifier
    await runtime.start()

    yield runtime

    await runtime.stop()


@pytest.fixture
async def proxy_client(runtime: Tollgate) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Client talking to the proxy listener app."""
    app = create_proxy_app(runtime.gateway)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://proxy.test",
    ) as client:
        yield client


@pytest.fixture
def dashboard_app(runtime: Tollgate) -> FastAPI:
    return create_dashboard_app(runtime)


@pytest.fixture
async def dashboard_client(dashboard_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Client talking to the dashboard API app."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=dashboard_app),
        base_url="http://dashboard.test",
    ) as client:
        yield client


@pytest.fixture
async def store() -> AsyncGenerator[CallStore, None]:
    """Standalone call store over a fresh in-memory database."""
    engine = create_engine(TEST_DATABASE_URL)
    await init_db(engine)

    yield CallStore(create_session_factory(engine))

    await close_db(engine)


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def alert_monitor(
    store: CallStore,
    broadcaster: EventBroadcaster,
    notifier: RecordingNotifier,
) -> AlertMonitor:
    return AlertMonitor(AlertPolicy(), store, broadcaster, notifier)


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2029, 12, 31, 23, 0, 0, tzinfo=timezone.utc)
