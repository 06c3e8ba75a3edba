import os
import uuid
from datetime import datetime

import httpx
import pytest
from dotenv import load_dotenv

load_dotenv()

# Local defaults so the suite runs without external services
os.environ.setdefault("DATABASE_URL", "sqlite:///./clienthub_webhooks_test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("DISPATCHER_INTERNAL_SECRET", "test-internal-secret")


@pytest.fixture(scope="session")
def db_engine():
    """Creates the DB engine and a fresh schema."""
    from clienthub_webhooks.db.session import engine, Base
    from clienthub_webhooks.models import (  # noqa: F401
        delivery_log,
        destination,
        dispatcher_run,
        queued_event,
    )

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine


@pytest.fixture(autouse=True)
def clean_tables(db_engine):
    """Empties every table after each test; dispatcher code commits on its own sessions."""
    from clienthub_webhooks.db.session import Base

    yield
    with db_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture(scope="function")
async def session_factory(db_engine):
    """Async session factory bound to a per-test engine (no pooled connections across loops)."""
    from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import NullPool
    from clienthub_webhooks.db.session import ASYNC_DATABASE_URL

    async_engine = create_async_engine(ASYNC_DATABASE_URL, poolclass=NullPool)
    factory = sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    yield factory
    await async_engine.dispose()


@pytest.fixture(scope="function")
async def async_db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def internal_headers():
    return {"X-Internal-Secret": os.environ["DISPATCHER_INTERNAL_SECRET"]}


class Receiver:
    """Stands in for webhook destinations; records every request it gets."""

    def __init__(self):
        self.requests = []
        self.responder = lambda request: httpx.Response(200, json={"received": True})

    def handler(self, request: httpx.Request):
        self.requests.append(request)
        return self.responder(request)

    def respond_with(self, status_code, **kwargs):
        self.responder = lambda request: httpx.Response(status_code, **kwargs)

    def raise_error(self, exc):
        def _raise(request):
            raise exc
        self.responder = _raise


@pytest.fixture
def receiver():
    return Receiver()


@pytest.fixture
async def outbound_client(receiver):
    transport = httpx.MockTransport(receiver.handler)
    async with httpx.AsyncClient(transport=transport) as client:
        yield client


@pytest.fixture
def make_destination(session_factory):
    """Inserts a WebhookDestination and returns it."""
    from clienthub_webhooks.models.destination import WebhookDestination

    async def _make(**overrides):
        fields = {
            "name": "CRM",
            "url": "https://hooks.example.com/clienthub",
            "secret_key": "abc",
            "enabled": True,
            "events": ["client.created", "client.updated", "client.deleted"],
            "headers": {},
            "http_method": "POST",
            "failure_count": 0,
        }
        fields.update(overrides)
        async with session_factory() as session:
            destination = WebhookDestination(**fields)
            session.add(destination)
            await session.commit()
            await session.refresh(destination)
            return destination

    return _make


@pytest.fixture
def make_queued_event(session_factory):
    """Inserts a pending QueuedEvent for a destination and returns it."""
    from clienthub_webhooks.models.queued_event import QueuedEvent

    async def _make(destination, **overrides):
        event_id = overrides.pop("event_id", f"evt_{uuid.uuid4().hex}")
        event_type = overrides.pop("event_type", "client.created")
        fields = {
            "webhook_id": destination.id,
            "event_type": event_type,
            "event_id": event_id,
            "payload": {
                "event_id": event_id,
                "event_type": event_type,
                "timestamp": "2026-01-01T00:00:00.000Z",
                "test": False,
                "data": {"id": "c1"},
            },
            "status": "pending",
            "scheduled_for": datetime.utcnow(),
            "attempts": 0,
            "max_attempts": 5,
        }
        fields.update(overrides)
        async with session_factory() as session:
            event = QueuedEvent(**fields)
            session.add(event)
            await session.commit()
            await session.refresh(event)
            return event

    return _make


@pytest.fixture
def reload_row(session_factory):
    """Reads a row back through a fresh session."""

    async def _reload(model, pk):
        async with session_factory() as session:
            return await session.get(model, pk)

    return _reload


@pytest.fixture(scope="function")
async def client(session_factory, async_db_session, outbound_client):
    """Provides an async HTTP client for the API with DB and outbound overrides."""
    from clienthub_webhooks.api.main import app
    from clienthub_webhooks.api.dependencies import (
        get_async_db,
        get_outbound_client,
        get_session_factory,
    )

    async def override_get_async_db():
        yield async_db_session

    async def override_get_outbound_client():
        yield outbound_client

    app.dependency_overrides[get_async_db] = override_get_async_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_outbound_client] = override_get_outbound_client

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides = {}
