"""
Shared fixtures for the integration core tests.

Everything runs against in-memory SQLite with a frozen clock and an httpx
MockTransport standing in for the OTA endpoints.
"""

import json
import os
from datetime import datetime, timedelta

# Settings are read once at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["OFFLOAD_BLOCKING_IO"] = "false"
os.environ["WORKERS_ENABLED"] = "false"
os.environ["WEBHOOK_RATE_LIMIT"] = "1000/minute"
os.environ["CHANNEL_SECRETS"] = json.dumps({
    "booking_com": "booking-secret",
    "expedia": "expedia-secret",
    "airbnb": "airbnb-secret",
    "agoda": "agoda-secret",
})

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ota_core.container import ServiceContainer
from ota_core.database import create_tables
from ota_core.models.channel_configuration import ChannelConfiguration
from ota_core.services.booking_snapshot import InMemoryBookingSnapshotReader
from ota_core.services.http_transport import HttpTransport
from ota_core.utils.clock import IdGenerator

SECRETS = json.loads(os.environ["CHANNEL_SECRETS"])


class FrozenClock:
    """Wall and monotonic clock that only move when told to"""

    def __init__(self, start: datetime = datetime(2025, 3, 1, 9, 0, 0)):
        self._now = start
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float = 0, **kwargs):
        delta = timedelta(seconds=seconds, **kwargs)
        self._now += delta
        self._monotonic += delta.total_seconds()


class ChannelServer:
    """Records outbound calls and replays queued responses"""

    def __init__(self):
        self.requests = []
        self.responses = []
        self.default = (200, {"success": True}, {})

    def queue(self, status: int, body=None, headers=None):
        self.responses.append((status, body if body is not None else {}, headers or {}))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body, headers = self.responses.pop(0) if self.responses else self.default
        return httpx.Response(status, json=body, headers=headers)

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def ids(clock):
    return IdGenerator(clock)


@pytest.fixture
def snapshots():
    return InMemoryBookingSnapshotReader()


@pytest.fixture
def channel_server():
    return ChannelServer()


@pytest.fixture
def container(session_factory, clock, ids, snapshots, channel_server, tmp_path):
    client = httpx.AsyncClient(transport=httpx.MockTransport(channel_server.handler))
    return ServiceContainer(
        session_factory=session_factory,
        clock=clock,
        ids=ids,
        snapshots=snapshots,
        transport=HttpTransport(client),
        archive_location=str(tmp_path / "archives"),
    )


@pytest.fixture
async def running(container):
    """Container with bus workers started"""
    await container.bus.start()
    yield container
    await container.bus.stop(grace=1.0)


@pytest.fixture
def add_channel(session_factory):
    """Insert a ChannelConfiguration; generous rate limits so frozen-clock buckets never run dry"""

    def _add(hotel_id="H1", channel="booking_com", **overrides):
        values = {
            "hotel_id": hotel_id,
            "channel": channel,
            "credentials": {"username": "u", "password": "p", "access_token": "tok", "api_key": "key"},
            "requests_per_second": 100.0,
            "burst": 100,
            "enabled": True,
        }
        values.update(overrides)
        session = session_factory()
        try:
            config = ChannelConfiguration(**values)
            session.add(config)
            session.commit()
            return config.id
        finally:
            session.close()

    return _add


def bearer(role: str = "admin", sub: str = "ops-1") -> dict:
    """Authorization header for an admin API caller"""
    from ota_core.utils.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token({'sub': sub, 'role': role})}"}


@pytest.fixture
def app(container, session_factory):
    from ota_core.database import get_db
    from ota_core.main import create_app

    app = create_app(services=container, manage_schema=False)

    def _db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _db
    return app


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)
