from typing import Any

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from mailrelay.main import app
from mailrelay.core.database import build_session_maker, get_db, init_models
from mailrelay.core.broker import broker
from mailrelay.models import Employee
from mailrelay.repositories.outbox import OutboxRepository


class FakeBroker:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_sends = False

    def send(self, destination, payload: bytes, correlation_id: str) -> None:
        if self.fail_sends:
            raise RuntimeError("Channel is not initialized")
        self.sent.append({
            "destination": destination,
            "payload": payload,
            "correlation_id": correlation_id
        })


class RecordingSender:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.errors: list[Exception] = []

    async def send(self, recipient: str, template_vars: dict) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.calls.append((recipient, template_vars))


class RecordingAckHandle:
    def __init__(self) -> None:
        self.acks = 0
        self.nacks: list[bool] = []

    async def ack(self) -> None:
        self.acks += 1

    async def nack(self, requeue: bool = True) -> None:
        self.nacks.append(requeue)


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'mailrelay.db'}",
        poolclass=NullPool,
        echo=False
    )
    await init_models(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def test_async_session_maker(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture
async def db_session(test_async_session_maker):
    async with test_async_session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(test_async_session_maker):
    async def override_get_db():
        async with test_async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def mock_broker(monkeypatch):
    sent_messages = []

    def mock_send(destination, payload: bytes, correlation_id: str):
        sent_messages.append({
            "destination": destination,
            "payload": payload,
            "correlation_id": correlation_id
        })

    monkeypatch.setattr(broker, "send", mock_send)

    yield sent_messages


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def recording_sender():
    return RecordingSender()


@pytest_asyncio.fixture
async def employee(db_session):
    employee = Employee(
        name="Ada Lovelace",
        email="ada@example.com",
        position_name="Engineer",
        job_level_name="Senior",
        department_name="Research"
    )
    db_session.add(employee)
    await db_session.commit()
    await db_session.refresh(employee)
    return employee


@pytest.fixture
def load_record(test_async_session_maker):
    async def _load(message_id: str):
        async with test_async_session_maker() as session:
            return await OutboxRepository(session).get_by_message_id(message_id)

    return _load
