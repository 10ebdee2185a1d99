import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WORKER_ENABLED", "false")

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import kondo_agent.models  # noqa: F401
from kondo_agent.database import Base
from kondo_agent.services import queue_service
from kondo_agent.services.conversation_service import SqlConversationRegistry, SqlCounterpartyStore
from kondo_agent.services.reply_service import ReplyGenerator
from kondo_agent.services.result import Result
from kondo_agent.services.whatsapp_service import OutboundGateway


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'kondo.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


class FakeClock:
    def __init__(self):
        self.seconds = 1000.0
        self.start = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def monotonic(self) -> float:
        return self.seconds

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.seconds - 1000.0)

    def advance(self, seconds: float) -> None:
        self.seconds += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeReplyGenerator(ReplyGenerator):
    def __init__(self, respond: Optional[Callable[[dict[str, Any]], Result[str]]] = None):
        self.respond = respond or (lambda payload: Result.success(f"Resposta para: {payload['content']}"))
        self.calls: list[dict[str, Any]] = []

    def generate(self, conversation_id, payload, history):
        self.calls.append({"conversation_id": conversation_id, "payload": payload, "history": list(history)})
        return self.respond(payload)


class FakeGateway(OutboundGateway):
    def __init__(self, respond: Optional[Callable[[str, str], Result[str]]] = None):
        self.respond = respond or (lambda address, content: Result.success(f"wamid.{len(self.sent) + 1}"))
        self.sent: list[tuple[str, str, str]] = []

    def send(self, address, kind, content):
        result = self.respond(address, content)
        if result.ok:
            self.sent.append((address, kind, content))
        return result


@pytest.fixture
def reply_generator():
    return FakeReplyGenerator()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_job(db):
    store = SqlCounterpartyStore()
    registry = SqlConversationRegistry()

    def _make_job(content: str, address: str = "5511999990000", external_id: Optional[str] = None, max_retries: int = 3):
        agency = store.create(db, address, f"Agency {address}", confidence=1.0, first_message=content)
        conversation = registry.find_or_create(db, agency.id, address)
        job, _ = queue_service.enqueue_job(
            db,
            channel_address=address,
            message_content=content,
            external_message_id=external_id or f"wamid.{content}",
            conversation_id=conversation.id,
            counterparty_id=agency.id,
            payload={"message_type": "text", "media": None},
            admission_metadata={"confidence": 1.0, "reasoning": "test", "agent_name": agency.name},
            max_retries=max_retries,
        )
        db.commit()
        return job

    return _make_job


@pytest.fixture
def make_reply_generator():
    return FakeReplyGenerator


@pytest.fixture
def make_gateway():
    return FakeGateway
