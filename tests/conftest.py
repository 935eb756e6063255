"""Shared fixtures: in-memory SQLite store, recording broker and push sink."""

import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["RATE_LIMIT_PER_SEC"] = "100000"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["API_KEY"] = "test-api-key"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
import pytest_asyncio
from sqlalchemy.orm import sessionmaker

from chatcore.core.config import Settings
from chatcore.core.database import make_engine
from chatcore.core.pubsub import DEFAULT_PUBLISH_OPTIONS, InMemoryPubSub
from chatcore.models import chat as chat_model
from chatcore.models.base import Base
from chatcore.services.push import PushSink
from chatcore.services.runtime import ChatRuntime


class RecordingPubSub(InMemoryPubSub):
    """In-process broker that remembers every publish."""

    def __init__(self):
        super().__init__()
        self.published = []

    async def publish(self, topic, payload, options=DEFAULT_PUBLISH_OPTIONS):
        self.published.append((topic, payload, options))
        await super().publish(topic, payload, options)

    def events(self, topic):
        return [payload for t, payload, _ in self.published if t == topic]

    def clear(self):
        self.published.clear()


class RecordingPushSink(PushSink):
    def __init__(self):
        self.sent = []

    async def send(self, notification):
        self.sent.append(notification)


@pytest.fixture
def engine():
    engine = make_engine("sqlite:///:memory:")
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
def broker():
    return RecordingPubSub()


@pytest.fixture
def push_sink():
    return RecordingPushSink()


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL="sqlite:///:memory:",
        REDIS_URL=None,
        FANOUT_LANES=2,
        PUBLISH_READY_TIMEOUT_SEC=0.2,
        BROKER_CONNECT_TIMEOUT_SEC=1.0,
        PUSH_WEBHOOK_URL=None,
    )


@pytest.fixture
def runtime(test_settings, session_factory, broker, push_sink):
    return ChatRuntime(test_settings, session_factory, broker=broker, push_sink=push_sink)


@pytest_asyncio.fixture
async def started(runtime):
    await runtime.start()
    yield runtime
    await runtime.stop()


def add_profile(db, user_id, username=None, full_name=None, avatar_url=None):
    db.add(
        chat_model.UserProfile(
            user_id=user_id, username=username, full_name=full_name, avatar_url=avatar_url
        )
    )
    db.commit()


def add_contact(db, owner_id, contact_user_id, contact_name=None):
    db.add(
        chat_model.Contact(
            owner_id=owner_id, contact_user_id=contact_user_id, contact_name=contact_name
        )
    )
    db.commit()


def text(value):
    return chat_model.MessagePayload(type="text", text=value)
