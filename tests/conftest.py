"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any package import so the
cached settings, the engine and the app all see them.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'evolution_ingest_test.db')}"
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["ENV"] = "development"
# outbound integrations stay disabled unless a test injects a client
for _name in ("EVOLUTION_API_BASE_URL", "EVOLUTION_API_KEY", "AUTOMATION_URL", "SUPERMEMORY_API_KEY"):
    os.environ.pop(_name, None)

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from evolution_ingest.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from evolution_ingest.models import Conversation, Instance, Message
from evolution_ingest.storage import Base, SessionLocal, engine, utc_now_iso

TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
TEST_ADMIN_KEY = os.environ["ADMIN_API_KEY"]


@pytest.fixture(scope="function")
def db():
    """Fresh schema and an open session for each test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    """Create test client with fresh database for each test."""
    from evolution_ingest.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_instance(db):
    def _make(**overrides) -> Instance:
        fields = {
            "user_id": "user-1",
            "instance_name": "tenant_1",
            "instance_status": "connected",
            "instance_token": "instance-token",
            "phone_number": "33600000000",
            "created_at": utc_now_iso(),
        }
        fields.update(overrides)
        instance = Instance(**fields)
        db.add(instance)
        db.commit()
        return instance

    return _make


@pytest.fixture
def make_conversation(db):
    def _make(instance: Instance, contact_phone: str, **overrides) -> Conversation:
        fields = {
            "user_id": instance.user_id,
            "instance_id": instance.id,
            "contact_phone": contact_phone,
            "contact_name": None,
            "unread_count": 0,
            "created_at": utc_now_iso(),
        }
        fields.update(overrides)
        conversation = Conversation(**fields)
        db.add(conversation)
        db.commit()
        return conversation

    return _make


@pytest.fixture
def make_message(db):
    def _make(conversation: Conversation, external_id: str, **overrides) -> Message:
        fields = {
            "conversation_id": conversation.id,
            "instance_id": conversation.instance_id,
            "external_id": external_id,
            "sender_phone": conversation.contact_phone,
            "receiver_phone": "33600000000",
            "direction": "incoming",
            "content": "hello",
            "timestamp": "2025-01-15T10:00:00Z",
            "created_at": utc_now_iso(),
        }
        fields.update(overrides)
        message = Message(**fields)
        db.add(message)
        db.commit()
        return message

    return _make
