import os
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["COORDINATION_BACKEND"] = "memory"

from app.main import app
from app.api.v1.dependencies import get_clock, get_store
from app.api.v1.endpoints import sync as sync_endpoints
from app.core.clock import Clock
from app.core.coordination import MemoryCoordinationStore
from app.core.database import Base, get_db
from app.models.chat import ConversationType
from app.schemas.sync import DeviceKey, pending_operation_adapter
from app.services.client_state_service import ClientStateService
from app.services.conflict_service import ConflictResolutionService
from app.services.message_log import MessageLog
from app.services.offline_queue_service import OfflineQueueService
from app.services.operation_processor import OperationProcessor
from app.services.sync_service import SyncService

# Test database
SQLALCHEMY_TEST_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class ManualClock(Clock):
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 12, 0, 0)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return MemoryCoordinationStore(clock)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    yield db
    db.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def device_key():
    return DeviceKey("test-tenant-id", "test-user-id", "device-1")


@pytest.fixture
def message_log(db, clock):
    return MessageLog(db, clock)


@pytest.fixture
def queue(store, clock):
    return OfflineQueueService(store, clock)


@pytest.fixture
def client_states(store, clock):
    return ClientStateService(store, clock)


@pytest.fixture
def conflicts(message_log, store, client_states, clock):
    return ConflictResolutionService(message_log, store, client_states, clock=clock)


@pytest.fixture
def sync_service(message_log, store, client_states, clock):
    return SyncService(message_log, store, client_states, clock)


@pytest.fixture
def processor(message_log, queue, conflicts, client_states, clock):
    return OperationProcessor(message_log, queue, conflicts, client_states, clock)


@pytest.fixture
def conversation(message_log, device_key):
    """Create a test conversation the test user belongs to."""
    return message_log.create_conversation(
        device_key.tenant_id,
        name="Test Conversation",
        type=ConversationType.GROUP,
        member_ids=[device_key.user_id, "other-user-id"],
        conversation_id="test-conversation-id",
    )


@pytest.fixture
def make_operation(clock, device_key):
    """Build a pending operation of any type, created now and valid for an hour by default."""
    counter = {"n": 0}

    def factory(type: str, ttl: timedelta = timedelta(hours=1), op_id: str = None, **payload):
        counter["n"] += 1
        now = clock.now()
        return pending_operation_adapter.validate_python({
            "id": op_id or f"op-{counter['n']}",
            "type": type,
            "device_id": device_key.device_id,
            "timestamp": now,
            "ttl": now + ttl,
            "payload": payload,
        })

    return factory


@pytest.fixture
def dispatched(monkeypatch):
    """Record queue hand-offs to the worker instead of publishing to the broker."""
    recorder = MagicMock()
    monkeypatch.setattr(sync_endpoints, "dispatch_device_queue", recorder)
    return recorder


@pytest.fixture(scope="function")
def client(db, store, clock, dispatched):
    """Create a test client with database, store and clock overrides."""
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def sync_headers(device_key):
    return {"X-Tenant-ID": device_key.tenant_id, "X-User-ID": device_key.user_id}
