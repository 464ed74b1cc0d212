"""
Shared fixtures: an in-memory database per test, a controllable clock, a
recording SMS provider and seeded locations, consent and staff.
"""
import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SMS_PROVIDER"] = "console"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["TWILIO_AUTH_TOKEN"] = "test-auth-token"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["PUBLIC_BASE_URL"] = "https://queue.example.com"

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import waitline.models  # noqa: F401  registers every table
from waitline.api.app import app
from waitline.api.dependencies import get_db, get_provider
from waitline.lib.db import Base
from waitline.lib.jwt import create_access_token
from waitline.models.consent_versions import ConsentVersion
from waitline.models.employees import EmployeeProfile, EmployeeRole
from waitline.models.locations import Location, Queue
from waitline.services.outbox_service import OutboxService
from waitline.services.queue_engine import JoinRequest, QueueEngine
from waitline.services.sms_provider import SendResult, SmsProvider


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSmsProvider(SmsProvider):
    """Records every send; `failures` makes the next N sends fail."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.failures = 0
        self.error = "provider unavailable"

    def send(self, to: str, body: str) -> SendResult:
        if self.failures > 0:
            self.failures -= 1
            return SendResult(ok=False, error=self.error)
        self.sent.append((to, body))
        return SendResult(ok=True, provider_message_id=f"SM{len(self.sent):032d}")

    def bodies_to(self, phone: str) -> list[str]:
        return [body for to, body in self.sent if to == phone]


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    # Minute-aligned so rate limit windows are predictable
    return FrozenClock(datetime(2026, 3, 2, 15, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider():
    return RecordingSmsProvider()


@pytest.fixture
def outbox(db_session, provider, clock):
    return OutboxService(db_session, provider=provider, clock=clock)


@pytest.fixture
def queue_engine(db_session, outbox, clock):
    return QueueEngine(db_session, outbox=outbox, clock=clock)


@pytest.fixture
def location(db_session):
    location = Location(airport_code="ATL", code="concourse-a", display_name="Concourse A")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture
def queue(db_session, location):
    queue = Queue(location_id=location.id)
    db_session.add(queue)
    db_session.commit()
    return queue


@pytest.fixture
def other_location(db_session):
    location = Location(airport_code="ATL", code="concourse-b", display_name="Concourse B")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture
def other_queue(db_session, other_location):
    queue = Queue(location_id=other_location.id)
    db_session.add(queue)
    db_session.commit()
    return queue


@pytest.fixture
def consent(db_session):
    consent = ConsentVersion(key="queue_join_consent", version=1)
    db_session.add(consent)
    db_session.commit()
    return consent


@pytest.fixture
def make_join(location, queue, consent):
    """Factory for join forms at the seeded location."""

    def _make(
        phone: str = "+15551230001",
        customer_type: str = "paying",
        name: str = "Jamie",
        **overrides,
    ) -> JoinRequest:
        fields = dict(
            airport_code=location.airport_code,
            location_code=location.code,
            full_name=name,
            phone=phone,
            customer_type=customer_type,
            consent=True,
            consent_key=consent.key,
        )
        fields.update(overrides)
        return JoinRequest(**fields)

    return _make


@pytest.fixture
def employee(db_session):
    profile = EmployeeProfile(user_id=uuid4(), role=EmployeeRole.EMPLOYEE)
    db_session.add(profile)
    db_session.commit()
    return profile


@pytest.fixture
def staff_headers(employee):
    token = create_access_token(str(employee.user_id), employee.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(session_factory, provider):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
