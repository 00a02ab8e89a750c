"""Shared fixtures: isolated in-memory store, controllable clock, recording sink."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from app.core.security import Actor
from app.models.base import Base, create_store_engine, generate_uuid
from app.models.patient import Patient
from app.models.user import UserRole
from app.services.change_feed import ChangeFeed
from app.services.notification_dispatcher import NotificationDispatcher, NotificationSink
from app.services.store import WorkflowStore
from app.services.workflow import WorkflowRegistry


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 1, 8, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSink(NotificationSink):
    name = "recording"

    def __init__(self):
        self.requests = []

    def deliver(self, request):
        self.requests.append(request)

    @property
    def events(self):
        return [r.event for r in self.requests]

    def of(self, event):
        return [r for r in self.requests if r.event == event]


class FailingSink(NotificationSink):
    name = "failing"

    def deliver(self, request):
        raise ConnectionError("push service unreachable")


@pytest.fixture()
def session_factory():
    engine = create_store_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def store(session_factory):
    return WorkflowStore(session_factory)


@pytest.fixture()
def feed(session_factory):
    feed = ChangeFeed()
    feed.attach(session_factory)
    yield feed
    feed.detach(session_factory)


@pytest.fixture()
def dispatcher(sink):
    return NotificationDispatcher([sink])


@pytest.fixture()
def registry(store, dispatcher, feed, clock):
    return WorkflowRegistry(store, dispatcher, feed=feed, clock=clock)


@pytest.fixture()
def make_patient(session_factory):
    def _make(has_asthma=False, room_number="412", identifier=None):
        session = session_factory()
        try:
            patient = Patient(
                id=generate_uuid(),
                anonymous_identifier=identifier or f"PT-{generate_uuid()[:4].upper()}",
                room_number=room_number,
                has_asthma=has_asthma,
            )
            session.add(patient)
            session.commit()
            return patient
        finally:
            session.close()
    return _make


@pytest.fixture()
def patient(make_patient):
    return make_patient()


@pytest.fixture()
def nurse():
    return Actor(id="nurse-1", role=UserRole.NURSE)


@pytest.fixture()
def resident():
    return Actor(id="resident-1", role=UserRole.RESIDENT)


@pytest.fixture()
def attending():
    return Actor(id="attending-1", role=UserRole.ATTENDING)


@pytest.fixture()
def charge_nurse():
    return Actor(id="charge-1", role=UserRole.CHARGE_NURSE)
