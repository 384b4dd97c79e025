import os
import sys
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

SERVICE_DIR = Path(__file__).resolve().parents[1]
ROOT_DIR = SERVICE_DIR.parent.parent

service_path = str(SERVICE_DIR)
shared_path = str(ROOT_DIR / "services")
for path in (service_path, shared_path):
    if path in sys.path:
        sys.path.remove(path)
    sys.path.insert(0, path)

for module_name in list(sys.modules):
    if module_name == "app" or module_name.startswith("app."):
        sys.modules.pop(module_name)

os.environ.setdefault("BOOKING_DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENT_STREAM", "test-stream")
os.environ["REDIS_URL"] = ""

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.database import Base  # noqa: E402
from app.models import Booking, BookingStatus  # noqa: E402
from app.schemas.booking_schema import Actor, QuoteSnapshot, QuoteStatus  # noqa: E402
from app.services.lifecycle import BookingLifecycleOrchestrator  # noqa: E402
from shared.config import LifecycleSettings  # noqa: E402

# Sunday; the reference appointment is the next day at 14:00
NOW = datetime(2024, 6, 9, 12, 0, tzinfo=timezone.utc)
APPOINTMENT_DAY = date(2024, 6, 10)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingSink:
    def __init__(self):
        self.sent = []

    def send(self, notification) -> None:
        self.sent.append(notification)

    @property
    def event_types(self):
        return [n.event_type for n in self.sent]


class FailingSink:
    def send(self, notification) -> None:
        raise RuntimeError("push gateway unreachable")


@pytest.fixture
def engine():
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
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def settings():
    return LifecycleSettings()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def provider_id():
    return uuid.uuid4()


@pytest.fixture
def client_id():
    return uuid.uuid4()


@pytest.fixture
def actor(client_id):
    return Actor(user_id=client_id, ip_address="203.0.113.7", user_agent="pytest")


@pytest.fixture
def orchestrator(db, settings, sink, clock):
    return BookingLifecycleOrchestrator(db, settings=settings, sink=sink, clock=clock)


@pytest.fixture
def make_quote(provider_id, client_id):
    def factory(start=None, duration=60, amount="80.00", **overrides):
        values = dict(
            quote_id=uuid.uuid4(),
            status=QuoteStatus.ACCEPTED,
            expires_at=NOW + timedelta(days=5),
            client_id=client_id,
            provider_id=provider_id,
            service_request_id=uuid.uuid4(),
            service_category_id=uuid.uuid4(),
            proposed_start=start or datetime.combine(APPOINTMENT_DAY, time(14, 0), tzinfo=timezone.utc),
            proposed_duration=duration,
            amount=Decimal(amount),
            address="12 rue des Lilas",
            city="Lyon",
            postal_code="69003",
        )
        values.update(overrides)
        return QuoteSnapshot(**values)

    return factory


@pytest.fixture
def add_booking(db, provider_id):
    """Insert a booking directly, bypassing the lifecycle rules."""

    def factory(day=APPOINTMENT_DAY, at=time(14, 0), duration=60, status=BookingStatus.SCHEDULED, **fields):
        booking = Booking(
            client_id=fields.pop("client_id", uuid.uuid4()),
            provider_id=fields.pop("provider_id", provider_id),
            scheduled_date=day,
            scheduled_time=at,
            duration=duration,
            amount=fields.pop("amount", Decimal("50.00")),
            status=status,
            **fields,
        )
        db.add(booking)
        db.commit()
        return booking

    return factory
