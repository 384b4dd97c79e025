import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from app.core.database import Base
from shared.scheduling import ensure_timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_reference_number() -> str:
    """Human readable booking reference, ``BK-YYYYMMDD-XXXXX``."""
    return f"BK-{_utcnow():%Y%m%d}-{uuid.uuid4().hex[:5].upper()}"


class BookingStatus:
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = {SCHEDULED, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELLED}
    # statuses that occupy the provider's calendar
    ACTIVE = {SCHEDULED, CONFIRMED, IN_PROGRESS}
    MODIFIABLE = {SCHEDULED, CONFIRMED}
    TERMINAL = {COMPLETED, CANCELLED}


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_provider_date_status", "provider_id", "scheduled_date", "status"),
        Index("ix_bookings_client_status", "client_id", "status"),
        Index("ix_bookings_recurrence_date", "recurrence_id", "scheduled_date"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    reference_number = Column(String(32), nullable=False, unique=True, default=generate_reference_number)

    client_id = Column(Uuid, nullable=False)
    provider_id = Column(Uuid, nullable=False)
    quote_id = Column(Uuid, nullable=True, unique=True)
    service_request_id = Column(Uuid, nullable=True)
    service_category_id = Column(Uuid, nullable=True)
    recurrence_id = Column(Uuid, ForeignKey("recurrences.id", ondelete="SET NULL"), nullable=True)

    address = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    postal_code = Column(String(10), nullable=True)

    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Time, nullable=False)
    duration = Column(Integer, nullable=False)
    actual_start_time = Column(DateTime(timezone=True), nullable=True)
    actual_end_time = Column(DateTime(timezone=True), nullable=True)

    amount = Column(Numeric(10, 2, asdecimal=True), nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.SCHEDULED)

    completion_notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(Uuid, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    reminder_sent_24h = Column(Boolean, nullable=False, default=False)
    reminder_sent_2h = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_id is not None

    @property
    def actual_duration(self):
        if not self.actual_start_time or not self.actual_end_time:
            return None
        elapsed = ensure_timezone(self.actual_end_time) - ensure_timezone(self.actual_start_time)
        return int(round(elapsed.total_seconds() / 60))

    def __repr__(self) -> str:
        return f"<Booking {self.reference_number} {self.status} {self.scheduled_date} {self.scheduled_time}>"


class BookingStatusHistory(Base):
    __tablename__ = "booking_status_history"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    changed_by = Column(Uuid, nullable=True)
    reason = Column(Text, nullable=True)
    comment = Column(Text, nullable=True)
    details = Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ImmutableHistoryError(RuntimeError):
    """Raised when code tries to rewrite the audit trail."""


@event.listens_for(BookingStatusHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ImmutableHistoryError(f"booking status history row {target.id} is append-only")


@event.listens_for(BookingStatusHistory, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise ImmutableHistoryError(f"booking status history row {target.id} cannot be deleted")
