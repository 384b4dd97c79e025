import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, Index, Integer, Numeric, String, Time, Uuid
from app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Recurrence(Base):
    """Recurring service contract that spawns one booking per occurrence."""

    __tablename__ = "recurrences"
    __table_args__ = (
        Index("ix_recurrences_active_next", "is_active", "next_occurrence"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, nullable=False, index=True)
    provider_id = Column(Uuid, nullable=False, index=True)
    service_category_id = Column(Uuid, nullable=True)
    quote_id = Column(Uuid, nullable=True)

    frequency = Column(String(20), nullable=False)
    day_of_week = Column(Integer, nullable=True)
    day_of_month = Column(Integer, nullable=True)
    time = Column(Time, nullable=False)
    duration = Column(Integer, nullable=False)

    address = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    postal_code = Column(String(10), nullable=True)
    amount = Column(Numeric(10, 2, asdecimal=True), nullable=False)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    next_occurrence = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def is_past_end(self, day) -> bool:
        return self.end_date is not None and day > self.end_date

    def __repr__(self) -> str:
        state = "active" if self.is_active else "inactive"
        return f"<Recurrence {self.id} {self.frequency} next={self.next_occurrence} {state}>"
