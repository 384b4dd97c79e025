import uuid

from sqlalchemy import Boolean, Column, Index, Integer, Time, Uuid
from app.core.database import Base


class ProviderAvailability(Base):
    """Declared weekly open hours of a provider (0 = Monday)."""

    __tablename__ = "provider_availabilities"
    __table_args__ = (
        Index("ix_provider_availabilities_provider_day", "provider_id", "day_of_week"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
