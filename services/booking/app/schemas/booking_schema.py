from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, field_validator


class QuoteStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Actor(BaseModel):
    """Who triggers an operation. ``user_id`` is empty for system transitions."""

    user_id: Optional[UUID] = Field(default=None, description="Acting user, None for the scheduler")
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def system(cls) -> "Actor":
        return cls()


class QuoteSnapshot(BaseModel):
    """Accepted quote as seen by the booking service when it is turned into a booking."""

    quote_id: UUID = Field(description="Originating quote")
    status: str = Field(description="Quote status, must be 'accepted'", examples=[QuoteStatus.ACCEPTED])
    expires_at: Optional[datetime] = Field(default=None, description="Validity limit of the quote")
    client_id: UUID
    provider_id: UUID
    provider_active: bool = Field(default=True)
    provider_approved: bool = Field(default=True)
    service_request_id: Optional[UUID] = None
    service_category_id: Optional[UUID] = None
    proposed_start: datetime = Field(description="Proposed start, ISO 8601. Naive values are read as UTC.")
    proposed_duration: int = Field(description="Proposed duration in minutes", examples=[60])
    amount: Decimal = Field(description="Quoted amount", examples=["120.00"])
    address: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=10)

    @field_validator("proposed_start", "expires_at")
    @classmethod
    def ensure_timezone_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class BookingOut(BaseModel):
    id: UUID
    reference_number: str
    client_id: UUID
    provider_id: UUID
    quote_id: Optional[UUID] = None
    recurrence_id: Optional[UUID] = None
    scheduled_date: date
    scheduled_time: time
    duration: int
    amount: Decimal
    status: str
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    cancellation_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

