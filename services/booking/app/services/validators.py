from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation

from app.errors import ExpiredError, InvalidTransitionError, ValidationError
from app.models import Booking, BookingStatus
from app.schemas.booking_schema import QuoteSnapshot, QuoteStatus
from shared.config import LifecycleSettings
from shared.scheduling import combine, ensure_timezone


def validate_duration(duration, settings: LifecycleSettings) -> int:
    if duration is None:
        raise ValidationError("Duration is required", details={"field": "duration"})
    if duration <= 0:
        raise ValidationError("Duration must be positive", details={"field": "duration"})
    if duration < settings.min_duration_minutes:
        raise ValidationError(
            f"Minimum duration is {settings.min_duration_minutes} minutes", details={"field": "duration"}
        )
    if duration > settings.max_duration_minutes:
        raise ValidationError(
            f"Maximum duration is {settings.max_duration_minutes} minutes", details={"field": "duration"}
        )
    if duration % settings.duration_step_minutes:
        raise ValidationError(
            f"Duration must be a multiple of {settings.duration_step_minutes} minutes", details={"field": "duration"}
        )
    return duration


def validate_amount(amount, settings: LifecycleSettings) -> Decimal:
    if amount is None:
        raise ValidationError("Amount is required", details={"field": "amount"})
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError("Amount is not a number", details={"field": "amount"}) from exc
    if value <= 0:
        raise ValidationError("Amount must be positive", details={"field": "amount"})
    if value > settings.max_booking_amount:
        raise ValidationError(
            f"Amount cannot exceed {settings.max_booking_amount}", details={"field": "amount"}
        )
    return value


def validate_quote(quote: QuoteSnapshot, now: datetime) -> None:
    if quote.status != QuoteStatus.ACCEPTED:
        raise ValidationError(
            "The quote must be accepted before it can be booked",
            code="quote_not_accepted",
            details={"quote_status": quote.status},
        )
    if quote.expires_at is not None and ensure_timezone(quote.expires_at) < ensure_timezone(now):
        raise ExpiredError("The quote has expired", details={"expires_at": quote.expires_at.isoformat()})
    if ensure_timezone(quote.proposed_start) < ensure_timezone(now):
        raise ValidationError("The proposed date is in the past", code="date_in_past")
    if not quote.provider_active or not quote.provider_approved:
        raise ValidationError("The provider is no longer available", code="provider_inactive")


def validate_future_slot(day: date, at: time, now: datetime, tz_name: str = "UTC") -> datetime:
    start = combine(day, at, tz_name)
    if start <= ensure_timezone(now, tz_name):
        raise ValidationError(
            "The date and time are in the past",
            code="date_in_past",
            details={"scheduled_at": start.isoformat()},
        )
    return start


def validate_reschedule(booking: Booking, new_date: date, new_time: time, now: datetime, tz_name: str = "UTC") -> None:
    if booking.status not in BookingStatus.MODIFIABLE:
        raise InvalidTransitionError(
            f"A {booking.status} booking cannot be rescheduled",
            code="not_reschedulable",
            details={"status": booking.status},
        )
    validate_future_slot(new_date, new_time, now, tz_name)
    if new_date == booking.scheduled_date and new_time == booking.scheduled_time:
        raise ValidationError("The new slot is identical to the current one", code="same_slot")
