from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional
from uuid import UUID
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from app.errors import ConflictError
from app.models import Booking, BookingStatus, BookingStatusHistory, ProviderAvailability, Recurrence
from shared.scheduling import combine


def flush(db: Session) -> None:
    """Flush pending changes, turning concurrency failures into ConflictError."""
    try:
        db.flush()
    except StaleDataError as exc:
        raise ConflictError(
            "Booking was modified concurrently, reload it and retry",
            code="stale_booking",
        ) from exc
    except IntegrityError as exc:
        raise ConflictError(
            "Operation violates a uniqueness constraint",
            code="duplicate",
            details={"constraint": str(exc.orig)},
        ) from exc


def lock_provider_day(db: Session, provider_id: UUID, day: date) -> None:
    """Serialize writers of one provider calendar day until the transaction ends.

    PostgreSQL only; SQLite already serializes writers on the database file.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    db.execute(
        text("SELECT pg_advisory_xact_lock(:provider_key, :day_key)"),
        {"provider_key": provider_id.int & 0x7FFFFFFF, "day_key": day.toordinal()},
    )


def save_booking(db: Session, booking: Booking) -> Booking:
    db.add(booking)
    flush(db)
    return booking


def save_recurrence(db: Session, recurrence: Recurrence) -> Recurrence:
    db.add(recurrence)
    flush(db)
    return recurrence


def append_history(
    db: Session,
    booking: Booking,
    *,
    old_status: Optional[str],
    new_status: str,
    changed_by: Optional[UUID] = None,
    reason: Optional[str] = None,
    comment: Optional[str] = None,
    details: Optional[dict] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> BookingStatusHistory:
    entry = BookingStatusHistory(
        booking_id=booking.id,
        old_status=old_status,
        new_status=new_status,
        changed_by=changed_by,
        reason=reason,
        comment=comment,
        details=details or {},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.add(entry)
    return entry


def get_booking(db: Session, booking_id: UUID, *, for_update: bool = False) -> Optional[Booking]:
    query = db.query(Booking).filter(Booking.id == booking_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_recurrence(
    db: Session,
    recurrence_id: UUID,
    *,
    for_update: bool = False,
    skip_locked: bool = False,
) -> Optional[Recurrence]:
    query = db.query(Recurrence).filter(Recurrence.id == recurrence_id)
    if for_update:
        query = query.with_for_update(skip_locked=skip_locked)
    return query.first()


def find_booking_by_quote(db: Session, quote_id: UUID) -> Optional[Booking]:
    return db.query(Booking).filter(Booking.quote_id == quote_id).first()


def find_active_by_provider_and_date(
    db: Session,
    provider_id: UUID,
    day: date,
    exclude_booking_id: Optional[UUID] = None,
) -> List[Booking]:
    query = (
        db.query(Booking)
        .filter(Booking.provider_id == provider_id)
        .filter(Booking.scheduled_date == day)
        .filter(Booking.status.in_(BookingStatus.ACTIVE))
    )
    if exclude_booking_id:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.order_by(Booking.scheduled_time.asc()).all()


def list_availability(db: Session, provider_id: UUID, day_of_week: int) -> List[ProviderAvailability]:
    return (
        db.query(ProviderAvailability)
        .filter(ProviderAvailability.provider_id == provider_id)
        .filter(ProviderAvailability.day_of_week == day_of_week)
        .filter(ProviderAvailability.is_active.is_(True))
        .order_by(ProviderAvailability.start_time.asc())
        .all()
    )


def find_recurrences_due_for_generation(db: Session, today: date, horizon_days: int) -> List[UUID]:
    """Ids of active recurrences whose next occurrence falls before ``today + horizon_days``.

    The horizon end is exclusive: a weekly pointer advanced from today lands
    exactly on it and must wait for the next day's sweep.
    """
    horizon = today + timedelta(days=horizon_days)
    rows = (
        db.query(Recurrence.id)
        .filter(Recurrence.is_active.is_(True))
        .filter(Recurrence.next_occurrence.isnot(None))
        .filter(Recurrence.next_occurrence < horizon)
        .filter((Recurrence.end_date.is_(None)) | (Recurrence.end_date >= today))
        .order_by(Recurrence.next_occurrence.asc())
        .all()
    )
    return [row.id for row in rows]


def find_series_bookings(
    db: Session,
    recurrence_id: UUID,
    *,
    statuses: Optional[Iterable[str]] = None,
    from_date: Optional[date] = None,
    until: Optional[date] = None,
) -> List[Booking]:
    query = db.query(Booking).filter(Booking.recurrence_id == recurrence_id)
    if statuses:
        query = query.filter(Booking.status.in_(list(statuses)))
    if from_date:
        query = query.filter(Booking.scheduled_date >= from_date)
    if until:
        query = query.filter(Booking.scheduled_date <= until)
    return query.order_by(Booking.scheduled_date.asc(), Booking.scheduled_time.asc()).all()


_REMINDER_FLAGS = {24: "reminder_sent_24h", 2: "reminder_sent_2h"}


def find_bookings_needing_reminder(
    db: Session,
    now: datetime,
    hours: int,
    *,
    tz_name: str = "UTC",
) -> List[Booking]:
    """Scheduled or confirmed bookings starting within ``hours`` whose reminder is still unsent."""
    flag = getattr(Booking, _REMINDER_FLAGS[hours])
    limit = now + timedelta(hours=hours)
    candidates = (
        db.query(Booking)
        .filter(Booking.status.in_(BookingStatus.MODIFIABLE))
        .filter(flag.is_(False))
        .filter(Booking.scheduled_date >= (now - timedelta(days=1)).date())
        .filter(Booking.scheduled_date <= (limit + timedelta(days=1)).date())
        .order_by(Booking.scheduled_date.asc(), Booking.scheduled_time.asc())
        .all()
    )
    # the date filter is widened by a day to absorb zone offsets, the exact cut happens here
    return [
        booking
        for booking in candidates
        if now < combine(booking.scheduled_date, booking.scheduled_time, tz_name) <= limit
    ]


def reminder_flag_name(hours: int) -> str:
    return _REMINDER_FLAGS[hours]


def list_history(db: Session, booking_id: UUID) -> List[BookingStatusHistory]:
    return (
        db.query(BookingStatusHistory)
        .filter(BookingStatusHistory.booking_id == booking_id)
        .order_by(BookingStatusHistory.id.asc())
        .all()
    )
