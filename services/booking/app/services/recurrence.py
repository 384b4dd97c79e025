"""Projection of recurring service contracts into concrete bookings.

``Recurrence.next_occurrence`` always points at the next date to materialize.
Generation books that date, then moves the pointer forward; a pointer beyond
``end_date`` deactivates the recurrence instead of generating.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session, sessionmaker

from app import crud
from app.errors import (
    CancellationBlockedError,
    ConflictError,
    ExpiredError,
    RecurrenceNotActiveError,
    ValidationError,
)
from app.models import Booking, BookingStatus, Recurrence
from app.schemas.booking_schema import Actor, QuoteSnapshot
from app.services.availability import AvailabilitySource
from app.services.booking_factory import create_scheduled_booking
from app.services.conflicts import ConflictDetector
from app.services.notifications import (
    BOOKING_CANCELLED,
    BOOKING_CREATED,
    RECURRENCE_CREATED,
    NotificationSink,
    Outbox,
    dispatch_notifications,
)
from app.services.status_machine import BookingStatusMachine, utcnow
from app.services.validators import validate_amount, validate_duration, validate_future_slot
from shared.config import LifecycleSettings, load_lifecycle_settings
from shared.recurring import get_next_occurrence, iter_occurrences, validate_recurring_pattern
from shared.scheduling import combine, ensure_timezone

logger = structlog.get_logger(__name__)

SUSPENDED_REASON = "Recurrence suspended"


@dataclass
class GenerationReport:
    recurrence: Recurrence
    created: List[Booking] = field(default_factory=list)
    skipped: List[Tuple[date, str]] = field(default_factory=list)
    deactivated: bool = False


@dataclass
class SeriesCancellation:
    recurrence: Recurrence
    cancelled: List[Booking] = field(default_factory=list)
    blocked: List[Booking] = field(default_factory=list)


@dataclass
class SweepReport:
    generated: int = 0
    skipped: int = 0
    locked: int = 0
    failed: List[str] = field(default_factory=list)


def validate_recurrence_pattern(frequency, day_of_week=None, day_of_month=None) -> None:
    try:
        validate_recurring_pattern(frequency, day_of_week, day_of_month)
    except ValueError as exc:
        raise ValidationError(str(exc), code="invalid_recurrence_pattern") from exc


class RecurrenceEngine:
    def __init__(
        self,
        db: Session,
        *,
        settings: Optional[LifecycleSettings] = None,
        availability: Optional[AvailabilitySource] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.settings = settings or LifecycleSettings()
        self.clock = clock or utcnow
        self.detector = ConflictDetector(db, self.settings, availability)
        self.machine = BookingStatusMachine(db, self.settings, self.clock)

    def now(self) -> datetime:
        return ensure_timezone(self.clock(), self.settings.timezone)

    def today(self) -> date:
        return self.now().date()

    def calculate_next_occurrence(self, recurrence: Recurrence, from_date: date) -> date:
        return get_next_occurrence(from_date, recurrence.frequency, recurrence.day_of_month)

    def _advance(self, recurrence: Recurrence, from_date: date) -> bool:
        """Move the pointer past ``from_date``; returns False when the series expired."""
        recurrence.next_occurrence = self.calculate_next_occurrence(recurrence, from_date)
        if recurrence.is_past_end(recurrence.next_occurrence):
            self._deactivate(recurrence, "end_date_reached")
            return False
        return True

    def _deactivate(self, recurrence: Recurrence, cause: str) -> None:
        recurrence.is_active = False
        logger.info("recurrence_deactivated", recurrence_id=str(recurrence.id), cause=cause)

    def _materialize(self, recurrence: Recurrence, day: date, actor: Actor, **fields) -> Booking:
        booking, _ = create_scheduled_booking(
            self.db,
            self.detector,
            self.machine,
            actor,
            provider_id=recurrence.provider_id,
            scheduled_date=day,
            scheduled_time=recurrence.time,
            duration=recurrence.duration,
            details={"recurrence_id": str(recurrence.id), "occurrence": day.isoformat()},
            client_id=recurrence.client_id,
            service_category_id=recurrence.service_category_id,
            recurrence_id=recurrence.id,
            address=recurrence.address,
            city=recurrence.city,
            postal_code=recurrence.postal_code,
            amount=recurrence.amount,
            **fields,
        )
        return booking

    def create(
        self,
        quote: QuoteSnapshot,
        frequency: str,
        start_date: date,
        actor: Actor,
        *,
        end_date: Optional[date] = None,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
        outbox: Optional[Outbox] = None,
    ) -> Tuple[Recurrence, Booking]:
        """Create a recurrence and book its first occurrence on ``start_date``.

        Raises:
            ValidationError: invalid pattern, duration, amount or dates.
            ConflictError: the first occurrence cannot be booked.
        """
        validate_recurrence_pattern(frequency, day_of_week, day_of_month)
        duration = validate_duration(quote.proposed_duration, self.settings)
        amount = validate_amount(quote.amount, self.settings)
        if end_date is not None and end_date < start_date:
            raise ValidationError("end_date cannot be before start_date", code="invalid_end_date")
        if crud.find_booking_by_quote(self.db, quote.quote_id):
            raise ConflictError("A booking already exists for this quote", code="quote_already_booked")

        at = ensure_timezone(quote.proposed_start, self.settings.timezone).time().replace(second=0, microsecond=0)
        validate_future_slot(start_date, at, self.clock(), self.settings.timezone)

        recurrence = Recurrence(
            client_id=quote.client_id,
            provider_id=quote.provider_id,
            service_category_id=quote.service_category_id,
            quote_id=quote.quote_id,
            frequency=frequency,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            time=at,
            duration=duration,
            address=quote.address,
            city=quote.city,
            postal_code=quote.postal_code,
            amount=amount,
            start_date=start_date,
            end_date=end_date,
            next_occurrence=start_date,
            is_active=True,
        )
        crud.save_recurrence(self.db, recurrence)

        booking = self._materialize(
            recurrence,
            start_date,
            actor,
            quote_id=quote.quote_id,
            service_request_id=quote.service_request_id,
        )
        self._advance(recurrence, start_date)
        crud.save_recurrence(self.db, recurrence)

        if outbox is not None:
            outbox.add_for_booking(BOOKING_CREATED, booking)
            outbox.add(
                RECURRENCE_CREATED,
                {
                    "recurrence_id": str(recurrence.id),
                    "frequency": frequency,
                    "start_date": start_date.isoformat(),
                    "end_date": end_date.isoformat() if end_date else None,
                    "first_booking_id": str(booking.id),
                },
                recipients=(recurrence.client_id, recurrence.provider_id),
            )
        logger.info("recurrence_created", recurrence_id=str(recurrence.id), frequency=frequency)
        return recurrence, booking

    def generate_next_occurrences(
        self,
        recurrence: Recurrence,
        count: int = 1,
        *,
        actor: Optional[Actor] = None,
        outbox: Optional[Outbox] = None,
    ) -> GenerationReport:
        """Book up to ``count`` occurrences starting at the pointer.

        Elapsed or conflicting targets are skipped, logged and reported; the
        pointer moves past them either way.

        Raises:
            RecurrenceNotActiveError: the recurrence is inactive.
        """
        if not recurrence.is_active:
            raise RecurrenceNotActiveError(
                "The recurrence is not active", details={"recurrence_id": str(recurrence.id)}
            )

        actor = actor or Actor.system()
        report = GenerationReport(recurrence=recurrence)
        now = self.now()

        for _ in range(count):
            target = recurrence.next_occurrence
            if target is None or recurrence.is_past_end(target):
                self._deactivate(recurrence, "end_date_reached")
                report.deactivated = True
                break

            skip_reason = None
            if combine(target, recurrence.time, self.settings.timezone) <= now:
                skip_reason = "elapsed"
            elif crud.find_series_bookings(
                self.db, recurrence.id, statuses=BookingStatus.ACTIVE, from_date=target, until=target
            ):
                skip_reason = "already_generated"
            else:
                try:
                    booking = self._materialize(recurrence, target, actor)
                except ConflictError as exc:
                    skip_reason = exc.code
                else:
                    report.created.append(booking)
                    if outbox is not None:
                        outbox.add_for_booking(BOOKING_CREATED, booking)

            if skip_reason:
                report.skipped.append((target, skip_reason))
                logger.info(
                    "recurrence_occurrence_skipped",
                    recurrence_id=str(recurrence.id),
                    occurrence=target.isoformat(),
                    reason=skip_reason,
                )

            if not self._advance(recurrence, target):
                report.deactivated = True
                break

        crud.save_recurrence(self.db, recurrence)
        return report

    def _cancel_series(
        self,
        recurrence: Recurrence,
        bookings: List[Booking],
        reason: str,
        actor: Actor,
        outbox: Optional[Outbox],
    ) -> SeriesCancellation:
        result = SeriesCancellation(recurrence=recurrence)
        for booking in bookings:
            try:
                self.machine.transition(booking, BookingStatus.CANCELLED, actor, reason=reason)
            except CancellationBlockedError:
                logger.warning(
                    "series_cancellation_skipped",
                    recurrence_id=str(recurrence.id),
                    booking_id=str(booking.id),
                )
                result.blocked.append(booking)
                continue
            result.cancelled.append(booking)
            if outbox is not None:
                outbox.add_for_booking(BOOKING_CANCELLED, booking, reason=reason)
        return result

    def suspend(
        self,
        recurrence: Recurrence,
        until: date,
        actor: Actor,
        *,
        outbox: Optional[Outbox] = None,
    ) -> SeriesCancellation:
        """Pause the series until ``until``, the date generation resumes from.

        Scheduled or confirmed bookings dated from today up to the day before
        ``until`` are cancelled.
        """
        today = self.today()
        if until <= today:
            raise ValidationError("The suspension must end in the future", code="invalid_suspension")

        bookings = crud.find_series_bookings(
            self.db,
            recurrence.id,
            statuses=BookingStatus.MODIFIABLE,
            from_date=today,
            until=until - timedelta(days=1),
        )
        result = self._cancel_series(recurrence, bookings, SUSPENDED_REASON, actor, outbox)

        recurrence.next_occurrence = until
        if recurrence.is_past_end(until):
            self._deactivate(recurrence, "suspended_past_end_date")
        crud.save_recurrence(self.db, recurrence)
        logger.info("recurrence_suspended", recurrence_id=str(recurrence.id), until=until.isoformat())
        return result

    def reactivate(self, recurrence: Recurrence, actor: Actor) -> Recurrence:
        """Resume generation from the occurrence after today, without back-filling.

        Raises:
            ExpiredError: the series already ended.
        """
        today = self.today()
        if recurrence.end_date is not None and recurrence.end_date < today:
            raise ExpiredError(
                "The recurrence has already ended", details={"end_date": recurrence.end_date.isoformat()}
            )
        following = self.calculate_next_occurrence(recurrence, today)
        if recurrence.is_past_end(following):
            raise ExpiredError(
                "No occurrence is left before the end date",
                details={"end_date": recurrence.end_date.isoformat()},
            )

        recurrence.is_active = True
        recurrence.next_occurrence = following
        crud.save_recurrence(self.db, recurrence)
        logger.info(
            "recurrence_reactivated",
            recurrence_id=str(recurrence.id),
            next_occurrence=following.isoformat(),
            changed_by=str(actor.user_id) if actor.user_id else None,
        )
        return recurrence

    def cancel(
        self,
        recurrence: Recurrence,
        reason: str,
        actor: Actor,
        *,
        outbox: Optional[Outbox] = None,
    ) -> SeriesCancellation:
        self._deactivate(recurrence, "cancelled")
        bookings = crud.find_series_bookings(
            self.db, recurrence.id, statuses=BookingStatus.MODIFIABLE, from_date=self.today()
        )
        result = self._cancel_series(recurrence, bookings, reason, actor, outbox)
        crud.save_recurrence(self.db, recurrence)
        return result

    def next_booking(self, recurrence: Recurrence) -> Optional[Booking]:
        upcoming = crud.find_series_bookings(
            self.db, recurrence.id, statuses=BookingStatus.MODIFIABLE, from_date=self.today()
        )
        return upcoming[0] if upcoming else None

    def upcoming_dates(self, recurrence: Recurrence, limit: int = 5) -> List[date]:
        """Dates the series would still generate, without touching the calendar."""
        if not recurrence.is_active or recurrence.next_occurrence is None:
            return []
        return list(
            iter_occurrences(
                recurrence.next_occurrence,
                recurrence.frequency,
                end=recurrence.end_date,
                day_of_month=recurrence.day_of_month,
                limit=limit,
            )
        )


def run_generation_sweep(
    session_factory: sessionmaker,
    *,
    settings: Optional[LifecycleSettings] = None,
    availability_factory: Optional[Callable[[Session], AvailabilitySource]] = None,
    sink: Optional[NotificationSink] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SweepReport:
    """Generate one occurrence for every recurrence due within the horizon.

    Each recurrence is handled in its own transaction under a
    ``FOR UPDATE SKIP LOCKED`` row lock; a recurrence held by a concurrent
    sweep is skipped, and one failing recurrence does not stop the others.
    """
    settings = settings or load_lifecycle_settings()
    clock = clock or utcnow
    report = SweepReport()

    today = ensure_timezone(clock(), settings.timezone).date()
    horizon = today + timedelta(days=settings.recurrence_horizon_days)
    with session_factory() as db:
        due = crud.find_recurrences_due_for_generation(db, today, settings.recurrence_horizon_days)

    logger.info("recurrence_sweep_started", due=len(due), horizon=horizon.isoformat())
    for recurrence_id in due:
        outbox = Outbox()
        with session_factory() as db:
            try:
                recurrence = crud.get_recurrence(db, recurrence_id, for_update=True, skip_locked=True)
                if recurrence is None:
                    report.locked += 1
                    continue
                # another sweep may have advanced the pointer before we got the lock
                pointer = recurrence.next_occurrence
                if not recurrence.is_active or pointer is None or pointer >= horizon:
                    continue

                availability = availability_factory(db) if availability_factory else None
                engine = RecurrenceEngine(db, settings=settings, availability=availability, clock=clock)
                result = engine.generate_next_occurrences(recurrence, 1, outbox=outbox)
                crud.flush(db)
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("recurrence_generation_failed", recurrence_id=str(recurrence_id))
                report.failed.append(str(recurrence_id))
                continue

        report.generated += len(result.created)
        report.skipped += len(result.skipped)
        dispatch_notifications(outbox, sink)

    logger.info(
        "recurrence_sweep_finished",
        generated=report.generated,
        skipped=report.skipped,
        locked=report.locked,
        failed=len(report.failed),
    )
    return report
