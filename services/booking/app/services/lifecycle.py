"""Entry point of the booking lifecycle.

Each public operation runs as one unit of work on the orchestrator's session:
validation, the status transition and its history row are committed together,
and the collected notifications are dispatched only after the commit.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Callable, List, Optional, Protocol, Tuple
from uuid import UUID

import structlog
from sqlalchemy.orm import Session

from app import crud
from app.errors import ConflictError, LifecycleError, NotFoundError
from app.models import Booking, BookingStatus, BookingStatusHistory, Recurrence
from app.schemas.booking_schema import Actor, QuoteSnapshot
from app.services.availability import AvailabilitySource
from app.services.booking_factory import create_scheduled_booking
from app.services.conflicts import ConflictDetector
from app.services.notifications import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_CREATED,
    BOOKING_REMINDER,
    BOOKING_RESCHEDULED,
    BOOKING_STARTED,
    NotificationSink,
    Outbox,
    dispatch_notifications,
)
from app.services.recurrence import GenerationReport, RecurrenceEngine, SeriesCancellation
from app.services.status_machine import BookingStatusMachine, utcnow
from app.services.validators import (
    validate_amount,
    validate_duration,
    validate_future_slot,
    validate_quote,
    validate_reschedule,
)
from shared.cancellation import CancellationDecision
from shared.config import LifecycleSettings
from shared.logging import operation_context
from shared.scheduling import combine, ensure_timezone

logger = structlog.get_logger(__name__)


class FinancialCollaborator(Protocol):
    def apply_cancellation_penalty(self, booking_id: UUID, amount: Decimal, penalty_percentage: int) -> None:
        ...


@dataclass
class OperationResult:
    booking: Optional[Booking] = None
    bookings: List[Booking] = field(default_factory=list)
    history: Optional[BookingStatusHistory] = None
    decision: Optional[CancellationDecision] = None
    recurrence: Optional[Recurrence] = None
    skipped: List[Tuple[date, str]] = field(default_factory=list)
    outbox: Outbox = field(default_factory=Outbox)


def _slot_of(day: date, at: time) -> str:
    return f"{day.isoformat()} {at:%H:%M}"


class BookingLifecycleOrchestrator:
    def __init__(
        self,
        db: Session,
        *,
        settings: Optional[LifecycleSettings] = None,
        availability: Optional[AvailabilitySource] = None,
        sink: Optional[NotificationSink] = None,
        financial: Optional[FinancialCollaborator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.settings = settings or LifecycleSettings()
        self.clock = clock or utcnow
        self.sink = sink
        self.financial = financial
        self.detector = ConflictDetector(db, self.settings, availability)
        self.machine = BookingStatusMachine(db, self.settings, self.clock)
        self.recurrences = RecurrenceEngine(db, settings=self.settings, availability=availability, clock=self.clock)

    # -- plumbing ---------------------------------------------------------

    def _execute(self, operation: str, work: Callable[[OperationResult], None], **context) -> OperationResult:
        result = OperationResult()
        with operation_context(operation, **context):
            try:
                work(result)
                crud.flush(self.db)
                self.db.commit()
            except LifecycleError as exc:
                self.db.rollback()
                logger.info("operation_rejected", error=exc.code, message=exc.message)
                raise
            except Exception:
                self.db.rollback()
                logger.exception("operation_failed")
                raise
            dispatch_notifications(result.outbox, self.sink)
        return result

    def _load_booking(self, booking_id: UUID, *, for_update: bool = True) -> Booking:
        booking = crud.get_booking(self.db, booking_id, for_update=for_update)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": str(booking_id)})
        return booking

    def _load_recurrence(self, recurrence_id: UUID) -> Recurrence:
        recurrence = crud.get_recurrence(self.db, recurrence_id, for_update=True)
        if recurrence is None:
            raise NotFoundError("Recurrence not found", details={"recurrence_id": str(recurrence_id)})
        return recurrence

    def _local_slot(self, moment: datetime) -> Tuple[date, time]:
        local = ensure_timezone(moment, self.settings.timezone)
        return local.date(), local.time().replace(second=0, microsecond=0)

    def _transition(self, operation: str, event_type: str, booking_id: UUID, target: str, actor: Actor, **kwargs):
        def work(result: OperationResult) -> None:
            booking = self._load_booking(booking_id)
            transition = self.machine.transition(booking, target, actor, **kwargs)
            result.booking = booking
            result.history = transition.history
            result.decision = transition.decision
            extra = {}
            if kwargs.get("reason"):
                extra["reason"] = kwargs["reason"]
            result.outbox.add_for_booking(event_type, booking, **extra)

        return self._execute(operation, work, booking_id=booking_id)

    # -- bookings ---------------------------------------------------------

    def create_from_quote(self, quote: QuoteSnapshot, actor: Actor) -> OperationResult:
        """Turn an accepted quote into a ``scheduled`` booking.

        Raises:
            ValidationError: quote not accepted, proposed date in the past,
                provider inactive, invalid duration or amount.
            ExpiredError: the quote expired.
            ConflictError: the quote is already booked or the slot is taken.
        """

        def work(result: OperationResult) -> None:
            validate_quote(quote, self.clock())
            duration = validate_duration(quote.proposed_duration, self.settings)
            amount = validate_amount(quote.amount, self.settings)
            if crud.find_booking_by_quote(self.db, quote.quote_id):
                raise ConflictError(
                    "A booking already exists for this quote",
                    code="quote_already_booked",
                    details={"quote_id": str(quote.quote_id)},
                )

            day, at = self._local_slot(quote.proposed_start)
            booking, history = create_scheduled_booking(
                self.db,
                self.detector,
                self.machine,
                actor,
                provider_id=quote.provider_id,
                scheduled_date=day,
                scheduled_time=at,
                duration=duration,
                reason="Created from quote",
                details={"quote_id": str(quote.quote_id)},
                client_id=quote.client_id,
                quote_id=quote.quote_id,
                service_request_id=quote.service_request_id,
                service_category_id=quote.service_category_id,
                address=quote.address,
                city=quote.city,
                postal_code=quote.postal_code,
                amount=amount,
            )
            result.booking = booking
            result.history = history
            result.outbox.add_for_booking(BOOKING_CREATED, booking)

        return self._execute("create_from_quote", work, quote_id=quote.quote_id)

    def create_recurrent(
        self,
        quote: QuoteSnapshot,
        frequency: str,
        start_date: date,
        actor: Actor,
        *,
        end_date: Optional[date] = None,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
    ) -> OperationResult:
        def work(result: OperationResult) -> None:
            validate_quote(quote, self.clock())
            recurrence, booking = self.recurrences.create(
                quote,
                frequency,
                start_date,
                actor,
                end_date=end_date,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                outbox=result.outbox,
            )
            result.recurrence = recurrence
            result.booking = booking

        return self._execute("create_recurrent", work, quote_id=quote.quote_id, frequency=frequency)

    def confirm(self, booking_id: UUID, actor: Actor, comment: Optional[str] = None) -> OperationResult:
        return self._transition("confirm", BOOKING_CONFIRMED, booking_id, BookingStatus.CONFIRMED, actor, comment=comment)

    def start(self, booking_id: UUID, actor: Actor) -> OperationResult:
        return self._transition("start", BOOKING_STARTED, booking_id, BookingStatus.IN_PROGRESS, actor)

    def complete(self, booking_id: UUID, actor: Actor, notes: Optional[str] = None) -> OperationResult:
        return self._transition("complete", BOOKING_COMPLETED, booking_id, BookingStatus.COMPLETED, actor, notes=notes)

    def cancel(
        self,
        booking_id: UUID,
        actor: Actor,
        reason: str,
        comment: Optional[str] = None,
    ) -> OperationResult:
        """Cancel a booking and report the penalty tier that applied.

        The penalty, when there is one, is handed to the financial collaborator
        after the commit.
        """
        result = self._transition(
            "cancel", BOOKING_CANCELLED, booking_id, BookingStatus.CANCELLED, actor, reason=reason, comment=comment
        )
        decision = result.decision
        if decision is not None and decision.has_penalty and self.financial is not None:
            try:
                self.financial.apply_cancellation_penalty(result.booking.id, result.booking.amount, decision.penalty_percentage)
            except Exception:
                logger.exception(
                    "cancellation_penalty_failed",
                    booking_id=str(result.booking.id),
                    penalty_percentage=decision.penalty_percentage,
                )
        return result

    def reschedule(
        self,
        booking_id: UUID,
        new_date: date,
        new_time: time,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> OperationResult:
        def work(result: OperationResult) -> None:
            booking = self._load_booking(booking_id)
            validate_reschedule(booking, new_date, new_time, self.clock(), self.settings.timezone)

            crud.lock_provider_day(self.db, booking.provider_id, new_date)
            self.detector.check(booking.provider_id, new_date, new_time, booking.duration, exclude_booking_id=booking.id)

            old_slot = _slot_of(booking.scheduled_date, booking.scheduled_time)
            booking.scheduled_date = new_date
            booking.scheduled_time = new_time
            booking.reminder_sent_24h = False
            booking.reminder_sent_2h = False
            crud.flush(self.db)

            new_slot = _slot_of(new_date, new_time)
            result.booking = booking
            result.history = self.machine.record(
                booking,
                actor,
                old_status=booking.status,
                new_status=booking.status,
                reason=reason or "Rescheduled",
                details={"old_date": old_slot, "new_date": new_slot},
            )
            result.outbox.add_for_booking(BOOKING_RESCHEDULED, booking, old_date=old_slot, new_date=new_slot)
            logger.info("booking_rescheduled", old_date=old_slot, new_date=new_slot)

        return self._execute("reschedule", work, booking_id=booking_id)

    def clone(self, source_id: UUID, new_date: date, new_time: time, actor: Actor) -> OperationResult:
        """Book the same service again on another slot."""

        def work(result: OperationResult) -> None:
            source = self._load_booking(source_id, for_update=False)
            validate_future_slot(new_date, new_time, self.clock(), self.settings.timezone)
            booking, history = create_scheduled_booking(
                self.db,
                self.detector,
                self.machine,
                actor,
                provider_id=source.provider_id,
                scheduled_date=new_date,
                scheduled_time=new_time,
                duration=source.duration,
                reason="Cloned",
                details={"cloned_from": str(source.id)},
                client_id=source.client_id,
                service_request_id=source.service_request_id,
                service_category_id=source.service_category_id,
                address=source.address,
                city=source.city,
                postal_code=source.postal_code,
                amount=source.amount,
            )
            result.booking = booking
            result.history = history
            result.outbox.add_for_booking(BOOKING_CREATED, booking, cloned_from=str(source.id))

        return self._execute("clone", work, booking_id=source_id)

    def cancellation_preview(self, booking_id: UUID) -> CancellationDecision:
        booking = self._load_booking(booking_id, for_update=False)
        return self.machine.cancellation_decision(booking)

    def history(self, booking_id: UUID) -> List[BookingStatusHistory]:
        self._load_booking(booking_id, for_update=False)
        return crud.list_history(self.db, booking_id)

    def send_due_reminders(self) -> OperationResult:
        """Emit the 2h and 24h reminders that are due, each at most once per booking."""

        def work(result: OperationResult) -> None:
            now = ensure_timezone(self.clock())
            for hours in (2, 24):
                for booking in crud.find_bookings_needing_reminder(self.db, now, hours, tz_name=self.settings.timezone):
                    setattr(booking, crud.reminder_flag_name(hours), True)
                    if hours == 2:
                        # a booking this close no longer needs the day-before reminder
                        booking.reminder_sent_24h = True
                    start = combine(booking.scheduled_date, booking.scheduled_time, self.settings.timezone)
                    result.bookings.append(booking)
                    result.outbox.add_for_booking(
                        BOOKING_REMINDER,
                        booking,
                        hours_before=hours,
                        starts_at=start.isoformat(),
                    )
                crud.flush(self.db)

        result = self._execute("send_due_reminders", work)
        logger.info("reminders_sent", count=len(result.bookings))
        return result

    # -- recurrences ------------------------------------------------------

    def generate_occurrences(self, recurrence_id: UUID, actor: Actor, count: int = 1) -> OperationResult:
        def work(result: OperationResult) -> None:
            recurrence = self._load_recurrence(recurrence_id)
            report: GenerationReport = self.recurrences.generate_next_occurrences(
                recurrence, count, actor=actor, outbox=result.outbox
            )
            result.recurrence = recurrence
            result.bookings = report.created
            result.skipped = report.skipped

        return self._execute("generate_occurrences", work, recurrence_id=recurrence_id)

    def _series_result(self, result: OperationResult, series: SeriesCancellation) -> None:
        result.recurrence = series.recurrence
        result.bookings = series.cancelled

    def suspend_recurrence(self, recurrence_id: UUID, until: date, actor: Actor) -> OperationResult:
        def work(result: OperationResult) -> None:
            recurrence = self._load_recurrence(recurrence_id)
            self._series_result(result, self.recurrences.suspend(recurrence, until, actor, outbox=result.outbox))

        return self._execute("suspend_recurrence", work, recurrence_id=recurrence_id)

    def reactivate_recurrence(self, recurrence_id: UUID, actor: Actor) -> OperationResult:
        def work(result: OperationResult) -> None:
            recurrence = self._load_recurrence(recurrence_id)
            result.recurrence = self.recurrences.reactivate(recurrence, actor)

        return self._execute("reactivate_recurrence", work, recurrence_id=recurrence_id)

    def cancel_recurrence(self, recurrence_id: UUID, reason: str, actor: Actor) -> OperationResult:
        def work(result: OperationResult) -> None:
            recurrence = self._load_recurrence(recurrence_id)
            self._series_result(result, self.recurrences.cancel(recurrence, reason, actor, outbox=result.outbox))

        return self._execute("cancel_recurrence", work, recurrence_id=recurrence_id)

    def next_booking(self, recurrence_id: UUID) -> Optional[Booking]:
        recurrence = crud.get_recurrence(self.db, recurrence_id)
        if recurrence is None:
            raise NotFoundError("Recurrence not found", details={"recurrence_id": str(recurrence_id)})
        return self.recurrences.next_booking(recurrence)
