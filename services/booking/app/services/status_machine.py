"""Booking status transitions and their guards.

Every transition mutates the booking and appends exactly one history row in
the caller's session. Committing is left to the caller so both land together.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Optional

import structlog
from sqlalchemy.orm import Session

from app import crud
from app.errors import CancellationBlockedError, InvalidTransitionError
from app.models import Booking, BookingStatus, BookingStatusHistory
from app.schemas.booking_schema import Actor
from shared.cancellation import CancellationDecision, evaluate_cancellation_at
from shared.config import LifecycleSettings
from shared.scheduling import combine, ensure_timezone

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    BookingStatus.SCHEDULED: frozenset({BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


@dataclass
class TransitionResult:
    booking: Booking
    history: BookingStatusHistory
    decision: Optional[CancellationDecision] = None


class BookingStatusMachine:
    def __init__(
        self,
        db: Session,
        settings: Optional[LifecycleSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.settings = settings or LifecycleSettings()
        self.clock = clock or utcnow

    def scheduled_start(self, booking: Booking) -> datetime:
        return combine(booking.scheduled_date, booking.scheduled_time, self.settings.timezone)

    def cancellation_decision(self, booking: Booking) -> CancellationDecision:
        return evaluate_cancellation_at(
            self.scheduled_start(booking),
            self.clock(),
            block_hours=self.settings.cancellation_block_hours,
        )

    def record(
        self,
        booking: Booking,
        actor: Actor,
        *,
        old_status: Optional[str],
        new_status: str,
        reason: Optional[str] = None,
        comment: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> BookingStatusHistory:
        """Append a history row without touching the booking itself."""
        return crud.append_history(
            self.db,
            booking,
            old_status=old_status,
            new_status=new_status,
            changed_by=actor.user_id,
            reason=reason,
            comment=comment,
            details=details,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
        )

    def _guard_start(self, booking: Booking, now: datetime) -> None:
        start = self.scheduled_start(booking)
        earliest = start - timedelta(minutes=self.settings.check_in_early_minutes)
        latest = start + timedelta(minutes=self.settings.check_in_late_minutes)
        if now < earliest:
            raise InvalidTransitionError(
                f"Too early to start: check-in opens {self.settings.check_in_early_minutes} minutes before the appointment",
                code="too_early",
                details={"scheduled_start": start.isoformat()},
            )
        if now > latest:
            raise InvalidTransitionError(
                f"Too late to start: check-in closed {self.settings.check_in_late_minutes} minutes after the appointment",
                code="too_late",
                details={"scheduled_start": start.isoformat()},
            )

    def _guard_complete(self, booking: Booking, now: datetime) -> None:
        if booking.actual_start_time is None:
            raise InvalidTransitionError("The service was never started", code="not_started")
        elapsed = now - ensure_timezone(booking.actual_start_time)
        if elapsed < timedelta(minutes=self.settings.min_service_minutes):
            raise InvalidTransitionError(
                f"The service must last at least {self.settings.min_service_minutes} minutes",
                code="too_short",
                details={"elapsed_seconds": int(elapsed.total_seconds())},
            )

    def transition(
        self,
        booking: Booking,
        target: str,
        actor: Actor,
        *,
        reason: Optional[str] = None,
        comment: Optional[str] = None,
        notes: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> TransitionResult:
        """Move ``booking`` to ``target``.

        Raises:
            InvalidTransitionError: the pair is not allowed or a guard failed.
            CancellationBlockedError: cancelling inside the blocked window while
                the hard block is enabled.
        """
        current = booking.status
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot move a booking from '{current}' to '{target}'",
                details={"current_status": current, "requested_status": target},
            )

        now = self.clock()
        metadata = dict(details or {})
        decision = None

        if target == BookingStatus.CONFIRMED:
            booking.confirmed_at = now
        elif target == BookingStatus.IN_PROGRESS:
            self._guard_start(booking, now)
            booking.actual_start_time = now
        elif target == BookingStatus.COMPLETED:
            self._guard_complete(booking, now)
            booking.actual_end_time = now
            booking.completed_at = now
            if notes:
                booking.completion_notes = notes
            metadata["actual_duration"] = booking.actual_duration
        elif target == BookingStatus.CANCELLED:
            decision = self.cancellation_decision(booking)
            if not decision.can_cancel and self.settings.cancellation_hard_block:
                raise CancellationBlockedError(decision.message, details=decision.as_dict())
            booking.cancellation_reason = reason or "Cancelled"
            booking.cancelled_by = actor.user_id
            booking.cancelled_at = now
            metadata["cancellation"] = decision.as_dict()

        booking.status = target
        crud.flush(self.db)
        history = self.record(
            booking,
            actor,
            old_status=current,
            new_status=target,
            reason=reason,
            comment=comment,
            details=metadata,
        )
        logger.info(
            "booking_status_changed",
            booking_id=str(booking.id),
            old_status=current,
            new_status=target,
            changed_by=str(actor.user_id) if actor.user_id else None,
        )
        return TransitionResult(booking=booking, history=history, decision=decision)
