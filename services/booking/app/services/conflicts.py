from datetime import date, time
from typing import List, Optional
from uuid import UUID

import structlog
from sqlalchemy.orm import Session

from app import crud
from app.errors import CapacityExceededError, ConflictError, UnavailableError
from app.models import Booking
from app.services.availability import AvailabilitySource, ScheduleAvailabilitySource
from shared.config import LifecycleSettings
from shared.scheduling import TimeWindow, interval, overlaps

logger = structlog.get_logger(__name__)


class ConflictDetector:
    """Checks a candidate slot against the provider's calendar.

    Read-only: it never mutates bookings. Callers that go on to write must hold
    the provider/day lock (``crud.lock_provider_day``) for the check to stay
    valid until commit.

    Declared open hours are read from the provider's schedule rows unless
    another ``availability`` source is given.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[LifecycleSettings] = None,
        availability: Optional[AvailabilitySource] = None,
    ):
        self.db = db
        self.settings = settings or LifecycleSettings()
        self.availability = availability or ScheduleAvailabilitySource(db, self.settings.timezone)

    def window_of(self, booking: Booking) -> TimeWindow:
        return interval(booking.scheduled_date, booking.scheduled_time, booking.duration, self.settings.timezone)

    def _overlapping(self, active: List[Booking], candidate: TimeWindow) -> List[Booking]:
        return [booking for booking in active if overlaps(self.window_of(booking), candidate)]

    def find_conflicts(
        self,
        provider_id: UUID,
        day: date,
        at: time,
        duration: int,
        exclude_booking_id: Optional[UUID] = None,
    ) -> List[Booking]:
        candidate = interval(day, at, duration, self.settings.timezone)
        active = crud.find_active_by_provider_and_date(self.db, provider_id, day, exclude_booking_id)
        return self._overlapping(active, candidate)

    def check(
        self,
        provider_id: UUID,
        day: date,
        at: time,
        duration: int,
        exclude_booking_id: Optional[UUID] = None,
    ) -> TimeWindow:
        """Raise if the slot cannot be booked, return its window otherwise.

        Raises:
            ConflictError: the slot overlaps an active booking of the provider.
            UnavailableError: the slot is outside the provider's declared hours.
            CapacityExceededError: the provider already reached the daily cap.
        """
        candidate = interval(day, at, duration, self.settings.timezone)
        active = crud.find_active_by_provider_and_date(self.db, provider_id, day, exclude_booking_id)

        colliding = self._overlapping(active, candidate)
        if colliding:
            first = colliding[0]
            logger.info(
                "booking_conflict_detected",
                provider_id=str(provider_id),
                conflicting_booking_id=str(first.id),
                scheduled_date=day.isoformat(),
            )
            raise ConflictError(
                f"Provider already has booking {first.reference_number} "
                f"at {first.scheduled_time:%H:%M} on {first.scheduled_date.isoformat()}",
                details={
                    "conflicts": [
                        {
                            "booking_id": str(booking.id),
                            "start_time": window.start.isoformat(),
                            "end_time": window.end.isoformat(),
                        }
                        for booking, window in ((b, self.window_of(b)) for b in colliding)
                    ]
                },
            )

        if not self.availability.is_within_declared_availability(
            provider_id, candidate.start, duration
        ):
            raise UnavailableError(
                "The slot is outside the provider's declared availability",
                details={"start_time": candidate.start.isoformat(), "duration": duration},
            )

        if len(active) >= self.settings.max_daily_bookings:
            raise CapacityExceededError(
                f"Provider reached the limit of {self.settings.max_daily_bookings} bookings on {day.isoformat()}",
                details={"active_bookings": len(active)},
            )

        return candidate
