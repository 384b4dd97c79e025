from datetime import date, time
from typing import Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.orm import Session

from app import crud
from app.models import Booking, BookingStatus, BookingStatusHistory
from app.schemas.booking_schema import Actor
from app.services.conflicts import ConflictDetector
from app.services.status_machine import BookingStatusMachine

logger = structlog.get_logger(__name__)


def create_scheduled_booking(
    db: Session,
    detector: ConflictDetector,
    machine: BookingStatusMachine,
    actor: Actor,
    *,
    provider_id: UUID,
    scheduled_date: date,
    scheduled_time: time,
    duration: int,
    reason: Optional[str] = None,
    details: Optional[dict] = None,
    **fields,
) -> Tuple[Booking, BookingStatusHistory]:
    """Insert a ``scheduled`` booking and its creation history row.

    The provider/day lock is taken before the conflict check so the check and
    the insert happen under the same lock.
    """
    crud.lock_provider_day(db, provider_id, scheduled_date)
    detector.check(provider_id, scheduled_date, scheduled_time, duration)

    booking = Booking(
        provider_id=provider_id,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        duration=duration,
        status=BookingStatus.SCHEDULED,
        **fields,
    )
    crud.save_booking(db, booking)
    history = machine.record(
        booking,
        actor,
        old_status=None,
        new_status=BookingStatus.SCHEDULED,
        reason=reason,
        details=details,
    )
    logger.info(
        "booking_created",
        booking_id=str(booking.id),
        reference_number=booking.reference_number,
        provider_id=str(provider_id),
        scheduled_date=scheduled_date.isoformat(),
    )
    return booking, history
