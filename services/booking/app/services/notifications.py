"""Notification outbox.

Operations collect notifications while their transaction is open; they are
handed to a sink only after the commit. Delivery failures are logged, the
committed state is never rolled back because of them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple
from uuid import UUID

import structlog

from app.models import Booking
from app.schemas.booking_schema import BookingOut
from shared.messaging import EventPublisher

logger = structlog.get_logger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_STARTED = "booking.started"
BOOKING_COMPLETED = "booking.completed"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_RESCHEDULED = "booking.rescheduled"
BOOKING_REMINDER = "booking.reminder"
RECURRENCE_CREATED = "recurrence.created"


class NotificationDeliveryError(RuntimeError):
    pass


@dataclass(frozen=True)
class Notification:
    event_type: str
    payload: Dict[str, Any]
    recipients: Tuple[UUID, ...] = ()


class NotificationSink(Protocol):
    def send(self, notification: Notification) -> None:
        ...


def booking_payload(booking: Booking, **extra: Any) -> Dict[str, Any]:
    payload = BookingOut.model_validate(booking).model_dump(mode="json")
    payload.update(extra)
    return payload


@dataclass
class Outbox:
    pending: List[Notification] = field(default_factory=list)
    dispatched: List[Notification] = field(default_factory=list)
    failed: List[Notification] = field(default_factory=list)

    def add(self, event_type: str, payload: Dict[str, Any], recipients=()) -> Notification:
        notification = Notification(event_type=event_type, payload=payload, recipients=tuple(recipients))
        self.pending.append(notification)
        return notification

    def add_for_booking(self, event_type: str, booking: Booking, **extra: Any) -> Notification:
        return self.add(
            event_type,
            booking_payload(booking, **extra),
            recipients=(booking.client_id, booking.provider_id),
        )

    def __iter__(self) -> Iterator[Notification]:
        return iter(self.pending)

    def __len__(self) -> int:
        return len(self.pending)


class StreamNotificationSink:
    """Publishes notifications on the Redis event stream."""

    def __init__(self, publisher: EventPublisher):
        self.publisher = publisher

    def send(self, notification: Notification) -> None:
        published = self.publisher.publish(
            notification.event_type,
            notification.payload,
            metadata={"recipients": [str(r) for r in notification.recipients]},
        )
        if not published:
            raise NotificationDeliveryError(
                f"event {notification.event_type} was not published on {self.publisher.stream_name}"
            )


def dispatch_notifications(outbox: Outbox, sink: Optional[NotificationSink]) -> int:
    """Flush ``outbox`` into ``sink``; returns the number of delivered notifications."""
    if sink is None or not outbox.pending:
        return 0

    pending, outbox.pending = outbox.pending, []
    delivered = 0
    for notification in pending:
        try:
            sink.send(notification)
        except Exception:
            logger.exception("notification_dispatch_failed", event_type=notification.event_type)
            outbox.failed.append(notification)
            continue
        outbox.dispatched.append(notification)
        delivered += 1
    return delivered
