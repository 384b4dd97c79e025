import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update
from structlog.testing import capture_logs

from app import crud
from app.errors import (
    CancellationBlockedError,
    ConflictError,
    ExpiredError,
    InvalidTransitionError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from app.models import Booking, BookingStatus, ProviderAvailability
from app.schemas.booking_schema import QuoteStatus
from app.services.lifecycle import BookingLifecycleOrchestrator
from app.services.notifications import (
    Notification,
    NotificationDeliveryError,
    Outbox,
    StreamNotificationSink,
    dispatch_notifications,
)
from shared.config import LifecycleSettings

APPOINTMENT_DAY = date(2024, 6, 10)
APPOINTMENT_START = datetime(2024, 6, 10, 14, 0, tzinfo=timezone.utc)


class FailingSink:
    def send(self, notification):
        raise RuntimeError("push gateway unreachable")


@pytest.fixture
def booked(orchestrator, make_quote, actor):
    return orchestrator.create_from_quote(make_quote(), actor).booking


class TestCreateFromQuote:
    def test_round_trip(self, db, orchestrator, make_quote, actor, sink):
        quote = make_quote()

        result = orchestrator.create_from_quote(quote, actor)

        db.expire_all()
        stored = crud.get_booking(db, result.booking.id)
        assert stored.client_id == quote.client_id
        assert stored.provider_id == quote.provider_id
        assert stored.quote_id == quote.quote_id
        assert stored.scheduled_date == APPOINTMENT_DAY
        assert stored.scheduled_time == time(14, 0)
        assert stored.duration == 60
        assert stored.amount == Decimal("80.00")
        assert stored.status == BookingStatus.SCHEDULED
        assert stored.reference_number.startswith("BK-")
        assert stored.city == "Lyon"
        assert sink.event_types == ["booking.created"]

    def test_creation_history_row(self, orchestrator, make_quote, actor):
        result = orchestrator.create_from_quote(make_quote(), actor)

        history = orchestrator.history(result.booking.id)
        assert len(history) == 1
        assert history[0].old_status is None
        assert history[0].new_status == BookingStatus.SCHEDULED
        assert history[0].changed_by == actor.user_id
        assert history[0].user_agent == "pytest"

    def test_provider_calendar_scenario(self, orchestrator, make_quote, actor):
        orchestrator.create_from_quote(make_quote(), actor)

        with pytest.raises(ConflictError):
            orchestrator.create_from_quote(
                make_quote(start=APPOINTMENT_START + timedelta(minutes=30), duration=30), actor
            )

        result = orchestrator.create_from_quote(make_quote(start=APPOINTMENT_START + timedelta(hours=1), duration=30), actor)
        assert result.booking.scheduled_time == time(15, 0)

    def test_quote_booked_only_once(self, orchestrator, make_quote, actor):
        quote = make_quote()
        orchestrator.create_from_quote(quote, actor)

        with pytest.raises(ConflictError) as exc_info:
            orchestrator.create_from_quote(quote, actor)

        assert exc_info.value.code == "quote_already_booked"

    def test_expired_quote(self, orchestrator, make_quote, actor, clock):
        with pytest.raises(ExpiredError) as exc_info:
            orchestrator.create_from_quote(make_quote(expires_at=clock() - timedelta(minutes=1)), actor)
        assert exc_info.value.http_status == 410

    @pytest.mark.parametrize(
        "overrides,code",
        [
            ({"status": QuoteStatus.PENDING}, "quote_not_accepted"),
            ({"provider_active": False}, "provider_inactive"),
            ({"provider_approved": False}, "provider_inactive"),
            ({"start": datetime(2024, 6, 8, 10, 0, tzinfo=timezone.utc)}, "date_in_past"),
        ],
    )
    def test_rejected_quotes(self, orchestrator, make_quote, actor, overrides, code):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.create_from_quote(make_quote(**overrides), actor)
        assert exc_info.value.code == code

    @pytest.mark.parametrize("duration", [0, 20, 50, 495])
    def test_invalid_duration(self, orchestrator, make_quote, actor, duration):
        with pytest.raises(ValidationError):
            orchestrator.create_from_quote(make_quote(duration=duration), actor)

    @pytest.mark.parametrize("amount", ["0", "-5", "10000.01"])
    def test_invalid_amount(self, orchestrator, make_quote, actor, amount):
        with pytest.raises(ValidationError):
            orchestrator.create_from_quote(make_quote(amount=amount), actor)

    def test_amount_upper_bound_is_inclusive(self, orchestrator, make_quote, actor):
        result = orchestrator.create_from_quote(make_quote(amount="10000", duration=480), actor)
        assert result.booking.amount == Decimal("10000")

    def test_declared_availability_is_enforced(self, db, orchestrator, make_quote, actor, provider_id):
        db.add(ProviderAvailability(provider_id=provider_id, day_of_week=0, start_time=time(8, 0), end_time=time(12, 0)))
        db.commit()

        with pytest.raises(UnavailableError):
            orchestrator.create_from_quote(make_quote(), actor)

        assert db.query(Booking).count() == 0

    def test_failed_creation_leaves_nothing_behind(self, db, orchestrator, make_quote, actor, sink):
        orchestrator.create_from_quote(make_quote(), actor)
        with pytest.raises(ConflictError):
            orchestrator.create_from_quote(make_quote(), actor)

        assert db.query(Booking).count() == 1
        assert sink.event_types == ["booking.created"]


class TestTransitions:
    def test_full_lifecycle(self, orchestrator, booked, actor, clock, sink):
        orchestrator.confirm(booked.id, actor, comment="See you tomorrow")
        clock.set(APPOINTMENT_START - timedelta(minutes=10))
        orchestrator.start(booked.id, actor)
        clock.set(APPOINTMENT_START + timedelta(minutes=50))
        result = orchestrator.complete(booked.id, actor, notes="All good")

        assert result.booking.status == BookingStatus.COMPLETED
        assert result.booking.actual_duration == 60
        history = orchestrator.history(booked.id)
        assert [h.new_status for h in history] == [
            BookingStatus.SCHEDULED,
            BookingStatus.CONFIRMED,
            BookingStatus.IN_PROGRESS,
            BookingStatus.COMPLETED,
        ]
        assert history[1].comment == "See you tomorrow"
        assert sink.event_types == [
            "booking.created",
            "booking.confirmed",
            "booking.started",
            "booking.completed",
        ]

    def test_confirm_sets_milestone(self, orchestrator, booked, actor, clock):
        result = orchestrator.confirm(booked.id, actor)
        assert result.booking.confirmed_at == clock()

    def test_start_too_early(self, orchestrator, booked, actor):
        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator.start(booked.id, actor)
        assert exc_info.value.code == "too_early"

    def test_complete_requires_start(self, orchestrator, booked, actor):
        with pytest.raises(InvalidTransitionError):
            orchestrator.complete(booked.id, actor)

    def test_unknown_booking(self, orchestrator, actor):
        with pytest.raises(NotFoundError) as exc_info:
            orchestrator.confirm(uuid.uuid4(), actor)
        assert exc_info.value.http_status == 404
        body = exc_info.value.to_dict()
        assert body["success"] is False
        assert body["error"] == "not_found"

    def test_stale_update_is_a_conflict(self, db, booked):
        db.execute(
            update(Booking)
            .where(Booking.id == booked.id)
            .values(version=Booking.version + 1)
            .execution_options(synchronize_session=False)
        )
        booked.completion_notes = "edited elsewhere"

        with pytest.raises(ConflictError) as exc_info:
            crud.flush(db)

        assert exc_info.value.code == "stale_booking"
        db.rollback()


class TestCancel:
    def test_penalty_is_handed_to_financial_collaborator(self, db, sink, clock, make_quote, actor):
        financial = MagicMock()
        orchestrator = BookingLifecycleOrchestrator(db, sink=sink, clock=clock, financial=financial)
        booking = orchestrator.create_from_quote(make_quote(), actor).booking

        result = orchestrator.cancel(booking.id, actor, reason="Changed plans")

        assert result.decision.penalty_percentage == 25
        assert result.booking.cancellation_reason == "Changed plans"
        financial.apply_cancellation_penalty.assert_called_once_with(booking.id, Decimal("80.00"), 25)
        assert result.history.details["cancellation"]["has_penalty"] is True
        assert sink.event_types[-1] == "booking.cancelled"

    def test_free_cancellation(self, db, sink, clock, make_quote, actor):
        financial = MagicMock()
        orchestrator = BookingLifecycleOrchestrator(db, sink=sink, clock=clock, financial=financial)
        booking = orchestrator.create_from_quote(
            make_quote(start=APPOINTMENT_START + timedelta(days=2)), actor
        ).booking

        result = orchestrator.cancel(booking.id, actor, reason="No longer needed")

        assert result.decision.has_penalty is False
        financial.apply_cancellation_penalty.assert_not_called()

    def test_penalty_failure_does_not_undo_cancellation(self, db, sink, clock, make_quote, actor):
        financial = MagicMock()
        financial.apply_cancellation_penalty.side_effect = RuntimeError("billing down")
        orchestrator = BookingLifecycleOrchestrator(db, sink=sink, clock=clock, financial=financial)
        booking = orchestrator.create_from_quote(make_quote(), actor).booking

        with capture_logs() as logs:
            orchestrator.cancel(booking.id, actor, reason="Changed plans")

        db.expire_all()
        assert crud.get_booking(db, booking.id).status == BookingStatus.CANCELLED
        assert "cancellation_penalty_failed" in [entry["event"] for entry in logs]

    def test_hard_block_rolls_back(self, db, sink, clock, make_quote, actor):
        orchestrator = BookingLifecycleOrchestrator(
            db, settings=LifecycleSettings(cancellation_hard_block=True), sink=sink, clock=clock
        )
        booking = orchestrator.create_from_quote(make_quote(), actor).booking
        clock.set(APPOINTMENT_START - timedelta(hours=1))

        with pytest.raises(CancellationBlockedError):
            orchestrator.cancel(booking.id, actor, reason="Too late")

        db.expire_all()
        assert crud.get_booking(db, booking.id).status == BookingStatus.SCHEDULED
        assert len(orchestrator.history(booking.id)) == 1

    def test_cancel_twice(self, orchestrator, booked, actor):
        orchestrator.cancel(booked.id, actor, reason="first")
        with pytest.raises(InvalidTransitionError):
            orchestrator.cancel(booked.id, actor, reason="second")

    def test_preview_does_not_mutate(self, orchestrator, booked, clock):
        clock.set(APPOINTMENT_START - timedelta(hours=10))

        decision = orchestrator.cancellation_preview(booked.id)

        assert decision.penalty_percentage == 50
        assert booked.status == BookingStatus.SCHEDULED
        assert len(orchestrator.history(booked.id)) == 1


class TestReschedule:
    def test_moves_slot_and_records_history(self, db, orchestrator, booked, actor, sink):
        booked.reminder_sent_24h = True
        db.commit()

        result = orchestrator.reschedule(booked.id, date(2024, 6, 11), time(10, 0), actor, reason="Client request")

        assert result.booking.scheduled_date == date(2024, 6, 11)
        assert result.booking.scheduled_time == time(10, 0)
        assert result.booking.reminder_sent_24h is False
        assert result.history.details == {"old_date": "2024-06-10 14:00", "new_date": "2024-06-11 10:00"}
        assert result.history.old_status == result.history.new_status == BookingStatus.SCHEDULED
        assert sink.sent[-1].event_type == "booking.rescheduled"
        assert sink.sent[-1].payload["old_date"] == "2024-06-10 14:00"

    def test_can_overlap_its_own_slot(self, orchestrator, booked, actor):
        result = orchestrator.reschedule(booked.id, APPOINTMENT_DAY, time(14, 30), actor)
        assert result.booking.scheduled_time == time(14, 30)

    def test_conflict_with_other_booking(self, orchestrator, make_quote, booked, actor):
        orchestrator.create_from_quote(make_quote(start=APPOINTMENT_START + timedelta(hours=2)), actor)
        with pytest.raises(ConflictError):
            orchestrator.reschedule(booked.id, APPOINTMENT_DAY, time(15, 30), actor)
        assert booked.scheduled_time == time(14, 0)

    def test_same_slot(self, orchestrator, booked, actor):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.reschedule(booked.id, APPOINTMENT_DAY, time(14, 0), actor)
        assert exc_info.value.code == "same_slot"

    def test_past_slot(self, orchestrator, booked, actor):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.reschedule(booked.id, date(2024, 6, 9), time(8, 0), actor)
        assert exc_info.value.code == "date_in_past"

    def test_cancelled_booking_cannot_move(self, orchestrator, booked, actor):
        orchestrator.cancel(booked.id, actor, reason="nope")
        with pytest.raises(InvalidTransitionError):
            orchestrator.reschedule(booked.id, date(2024, 6, 11), time(10, 0), actor)


class TestClone:
    def test_copies_service_details(self, orchestrator, booked, actor):
        result = orchestrator.clone(booked.id, date(2024, 6, 17), time(14, 0), actor)

        clone = result.booking
        assert clone.id != booked.id
        assert clone.status == BookingStatus.SCHEDULED
        assert clone.quote_id is None
        assert clone.client_id == booked.client_id
        assert clone.provider_id == booked.provider_id
        assert clone.service_request_id == booked.service_request_id
        assert clone.amount == booked.amount
        assert clone.duration == booked.duration
        assert clone.address == booked.address
        assert result.history.details == {"cloned_from": str(booked.id)}

    def test_clone_is_conflict_checked(self, orchestrator, booked, actor):
        with pytest.raises(ConflictError):
            orchestrator.clone(booked.id, APPOINTMENT_DAY, time(14, 30), actor)


class TestNotifications:
    def test_dispatch_failure_is_logged_and_committed(self, db, clock, make_quote, actor):
        orchestrator = BookingLifecycleOrchestrator(db, sink=FailingSink(), clock=clock)

        with capture_logs() as logs:
            result = orchestrator.create_from_quote(make_quote(), actor)

        assert db.query(Booking).count() == 1
        assert len(result.outbox.failed) == 1
        assert result.outbox.dispatched == []
        failures = [entry for entry in logs if entry["event"] == "notification_dispatch_failed"]
        assert failures[0]["event_type"] == "booking.created"

    def test_without_sink_notifications_stay_pending(self, db, clock, make_quote, actor):
        orchestrator = BookingLifecycleOrchestrator(db, clock=clock)
        result = orchestrator.create_from_quote(make_quote(), actor)
        assert [n.event_type for n in result.outbox] == ["booking.created"]

    def test_payload_and_recipients(self, orchestrator, booked, sink):
        notification = sink.sent[0]
        assert notification.payload["id"] == str(booked.id)
        assert notification.payload["amount"] == "80.00"
        assert set(notification.recipients) == {booked.client_id, booked.provider_id}


class TestStreamSink:
    def test_publishes_with_recipients(self):
        publisher = MagicMock()
        publisher.publish.return_value = True
        recipient = uuid.uuid4()

        StreamNotificationSink(publisher).send(Notification("booking.confirmed", {"id": "b-1"}, (recipient,)))

        publisher.publish.assert_called_once_with(
            "booking.confirmed", {"id": "b-1"}, metadata={"recipients": [str(recipient)]}
        )

    def test_unpublished_event_is_a_delivery_error(self):
        publisher = MagicMock()
        publisher.publish.return_value = False
        publisher.stream_name = "booking-events"

        with pytest.raises(NotificationDeliveryError):
            StreamNotificationSink(publisher).send(Notification("booking.confirmed", {}))

    def test_dispatch_keeps_going_after_a_failure(self):
        publisher = MagicMock()
        publisher.publish.side_effect = [False, True]
        publisher.stream_name = "booking-events"
        outbox = Outbox()
        outbox.add("booking.created", {"id": "b-1"})
        outbox.add("recurrence.created", {"id": "r-1"})

        delivered = dispatch_notifications(outbox, StreamNotificationSink(publisher))

        assert delivered == 1
        assert [n.event_type for n in outbox.failed] == ["booking.created"]
        assert [n.event_type for n in outbox.dispatched] == ["recurrence.created"]
        assert len(outbox) == 0
