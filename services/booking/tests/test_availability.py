import uuid
from datetime import datetime, time, timezone

import httpx
import pytest
from structlog.testing import capture_logs

from app.models import ProviderAvailability
from app.services.availability import HttpAvailabilitySource, ScheduleAvailabilitySource

MONDAY_AFTERNOON = datetime(2024, 6, 10, 14, 0, tzinfo=timezone.utc)


class TestScheduleAvailability:
    @pytest.fixture
    def working_monday(self, db, provider_id):
        db.add(ProviderAvailability(provider_id=provider_id, day_of_week=0, start_time=time(8, 0), end_time=time(18, 0)))
        db.commit()

    def test_no_declared_schedule_is_open(self, db, provider_id):
        source = ScheduleAvailabilitySource(db)
        assert source.is_within_declared_availability(provider_id, MONDAY_AFTERNOON, 60) is True

    def test_slot_inside_block(self, db, provider_id, working_monday):
        source = ScheduleAvailabilitySource(db)
        assert source.is_within_declared_availability(provider_id, MONDAY_AFTERNOON, 60) is True

    def test_slot_ending_at_closing_time(self, db, provider_id, working_monday):
        source = ScheduleAvailabilitySource(db)
        start = datetime(2024, 6, 10, 17, 0, tzinfo=timezone.utc)
        assert source.is_within_declared_availability(provider_id, start, 60) is True

    def test_slot_running_past_closing_time(self, db, provider_id, working_monday):
        source = ScheduleAvailabilitySource(db)
        start = datetime(2024, 6, 10, 17, 30, tzinfo=timezone.utc)
        assert source.is_within_declared_availability(provider_id, start, 60) is False

    def test_undeclared_weekday_is_closed(self, db, provider_id, working_monday):
        source = ScheduleAvailabilitySource(db)
        tuesday = datetime(2024, 6, 11, 10, 0, tzinfo=timezone.utc)
        assert source.is_within_declared_availability(provider_id, tuesday, 60) is False

    def test_local_time_is_used(self, db, provider_id, working_monday):
        source = ScheduleAvailabilitySource(db, "Europe/Paris")
        # 06:30 UTC is 08:30 in Paris during summer time
        start = datetime(2024, 6, 10, 6, 30, tzinfo=timezone.utc)
        assert source.is_within_declared_availability(provider_id, start, 60) is True


def http_source(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpAvailabilitySource("http://planning.local/api/", client=client, auth_token="secret")


class TestHttpAvailability:
    def test_available(self):
        provider_id = uuid.uuid4()
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json={"available": True})

        source = http_source(handler)

        assert source.is_within_declared_availability(provider_id, MONDAY_AFTERNOON, 90) is True
        request = seen["request"]
        assert request.url.path == f"/api/providers/{provider_id}/availability/check"
        assert request.url.params["duration"] == "90"
        assert request.url.params["start"] == "2024-06-10T14:00:00+00:00"
        assert request.headers["Authorization"] == "Bearer secret"

    def test_unavailable(self):
        source = http_source(lambda request: httpx.Response(200, json={"available": False}))
        assert source.is_within_declared_availability(uuid.uuid4(), MONDAY_AFTERNOON, 60) is False

    def test_server_error_fails_closed(self):
        source = http_source(lambda request: httpx.Response(500, text="boom"))

        with capture_logs() as logs:
            assert source.is_within_declared_availability(uuid.uuid4(), MONDAY_AFTERNOON, 60) is False

        assert logs[0]["event"] == "availability_check_failed"
        assert logs[0]["status_code"] == 500

    def test_network_error_fails_closed(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        source = http_source(handler)

        with capture_logs() as logs:
            assert source.is_within_declared_availability(uuid.uuid4(), MONDAY_AFTERNOON, 60) is False

        assert logs[0]["event"] == "availability_check_failed"

    def test_invalid_payload_fails_closed(self):
        source = http_source(lambda request: httpx.Response(200, text="not json"))

        with capture_logs() as logs:
            assert source.is_within_declared_availability(uuid.uuid4(), MONDAY_AFTERNOON, 60) is False

        assert logs[0]["event"] == "availability_check_invalid_payload"

    @pytest.mark.parametrize("body", [[], [{"available": True}], "yes", 42])
    def test_non_object_payload_fails_closed(self, body):
        source = http_source(lambda request: httpx.Response(200, json=body))

        with capture_logs() as logs:
            assert source.is_within_declared_availability(uuid.uuid4(), MONDAY_AFTERNOON, 60) is False

        assert logs[0]["event"] == "availability_check_invalid_payload"
