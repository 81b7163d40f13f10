"""Tests for the availability orchestrator."""

from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from booking_app.domain.scheduling.availability_service import AvailabilityService, default_search_window
from booking_app.domain.scheduling.errors import PreconditionFailed
from booking_app.domain.scheduling.time_calculator import BusySource, DateRange
from booking_app.models_calendar import CalendarConnection
from tests.conftest import (
    GOOGLE_API,
    GOOGLE_TOKEN_URL,
    MONDAY_10AM,
    MONDAY_9AM,
    NOW,
    bearer,
    google_freebusy,
    make_connection,
    make_user,
    set_setting,
)

MONDAY = date(2026, 11, 9)
FREEBUSY_URL = f"{GOOGLE_API}/freeBusy"


def service(db, http) -> AvailabilityService:
    return AvailabilityService(db, http, now=NOW)


class TestResolveConstraints:
    def test_environment_defaults(self, db, http):
        constraints = service(db, http).resolve_constraints(60)
        assert constraints.business_hours_start == "09:00"
        assert constraints.busy_source == BusySource.FREEBUSY

    def test_meeting_preferences_override_settings(self, db, http):
        set_setting(db, "availability_busy_source", "events")

        plain = service(db, http).resolve_constraints(60)
        assert plain.busy_source == BusySource.EVENTS

        overridden = service(db, http).resolve_constraints(
            30,
            {"busySource": "freebusy", "businessHoursStart": "08:00", "lunchStart": "", "maxSlots": 5},
        )
        assert overridden.busy_source == BusySource.FREEBUSY
        assert overridden.business_hours_start == "08:00"
        assert overridden.lunch_start is None
        assert overridden.max_slots == 5
        assert overridden.duration_minutes == 30

    def test_invalid_preferences_are_a_precondition_failure(self, db, http):
        with pytest.raises(PreconditionFailed) as exc_info:
            service(db, http).resolve_constraints(60, {"timezone": "Nowhere/Special"})
        assert exc_info.value.status_code == 400


class TestCheckAvailability:
    @pytest.mark.asyncio
    async def test_busy_time_of_every_participant_is_excluded(self, db, http, fake_api):
        host = make_user(db)
        support = make_user(db, email="support@firm.example", full_name="Sam Support")
        make_connection(db, host)
        make_connection(db, support)
        fake_api.add(
            "POST",
            FREEBUSY_URL,
            google_freebusy(
                {
                    f"token-{host.id}": [(MONDAY_9AM, MONDAY_10AM)],
                    f"token-{support.id}": [(MONDAY_10AM, MONDAY_10AM + timedelta(hours=1))],
                }
            ),
        )

        result = await service(db, http).check_availability(
            [host.id, support.id], None, DateRange(MONDAY, MONDAY), 60
        )

        assert result.participants_checked == 2
        assert result.skipped == []
        assert result.room_checked is None
        starts = [s.start for s in result.slots]
        assert MONDAY_9AM not in starts
        assert MONDAY_10AM not in starts
        assert starts[0] == MONDAY_10AM + timedelta(hours=1)
        assert [b.to_dict() for b in result.busy_intervals] == [
            {"start": "2026-11-09T14:00:00Z", "end": "2026-11-09T16:00:00Z"}
        ]

    @pytest.mark.asyncio
    async def test_unreadable_participants_are_skipped_not_fatal(self, db, http, fake_api):
        host = make_user(db)
        unconnected = make_user(db, email="nocal@firm.example")
        broken = make_user(db, email="broken@firm.example")
        make_connection(db, host)
        make_connection(db, broken, refresh_token=None, expires_at=NOW - timedelta(hours=1))
        fake_api.add("POST", FREEBUSY_URL, google_freebusy({f"token-{host.id}": [(MONDAY_9AM, MONDAY_10AM)]}))

        result = await service(db, http).check_availability(
            [host.id, unconnected.id, broken.id, host.id], None, DateRange(MONDAY, MONDAY), 60
        )

        assert result.participants_checked == 1
        assert {"userId": unconnected.id, "reason": "no_connection"} in result.skipped
        broken_entry = next(s for s in result.skipped if s["userId"] == broken.id)
        assert broken_entry["reason"] == "unreadable"
        assert broken_entry["errors"][0]["type"] == "token_refresh_failed"
        assert result.slots
        assert MONDAY_9AM not in [s.start for s in result.slots]

    @pytest.mark.asyncio
    async def test_no_readable_calendars_still_suggests_slots(self, db, http):
        user = make_user(db)

        result = await service(db, http).check_availability([user.id], None, DateRange(MONDAY, MONDAY), 60)

        assert result.participants_checked == 0
        assert len(result.slots) == 15

    @pytest.mark.asyncio
    async def test_room_is_read_through_a_staff_connection(self, db, http, fake_api):
        staff = make_user(db, email="admin@firm.example")
        make_connection(db, staff)
        client_side = make_user(db, email="nocal@firm.example")
        fake_api.add(
            "POST",
            FREEBUSY_URL,
            google_freebusy(busy_by_calendar={"room-a@resource.example": [(MONDAY_9AM, MONDAY_10AM)]}),
        )

        result = await service(db, http).check_availability(
            [client_side.id], "room-a@resource.example", DateRange(MONDAY, MONDAY), 60
        )

        assert result.room_checked is True
        assert MONDAY_9AM not in [s.start for s in result.slots]
        assert result.to_dict()["roomChecked"] is True

    @pytest.mark.asyncio
    async def test_unreadable_room_is_reported(self, db, http, fake_api):
        staff = make_user(db)
        make_connection(db, staff)
        fake_api.add("POST", FREEBUSY_URL, httpx.Response(403, json={"error": "forbidden"}))

        result = await service(db, http).check_availability(
            [], "room-a@resource.example", DateRange(MONDAY, MONDAY), 60
        )

        assert result.room_checked is False

    @pytest.mark.asyncio
    async def test_room_not_found_is_unchecked_not_free(self, db, http, fake_api):
        make_connection(db, make_user(db))
        fake_api.add(
            "POST",
            FREEBUSY_URL,
            httpx.Response(
                200,
                json={"calendars": {"room-a@resource.example": {"errors": [{"reason": "notFound"}], "busy": []}}},
            ),
        )

        result = await service(db, http).check_availability(
            [], "room-a@resource.example", DateRange(MONDAY, MONDAY), 60
        )

        assert result.room_checked is False

    @pytest.mark.asyncio
    async def test_room_falls_through_to_a_connection_that_can_see_it(self, db, http, fake_api):
        blind = make_user(db, email="blind@firm.example")
        sighted = make_user(db, email="sighted@firm.example")
        make_connection(db, blind)
        make_connection(db, sighted)
        busy_for_sighted = google_freebusy(
            busy_by_calendar={"room-a@resource.example": [(MONDAY_9AM, MONDAY_10AM)]}
        )

        def handler(request: httpx.Request) -> httpx.Response:
            if bearer(request) == f"token-{blind.id}":
                return httpx.Response(
                    200,
                    json={"calendars": {"room-a@resource.example": {"errors": [{"reason": "notFound"}]}}},
                )
            return busy_for_sighted(request)

        fake_api.add("POST", FREEBUSY_URL, handler)

        result = await service(db, http).check_availability(
            [], "room-a@resource.example", DateRange(MONDAY, MONDAY), 60
        )

        assert result.room_checked is True
        assert MONDAY_9AM not in [s.start for s in result.slots]
        assert len(fake_api.calls("POST", FREEBUSY_URL)) == 2

    @pytest.mark.asyncio
    async def test_participant_whose_calendars_all_error_is_skipped(self, db, http, fake_api):
        user = make_user(db)
        make_connection(db, user)
        fake_api.add(
            "POST",
            FREEBUSY_URL,
            httpx.Response(200, json={"calendars": {"primary": {"errors": [{"reason": "notFound"}]}}}),
        )

        result = await service(db, http).check_availability([user.id], None, DateRange(MONDAY, MONDAY), 60)

        assert result.participants_checked == 0
        assert result.skipped[0]["reason"] == "unreadable"
        assert result.skipped[0]["errors"][0]["type"] == "provider_error"

    @pytest.mark.asyncio
    async def test_malformed_provider_body_skips_the_participant(self, db, http, fake_api):
        user = make_user(db)
        make_connection(db, user)
        fake_api.add("POST", FREEBUSY_URL, httpx.Response(200, text="<html>proxy error</html>"))

        result = await service(db, http).check_availability([user.id], None, DateRange(MONDAY, MONDAY), 60)

        assert result.participants_checked == 0
        assert result.skipped[0]["errors"][0]["type"] == "provider_error"
        assert len(result.slots) == 15


class TestSuggestSlotsForDay:
    @pytest.mark.asyncio
    async def test_missing_connection_is_reported_in_payload(self, db, http):
        user = make_user(db)

        payload = await service(db, http).suggest_slots_for_day(
            user.id, MONDAY, 60, "09:00", "17:00", "America/New_York"
        )

        assert payload["slots"] == []
        assert payload["error"] == "No calendar connection found"

    @pytest.mark.asyncio
    async def test_day_slots_with_debug_view(self, db, http, fake_api):
        user = make_user(db)
        make_connection(db, user)
        fake_api.add("POST", FREEBUSY_URL, google_freebusy({f"token-{user.id}": [(MONDAY_9AM, MONDAY_10AM)]}))

        payload = await service(db, http).suggest_slots_for_day(
            user.id, MONDAY, 60, "09:00", "12:00", "America/New_York", calendar_ids=["work"], debug=True
        )

        assert payload["error"] is None
        assert payload["calendarsChecked"] == ["work"]
        assert [s["start"] for s in payload["slots"]] == [
            "2026-11-09T15:00:00Z",
            "2026-11-09T15:30:00Z",
            "2026-11-09T16:00:00Z",
        ]
        assert payload["debug"]["rawBusyCount"] == 1
        assert payload["debug"]["windowEnd"] == "2026-11-09T17:00:00Z"

    @pytest.mark.asyncio
    async def test_provider_failure_returns_empty_slots_with_error(self, db, http, fake_api):
        user = make_user(db)
        make_connection(db, user)
        fake_api.add("POST", FREEBUSY_URL, httpx.Response(503, text="unavailable"))

        payload = await service(db, http).suggest_slots_for_day(
            user.id, MONDAY, 60, "09:00", "17:00", "America/New_York"
        )

        assert payload["slots"] == []
        assert "503" in payload["error"]

    @pytest.mark.asyncio
    async def test_invalid_business_hours_rejected(self, db, http):
        user = make_user(db)
        make_connection(db, user)

        with pytest.raises(PreconditionFailed):
            await service(db, http).suggest_slots_for_day(user.id, MONDAY, 60, "9am", "17:00", "America/New_York")


class TestIsSlotFree:
    @pytest.mark.asyncio
    async def test_overlapping_busy_block_is_a_conflict(self, db, http, fake_api):
        user = make_user(db)
        make_connection(db, user)
        half_past = MONDAY_9AM + timedelta(minutes=30)
        fake_api.add("POST", FREEBUSY_URL, google_freebusy({f"token-{user.id}": [(half_past, MONDAY_10AM)]}))

        check = await service(db, http).is_slot_free([user.id], None, MONDAY_9AM, MONDAY_10AM)

        assert not check.free
        assert check.participants_checked == 1
        assert check.conflicts[0].start == half_past

    @pytest.mark.asyncio
    async def test_touching_block_is_not_a_conflict(self, db, http, fake_api):
        user = make_user(db)
        make_connection(db, user)
        fake_api.add(
            "POST",
            FREEBUSY_URL,
            google_freebusy({f"token-{user.id}": [(MONDAY_10AM, MONDAY_10AM + timedelta(hours=1))]}),
        )

        check = await service(db, http).is_slot_free([user.id], None, MONDAY_9AM, MONDAY_10AM)

        assert check.free
        assert check.conflicts == []


class TestVerifyConnection:
    @pytest.mark.asyncio
    async def test_success_records_calendar_count(self, db, http, fake_api):
        connection = make_connection(db, make_user(db))
        fake_api.add(
            "GET",
            f"{GOOGLE_API}/users/me/calendarList",
            httpx.Response(
                200,
                json={"items": [{"id": "host@firm.example", "summary": "Host", "primary": True}, {"id": "team"}]},
            ),
        )

        outcome = await service(db, http).verify_connection(connection)

        assert outcome["ok"]
        assert outcome["calendars"][0] == {"id": "host@firm.example", "name": "Host", "primary": True}
        stored = db.query(CalendarConnection).one()
        assert stored.last_verify_status == "ok"
        assert stored.last_verify_count == 2

    @pytest.mark.asyncio
    async def test_failure_is_recorded_on_connection(self, db, http, fake_api):
        connection = make_connection(db, make_user(db), expires_at=NOW - timedelta(minutes=1))
        fake_api.add("POST", GOOGLE_TOKEN_URL, httpx.Response(401, json={"error": "invalid_client"}))

        outcome = await service(db, http).verify_connection(connection)

        assert not outcome["ok"]
        assert "rejected" in outcome["error"]
        assert connection.last_verify_status == "error"
        assert connection.last_verify_count is None

    @pytest.mark.asyncio
    async def test_unreadable_calendar_list_is_recorded(self, db, http, fake_api):
        connection = make_connection(db, make_user(db))
        fake_api.add("GET", f"{GOOGLE_API}/users/me/calendarList", httpx.Response(200, text="not json"))

        outcome = await service(db, http).verify_connection(connection)

        assert not outcome["ok"]
        assert "unreadable body" in outcome["error"]
        assert connection.last_verify_status == "error"


def test_default_search_window_is_inclusive():
    window = default_search_window(MONDAY, 14)
    assert window.start == MONDAY
    assert window.end == MONDAY + timedelta(days=13)
    assert default_search_window(MONDAY, 0).end == MONDAY
