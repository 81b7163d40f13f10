"""HTTP tests for the staff and public booking routers."""

from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from booking_app import config
from booking_app.database import get_db
from booking_app.domain.scheduling import public_router, router
from booking_app.domain.scheduling.availability_service import AvailabilityService
from booking_app.domain.scheduling.lifecycle_service import BookingLifecycleService
from booking_app.domain.scheduling.progress_log import ProgressLogger
from booking_app.domain.scheduling.public_service import PublicBookingService
from booking_app.main import app
from booking_app.models import BookingRequestStatus, MeetingStatus
from tests.conftest import (
    GOOGLE_API,
    MONDAY_10AM,
    MONDAY_9AM,
    NOW,
    google_freebusy,
    make_booking_request,
    make_connection,
    make_meeting,
    make_meeting_type,
    make_room,
    make_user,
    set_setting,
)

STAFF_KEY = "staff-test-key"
STAFF_HEADERS = {"X-Staff-Api-Key": STAFF_KEY}


@pytest.fixture
def client(db, http, monkeypatch):
    monkeypatch.setattr(config, "STAFF_API_KEY", STAFF_KEY)
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[router.get_availability_service] = lambda: AvailabilityService(db, http, now=NOW)
    app.dependency_overrides[router.get_lifecycle_service] = lambda: BookingLifecycleService(db, http, now=NOW)
    app.dependency_overrides[public_router.get_lifecycle_service] = lambda: BookingLifecycleService(
        db, http, now=NOW
    )
    app.dependency_overrides[public_router.get_public_service] = lambda: PublicBookingService(db, http, now=NOW)
    # No context manager: the lifespan would create tables in the configured database
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestStaffAuth:
    def test_missing_key_rejected(self, client):
        response = client.post("/availability/check", json={"startDate": "2026-11-09", "endDate": "2026-11-09"})
        assert response.status_code == 401

    def test_wrong_key_rejected(self, client):
        response = client.get("/calendar-connections/1", headers={"X-Staff-Api-Key": "nope"})
        assert response.status_code == 401

    def test_unconfigured_key_disables_staff_api(self, client, monkeypatch):
        monkeypatch.setattr(config, "STAFF_API_KEY", None)
        response = client.get("/calendar-connections/1", headers=STAFF_HEADERS)
        assert response.status_code == 503

    def test_health_is_open(self, client):
        assert client.get("/health").json() == {"status": "healthy"}


class TestAvailabilityEndpoints:
    def test_check_availability(self, client, db, fake_api):
        host = make_user(db)
        make_connection(db, host)
        fake_api.add("POST", f"{GOOGLE_API}/freeBusy", google_freebusy({f"token-{host.id}": [(MONDAY_9AM, MONDAY_10AM)]}))

        response = client.post(
            "/availability/check",
            headers=STAFF_HEADERS,
            json={
                "participantIds": [host.id],
                "startDate": "2026-11-09",
                "endDate": "2026-11-09",
                "durationMinutes": 60,
                "preferences": {"maxSlots": 2},
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["participantsChecked"] == 1
        assert len(body["slots"]) == 2
        assert body["slots"][0]["label"] == "10:00 AM - 11:00 AM"
        assert len(body["busyIntervals"]) == 1

    def test_unknown_room_is_404(self, client):
        response = client.post(
            "/availability/check",
            headers=STAFF_HEADERS,
            json={"roomId": 42, "startDate": "2026-11-09", "endDate": "2026-11-09"},
        )
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Room not found"}

    def test_room_by_id(self, client, db, fake_api):
        staff = make_user(db)
        make_connection(db, staff)
        room = make_room(db)
        fake_api.add("POST", f"{GOOGLE_API}/freeBusy", google_freebusy())

        response = client.post(
            "/availability/check",
            headers=STAFF_HEADERS,
            json={"roomId": room.id, "startDate": "2026-11-09", "endDate": "2026-11-09"},
        )

        assert response.json()["roomChecked"] is True

    def test_validation_errors_are_flattened(self, client):
        response = client.post(
            "/availability/check",
            headers=STAFF_HEADERS,
            json={"startDate": "2026-11-09", "endDate": "2026-11-01", "durationMinutes": 0},
        )
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert "durationMinutes" in body["error"]

    def test_bad_preference_time_rejected(self, client):
        response = client.post(
            "/availability/check",
            headers=STAFF_HEADERS,
            json={"startDate": "2026-11-09", "endDate": "2026-11-09", "preferences": {"businessHoursStart": "9am"}},
        )
        assert response.status_code == 422

    def test_day_slots(self, client, db, fake_api):
        host = make_user(db)
        make_connection(db, host)
        fake_api.add("POST", f"{GOOGLE_API}/freeBusy", google_freebusy())

        response = client.post(
            "/availability/day",
            headers=STAFF_HEADERS,
            json={"internalUserId": host.id, "date": "2026-11-09", "businessHoursEnd": "11:00"},
        )

        body = response.json()
        assert body["error"] is None
        assert [s["label"] for s in body["slots"]] == [
            "9:00 AM - 10:00 AM",
            "9:30 AM - 10:30 AM",
            "10:00 AM - 11:00 AM",
        ]


class TestLifecycleEndpoints:
    def test_propose_with_explicit_slots(self, client, db):
        host = make_user(db)
        meeting = make_meeting(db, host=host, status=MeetingStatus.DRAFT)

        response = client.post(
            f"/meetings/{meeting.id}/propose",
            headers=STAFF_HEADERS,
            json={"slots": [{"start": "2026-11-09T14:00:00Z", "end": "2026-11-09T15:00:00Z"}]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["meetingStatus"] == MeetingStatus.PROPOSED
        assert body["slots"][0]["label"] == "9:00 AM - 10:00 AM"
        assert body["bookingRequest"]["status"] == BookingRequestStatus.OPEN
        assert body["bookingRequest"]["publicToken"]

    def test_confirm_reports_partial_sync(self, client, db, fake_api):
        host = make_user(db)
        make_connection(db, host)
        meeting = make_meeting(db, host=host, meeting_type=make_meeting_type(db))
        make_booking_request(db, meeting)
        fake_api.add("POST", f"{GOOGLE_API}/freeBusy", google_freebusy())
        fake_api.add("POST", f"{GOOGLE_API}/calendars/primary/events", httpx.Response(200, json={"id": "gcal-1"}))

        response = client.post(
            f"/meetings/{meeting.id}/confirm",
            headers=STAFF_HEADERS,
            json={"startDatetime": "2026-11-09T09:00:00-05:00", "endDatetime": "2026-11-09T10:00:00-05:00"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["meetingStatus"] == MeetingStatus.BOOKED
        assert body["hasErrors"] is True
        assert body["errors"][0]["system"] == "lawmatics"
        assert body["calendarEventId"] == "gcal-1"

    def test_confirm_requires_offset(self, client, db):
        meeting = make_meeting(db, host=make_user(db))
        response = client.post(
            f"/meetings/{meeting.id}/confirm",
            headers=STAFF_HEADERS,
            json={"startDatetime": "2026-11-09T09:00:00", "endDatetime": "2026-11-09T10:00:00"},
        )
        assert response.status_code == 422

    def test_invalid_transition_is_409(self, client, db):
        meeting = make_meeting(db, host=make_user(db), status=MeetingStatus.CANCELLED)
        response = client.post(
            f"/meetings/{meeting.id}/confirm",
            headers=STAFF_HEADERS,
            json={"startDatetime": "2026-11-09T14:00:00Z", "endDatetime": "2026-11-09T15:00:00Z"},
        )
        assert response.status_code == 409
        assert response.json()["success"] is False

    def test_staff_reschedule_returns_new_link(self, client, db):
        host = make_user(db)
        meeting = make_meeting(
            db, host=host, status=MeetingStatus.BOOKED, start=MONDAY_9AM, end=MONDAY_10AM
        )

        response = client.post(f"/meetings/{meeting.id}/reschedule", headers=STAFF_HEADERS)

        body = response.json()
        assert body["meetingStatus"] == MeetingStatus.RESCHEDULED
        assert body["publicToken"]
        assert body["bookingStatus"] == BookingRequestStatus.OPEN

    def test_progress_logs(self, client, db):
        meeting = make_meeting(db, host=make_user(db))
        first = ProgressLogger(db, meeting.id, run_id="run-a")
        first.info("confirm_started", "Confirming booking")
        first.success("meeting_update", "Meeting booked")
        ProgressLogger(db, meeting.id, run_id="run-b").info("confirm_started", "Again")

        everything = client.get(f"/meetings/{meeting.id}/progress-logs", headers=STAFF_HEADERS).json()
        one_run = client.get(
            f"/meetings/{meeting.id}/progress-logs", headers=STAFF_HEADERS, params={"run_id": "run-a"}
        ).json()

        assert len(everything) == 3
        assert [e["step"] for e in one_run] == ["confirm_started", "meeting_update"]
        assert one_run[1]["level"] == "success"


class TestCalendarConnectionEndpoints:
    def test_listing_never_exposes_tokens(self, client, db):
        user = make_user(db)
        make_connection(db, user, access_token="super-secret-access")

        response = client.get(f"/calendar-connections/{user.id}", headers=STAFF_HEADERS)

        assert response.status_code == 200
        assert "super-secret" not in response.text
        assert "accessToken" not in response.text
        assert response.json()[0]["hasRefreshToken"] is True

    def test_disconnect(self, client, db):
        user = make_user(db)
        make_connection(db, user)

        assert client.delete(f"/calendar-connections/{user.id}/google", headers=STAFF_HEADERS).json() == {
            "success": True
        }
        assert client.get(f"/calendar-connections/{user.id}", headers=STAFF_HEADERS).json() == []
        assert client.delete(f"/calendar-connections/{user.id}/google", headers=STAFF_HEADERS).status_code == 404
        assert client.delete(f"/calendar-connections/{user.id}/yahoo", headers=STAFF_HEADERS).status_code == 400

    def test_verify(self, client, db, fake_api):
        user = make_user(db)
        make_connection(db, user)
        fake_api.add(
            "GET", f"{GOOGLE_API}/users/me/calendarList", httpx.Response(200, json={"items": [{"id": "primary-cal"}]})
        )

        body = client.post(f"/calendar-connections/{user.id}/google/verify", headers=STAFF_HEADERS).json()

        assert body["ok"] is True
        assert body["calendars"] == [{"id": "primary-cal", "name": "primary-cal", "primary": False}]


class TestPublicBooking:
    def test_info_needs_scheduling(self, client, db):
        set_setting(db, "public_contact_phone", "555-0199")
        meeting = make_meeting(db, host=make_user(db), meeting_type=make_meeting_type(db))
        request = make_booking_request(db, meeting)

        body = client.get(f"/public/booking/{request.public_token}").json()

        assert body["state"] == "needs_scheduling"
        assert body["meeting"]["meetingTypeName"] == "Initial Consultation"
        assert body["meeting"]["start"] is None
        assert body["contact"]["phone"] == "555-0199"

    def test_info_states(self, client, db):
        host = make_user(db)
        booked = make_meeting(db, host=host, status=MeetingStatus.BOOKED, start=MONDAY_9AM, end=MONDAY_10AM)
        cancelled = make_meeting(db, host=host, status=MeetingStatus.CANCELLED)
        stale = make_meeting(db, host=host)
        failed = make_meeting(db, host=host, status=MeetingStatus.FAILED)

        def state(meeting, **kwargs):
            request = make_booking_request(db, meeting, **kwargs)
            return client.get(f"/public/booking/{request.public_token}").json()["state"]

        assert state(booked) == "already_booked"
        assert state(cancelled) == "cancelled"
        assert state(stale, expires_at=NOW - timedelta(minutes=1)) == "expired"
        assert state(failed) == "contact_office"

    def test_unknown_token(self, client):
        response = client.get("/public/booking/not-a-token")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Booking link not found"}

    def test_public_routes_need_no_staff_key(self, client, db, fake_api):
        host = make_user(db)
        make_connection(db, host)
        meeting = make_meeting(db, host=host)
        request = make_booking_request(db, meeting)
        fake_api.add("POST", f"{GOOGLE_API}/freeBusy", google_freebusy())

        response = client.post(
            f"/public/booking/{request.public_token}/slots",
            json={"startDate": "2026-11-09", "timezone": "America/Los_Angeles"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["timezone"] == "America/Los_Angeles"
        assert body["slots"][0]["start"] == "2026-11-09T14:00:00Z"
        assert body["slots"][0]["localStart"] == "2026-11-09T06:00:00-08:00"
        assert "busyIntervals" not in body

    def test_slots_for_booked_meeting_rejected(self, client, db):
        meeting = make_meeting(db, host=make_user(db), status=MeetingStatus.BOOKED, start=MONDAY_9AM, end=MONDAY_10AM)
        request = make_booking_request(db, meeting)

        response = client.post(f"/public/booking/{request.public_token}/slots", json={})

        assert response.status_code == 409

    def test_public_confirm_hides_sync_details(self, client, db, fake_api):
        host = make_user(db)
        make_connection(db, host)
        meeting = make_meeting(db, host=host)
        request = make_booking_request(db, meeting)
        fake_api.add("POST", f"{GOOGLE_API}/freeBusy", google_freebusy())
        fake_api.add("POST", f"{GOOGLE_API}/calendars/primary/events", httpx.Response(500, text="boom"))

        response = client.post(
            f"/public/booking/{request.public_token}/confirm",
            json={"startDatetime": "2026-11-09T14:00:00Z", "endDatetime": "2026-11-09T15:00:00Z"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "confirmed"
        assert body["hasIssues"] is True
        assert "errors" not in body
        assert "boom" not in response.text

    def test_public_confirm_conflict(self, client, db, fake_api):
        host = make_user(db)
        make_connection(db, host)
        meeting = make_meeting(db, host=host)
        request = make_booking_request(db, meeting)
        fake_api.add("POST", f"{GOOGLE_API}/freeBusy", google_freebusy({f"token-{host.id}": [(MONDAY_9AM, MONDAY_10AM)]}))

        response = client.post(
            f"/public/booking/{request.public_token}/confirm",
            json={"startDatetime": "2026-11-09T14:00:00Z", "endDatetime": "2026-11-09T15:00:00Z"},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "The selected time is no longer available. Please choose another time."

    def test_manage_reschedule_returns_token(self, client, db):
        meeting = make_meeting(db, host=make_user(db), status=MeetingStatus.BOOKED, start=MONDAY_9AM, end=MONDAY_10AM)
        request = make_booking_request(db, meeting)

        response = client.post(f"/public/booking/{request.public_token}/manage", json={"action": " Reschedule "})

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "reschedule"
        assert body["publicToken"] == request.public_token
        assert body["meetingStatus"] == MeetingStatus.RESCHEDULED

    def test_manage_cancel_hides_token(self, client, db):
        meeting = make_meeting(db, host=make_user(db), status=MeetingStatus.BOOKED, start=MONDAY_9AM, end=MONDAY_10AM)
        request = make_booking_request(db, meeting)

        body = client.post(f"/public/booking/{request.public_token}/manage", json={"action": "cancel"}).json()

        assert body["meetingStatus"] == MeetingStatus.CANCELLED
        assert body["publicToken"] is None

    def test_security_headers(self, client, db):
        meeting = make_meeting(db, host=make_user(db))
        request = make_booking_request(db, meeting)

        response = client.get(f"/public/booking/{request.public_token}")

        assert response.headers["Referrer-Policy"] == "no-referrer"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"
