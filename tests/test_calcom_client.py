"""Tests for the CalcomClient service."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from agentdesk.services.calcom_client import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RETRIES,
    BookingErrorCode,
    BookingRequest,
    CalcomClient,
    classify_booking_error,
)

# ── Helpers ──────────────────────────────────────────────────────────


def _mock_response(data: dict, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    return mock


def _booking_request() -> BookingRequest:
    return BookingRequest(
        event_type_id="42",
        start="2026-03-11T15:00:00.000Z",
        end="2026-03-11T15:30:00.000Z",
        time_zone="UTC",
        name="Jane Doe",
        email="jane@example.com",
        title="Consultation with Jane Doe",
    )


# ── Profile / event type / schedules ────────────────────────────────


class TestGetProfile:
    def test_returns_username_and_time_zone(self):
        client = CalcomClient()
        data = {"user": {"username": "anna", "timeZone": "Asia/Kolkata", "email": "a@x.io"}}

        with patch.object(client._client, "request", return_value=_mock_response(data)) as mock_req:
            result = client.get_profile("cal_key")

        assert result.success
        assert result.value.username == "anna"
        assert result.value.time_zone == "Asia/Kolkata"
        args, kwargs = mock_req.call_args
        assert args == ("GET", "/me")
        assert kwargs["params"]["apiKey"] == "cal_key"

    def test_missing_username_is_a_failure(self):
        client = CalcomClient()
        with patch.object(client._client, "request", return_value=_mock_response({"user": {}})):
            result = client.get_profile("cal_key")
        assert not result.success

    def test_unauthorized_is_not_raised(self):
        client = CalcomClient()
        response = _mock_response({"message": "Invalid API key"}, status_code=401)
        with patch.object(client._client, "request", return_value=response):
            result = client.get_profile("bad")
        assert not result.success
        assert result.error == "Invalid API key"
        assert result.status_code == 401


class TestGetEventType:
    def test_returns_length(self):
        client = CalcomClient()
        data = {"event_type": {"title": "Consultation", "length": 45}}
        with patch.object(client._client, "request", return_value=_mock_response(data)):
            result = client.get_event_type("cal_key", "42")
        assert result.value.title == "Consultation"
        assert result.value.length_minutes == 45

    def test_length_defaults_to_thirty_minutes(self):
        client = CalcomClient()
        data = {"event_type": {"title": "Consultation"}}
        with patch.object(client._client, "request", return_value=_mock_response(data)):
            result = client.get_event_type("cal_key", "42")
        assert result.value.length_minutes == 30

    @pytest.mark.parametrize("length", ["abc", {"minutes": 30}])
    def test_malformed_length_fails_cleanly(self, length):
        client = CalcomClient()
        data = {"event_type": {"title": "Consultation", "length": length}}
        with patch.object(client._client, "request", return_value=_mock_response(data)):
            result = client.get_event_type("cal_key", "42")
        assert not result.success
        assert result.value is None
        assert "Malformed length" in result.error


class TestGetSchedules:
    def test_parses_working_hours(self):
        client = CalcomClient()
        data = {
            "schedules": [
                {
                    "name": "Working Hours",
                    "timeZone": "Europe/Paris",
                    "availability": [
                        {"days": [1, 2, 3], "startTime": "09:00:00", "endTime": "17:00:00"},
                    ],
                }
            ]
        }
        with patch.object(client._client, "request", return_value=_mock_response(data)):
            result = client.get_schedules("cal_key")

        schedule = result.value[0]
        assert schedule.time_zone == "Europe/Paris"
        assert schedule.availability[0].days == (1, 2, 3)
        assert schedule.availability[0].start_time == "09:00"
        assert schedule.availability[0].end_time == "17:00"

    @pytest.mark.parametrize(
        "schedules",
        [
            [{"name": "Working Hours", "availability": [{"days": ["mon"], "startTime": "09:00"}]}],
            [{"name": "Working Hours", "availability": [{"days": None}]}],
            ["not-a-schedule"],
        ],
    )
    def test_malformed_schedules_fail_cleanly(self, schedules):
        client = CalcomClient()
        with patch.object(client._client, "request", return_value=_mock_response({"schedules": schedules})):
            result = client.get_schedules("cal_key")
        assert not result.success
        assert "Malformed schedules" in result.error


# ── Busy times and slots ────────────────────────────────────────────


class TestGetBusyTimes:
    def test_with_time_zone_queries_local_day(self):
        client = CalcomClient()
        data = {"busy": [{"start": "2026-03-11T10:00:00Z", "end": "2026-03-11T10:30:00Z"}]}
        with patch.object(client._client, "request", return_value=_mock_response(data)) as mock_req:
            result = client.get_busy_times("cal_key", "42", "anna", "2026-03-11", "Asia/Kolkata")

        assert result.value[0].start == "2026-03-11T10:00:00Z"
        params = mock_req.call_args.kwargs["params"]
        assert params["dateFrom"] == "2026-03-11"
        assert params["timeZone"] == "Asia/Kolkata"
        assert params["eventTypeId"] == 42
        assert params["username"] == "anna"

    def test_without_time_zone_queries_whole_utc_day(self):
        client = CalcomClient()
        with patch.object(client._client, "request", return_value=_mock_response({"busy": []})) as mock_req:
            result = client.get_busy_times("cal_key", "42", "anna", "2026-03-11")

        assert result.success
        assert result.value == []
        params = mock_req.call_args.kwargs["params"]
        assert params["dateFrom"] == "2026-03-11T00:00:00.000Z"
        assert params["dateTo"] == "2026-03-11T23:59:59.999Z"
        assert "timeZone" not in params


class TestListSlots:
    def test_flattens_and_sorts_slots(self):
        client = CalcomClient()
        data = {
            "slots": {
                "2026-03-12": [{"time": "2026-03-12T09:00:00Z"}],
                "2026-03-11": [{"time": "2026-03-11T14:00:00Z"}, {"time": "2026-03-11T09:00:00Z"}],
            }
        }
        with patch.object(client._client, "request", return_value=_mock_response(data)):
            result = client.list_slots("cal_key", "42", "2026-03-11T00:00:00Z", "2026-03-12T23:59:59Z")

        assert result.value == [
            "2026-03-11T09:00:00Z",
            "2026-03-11T14:00:00Z",
            "2026-03-12T09:00:00Z",
        ]


# ── Bookings ─────────────────────────────────────────────────────────


class TestCreateBooking:
    def test_success_returns_confirmation(self):
        client = CalcomClient()
        data = {"id": 991, "uid": "bk_abc123", "status": "ACCEPTED"}
        with patch.object(client._client, "request", return_value=_mock_response(data)) as mock_req:
            result = client.create_booking("cal_key", _booking_request())

        assert result.success
        assert result.booking_id == "991"
        assert result.confirmation_id == "bk_abc123"
        payload = mock_req.call_args.kwargs["json"]
        assert payload["eventTypeId"] == 42
        assert payload["start"] == "2026-03-11T15:00:00.000Z"
        assert payload["responses"] == {"name": "Jane Doe", "email": "jane@example.com"}

    def test_slot_taken_is_classified(self):
        client = CalcomClient()
        response = _mock_response({"message": "no_available_users_found_error"}, status_code=400)
        with patch.object(client._client, "request", return_value=response) as mock_req:
            result = client.create_booking("cal_key", _booking_request())

        assert not result.success
        assert result.error_code is BookingErrorCode.SLOT_TAKEN
        # 4xx are not retried
        assert mock_req.call_count == 1


class TestClassifyBookingError:
    @pytest.mark.parametrize(
        "message, code",
        [
            ("no_available_users_found_error", BookingErrorCode.SLOT_TAKEN),
            ("Booking failed: minimum_booking_notice", BookingErrorCode.MINIMUM_NOTICE),
            ("Invalid event length", BookingErrorCode.INVALID_EVENT_LENGTH),
            ("Something exploded", BookingErrorCode.UNKNOWN),
            (None, BookingErrorCode.UNKNOWN),
        ],
    )
    def test_classifies(self, message, code):
        assert classify_booking_error(message) is code


# ── Retry logic ──────────────────────────────────────────────────────


class TestRetryLogic:
    @patch("agentdesk.services.calcom_client.time.sleep")
    def test_retries_on_timeout(self, mock_sleep):
        client = CalcomClient()
        success = _mock_response({"user": {"username": "anna", "timeZone": "UTC"}})

        with patch.object(
            client._client,
            "request",
            side_effect=[httpx.TimeoutException("timeout"), success],
        ):
            result = client.get_profile("cal_key")

        assert result.success
        mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    @patch("agentdesk.services.calcom_client.time.sleep")
    def test_retries_on_500_error(self, mock_sleep):
        client = CalcomClient()
        error = _mock_response({"message": "boom"}, status_code=502)
        success = _mock_response({"busy": []})

        with patch.object(client._client, "request", side_effect=[error, success]):
            result = client.get_busy_times("cal_key", "42", "anna", "2026-03-11")

        assert result.success
        assert mock_sleep.call_count == 1

    @patch("agentdesk.services.calcom_client.time.sleep")
    def test_gives_up_after_max_retries(self, mock_sleep):
        client = CalcomClient()
        with patch.object(
            client._client, "request", side_effect=httpx.ConnectError("refused"),
        ) as mock_req:
            result = client.list_slots("cal_key", "42", "a", "b")

        assert not result.success
        assert "failed after" in result.error
        assert mock_req.call_count == MAX_RETRIES
        assert mock_sleep.call_count == MAX_RETRIES
