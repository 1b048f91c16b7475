"""HTTP client for the Cal.com API v1 with retry logic and timeout handling.

Cal.com API docs: https://cal.com/docs/api-reference/v1
Every request is authenticated with the *caller's* API key, passed as the
``apiKey`` query parameter.  Keys belong to the agent configuration, not to
this process, so nothing here stores them.

Every public method returns a :class:`SchedulingResult` and never raises:
transport failures and 4xx/5xx responses are caught at this boundary so the
dispatch table can decide how to phrase them to the customer.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import httpx

from agentdesk.config import CALCOM_BASE_URL

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

DEFAULT_EVENT_LENGTH_MINUTES = 30

T = TypeVar("T")


class CalcomAPIError(Exception):
    """Raised internally when a Cal.com API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class BookingErrorCode(str, Enum):
    SLOT_TAKEN = "no_available_users_found"
    MINIMUM_NOTICE = "minimum_booking_notice"
    INVALID_EVENT_LENGTH = "invalid_event_length"
    UNKNOWN = "unknown"


# Matched against the lower-cased provider message, first hit wins.
_BOOKING_ERROR_PHRASES: tuple[tuple[str, BookingErrorCode], ...] = (
    ("no_available_users_found", BookingErrorCode.SLOT_TAKEN),
    ("minimum_booking_notice", BookingErrorCode.MINIMUM_NOTICE),
    ("invalid event length", BookingErrorCode.INVALID_EVENT_LENGTH),
    ("invalid_event_length", BookingErrorCode.INVALID_EVENT_LENGTH),
)


def classify_booking_error(message: str | None) -> BookingErrorCode:
    """Map a raw Cal.com error message onto a known booking failure cause."""
    lowered = (message or "").lower()
    for phrase, code in _BOOKING_ERROR_PHRASES:
        if phrase in lowered:
            return code
    return BookingErrorCode.UNKNOWN


def _numeric_id(value: str) -> int | str:
    """Cal.com expects numeric event-type ids; pass anything else through."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


# ── Result types ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class SchedulingResult(Generic[T]):
    success: bool
    value: T | None = None
    error: str | None = None
    status_code: int | None = None

    @classmethod
    def ok(cls, value: T) -> SchedulingResult[T]:
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: str, status_code: int | None = None) -> SchedulingResult[T]:
        return cls(success=False, error=error, status_code=status_code)


@dataclass(frozen=True)
class Profile:
    username: str
    time_zone: str
    email: str | None = None
    locale: str = "en"


@dataclass(frozen=True)
class EventType:
    event_type_id: str
    title: str
    length_minutes: int = DEFAULT_EVENT_LENGTH_MINUTES


@dataclass(frozen=True)
class WorkingHours:
    days: tuple[int, ...]  # 0 = Sunday … 6 = Saturday
    start_time: str
    end_time: str


@dataclass(frozen=True)
class Schedule:
    name: str
    time_zone: str
    availability: tuple[WorkingHours, ...]


@dataclass(frozen=True)
class BusyInterval:
    start: str
    end: str


@dataclass(frozen=True)
class BookingRequest:
    event_type_id: str
    start: str
    end: str
    time_zone: str
    name: str
    email: str
    title: str
    language: str = "en"
    notes: str | None = None

    def to_payload(self) -> dict[str, Any]:
        responses: dict[str, Any] = {"name": self.name, "email": self.email}
        if self.notes:
            responses["notes"] = self.notes
        return {
            "eventTypeId": _numeric_id(self.event_type_id),
            "start": self.start,
            "end": self.end,
            "timeZone": self.time_zone,
            "language": self.language,
            "metadata": {},
            "responses": responses,
            "title": self.title,
        }


@dataclass(frozen=True)
class BookingResult:
    success: bool
    booking_id: str | None = None
    confirmation_id: str | None = None
    error: str | None = None
    error_code: BookingErrorCode | None = None
    status_code: int | None = None


# ── Client ───────────────────────────────────────────────────────────


class CalcomClient:
    """Thin wrapper around the Cal.com REST API v1 with automatic retries."""

    def __init__(self, base_url: str | None = None, *, timeout: float = REQUEST_TIMEOUT_SECONDS):
        self._base_url = (base_url or CALCOM_BASE_URL).rstrip("/")
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Prefer Cal.com's own ``message`` field over the raw body."""
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
            if message:
                return str(message)
        return response.text

    def _request(
        self,
        method: str,
        path: str,
        api_key: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        query = {**(params or {}), "apiKey": api_key}
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.request(
                    method,
                    path,
                    params=query,
                    json=json_body,
                )
                if response.status_code >= 500:
                    raise CalcomAPIError(
                        f"Server error {response.status_code}: {self._error_message(response)}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise CalcomAPIError(
                        self._error_message(response),
                        status_code=response.status_code,
                    )
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Cal.com API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except CalcomAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Cal.com API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
            time.sleep(backoff)

        raise CalcomAPIError(
            f"Cal.com API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    def _call(self, operation: str, method: str, path: str, api_key: str, **kwargs: Any):
        """Run ``_request`` and convert every failure into a ``SchedulingResult``."""
        try:
            return SchedulingResult.ok(self._request(method, path, api_key, **kwargs))
        except CalcomAPIError as exc:
            logger.error("Cal.com %s failed: %s", operation, exc)
            return SchedulingResult.fail(str(exc), exc.status_code)
        except (httpx.HTTPError, ValueError) as exc:
            # Non-retryable transport errors and undecodable bodies.
            logger.error("Cal.com %s failed: %s", operation, exc)
            return SchedulingResult.fail(str(exc))

    # ── Public API methods ───────────────────────────────────────────

    def get_profile(self, api_key: str) -> SchedulingResult[Profile]:
        """Return the account holder's username and time zone."""
        result = self._call("get_profile", "GET", "/me", api_key)
        if not result.success:
            return result
        user = (result.value or {}).get("user") or {}
        if not user.get("username"):
            return SchedulingResult.fail("Cal.com profile has no username")
        profile = Profile(
            username=user["username"],
            time_zone=user.get("timeZone") or "UTC",
            email=user.get("email"),
            locale=user.get("locale") or "en",
        )
        logger.info("Cal.com profile: %s (%s)", profile.username, profile.time_zone)
        return SchedulingResult.ok(profile)

    def get_event_type(self, api_key: str, event_type_id: str) -> SchedulingResult[EventType]:
        """Return the event type's title and length (30 minutes when unset)."""
        result = self._call("get_event_type", "GET", f"/event-types/{event_type_id}", api_key)
        if not result.success:
            return result
        raw = (result.value or {}).get("event_type") or {}
        try:
            length = int(raw.get("length") or DEFAULT_EVENT_LENGTH_MINUTES)
        except (TypeError, ValueError):
            logger.error("Cal.com event type %s has a malformed length: %r", event_type_id, raw.get("length"))
            return SchedulingResult.fail(f"Malformed length on event type {event_type_id}")
        return SchedulingResult.ok(
            EventType(
                event_type_id=str(event_type_id),
                title=raw.get("title") or "Appointment",
                length_minutes=length,
            )
        )

    def get_schedules(self, api_key: str) -> SchedulingResult[list[Schedule]]:
        """Return the account's working-hour schedules."""
        result = self._call("get_schedules", "GET", "/schedules", api_key)
        if not result.success:
            return result
        try:
            schedules = [
                Schedule(
                    name=raw.get("name", ""),
                    time_zone=raw.get("timeZone") or "UTC",
                    availability=tuple(
                        WorkingHours(
                            days=tuple(int(d) for d in rule.get("days", [])),
                            start_time=str(rule.get("startTime", ""))[:5],
                            end_time=str(rule.get("endTime", ""))[:5],
                        )
                        for rule in raw.get("availability") or []
                    ),
                )
                for raw in (result.value or {}).get("schedules", [])
            ]
        except (AttributeError, TypeError, ValueError) as exc:
            logger.error("Cal.com returned malformed schedules: %s", exc)
            return SchedulingResult.fail(f"Malformed schedules response: {exc}")
        return SchedulingResult.ok(schedules)

    def get_busy_times(
        self,
        api_key: str,
        event_type_id: str,
        username: str,
        date: str,
        timezone: str | None = None,
    ) -> SchedulingResult[list[BusyInterval]]:
        """Return the busy intervals on *date*.

        With a *timezone* the provider interprets *date* as a local day;
        without one the whole UTC day is queried.
        """
        params: dict[str, Any] = {
            "eventTypeId": _numeric_id(event_type_id),
            "username": username,
        }
        if timezone:
            params.update(dateFrom=date, dateTo=date, timeZone=timezone)
        else:
            params.update(dateFrom=f"{date}T00:00:00.000Z", dateTo=f"{date}T23:59:59.999Z")

        result = self._call("get_busy_times", "GET", "/availability", api_key, params=params)
        if not result.success:
            return result
        busy = [
            BusyInterval(start=item["start"], end=item["end"])
            for item in (result.value or {}).get("busy") or []
            if item.get("start") and item.get("end")
        ]
        return SchedulingResult.ok(busy)

    def list_slots(
        self,
        api_key: str,
        event_type_id: str,
        start_time: str,
        end_time: str,
    ) -> SchedulingResult[list[str]]:
        """Return the open slot start times between two instants.

        **Not cached**: availability changes in real time.
        """
        result = self._call(
            "list_slots",
            "GET",
            "/slots",
            api_key,
            params={
                "eventTypeId": _numeric_id(event_type_id),
                "startTime": start_time,
                "endTime": end_time,
            },
        )
        if not result.success:
            return result
        by_day = (result.value or {}).get("slots") or {}
        slots = sorted(
            slot["time"]
            for day_slots in by_day.values()
            for slot in day_slots
            if slot.get("time")
        )
        return SchedulingResult.ok(slots)

    def create_booking(self, api_key: str, request: BookingRequest) -> BookingResult:
        """Submit a booking and classify any provider refusal."""
        logger.info(
            "Creating Cal.com booking: event type %s, %s → %s (%s)",
            request.event_type_id, request.start, request.end, request.time_zone,
        )
        result = self._call(
            "create_booking", "POST", "/bookings", api_key, json_body=request.to_payload(),
        )
        if not result.success:
            return BookingResult(
                success=False,
                error=result.error,
                error_code=classify_booking_error(result.error),
                status_code=result.status_code,
            )

        data = result.value or {}
        booking_id = data.get("id")
        confirmation = data.get("uid") or booking_id
        logger.info("Cal.com booking created: id=%s status=%s", booking_id, data.get("status"))
        return BookingResult(
            success=True,
            booking_id=str(booking_id) if booking_id is not None else None,
            confirmation_id=str(confirmation) if confirmation is not None else None,
        )


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: CalcomClient | None = None
_client_lock = threading.Lock()


def get_calcom_client() -> CalcomClient:
    """Return a module-level CalcomClient singleton."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = CalcomClient()
    return _client
