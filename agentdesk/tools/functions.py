"""The functions the language model may call, and the table that runs them.

Each function has a pydantic model for its arguments (which doubles as the
JSON schema handed to the model) and a handler on ``FunctionDispatcher``.
Handlers never raise for provider trouble: they always return a
``FunctionResult`` whose ``user_message`` is said to the customer verbatim.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentdesk.models import ConversationSession, ConversationStep, SchedulingCredentials
from agentdesk.services.calcom_client import (
    DEFAULT_EVENT_LENGTH_MINUTES,
    BookingErrorCode,
    BookingRequest,
    BusyInterval,
    CalcomClient,
    EventType,
    Schedule,
)
from agentdesk.services.twilio_client import TwilioVoiceClient, mask_phone_number, to_e164
from agentdesk.tools.time_normalizer import (
    UtcInterval,
    intervals_overlap,
    local_to_utc,
    parse_instant,
    parse_relative_date,
    to_24_hour,
    to_local,
)

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
MAX_LISTED_SLOTS = 5
SUPPORT_SUFFIX = " I recommend trying a different time or contacting our support team directly."


class FunctionArgumentsError(Exception):
    """The model called a function with arguments that do not fit its schema."""

    def __init__(self, function_name: str, detail: str):
        self.function_name = function_name
        self.detail = detail
        super().__init__(f"Invalid arguments for {function_name}: {detail}")


# ── Function names and argument schemas ─────────────────────────────


class FunctionName(str, Enum):
    END_CONVERSATION = "end_conversation"
    CHECK_AVAILABILITY = "check_availability"
    GET_SLOTS = "get_slots"
    BOOK_APPOINTMENT = "book_appointment"
    INITIATE_VOICE_CALL = "initiate_voice_call"


class _Arguments(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EndConversationArgs(_Arguments):
    reason: str | None = Field(None, description="Why the conversation is ending")


class CheckAvailabilityArgs(_Arguments):
    date: str = Field(..., description='Requested date, e.g. "tomorrow" or "2026-03-14"')
    time: str | None = Field(
        None, description='Requested time in the customer\'s words, e.g. "3 pm"',
    )


class GetSlotsArgs(_Arguments):
    start_time: str = Field(..., alias="startTime", description="Range start, ISO 8601")
    end_time: str = Field(..., alias="endTime", description="Range end, ISO 8601")


class BookAppointmentArgs(_Arguments):
    name: str = Field(..., min_length=1, description="Customer's full name")
    email: str = Field(..., description="Customer's email address")
    date: str = Field(..., description="Appointment date")
    time: str = Field(..., description="Appointment time")
    title: str | None = Field(None, description="Optional appointment title")
    notes: str | None = Field(None, description="Optional notes for the host")


class InitiateVoiceCallArgs(_Arguments):
    phone_number: str = Field(
        ..., alias="phoneNumber",
        description="Phone number with country code (e.g., +1234567890)",
    )
    customer_name: str | None = Field(
        None, alias="customerName", description="Customer name for the call",
    )
    reason: str | None = Field(
        None, description='Reason for the call (e.g., "follow up on appointment booking")',
    )


@dataclass(frozen=True)
class FunctionDescriptor:
    name: FunctionName
    description: str
    args_model: type[BaseModel]

    def to_tool(self) -> dict[str, Any]:
        """Anthropic tool definition (``name`` / ``description`` / ``input_schema``)."""
        schema = self.args_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        return {
            "name": self.name.value,
            "description": self.description,
            "input_schema": schema,
        }


FUNCTION_DESCRIPTORS: dict[FunctionName, FunctionDescriptor] = {
    FunctionName.END_CONVERSATION: FunctionDescriptor(
        FunctionName.END_CONVERSATION,
        "End the conversation once the customer has nothing else they need, "
        "after saying goodbye. On a phone call this hangs up.",
        EndConversationArgs,
    ),
    FunctionName.CHECK_AVAILABILITY: FunctionDescriptor(
        FunctionName.CHECK_AVAILABILITY,
        "Check whether a specific date/time is available. Use this FIRST when "
        'the customer gives a specific time (like "tomorrow 3 pm") to verify '
        "availability before booking. Without a time it returns working hours.",
        CheckAvailabilityArgs,
    ),
    FunctionName.GET_SLOTS: FunctionDescriptor(
        FunctionName.GET_SLOTS,
        "List open appointment slots between a start and an end time.",
        GetSlotsArgs,
    ),
    FunctionName.BOOK_APPOINTMENT: FunctionDescriptor(
        FunctionName.BOOK_APPOINTMENT,
        "Book the appointment once the customer confirms (\"yes\", \"book it\", "
        '"confirm", "go ahead"...) after an availability check. Requires the '
        "customer's name and email. This is the final booking step.",
        BookAppointmentArgs,
    ),
    FunctionName.INITIATE_VOICE_CALL: FunctionDescriptor(
        FunctionName.INITIATE_VOICE_CALL,
        "Place a phone call to the customer. Use when the customer asks to be "
        "called or a voice follow-up is needed.",
        InitiateVoiceCallArgs,
    ),
}

_SCHEDULING_FUNCTIONS = (
    FunctionName.CHECK_AVAILABILITY,
    FunctionName.GET_SLOTS,
    FunctionName.BOOK_APPOINTMENT,
)


def build_function_descriptors(
    session: ConversationSession, *, telephony_configured: bool,
) -> list[FunctionDescriptor]:
    """Functions offered on this turn.

    Scheduling functions need complete scheduling credentials on the
    session; the voice-call function needs telephony to be configured.
    ``end_conversation`` is always offered.
    """
    names = [FunctionName.END_CONVERSATION]
    if session.credentials is not None and session.credentials.is_complete:
        names.extend(_SCHEDULING_FUNCTIONS)
    if telephony_configured:
        names.append(FunctionName.INITIATE_VOICE_CALL)
    return [FUNCTION_DESCRIPTORS[name] for name in names]


# ── Results and collaborators ───────────────────────────────────────


@dataclass
class FunctionResult:
    success: bool
    user_message: str
    structured: dict[str, Any] = field(default_factory=dict)

    @property
    def ends_conversation(self) -> bool:
        return bool(self.structured.get("end_conversation"))

    def to_payload(self) -> dict[str, Any]:
        """What is replayed to the model as the function's result."""
        return {"success": self.success, "message": self.user_message, **self.structured}


@dataclass(frozen=True)
class VoiceCallRequest:
    phone_number: str
    agent_prompt: str
    customer_name: str | None = None
    reason: str | None = None
    credentials: SchedulingCredentials | None = None


@dataclass(frozen=True)
class CallPlacement:
    success: bool
    call_id: str | None = None
    call_sid: str | None = None
    error: str | None = None


class VoiceCaller(Protocol):
    def place_call(self, request: VoiceCallRequest) -> CallPlacement:
        ...


def _validate_email(email: str) -> str | None:
    """Return a corrective message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "I'll need an email address to book the appointment. What email should I use?"
    email = email.strip()
    if not _EMAIL_RE.match(email):
        return (
            f'"{email}" does not look like a valid email address. '
            "Could you double-check it for me?"
        )
    return None


def summarize_working_hours(schedule: Schedule) -> str | None:
    """Render e.g. ``Monday, Tuesday: 09:00 - 17:00 (Europe/Paris)``."""
    if not schedule.availability:
        return None
    parts = [
        f"{', '.join(_DAY_NAMES[d] for d in rule.days if 0 <= d < 7)}: "
        f"{rule.start_time} - {rule.end_time}"
        for rule in schedule.availability
    ]
    return f"{', '.join(parts)} ({schedule.time_zone})"


def find_conflict(interval: UtcInterval, busy: list[BusyInterval]) -> BusyInterval | None:
    """First busy interval overlapping *interval* (half-open), if any."""
    for item in busy:
        start, end = parse_instant(item.start), parse_instant(item.end)
        if start is None or end is None:
            logger.debug("Skipping unparseable busy interval %s", item)
            continue
        if intervals_overlap(interval.start, interval.end, start, end):
            return item
    return None


# ── Dispatcher ──────────────────────────────────────────────────────


class FunctionDispatcher:
    """Executes model function calls against the scheduling and telephony
    providers.

    The only session state a handler touches is ``session.context``; the
    caller is responsible for saving the session afterwards.
    """

    def __init__(
        self,
        scheduling: CalcomClient,
        telephony: TwilioVoiceClient,
        voice_caller: VoiceCaller | None = None,
    ):
        self._scheduling = scheduling
        self._telephony = telephony
        self._voice_caller = voice_caller
        self._handlers: dict[FunctionName, Callable[[Any, ConversationSession], FunctionResult]] = {
            FunctionName.END_CONVERSATION: self._end_conversation,
            FunctionName.CHECK_AVAILABILITY: self._check_availability,
            FunctionName.GET_SLOTS: self._get_slots,
            FunctionName.BOOK_APPOINTMENT: self._book_appointment,
            FunctionName.INITIATE_VOICE_CALL: self._initiate_voice_call,
        }
        missing = set(FunctionName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler registered for {sorted(m.value for m in missing)}")

    @property
    def telephony_configured(self) -> bool:
        return self._telephony.is_configured

    def attach_voice_caller(self, voice_caller: VoiceCaller) -> None:
        """Late binding: the call lifecycle needs the orchestrator, which needs us."""
        self._voice_caller = voice_caller

    def dispatch(
        self, name: str, arguments: dict[str, Any] | None, session: ConversationSession,
    ) -> FunctionResult:
        """Validate *arguments* for function *name* and run it.

        Raises ``FunctionArgumentsError`` when the arguments do not fit the
        function's schema.  Unknown function names yield a failed result.
        """
        try:
            function = FunctionName(name)
        except ValueError:
            logger.warning("Model asked for unknown function %r", name)
            return FunctionResult(False, f"Unknown function: {name}")

        if not isinstance(arguments, dict):
            raise FunctionArgumentsError(name, f"expected an object, got {type(arguments).__name__}")
        try:
            args = FUNCTION_DESCRIPTORS[function].args_model.model_validate(arguments)
        except ValidationError as exc:
            raise FunctionArgumentsError(name, str(exc)) from exc

        result = self._handlers[function](args, session)
        logger.info(
            "Function %s for session %s → success=%s", name, session.session_id, result.success,
        )
        return result

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _credentials(session: ConversationSession) -> SchedulingCredentials | None:
        creds = session.credentials
        return creds if creds is not None and creds.is_complete else None

    def _event_type(self, creds: SchedulingCredentials) -> EventType:
        result = self._scheduling.get_event_type(creds.api_key, creds.event_type_id)
        if result.success and result.value is not None:
            return result.value
        logger.warning(
            "Event type %s unavailable (%s); assuming %d minutes",
            creds.event_type_id, result.error, DEFAULT_EVENT_LENGTH_MINUTES,
        )
        return EventType(event_type_id=creds.event_type_id, title="Appointment")

    @staticmethod
    def _not_configured() -> FunctionResult:
        return FunctionResult(
            False,
            "Online scheduling isn't set up for this agent yet, so I can't check the calendar.",
            {"error": "scheduling_not_configured"},
        )

    @staticmethod
    def _restate_time(date_str: str, raw_time: str | None) -> FunctionResult:
        return FunctionResult(
            False,
            "I didn't catch the time clearly. Could you tell me again which time you'd "
            "prefer? For example, 'tomorrow at 10 AM' or '2:30 PM'.",
            {"date": date_str, "time": raw_time, "error": "unparseable_time"},
        )

    # ── end_conversation ─────────────────────────────────────────────

    def _end_conversation(self, args: EndConversationArgs, session: ConversationSession) -> FunctionResult:
        session.context.current_step = ConversationStep.ENDING
        return FunctionResult(
            True,
            "Thank you for your time. Have a wonderful day. Goodbye!",
            {"end_conversation": True, "reason": args.reason},
        )

    # ── check_availability ───────────────────────────────────────────

    def _check_availability(self, args: CheckAvailabilityArgs, session: ConversationSession) -> FunctionResult:
        creds = self._credentials(session)
        if creds is None:
            return self._not_configured()

        date_str = parse_relative_date(args.date)
        if args.time:
            clock = to_24_hour(args.time)
            if clock is None:
                return self._restate_time(date_str, args.time)
        else:
            clock = None

        profile = self._scheduling.get_profile(creds.api_key)
        if not profile.success or profile.value is None:
            return self._assume_available(date_str, args.time, profile.error)

        if clock is None:
            return self._working_hours(date_str, creds)

        event_type = self._event_type(creds)
        interval = local_to_utc(date_str, clock, profile.value.time_zone, event_type.length_minutes)
        structured = {
            "date": date_str,
            "time": args.time,
            "start": interval.start_iso,
            "end": interval.end_iso,
            "time_zone": profile.value.time_zone,
        }

        busy = self._scheduling.get_busy_times(
            creds.api_key, creds.event_type_id, profile.value.username, date_str,
            profile.value.time_zone,
        )
        if not busy.success:
            logger.warning("Busy-time lookup failed (%s); retrying without time zone", busy.error)
            busy = self._scheduling.get_busy_times(
                creds.api_key, creds.event_type_id, profile.value.username, date_str,
            )
        if not busy.success:
            return self._assume_available(date_str, args.time, busy.error, structured)

        conflict = find_conflict(interval, busy.value or [])
        if conflict is not None:
            logger.info("Requested slot %s overlaps busy %s → %s", interval.start_iso, conflict.start, conflict.end)
            return FunctionResult(
                False,
                f"I'm sorry, but {date_str} at {args.time} is not available. "
                "Would you like to try a different time?",
                {**structured, "available": False, "verified": True},
            )
        return FunctionResult(
            True,
            f"Great! {date_str} at {args.time} is available. "
            "Would you like me to book this appointment for you?",
            {**structured, "available": True, "verified": True},
        )

    def _working_hours(self, date_str: str, creds: SchedulingCredentials) -> FunctionResult:
        schedules = self._scheduling.get_schedules(creds.api_key)
        hours = None
        if schedules.success and schedules.value:
            hours = summarize_working_hours(schedules.value[0])
        hours_text = f"Our available hours are {hours}." if hours else "Please check our available hours."
        return FunctionResult(
            True,
            f"Great! I checked availability for {date_str}. {hours_text} "
            "Please choose a time within these hours.",
            {"date": date_str, "working_hours": hours, "verified": hours is not None},
        )

    @staticmethod
    def _assume_available(
        date_str: str, raw_time: str | None, error: str | None,
        structured: dict[str, Any] | None = None,
    ) -> FunctionResult:
        logger.warning("Calendar check failed (%s); continuing without verification", error)
        when = f"{date_str} at {raw_time}" if raw_time else date_str
        return FunctionResult(
            True,
            f"I'm having trouble checking the calendar right now, but I can still help "
            f"you book {when}. Would you like me to go ahead?",
            {**(structured or {"date": date_str, "time": raw_time}), "available": True, "verified": False},
        )

    # ── get_slots ────────────────────────────────────────────────────

    def _get_slots(self, args: GetSlotsArgs, session: ConversationSession) -> FunctionResult:
        creds = self._credentials(session)
        if creds is None:
            return self._not_configured()

        result = self._scheduling.list_slots(
            creds.api_key, creds.event_type_id, args.start_time, args.end_time,
        )
        if not result.success:
            logger.warning("Slot listing failed: %s", result.error)
            return FunctionResult(
                False,
                "I couldn't retrieve available slots at the moment, but I'm still happy to help you book.",
                {"slots": []},
            )

        slots = result.value or []
        if not slots:
            return FunctionResult(
                True,
                f"I couldn't find any open slots between {args.start_time} and {args.end_time}. "
                "Would you like to try a different range?",
                {"slots": []},
            )
        listed = ", ".join(_format_slot(s) for s in slots[:MAX_LISTED_SLOTS])
        more = f" and {len(slots) - MAX_LISTED_SLOTS} more" if len(slots) > MAX_LISTED_SLOTS else ""
        return FunctionResult(
            True,
            f"I found {len(slots)} available slots between {args.start_time} and "
            f"{args.end_time}: {listed}{more}. Which one works best for you?",
            {"slots": slots},
        )

    # ── book_appointment ─────────────────────────────────────────────

    def _book_appointment(self, args: BookAppointmentArgs, session: ConversationSession) -> FunctionResult:
        creds = self._credentials(session)
        if creds is None:
            return self._not_configured()

        email_error = _validate_email(args.email)
        if email_error:
            return FunctionResult(False, email_error, {"error": "invalid_email"})

        date_str = parse_relative_date(args.date)
        clock = to_24_hour(args.time)
        if clock is None:
            return self._restate_time(date_str, args.time)

        session.context.is_booking = True
        session.context.current_step = ConversationStep.BOOKING

        profile = self._scheduling.get_profile(creds.api_key)
        if not profile.success or profile.value is None:
            logger.error("Cannot book without a profile: %s", profile.error)
            return FunctionResult(
                False,
                "We are unable to book your appointment at the moment." + SUPPORT_SUFFIX,
                {"error": profile.error, "error_code": BookingErrorCode.UNKNOWN.value},
            )

        event_type = self._event_type(creds)
        time_zone = profile.value.time_zone
        interval = local_to_utc(date_str, clock, time_zone, event_type.length_minutes)
        request = BookingRequest(
            event_type_id=creds.event_type_id,
            start=interval.start_iso,
            end=interval.end_iso,
            time_zone=time_zone,
            name=args.name.strip(),
            email=args.email.strip(),
            title=args.title or f"{event_type.title} with {args.name.strip()}",
            language=profile.value.locale,
            notes=args.notes,
        )
        booking = self._scheduling.create_booking(creds.api_key, request)

        if booking.success:
            return FunctionResult(
                True,
                f"Perfect! Your appointment has been booked for {date_str} at {args.time}. "
                f"Confirmation ID: {booking.confirmation_id}. "
                "You will receive an email confirmation shortly.",
                {
                    "booking_id": booking.booking_id,
                    "confirmation_id": booking.confirmation_id,
                    "start": interval.start_iso,
                    "end": interval.end_iso,
                    "time_zone": time_zone,
                },
            )

        code = booking.error_code or BookingErrorCode.UNKNOWN
        if code is BookingErrorCode.SLOT_TAKEN:
            message = self._slot_taken_message(creds, date_str, args.time, interval, time_zone)
        elif code is BookingErrorCode.MINIMUM_NOTICE:
            message = (
                "This time slot requires more advance notice. "
                "Please choose a time at least 24 hours in advance."
            )
        elif code is BookingErrorCode.INVALID_EVENT_LENGTH:
            message = (
                "The appointment duration doesn't match our system configuration. "
                "Please try a different time."
            )
        elif booking.error:
            message = (
                "I apologize for the inconvenience. There was an issue booking your "
                f"appointment: {booking.error}. Please try a different time."
            )
        else:
            message = "We are unable to book your appointment at the moment."

        return FunctionResult(
            False,
            message + SUPPORT_SUFFIX,
            {"error": booking.error, "error_code": code.value, "date": date_str, "time": args.time},
        )

    def _slot_taken_message(
        self, creds: SchedulingCredentials, date_str: str, raw_time: str,
        interval: UtcInterval, time_zone: str,
    ) -> str:
        """Offer up to three open times around the taken slot, when we can find any."""
        base = f"I'm sorry, but {date_str} at {raw_time} is already booked."
        window_start = interval.start - timedelta(hours=12)
        window_end = interval.start + timedelta(hours=12)
        slots = self._scheduling.list_slots(
            creds.api_key, creds.event_type_id,
            window_start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            window_end.strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        alternatives = []
        for raw in (slots.value or []) if slots.success else []:
            instant = parse_instant(raw)
            if instant is None or instant == interval.start:
                continue
            local = to_local(instant, time_zone)
            if local.date().isoformat() == date_str:
                alternatives.append(local.strftime("%H:%M"))
            if len(alternatives) == 3:
                break
        if alternatives:
            return f"{base} Some alternative times that day are {', '.join(alternatives)}. Would any of those work for you?"
        return f"{base} Would you like me to suggest some alternative times?"

    # ── initiate_voice_call ──────────────────────────────────────────

    def _initiate_voice_call(self, args: InitiateVoiceCallArgs, session: ConversationSession) -> FunctionResult:
        if not self._telephony.is_configured or self._voice_caller is None:
            return FunctionResult(
                False,
                "Voice calling is not configured, so I can't place a call right now.",
                {"error": "telephony_not_configured"},
            )

        phone = to_e164(args.phone_number)
        if phone is None:
            return FunctionResult(
                False,
                f"{args.phone_number} doesn't look like a valid phone number. "
                "Could you give it to me with the country code, for example +1234567890?",
                {"error": "invalid_phone_number"},
            )

        request = VoiceCallRequest(
            phone_number=phone,
            agent_prompt=session.agent_prompt,
            customer_name=args.customer_name,
            reason=args.reason,
            credentials=session.credentials,
        )
        try:
            placement = self._voice_caller.place_call(request)
        except Exception:
            logger.exception("Error initiating voice call to %s", mask_phone_number(phone))
            return FunctionResult(
                False,
                "I apologize, but there was an error initiating the call. Please try again later.",
                {"error": "call_failed"},
            )

        if not placement.success:
            return FunctionResult(
                False,
                f"I apologize, but I couldn't initiate the call. {placement.error or 'Please try again later.'}",
                {"error": placement.error},
            )

        who = args.customer_name or "the customer"
        why = f" to {args.reason}" if args.reason else ""
        return FunctionResult(
            True,
            f"Great! I'm calling {who} at {phone}{why}. The call should connect shortly.",
            {"call_id": placement.call_id, "call_sid": placement.call_sid},
        )


def _format_slot(raw: str) -> str:
    instant = parse_instant(raw)
    return instant.strftime("%a %d %b %H:%M UTC") if instant else raw
