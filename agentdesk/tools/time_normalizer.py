"""Turn the loose date/time phrases a language model passes along
("tomorrow", "3 pm", "2:00 p.m.") into calendar dates, 24-hour clock times
and absolute UTC intervals.

Nothing in here raises on bad input: a conversation must keep going even
when the customer (or the model) says something odd, so every function
degrades to a documented default instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 30

# Minutes east of UTC, without DST.  Only consulted when the zone database
# cannot resolve an id (e.g. no tzdata on the host).
STATIC_UTC_OFFSETS: dict[str, int] = {
    "UTC": 0,
    "Etc/UTC": 0,
    "Europe/London": 0,
    "Europe/Paris": 60,
    "Europe/Berlin": 60,
    "Asia/Kolkata": 330,
    "Asia/Calcutta": 330,
    "Asia/Tokyo": 540,
    "Australia/Sydney": 600,
    "America/New_York": -300,
    "America/Chicago": -360,
    "America/Denver": -420,
    "America/Los_Angeles": -480,
}

_CLOCK_RE = re.compile(
    r"^(?P<hour>\d{1,2})(?:[:.](?P<minute>\d{2}))?\s*"
    r"(?:(?P<meridiem>[ap])\.?\s*m\.?)?$",
    re.IGNORECASE,
)
_NAMED_TIMES = {"noon": "12:00", "midday": "12:00", "midnight": "00:00"}


@dataclass(frozen=True)
class UtcInterval:
    """A half-open ``[start, end)`` interval in UTC."""

    start: datetime
    end: datetime

    @property
    def start_iso(self) -> str:
        return _iso_z(self.start)

    @property
    def end_iso(self) -> str:
        return _iso_z(self.end)

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def overlaps(self, other: UtcInterval) -> bool:
        return intervals_overlap(self.start, self.end, other.start, other.end)


def _iso_z(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _today() -> date:
    return datetime.now(UTC).date()


# ── Dates ────────────────────────────────────────────────────────────


def parse_relative_date(text: str | None, *, today: date | None = None) -> str:
    """Resolve a date phrase to ``YYYY-MM-DD``.

    "today" / "tomorrow" are matched case-insensitively anywhere in the
    text; anything else goes through dateutil.  Input that cannot be parsed
    at all resolves to tomorrow.
    """
    today = today or _today()
    tomorrow = today + timedelta(days=1)
    if not text or not text.strip():
        return tomorrow.isoformat()

    lowered = text.lower()
    if "tomorrow" in lowered:
        return tomorrow.isoformat()
    if "today" in lowered:
        return today.isoformat()

    try:
        parsed = date_parser.parse(
            text, fuzzy=True, default=datetime.combine(today, time()),
        )
    except (ValueError, OverflowError):
        logger.debug("Could not parse date %r, defaulting to tomorrow", text)
        return tomorrow.isoformat()
    return parsed.date().isoformat()


# ── Clock times ──────────────────────────────────────────────────────


def to_24_hour(text: str | None) -> str | None:
    """Normalize a clock time to ``HH:MM``.

    Accepts "14:00", "2:00 PM", "2 pm", "2:00 p.m.", "noon"...
    12 AM is midnight (``00:xx``) and 12 PM stays ``12:xx``.
    Returns ``None`` when the text holds no recognizable time.
    """
    if not text:
        return None
    cleaned = " ".join(text.strip().lower().split())
    if cleaned in _NAMED_TIMES:
        return _NAMED_TIMES[cleaned]

    match = _CLOCK_RE.match(cleaned)
    if match is None:
        return _fuzzy_clock(cleaned)

    hour = int(match["hour"])
    minute = int(match["minute"] or 0)
    meridiem = match["meridiem"]

    if meridiem:
        if not 1 <= hour <= 12:
            return None
        if meridiem == "p" and hour != 12:
            hour += 12
        elif meridiem == "a" and hour == 12:
            hour = 0

    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def _fuzzy_clock(text: str) -> str | None:
    """Last resort for phrasing like "around 3pm please"."""
    if not re.search(r"\d\s*(?::\d{2}|[ap]\.?\s*m\b)", text):
        return None
    try:
        parsed = date_parser.parse(text, fuzzy=True, default=datetime(2000, 1, 1))
    except (ValueError, OverflowError):
        return None
    return parsed.strftime("%H:%M")


# ── Local → UTC ──────────────────────────────────────────────────────


def utc_offset_minutes(local: datetime, timezone_id: str | None) -> int:
    """Offset (minutes east of UTC) of *timezone_id* at naive *local* time."""
    if not timezone_id:
        return 0
    try:
        zone = ZoneInfo(timezone_id)
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError):
        if timezone_id in STATIC_UTC_OFFSETS:
            return STATIC_UTC_OFFSETS[timezone_id]
        logger.warning("Unknown timezone %r, treating it as UTC", timezone_id)
        return 0
    offset = local.replace(tzinfo=zone).utcoffset()
    return int(offset.total_seconds() // 60) if offset else 0


def local_to_utc(
    date_str: str,
    clock: str,
    timezone_id: str | None,
    duration_minutes: int | None = DEFAULT_DURATION_MINUTES,
) -> UtcInterval:
    """Convert a local date + ``HH:MM`` in *timezone_id* to a UTC interval
    lasting *duration_minutes*.
    """
    try:
        local = datetime.strptime(f"{date_str} {clock}", "%Y-%m-%d %H:%M")
    except (TypeError, ValueError):
        logger.warning("Unusable local time %r %r, normalizing first", date_str, clock)
        local = datetime.strptime(
            f"{parse_relative_date(date_str)} {to_24_hour(clock) or '00:00'}",
            "%Y-%m-%d %H:%M",
        )

    minutes = duration_minutes if duration_minutes and duration_minutes > 0 else DEFAULT_DURATION_MINUTES
    start = (local - timedelta(minutes=utc_offset_minutes(local, timezone_id))).replace(tzinfo=UTC)
    return UtcInterval(start=start, end=start + timedelta(minutes=minutes))


def to_local(instant: datetime, timezone_id: str | None) -> datetime:
    """Express an aware instant as naive wall-clock time in *timezone_id*."""
    try:
        return instant.astimezone(ZoneInfo(timezone_id)).replace(tzinfo=None)
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError):
        naive = instant.astimezone(UTC).replace(tzinfo=None)
        return naive + timedelta(minutes=utc_offset_minutes(naive, timezone_id))


def intervals_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime,
) -> bool:
    """Half-open overlap test: touching intervals do not overlap."""
    return a_start < b_end and b_start < a_end


def parse_instant(value: str) -> datetime | None:
    """Parse a provider ISO-8601 timestamp into an aware UTC datetime."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
