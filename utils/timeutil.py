import re
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

MINUTES_PER_DAY = 24 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_booking_date(value, tz_name: str = "UTC") -> datetime:
    """
    Strip the time of day from a booking date.

    Accepts a date, a datetime or an ISO string and returns local midnight in
    `tz_name`, expressed in UTC. Naive datetimes are read as wall-clock time
    in `tz_name`, aware ones are converted into it first, so two callers
    passing the same day at different hours land on the same instant.
    """
    tz = ZoneInfo(tz_name)

    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip())

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        day = value.date()
    elif isinstance(value, date):
        day = value
    else:
        raise ValueError("date must be a date, datetime or ISO string")

    midnight = datetime(day.year, day.month, day.day, tzinfo=tz)
    return midnight.astimezone(timezone.utc)


def parse_hhmm(value) -> str:
    """Return `value` as zero-padded HH:MM, or raise ValueError."""
    if not isinstance(value, str):
        raise ValueError("time must be a string in HH:MM format")
    m = _HHMM_RE.match(value.strip())
    if not m:
        raise ValueError("time must be in HH:MM format")
    hours, minutes = int(m.group(1)), int(m.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError("time must be between 00:00 and 23:59")
    return f"{hours:02d}:{minutes:02d}"


def to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def add_minutes(hhmm: str, minutes: int) -> str:
    # A slot ends on the day it starts; 24:00 is the latest end.
    total = to_minutes(hhmm) + minutes
    if total > MINUTES_PER_DAY:
        raise ValueError("slot may not run past midnight")
    return f"{total // 60:02d}:{total % 60:02d}"
