"""UTC-everywhere time handling, with business-local calendar dates at the edges."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def to_local(dt: datetime, tz_name: str) -> datetime:
    """
    Convert UTC datetime to local timezone for display.

    ONLY use this at display boundaries - when rendering for humans or
    deciding which calendar day it is. All stored timestamps stay in UTC.

    Args:
        dt: UTC datetime
        tz_name: IANA timezone name (e.g., "Australia/Sydney")

    Raises:
        ValueError: If datetime is naive or timezone name is invalid
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime. Datetime must be timezone-aware."
        )

    try:
        local_tz = ZoneInfo(tz_name)
    except KeyError:
        raise ValueError(f"Unknown timezone: {tz_name}")

    return dt.astimezone(local_tz)


def today_in(tz_name: str) -> date:
    """
    Calendar date right now in a business timezone.

    Invoice and due dates are local calendar dates, so "is this overdue"
    must be answered in the business's timezone, not UTC.
    """
    return to_local(now_utc(), tz_name).date()
