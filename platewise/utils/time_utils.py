"""Time and timezone utilities."""

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.parser import isoparse

UTC = ZoneInfo("UTC")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def from_utc(dt: datetime, tz: str) -> datetime:
    """Convert a UTC datetime to the given timezone."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(ZoneInfo(tz))


def is_valid_timezone(tz: str) -> bool:
    """Check whether tz names a known IANA timezone."""
    if not tz:
        return False
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""
    dt = isoparse(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_db(dt: datetime) -> str:
    """Serialize an instant for storage.

    Fixed precision keeps lexical order equal to chronological order,
    which the due-user range query relies on.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_db(value: str | None) -> datetime | None:
    """Deserialize a stored instant."""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def local_date(dt: datetime, tz: str) -> date:
    """Calendar date of an instant in the given timezone."""
    return from_utc(dt, tz).date()


def next_local_occurrence(hour: int, minute: int, tz: str, now: datetime) -> datetime:
    """Get the next UTC instant at which hour:minute occurs in tz.

    Today if that wall-clock time has not yet passed in tz, otherwise
    tomorrow. A time equal to the current local time counts as passed.

    Args:
        hour: Local hour (0-23)
        minute: Local minute
        tz: User's timezone
        now: The current datetime (UTC)

    Returns:
        The next occurrence (UTC)
    """
    zone = ZoneInfo(tz)
    local_now = now.astimezone(zone)
    target = time(hour, minute)

    candidate = datetime.combine(local_now.date(), target, tzinfo=zone)
    # Compare as instants; same-zone comparison ignores fold
    if candidate.astimezone(UTC) <= now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), target, tzinfo=zone)

    return candidate.astimezone(UTC)


def get_window_key(now: datetime, window_minutes: int) -> str:
    """Floor now (UTC) to the window boundary, e.g. "2026-03-01T07:30"."""
    now = now.astimezone(UTC)
    floored = now.replace(
        minute=now.minute - now.minute % window_minutes, second=0, microsecond=0
    )
    return floored.strftime("%Y-%m-%dT%H:%M")


def time_of_day(dt: datetime, tz: str) -> str:
    """Describe the local time of day as morning, afternoon or evening."""
    hour = from_utc(dt, tz).hour
    if hour < 12:
        return "morning"
    elif hour < 17:
        return "afternoon"
    else:
        return "evening"
