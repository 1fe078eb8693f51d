"""
Billing window helpers.

All timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so that lexicographic order in the row store matches time order.
"""

from calendar import monthrange
from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """
    Parse an ISO 8601 timestamp (Paddle sends a trailing ``Z``).

    Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def start_of_month(now: datetime) -> datetime:
    now = ensure_utc(now)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def start_of_next_month(now: datetime) -> datetime:
    start = start_of_month(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def current_month_window(now: datetime) -> tuple[datetime, datetime]:
    """Calendar month containing ``now``: [start_of_month, start_of_next_month)."""
    return start_of_month(now), start_of_next_month(now)


def is_current_window(starts_at: datetime | None, ends_at: datetime | None, now: datetime) -> bool:
    """
    Check whether ``now`` falls inside a billing window.

    A missing start never matches; a missing end is open-ended. The end is
    inclusive so a window ending exactly now is still current.
    """
    if starts_at is None:
        return False
    if starts_at > now:
        return False
    return ends_at is None or ends_at >= now


def add_one_month(value: datetime) -> datetime:
    """Same day next month, clamped to the last day of shorter months."""
    value = ensure_utc(value)
    year, month = (value.year + 1, 1) if value.month == 12 else (value.year, value.month + 1)
    last_day = monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))
