"""Calendar helpers for the weekly and monthly XP windows.

All period arithmetic is done in UTC. Naive datetimes (SQLite hands them back
without tzinfo) are treated as UTC.
"""

from datetime import date, datetime, timedelta, timezone

from consensus_engine.core.errors import InvalidMonth


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_week(dt: datetime) -> tuple[int, int]:
    """Return (iso_year, iso_week) for a datetime."""
    year, week, _ = ensure_utc(dt).isocalendar()
    return year, week


def week_number(dt: datetime) -> int:
    return iso_week(dt)[1]


def week_bounds(year: int, week: int) -> tuple[datetime, datetime]:
    """[start, end) of an ISO week, Monday 00:00 UTC to the next Monday."""
    monday = date.fromisocalendar(year, week, 1)
    start = datetime(monday.year, monday.month, monday.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=7)


def previous_week(now: datetime) -> tuple[int, int]:
    return iso_week(ensure_utc(now) - timedelta(days=7))


def parse_month(month: str) -> tuple[int, int]:
    try:
        year_str, month_str = month.split("-")
        year, mon = int(year_str), int(month_str)
    except (AttributeError, ValueError):
        raise InvalidMonth(f"month must look like YYYY-MM, got {month!r}")
    if len(year_str) != 4 or not 1 <= mon <= 12:
        raise InvalidMonth(f"month must look like YYYY-MM, got {month!r}")
    return year, mon


def format_month(year: int, mon: int) -> str:
    return f"{year:04d}-{mon:02d}"


def shift_month(month: str, delta: int) -> str:
    year, mon = parse_month(month)
    index = year * 12 + (mon - 1) + delta
    return format_month(index // 12, index % 12 + 1)


def month_bounds(month: str) -> tuple[datetime, datetime, datetime]:
    """Return (start, end, award_ts) where award_ts is the last second of the month."""
    year, mon = parse_month(month)
    start = datetime(year, mon, 1, tzinfo=timezone.utc)
    next_year, next_mon = parse_month(shift_month(month, 1))
    end = datetime(next_year, next_mon, 1, tzinfo=timezone.utc)
    return start, end, end - timedelta(seconds=1)


def preceding_months(month: str, count: int) -> list[str]:
    return [shift_month(month, -i) for i in range(1, count + 1)]
