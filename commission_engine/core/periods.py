"""Calendar helpers for payment months and year-to-date windows."""
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def month_start(value: date | datetime) -> date:
    """Truncate a date or datetime to the first day of its calendar month."""
    return date(value.year, value.month, 1)


def year_bounds(value: date) -> tuple[date, date]:
    """First and last payment month of the calendar year containing ``value``."""
    return date(value.year, 1, 1), date(value.year, 12, 1)


def shift_months(value: date, months: int) -> date:
    """First day of the month ``months`` away from ``value`` (negative goes back)."""
    index = value.year * 12 + (value.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)
