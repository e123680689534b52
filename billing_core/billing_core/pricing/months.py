"""Calendar-month helpers for the dynamic price queue.

Queue items are keyed by the first day of their month.  Resolution for an
instant works on the half-open interval ``[month_start, next_month_start)``
so an instant at midnight on the 1st belongs to the new month only.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})(?:-01)?$")


def month_start(value: date | datetime) -> date:
    """Return the first day of the month containing *value*.

    Aware datetimes are converted to UTC before truncation.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        value = value.date()
    return value.replace(day=1)


def next_month_start(value: date | datetime) -> date:
    """Return the first day of the month after the one containing *value*."""
    start = month_start(value)
    if start.month == 12:
        return date(start.year + 1, 1, 1)
    return date(start.year, start.month + 1, 1)


def month_interval(at: date | datetime) -> tuple[date, date]:
    """Return the half-open ``(start, end)`` month interval containing *at*."""
    return month_start(at), next_month_start(at)


def parse_month(value: str | date | datetime) -> date:
    """Parse ``YYYY-MM`` (or ``YYYY-MM-01``) into a first-of-month date.

    Raises
    ------
    ValueError
        If the value is not a month reference or is a date other than the 1st.
    """
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        if value.day != 1:
            raise ValueError(f"Schedule months must be the first day of a month, got {value.isoformat()}")
        return value

    match = _MONTH_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid month {value!r}; expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month {value!r}; month must be 01-12")
    return date(year, month, 1)


def days_until(target: date, today: date) -> int:
    """Whole days from *today* until *target* (negative once passed)."""
    return (target - today).days
