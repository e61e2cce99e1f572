"""
Calendar Day Utilities

Server-local wall-clock helpers used by the store and query layer.
Dates are "YYYY-MM-DD" strings in local time; raw sample timestamps
are epoch milliseconds.
"""

import time
from datetime import date, datetime, timedelta
from typing import Callable

from .exceptions import ValidationError

# A clock returns the current server-local datetime (naive)
Clock = Callable[[], datetime]

DATE_FORMAT = "%Y-%m-%d"


def system_clock() -> datetime:
    return datetime.now()


def now_ms() -> int:
    return int(time.time() * 1000)


def to_ms(dt: datetime) -> int:
    """Epoch milliseconds of a local (naive) or aware datetime"""
    return int(dt.timestamp() * 1000)


def format_date(d: date | datetime) -> str:
    return d.strftime(DATE_FORMAT)


def parse_date(text: str, field: str = "date") -> date:
    """
    Parse a YYYY-MM-DD string.

    Raises:
        ValidationError: if the text is not a calendar date
    """
    try:
        return datetime.strptime(text, DATE_FORMAT).date()
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date '{text}', expected YYYY-MM-DD", field=field)


def day_bounds_ms(from_date: str, to_date: str) -> tuple[int, int]:
    """
    Inclusive epoch-ms bounds covering whole local days [from, to].

    Start is 00:00:00.000 of from_date, end is 23:59:59.999 of to_date.
    """
    start_day = parse_date(from_date, "from")
    end_day = parse_date(to_date, "to")
    if end_day < start_day:
        raise ValidationError(f"Range end {to_date} is before start {from_date}", field="to")

    start = datetime.combine(start_day, datetime.min.time())
    end = datetime.combine(end_day + timedelta(days=1), datetime.min.time())
    return to_ms(start), to_ms(end) - 1


def last_n_dates(today: date, n: int) -> list[str]:
    """The n calendar dates ending at today, oldest first"""
    return [format_date(today - timedelta(days=i)) for i in range(n - 1, -1, -1)]
