import calendar
from datetime import datetime, timezone


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month addition, clamping the day to the end of a shorter month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def as_naive_utc(value: datetime) -> datetime:
    # Columns store naive UTC timestamps.
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
