from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Offset-aware datetimes become naive UTC; naive ones are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1)


def month_end(year: int, month: int) -> datetime:
    """Last representable instant of the month."""
    if month == 12:
        first_next = date(year + 1, 1, 1)
    else:
        first_next = date(year, month + 1, 1)
    last_day = first_next - date.resolution
    return datetime.combine(last_day, time.max)


def previous_month(today: date) -> tuple[int, int]:
    if today.month == 1:
        return today.year - 1, 12
    return today.year, today.month - 1


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", datetime(1970, 1, 1), datetime.combine(today, time.max))
    if period == "last_month":
        year, month = previous_month(today)
        return Period("last_month", month_start(year, month), month_end(year, month))
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period(
            "custom",
            datetime.combine(start_date, time.min),
            datetime.combine(end_date, time.max),
        )
    if period != "this_month":
        raise ValueError(f"Unknown period: {period}")

    return Period(
        "this_month",
        month_start(today.year, today.month),
        month_end(today.year, today.month),
    )
