"""Billing period arithmetic.

A billing period is a calendar month identified as ``"YYYY-MM"`` so that
string ordering matches chronological ordering.
"""

from datetime import date, datetime, time, timezone


def period_of(moment: date | datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def current_period(now: datetime | None = None) -> str:
    return period_of(now or datetime.now(timezone.utc))


def parse_period(period: str) -> tuple[int, int]:
    try:
        year_str, month_str = period.split("-")
        year, month = int(year_str), int(month_str)
    except ValueError as exc:
        raise ValueError(f"Invalid billing period: {period!r}") from exc
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid billing period: {period!r}")
    return year, month


def shift_period(period: str, months: int) -> str:
    year, month = parse_period(period)
    index = year * 12 + (month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def previous_period(period: str) -> str:
    return shift_period(period, -1)


def next_period(period: str) -> str:
    return shift_period(period, 1)


def period_start(period: str) -> date:
    year, month = parse_period(period)
    return date(year, month, 1)


def period_end(period: str) -> date:
    """Last calendar day of the period."""
    return date.fromordinal(period_start(next_period(period)).toordinal() - 1)


def billing_date_for(period: str, day_of_month: int) -> date:
    """Date on which ``period`` is due to be billed: a day of the next month."""
    start = period_start(next_period(period))
    return start.replace(day=max(1, min(day_of_month, 28)))


def end_of_day(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        value = value.date()
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def is_expired(value: date | datetime | None, now: datetime | None = None) -> bool:
    """A date expires only once its whole calendar day has passed."""
    if value is None:
        return True
    now = now or datetime.now(timezone.utc)
    return end_of_day(value) < now
