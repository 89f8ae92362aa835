from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS
URGENT_HOURS = 24
SOON_DAYS = 3


class Urgency(Enum):
    URGENT = ("urgent", "Urgent", "red")
    SOON = ("soon", "Soon", "yellow")
    ON_TRACK = ("on-track", "On Track", "white")

    def __init__(self, slug: str, label: str, color: str) -> None:
        self.slug = slug
        self.label = label
        self.color = color


def _whole_units(delta: timedelta, unit_seconds: int) -> int:
    # Truncates toward zero so one hour overdue counts as 0 whole days, not -1.
    return int(delta.total_seconds() / unit_seconds)


def due_date_urgency(due: datetime, now: datetime | None = None) -> Urgency:
    now = now or datetime.now()
    remaining = due - now
    if _whole_units(remaining, HOUR_SECONDS) < URGENT_HOURS:
        return Urgency.URGENT
    if _whole_units(remaining, DAY_SECONDS) <= SOON_DAYS:
        return Urgency.SOON
    return Urgency.ON_TRACK


def _clock(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def _month_day(value: datetime) -> str:
    return f"{value:%b} {value.day}"


def format_due_date(due: datetime, include_time: bool = False, now: datetime | None = None) -> str:
    now = now or datetime.now()

    if due.date() == now.date():
        return f"Today, {_clock(due)}" if include_time else "Today"
    if due.date() == now.date() + timedelta(days=1):
        return f"Tomorrow, {_clock(due)}" if include_time else "Tomorrow"

    days_away = _whole_units(due - now, DAY_SECONDS)
    if 0 < days_away < 7:
        return f"{due:%a}, {_clock(due)}" if include_time else f"{due:%A}"

    if include_time:
        return f"{_month_day(due)}, {_clock(due)}"
    return _month_day(due)


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return ""
    return f"{_month_day(value)}, {value.year} {value:%H:%M}"
