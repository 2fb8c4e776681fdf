"""Calendar helpers in the business timezone.

Stored timestamps are naive UTC; anything that depends on "today",
local midnight or a time-of-day goes through the configured timezone.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta

import pytz

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def utcnow() -> datetime:
    """Naive UTC now, the storage convention."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def to_local(moment: datetime, tz_name: str) -> datetime:
    """Convert a naive UTC datetime to an aware local one."""
    if moment.tzinfo is None:
        moment = pytz.UTC.localize(moment)
    return moment.astimezone(pytz.timezone(tz_name))


def local_today(tz_name: str, now: datetime | None = None) -> date:
    return to_local(now or utcnow(), tz_name).date()


def local_midnight_utc(tz_name: str, now: datetime | None = None) -> datetime:
    """Start of the local day containing ``now``, as naive UTC."""
    tz = pytz.timezone(tz_name)
    today = local_today(tz_name, now)
    midnight = tz.localize(datetime.combine(today, time.min))
    return midnight.astimezone(pytz.UTC).replace(tzinfo=None)


def parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")[:2]
    return time(int(hours), int(minutes))


def days_until(day: date, today: date) -> int:
    return (day - today).days


def day_name(day: date) -> str:
    return WEEKDAY_NAMES[day.weekday()]


def open_days(start: date, count: int, closed_weekdays: list[str]) -> list[date]:
    """The first ``count`` days from ``start`` that are not closed weekdays.

    Looks at most ``2 * count`` calendar days ahead.
    """
    closed = {name.lower() for name in closed_weekdays}
    out: list[date] = []
    day = start
    for _ in range(min(count * 2, 500)):
        if len(out) >= count:
            break
        if day_name(day).lower() not in closed:
            out.append(day)
        day += timedelta(days=1)
    return out


def week_start(day: date) -> date:
    """Sunday that starts the calendar week containing ``day``."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def booking_url(template: str, day: date) -> str | None:
    if not template:
        return None
    return template.replace("{date}", day.isoformat())


def format_day(day: date) -> str:
    """Short human form, e.g. ``Tue 10/06``."""
    return f"{day_name(day)[:3]} {day.strftime('%d/%m')}"
