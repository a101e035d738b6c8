"""Календарная арифметика в часовом поясе сервиса.

Все даты хранятся без tzinfo в часовом поясе FLEET_TIMEZONE: начало брони это
00:00:00 первого дня, конец это 23:59:59.999999 последнего дня.
"""
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from . import config

ONE_DAY = timedelta(days=1)


def business_tz() -> ZoneInfo:
    return ZoneInfo(config.FLEET_TIMEZONE)


def to_local(value: datetime) -> datetime:
    """Приводит datetime к локальному времени сервиса без tzinfo."""
    if value.tzinfo is not None:
        value = value.astimezone(business_tz()).replace(tzinfo=None)
    return value


def now() -> datetime:
    return datetime.now(business_tz()).replace(tzinfo=None)


def resolve_now(value: Optional[datetime] = None) -> datetime:
    return to_local(value) if value is not None else now()


def start_of_day(value) -> datetime:
    if isinstance(value, datetime):
        value = to_local(value).date()
    return datetime.combine(value, time.min)


def end_of_day(value) -> datetime:
    if isinstance(value, datetime):
        value = to_local(value).date()
    return datetime.combine(value, time.max)


def next_calendar_day(value: datetime) -> datetime:
    return start_of_day(value) + ONE_DAY


def day_of(value) -> date:
    if isinstance(value, datetime):
        return to_local(value).date()
    return value


def days_between(earlier, later) -> int:
    """Количество календарных дней от earlier до later (может быть отрицательным)."""
    return (day_of(later) - day_of(earlier)).days


def month_start(value) -> datetime:
    return datetime.combine(day_of(value).replace(day=1), time.min)


def next_month_start(value) -> datetime:
    # 32 дня от первого числа всегда попадают в следующий месяц
    return month_start(month_start(value) + timedelta(days=32))


def previous_month_start(value) -> datetime:
    return month_start(month_start(value) - ONE_DAY)
