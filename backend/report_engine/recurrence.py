"""Next-run computation for scheduled reports."""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from report_engine.models import ScheduleSettings

QUARTER_START_MONTHS = (1, 4, 7, 10)
DEFAULT_DAY_OF_WEEK = 1  # Monday
DEFAULT_DAY_OF_MONTH = 1


def _at(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def _clamped(year: int, month: int, day_of_month: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last))


def _add_months(year: int, month: int, n: int):
    index = year * 12 + (month - 1) + n
    return index // 12, index % 12 + 1


def compute_next_run(settings: ScheduleSettings, from_time: datetime) -> datetime:
    """
    First occurrence of the schedule strictly after `from_time`.

    Computed in the schedule's own timezone and returned as an aware UTC
    datetime. A naive `from_time` is taken to be UTC. Days of month past the
    end of a month land on that month's last day.
    """
    tz = ZoneInfo(settings.timezone)
    if from_time.tzinfo is None:
        from_time = from_time.replace(tzinfo=timezone.utc)
    local = from_time.astimezone(tz)
    hour, minute = (int(part) for part in settings.time.split(":"))
    at = time(hour, minute)

    if settings.frequency == "daily":
        candidate = _at(local.date(), at, tz)
        if candidate <= local:
            candidate = _at(local.date() + timedelta(days=1), at, tz)

    elif settings.frequency == "weekly":
        day_of_week = settings.day_of_week if settings.day_of_week is not None else DEFAULT_DAY_OF_WEEK
        # date.weekday(): Monday = 0; schedules count from Sunday = 0
        target = (day_of_week - 1) % 7
        ahead = (target - local.weekday()) % 7
        candidate = _at(local.date() + timedelta(days=ahead), at, tz)
        if candidate <= local:
            candidate = _at(local.date() + timedelta(days=ahead + 7), at, tz)

    elif settings.frequency in ("monthly", "quarterly"):
        day_of_month = settings.day_of_month or DEFAULT_DAY_OF_MONTH
        months = range(1, 13) if settings.frequency == "monthly" else QUARTER_START_MONTHS
        candidate = None
        for n in range(0, 13):
            year, month = _add_months(local.year, local.month, n)
            if month not in months:
                continue
            option = _at(_clamped(year, month, day_of_month), at, tz)
            if option > local:
                candidate = option
                break

    else:
        raise ValueError(f"Unknown frequency '{settings.frequency}'")

    return candidate.astimezone(timezone.utc)
