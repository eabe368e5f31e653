from datetime import datetime, timezone

import pytest

from report_engine.models import ScheduleSettings
from report_engine.recurrence import compute_next_run

UTC = timezone.utc


def _next(from_time, **settings):
    return compute_next_run(ScheduleSettings(**settings), from_time)


def test_daily_is_strictly_after_from_time():
    assert _next(datetime(2024, 3, 15, 8, 0, tzinfo=UTC), frequency="daily", time="09:00") == \
        datetime(2024, 3, 15, 9, 0, tzinfo=UTC)
    assert _next(datetime(2024, 3, 15, 9, 0, tzinfo=UTC), frequency="daily", time="09:00") == \
        datetime(2024, 3, 16, 9, 0, tzinfo=UTC)


def test_weekly_counts_days_from_sunday():
    # 2024-03-15 is a Friday
    friday = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
    assert _next(friday, frequency="weekly", day_of_week=1, time="08:00") == datetime(2024, 3, 18, 8, 0, tzinfo=UTC)
    assert _next(friday, frequency="weekly", day_of_week=0, time="08:00") == datetime(2024, 3, 17, 8, 0, tzinfo=UTC)
    assert _next(friday, frequency="weekly", day_of_week=5, time="13:00") == datetime(2024, 3, 15, 13, 0, tzinfo=UTC)
    assert _next(friday, frequency="weekly", day_of_week=5, time="11:00") == datetime(2024, 3, 22, 11, 0, tzinfo=UTC)


def test_weekly_defaults_to_monday():
    assert _next(datetime(2024, 3, 15, tzinfo=UTC), frequency="weekly") == datetime(2024, 3, 18, tzinfo=UTC)


@pytest.mark.parametrize("from_time, expected", [
    (datetime(2024, 2, 10, tzinfo=UTC), datetime(2024, 2, 29, 6, 0, tzinfo=UTC)),
    (datetime(2023, 2, 10, tzinfo=UTC), datetime(2023, 2, 28, 6, 0, tzinfo=UTC)),
    (datetime(2024, 2, 29, 7, 0, tzinfo=UTC), datetime(2024, 3, 31, 6, 0, tzinfo=UTC)),
    (datetime(2024, 4, 1, tzinfo=UTC), datetime(2024, 4, 30, 6, 0, tzinfo=UTC)),
])
def test_monthly_clamps_to_last_day(from_time, expected):
    assert _next(from_time, frequency="monthly", day_of_month=31, time="06:00") == expected


def test_quarterly_lands_on_quarter_start_months():
    assert _next(datetime(2024, 2, 10, tzinfo=UTC), frequency="quarterly", day_of_month=1) == \
        datetime(2024, 4, 1, tzinfo=UTC)
    assert _next(datetime(2024, 11, 5, tzinfo=UTC), frequency="quarterly", day_of_month=15) == \
        datetime(2025, 1, 15, tzinfo=UTC)
    # still ahead inside the current quarter-start month
    assert _next(datetime(2024, 7, 3, tzinfo=UTC), frequency="quarterly", day_of_month=10) == \
        datetime(2024, 7, 10, tzinfo=UTC)


def test_computed_in_schedule_timezone():
    # 09:00 in New York during daylight saving time is 13:00 UTC
    result = _next(datetime(2024, 7, 1, 12, 0, tzinfo=UTC), frequency="daily", time="09:00",
                   timezone="America/New_York")
    assert result == datetime(2024, 7, 1, 13, 0, tzinfo=UTC)
    assert result.tzinfo == UTC


def test_naive_from_time_is_utc():
    assert _next(datetime(2024, 3, 15, 8, 0), frequency="daily", time="09:00") == \
        datetime(2024, 3, 15, 9, 0, tzinfo=UTC)


def test_invalid_settings_are_rejected():
    with pytest.raises(ValueError):
        ScheduleSettings(time="25:00")
    with pytest.raises(ValueError):
        ScheduleSettings(day_of_week=7)
    with pytest.raises(ValueError):
        ScheduleSettings(timezone="Mars/Olympus")
