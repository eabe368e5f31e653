"""Resolve a report time frame to a concrete [start, end] window."""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple

import pandas as pd

PRESET_DAYS = {
    "day": 1,
    "week": 7,
    "month": 30,
    "quarter": 90,
}


def resolve_time_window(
    time_frame: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Optional[Tuple[pd.Timestamp, pd.Timestamp]]:
    """
    Presets are trailing windows ending at `now`; `custom` covers whole days
    from start_date through end_date inclusive. Returns naive UTC timestamps,
    or None when the frame cannot be resolved.
    """
    if time_frame == "custom":
        if start_date is None or end_date is None:
            return None
        start = pd.Timestamp(start_date)
        end = pd.Timestamp(end_date) + pd.Timedelta(days=1) - pd.Timedelta(microseconds=1)
        return start, end

    days = PRESET_DAYS.get(time_frame)
    if days is None:
        return None
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    end = pd.Timestamp(now)
    return end - pd.Timedelta(timedelta(days=days)), end


def apply_time_window(df: pd.DataFrame, time_field: Optional[str], window) -> pd.DataFrame:
    """Keep rows whose `time_field` falls inside `window`; no-op without either."""
    if df.empty or not time_field or window is None or time_field not in df.columns:
        return df
    stamps = pd.to_datetime(df[time_field], errors="coerce", utc=True).dt.tz_localize(None)
    start, end = window
    return df[(stamps >= start) & (stamps <= end)]
