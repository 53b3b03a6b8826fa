"""Business-hours elapsed time computation (pure functions)."""

from __future__ import annotations

from datetime import datetime, time, timedelta

import pytz

from jira_mirror.core.config import BusinessHoursConfig


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def elapsed_business_seconds(start: datetime, end: datetime, config: BusinessHoursConfig) -> float:
    """Working seconds in ``[start, end)`` under ``config``.

    The interval is split at local midnights in ``config.timezone``; every
    local calendar day it touches is visited exactly once. Working days
    contribute the overlap of the interval with that day's
    ``[start_hour, end_hour)`` window, other days contribute nothing. Each
    window is localized on its own date, so a DST change moves the window in
    UTC rather than stretching it. Naive datetimes are read as UTC.
    """
    start_utc = _as_utc(start)
    end_utc = _as_utc(end)
    if end_utc <= start_utc:
        return 0.0

    tz = config.tzinfo
    day = start_utc.astimezone(tz).date()
    last_day = end_utc.astimezone(tz).date()
    open_at = time(config.start_hour)
    close_at = time(config.end_hour)

    total = 0.0
    while day <= last_day:
        if day.weekday() in config.working_weekdays:
            window_start = tz.localize(datetime.combine(day, open_at))
            window_end = tz.localize(datetime.combine(day, close_at))
            lo = max(window_start, start_utc)
            hi = min(window_end, end_utc)
            if hi > lo:
                total += (hi - lo).total_seconds()
        day += timedelta(days=1)
    return total


def business_hours_between(start: datetime, end: datetime, config: BusinessHoursConfig) -> float:
    return elapsed_business_seconds(start, end, config) / 3600.0
