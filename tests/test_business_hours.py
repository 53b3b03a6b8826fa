from datetime import datetime

import pytest
import pytz

from jira_mirror.analytics.metrics.business_hours import business_hours_between, elapsed_business_seconds
from jira_mirror.core.config import BusinessHoursConfig
from jira_mirror.core.exceptions import ConfigurationError

HOUR = 3600.0
CONFIG = BusinessHoursConfig(start_hour=9, end_hour=17)


def _utc(*args):
    return pytz.UTC.localize(datetime(*args))


def test_end_before_or_equal_start_is_zero():
    start = _utc(2025, 1, 6, 10)
    assert elapsed_business_seconds(start, start, CONFIG) == 0
    assert elapsed_business_seconds(start, _utc(2025, 1, 6, 9), CONFIG) == 0
    assert elapsed_business_seconds(_utc(2025, 1, 13), _utc(2025, 1, 6), CONFIG) == 0


def test_single_day_clamps_to_window():
    # Monday 08:00 -> 18:00 covers the whole 09:00-17:00 window
    assert elapsed_business_seconds(_utc(2025, 1, 6, 8), _utc(2025, 1, 6, 18), CONFIG) == 8 * HOUR


def test_partial_window():
    assert elapsed_business_seconds(_utc(2025, 1, 6, 10), _utc(2025, 1, 6, 11, 30), CONFIG) == 1.5 * HOUR


def test_outside_window_on_both_ends_of_same_day():
    assert elapsed_business_seconds(_utc(2025, 1, 6, 6), _utc(2025, 1, 6, 8, 59), CONFIG) == 0
    assert elapsed_business_seconds(_utc(2025, 1, 6, 17), _utc(2025, 1, 6, 23), CONFIG) == 0


def test_friday_to_monday_skips_weekend():
    friday = _utc(2025, 1, 10, 16)
    monday = _utc(2025, 1, 13, 10)
    assert elapsed_business_seconds(friday, monday, CONFIG) == 2 * HOUR
    assert business_hours_between(friday, monday, CONFIG) == pytest.approx(2.0)


def test_full_week_counts_each_day_once():
    assert elapsed_business_seconds(_utc(2025, 1, 6), _utc(2025, 1, 13), CONFIG) == 5 * 8 * HOUR


def test_weekend_only_interval_is_zero():
    assert elapsed_business_seconds(_utc(2025, 1, 11, 9), _utc(2025, 1, 12, 17), CONFIG) == 0


def test_custom_weekdays_by_name():
    config = BusinessHoursConfig(start_hour=9, end_hour=17, working_weekdays=frozenset({"sat", "Sunday"}))
    assert config.working_weekdays == frozenset({5, 6})
    assert elapsed_business_seconds(_utc(2025, 1, 10, 9), _utc(2025, 1, 13, 17), config) == 16 * HOUR


def test_window_follows_local_timezone():
    config = BusinessHoursConfig(start_hour=9, end_hour=17, timezone="America/New_York")
    # 09:00-17:00 EST is 14:00-22:00 UTC in January
    assert elapsed_business_seconds(_utc(2025, 1, 6, 13), _utc(2025, 1, 6, 15), config) == 1 * HOUR
    assert elapsed_business_seconds(_utc(2025, 1, 6, 21), _utc(2025, 1, 7, 1), config) == 1 * HOUR


def test_dst_change_shifts_window_in_utc():
    config = BusinessHoursConfig(start_hour=9, end_hour=17, timezone="America/New_York")
    # Monday after the March 2025 DST switch: window is 13:00-21:00 UTC
    assert elapsed_business_seconds(_utc(2025, 3, 10, 13), _utc(2025, 3, 10, 21), config) == 8 * HOUR


def test_naive_datetimes_are_read_as_utc():
    naive = elapsed_business_seconds(datetime(2025, 1, 6, 8), datetime(2025, 1, 6, 12), CONFIG)
    assert naive == 3 * HOUR


def test_pure_function_is_repeatable():
    args = (_utc(2025, 1, 3, 15, 17), _utc(2025, 2, 14, 11, 2), CONFIG)
    assert elapsed_business_seconds(*args) == elapsed_business_seconds(*args)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"start_hour": 17, "end_hour": 9},
        {"start_hour": 9, "end_hour": 9},
        {"start_hour": -1, "end_hour": 9},
        {"start_hour": 9, "end_hour": 24},
        {"timezone": "Mars/Olympus"},
        {"working_weekdays": frozenset({"funday"})},
        {"working_weekdays": frozenset({7})},
    ],
)
def test_invalid_config_rejected_at_load(kwargs):
    with pytest.raises(ConfigurationError):
        BusinessHoursConfig(**kwargs)
