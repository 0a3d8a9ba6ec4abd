"""Cron matching and next-run computation."""
from datetime import datetime, timedelta

import pytest

from commerce_core.exceptions import CronParseError
from commerce_core.services.cron import CronExpression, next_cron_run


def minutes_of(start: datetime, count: int):
    return [start + timedelta(minutes=i) for i in range(count)]


def test_every_minute_matches_everything():
    cron = CronExpression("* * * * *")
    start = datetime(2026, 3, 1, 0, 0)

    assert all(cron.matches(moment) for moment in minutes_of(start, 24 * 60))


def test_step_minutes():
    cron = CronExpression("*/15 * * * *")
    start = datetime(2026, 3, 1, 10, 0)

    matched = [m.minute for m in minutes_of(start, 60) if cron.matches(m)]

    assert matched == [0, 15, 30, 45]


def test_lists_ranges_and_range_steps():
    cron = CronExpression("5,10 9-17/4 * * *")
    start = datetime(2026, 3, 1, 0, 0)

    matched = [(m.hour, m.minute) for m in minutes_of(start, 24 * 60) if cron.matches(m)]

    assert matched == [(9, 5), (9, 10), (13, 5), (13, 10), (17, 5), (17, 10)]


def test_weekday_zero_is_sunday():
    cron = CronExpression("0 0 * * 0")

    assert cron.matches(datetime(2026, 10, 18, 0, 0))  # Sunday
    assert not cron.matches(datetime(2026, 10, 19, 0, 0))  # Monday


def test_day_and_weekday_must_both_match():
    # 1st of the month AND a Sunday; 1 March 2026 is a Sunday, 1 April is not
    cron = CronExpression("0 12 1 * 0")

    assert cron.matches(datetime(2026, 3, 1, 12, 0))
    assert not cron.matches(datetime(2026, 4, 1, 12, 0))
    assert not cron.matches(datetime(2026, 3, 8, 12, 0))


def test_day_and_month_fields():
    cron = CronExpression("30 6 1 1 *")

    assert cron.matches(datetime(2027, 1, 1, 6, 30))
    assert not cron.matches(datetime(2027, 2, 1, 6, 30))


@pytest.mark.parametrize("expression", [
    "61 * * * *",
    "* * *",
    "",
    "a * * * *",
    "* * * * * *",
    "* 25 * * *",
])
def test_malformed_expressions_raise(expression):
    with pytest.raises(CronParseError):
        CronExpression(expression)


def test_next_run_is_next_matching_minute():
    now = datetime(2026, 3, 1, 10, 7, 30)

    assert next_cron_run("*/15 * * * *", now) == datetime(2026, 3, 1, 10, 15)


def test_next_run_is_strictly_after_now():
    now = datetime(2026, 3, 1, 10, 15, 0)

    assert next_cron_run("*/15 * * * *", now) == datetime(2026, 3, 1, 10, 30)


def test_next_run_crosses_midnight():
    now = datetime(2026, 3, 1, 23, 59, 10)

    assert next_cron_run("0 0 * * *", now) == datetime(2026, 3, 2, 0, 0)


def test_malformed_expression_falls_back_to_one_minute():
    now = datetime(2026, 3, 1, 10, 7, 30)

    assert next_cron_run("not a cron", now) == now + timedelta(minutes=1)


def test_no_match_in_search_window_falls_back_to_one_minute():
    now = datetime(2026, 3, 1, 10, 0)

    assert next_cron_run("0 12 * * *", now, search_minutes=10) == now + timedelta(minutes=1)
    # next 1 January is far beyond the default window
    assert next_cron_run("0 0 1 1 *", now) == now + timedelta(minutes=1)
