"""
Tests for recurrence rule evaluation.

Tests cover:
- Daily, weekly, monthly and yearly expansion
- Interval anchoring to start_date's period
- Invalid calendar days skipped per period
- Window bounds, end_date bounds and max_count
- Degenerate input returning empty results
- Rule construction errors
"""

import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from recurrence.errors import DefinitionError
from recurrence.evaluator import RecurrenceRule, next_occurrences, next_run_date, occurrences_in_range

logger = logging.getLogger(__name__)

UTC = timezone.utc
START = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)  # a Monday


def at(year, month, day, hour=9, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


# ============== Daily ==============


def test_daily_thirty_day_window():
    """Daily rule over a 30-day window yields 30 ascending occurrences at start's time of day."""
    rule = RecurrenceRule(frequency="daily", start_date=START)

    result = occurrences_in_range(rule, START, START + timedelta(days=29))

    assert len(result) == 30, f"Expected 30 occurrences, got {len(result)}"
    assert result[0] == START
    assert result[-1] == at(2024, 1, 30)
    assert all(a < b for a, b in zip(result, result[1:])), "Occurrences must be strictly ascending"
    assert all(value.hour == 9 and value.minute == 0 for value in result)
    logger.info("✓ Daily expansion over 30 days")


def test_daily_interval_skips_to_window():
    """Every third day from Jan 1, windowed from Jan 10 00:00."""
    rule = RecurrenceRule(frequency="daily", start_date=START, interval=3)

    result = occurrences_in_range(rule, at(2024, 1, 10, 0), at(2024, 1, 20, 0))

    assert result == [at(2024, 1, 10), at(2024, 1, 13), at(2024, 1, 16), at(2024, 1, 19)]


def test_daily_far_window_is_not_iterated_from_start():
    rule = RecurrenceRule(frequency="daily", start_date=START)

    result = occurrences_in_range(rule, at(2900, 6, 1, 0), at(2900, 6, 3, 23))

    assert result == [at(2900, 6, 1), at(2900, 6, 2), at(2900, 6, 3)]


# ============== Weekly ==============


def test_weekly_mon_wed_fri_one_week():
    """Mon/Wed/Fri over [start, start + 7 days) yields exactly three occurrences."""
    rule = RecurrenceRule(frequency="weekly", start_date=START, days_of_week=[1, 3, 5])

    result = occurrences_in_range(rule, START, START + timedelta(days=7) - timedelta(microseconds=1))

    assert result == [at(2024, 1, 1), at(2024, 1, 3), at(2024, 1, 5)]
    logger.info("✓ Weekly Mon/Wed/Fri expansion")


def test_weekly_every_other_monday():
    """Every 2 weeks on Monday, counted from the week containing start_date."""
    rule = RecurrenceRule(frequency="weekly", start_date=START, interval=2, days_of_week=[1])

    result = occurrences_in_range(rule, START, at(2024, 2, 1, 0))

    assert result == [at(2024, 1, 1), at(2024, 1, 15), at(2024, 1, 29)]


def test_weekly_every_other_monday_far_window_keeps_alignment():
    """Windowing years ahead still lands on the same two-week cadence as from start."""
    rule = RecurrenceRule(frequency="weekly", start_date=START, interval=2, days_of_week=[1, 0])

    from_start = occurrences_in_range(rule, START, at(2030, 1, 1), max_count=1000)
    far = occurrences_in_range(rule, at(2029, 6, 1, 0), at(2029, 8, 1, 0))

    assert far == [value for value in from_start if at(2029, 6, 1, 0) <= value <= at(2029, 8, 1, 0)]
    assert len(far) > 0
    assert all(value.weekday() in (0, 6) for value in far)


def test_weekly_days_before_start_in_first_week_are_excluded():
    """Start on a Wednesday; the Monday of that same week is before start_date."""
    wednesday = at(2024, 1, 3)
    rule = RecurrenceRule(frequency="weekly", start_date=wednesday, days_of_week=[1, 3])

    result = occurrences_in_range(rule, at(2024, 1, 1, 0), at(2024, 1, 10, 23))

    assert result == [at(2024, 1, 3), at(2024, 1, 8), at(2024, 1, 10)]


def test_weekly_sunday_is_day_zero():
    rule = RecurrenceRule(frequency="weekly", start_date=START, days_of_week=[0])

    result = occurrences_in_range(rule, START, at(2024, 1, 15, 0))

    assert result == [at(2024, 1, 7), at(2024, 1, 14)]


def test_weekly_duplicate_and_unsorted_days_are_normalized():
    rule = RecurrenceRule(frequency="weekly", start_date=START, days_of_week=[5, 1, 5, 3])

    assert rule.days_of_week == (1, 3, 5)
    result = occurrences_in_range(rule, START, at(2024, 1, 7, 0))
    assert result == [at(2024, 1, 1), at(2024, 1, 3), at(2024, 1, 5)]


# ============== Monthly ==============


def test_monthly_day_31_skips_short_months():
    """Day 31 appears only in months that have it, with no rollover."""
    rule = RecurrenceRule(frequency="monthly", start_date=at(2024, 1, 31), days_of_month=[31])

    result = occurrences_in_range(rule, at(2024, 1, 1, 0), at(2024, 5, 31, 23))

    assert result == [at(2024, 1, 31), at(2024, 3, 31), at(2024, 5, 31)]
    logger.info("✓ Monthly day 31 skips February and April")


def test_monthly_multiple_days_deduplicated():
    rule = RecurrenceRule(frequency="monthly", start_date=START, days_of_month=[31, 1, 15, 15])

    result = occurrences_in_range(rule, START, at(2024, 1, 31, 23))

    assert result == [at(2024, 1, 1), at(2024, 1, 15), at(2024, 1, 31)]


def test_monthly_interval_anchored_to_start_month():
    """Every 2 months from January: Jan, Mar, May, Jul."""
    rule = RecurrenceRule(frequency="monthly", start_date=at(2024, 1, 10), interval=2, days_of_month=[10])

    result = occurrences_in_range(rule, at(2024, 4, 1, 0), at(2024, 8, 1, 0))

    assert result == [at(2024, 5, 10), at(2024, 7, 10)]


def test_monthly_february_29_only_in_leap_years():
    rule = RecurrenceRule(frequency="monthly", start_date=at(2023, 1, 1), days_of_month=[29])

    result = occurrences_in_range(rule, at(2023, 2, 1, 0), at(2024, 3, 1, 0))
    february = [value for value in result if value.month == 2]

    assert february == [at(2024, 2, 29)]


# ============== Yearly ==============


def test_yearly_uses_start_day_of_month():
    rule = RecurrenceRule(frequency="yearly", start_date=at(2024, 1, 15), months_of_year=[0, 6])

    result = occurrences_in_range(rule, at(2024, 1, 1, 0), at(2025, 12, 31, 23))

    assert result == [at(2024, 1, 15), at(2024, 7, 15), at(2025, 1, 15), at(2025, 7, 15)]


def test_yearly_leap_day_skips_non_leap_years():
    rule = RecurrenceRule(frequency="yearly", start_date=at(2024, 2, 29), months_of_year=[1])

    result = occurrences_in_range(rule, at(2024, 1, 1, 0), at(2029, 1, 1, 0))

    assert result == [at(2024, 2, 29), at(2028, 2, 29)]
    logger.info("✓ Yearly Feb 29 only in leap years")


def test_yearly_interval():
    rule = RecurrenceRule(frequency="yearly", start_date=at(2020, 3, 1), interval=3, months_of_year=[2])

    result = occurrences_in_range(rule, at(2021, 1, 1, 0), at(2030, 1, 1, 0))

    assert result == [at(2023, 3, 1), at(2026, 3, 1), at(2029, 3, 1)]


# ============== Bounds ==============


def test_end_date_bounds_results_inclusively():
    rule = RecurrenceRule(frequency="daily", start_date=START, end_date=at(2024, 1, 5))

    result = occurrences_in_range(rule, START, at(2024, 12, 31))

    assert result == [at(2024, 1, d) for d in range(1, 6)]


def test_max_count_truncates():
    rule = RecurrenceRule(frequency="daily", start_date=START)

    result = occurrences_in_range(rule, START, at(2030, 1, 1), max_count=5)

    assert result == [at(2024, 1, d) for d in range(1, 6)]


def test_adjacent_windows_concatenate():
    """Evaluating [a, b] then (b, c] equals evaluating [a, c]."""
    rule = RecurrenceRule(frequency="weekly", start_date=START, days_of_week=[2, 4, 6])
    a, b, c = START, at(2024, 2, 8), at(2024, 4, 1)

    first = occurrences_in_range(rule, a, b)
    second = occurrences_in_range(rule, b + timedelta(microseconds=1), c)

    assert first + second == occurrences_in_range(rule, a, c)


@pytest.mark.parametrize(
    "rule, window_start, window_end, max_count",
    [
        (RecurrenceRule(frequency="daily", start_date=START), at(2024, 2, 1), at(2024, 1, 1), 10),
        (RecurrenceRule(frequency="daily", start_date=START, end_date=at(2023, 12, 1)), START, at(2024, 3, 1), 10),
        (RecurrenceRule(frequency="daily", start_date=START), START, at(2024, 3, 1), 0),
        (RecurrenceRule(frequency="daily", start_date=START), at(2023, 1, 1), at(2023, 12, 31), 10),
    ],
    ids=["inverted-window", "end-before-start", "zero-max-count", "window-before-start"],
)
def test_degenerate_input_returns_empty(rule, window_start, window_end, max_count):
    assert occurrences_in_range(rule, window_start, window_end, max_count) == []


def test_naive_datetimes_are_treated_as_utc():
    rule = RecurrenceRule(frequency="daily", start_date=datetime(2024, 1, 1, 9, 0))

    result = occurrences_in_range(rule, datetime(2024, 1, 1), datetime(2024, 1, 2, 23))

    assert result == [at(2024, 1, 1), at(2024, 1, 2)]
    assert all(value.tzinfo is not None for value in result)


def test_sub_second_start_time_is_preserved():
    start = datetime(2024, 1, 1, 9, 0, 0, 250000, tzinfo=UTC)
    rule = RecurrenceRule(frequency="daily", start_date=start)

    result = occurrences_in_range(rule, start, start + timedelta(days=2))

    assert result == [start, start + timedelta(days=1), start + timedelta(days=2)]


def test_yearly_far_window_respects_interval_and_day():
    rule = RecurrenceRule(frequency="yearly", start_date=at(2020, 3, 15), interval=4, months_of_year=[2, 8])

    result = occurrences_in_range(rule, at(2400, 1, 1), at(2404, 12, 31))

    assert result == [at(2400, 3, 15), at(2400, 9, 15), at(2404, 3, 15), at(2404, 9, 15)]


def test_next_occurrences_and_next_run_date():
    rule = RecurrenceRule(frequency="daily", start_date=START)

    assert next_occurrences(rule, at(2024, 1, 2, 10), count=2) == [at(2024, 1, 3), at(2024, 1, 4)]
    assert next_run_date(rule, at(2024, 1, 2, 10)) == at(2024, 1, 3)

    ended = RecurrenceRule(frequency="daily", start_date=START, end_date=at(2024, 1, 2))
    assert next_run_date(ended, at(2024, 1, 3)) is None


# ============== Rule construction ==============


def _definition(**overrides):
    values = dict(
        id=7, frequency="weekly", interval=1, days_of_week=[1], days_of_month=[], months_of_year=[],
        start_date=START, end_date=None, active=True,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_from_definition_builds_rule():
    rule = RecurrenceRule.from_definition(_definition(days_of_week=[3, 1]))

    assert rule.frequency == "weekly"
    assert rule.days_of_week == (1, 3)
    assert rule.start_date == START


@pytest.mark.parametrize(
    "overrides",
    [
        {"frequency": "hourly"},
        {"start_date": None},
        {"interval": 0},
        {"days_of_week": []},
        {"frequency": "monthly", "days_of_month": []},
        {"frequency": "yearly", "months_of_year": []},
        {"days_of_week": [7]},
        {"frequency": "monthly", "days_of_month": [0]},
        {"frequency": "yearly", "months_of_year": [12]},
    ],
    ids=[
        "unknown-frequency", "missing-start", "zero-interval", "weekly-no-days",
        "monthly-no-days", "yearly-no-months", "weekday-out-of-range", "month-day-out-of-range",
        "month-out-of-range",
    ],
)
def test_from_definition_rejects_unusable_rules(overrides):
    with pytest.raises(DefinitionError) as exc_info:
        RecurrenceRule.from_definition(_definition(**overrides))

    assert exc_info.value.definition_id == 7
