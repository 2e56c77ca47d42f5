"""Unit tests for recurrence expansion.

Covers:
- Weekly, weekday, daily, monthly and yearly stepping
- Monthly clamp to the last valid day, without drift
- Nth-weekday monthly mode, clamping a missing 5th weekday
- Count and inclusive until bounds
- Exception dates removed after counting
- The per-series occurrence cap
- RecurrenceRule validation
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta

import pytest

from cally.scheduling.errors import ValidationError
from cally.scheduling.models import MAX_OCCURRENCES, RecurrenceRule, parse_model
from cally.scheduling.recurrence import expand

pytestmark = pytest.mark.unit


def rule(**data) -> RecurrenceRule:
    return parse_model(RecurrenceRule, data)


# ============================================================================
# Weekly
# ============================================================================


class TestWeekly:
    def test_four_weekly_occurrences_from_monday(self):
        dates = expand(date(2026, 2, 16), rule(frequency="weekly", interval=1, count=4))

        assert dates == [date(2026, 2, 16), date(2026, 2, 23), date(2026, 3, 2), date(2026, 3, 9)]
        assert all(later - earlier == timedelta(days=7) for earlier, later in zip(dates, dates[1:]))
        assert {day.weekday() for day in dates} == {0}

    def test_days_of_week_skip_days_before_start(self):
        # Wednesday start with Monday + Wednesday selected.
        dates = expand(date(2026, 2, 18), rule(frequency="weekly", days_of_week=[3, 1], count=3))
        assert dates == [date(2026, 2, 18), date(2026, 2, 23), date(2026, 2, 25)]

    def test_interval_skips_weeks(self):
        dates = expand(date(2026, 2, 16), rule(frequency="weekly", interval=2, count=3))
        assert dates == [date(2026, 2, 16), date(2026, 3, 2), date(2026, 3, 16)]

    def test_weekday_frequency_skips_weekends(self):
        dates = expand(date(2026, 2, 13), rule(frequency="weekday", count=4))
        assert dates == [date(2026, 2, 13), date(2026, 2, 16), date(2026, 2, 17), date(2026, 2, 18)]


# ============================================================================
# Daily / yearly
# ============================================================================


class TestDailyAndYearly:
    def test_daily_interval(self):
        dates = expand(date(2026, 2, 1), rule(frequency="daily", interval=2, count=3))
        assert dates == [date(2026, 2, 1), date(2026, 2, 3), date(2026, 2, 5)]

    def test_until_is_inclusive(self):
        dates = expand(date(2026, 2, 1), rule(frequency="daily", until="2026-02-05"))
        assert dates[-1] == date(2026, 2, 5)
        assert len(dates) == 5

    def test_yearly_leap_day_clamps_in_common_years(self):
        dates = expand(date(2028, 2, 29), rule(frequency="yearly", count=3))
        assert dates == [date(2028, 2, 29), date(2029, 2, 28), date(2030, 2, 28)]

    def test_datetime_start_contributes_its_date(self):
        start = datetime(2026, 2, 16, 23, 30, tzinfo=UTC)
        assert expand(start, rule(frequency="daily", count=1)) == [date(2026, 2, 16)]


# ============================================================================
# Monthly
# ============================================================================


class TestMonthly:
    def test_day_31_clamps_to_last_day_without_drift(self):
        dates = expand(date(2026, 1, 31), rule(frequency="monthly", count=4))
        assert dates == [date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30)]

    def test_leap_year_february(self):
        dates = expand(date(2028, 1, 30), rule(frequency="monthly", count=2))
        assert dates == [date(2028, 1, 30), date(2028, 2, 29)]

    def test_second_tuesday(self):
        dates = expand(
            date(2026, 2, 10), rule(frequency="monthly", monthly_mode="day_of_week", count=3)
        )
        assert dates == [date(2026, 2, 10), date(2026, 3, 10), date(2026, 4, 14)]
        assert {day.weekday() for day in dates} == {1}

    def test_fifth_weekday_falls_back_to_last(self):
        # 2026-01-29 is the fifth Thursday of January.
        dates = expand(
            date(2026, 1, 29), rule(frequency="monthly", monthly_mode="day_of_week", count=3)
        )
        assert dates == [date(2026, 1, 29), date(2026, 2, 26), date(2026, 3, 26)]


# ============================================================================
# Bounds and exceptions
# ============================================================================


class TestBounds:
    def test_exception_dates_removed_after_counting(self):
        dates = expand(
            date(2026, 2, 16),
            rule(frequency="weekly", count=4, exception_dates=["2026-02-23"]),
        )
        assert dates == [date(2026, 2, 16), date(2026, 3, 2), date(2026, 3, 9)]

    def test_until_rules_are_capped(self, caplog):
        with caplog.at_level(logging.WARNING, logger="cally.scheduling.recurrence"):
            dates = expand(date(2026, 1, 1), rule(frequency="daily", until="2028-01-01"))

        assert len(dates) == MAX_OCCURRENCES
        assert "truncated" in caplog.text

    def test_expansion_is_restartable(self):
        series = rule(frequency="monthly", count=6)
        assert expand(date(2026, 1, 31), series) == expand(date(2026, 1, 31), series)


class TestRuleValidation:
    def test_count_and_until_are_mutually_exclusive(self):
        with pytest.raises(ValidationError):
            rule(frequency="daily", count=3, until="2026-03-01")

    def test_end_condition_is_required(self):
        with pytest.raises(ValidationError):
            rule(frequency="daily")

    @pytest.mark.parametrize(
        "data",
        [
            {"frequency": "daily", "interval": 0, "count": 2},
            {"frequency": "daily", "count": MAX_OCCURRENCES + 1},
            {"frequency": "weekly", "days_of_week": [7], "count": 2},
            {"frequency": "fortnightly", "count": 2},
        ],
    )
    def test_invalid_rules(self, data):
        with pytest.raises(ValidationError):
            rule(**data)

    def test_days_of_week_are_sorted_and_deduplicated(self):
        assert rule(frequency="weekly", days_of_week=[5, 1, 5], count=1).days_of_week == (1, 5)
