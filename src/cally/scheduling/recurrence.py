"""Expansion of a :class:`RecurrenceRule` into concrete local calendar dates.

Calendar stepping uses :mod:`dateutil.relativedelta`, always measured from
the series start rather than from the previous occurrence, so month and year
rules never drift after passing through a short month.

Clamp policy: a ``day_of_month`` rule started on the 29th-31st lands on the
last valid day of any shorter target month (Jan 31 -> Feb 28 -> Mar 31).  A
``day_of_week`` rule started on a 5th weekday falls back to the last such
weekday in months that have only four.  Yearly rules started on Feb 29 land
on Feb 28 in common years.

``after_occurrences`` counts generated dates before ``exception_dates`` are
removed, matching RFC 5545 EXDATE semantics.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Iterator
from datetime import date, datetime, timedelta

from dateutil.relativedelta import relativedelta

from cally.scheduling.models import (
    MAX_OCCURRENCES,
    MonthlyMode,
    RecurrenceFrequency,
    RecurrenceRule,
)

logger = logging.getLogger(__name__)

# Rule numbering (Sunday = 0) for Monday through Friday.
_WEEKDAYS_MON_TO_FRI = (1, 2, 3, 4, 5)


def _rule_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def _nth_weekday_of_month(year: int, month: int, weekday: int, nth: int) -> date:
    """Return the *nth* *weekday* (Python numbering) of a month, clamped to the last."""
    first_offset = (weekday - date(year, month, 1).weekday()) % 7
    day = 1 + first_offset + 7 * (nth - 1)
    if day > calendar.monthrange(year, month)[1]:
        day -= 7
    return date(year, month, day)


def _iter_daily(start: date, rule: RecurrenceRule) -> Iterator[date]:
    step = 0
    while True:
        yield start + timedelta(days=step * rule.interval)
        step += 1


def _iter_weekly(start: date, days_of_week: tuple[int, ...], interval: int) -> Iterator[date]:
    # Weeks are anchored on the Sunday on or before the start date.
    week_start = start - timedelta(days=_rule_weekday(start))
    offsets = days_of_week or (_rule_weekday(start),)
    week = 0
    while True:
        base = week_start + timedelta(weeks=week * interval)
        for offset in offsets:
            candidate = base + timedelta(days=offset)
            if candidate >= start:
                yield candidate
        week += 1


def _iter_monthly(start: date, rule: RecurrenceRule) -> Iterator[date]:
    nth = (start.day - 1) // 7 + 1
    step = 0
    while True:
        shifted = start + relativedelta(months=step * rule.interval)
        if rule.monthly_mode is MonthlyMode.DAY_OF_WEEK:
            yield _nth_weekday_of_month(shifted.year, shifted.month, start.weekday(), nth)
        else:
            yield shifted
        step += 1


def _iter_yearly(start: date, rule: RecurrenceRule) -> Iterator[date]:
    step = 0
    while True:
        yield start + relativedelta(years=step * rule.interval)
        step += 1


def iter_occurrences(start: date, rule: RecurrenceRule) -> Iterator[date]:
    """Yield the unbounded, ascending date sequence described by *rule*."""
    match rule.frequency:
        case RecurrenceFrequency.DAILY:
            return _iter_daily(start, rule)
        case RecurrenceFrequency.WEEKLY:
            return _iter_weekly(start, rule.days_of_week, rule.interval)
        case RecurrenceFrequency.WEEKDAY:
            return _iter_weekly(start, _WEEKDAYS_MON_TO_FRI, rule.interval)
        case RecurrenceFrequency.MONTHLY:
            return _iter_monthly(start, rule)
        case RecurrenceFrequency.YEARLY:
            return _iter_yearly(start, rule)
    raise ValueError(f"Unsupported recurrence frequency: {rule.frequency!r}")


def expand(start: date | datetime, rule: RecurrenceRule) -> list[date]:
    """Expand *rule* from *start* into an ordered list of local calendar dates.

    A datetime *start* contributes its own wall-clock date, so callers should
    convert to the tenant's timezone first.  The result is finite: bounded by
    the rule's end condition and by ``MAX_OCCURRENCES``.
    """
    start_date = start.date() if isinstance(start, datetime) else start
    limit = rule.end.after_occurrences or MAX_OCCURRENCES
    until = rule.end.on_date

    generated: list[date] = []
    for occurrence in iter_occurrences(start_date, rule):
        if until is not None and occurrence > until:
            break
        if len(generated) >= limit:
            if until is not None:
                logger.warning(
                    "Recurrence from %s truncated at %d occurrences before reaching %s",
                    start_date,
                    MAX_OCCURRENCES,
                    until,
                )
            break
        generated.append(occurrence)

    excluded = set(rule.exception_dates)
    return [occurrence for occurrence in generated if occurrence not in excluded]
