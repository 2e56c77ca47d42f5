"""Timezone-boundary resolution between tenant-local dates and UTC instants.

Events are stored with absolute UTC instants, but "today" and "this date
range" are meant in the tenant's local timezone.  A single local date can
span two UTC dates, so every date-range read goes through the same
widen-then-refilter protocol:

1. :meth:`TimezoneResolver.window` computes the requested local-date window,
   the exact UTC instant window for provider queries, and a store-date window
   widened on whichever side UTC trails (or leads) local time.
2. :meth:`TimezoneResolver.filter_to_local_range` re-derives each event's
   local date from its ``start_time`` and drops anything outside the request.

Unrecognized timezone names fail closed: the resolver falls back to the
configured default zone (and finally UTC) instead of raising.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Protocol, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cally.scheduling.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Australia/Sydney"

_LOCAL_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_LONG_FRACTION_PATTERN = re.compile(r"\.(\d{7,})")


class _Timed(Protocol):
    start_time: datetime


_TimedT = TypeVar("_TimedT", bound=_Timed)


# ---------------------------------------------------------------------------
# UTC helpers
# ---------------------------------------------------------------------------


def to_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_utc_iso(value: datetime) -> str:
    """Render *value* as a fixed-width ``YYYY-MM-DDTHH:MM:SS.mmmZ`` string.

    Every rendered instant has the same width and the same ``Z`` suffix, so
    the strings order lexicographically exactly as the instants do.
    """
    normalized = to_utc(value)
    return f"{normalized.strftime('%Y-%m-%dT%H:%M:%S')}.{normalized.microsecond // 1000:03d}Z"


def parse_utc_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, asserting UTC when no offset is present.

    Provider payloads (notably Microsoft Graph) omit the UTC marker and carry
    seven fractional digits; both are normalized before parsing.
    """
    normalized = value.strip()
    if normalized.endswith(("Z", "z")):
        normalized = f"{normalized[:-1]}+00:00"
    normalized = _LONG_FRACTION_PATTERN.sub(lambda m: f".{m.group(1)[:6]}", normalized)
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid ISO-8601 timestamp: {value!r}") from exc
    return to_utc(parsed)


# ---------------------------------------------------------------------------
# Local-date helpers
# ---------------------------------------------------------------------------


def resolve_timezone(name: str | None, *, default: str = DEFAULT_TIMEZONE) -> tzinfo:
    """Resolve an IANA timezone name, falling back to *default* and then UTC."""
    for candidate in (name, default):
        if candidate is None or not candidate.strip():
            continue
        try:
            return ZoneInfo(candidate.strip())
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unrecognized timezone %r; falling back", candidate)
    return UTC


def parse_local_date(value: str | date, *, field: str = "date") -> date:
    """Parse a strict ``YYYY-MM-DD`` local date string."""
    if isinstance(value, datetime):
        raise ValidationError(f"{field} must be a date, not a datetime", field=field)
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or _LOCAL_DATE_PATTERN.fullmatch(value.strip()) is None:
        raise ValidationError(f"{field} must use YYYY-MM-DD format", field=field)
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValidationError(f"{field} is not a valid calendar date", field=field) from exc


@dataclass(frozen=True)
class DateWindow:
    """A requested local-date range and the query windows derived from it.

    ``store_start``/``store_end`` bound the persistence query; they are at
    least as wide as the requested local range and also cover every UTC date
    touched by ``[utc_start, utc_end)``.
    """

    start_date: date
    end_date: date
    store_start: date
    store_end: date
    utc_start: datetime
    utc_end: datetime

    def contains(self, local_date: date) -> bool:
        return self.start_date <= local_date <= self.end_date


class TimezoneResolver:
    """Tenant-scoped conversions between local calendar dates and UTC."""

    def __init__(self, timezone: str | None, *, default: str = DEFAULT_TIMEZONE) -> None:
        self.requested = timezone
        self.zone = resolve_timezone(timezone, default=default)

    @property
    def name(self) -> str:
        return getattr(self.zone, "key", "UTC")

    def local_datetime(self, instant: datetime) -> datetime:
        return to_utc(instant).astimezone(self.zone)

    def local_date(self, instant: datetime) -> date:
        """Return the tenant-local calendar date of *instant*."""
        return self.local_datetime(instant).date()

    def today(self, now: datetime | None = None) -> date:
        return self.local_date(now or datetime.now(UTC))

    def at_local_time(self, day: date, wall_time: time) -> datetime:
        """Return the UTC instant for *wall_time* on local *day*.

        Wall times that fall in a DST gap resolve with the pre-transition
        offset, which lands them just after the gap.
        """
        local = datetime.combine(day, wall_time.replace(tzinfo=None), tzinfo=self.zone)
        return local.astimezone(UTC)

    def local_midnight_utc(self, day: date) -> datetime:
        return self.at_local_time(day, time.min)

    def localize(self, value: datetime) -> datetime:
        """Interpret a naive *value* as tenant-local wall time and return UTC."""
        if value.tzinfo is None:
            return value.replace(tzinfo=self.zone).astimezone(UTC)
        return value.astimezone(UTC)

    def parse_instant(self, value: str | datetime) -> datetime:
        """Parse an ISO instant; strings without an offset are tenant-local."""
        if isinstance(value, datetime):
            return self.localize(value)
        normalized = value.strip()
        if normalized.endswith(("Z", "z")):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ValidationError(f"Invalid date/time: {value!r}") from exc
        return self.localize(parsed)

    def window(self, start_date: str | date, end_date: str | date | None = None) -> DateWindow:
        """Compute the query windows for the local range ``[start_date, end_date]``."""
        start = parse_local_date(start_date, field="start_date")
        end = parse_local_date(end_date, field="end_date") if end_date is not None else start
        if end < start:
            raise ValidationError("end_date must not be before start_date", field="end_date")

        utc_start = self.local_midnight_utc(start)
        utc_end = self.local_midnight_utc(end + timedelta(days=1))
        last_utc_date = (utc_end - timedelta(microseconds=1)).date()
        return DateWindow(
            start_date=start,
            end_date=end,
            store_start=min(start, utc_start.date()),
            store_end=max(end, last_utc_date),
            utc_start=utc_start,
            utc_end=utc_end,
        )

    def filter_to_local_range(
        self, events: Iterable[_TimedT], window: DateWindow
    ) -> list[_TimedT]:
        """Keep only events whose local start date falls inside *window*."""
        return [event for event in events if window.contains(self.local_date(event.start_time))]

    # -- formatting ----------------------------------------------------------

    def format_time(self, instant: datetime) -> str:
        """Format the local time of *instant* as ``h:mm AM``."""
        local = self.local_datetime(instant)
        hour = local.hour % 12 or 12
        suffix = "AM" if local.hour < 12 else "PM"
        return f"{hour}:{local.minute:02d} {suffix}"

    def format_date_time(self, instant: datetime) -> str:
        local = self.local_datetime(instant)
        return f"{local.strftime('%b')} {local.day}, {local.year} at {self.format_time(instant)}"

    def greeting_period(self, now: datetime | None = None) -> str:
        """Return ``morning``, ``afternoon`` or ``evening`` for the local hour."""
        hour = self.local_datetime(now or datetime.now(UTC)).hour
        if hour < 12:
            return "morning"
        if hour < 17:
            return "afternoon"
        return "evening"
