"""Pydantic data model for calendar events, recurrence rules and read items."""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any, Self, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from cally.scheduling.errors import ValidationError
from cally.scheduling.timezones import format_utc_iso, parse_utc_timestamp, to_utc

MAX_OCCURRENCES = 365
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
VIDEO_ON_RECURRING_MESSAGE = (
    "Video conferencing is not supported for recurring events. "
    "Create individual events instead."
)

_PARTITION_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

ModelT = TypeVar("ModelT", bound=BaseModel)


class EventStatus(StrEnum):
    """Lifecycle status of a calendar event."""

    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class RecurrenceFrequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    WEEKDAY = "weekday"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class MonthlyMode(StrEnum):
    DAY_OF_MONTH = "day_of_month"
    DAY_OF_WEEK = "day_of_week"


class ItemSource(StrEnum):
    """Origin of a :class:`CalendarItem`."""

    NATIVE = "native"
    GOOGLE = "google_calendar"
    OUTLOOK = "outlook_calendar"


def new_event_id() -> str:
    return f"evt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def new_recurrence_group_id() -> str:
    return f"rgrp_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def parse_model(model: type[ModelT], data: Mapping[str, Any]) -> ModelT:
    """Validate *data* into *model*, converting pydantic errors to ``ValidationError``."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = str(first.get("msg", "invalid value")).removeprefix("Value error, ")
        raise ValidationError(
            f"{location}: {message}" if location else message,
            field=location or None,
        ) from exc


def _coerce_utc(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, str):
        return parse_utc_timestamp(value)
    return value


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


class RecurrenceEnd(BaseModel):
    """Termination condition: an occurrence count or an inclusive end date."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    after_occurrences: int | None = Field(default=None, ge=1, le=MAX_OCCURRENCES)
    on_date: date | None = None

    @model_validator(mode="after")
    def _exactly_one_bound(self) -> Self:
        if (self.after_occurrences is None) == (self.on_date is None):
            raise ValueError("exactly one of after_occurrences or on_date must be set")
        return self


class RecurrenceRule(BaseModel):
    """Immutable description of a repeating series.

    ``days_of_week`` uses 0 = Sunday through 6 = Saturday and only applies to
    weekly rules.  ``count``/``until`` are accepted as shorthands for
    ``end.after_occurrences``/``end.on_date``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1, le=99)
    days_of_week: tuple[int, ...] = ()
    monthly_mode: MonthlyMode = MonthlyMode.DAY_OF_MONTH
    end: RecurrenceEnd
    exception_dates: tuple[date, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        values = dict(data)
        count = values.pop("count", None)
        until = values.pop("until", None)
        if count is not None or until is not None:
            if "end" in values:
                raise ValueError("use either end or count/until, not both")
            values["end"] = {"after_occurrences": count, "on_date": until}
        return values

    @field_validator("days_of_week")
    @classmethod
    def _normalize_days(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for day in value:
            if not 0 <= day <= 6:
                raise ValueError("days_of_week entries must be between 0 (Sunday) and 6")
        return tuple(sorted(set(value)))

    @field_validator("exception_dates")
    @classmethod
    def _normalize_exceptions(cls, value: tuple[date, ...]) -> tuple[date, ...]:
        return tuple(sorted(set(value)))


# ---------------------------------------------------------------------------
# Tenants and provider configs
# ---------------------------------------------------------------------------


class ProviderCalendarConfig(BaseModel):
    """OAuth token state for one connected calendar provider."""

    model_config = ConfigDict(extra="forbid")

    access_token: str
    refresh_token: str
    token_expiry: datetime | None = None
    email: str | None = None

    @field_validator("token_expiry", mode="before")
    @classmethod
    def _normalize_expiry(cls, value: Any) -> Any:
        return _coerce_utc(value)

    def needs_refresh(self, now: datetime | None = None) -> bool:
        if self.token_expiry is None:
            return False
        return self.token_expiry - TOKEN_REFRESH_MARGIN <= (now or datetime.now(UTC))


class GoogleCalendarConfig(ProviderCalendarConfig):
    calendar_id: str = "primary"


class OutlookCalendarConfig(ProviderCalendarConfig):
    calendar_id: str | None = None


class Tenant(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str = ""
    email: str | None = None
    timezone: str | None = None
    booking_timezone: str | None = None
    google_calendar: GoogleCalendarConfig | None = None
    outlook_calendar: OutlookCalendarConfig | None = None

    @property
    def preferred_timezone(self) -> str | None:
        return self.timezone or self.booking_timezone


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Visitor(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    email: str | None = None
    phone: str | None = None


class CalendarEvent(BaseModel):
    """One bookable calendar entry, keyed by ``(tenant_id, date, id)``.

    ``date`` is the tenant-local date of ``start_time``.  Only the first
    occurrence of a series stores ``recurrence_rule``; later occurrences carry
    just the shared ``recurrence_group_id``.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    date: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int | None = Field(default=None, ge=1)
    is_all_day: bool = False

    title: str
    description: str | None = None
    location: str | None = None
    notes: str | None = None
    color: str | None = None
    status: EventStatus = EventStatus.SCHEDULED

    recurrence_group_id: str | None = None
    recurrence_rule: RecurrenceRule | None = None

    google_calendar_event_id: str | None = None
    outlook_calendar_event_id: str | None = None

    meeting_link: str | None = None
    has_video_conference: bool = False
    video_room_id: str | None = None
    video_template_id: str | None = None

    visitor: Visitor | None = None

    stripe_payment_intent_id: str | None = None
    refund_amount_cents: int | None = None
    stripe_refund_id: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("date")
    @classmethod
    def _validate_partition_date(cls, value: str) -> str:
        if _PARTITION_DATE_PATTERN.fullmatch(value) is None:
            raise ValueError("date must use YYYY-MM-DD format")
        date.fromisoformat(value)
        return value

    @field_validator(
        "start_time", "end_time", "cancelled_at", "created_at", "updated_at", mode="before"
    )
    @classmethod
    def _normalize_instants(cls, value: Any) -> Any:
        return _coerce_utc(value)

    @model_validator(mode="after")
    def _validate_invariants(self) -> Self:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if self.recurrence_rule is not None and self.has_video_conference:
            raise ValueError(VIDEO_ON_RECURRING_MESSAGE)
        return self

    @property
    def is_series_definition(self) -> bool:
        return self.recurrence_rule is not None

    @property
    def is_series_member(self) -> bool:
        return self.recurrence_group_id is not None and self.recurrence_rule is None

    @property
    def span(self) -> timedelta:
        return self.end_time - self.start_time


class CalendarEventCreate(BaseModel):
    """Input for creating a single event or a recurring series."""

    model_config = ConfigDict(extra="forbid")

    title: str
    start_time: datetime
    end_time: datetime
    date: str | None = None
    duration_minutes: int | None = Field(default=None, ge=1)
    is_all_day: bool = False
    description: str | None = None
    location: str | None = None
    notes: str | None = None
    color: str | None = None
    status: EventStatus = EventStatus.SCHEDULED
    recurrence_rule: RecurrenceRule | None = None
    has_video_conference: bool = False
    video_room_id: str | None = None
    video_template_id: str | None = None
    visitor: Visitor | None = None
    stripe_payment_intent_id: str | None = None

    @field_validator("title")
    @classmethod
    def _require_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title is required")
        return normalized

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _normalize_instants(cls, value: Any) -> Any:
        return _coerce_utc(value)

    @model_validator(mode="after")
    def _validate_input(self) -> Self:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if self.recurrence_rule is not None and (
            self.has_video_conference or self.video_room_id is not None
        ):
            raise ValueError(VIDEO_ON_RECURRING_MESSAGE)
        return self

    @property
    def resolved_duration_minutes(self) -> int:
        if self.duration_minutes is not None:
            return self.duration_minutes
        return max(1, round((self.end_time - self.start_time).total_seconds() / 60))


_REQUIRED_UPDATE_FIELDS = frozenset({"title", "status", "start_time", "end_time", "is_all_day"})


class CalendarEventUpdate(BaseModel):
    """Caller-facing partial update; only explicitly set fields are applied."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    location: str | None = None
    notes: str | None = None
    color: str | None = None
    status: EventStatus | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_minutes: int | None = Field(default=None, ge=1)
    is_all_day: bool | None = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _normalize_instants(cls, value: Any) -> Any:
        return _coerce_utc(value)

    @field_validator(*_REQUIRED_UPDATE_FIELDS)
    @classmethod
    def _reject_clearing(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            raise ValueError(f"{info.field_name} cannot be cleared")
        return value

    @model_validator(mode="after")
    def _validate_times(self) -> Self:
        if (
            self.start_time is not None
            and self.end_time is not None
            and self.end_time <= self.start_time
        ):
            raise ValueError("end_time must be after start_time")
        return self

    def changed_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class EventPatch(BaseModel):
    """Store-level partial update enumerating every mutable event field."""

    model_config = ConfigDict(extra="forbid")

    date: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_minutes: int | None = None
    is_all_day: bool | None = None
    title: str | None = None
    description: str | None = None
    location: str | None = None
    notes: str | None = None
    color: str | None = None
    status: EventStatus | None = None
    google_calendar_event_id: str | None = None
    outlook_calendar_event_id: str | None = None
    meeting_link: str | None = None
    refund_amount_cents: int | None = None
    stripe_refund_id: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None

    def changes(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


def apply_patch(
    event: CalendarEvent, patch: EventPatch, *, now: datetime | None = None
) -> CalendarEvent:
    """Return *event* with *patch* applied and re-validated."""
    data = event.model_dump()
    data.update(patch.changes())
    data["updated_at"] = now or datetime.now(UTC)
    return CalendarEvent.model_validate(data)


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------


class ItemExtendedProps(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    source: ItemSource
    provider_event_id: str | None = None
    google_calendar_event_id: str | None = None
    outlook_calendar_event_id: str | None = None
    status: EventStatus | None = None
    description: str | None = None
    location: str | None = None
    notes: str | None = None
    meeting_link: str | None = None
    has_video_conference: bool = False
    video_room_id: str | None = None
    recurrence_group_id: str | None = None


class CalendarItem(BaseModel):
    """Derived read-model entry unifying native, Google and Outlook events.

    ``start`` and ``end`` are always fixed-width ``...Z`` UTC strings.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    title: str
    start: str
    end: str
    all_day: bool = False
    color: str
    extended_props: ItemExtendedProps

    @field_validator("start", "end", mode="before")
    @classmethod
    def _canonical_instant(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return format_utc_iso(value)
        if isinstance(value, str):
            return format_utc_iso(parse_utc_timestamp(value))
        return value
