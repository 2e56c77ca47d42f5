"""Creation of single events and recurring series.

Series creation is not transactional: each occurrence is persisted by its
own store call, and a failure part-way through leaves the earlier
occurrences in place.  The result reports how many were created and carries
a :class:`PartialBatchFailure` describing the first failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from cally.providers.sync import ProviderSync
from cally.scheduling.errors import PartialBatchFailure, ValidationError
from cally.scheduling.models import (
    CalendarEvent,
    CalendarEventCreate,
    ItemSource,
    RecurrenceRule,
    Tenant,
    new_event_id,
    new_recurrence_group_id,
    parse_model,
)
from cally.scheduling.ports import EventStore
from cally.scheduling.recurrence import expand
from cally.scheduling.timezones import DEFAULT_TIMEZONE, TimezoneResolver

logger = logging.getLogger(__name__)


@dataclass
class SeriesCreationResult:
    recurrence_group_id: str
    requested: int
    events: list[CalendarEvent]
    failure: PartialBatchFailure | None = None

    @property
    def created(self) -> int:
        return len(self.events)

    @property
    def partial(self) -> bool:
        return self.failure is not None


def _build_event(
    tenant_id: str,
    data: CalendarEventCreate,
    *,
    local_date: str,
    start_time: datetime,
    end_time: datetime,
    now: datetime,
    recurrence_group_id: str | None = None,
    recurrence_rule: RecurrenceRule | None = None,
) -> CalendarEvent:
    return CalendarEvent(
        id=new_event_id(),
        tenant_id=tenant_id,
        date=local_date,
        start_time=start_time,
        end_time=end_time,
        duration_minutes=data.resolved_duration_minutes,
        is_all_day=data.is_all_day,
        title=data.title,
        description=data.description,
        location=data.location,
        notes=data.notes,
        color=data.color,
        status=data.status,
        recurrence_group_id=recurrence_group_id,
        recurrence_rule=recurrence_rule,
        has_video_conference=data.has_video_conference,
        video_room_id=data.video_room_id,
        video_template_id=data.video_template_id,
        visitor=data.visitor,
        stripe_payment_intent_id=data.stripe_payment_intent_id,
        created_at=now,
        updated_at=now,
    )


class EventCreationService:
    def __init__(
        self,
        store: EventStore,
        sync: ProviderSync,
        *,
        default_timezone: str = DEFAULT_TIMEZONE,
        provider_timeout: float = 8.0,
    ) -> None:
        self._store = store
        self._sync = sync
        self._default_timezone = default_timezone
        self._provider_timeout = provider_timeout

    def resolver_for(self, tenant: Tenant) -> TimezoneResolver:
        return TimezoneResolver(tenant.preferred_timezone, default=self._default_timezone)

    async def create_event(
        self, tenant: Tenant, data: CalendarEventCreate | Mapping[str, Any]
    ) -> CalendarEvent:
        """Persist a single event and mirror it to the tenant's providers.

        The Google push is awaited once so the returned event carries its
        Google id and any generated meeting link; every other push is
        fire-and-forget.
        """
        if not isinstance(data, CalendarEventCreate):
            data = parse_model(CalendarEventCreate, data)
        if data.recurrence_rule is not None:
            raise ValidationError(
                "Recurring events must be created as a series", field="recurrence_rule"
            )

        resolver = self.resolver_for(tenant)
        local_date = resolver.local_date(data.start_time).isoformat()
        if data.date is not None and data.date != local_date:
            raise ValidationError(
                f"date {data.date} does not match the local date of start_time ({local_date})",
                field="date",
            )

        event = _build_event(
            tenant.id,
            data,
            local_date=local_date,
            start_time=data.start_time,
            end_time=data.end_time,
            now=datetime.now(UTC),
        )
        stored = await self._store.create(tenant.id, event)
        logger.info("Created event %s for tenant %s on %s", stored.id, tenant.id, local_date)

        connected = self._sync.connected_sources(tenant)
        if ItemSource.OUTLOOK in connected:
            self._sync.enqueue_create(tenant, stored, sources=[ItemSource.OUTLOOK])
        if ItemSource.GOOGLE in connected:
            wants_meeting_link = data.has_video_conference and data.video_room_id is None
            try:
                linked = await asyncio.wait_for(
                    self._sync.push_create(
                        tenant, stored, ItemSource.GOOGLE, with_meeting_link=wants_meeting_link
                    ),
                    self._provider_timeout,
                )
            except Exception:
                logger.warning(
                    "Google push for new event %s failed; returning unlinked event",
                    stored.id,
                    exc_info=True,
                )
            else:
                if linked is not None:
                    stored = linked
        return stored

    async def create_series(
        self, tenant: Tenant, data: CalendarEventCreate | Mapping[str, Any]
    ) -> SeriesCreationResult:
        """Expand the recurrence rule and persist one event per occurrence.

        Each occurrence takes the first occurrence's local wall-clock time on
        its own date and keeps the original duration.  A failure on the very
        first occurrence propagates; later failures stop the loop and are
        reported on the result.
        """
        if not isinstance(data, CalendarEventCreate):
            data = parse_model(CalendarEventCreate, data)
        rule = data.recurrence_rule
        if rule is None:
            raise ValidationError(
                "recurrence_rule is required for a series", field="recurrence_rule"
            )

        resolver = self.resolver_for(tenant)
        local_start = resolver.local_datetime(data.start_time)
        wall_time = local_start.time()
        duration: timedelta = data.end_time - data.start_time

        dates = expand(local_start, rule)
        if not dates:
            raise ValidationError(
                "Recurrence rule produces no occurrences", field="recurrence_rule"
            )

        group_id = new_recurrence_group_id()
        now = datetime.now(UTC)
        created: list[CalendarEvent] = []
        failure: PartialBatchFailure | None = None

        for index, day in enumerate(dates):
            start_time = resolver.at_local_time(day, wall_time)
            event = _build_event(
                tenant.id,
                data,
                local_date=day.isoformat(),
                start_time=start_time,
                end_time=start_time + duration,
                now=now,
                recurrence_group_id=group_id,
                recurrence_rule=rule if index == 0 else None,
            )
            try:
                stored = await self._store.create(tenant.id, event)
            except Exception as exc:
                if index == 0:
                    raise
                failure = PartialBatchFailure(
                    requested=len(dates), created=len(created), failed_date=day, cause=exc
                )
                logger.warning("Series %s partially created: %s", group_id, failure)
                break
            created.append(stored)
            self._sync.enqueue_create(tenant, stored)

        logger.info(
            "Created %d of %d occurrences for series %s (tenant %s)",
            len(created),
            len(dates),
            group_id,
            tenant.id,
        )
        return SeriesCreationResult(
            recurrence_group_id=group_id,
            requested=len(dates),
            events=created,
            failure=failure,
        )
