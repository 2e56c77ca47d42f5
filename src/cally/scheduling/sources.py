"""Event source adapters normalizing native and provider events into CalendarItems.

Provider sources never raise to the merge: :func:`fetch_degraded` bounds each
fetch with a timeout and turns any failure into an empty list plus a warning.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import date
from typing import Any

from cally.scheduling.models import (
    CalendarEvent,
    CalendarItem,
    EventStatus,
    GoogleCalendarConfig,
    ItemExtendedProps,
    ItemSource,
    OutlookCalendarConfig,
    ProviderCalendarConfig,
    Tenant,
)
from cally.scheduling.ports import CalendarProviderClient, EventStore, TenantStore
from cally.scheduling.timezones import DateWindow, TimezoneResolver, parse_utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "(No title)"
DEFAULT_EVENT_COLOR = "#6366f1"
GOOGLE_EVENT_COLOR = "#4285F4"
OUTLOOK_EVENT_COLOR = "#0078D4"


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------


def native_event_to_item(event: CalendarEvent) -> CalendarItem:
    """Project a native event into the read model (colour overrides happen in merge)."""
    return CalendarItem(
        id=event.id,
        title=event.title or DEFAULT_TITLE,
        start=event.start_time,
        end=event.end_time,
        all_day=event.is_all_day,
        color=event.color or DEFAULT_EVENT_COLOR,
        extended_props=ItemExtendedProps(
            source=ItemSource.NATIVE,
            google_calendar_event_id=event.google_calendar_event_id,
            outlook_calendar_event_id=event.outlook_calendar_event_id,
            status=event.status,
            description=event.description,
            location=event.location,
            notes=event.notes,
            meeting_link=event.meeting_link,
            has_video_conference=event.has_video_conference,
            video_room_id=event.video_room_id,
            recurrence_group_id=event.recurrence_group_id,
        ),
    )


def _google_boundary(boundary: Any, resolver: TimezoneResolver) -> tuple[Any, bool] | None:
    if not isinstance(boundary, dict):
        return None
    date_time = boundary.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_utc_timestamp(date_time), False
    all_day = boundary.get("date")
    if isinstance(all_day, str) and all_day.strip():
        return resolver.local_midnight_utc(date.fromisoformat(all_day.strip())), True
    return None


def google_event_to_item(
    payload: dict[str, Any], *, resolver: TimezoneResolver
) -> CalendarItem | None:
    """Map a Google Calendar ``events.list`` item; returns None for unusable items.

    All-day events (``date`` boundaries) are anchored at local midnight in the
    tenant's timezone.
    """
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None or payload.get("status") == "cancelled":
        return None

    start = _google_boundary(payload.get("start"), resolver)
    end = _google_boundary(payload.get("end"), resolver)
    if start is None or end is None:
        return None

    return CalendarItem(
        id=f"gcal_{event_id}",
        title=_normalize_optional_text(payload.get("summary")) or DEFAULT_TITLE,
        start=start[0],
        end=end[0],
        all_day=start[1],
        color=GOOGLE_EVENT_COLOR,
        extended_props=ItemExtendedProps(
            source=ItemSource.GOOGLE,
            provider_event_id=event_id,
            status=EventStatus.SCHEDULED,
            description=_normalize_optional_text(payload.get("description")),
            location=_normalize_optional_text(payload.get("location")),
            meeting_link=_normalize_optional_text(payload.get("hangoutLink")),
        ),
    )


def outlook_event_to_item(payload: dict[str, Any]) -> CalendarItem | None:
    """Map a Microsoft Graph ``calendarView`` item; returns None for unusable items.

    Graph omits the UTC marker on ``dateTime`` (the client asks for UTC), so
    the timestamp is asserted as UTC before parsing.
    """
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None or payload.get("isCancelled") is True:
        return None

    start = payload.get("start")
    end = payload.get("end")
    if not isinstance(start, dict) or not isinstance(end, dict):
        return None
    start_raw = _normalize_optional_text(start.get("dateTime"))
    end_raw = _normalize_optional_text(end.get("dateTime"))
    if start_raw is None or end_raw is None:
        return None

    location = payload.get("location")
    online_meeting = payload.get("onlineMeeting")
    return CalendarItem(
        id=f"outlook_{event_id}",
        title=_normalize_optional_text(payload.get("subject")) or DEFAULT_TITLE,
        start=parse_utc_timestamp(start_raw),
        end=parse_utc_timestamp(end_raw),
        all_day=payload.get("isAllDay") is True,
        color=OUTLOOK_EVENT_COLOR,
        extended_props=ItemExtendedProps(
            source=ItemSource.OUTLOOK,
            provider_event_id=event_id,
            status=EventStatus.SCHEDULED,
            description=_normalize_optional_text(payload.get("bodyPreview")),
            location=(
                _normalize_optional_text(location.get("displayName"))
                if isinstance(location, dict)
                else None
            ),
            meeting_link=(
                _normalize_optional_text(online_meeting.get("joinUrl"))
                if isinstance(online_meeting, dict)
                else None
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class EventSource(abc.ABC):
    """One origin of calendar items for a tenant and date window."""

    @property
    @abc.abstractmethod
    def source(self) -> ItemSource:
        ...

    @abc.abstractmethod
    async def list_items(
        self, tenant: Tenant, window: DateWindow, resolver: TimezoneResolver
    ) -> list[CalendarItem]:
        ...


class NativeEventSource(EventSource):
    """Native events from the store, read with the widen-then-refilter protocol.

    Store failures propagate: the store is the source of truth.
    """

    def __init__(self, store: EventStore) -> None:
        self._store = store

    @property
    def source(self) -> ItemSource:
        return ItemSource.NATIVE

    async def list_events(
        self, tenant: Tenant, window: DateWindow, resolver: TimezoneResolver
    ) -> list[CalendarEvent]:
        events = await self._store.get_by_date_range(
            tenant.id, window.store_start, window.store_end
        )
        return resolver.filter_to_local_range(events, window)

    async def list_items(
        self, tenant: Tenant, window: DateWindow, resolver: TimezoneResolver
    ) -> list[CalendarItem]:
        return [
            native_event_to_item(event)
            for event in await self.list_events(tenant, window, resolver)
        ]


class ProviderEventSource(EventSource):
    """Shared fetch-map-persist flow for external calendar providers."""

    def __init__(self, client: CalendarProviderClient, tenants: TenantStore) -> None:
        self._client = client
        self._tenants = tenants

    @property
    def source(self) -> ItemSource:
        return self._client.source

    @abc.abstractmethod
    def _config(self, tenant: Tenant) -> ProviderCalendarConfig | None:
        ...

    @abc.abstractmethod
    def _to_item(
        self, payload: dict[str, Any], resolver: TimezoneResolver
    ) -> CalendarItem | None:
        ...

    async def list_items(
        self, tenant: Tenant, window: DateWindow, resolver: TimezoneResolver
    ) -> list[CalendarItem]:
        config = self._config(tenant)
        if config is None:
            return []

        payloads, refreshed = await self._client.list_events(
            config, window.utc_start, window.utc_end
        )
        if refreshed != config:
            await self._tenants.save_calendar_config(tenant.id, self.source, refreshed)

        items: list[CalendarItem] = []
        for payload in payloads:
            try:
                item = self._to_item(payload, resolver)
            except ValueError:
                logger.warning(
                    "Skipping malformed %s event %r", self.source, payload.get("id"), exc_info=True
                )
                continue
            if item is not None:
                items.append(item)
        return items


class GoogleEventSource(ProviderEventSource):
    def _config(self, tenant: Tenant) -> GoogleCalendarConfig | None:
        return tenant.google_calendar

    def _to_item(
        self, payload: dict[str, Any], resolver: TimezoneResolver
    ) -> CalendarItem | None:
        return google_event_to_item(payload, resolver=resolver)


class OutlookEventSource(ProviderEventSource):
    def _config(self, tenant: Tenant) -> OutlookCalendarConfig | None:
        return tenant.outlook_calendar

    def _to_item(
        self, payload: dict[str, Any], resolver: TimezoneResolver
    ) -> CalendarItem | None:
        return outlook_event_to_item(payload)


async def fetch_degraded(
    source: EventSource,
    tenant: Tenant,
    window: DateWindow,
    resolver: TimezoneResolver,
    *,
    timeout: float,
) -> list[CalendarItem]:
    """Fetch from *source* within *timeout*; any failure yields ``[]`` and a warning."""
    try:
        return await asyncio.wait_for(source.list_items(tenant, window, resolver), timeout)
    except TimeoutError:
        logger.warning(
            "%s fetch for tenant %s timed out after %.1fs", source.source, tenant.id, timeout
        )
    except Exception:
        logger.warning(
            "%s fetch for tenant %s failed; showing no items from it",
            source.source,
            tenant.id,
            exc_info=True,
        )
    return []
