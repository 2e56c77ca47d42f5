"""SchedulingService: the entry point wiring resolver, sources, merge and mutations.

Collaborators (stores, provider clients, payment processor, notifier) are
constructed by the process bootstrap and injected here; nothing in the
scheduling core creates its own clients.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from operator import attrgetter
from typing import Any

from cally.core.background import BackgroundTasks
from cally.core.telemetry import scheduling_span
from cally.providers.sync import ProviderSync
from cally.scheduling.errors import NotFoundError
from cally.scheduling.merge import merge
from cally.scheduling.models import (
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventUpdate,
    CalendarItem,
    EventStatus,
    Tenant,
)
from cally.scheduling.mutations import AppointmentMutationService, SeriesUpdateResult
from cally.scheduling.ports import (
    CalendarProviderClient,
    EventStore,
    NotificationSender,
    PaymentProcessor,
    TenantStore,
)
from cally.scheduling.series import EventCreationService, SeriesCreationResult
from cally.scheduling.sources import (
    GoogleEventSource,
    NativeEventSource,
    OutlookEventSource,
    ProviderEventSource,
    fetch_degraded,
)
from cally.scheduling.timezones import DEFAULT_TIMEZONE, TimezoneResolver

logger = logging.getLogger(__name__)

UPCOMING_LIMIT = 5


@dataclass
class DailyBrief:
    tenant_id: str
    timezone: str
    date: date
    greeting: str
    today: list[CalendarEvent]
    upcoming: list[CalendarEvent]


def _by_start(events: list[CalendarEvent]) -> list[CalendarEvent]:
    return sorted(events, key=attrgetter("start_time"))


class SchedulingService:
    """Tenant-scoped calendar reads and writes."""

    def __init__(
        self,
        *,
        store: EventStore,
        tenants: TenantStore,
        background: BackgroundTasks | None = None,
        google: CalendarProviderClient | None = None,
        outlook: CalendarProviderClient | None = None,
        payments: PaymentProcessor | None = None,
        notifier: NotificationSender | None = None,
        default_timezone: str = DEFAULT_TIMEZONE,
        provider_timeout: float = 8.0,
        upcoming_lookahead_days: int = 30,
    ) -> None:
        self._tenants = tenants
        self.background = background or BackgroundTasks()
        self._default_timezone = default_timezone
        self._provider_timeout = provider_timeout
        self._upcoming_lookahead_days = upcoming_lookahead_days

        self._native = NativeEventSource(store)
        self._providers: list[ProviderEventSource] = []
        if google is not None:
            self._providers.append(GoogleEventSource(google, tenants))
        if outlook is not None:
            self._providers.append(OutlookEventSource(outlook, tenants))

        self.sync = ProviderSync(store, tenants, self.background, google=google, outlook=outlook)
        self.creation = EventCreationService(
            store,
            self.sync,
            default_timezone=default_timezone,
            provider_timeout=provider_timeout,
        )
        self.mutations = AppointmentMutationService(
            store,
            self.sync,
            self.background,
            payments=payments,
            notifier=notifier,
            default_timezone=default_timezone,
        )

    # -- tenants ---------------------------------------------------------------

    async def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self._tenants.get(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)
        return tenant

    def resolver_for(self, tenant: Tenant) -> TimezoneResolver:
        return TimezoneResolver(tenant.preferred_timezone, default=self._default_timezone)

    # -- reads -----------------------------------------------------------------

    async def get_calendar(
        self,
        tenant_id: str,
        start_date: str | date,
        end_date: str | date | None = None,
    ) -> list[CalendarItem]:
        """Return the merged native and provider items for a local date range.

        Native and provider fetches run concurrently.  Provider fetches are
        bounded by the provider timeout and degrade to no items on failure;
        a native store failure propagates after the provider fetches are
        cancelled.
        """
        with scheduling_span("get_calendar", tenant_id=tenant_id):
            tenant = await self.get_tenant(tenant_id)
            resolver = self.resolver_for(tenant)
            window = resolver.window(start_date, end_date)

            try:
                async with asyncio.TaskGroup() as group:
                    native_task = group.create_task(
                        self._native.list_items(tenant, window, resolver)
                    )
                    provider_tasks = {
                        source.source: group.create_task(
                            fetch_degraded(
                                source, tenant, window, resolver, timeout=self._provider_timeout
                            )
                        )
                        for source in self._providers
                    }
            except ExceptionGroup as failures:
                # Provider fetches never raise, so this is the native read.
                raise failures.exceptions[0] from None
            provider_items = {source: task.result() for source, task in provider_tasks.items()}
            native_items = native_task.result()
            items = merge(native_items, provider_items)
            logger.info(
                "Merged %d item(s) for tenant %s from %s to %s",
                len(items),
                tenant_id,
                window.start_date,
                window.end_date,
            )
            return items

    async def get_appointments(
        self,
        tenant_id: str,
        start_date: str | date,
        end_date: str | date | None = None,
    ) -> list[CalendarEvent]:
        """Native events whose local date falls in the range, ordered by start."""
        with scheduling_span("get_appointments", tenant_id=tenant_id):
            tenant = await self.get_tenant(tenant_id)
            resolver = self.resolver_for(tenant)
            window = resolver.window(start_date, end_date)
            events = await self._native.list_events(tenant, window, resolver)
            return _by_start(events)

    async def get_event(
        self, tenant_id: str, event_id: str, date: str | None = None
    ) -> CalendarEvent:
        with scheduling_span("get_event", tenant_id=tenant_id):
            return await self.mutations.get(tenant_id, event_id, date)

    async def daily_brief(self, tenant_id: str, *, now: datetime | None = None) -> DailyBrief:
        """Today's appointments plus the next few upcoming ones, in local time."""
        with scheduling_span("daily_brief", tenant_id=tenant_id):
            now = now or datetime.now(UTC)
            tenant = await self.get_tenant(tenant_id)
            resolver = self.resolver_for(tenant)
            today = resolver.today(now)

            window = resolver.window(
                today, today + timedelta(days=self._upcoming_lookahead_days)
            )
            events = _by_start(await self._native.list_events(tenant, window, resolver))
            todays = [event for event in events if resolver.local_date(event.start_time) == today]
            upcoming = [
                event
                for event in events
                if event.start_time > now and event.status is not EventStatus.CANCELLED
            ][:UPCOMING_LIMIT]
            return DailyBrief(
                tenant_id=tenant.id,
                timezone=resolver.name,
                date=today,
                greeting=resolver.greeting_period(now),
                today=todays,
                upcoming=upcoming,
            )

    # -- writes ----------------------------------------------------------------

    async def create_event(
        self, tenant_id: str, data: CalendarEventCreate | Mapping[str, Any]
    ) -> CalendarEvent:
        with scheduling_span("create_event", tenant_id=tenant_id):
            tenant = await self.get_tenant(tenant_id)
            return await self.creation.create_event(tenant, data)

    async def create_series(
        self, tenant_id: str, data: CalendarEventCreate | Mapping[str, Any]
    ) -> SeriesCreationResult:
        with scheduling_span("create_series", tenant_id=tenant_id):
            tenant = await self.get_tenant(tenant_id)
            return await self.creation.create_series(tenant, data)

    async def update_appointment(
        self,
        tenant_id: str,
        event_id: str,
        changes: CalendarEventUpdate | Mapping[str, Any],
        *,
        date: str | None = None,
    ) -> CalendarEvent:
        with scheduling_span("update_appointment", tenant_id=tenant_id):
            tenant = await self.get_tenant(tenant_id)
            return await self.mutations.update(tenant, event_id, changes, date=date)

    async def update_following(
        self,
        tenant_id: str,
        event_id: str,
        changes: CalendarEventUpdate | Mapping[str, Any],
        *,
        date: str | None = None,
    ) -> SeriesUpdateResult:
        with scheduling_span("update_following", tenant_id=tenant_id):
            tenant = await self.get_tenant(tenant_id)
            return await self.mutations.update_following(tenant, event_id, changes, date=date)

    async def aclose(self) -> None:
        """Wait for outstanding background work to finish."""
        await self.background.drain()
