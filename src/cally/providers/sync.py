"""Best-effort mirroring of native events to the tenant's calendar providers.

Native records are the source of truth.  ``enqueue_*`` methods spawn
detached background tasks and return immediately; the awaited ``push_*``
methods raise provider errors to their caller.
"""

from __future__ import annotations

import logging

from cally.core.background import BackgroundTasks
from cally.scheduling.models import (
    CalendarEvent,
    EventPatch,
    ItemSource,
    ProviderCalendarConfig,
    Tenant,
)
from cally.scheduling.ports import CalendarProviderClient, EventStore, TenantStore

logger = logging.getLogger(__name__)

_LINK_FIELDS = {
    ItemSource.GOOGLE: "google_calendar_event_id",
    ItemSource.OUTLOOK: "outlook_calendar_event_id",
}


class ProviderSync:
    def __init__(
        self,
        store: EventStore,
        tenants: TenantStore,
        background: BackgroundTasks,
        *,
        google: CalendarProviderClient | None = None,
        outlook: CalendarProviderClient | None = None,
    ) -> None:
        self._store = store
        self._tenants = tenants
        self._background = background
        self._clients: dict[ItemSource, CalendarProviderClient] = {}
        if google is not None:
            self._clients[ItemSource.GOOGLE] = google
        if outlook is not None:
            self._clients[ItemSource.OUTLOOK] = outlook

    def _provider_config(
        self, tenant: Tenant, source: ItemSource
    ) -> ProviderCalendarConfig | None:
        if source is ItemSource.GOOGLE:
            return tenant.google_calendar
        if source is ItemSource.OUTLOOK:
            return tenant.outlook_calendar
        return None

    def connected_sources(self, tenant: Tenant) -> list[ItemSource]:
        """Providers with both a client and a tenant connection."""
        return [
            source
            for source in self._clients
            if self._provider_config(tenant, source) is not None
        ]

    async def _persist_config(
        self,
        tenant: Tenant,
        source: ItemSource,
        before: ProviderCalendarConfig,
        after: ProviderCalendarConfig,
    ) -> None:
        if after != before:
            await self._tenants.save_calendar_config(tenant.id, source, after)

    # -- awaited pushes --------------------------------------------------------

    async def push_create(
        self,
        tenant: Tenant,
        event: CalendarEvent,
        source: ItemSource,
        *,
        with_meeting_link: bool = False,
    ) -> CalendarEvent | None:
        """Create *event* at *source* and record the provider linkage.

        Returns the updated native event, or None when the tenant is not
        connected to *source*.
        """
        client = self._clients.get(source)
        config = self._provider_config(tenant, source)
        if client is None or config is None:
            return None

        result, refreshed = await client.push_create(
            config, event, with_meeting_link=with_meeting_link
        )
        await self._persist_config(tenant, source, config, refreshed)

        changes: dict[str, str] = {_LINK_FIELDS[source]: result.provider_event_id}
        if result.meeting_link and not event.meeting_link:
            changes["meeting_link"] = result.meeting_link
        logger.info(
            "Linked event %s to %s event %s", event.id, source, result.provider_event_id
        )
        return await self._store.update(
            tenant.id, event.date, event.id, EventPatch.model_validate(changes)
        )

    async def push_update(self, tenant: Tenant, event: CalendarEvent, source: ItemSource) -> None:
        """Mirror *event*'s current state to *source* if it is already linked there."""
        provider_event_id = getattr(event, _LINK_FIELDS[source])
        client = self._clients.get(source)
        config = self._provider_config(tenant, source)
        if provider_event_id is None or client is None or config is None:
            return

        refreshed = await client.push_update(config, provider_event_id, event)
        await self._persist_config(tenant, source, config, refreshed)

    # -- fire-and-forget -------------------------------------------------------

    def enqueue_create(
        self,
        tenant: Tenant,
        event: CalendarEvent,
        *,
        sources: list[ItemSource] | None = None,
    ) -> None:
        for source in sources if sources is not None else self.connected_sources(tenant):
            self._background.spawn(
                self.push_create(tenant, event, source),
                name=f"push-create:{source}:{event.id}",
            )

    def enqueue_update(self, tenant: Tenant, event: CalendarEvent) -> None:
        for source, field in _LINK_FIELDS.items():
            if getattr(event, field) is None or source not in self._clients:
                continue
            self._background.spawn(
                self.push_update(tenant, event, source),
                name=f"push-update:{source}:{event.id}",
            )
