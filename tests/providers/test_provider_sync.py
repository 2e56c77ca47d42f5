"""Unit tests for ProviderSync.

Covers:
- Connected-source detection (client and tenant config both required)
- Awaited push_create linking the provider id and meeting link
- Refreshed tokens persisted after a push
- push_update skipping unlinked events
- Background enqueueing with failures contained
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import google_config, make_event

from cally.providers.sync import ProviderSync
from cally.scheduling.errors import CalendarProviderError
from cally.scheduling.models import ItemSource, OutlookCalendarConfig
from cally.testing import RecordingCalendarClient

pytestmark = pytest.mark.unit

START = datetime(2026, 2, 14, 23, 0, tzinfo=UTC)


@pytest.fixture
def google() -> RecordingCalendarClient:
    return RecordingCalendarClient(ItemSource.GOOGLE, meeting_link="https://meet.google.com/x")


@pytest.fixture
def sync(store, tenants, background, google) -> ProviderSync:
    return ProviderSync(store, tenants, background, google=google)


@pytest.fixture
def connected(sydney_tenant, tenants):
    tenant = sydney_tenant.model_copy(
        update={
            "google_calendar": google_config(),
            "outlook_calendar": OutlookCalendarConfig(access_token="a", refresh_token="r"),
        }
    )
    tenants.add(tenant)
    return tenant


class TestConnectedSources:
    def test_requires_client_and_config(self, sync, sydney_tenant, connected):
        assert sync.connected_sources(sydney_tenant) == []
        # Outlook is configured on the tenant but has no client.
        assert sync.connected_sources(connected) == [ItemSource.GOOGLE]


class TestPushCreate:
    async def test_links_provider_id_and_meeting_link(self, sync, store, connected):
        event = make_event(start=START, has_video_conference=True)
        store.add(event)

        linked = await sync.push_create(
            connected, event, ItemSource.GOOGLE, with_meeting_link=True
        )

        assert linked.google_calendar_event_id == "google_calendar-1"
        assert linked.meeting_link == "https://meet.google.com/x"
        stored = await store.get_by_id(connected.id, event.date, event.id)
        assert stored.google_calendar_event_id == "google_calendar-1"

    async def test_existing_meeting_link_is_kept(self, sync, store, connected):
        event = make_event(start=START, meeting_link="https://video.example.com/room")
        store.add(event)

        linked = await sync.push_create(
            connected, event, ItemSource.GOOGLE, with_meeting_link=True
        )

        assert linked.meeting_link == "https://video.example.com/room"

    async def test_unconnected_tenant_is_a_no_op(self, sync, store, sydney_tenant, google):
        event = make_event(start=START)
        store.add(event)

        assert await sync.push_create(sydney_tenant, event, ItemSource.GOOGLE) is None
        assert google.created == []

    async def test_refreshed_config_is_persisted(self, sync, store, tenants, connected, google):
        google.refreshed = google_config(access_token="ya29.refreshed")
        event = make_event(start=START)
        store.add(event)

        await sync.push_create(connected, event, ItemSource.GOOGLE)

        assert [provider for _, provider, _ in tenants.saved_configs] == [ItemSource.GOOGLE]
        assert (await tenants.get(connected.id)).google_calendar.access_token == "ya29.refreshed"

    async def test_provider_error_propagates(self, sync, store, connected, google):
        google.push_error = CalendarProviderError("boom", provider="google_calendar")
        event = make_event(start=START)
        store.add(event)

        with pytest.raises(CalendarProviderError):
            await sync.push_create(connected, event, ItemSource.GOOGLE)


class TestPushUpdate:
    async def test_unlinked_event_is_skipped(self, sync, connected, google):
        await sync.push_update(connected, make_event(start=START), ItemSource.GOOGLE)
        assert google.updated == []

    async def test_linked_event_is_mirrored(self, sync, connected, google):
        event = make_event(start=START, google_calendar_event_id="g123")
        await sync.push_update(connected, event, ItemSource.GOOGLE)
        assert [pid for pid, _ in google.updated] == ["g123"]


class TestEnqueue:
    async def test_enqueue_create_spawns_per_connected_source(
        self, sync, store, connected, google, background
    ):
        event = make_event(start=START)
        store.add(event)

        sync.enqueue_create(connected, event)
        assert background.pending == 1
        await background.drain()

        assert [created.id for created, _ in google.created] == [event.id]

    async def test_enqueue_update_only_for_linked_providers(
        self, sync, connected, google, background
    ):
        sync.enqueue_update(connected, make_event(start=START, outlook_calendar_event_id="o1"))
        assert background.pending == 0

        sync.enqueue_update(connected, make_event(start=START, google_calendar_event_id="g1"))
        await background.drain()
        assert [pid for pid, _ in google.updated] == ["g1"]

    async def test_background_failures_are_recorded(
        self, sync, store, connected, google, background
    ):
        google.push_error = CalendarProviderError("boom", provider="google_calendar")
        event = make_event(start=START)
        store.add(event)

        sync.enqueue_create(connected, event)
        await background.drain()

        assert [name for name, _ in background.failures] == [
            f"push-create:google_calendar:{event.id}"
        ]
