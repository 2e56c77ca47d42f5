"""Unit tests for event source adapters.

Covers:
- Google and Outlook payload mapping, defaults and skipped items
- Outlook timestamps without a UTC marker
- Native source widen-then-refilter reads
- Provider fetch degradation on timeout and failure
- Refreshed provider configs persisted through the tenant store
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime

import pytest
from conftest import google_config, make_event

from cally.scheduling.errors import CalendarProviderError
from cally.scheduling.models import ItemSource, OutlookCalendarConfig
from cally.scheduling.sources import (
    DEFAULT_EVENT_COLOR,
    DEFAULT_TITLE,
    GOOGLE_EVENT_COLOR,
    GoogleEventSource,
    NativeEventSource,
    OutlookEventSource,
    fetch_degraded,
    google_event_to_item,
    native_event_to_item,
    outlook_event_to_item,
)
from cally.scheduling.timezones import TimezoneResolver
from cally.testing import InMemoryEventStore, RecordingCalendarClient

pytestmark = pytest.mark.unit

SYDNEY = TimezoneResolver("Australia/Sydney")


# ============================================================================
# Google mapping
# ============================================================================


class TestGoogleMapping:
    def test_timed_event(self):
        item = google_event_to_item(
            {
                "id": "g456",
                "summary": "  Dentist  ",
                "start": {"dateTime": "2026-02-15T10:00:00+11:00"},
                "end": {"dateTime": "2026-02-15T11:00:00+11:00"},
                "hangoutLink": "https://meet.google.com/abc-defg-hij",
            },
            resolver=SYDNEY,
        )

        assert item is not None
        assert item.id == "gcal_g456"
        assert item.title == "Dentist"
        assert item.start == "2026-02-14T23:00:00.000Z"
        assert item.color == GOOGLE_EVENT_COLOR
        assert item.extended_props.source is ItemSource.GOOGLE
        assert item.extended_props.provider_event_id == "g456"
        assert item.extended_props.meeting_link == "https://meet.google.com/abc-defg-hij"

    def test_missing_title_uses_default(self):
        item = google_event_to_item(
            {
                "id": "g1",
                "start": {"dateTime": "2026-02-15T00:00:00Z"},
                "end": {"dateTime": "2026-02-15T01:00:00Z"},
            },
            resolver=SYDNEY,
        )
        assert item is not None
        assert item.title == DEFAULT_TITLE
        assert item.extended_props.location is None

    def test_all_day_event_anchors_at_local_midnight(self):
        item = google_event_to_item(
            {"id": "g2", "start": {"date": "2026-02-15"}, "end": {"date": "2026-02-16"}},
            resolver=SYDNEY,
        )
        assert item is not None
        assert item.all_day is True
        assert item.start == "2026-02-14T13:00:00.000Z"

    @pytest.mark.parametrize(
        "payload",
        [
            {"id": "g3", "status": "cancelled", "start": {}, "end": {}},
            {"start": {"dateTime": "2026-02-15T00:00:00Z"}, "end": {"dateTime": "x"}},
            {"id": "g4", "start": {"dateTime": "2026-02-15T00:00:00Z"}},
        ],
    )
    def test_unusable_items_are_skipped(self, payload):
        assert google_event_to_item(payload, resolver=SYDNEY) is None


# ============================================================================
# Outlook mapping
# ============================================================================


class TestOutlookMapping:
    def test_timestamp_without_marker_is_asserted_utc(self):
        item = outlook_event_to_item(
            {
                "id": "o1",
                "subject": "Board meeting",
                "start": {"dateTime": "2026-02-14T14:30:00.0000000", "timeZone": "UTC"},
                "end": {"dateTime": "2026-02-14T15:30:00.0000000", "timeZone": "UTC"},
                "location": {"displayName": "Level 3"},
                "bodyPreview": "Quarterly review",
                "onlineMeeting": {"joinUrl": "https://teams.microsoft.com/l/meetup-join/1"},
            }
        )

        assert item is not None
        assert item.id == "outlook_o1"
        assert item.start == "2026-02-14T14:30:00.000Z"
        assert item.end == "2026-02-14T15:30:00.000Z"
        assert item.extended_props.location == "Level 3"
        assert item.extended_props.description == "Quarterly review"
        assert item.extended_props.meeting_link == "https://teams.microsoft.com/l/meetup-join/1"

    def test_cancelled_items_are_skipped(self):
        payload = {
            "id": "o2",
            "isCancelled": True,
            "start": {"dateTime": "2026-02-14T14:30:00"},
            "end": {"dateTime": "2026-02-14T15:30:00"},
        }
        assert outlook_event_to_item(payload) is None

    def test_missing_subject_uses_default(self):
        item = outlook_event_to_item(
            {
                "id": "o3",
                "start": {"dateTime": "2026-02-14T14:30:00"},
                "end": {"dateTime": "2026-02-14T15:30:00"},
            }
        )
        assert item is not None
        assert item.title == DEFAULT_TITLE


# ============================================================================
# Native source
# ============================================================================


class TestNativeSource:
    async def test_reads_widened_range_and_refilters(self, sydney_tenant):
        inside = make_event(event_id="evt_in", start=datetime(2026, 2, 14, 14, 30, tzinfo=UTC))
        outside = make_event(event_id="evt_out", start=datetime(2026, 2, 14, 1, 0, tzinfo=UTC))
        store = InMemoryEventStore([inside, outside])
        source = NativeEventSource(store)
        window = SYDNEY.window("2026-02-15")

        items = await source.list_items(sydney_tenant, window, SYDNEY)

        assert [item.id for item in items] == ["evt_in"]
        assert store.range_queries == [(sydney_tenant.id, date(2026, 2, 14), date(2026, 2, 15))]

    def test_native_item_defaults(self):
        item = native_event_to_item(make_event(start=datetime(2026, 2, 14, tzinfo=UTC)))
        assert item.color == DEFAULT_EVENT_COLOR
        assert item.extended_props.source is ItemSource.NATIVE


# ============================================================================
# Provider sources
# ============================================================================


class TestProviderSources:
    async def test_unconnected_tenant_yields_nothing(self, sydney_tenant, tenants):
        client = RecordingCalendarClient(ItemSource.GOOGLE, [{"id": "g1"}])
        source = GoogleEventSource(client, tenants)

        assert await source.list_items(sydney_tenant, SYDNEY.window("2026-02-15"), SYDNEY) == []
        assert client.list_calls == []

    async def test_queries_exact_utc_window(self, sydney_tenant, tenants):
        tenant = sydney_tenant.model_copy(update={"google_calendar": google_config()})
        client = RecordingCalendarClient(ItemSource.GOOGLE)
        window = SYDNEY.window("2026-02-15")

        await GoogleEventSource(client, tenants).list_items(tenant, window, SYDNEY)

        assert client.list_calls == [(window.utc_start, window.utc_end)]

    async def test_refreshed_config_is_persisted(self, sydney_tenant, tenants):
        tenant = sydney_tenant.model_copy(update={"google_calendar": google_config()})
        refreshed = google_config(access_token="ya29.new")
        client = RecordingCalendarClient(ItemSource.GOOGLE, refreshed=refreshed)

        await GoogleEventSource(client, tenants).list_items(
            tenant, SYDNEY.window("2026-02-15"), SYDNEY
        )

        assert tenants.saved_configs == [(tenant.id, ItemSource.GOOGLE, refreshed)]
        stored = await tenants.get(tenant.id)
        assert stored.google_calendar.access_token == "ya29.new"

    async def test_malformed_items_are_skipped(self, sydney_tenant, tenants, caplog):
        tenant = sydney_tenant.model_copy(
            update={
                "outlook_calendar": OutlookCalendarConfig(access_token="a", refresh_token="r")
            }
        )
        client = RecordingCalendarClient(
            ItemSource.OUTLOOK,
            [
                {"id": "bad", "start": {"dateTime": "not-a-time"}, "end": {"dateTime": "x"}},
                {
                    "id": "good",
                    "start": {"dateTime": "2026-02-14T14:30:00"},
                    "end": {"dateTime": "2026-02-14T15:30:00"},
                },
            ],
        )

        with caplog.at_level(logging.WARNING):
            items = await OutlookEventSource(client, tenants).list_items(
                tenant, SYDNEY.window("2026-02-15"), SYDNEY
            )

        assert [item.id for item in items] == ["outlook_good"]
        assert "Skipping malformed" in caplog.text


class TestFetchDegraded:
    async def test_timeout_degrades_to_empty(self, sydney_tenant, tenants, caplog):
        tenant = sydney_tenant.model_copy(update={"google_calendar": google_config()})
        client = RecordingCalendarClient(ItemSource.GOOGLE, delay=5.0)

        with caplog.at_level(logging.WARNING):
            items = await fetch_degraded(
                GoogleEventSource(client, tenants),
                tenant,
                SYDNEY.window("2026-02-15"),
                SYDNEY,
                timeout=0.05,
            )

        assert items == []
        assert "timed out" in caplog.text

    async def test_provider_error_degrades_to_empty(self, sydney_tenant, tenants, caplog):
        tenant = sydney_tenant.model_copy(update={"google_calendar": google_config()})
        client = RecordingCalendarClient(ItemSource.GOOGLE)
        client.list_error = CalendarProviderError("boom", provider="google_calendar")

        with caplog.at_level(logging.WARNING):
            items = await fetch_degraded(
                GoogleEventSource(client, tenants),
                tenant,
                SYDNEY.window("2026-02-15"),
                SYDNEY,
                timeout=1.0,
            )

        assert items == []
        assert "failed" in caplog.text
