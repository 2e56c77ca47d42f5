"""Google Calendar REST client (``calendar/v3``) over httpx."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

from cally.providers.base import OAuthCalendarClient
from cally.scheduling.errors import CalendarProviderError
from cally.scheduling.models import CalendarEvent, EventStatus, GoogleCalendarConfig, ItemSource
from cally.scheduling.ports import ProviderPushResult
from cally.scheduling.timezones import to_utc

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALLY_EVENT_PRIVATE_KEY = "cally_event_id"
LIST_PAGE_SIZE = 250
MAX_LIST_PAGES = 20


def google_rfc3339(value: datetime) -> str:
    return to_utc(value).isoformat().replace("+00:00", "Z")


def build_google_event_body(event: CalendarEvent) -> dict[str, Any]:
    """Build an ``events.insert``/``events.patch`` body for a native event."""
    body: dict[str, Any] = {
        "summary": event.title,
        "start": {"dateTime": google_rfc3339(event.start_time), "timeZone": "UTC"},
        "end": {"dateTime": google_rfc3339(event.end_time), "timeZone": "UTC"},
        "extendedProperties": {"private": {CALLY_EVENT_PRIVATE_KEY: event.id}},
    }
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    if event.status is EventStatus.CANCELLED:
        body["status"] = "cancelled"
    return body


class GoogleCalendarClient(OAuthCalendarClient[GoogleCalendarConfig]):
    provider_name = "google_calendar"
    token_url = GOOGLE_OAUTH_TOKEN_URL
    api_base_url = GOOGLE_CALENDAR_API_BASE_URL

    @property
    def source(self) -> ItemSource:
        return ItemSource.GOOGLE

    def _events_path(self, config: GoogleCalendarConfig, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(config.calendar_id, safe='')}/events"
        if event_id is not None:
            path = f"{path}/{quote(event_id, safe='')}"
        return path

    async def list_events(
        self, config: GoogleCalendarConfig, utc_start: datetime, utc_end: datetime
    ) -> tuple[list[dict[str, Any]], GoogleCalendarConfig]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": LIST_PAGE_SIZE,
            "timeMin": google_rfc3339(utc_start),
            "timeMax": google_rfc3339(utc_end),
        }
        items: list[dict[str, Any]] = []
        for _ in range(MAX_LIST_PAGES):
            payload, config = await self._request_json(
                config, "GET", self._events_path(config), params=params
            )
            page_items = payload.get("items", [])
            if not isinstance(page_items, list):
                raise CalendarProviderError(
                    "events.list response missing items array", provider=self.provider_name
                )
            items.extend(item for item in page_items if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                break
            params = {**params, "pageToken": page_token}
        else:
            logger.warning("Google events.list stopped after %d pages", MAX_LIST_PAGES)
        return items, config

    async def push_create(
        self,
        config: GoogleCalendarConfig,
        event: CalendarEvent,
        *,
        with_meeting_link: bool = False,
    ) -> tuple[ProviderPushResult, GoogleCalendarConfig]:
        body = build_google_event_body(event)
        params: dict[str, Any] | None = None
        if with_meeting_link:
            body["conferenceData"] = {
                "createRequest": {
                    "requestId": event.id,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            params = {"conferenceDataVersion": 1}

        payload, config = await self._request_json(
            config, "POST", self._events_path(config), params=params, json_body=body
        )
        provider_event_id = payload.get("id")
        if not isinstance(provider_event_id, str) or not provider_event_id:
            raise CalendarProviderError(
                "events.insert response missing id", provider=self.provider_name
            )
        meeting_link = payload.get("hangoutLink")
        return (
            ProviderPushResult(
                provider_event_id=provider_event_id,
                meeting_link=meeting_link if isinstance(meeting_link, str) else None,
            ),
            config,
        )

    async def push_update(
        self, config: GoogleCalendarConfig, provider_event_id: str, event: CalendarEvent
    ) -> GoogleCalendarConfig:
        _, config = await self._request_json(
            config,
            "PATCH",
            self._events_path(config, provider_event_id),
            json_body=build_google_event_body(event),
        )
        return config
