"""Outlook calendar client on the Microsoft Graph REST API."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from cally.providers.base import OAuthCalendarClient
from cally.scheduling.errors import CalendarProviderError
from cally.scheduling.models import CalendarEvent, EventStatus, ItemSource, OutlookCalendarConfig
from cally.scheduling.ports import ProviderPushResult
from cally.scheduling.timezones import to_utc

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
OUTLOOK_SCOPES = "offline_access Calendars.ReadWrite"
# Graph returns calendarView times in this zone, without an offset marker.
PREFER_UTC_HEADER = {"Prefer": 'outlook.timezone="UTC"'}
LIST_PAGE_SIZE = 100
MAX_LIST_PAGES = 20


def graph_datetime(value: datetime) -> dict[str, str]:
    return {"dateTime": to_utc(value).strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": "UTC"}


def build_outlook_event_body(event: CalendarEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": event.title,
        "start": graph_datetime(event.start_time),
        "end": graph_datetime(event.end_time),
        "isAllDay": event.is_all_day,
    }
    if event.description is not None:
        body["body"] = {"contentType": "text", "content": event.description}
    if event.location is not None:
        body["location"] = {"displayName": event.location}
    return body


class OutlookCalendarClient(OAuthCalendarClient[OutlookCalendarConfig]):
    provider_name = "outlook_calendar"
    api_base_url = GRAPH_API_BASE_URL

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        tenant: str = "common",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            http_client=http_client,
            timeout=timeout,
        )
        self.token_url = MICROSOFT_TOKEN_URL_TEMPLATE.format(tenant=quote(tenant, safe=""))

    @property
    def source(self) -> ItemSource:
        return ItemSource.OUTLOOK

    def _refresh_form(self, config: OutlookCalendarConfig) -> dict[str, str]:
        return {**super()._refresh_form(config), "scope": OUTLOOK_SCOPES}

    def _calendar_path(self, config: OutlookCalendarConfig) -> str:
        if config.calendar_id:
            return f"/me/calendars/{quote(config.calendar_id, safe='')}"
        return "/me"

    async def list_events(
        self, config: OutlookCalendarConfig, utc_start: datetime, utc_end: datetime
    ) -> tuple[list[dict[str, Any]], OutlookCalendarConfig]:
        path = f"{self._calendar_path(config)}/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": to_utc(utc_start).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "endDateTime": to_utc(utc_end).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "$top": LIST_PAGE_SIZE,
            "$orderby": "start/dateTime",
        }
        items: list[dict[str, Any]] = []
        for _ in range(MAX_LIST_PAGES):
            payload, config = await self._request_json(
                config, "GET", path, params=params, extra_headers=PREFER_UTC_HEADER
            )
            page_items = payload.get("value", [])
            if not isinstance(page_items, list):
                raise CalendarProviderError(
                    "calendarView response missing value array", provider=self.provider_name
                )
            items.extend(item for item in page_items if isinstance(item, dict))
            next_link = payload.get("@odata.nextLink")
            if not isinstance(next_link, str) or not next_link:
                break
            # nextLink already carries every query parameter.
            path, params = next_link, None
        else:
            logger.warning("Outlook calendarView stopped after %d pages", MAX_LIST_PAGES)
        return items, config

    async def push_create(
        self,
        config: OutlookCalendarConfig,
        event: CalendarEvent,
        *,
        with_meeting_link: bool = False,
    ) -> tuple[ProviderPushResult, OutlookCalendarConfig]:
        body = build_outlook_event_body(event)
        if with_meeting_link:
            body["isOnlineMeeting"] = True
            body["onlineMeetingProvider"] = "teamsForBusiness"

        payload, config = await self._request_json(
            config, "POST", f"{self._calendar_path(config)}/events", json_body=body
        )
        provider_event_id = payload.get("id")
        if not isinstance(provider_event_id, str) or not provider_event_id:
            raise CalendarProviderError(
                "create event response missing id", provider=self.provider_name
            )
        online_meeting = payload.get("onlineMeeting")
        join_url = online_meeting.get("joinUrl") if isinstance(online_meeting, dict) else None
        return (
            ProviderPushResult(
                provider_event_id=provider_event_id,
                meeting_link=join_url if isinstance(join_url, str) else None,
            ),
            config,
        )

    async def push_update(
        self, config: OutlookCalendarConfig, provider_event_id: str, event: CalendarEvent
    ) -> OutlookCalendarConfig:
        event_path = f"/me/events/{quote(provider_event_id, safe='')}"
        if event.status is EventStatus.CANCELLED:
            _, config = await self._request_json(
                config,
                "POST",
                f"{event_path}/cancel",
                json_body={"comment": "This appointment has been cancelled."},
            )
            return config

        _, config = await self._request_json(
            config, "PATCH", event_path, json_body=build_outlook_event_body(event)
        )
        return config
