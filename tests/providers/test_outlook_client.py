"""Unit tests for OutlookCalendarClient (Microsoft Graph).

Covers:
- calendarView window, UTC preference header and nextLink pagination
- Calendar-specific paths
- Token refresh form carrying the Graph scopes
- Online meeting creation and join URL extraction
- Cancellation through the /cancel action
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import make_event

from cally.providers.outlook import (
    GRAPH_API_BASE_URL,
    OUTLOOK_SCOPES,
    OutlookCalendarClient,
    build_outlook_event_body,
)
from cally.scheduling.errors import CalendarProviderError
from cally.scheduling.models import EventStatus, OutlookCalendarConfig

pytestmark = pytest.mark.unit

START = datetime(2026, 2, 14, 13, 0, tzinfo=UTC)
END = datetime(2026, 2, 15, 13, 0, tzinfo=UTC)


def _mock_response(
    *, status_code: int, url: str = GRAPH_API_BASE_URL, json_body: dict | None = None
) -> httpx.Response:
    request = httpx.Request("GET", url)
    if json_body is not None:
        return httpx.Response(status_code=status_code, json=json_body, request=request)
    return httpx.Response(status_code=status_code, request=request)


def _config(**overrides) -> OutlookCalendarConfig:
    values = {
        "access_token": "eyJ.access",
        "refresh_token": "M.refresh",
        "token_expiry": datetime(2099, 1, 1, tzinfo=UTC),
    }
    values.update(overrides)
    return OutlookCalendarConfig(**values)


@pytest.fixture
def http_client() -> AsyncMock:
    return AsyncMock(spec=httpx.AsyncClient)


@pytest.fixture
def client(http_client: AsyncMock) -> OutlookCalendarClient:
    return OutlookCalendarClient(
        client_id="client-id",
        client_secret="client-secret",
        tenant="contoso.onmicrosoft.com",
        http_client=http_client,
    )


class TestBuildBody:
    def test_graph_times_have_no_offset(self):
        event = make_event(
            start=datetime(2026, 2, 14, 23, 0, tzinfo=UTC),
            description="Initial assessment",
            location="Level 3",
        )
        body = build_outlook_event_body(event)

        assert body["subject"] == "Consultation"
        assert body["start"] == {"dateTime": "2026-02-14T23:00:00", "timeZone": "UTC"}
        assert body["body"] == {"contentType": "text", "content": "Initial assessment"}
        assert body["location"] == {"displayName": "Level 3"}
        assert body["isAllDay"] is False


class TestListEvents:
    async def test_calendar_view_pagination(self, client, http_client):
        next_link = f"{GRAPH_API_BASE_URL}/me/calendarView?$skip=100"
        http_client.request.side_effect = [
            _mock_response(
                status_code=200,
                json_body={"value": [{"id": "o1"}], "@odata.nextLink": next_link},
            ),
            _mock_response(status_code=200, json_body={"value": [{"id": "o2"}]}),
        ]

        items, _ = await client.list_events(_config(), START, END)

        assert [item["id"] for item in items] == ["o1", "o2"]
        first, second = http_client.request.call_args_list
        assert first.args == ("GET", f"{GRAPH_API_BASE_URL}/me/calendarView")
        assert first.kwargs["params"]["startDateTime"] == "2026-02-14T13:00:00Z"
        assert first.kwargs["params"]["endDateTime"] == "2026-02-15T13:00:00Z"
        assert first.kwargs["headers"]["Prefer"] == 'outlook.timezone="UTC"'
        assert second.args == ("GET", next_link)
        assert second.kwargs["params"] is None

    async def test_specific_calendar_path(self, client, http_client):
        http_client.request.return_value = _mock_response(status_code=200, json_body={"value": []})

        await client.list_events(_config(calendar_id="AAMk=="), START, END)

        assert http_client.request.call_args.args[1] == (
            f"{GRAPH_API_BASE_URL}/me/calendars/AAMk%3D%3D/calendarView"
        )

    async def test_refresh_uses_tenant_token_url_and_scopes(self, client, http_client):
        http_client.post.return_value = _mock_response(
            status_code=200, json_body={"access_token": "eyJ.fresh", "expires_in": 3599}
        )
        http_client.request.return_value = _mock_response(status_code=200, json_body={"value": []})

        _, returned = await client.list_events(
            _config(token_expiry=datetime(2020, 1, 1, tzinfo=UTC)), START, END
        )

        assert returned.access_token == "eyJ.fresh"
        assert returned.refresh_token == "M.refresh"
        token_call = http_client.post.call_args
        assert token_call.args[0] == (
            "https://login.microsoftonline.com/contoso.onmicrosoft.com/oauth2/v2.0/token"
        )
        assert token_call.kwargs["data"]["scope"] == OUTLOOK_SCOPES


class TestPushes:
    async def test_create_online_meeting(self, client, http_client):
        http_client.request.return_value = _mock_response(
            status_code=201,
            json_body={
                "id": "AAMkAG",
                "onlineMeeting": {"joinUrl": "https://teams.microsoft.com/l/meetup-join/1"},
            },
        )
        event = make_event(
            start=datetime(2026, 2, 14, 23, 0, tzinfo=UTC), has_video_conference=True
        )

        result, _ = await client.push_create(_config(), event, with_meeting_link=True)

        assert result.provider_event_id == "AAMkAG"
        assert result.meeting_link == "https://teams.microsoft.com/l/meetup-join/1"
        body = http_client.request.call_args.kwargs["json"]
        assert body["isOnlineMeeting"] is True
        assert body["onlineMeetingProvider"] == "teamsForBusiness"

    async def test_update_patches_event(self, client, http_client):
        http_client.request.return_value = _mock_response(status_code=200, json_body={})
        event = make_event(start=datetime(2026, 2, 14, 23, 0, tzinfo=UTC))

        await client.push_update(_config(), "AAMkAG", event)

        call = http_client.request.call_args
        assert call.args == ("PATCH", f"{GRAPH_API_BASE_URL}/me/events/AAMkAG")
        assert call.kwargs["json"]["subject"] == "Consultation"

    async def test_cancelled_event_uses_cancel_action(self, client, http_client):
        http_client.request.return_value = _mock_response(status_code=202)
        event = make_event(
            start=datetime(2026, 2, 14, 23, 0, tzinfo=UTC), status=EventStatus.CANCELLED
        )

        await client.push_update(_config(), "AAMkAG", event)

        call = http_client.request.call_args
        assert call.args == ("POST", f"{GRAPH_API_BASE_URL}/me/events/AAMkAG/cancel")
        assert "comment" in call.kwargs["json"]

    async def test_error_response_raises(self, client, http_client):
        http_client.request.return_value = _mock_response(
            status_code=403,
            json_body={"error": {"code": "ErrorAccessDenied", "message": "Access is denied."}},
        )
        event = make_event(start=datetime(2026, 2, 14, 23, 0, tzinfo=UTC))

        with pytest.raises(CalendarProviderError) as exc_info:
            await client.push_create(_config(), event)

        assert exc_info.value.provider == "outlook_calendar"
        assert exc_info.value.status_code == 403
