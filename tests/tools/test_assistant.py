"""Unit tests for the AI-assistant tools.

Covers:
- get_appointments summaries in tenant-local time, attendee extraction
- get_daily_brief shape
- update_appointment status, notes and naive local times
- Errors returned as {"error": ...} instead of raised
- JSON dispatch via execute() and FastMCP registration
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest
from conftest import make_event

from cally.scheduling.models import EventStatus, Visitor
from cally.scheduling.timezones import TimezoneResolver
from cally.tools.assistant import TOOL_NAMES, AssistantTools, attendee_name, format_event_summary

pytestmark = pytest.mark.unit

MONDAY_9AM = datetime(2026, 2, 15, 22, 0, tzinfo=UTC)  # 09:00 Mon 16 Feb in Sydney


@pytest.fixture
def tools(make_service, sydney_tenant) -> AssistantTools:
    return AssistantTools(make_service(), sydney_tenant.id)


class _RecordingMCP:
    def __init__(self) -> None:
        self.tools: dict = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn

        return decorator


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


class TestFormatting:
    def test_attendee_from_booking_title(self):
        event = make_event(start=MONDAY_9AM, title="Booking: Jane Citizen")
        assert attendee_name(event) == "Jane Citizen"

    def test_attendee_from_visitor(self):
        event = make_event(start=MONDAY_9AM, visitor=Visitor(name="Sam Lee"))
        assert attendee_name(event) == "Sam Lee"

    def test_no_attendee(self):
        assert attendee_name(make_event(start=MONDAY_9AM)) is None

    def test_summary_uses_local_time(self):
        summary = format_event_summary(
            make_event(start=MONDAY_9AM, minutes=45), TimezoneResolver("Australia/Sydney")
        )
        assert summary["date"] == "2026-02-16"
        assert summary["start_time"] == "9:00 AM"
        assert summary["end_time"] == "9:45 AM"
        assert summary["status"] == "scheduled"
        assert summary["start_time_iso"] == "2026-02-15T22:00:00+00:00"


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class TestGetAppointments:
    async def test_lists_local_day(self, tools, store):
        store.add(
            make_event(event_id="evt_a", start=MONDAY_9AM, title="Booking: Jane"),
            make_event(event_id="evt_b", start=datetime(2026, 2, 16, 14, 0, tzinfo=UTC)),
        )

        result = await tools.get_appointments("2026-02-16")

        assert result["count"] == 1
        assert result["end_date"] == "2026-02-16"
        assert result["timezone"] == "Australia/Sydney"
        assert result["appointments"][0]["attendee"] == "Jane"

    async def test_bad_date_format(self, tools):
        result = await tools.get_appointments("16/02/2026")
        assert result == {"error": "start_date must use YYYY-MM-DD format"}

    async def test_unknown_tenant(self, make_service):
        result = await AssistantTools(make_service(), "tenant_missing").get_appointments(
            "2026-02-16"
        )
        assert result == {"error": "Tenant not found: tenant_missing"}

    async def test_unexpected_failure_is_generic(self, tools, store, caplog):
        store.fail_reads()

        result = await tools.get_appointments("2026-02-16")

        assert result["error"].startswith("Something went wrong")
        assert "Tool get_appointments failed" in caplog.text


class TestGetDailyBrief:
    async def test_brief(self, tools, store):
        store.add(make_event(start=datetime(2026, 2, 16, 3, 0, tzinfo=UTC)))

        result = await tools.get_daily_brief(now=MONDAY_9AM)

        assert result["date"] == "2026-02-16"
        assert result["greeting"] == "morning"
        assert result["today_count"] == 1
        assert [item["start_time"] for item in result["upcoming"]] == ["2:00 PM"]


class TestUpdateAppointment:
    async def test_status_and_notes(self, tools, store):
        store.add(make_event(start=MONDAY_9AM))

        result = await tools.update_appointment("evt_1", status="completed", notes="Went well")

        assert result["success"] is True
        assert result["updated_fields"] == ["notes", "status"]
        assert result["appointment"]["status"] == "completed"
        stored = await store.get_by_id_only("tenant_1", "evt_1")
        assert stored.status is EventStatus.COMPLETED
        assert stored.notes == "Went well"

    async def test_naive_times_are_tenant_local(self, tools, store):
        store.add(make_event(start=MONDAY_9AM))

        result = await tools.update_appointment(
            "evt_1", start_time="2026-02-16T14:00:00", end_time="2026-02-16T14:30:00"
        )

        assert result["appointment"]["start_time"] == "2:00 PM"
        assert result["appointment"]["end_time"] == "2:30 PM"
        stored = await store.get_by_id_only("tenant_1", "evt_1")
        assert stored.start_time == datetime(2026, 2, 16, 3, 0, tzinfo=UTC)
        assert stored.duration_minutes == 30

    async def test_invalid_status(self, tools, store):
        store.add(make_event(start=MONDAY_9AM))
        result = await tools.update_appointment("evt_1", status="postponed")
        assert "Invalid status 'postponed'" in result["error"]

    async def test_no_changes(self, tools, store):
        store.add(make_event(start=MONDAY_9AM))
        assert await tools.update_appointment("evt_1") == {"error": "No changes supplied"}

    async def test_unknown_event(self, tools):
        result = await tools.update_appointment("evt_missing", notes="x")
        assert result == {"error": "Event not found: evt_missing"}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestExecute:
    async def test_returns_json(self, tools, store):
        store.add(make_event(start=MONDAY_9AM))

        payload = json.loads(await tools.execute("get_appointments", {"start_date": "2026-02-16"}))

        assert payload["count"] == 1

    async def test_unknown_tool(self, tools):
        payload = json.loads(await tools.execute("delete_everything"))
        assert payload == {"error": "Unknown tool: delete_everything"}

    async def test_bad_arguments(self, tools):
        payload = json.loads(await tools.execute("get_appointments", {"day": "2026-02-16"}))
        assert payload["error"].startswith("Invalid arguments for get_appointments")

    async def test_register_exposes_every_tool(self, tools, store):
        store.add(make_event(start=MONDAY_9AM))
        mcp = _RecordingMCP()

        tools.register(mcp)

        assert tuple(mcp.tools) == TOOL_NAMES
        result = await mcp.tools["get_appointments"]("2026-02-16")
        assert result["count"] == 1
