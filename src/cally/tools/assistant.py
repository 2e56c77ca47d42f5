"""AI-assistant tools over the scheduling service.

Provides three tools for one tenant:
- get_appointments: native appointments for a local date range
- get_daily_brief: greeting period, today's appointments and the next few upcoming
- update_appointment: status, notes, title and time changes on one appointment

Tools never raise to the agent.  Validation and not-found failures come back
as ``{"error": message}``; anything unexpected is logged and reported with a
generic message.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from cally.scheduling.errors import NotFoundError, ValidationError
from cally.scheduling.models import CalendarEvent, EventStatus
from cally.scheduling.service import SchedulingService
from cally.scheduling.timezones import TimezoneResolver

logger = logging.getLogger(__name__)

TOOL_NAMES = ("get_appointments", "get_daily_brief", "update_appointment")

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_BOOKING_TITLE_PREFIX = "Booking: "
_GENERIC_ERROR = "Something went wrong while accessing the calendar. Please try again."


def attendee_name(event: CalendarEvent) -> str | None:
    """Name of the person the appointment is with, if known."""
    if event.title.startswith(_BOOKING_TITLE_PREFIX):
        name = event.title[len(_BOOKING_TITLE_PREFIX):].strip()
        if name:
            return name
    if event.visitor is not None:
        return event.visitor.name
    return None


def format_event_summary(event: CalendarEvent, resolver: TimezoneResolver) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "date": resolver.local_date(event.start_time).isoformat(),
        "start_time": resolver.format_time(event.start_time),
        "end_time": resolver.format_time(event.end_time),
        "start_time_iso": event.start_time.isoformat(),
        "end_time_iso": event.end_time.isoformat(),
        "status": str(event.status),
        "description": event.description,
        "notes": event.notes,
        "attendee": attendee_name(event),
    }


class AssistantTools:
    """Tool handlers bound to one tenant."""

    def __init__(self, service: SchedulingService, tenant_id: str) -> None:
        self._service = service
        self._tenant_id = tenant_id

    async def _resolver(self) -> TimezoneResolver:
        tenant = await self._service.get_tenant(self._tenant_id)
        return self._service.resolver_for(tenant)

    async def _guarded(
        self, tool: str, call: Callable[[], Awaitable[dict[str, Any]]]
    ) -> dict[str, Any]:
        try:
            return await call()
        except (ValidationError, NotFoundError) as exc:
            logger.info("Tool %s rejected for tenant %s: %s", tool, self._tenant_id, exc)
            return {"error": str(exc)}
        except Exception:
            logger.exception("Tool %s failed for tenant %s", tool, self._tenant_id)
            return {"error": _GENERIC_ERROR}

    # -- get_appointments ------------------------------------------------------

    async def get_appointments(
        self, start_date: str, end_date: str | None = None
    ) -> dict[str, Any]:
        return await self._guarded(
            "get_appointments", lambda: self._get_appointments(start_date, end_date)
        )

    async def _get_appointments(self, start_date: str, end_date: str | None) -> dict[str, Any]:
        for field, value in (("start_date", start_date), ("end_date", end_date)):
            if value is not None and _DATE_PATTERN.fullmatch(value) is None:
                raise ValidationError(f"{field} must use YYYY-MM-DD format", field=field)
        resolver = await self._resolver()
        events = await self._service.get_appointments(self._tenant_id, start_date, end_date)
        return {
            "start_date": start_date,
            "end_date": end_date or start_date,
            "timezone": resolver.name,
            "count": len(events),
            "appointments": [format_event_summary(event, resolver) for event in events],
        }

    # -- get_daily_brief -------------------------------------------------------

    async def get_daily_brief(self, now: datetime | None = None) -> dict[str, Any]:
        return await self._guarded("get_daily_brief", lambda: self._get_daily_brief(now))

    async def _get_daily_brief(self, now: datetime | None) -> dict[str, Any]:
        brief = await self._service.daily_brief(self._tenant_id, now=now)
        resolver = await self._resolver()
        return {
            "date": brief.date.isoformat(),
            "timezone": brief.timezone,
            "greeting": brief.greeting,
            "today_count": len(brief.today),
            "today": [format_event_summary(event, resolver) for event in brief.today],
            "upcoming": [format_event_summary(event, resolver) for event in brief.upcoming],
        }

    # -- update_appointment ----------------------------------------------------

    async def update_appointment(
        self,
        event_id: str,
        status: str | None = None,
        notes: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
        title: str | None = None,
    ) -> dict[str, Any]:
        return await self._guarded(
            "update_appointment",
            lambda: self._update_appointment(
                event_id,
                status=status,
                notes=notes,
                start_time=start_time,
                end_time=end_time,
                title=title,
            ),
        )

    async def _update_appointment(
        self,
        event_id: str,
        *,
        status: str | None,
        notes: str | None,
        start_time: str | None,
        end_time: str | None,
        title: str | None,
    ) -> dict[str, Any]:
        if not event_id or not event_id.strip():
            raise ValidationError("event_id is required", field="event_id")
        resolver = await self._resolver()

        changes: dict[str, Any] = {}
        if status is not None:
            try:
                changes["status"] = EventStatus(status)
            except ValueError as exc:
                allowed = ", ".join(member.value for member in EventStatus)
                raise ValidationError(
                    f"Invalid status {status!r}; expected one of: {allowed}", field="status"
                ) from exc
        if notes is not None:
            changes["notes"] = notes
        if title is not None:
            changes["title"] = title
        if start_time is not None:
            changes["start_time"] = resolver.parse_instant(start_time)
        if end_time is not None:
            changes["end_time"] = resolver.parse_instant(end_time)
        if not changes:
            raise ValidationError("No changes supplied")

        event = await self._service.update_appointment(self._tenant_id, event_id.strip(), changes)
        return {
            "success": True,
            "updated_fields": sorted(changes),
            "appointment": format_event_summary(event, resolver),
        }

    # -- dispatch --------------------------------------------------------------

    async def execute(self, name: str, arguments: dict[str, Any] | None = None) -> str:
        """Run tool *name* with JSON-style *arguments* and return a JSON string."""
        handlers: dict[str, Callable[..., Awaitable[dict[str, Any]]]] = {
            "get_appointments": self.get_appointments,
            "get_daily_brief": self.get_daily_brief,
            "update_appointment": self.update_appointment,
        }
        handler = handlers.get(name)
        if handler is None:
            return json.dumps({"error": f"Unknown tool: {name}"})
        try:
            result = await handler(**(arguments or {}))
        except TypeError as exc:
            result = {"error": f"Invalid arguments for {name}: {exc}"}
        return json.dumps(result, default=str)

    def register(self, mcp: Any) -> None:
        """Register the tools on a FastMCP server."""

        @mcp.tool()
        async def get_appointments(start_date: str, end_date: str | None = None) -> dict[str, Any]:
            """List appointments between two local dates (YYYY-MM-DD), inclusive."""
            return await self.get_appointments(start_date, end_date)

        @mcp.tool()
        async def get_daily_brief() -> dict[str, Any]:
            """Summarize today's schedule and the next upcoming appointments."""
            return await self.get_daily_brief()

        @mcp.tool()
        async def update_appointment(
            event_id: str,
            status: str | None = None,
            notes: str | None = None,
            start_time: str | None = None,
            end_time: str | None = None,
            title: str | None = None,
        ) -> dict[str, Any]:
            """Change an appointment's status, notes, title or time.

            Times without a UTC offset are read in the business's timezone.
            """
            return await self.update_appointment(
                event_id,
                status=status,
                notes=notes,
                start_time=start_time,
                end_time=end_time,
                title=title,
            )
