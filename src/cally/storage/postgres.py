"""asyncpg-backed event and tenant stores.

Each event row keeps its addressing columns (``tenant_id``, ``id``, ``date``,
``start_time``, ``recurrence_group_id``) next to the full JSONB document.
Updates merge a JSONB patch in a single statement, so a concurrent writer
never observes a half-applied change.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, date, datetime
from typing import Any

from cally.db import Database
from cally.scheduling.models import (
    CalendarEvent,
    EventPatch,
    ItemSource,
    ProviderCalendarConfig,
    Tenant,
)
from cally.scheduling.ports import EventStore, TenantStore

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS calendar_events (
        tenant_id TEXT NOT NULL,
        id TEXT NOT NULL,
        date DATE NOT NULL,
        start_time TIMESTAMPTZ NOT NULL,
        recurrence_group_id TEXT,
        payload JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (tenant_id, id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_calendar_events_tenant_date
        ON calendar_events (tenant_id, date)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_calendar_events_recurrence_group
        ON calendar_events (tenant_id, recurrence_group_id)
        WHERE recurrence_group_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id TEXT PRIMARY KEY,
        payload JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_CONFIG_FIELDS = {
    ItemSource.GOOGLE: "google_calendar",
    ItemSource.OUTLOOK: "outlook_calendar",
}


async def ensure_schema(db: Database) -> None:
    """Create the tables and indexes if they do not exist yet."""
    for statement in SCHEMA_STATEMENTS:
        await db.execute(statement)
    logger.info("Calendar schema ensured on %s", db.name)


def _decode_payload(value: Any) -> Any:
    # asyncpg returns JSONB as text unless a type codec is registered.
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_event(row: Any) -> CalendarEvent:
    return CalendarEvent.model_validate(_decode_payload(row["payload"]))


class PostgresEventStore(EventStore):
    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_by_date_range(
        self, tenant_id: str, start_date: date, end_date: date
    ) -> list[CalendarEvent]:
        rows = await self._db.fetch(
            """
            SELECT payload FROM calendar_events
            WHERE tenant_id = $1 AND date BETWEEN $2 AND $3
            ORDER BY start_time, id
            """,
            tenant_id,
            start_date,
            end_date,
        )
        return [_row_to_event(row) for row in rows]

    async def get_by_id(self, tenant_id: str, date: str, event_id: str) -> CalendarEvent | None:
        row = await self._db.fetchrow(
            """
            SELECT payload FROM calendar_events
            WHERE tenant_id = $1 AND id = $2 AND date = $3
            """,
            tenant_id,
            event_id,
            _as_date(date),
        )
        return _row_to_event(row) if row is not None else None

    async def get_by_id_only(self, tenant_id: str, event_id: str) -> CalendarEvent | None:
        row = await self._db.fetchrow(
            "SELECT payload FROM calendar_events WHERE tenant_id = $1 AND id = $2",
            tenant_id,
            event_id,
        )
        return _row_to_event(row) if row is not None else None

    async def get_by_recurrence_group(self, tenant_id: str, group_id: str) -> list[CalendarEvent]:
        rows = await self._db.fetch(
            """
            SELECT payload FROM calendar_events
            WHERE tenant_id = $1 AND recurrence_group_id = $2
            ORDER BY start_time, id
            """,
            tenant_id,
            group_id,
        )
        return [_row_to_event(row) for row in rows]

    async def create(self, tenant_id: str, event: CalendarEvent) -> CalendarEvent:
        if event.tenant_id != tenant_id:
            raise ValueError(
                f"event {event.id} belongs to tenant {event.tenant_id}, not {tenant_id}"
            )
        await self._db.execute(
            """
            INSERT INTO calendar_events
                (tenant_id, id, date, start_time, recurrence_group_id, payload)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            tenant_id,
            event.id,
            _as_date(event.date),
            event.start_time,
            event.recurrence_group_id,
            event.model_dump_json(),
        )
        return event

    async def update(
        self, tenant_id: str, date: str, event_id: str, patch: EventPatch
    ) -> CalendarEvent | None:
        changes = patch.model_dump(mode="json", include=set(patch.changes()))
        changes["updated_at"] = datetime.now(UTC).isoformat()
        new_date = patch.date if "date" in changes else None
        new_start = patch.start_time if "start_time" in changes else None

        row = await self._db.fetchrow(
            """
            UPDATE calendar_events
            SET payload = payload || $4::jsonb,
                date = COALESCE($5::date, date),
                start_time = COALESCE($6::timestamptz, start_time),
                updated_at = now()
            WHERE tenant_id = $1 AND id = $2 AND date = $3
            RETURNING payload
            """,
            tenant_id,
            event_id,
            _as_date(date),
            json.dumps(changes),
            _as_date(new_date) if new_date is not None else None,
            new_start,
        )
        return _row_to_event(row) if row is not None else None


class PostgresTenantStore(TenantStore):
    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, tenant_id: str) -> Tenant | None:
        row = await self._db.fetchrow("SELECT payload FROM tenants WHERE id = $1", tenant_id)
        if row is None:
            return None
        return Tenant.model_validate(_decode_payload(row["payload"]))

    async def save(self, tenant: Tenant) -> None:
        await self._db.execute(
            """
            INSERT INTO tenants (id, payload) VALUES ($1, $2::jsonb)
            ON CONFLICT (id) DO UPDATE SET payload = EXCLUDED.payload, updated_at = now()
            """,
            tenant.id,
            tenant.model_dump_json(),
        )

    async def save_calendar_config(
        self, tenant_id: str, provider: ItemSource, config: ProviderCalendarConfig
    ) -> None:
        field = _CONFIG_FIELDS.get(provider)
        if field is None:
            raise ValueError(f"{provider} has no calendar config")
        await self._db.execute(
            """
            UPDATE tenants
            SET payload = payload || jsonb_build_object($2::text, $3::jsonb),
                updated_at = now()
            WHERE id = $1
            """,
            tenant_id,
            field,
            config.model_dump_json(),
        )
        logger.info("Saved refreshed %s config for tenant %s", provider, tenant_id)


def _as_date(value: str | date) -> date:
    return value if isinstance(value, date) else date.fromisoformat(value)
