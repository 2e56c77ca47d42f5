"""Shared fixtures for the cally test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from cally.core.background import BackgroundTasks
from cally.scheduling.models import CalendarEvent, GoogleCalendarConfig, Tenant
from cally.scheduling.service import SchedulingService
from cally.testing import InMemoryEventStore, InMemoryTenantStore

TENANT_ID = "tenant_1"
SYDNEY = ZoneInfo("Australia/Sydney")


def make_event(
    *,
    event_id: str = "evt_1",
    tenant_id: str = TENANT_ID,
    start: datetime,
    minutes: int = 60,
    date: str | None = None,
    **fields: Any,
) -> CalendarEvent:
    """Build a stored event; ``date`` defaults to the Sydney-local date of *start*."""
    if date is None:
        date = start.astimezone(SYDNEY).date().isoformat()
    return CalendarEvent(
        id=event_id,
        tenant_id=tenant_id,
        date=date,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        duration_minutes=fields.pop("duration_minutes", minutes),
        title=fields.pop("title", "Consultation"),
        **fields,
    )


def google_config(**overrides: Any) -> GoogleCalendarConfig:
    values: dict[str, Any] = {
        "access_token": "ya29.access",
        "refresh_token": "1//refresh",
        "token_expiry": datetime(2099, 1, 1, tzinfo=UTC),
        "email": "owner@example.com",
    }
    values.update(overrides)
    return GoogleCalendarConfig(**values)


@pytest.fixture
def sydney_tenant() -> Tenant:
    return Tenant(
        id=TENANT_ID,
        name="Harbour Physio",
        email="owner@example.com",
        timezone="Australia/Sydney",
    )


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def tenants(sydney_tenant: Tenant) -> InMemoryTenantStore:
    return InMemoryTenantStore([sydney_tenant])


@pytest.fixture
async def background() -> AsyncIterator[BackgroundTasks]:
    tasks = BackgroundTasks()
    yield tasks
    await tasks.cancel_all()


@pytest.fixture
def make_service(
    store: InMemoryEventStore,
    tenants: InMemoryTenantStore,
    background: BackgroundTasks,
) -> Callable[..., SchedulingService]:
    def _make(**kwargs: Any) -> SchedulingService:
        kwargs.setdefault("provider_timeout", 0.5)
        return SchedulingService(store=store, tenants=tenants, background=background, **kwargs)

    return _make
