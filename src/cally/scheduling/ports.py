"""Narrow interfaces to the collaborators the scheduling core calls.

Concrete implementations live in :mod:`cally.storage`, :mod:`cally.providers`,
:mod:`cally.payments` and :mod:`cally.notifications`; in-memory versions for
tests live in :mod:`cally.testing`.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Generic, TypeVar

from cally.scheduling.models import (
    CalendarEvent,
    EventPatch,
    ItemSource,
    ProviderCalendarConfig,
    Tenant,
    Visitor,
)


class EventStore(abc.ABC):
    """Persistence for native events, always addressed within one tenant."""

    @abc.abstractmethod
    async def get_by_date_range(
        self, tenant_id: str, start_date: date, end_date: date
    ) -> list[CalendarEvent]:
        """Return events whose partition ``date`` lies in ``[start_date, end_date]``."""
        ...

    @abc.abstractmethod
    async def get_by_id(self, tenant_id: str, date: str, event_id: str) -> CalendarEvent | None:
        ...

    @abc.abstractmethod
    async def get_by_id_only(self, tenant_id: str, event_id: str) -> CalendarEvent | None:
        """Find an event without knowing its date.

        Scans the tenant's events; O(n) in the tenant's event count.
        """
        ...

    @abc.abstractmethod
    async def get_by_recurrence_group(self, tenant_id: str, group_id: str) -> list[CalendarEvent]:
        ...

    @abc.abstractmethod
    async def create(self, tenant_id: str, event: CalendarEvent) -> CalendarEvent:
        ...

    @abc.abstractmethod
    async def update(
        self, tenant_id: str, date: str, event_id: str, patch: EventPatch
    ) -> CalendarEvent | None:
        """Apply *patch* atomically; a changed ``date`` re-keys the event in place."""
        ...


class TenantStore(abc.ABC):
    @abc.abstractmethod
    async def get(self, tenant_id: str) -> Tenant | None:
        ...

    @abc.abstractmethod
    async def save_calendar_config(
        self, tenant_id: str, provider: ItemSource, config: ProviderCalendarConfig
    ) -> None:
        """Persist a refreshed provider config (token refresh side channel)."""
        ...


@dataclass(frozen=True)
class ProviderPushResult:
    provider_event_id: str
    meeting_link: str | None = None


ConfigT = TypeVar("ConfigT", bound=ProviderCalendarConfig)


class CalendarProviderClient(abc.ABC, Generic[ConfigT]):
    """REST client for one calendar provider family.

    Every call returns the config it actually used; when the access token was
    refreshed that config differs from the one passed in and the caller must
    persist it.
    """

    @property
    @abc.abstractmethod
    def source(self) -> ItemSource:
        ...

    @abc.abstractmethod
    async def list_events(
        self, config: ConfigT, utc_start: datetime, utc_end: datetime
    ) -> tuple[list[dict[str, Any]], ConfigT]:
        ...

    @abc.abstractmethod
    async def push_create(
        self, config: ConfigT, event: CalendarEvent, *, with_meeting_link: bool = False
    ) -> tuple[ProviderPushResult, ConfigT]:
        ...

    @abc.abstractmethod
    async def push_update(
        self, config: ConfigT, provider_event_id: str, event: CalendarEvent
    ) -> ConfigT:
        ...

    async def aclose(self) -> None:
        return None


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    amount: int
    currency: str = "aud"


@dataclass(frozen=True)
class Refund:
    id: str
    amount: int
    status: str = "succeeded"


class PaymentProcessor(abc.ABC):
    @abc.abstractmethod
    async def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        ...

    @abc.abstractmethod
    async def create_full_refund(self, intent_id: str) -> Refund:
        ...


@dataclass(frozen=True)
class RefundInfo:
    amount_cents: int
    currency: str
    refund_id: str


class NotificationSender(abc.ABC):
    @abc.abstractmethod
    async def send_booking_cancelled_email(
        self,
        visitor: Visitor,
        tenant: Tenant,
        event: CalendarEvent,
        refund: RefundInfo | None = None,
    ) -> None:
        """Tell a visitor their booking was cancelled (best-effort)."""
        ...
