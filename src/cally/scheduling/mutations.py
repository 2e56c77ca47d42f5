"""Appointment Mutation Service: partial updates, reschedules and cancellations.

The native record is the source of truth.  After every successful write the
change is mirrored to linked providers in the background; provider failures
are logged by the background task and never roll back the mutation.

Cancelling a paid appointment refunds it synchronously, but a refund
failure is only logged: the appointment stays cancelled either way.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from cally.core.background import BackgroundTasks
from cally.providers.sync import ProviderSync
from cally.scheduling.errors import NotFoundError, ValidationError
from cally.scheduling.models import (
    CalendarEvent,
    CalendarEventUpdate,
    EventPatch,
    EventStatus,
    Tenant,
    parse_model,
)
from cally.scheduling.ports import EventStore, NotificationSender, PaymentProcessor, RefundInfo
from cally.scheduling.timezones import DEFAULT_TIMEZONE, TimezoneResolver

logger = logging.getLogger(__name__)

CANCELLED_BY_TENANT = "tenant"
_CONTENT_FIELDS = ("title", "description", "location", "notes", "color", "is_all_day")
_TIME_FIELDS = frozenset({"start_time", "end_time", "duration_minutes"})


@dataclass
class SeriesUpdateResult:
    events: list[CalendarEvent]
    failed_event_ids: list[str] = field(default_factory=list)


def _minutes_between(start: datetime, end: datetime) -> int:
    return max(1, round((end - start).total_seconds() / 60))


class AppointmentMutationService:
    def __init__(
        self,
        store: EventStore,
        sync: ProviderSync,
        background: BackgroundTasks,
        *,
        payments: PaymentProcessor | None = None,
        notifier: NotificationSender | None = None,
        default_timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self._store = store
        self._sync = sync
        self._background = background
        self._payments = payments
        self._notifier = notifier
        self._default_timezone = default_timezone

    def resolver_for(self, tenant: Tenant) -> TimezoneResolver:
        return TimezoneResolver(tenant.preferred_timezone, default=self._default_timezone)

    async def get(self, tenant_id: str, event_id: str, date: str | None = None) -> CalendarEvent:
        """Look up an event by key, or by id alone when *date* is unknown."""
        if date is not None:
            event = await self._store.get_by_id(tenant_id, date, event_id)
        else:
            event = await self._store.get_by_id_only(tenant_id, event_id)
        if event is None:
            raise NotFoundError("event", event_id)
        return event

    # -- field derivation ------------------------------------------------------

    def _time_fields(
        self,
        event: CalendarEvent,
        changes: Mapping[str, Any],
        resolver: TimezoneResolver,
    ) -> dict[str, Any]:
        start = changes.get("start_time")
        end = changes.get("end_time")
        duration = changes.get("duration_minutes")
        fields: dict[str, Any] = {}

        new_start = start if start is not None else event.start_time
        if end is not None:
            new_end = end
        elif start is not None:
            minutes = duration if duration is not None else event.duration_minutes
            new_end = (
                start + timedelta(minutes=minutes) if minutes is not None else start + event.span
            )
        elif duration is not None:
            new_end = event.start_time + timedelta(minutes=duration)
        else:
            return fields

        if new_end <= new_start:
            raise ValidationError("end_time must be after start_time", field="end_time")

        if start is not None:
            fields["start_time"] = new_start
            new_date = resolver.local_date(new_start).isoformat()
            if new_date != event.date:
                fields["date"] = new_date
        fields["end_time"] = new_end
        if duration is not None:
            fields["duration_minutes"] = duration
        elif end is not None:
            fields["duration_minutes"] = _minutes_between(new_start, new_end)
        return fields

    # -- single-event update ---------------------------------------------------

    async def update(
        self,
        tenant: Tenant,
        event_id: str,
        changes: CalendarEventUpdate | Mapping[str, Any],
        *,
        date: str | None = None,
    ) -> CalendarEvent:
        """Apply *changes* to one appointment and return the stored result.

        Only explicitly set fields are applied.  Changing ``start_time``
        without ``end_time`` recomputes the end from ``duration_minutes``
        (falling back to the stored span), and moves the event's ``date``
        partition when the local date changes.
        """
        if not isinstance(changes, CalendarEventUpdate):
            changes = parse_model(CalendarEventUpdate, changes)
        requested = changes.changed_fields()
        event = await self.get(tenant.id, event_id, date)
        resolver = self.resolver_for(tenant)

        patch_fields = self._time_fields(event, requested, resolver)
        for name in _CONTENT_FIELDS:
            if name in requested:
                patch_fields[name] = requested[name]

        cancelling = (
            requested.get("status") is EventStatus.CANCELLED
            and event.status is not EventStatus.CANCELLED
        )
        if "status" in requested:
            patch_fields["status"] = requested["status"]
        if cancelling:
            patch_fields["cancelled_by"] = CANCELLED_BY_TENANT
            patch_fields["cancelled_at"] = datetime.now(UTC)

        updated = await self._store.update(
            tenant.id, event.date, event.id, EventPatch.model_validate(patch_fields)
        )
        if updated is None:
            raise NotFoundError("event", event_id)
        logger.info(
            "Updated event %s for tenant %s (%s)",
            updated.id,
            tenant.id,
            ", ".join(sorted(patch_fields)),
        )

        if cancelling:
            updated = await self._complete_cancellation(tenant, updated)
        self._sync.enqueue_update(tenant, updated)
        return updated

    # -- cancellation ----------------------------------------------------------

    async def _refund(self, event: CalendarEvent) -> RefundInfo | None:
        intent_id = event.stripe_payment_intent_id
        if intent_id is None:
            return None
        if self._payments is None:
            logger.warning(
                "Event %s has payment intent %s but no payment processor is configured",
                event.id,
                intent_id,
            )
            return None
        try:
            intent = await self._payments.get_payment_intent(intent_id)
            refund = await self._payments.create_full_refund(intent_id)
        except Exception:
            logger.warning(
                "Refund for cancelled event %s (payment intent %s) failed; "
                "the cancellation stands",
                event.id,
                intent_id,
                exc_info=True,
            )
            return None
        return RefundInfo(amount_cents=intent.amount, currency=intent.currency, refund_id=refund.id)

    async def _complete_cancellation(self, tenant: Tenant, event: CalendarEvent) -> CalendarEvent:
        refund = await self._refund(event)
        if refund is not None:
            try:
                recorded = await self._store.update(
                    tenant.id,
                    event.date,
                    event.id,
                    EventPatch(
                        refund_amount_cents=refund.amount_cents,
                        stripe_refund_id=refund.refund_id,
                    ),
                )
            except Exception:
                logger.exception(
                    "Refund %s issued for event %s but recording it failed",
                    refund.refund_id,
                    event.id,
                )
            else:
                if recorded is not None:
                    event = recorded

        visitor = event.visitor
        if self._notifier is not None and visitor is not None and visitor.email:
            self._background.spawn(
                self._notifier.send_booking_cancelled_email(visitor, tenant, event, refund),
                name=f"cancel-email:{event.id}",
            )
        return event

    # -- series update ---------------------------------------------------------

    async def update_following(
        self,
        tenant: Tenant,
        event_id: str,
        changes: CalendarEventUpdate | Mapping[str, Any],
        *,
        date: str | None = None,
    ) -> SeriesUpdateResult:
        """Apply *changes* to an occurrence and every later one in its series.

        When a time field changes, each later occurrence keeps its own date
        (shifted by the same number of local days as the anchor) and takes the
        anchor's new local wall-clock time and duration.  Content-only changes
        leave every follower's time alone.  Members are written independently;
        failures are collected rather than rolled back.
        """
        if not isinstance(changes, CalendarEventUpdate):
            changes = parse_model(CalendarEventUpdate, changes)
        requested = changes.changed_fields()
        if "status" in requested:
            raise ValidationError("Status changes apply to a single appointment", field="status")

        anchor = await self.get(tenant.id, event_id, date)
        updated_anchor = await self.update(tenant, anchor.id, changes, date=anchor.date)
        if anchor.recurrence_group_id is None:
            return SeriesUpdateResult(events=[updated_anchor])

        resolver = self.resolver_for(tenant)
        day_shift = resolver.local_date(updated_anchor.start_time) - resolver.local_date(
            anchor.start_time
        )
        wall_time = resolver.local_datetime(updated_anchor.start_time).time()
        span = updated_anchor.span

        members = await self._store.get_by_recurrence_group(tenant.id, anchor.recurrence_group_id)
        followers = sorted(
            (
                member
                for member in members
                if member.id != anchor.id
                and member.start_time > anchor.start_time
                and member.status is not EventStatus.CANCELLED
            ),
            key=lambda member: member.start_time,
        )

        retime = not _TIME_FIELDS.isdisjoint(requested)
        result = SeriesUpdateResult(events=[updated_anchor])
        for member in followers:
            patch_fields: dict[str, Any] = {}
            if retime:
                new_day = resolver.local_date(member.start_time) + day_shift
                new_start = resolver.at_local_time(new_day, wall_time)
                patch_fields.update(
                    start_time=new_start,
                    end_time=new_start + span,
                    duration_minutes=updated_anchor.duration_minutes,
                )
                if new_day.isoformat() != member.date:
                    patch_fields["date"] = new_day.isoformat()
            for name in _CONTENT_FIELDS:
                if name in requested:
                    patch_fields[name] = requested[name]
            try:
                stored = await self._store.update(
                    tenant.id, member.date, member.id, EventPatch.model_validate(patch_fields)
                )
            except Exception:
                logger.warning(
                    "Failed to update series member %s of %s",
                    member.id,
                    anchor.recurrence_group_id,
                    exc_info=True,
                )
                result.failed_event_ids.append(member.id)
                continue
            if stored is None:
                result.failed_event_ids.append(member.id)
                continue
            result.events.append(stored)
            self._sync.enqueue_update(tenant, stored)
        return result
