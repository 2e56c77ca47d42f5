"""Merge and de-duplication of native and provider calendar items.

A provider event that a native event already mirrors (through
``google_calendar_event_id``/``outlook_calendar_event_id``) is shown once, as
the native item.  The merged list is ordered by ``start`` using a stable sort
over fixed-width ``...Z`` UTC strings, so items with equal starts keep their
input order.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from operator import attrgetter
from typing import assert_never

from cally.scheduling.models import CalendarItem, EventStatus, ItemSource

PENDING_COLOR = "#f59e0b"

# Merge order for provider item sets after the native items.
PROVIDER_ORDER = (ItemSource.GOOGLE, ItemSource.OUTLOOK)


def status_display_color(status: EventStatus, color: str) -> str:
    """Return the display colour for a native item of *status*."""
    match status:
        case EventStatus.PENDING:
            return PENDING_COLOR
        case (
            EventStatus.PENDING_PAYMENT
            | EventStatus.SCHEDULED
            | EventStatus.COMPLETED
            | EventStatus.CANCELLED
            | EventStatus.NO_SHOW
        ):
            return color
        case _:
            assert_never(status)


def linked_provider_ids(native_items: Iterable[CalendarItem]) -> dict[ItemSource, set[str]]:
    """Collect the provider event ids already mirrored by native items."""
    linked: dict[ItemSource, set[str]] = {source: set() for source in PROVIDER_ORDER}
    for item in native_items:
        props = item.extended_props
        if props.google_calendar_event_id:
            linked[ItemSource.GOOGLE].add(props.google_calendar_event_id)
        if props.outlook_calendar_event_id:
            linked[ItemSource.OUTLOOK].add(props.outlook_calendar_event_id)
    return linked


def _with_status_color(item: CalendarItem) -> CalendarItem:
    status = item.extended_props.status
    if status is None:
        return item
    color = status_display_color(status, item.color)
    if color == item.color:
        return item
    return item.model_copy(update={"color": color})


def sort_items(items: Iterable[CalendarItem]) -> list[CalendarItem]:
    """Stable ascending sort on the ``start`` string."""
    return sorted(items, key=attrgetter("start"))


def merge(
    native_items: Sequence[CalendarItem],
    provider_items: Mapping[ItemSource, Sequence[CalendarItem]],
) -> list[CalendarItem]:
    """Combine native and provider items into one de-duplicated, ordered list."""
    linked = linked_provider_ids(native_items)

    combined = [_with_status_color(item) for item in native_items]
    for source in PROVIDER_ORDER:
        for item in provider_items.get(source, ()):
            if item.extended_props.provider_event_id in linked[source]:
                continue
            combined.append(item)

    return sort_items(combined)
