"""Test support utilities for the cally package.

In-memory stores and recording collaborator fakes that implement the
scheduling ports without a database or network.  They have no dependency on
pytest so they can also back local previews.
"""

from __future__ import annotations

from cally.testing.fakes import (
    RecordingCalendarClient,
    RecordingNotifier,
    RecordingPaymentProcessor,
)
from cally.testing.stores import InMemoryEventStore, InMemoryTenantStore

__all__ = [
    "InMemoryEventStore",
    "InMemoryTenantStore",
    "RecordingCalendarClient",
    "RecordingNotifier",
    "RecordingPaymentProcessor",
]
