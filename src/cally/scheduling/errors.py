"""Error taxonomy for the scheduling core.

Validation and not-found errors propagate to the immediate caller.
``ProviderUnavailable`` subclasses are raised by external collaborators and
are always contained at the component that made the call.
"""

from __future__ import annotations

import re
from datetime import date


class SchedulingError(RuntimeError):
    """Base error for the scheduling core."""


class ValidationError(SchedulingError):
    """Raised for malformed or missing required input."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        self.message = message
        super().__init__(message)


class NotFoundError(SchedulingError):
    """Raised when a referenced event or tenant does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource.capitalize()} not found: {identifier}")


class ProviderUnavailable(SchedulingError):
    """Raised when an external provider call fails."""

    def __init__(self, message: str, *, provider: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"{provider} unavailable: {message}")


class CalendarProviderError(ProviderUnavailable):
    """Raised when a Google or Outlook calendar request fails."""

    def __init__(self, message: str, *, provider: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        if status_code is not None:
            message = f"request failed ({status_code}): {message}"
        super().__init__(message, provider=provider)


class PaymentProcessorError(ProviderUnavailable):
    """Raised when the payment processor rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message, provider="stripe")


class NotificationError(ProviderUnavailable):
    """Raised when an outbound notification cannot be delivered."""

    def __init__(self, message: str) -> None:
        super().__init__(message, provider="smtp")


class PartialBatchFailure(SchedulingError):
    """Summary of a recurring series that persisted only some occurrences.

    Never raised by the public API; attached to the creation result instead.
    """

    def __init__(
        self,
        *,
        requested: int,
        created: int,
        failed_date: date,
        cause: BaseException,
    ) -> None:
        self.requested = requested
        self.created = created
        self.failed_date = failed_date
        self.cause = cause
        super().__init__(
            f"Created {created} of {requested} occurrences; "
            f"occurrence on {failed_date.isoformat()} failed: {cause}"
        )


def sanitize_error_message(message: str, *, limit: int = 200) -> str:
    """Redact token values, collapse whitespace and truncate *message*."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|api_key|token)(['\"]?\s*[=:]\s*['\"]?)"
        r"([^\s,;'\"]+)",
        r"\1\2[REDACTED]",
        message,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return " ".join(redacted.split())[:limit]
