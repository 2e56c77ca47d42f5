"""SMTP notification sender for booking lifecycle emails."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.mime.text import MIMEText

from cally.config import SmtpConfig
from cally.scheduling.errors import NotificationError
from cally.scheduling.models import CalendarEvent, Tenant, Visitor
from cally.scheduling.ports import NotificationSender, RefundInfo
from cally.scheduling.timezones import TimezoneResolver

logger = logging.getLogger(__name__)


def format_amount(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:.2f} {currency.upper()}"


def render_booking_cancelled(
    visitor: Visitor,
    tenant: Tenant,
    event: CalendarEvent,
    refund: RefundInfo | None,
    *,
    resolver: TimezoneResolver,
) -> tuple[str, str]:
    """Return ``(subject, body)`` for a booking cancellation email."""
    business = tenant.name or "your host"
    when = resolver.format_date_time(event.start_time)
    subject = f"Your booking with {business} has been cancelled"
    lines = [
        f"Hi {visitor.name},",
        "",
        f"Your booking \"{event.title}\" on {when} ({resolver.name}) has been cancelled.",
    ]
    if refund is not None:
        lines += [
            "",
            f"A full refund of {format_amount(refund.amount_cents, refund.currency)} "
            "has been issued to your original payment method.",
            f"Refund reference: {refund.refund_id}",
        ]
    lines += ["", f"- {business}"]
    return subject, "\n".join(lines)


class SmtpNotificationSender(NotificationSender):
    """Sends plain-text emails over SMTP, off the event loop."""

    def __init__(self, config: SmtpConfig, *, default_timezone: str | None = None) -> None:
        self._config = config
        self._default_timezone = default_timezone

    def _smtp_send(self, to: str, subject: str, body: str) -> None:
        """Blocking SMTP send; run via ``asyncio.to_thread``."""
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self._config.from_address
        msg["To"] = to

        server = smtplib.SMTP(self._config.host, self._config.port)
        try:
            if self._config.use_tls:
                server.starttls()
            if self._config.username and self._config.password:
                server.login(self._config.username, self._config.password)
            server.sendmail(self._config.from_address, [to], msg.as_string())
        finally:
            server.quit()

    async def send(self, to: str, subject: str, body: str) -> None:
        try:
            await asyncio.to_thread(self._smtp_send, to, subject, body)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"failed to send email to {to}: {exc}") from exc
        logger.info("Email sent to %s: %s", to, subject)

    async def send_booking_cancelled_email(
        self,
        visitor: Visitor,
        tenant: Tenant,
        event: CalendarEvent,
        refund: RefundInfo | None = None,
    ) -> None:
        if not visitor.email:
            logger.info("Visitor for event %s has no email; skipping cancellation email", event.id)
            return
        resolver = TimezoneResolver(tenant.preferred_timezone, **self._resolver_kwargs())
        subject, body = render_booking_cancelled(visitor, tenant, event, refund, resolver=resolver)
        await self.send(visitor.email, subject, body)

    def _resolver_kwargs(self) -> dict[str, str]:
        if self._default_timezone is None:
            return {}
        return {"default": self._default_timezone}
