"""CLI for Cally: expand recurrence rules, preview calendars and serve agent tools."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from pathlib import Path

import click

from cally import __version__
from cally.config import CallyConfig, ConfigError, load_config
from cally.core.logging import configure_logging
from cally.core.telemetry import init_telemetry
from cally.scheduling.errors import SchedulingError
from cally.scheduling.models import MonthlyMode, RecurrenceFrequency, RecurrenceRule, parse_model
from cally.scheduling.recurrence import expand as expand_rule
from cally.scheduling.service import SchedulingService

logger = logging.getLogger(__name__)


def _parse_days_of_week(value: str | None) -> list[int]:
    if not value:
        return []
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError as exc:
        raise click.BadParameter("expected comma-separated numbers, 0 = Sunday") from exc


def _load(config_path: Path) -> CallyConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root)
    init_telemetry("cally")
    return config


@asynccontextmanager
async def open_service(config: CallyConfig) -> AsyncIterator[SchedulingService]:
    """Construct the service and its collaborators, closing them on exit."""
    # Deferred so ``cally expand`` does not need the database and HTTP stacks.
    from cally.db import Database
    from cally.notifications.email import SmtpNotificationSender
    from cally.payments.stripe import StripePaymentProcessor
    from cally.providers.google import GoogleCalendarClient
    from cally.providers.outlook import OutlookCalendarClient
    from cally.storage.postgres import PostgresEventStore, PostgresTenantStore, ensure_schema

    async with AsyncExitStack() as stack:
        db = Database(config.database)
        await db.connect()
        stack.push_async_callback(db.close)
        await ensure_schema(db)

        google = outlook = payments = None
        if config.google is not None:
            google = GoogleCalendarClient(
                client_id=config.google.client_id, client_secret=config.google.client_secret
            )
            stack.push_async_callback(google.aclose)
        if config.outlook is not None:
            outlook = OutlookCalendarClient(
                client_id=config.outlook.client_id,
                client_secret=config.outlook.client_secret,
                tenant=config.outlook.tenant,
            )
            stack.push_async_callback(outlook.aclose)
        if config.stripe is not None:
            payments = StripePaymentProcessor(config.stripe.api_key)
            stack.push_async_callback(payments.aclose)
        notifier = (
            SmtpNotificationSender(config.smtp, default_timezone=config.default_timezone)
            if config.smtp is not None
            else None
        )

        service = SchedulingService(
            store=PostgresEventStore(db),
            tenants=PostgresTenantStore(db),
            google=google,
            outlook=outlook,
            payments=payments,
            notifier=notifier,
            default_timezone=config.default_timezone,
            provider_timeout=config.provider_timeout_seconds,
            upcoming_lookahead_days=config.upcoming_lookahead_days,
        )
        stack.push_async_callback(service.aclose)
        yield service


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Cally: calendar scheduling core for bookings and AI assistants."""


@cli.command()
@click.argument("start", type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option(
    "--frequency",
    required=True,
    type=click.Choice([member.value for member in RecurrenceFrequency]),
)
@click.option("--interval", type=int, default=1, show_default=True)
@click.option("--count", type=int, default=None, help="Number of occurrences")
@click.option("--until", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--days-of-week", default=None, help="Weekly only, e.g. 1,3 (0 = Sunday)")
@click.option(
    "--monthly-mode",
    type=click.Choice([member.value for member in MonthlyMode]),
    default=MonthlyMode.DAY_OF_MONTH.value,
    show_default=True,
)
@click.option("--except", "exceptions", multiple=True, type=click.DateTime(formats=["%Y-%m-%d"]))
def expand(
    start: datetime,
    frequency: str,
    interval: int,
    count: int | None,
    until: datetime | None,
    days_of_week: str | None,
    monthly_mode: str,
    exceptions: tuple[datetime, ...],
) -> None:
    """Print the occurrence dates of a recurrence rule starting on START."""
    if (count is None) == (until is None):
        raise click.UsageError("Pass exactly one of --count or --until")
    raw: dict[str, object] = {
        "frequency": frequency,
        "interval": interval,
        "days_of_week": _parse_days_of_week(days_of_week),
        "monthly_mode": monthly_mode,
        "exception_dates": [value.date() for value in exceptions],
    }
    if count is not None:
        raw["count"] = count
    else:
        raw["until"] = until.date()
    try:
        rule = parse_model(RecurrenceRule, raw)
    except SchedulingError as exc:
        raise click.ClickException(str(exc)) from exc

    for occurrence in expand_rule(start.date(), rule):
        click.echo(occurrence.isoformat())


@cli.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to cally.toml",
)
@click.option("--tenant", "tenant_id", required=True, help="Tenant id")
@click.option("--start", "start_date", required=True, help="First local date (YYYY-MM-DD)")
@click.option("--end", "end_date", default=None, help="Last local date (defaults to --start)")
def calendar(config_path: Path, tenant_id: str, start_date: str, end_date: str | None) -> None:
    """Print the merged calendar for a tenant as JSON."""
    config = _load(config_path)

    async def _run() -> list[dict]:
        async with open_service(config) as service:
            items = await service.get_calendar(tenant_id, start_date, end_date)
            return [item.model_dump(mode="json") for item in items]

    try:
        items = asyncio.run(_run())
    except SchedulingError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(items, indent=2))


@cli.command("serve-tools")
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to cally.toml",
)
@click.option("--tenant", "tenant_id", required=True, help="Tenant id the tools act for")
@click.option("--port", type=int, default=None, help="Serve over SSE on this port (default: stdio)")
def serve_tools(config_path: Path, tenant_id: str, port: int | None) -> None:
    """Run the assistant tools as an MCP server."""
    config = _load(config_path)
    asyncio.run(_serve_tools(config, tenant_id, port))


async def _serve_tools(config: CallyConfig, tenant_id: str, port: int | None) -> None:
    import uvicorn
    from fastmcp import FastMCP

    from cally.tools.assistant import AssistantTools

    async with open_service(config) as service:
        await service.get_tenant(tenant_id)
        mcp = FastMCP("cally")
        AssistantTools(service, tenant_id).register(mcp)
        logger.info("Serving assistant tools for tenant %s", tenant_id)
        if port is None:
            await mcp.run_async(transport="stdio")
            return
        server = uvicorn.Server(
            uvicorn.Config(
                mcp.http_app(transport="sse"),
                host="0.0.0.0",
                port=port,
                log_level="info",
                timeout_graceful_shutdown=0,
            )
        )
        await server.serve()


def main() -> None:
    try:
        cli()
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
