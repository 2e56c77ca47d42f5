"""Structured logging for Cally.

Every module logs through ``logging.getLogger(__name__)``; structlog's
``ProcessorFormatter`` renders those records as coloured console text or JSON
lines.  Each record is stamped with the tenant being served and the current
OTel trace/span ids.

With ``log_root`` set, JSON copies are also written to ``<log_root>/cally.log``
(application records) and ``<log_root>/http.log`` (HTTP and database driver
chatter, which is kept off the console below WARNING).
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar, Token
from pathlib import Path

import structlog
from opentelemetry import trace

_tenant_context: ContextVar[str | None] = ContextVar("cally_tenant_id", default=None)

# Transport loggers: quiet on the console, routed to http.log when file logging is on.
_TRANSPORT_LOGGERS = ("httpx", "httpcore", "asyncpg", "mcp.server.lowlevel.server")

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def set_tenant_context(tenant_id: str | None) -> Token[str | None]:
    """Mark *tenant_id* as the tenant being served; returns a token for reset."""
    return _tenant_context.set(tenant_id)


def reset_tenant_context(token: Token[str | None]) -> None:
    _tenant_context.reset(token)


def get_tenant_context() -> str | None:
    return _tenant_context.get()


def add_scheduling_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Stamp ``tenant``, ``trace_id`` and ``span_id`` onto the record."""
    event_dict["tenant"] = _tenant_context.get()
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_scheduling_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer: structlog.types.Processor, timestamp_fmt: str) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(timestamp_fmt),
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install the console handler (and optional JSON files) on the root logger.

    Calling it again replaces the previous configuration.
    """
    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        timestamp_fmt = "iso"
    else:
        renderer = structlog.dev.ConsoleRenderer()
        timestamp_fmt = "%H:%M:%S"

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, timestamp_fmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    transport_loggers = [logging.getLogger(name) for name in _TRANSPORT_LOGGERS]
    for transport in transport_loggers:
        transport.setLevel(logging.WARNING)
        transport.handlers.clear()

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_file_handler(log_root / "cally.log"))
        http_handler = _json_file_handler(log_root / "http.log")
        for transport in transport_loggers:
            transport.addHandler(http_handler)

    structlog.configure(
        processors=[
            *_pre_chain(timestamp_fmt),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
