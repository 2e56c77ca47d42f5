"""Cally configuration loading and validation.

Reads a ``cally.toml`` file, resolves ``${VAR}`` environment references,
parses all sections, and returns a validated :class:`CallyConfig`.

Example::

    [cally]
    default_timezone = "Australia/Sydney"
    provider_timeout_seconds = 8

    [cally.logging]
    level = "INFO"
    format = "json"

    [cally.database]
    host = "localhost"
    name = "cally"
    password = "${POSTGRES_PASSWORD}"

    [cally.google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cally.scheduling.timezones import DEFAULT_TIMEZONE

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}
_VALID_SSL_MODES = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [cally.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    name: str = "cally"
    ssl: str | None = None


@dataclass
class GoogleOAuthConfig:
    client_id: str
    client_secret: str


@dataclass
class OutlookOAuthConfig:
    client_id: str
    client_secret: str
    tenant: str = "common"


@dataclass
class StripeConfig:
    api_key: str


@dataclass
class SmtpConfig:
    host: str
    from_address: str
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True


@dataclass
class CallyConfig:
    """Fully parsed configuration."""

    default_timezone: str = DEFAULT_TIMEZONE
    provider_timeout_seconds: float = 8.0
    upcoming_lookahead_days: int = 30
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    google: GoogleOAuthConfig | None = None
    outlook: OutlookOAuthConfig | None = None
    stripe: StripeConfig | None = None
    smtp: SmtpConfig | None = None


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively replace ``${VAR_NAME}`` references with environment values.

    Raises
    ------
    ConfigError
        If any referenced variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    # int, float, bool, None pass through unchanged.
    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing one."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _require_str(section: dict, key: str, prefix: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {prefix}.{key}")
    return value.strip()


def _optional_table(section: dict, key: str) -> dict | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"cally.{key} must be a table")
    return value


def _parse_logging(section: dict | None) -> LoggingConfig:
    if section is None:
        return LoggingConfig()
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"Invalid cally.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    log_root = section.get("log_root")
    return LoggingConfig(level=level, format=fmt, log_root=str(log_root) if log_root else None)


def _parse_ssl_mode(value: object) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    mode = str(value).strip().lower()
    if mode not in _VALID_SSL_MODES:
        allowed = ", ".join(sorted(_VALID_SSL_MODES))
        raise ConfigError(f"Invalid cally.database.ssl: {value!r}. Expected one of: {allowed}")
    return mode


def _parse_database(section: dict | None) -> DatabaseConfig:
    if section is None:
        return DatabaseConfig()
    try:
        port = int(section.get("port", 5432))
    except (TypeError, ValueError) as exc:
        raise ConfigError("cally.database.port must be an integer") from exc
    return DatabaseConfig(
        host=str(section.get("host", "localhost")),
        port=port,
        user=str(section.get("user", "postgres")),
        password=str(section.get("password", "postgres")),
        name=str(section.get("name", "cally")),
        ssl=_parse_ssl_mode(section.get("ssl")),
    )


def _parse_smtp(section: dict) -> SmtpConfig:
    try:
        port = int(section.get("port", 587))
    except (TypeError, ValueError) as exc:
        raise ConfigError("cally.smtp.port must be an integer") from exc
    return SmtpConfig(
        host=_require_str(section, "host", "cally.smtp"),
        from_address=_require_str(section, "from_address", "cally.smtp"),
        port=port,
        username=section.get("username"),
        password=section.get("password"),
        use_tls=bool(section.get("use_tls", True)),
    )


def parse_config(data: dict[str, Any]) -> CallyConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    section = data.get("cally", {})
    if not isinstance(section, dict):
        raise ConfigError("[cally] must be a table")

    default_timezone = str(section.get("default_timezone", DEFAULT_TIMEZONE)).strip()
    try:
        ZoneInfo(default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown cally.default_timezone: {default_timezone!r}") from exc

    try:
        timeout = float(section.get("provider_timeout_seconds", 8.0))
        lookahead = int(section.get("upcoming_lookahead_days", 30))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric value in [cally]: {exc}") from exc
    if timeout <= 0:
        raise ConfigError("cally.provider_timeout_seconds must be positive")
    if lookahead <= 0:
        raise ConfigError("cally.upcoming_lookahead_days must be positive")

    google_section = _optional_table(section, "google")
    outlook_section = _optional_table(section, "outlook")
    stripe_section = _optional_table(section, "stripe")
    smtp_section = _optional_table(section, "smtp")

    return CallyConfig(
        default_timezone=default_timezone,
        provider_timeout_seconds=timeout,
        upcoming_lookahead_days=lookahead,
        logging=_parse_logging(_optional_table(section, "logging")),
        database=_parse_database(_optional_table(section, "database")),
        google=(
            GoogleOAuthConfig(
                client_id=_require_str(google_section, "client_id", "cally.google"),
                client_secret=_require_str(google_section, "client_secret", "cally.google"),
            )
            if google_section is not None
            else None
        ),
        outlook=(
            OutlookOAuthConfig(
                client_id=_require_str(outlook_section, "client_id", "cally.outlook"),
                client_secret=_require_str(outlook_section, "client_secret", "cally.outlook"),
                tenant=str(outlook_section.get("tenant", "common")),
            )
            if outlook_section is not None
            else None
        ),
        stripe=(
            StripeConfig(api_key=_require_str(stripe_section, "api_key", "cally.stripe"))
            if stripe_section is not None
            else None
        ),
        smtp=_parse_smtp(smtp_section) if smtp_section is not None else None,
    )


def load_config(path: Path) -> CallyConfig:
    """Load and validate a ``cally.toml`` file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
