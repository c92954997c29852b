"""calsync configuration loading and validation.

Reads ``calsync.toml`` (or an explicit TOML file), resolves ``${VAR}``
references against the environment, and returns a validated
:class:`CalsyncConfig`.

Example::

    [google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"
    redirect_uri = "http://localhost:3000/oauth/google/callback"
    calendar_id = "primary"

    [sync]
    token_refresh_buffer_seconds = 300
    full_sync_past_years = 1
    full_sync_future_years = 2
    run_timeout_seconds = 300

    [logging]
    level = "INFO"
    format = "json"

    [database]
    dsn = "${DATABASE_URL}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILE_NAME = "calsync.toml"
DEFAULT_REDIRECT_URI = "http://localhost:3000/oauth/google/callback"
DEFAULT_CALENDAR_ID = "primary"
# Read-only calendar access plus the account email shown in the settings UI.
DEFAULT_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
)
DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS = 300
DEFAULT_FULL_SYNC_PAST_YEARS = 1
DEFAULT_FULL_SYNC_FUTURE_YEARS = 2
DEFAULT_PAGE_SIZE = 250
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_RUN_TIMEOUT_SECONDS = 300.0

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass
class GoogleOAuthConfig:
    """OAuth client registration from the [google] section."""

    client_id: str
    client_secret: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    calendar_id: str = DEFAULT_CALENDAR_ID
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r}, calendar_id={self.calendar_id!r})"
        )


@dataclass
class SyncSettings:
    """Import run tuning from the [sync] section.

    ``run_timeout_seconds`` bounds a whole import run; ``None`` disables the
    deadline. ``http_timeout_seconds`` bounds each individual Google call.
    """

    token_refresh_buffer_seconds: int = DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS
    full_sync_past_years: int = DEFAULT_FULL_SYNC_PAST_YEARS
    full_sync_future_years: int = DEFAULT_FULL_SYNC_FUTURE_YEARS
    page_size: int = DEFAULT_PAGE_SIZE
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    run_timeout_seconds: float | None = DEFAULT_RUN_TIMEOUT_SECONDS


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """asyncpg pool settings from the [database] section."""

    dsn: str | None = None
    min_size: int = 1
    max_size: int = 5


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8200


@dataclass
class CalsyncConfig:
    google: GoogleOAuthConfig
    sync: SyncSettings = field(default_factory=SyncSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaves pass through unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _require_str(section: dict[str, Any], key: str, section_name: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {section_name}.{key}")
    return value.strip()


def _positive_int(section: dict[str, Any], key: str, default: int, section_name: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ConfigError(f"{section_name}.{key} must be a non-negative integer, got {raw!r}")
    return raw


def _positive_float(section: dict[str, Any], key: str, default: float, section_name: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float) or raw <= 0:
        raise ConfigError(f"{section_name}.{key} must be a positive number, got {raw!r}")
    return float(raw)


def _table(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _parse_google(data: dict[str, Any]) -> GoogleOAuthConfig:
    section = data.get("google")
    if not isinstance(section, dict):
        raise ConfigError("Missing [google] section in config")

    scopes_raw = section.get("scopes")
    if scopes_raw is None:
        scopes = DEFAULT_SCOPES
    elif isinstance(scopes_raw, list) and all(isinstance(s, str) for s in scopes_raw):
        scopes = tuple(s.strip() for s in scopes_raw if s.strip())
    else:
        raise ConfigError("google.scopes must be a list of strings")

    return GoogleOAuthConfig(
        client_id=_require_str(section, "client_id", "google"),
        client_secret=_require_str(section, "client_secret", "google"),
        redirect_uri=str(section.get("redirect_uri", DEFAULT_REDIRECT_URI)).strip(),
        calendar_id=str(section.get("calendar_id", DEFAULT_CALENDAR_ID)).strip()
        or DEFAULT_CALENDAR_ID,
        scopes=scopes,
    )


def _parse_sync(data: dict[str, Any]) -> SyncSettings:
    section = _table(data, "sync")

    page_size = _positive_int(section, "page_size", DEFAULT_PAGE_SIZE, "sync")
    if not 1 <= page_size <= 2500:
        raise ConfigError(f"sync.page_size must be between 1 and 2500, got {page_size}")

    # 0 disables the run deadline.
    run_timeout: float | None = None
    if section.get("run_timeout_seconds", DEFAULT_RUN_TIMEOUT_SECONDS) != 0:
        run_timeout = _positive_float(
            section, "run_timeout_seconds", DEFAULT_RUN_TIMEOUT_SECONDS, "sync"
        )

    return SyncSettings(
        token_refresh_buffer_seconds=_positive_int(
            section,
            "token_refresh_buffer_seconds",
            DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS,
            "sync",
        ),
        full_sync_past_years=_positive_int(
            section, "full_sync_past_years", DEFAULT_FULL_SYNC_PAST_YEARS, "sync"
        ),
        full_sync_future_years=_positive_int(
            section, "full_sync_future_years", DEFAULT_FULL_SYNC_FUTURE_YEARS, "sync"
        ),
        page_size=page_size,
        http_timeout_seconds=_positive_float(
            section, "http_timeout_seconds", DEFAULT_HTTP_TIMEOUT_SECONDS, "sync"
        ),
        run_timeout_seconds=run_timeout,
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _table(data, "logging")
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _table(data, "database")
    dsn = section.get("dsn")
    if dsn is not None and (not isinstance(dsn, str) or not dsn.strip()):
        raise ConfigError("database.dsn must be a non-empty string when set")
    min_size = _positive_int(section, "min_size", 1, "database")
    max_size = _positive_int(section, "max_size", 5, "database")
    if max_size < max(min_size, 1):
        raise ConfigError("database.max_size must be >= database.min_size and at least 1")
    return DatabaseConfig(dsn=dsn.strip() if dsn else None, min_size=min_size, max_size=max_size)


def _parse_server(data: dict[str, Any]) -> ServerConfig:
    section = _table(data, "server")
    return ServerConfig(
        host=str(section.get("host", "127.0.0.1")),
        port=_positive_int(section, "port", 8200, "server"),
    )


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    return CalsyncConfig(
        google=_parse_google(data),
        sync=_parse_sync(data),
        logging=_parse_logging(data),
        database=_parse_database(data),
        server=_parse_server(data),
    )


def load_config(path: Path) -> CalsyncConfig:
    """Load and validate a calsync TOML config.

    Parameters
    ----------
    path:
        Either the TOML file itself or a directory containing ``calsync.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = path / CONFIG_FILE_NAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)


def load_config_from_env() -> CalsyncConfig:
    """Build a config from ``GOOGLE_*`` / ``DATABASE_URL`` environment variables."""
    client_id = os.environ.get("GOOGLE_CLIENT_ID", "").strip()
    client_secret = os.environ.get("GOOGLE_CLIENT_SECRET", "").strip()
    missing = [
        name
        for name, value in (
            ("GOOGLE_CLIENT_ID", client_id),
            ("GOOGLE_CLIENT_SECRET", client_secret),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"Google OAuth is not configured; missing {', '.join(missing)}")

    return CalsyncConfig(
        google=GoogleOAuthConfig(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=os.environ.get("GOOGLE_REDIRECT_URI", DEFAULT_REDIRECT_URI).strip(),
        ),
        logging=LoggingConfig(
            level=os.environ.get("CALSYNC_LOG_LEVEL", "INFO").upper(),
            format=os.environ.get("CALSYNC_LOG_FORMAT", "text").lower(),
        ),
        database=DatabaseConfig(dsn=os.environ.get("DATABASE_URL") or None),
    )
