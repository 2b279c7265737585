"""wedsync configuration loading and validation.

Reads ``wedsync.toml``, resolves ``${VAR}`` references from the environment,
and returns a validated WedsyncConfig dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_DB_NAME = "wedsync"
DEFAULT_CALENDAR_NAME = "Wedding Planning"


class ConfigError(Exception):
    """Raised when wedsync configuration is missing, malformed, or invalid."""


class ConflictPolicy(enum.StrEnum):
    """How a pull treats a remote change to an event with unpushed local edits."""

    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"


@dataclass
class DatabaseConfig:
    """Database configuration from the [database] section."""

    name: str = DEFAULT_DB_NAME
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Reconciliation settings from the [sync] section.

    ``lock_ceiling_seconds`` is the age after which a held sync lease is
    considered abandoned and may be taken over by a new pass.
    ``provider_timeout_seconds`` bounds every single provider call.
    ``full_sync_window_days`` limits how far back a pull without a cursor
    reaches. ``log_retention_days = 0`` keeps the sync log forever.
    """

    lock_ceiling_seconds: int = 900
    provider_timeout_seconds: float = 30.0
    full_sync_window_days: int = 30
    poll_interval_minutes: int = 5
    conflict_policy: ConflictPolicy = ConflictPolicy.LOCAL_WINS
    log_retention_days: int = 90


@dataclass
class GoogleConfig:
    """Google OAuth and calendar settings from the [google] section."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    state_secret: str | None = None
    calendar_name: str = DEFAULT_CALENDAR_NAME
    timezone: str = "UTC"
    dashboard_url: str | None = None

    def missing_oauth_settings(self) -> list[str]:
        """Return the names of unset settings required by the connect flow."""
        missing = []
        for attr, env_name in (
            ("client_id", "GOOGLE_CLIENT_ID"),
            ("client_secret", "GOOGLE_CLIENT_SECRET"),
            ("redirect_uri", "GOOGLE_REDIRECT_URI"),
            ("state_secret", "OAUTH_STATE_SECRET"),
        ):
            if not getattr(self, attr):
                missing.append(env_name)
        return missing


@dataclass
class ApiConfig:
    """HTTP server settings from the [api] section."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class WedsyncConfig:
    """Parsed and validated wedsync configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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


def _positive_int(
    section: dict[str, Any],
    key: str,
    default: int,
    path: str,
    *,
    allow_zero: bool = False,
) -> int:
    expected = "a non-negative integer" if allow_zero else "a positive integer"
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be {expected}.") from exc
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be {expected}.")
    return value


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    raw_timeout = section.get("provider_timeout_seconds", 30.0)
    try:
        provider_timeout = float(raw_timeout)
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"Invalid sync.provider_timeout_seconds: {raw_timeout!r}. Must be a number."
        ) from exc
    if provider_timeout <= 0:
        raise ConfigError(
            f"Invalid sync.provider_timeout_seconds: {provider_timeout!r}. Must be positive."
        )

    raw_policy = section.get("conflict_policy", ConflictPolicy.LOCAL_WINS.value)
    try:
        conflict_policy = ConflictPolicy(str(raw_policy).strip().lower())
    except ValueError as exc:
        policies = ", ".join(p.value for p in ConflictPolicy)
        raise ConfigError(
            f"Invalid sync.conflict_policy: {raw_policy!r}. Expected one of: {policies}"
        ) from exc

    return SyncConfig(
        lock_ceiling_seconds=_positive_int(section, "lock_ceiling_seconds", 900, "sync"),
        provider_timeout_seconds=provider_timeout,
        full_sync_window_days=_positive_int(section, "full_sync_window_days", 30, "sync"),
        poll_interval_minutes=_positive_int(section, "poll_interval_minutes", 5, "sync"),
        conflict_policy=conflict_policy,
        log_retention_days=_positive_int(
            section, "log_retention_days", 90, "sync", allow_zero=True
        ),
    )


def _parse_google(section: dict[str, Any]) -> GoogleConfig:
    # Environment variables fill in anything the file leaves out.
    def _get(key: str, env_name: str) -> str | None:
        value = section.get(key)
        if value is None:
            value = os.environ.get(env_name)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"google.{key} must be a string when set")
        return value or None

    calendar_name = str(section.get("calendar_name", DEFAULT_CALENDAR_NAME)).strip()
    if not calendar_name:
        raise ConfigError("google.calendar_name must be a non-empty string")

    return GoogleConfig(
        client_id=_get("client_id", "GOOGLE_CLIENT_ID"),
        client_secret=_get("client_secret", "GOOGLE_CLIENT_SECRET"),
        redirect_uri=_get("redirect_uri", "GOOGLE_REDIRECT_URI"),
        state_secret=_get("state_secret", "OAUTH_STATE_SECRET"),
        calendar_name=calendar_name,
        timezone=str(section.get("timezone", "UTC")),
        dashboard_url=_get("dashboard_url", "OAUTH_DASHBOARD_URL"),
    )


def parse_config(data: dict[str, Any]) -> WedsyncConfig:
    """Build a WedsyncConfig from an already-parsed TOML mapping."""
    data = resolve_env_vars(data)

    # --- [database] ---
    db_section = data.get("database", {})
    db_name = str(db_section.get("name", DEFAULT_DB_NAME)).strip()
    if not db_name:
        raise ConfigError("database.name must be a non-empty string")
    min_pool = _positive_int(db_section, "min_pool_size", 2, "database")
    max_pool = _positive_int(db_section, "max_pool_size", 10, "database")
    if min_pool > max_pool:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")

    # --- [logging] ---
    logging_section = data.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")

    # --- [api] ---
    api_section = data.get("api", {})

    return WedsyncConfig(
        database=DatabaseConfig(name=db_name, min_pool_size=min_pool, max_pool_size=max_pool),
        logging=LoggingConfig(
            level=log_level,
            format=log_format,
            log_root=logging_section.get("log_root"),
        ),
        sync=_parse_sync(data.get("sync", {})),
        google=_parse_google(data.get("google", {})),
        api=ApiConfig(
            host=str(api_section.get("host", "127.0.0.1")),
            port=_positive_int(api_section, "port", 8000, "api"),
        ),
    )


def load_config(path: Path | None = None) -> WedsyncConfig:
    """Load and validate ``wedsync.toml``.

    Parameters
    ----------
    path:
        Path to the TOML file.  When ``None`` the defaults are used, with
        Google settings still picked up from the environment.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    if path is None:
        return parse_config({})

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
