"""Configuration loading and validation.

Reads ``fieldsync.toml``, resolves ``${VAR}`` references against the
environment, and returns a validated ``FieldSyncConfig`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from croniter import croniter

CONFIG_FILENAME = "fieldsync.toml"

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

JOB_NAMES = (
    "reminders",
    "webhook_renewal",
    "webhook_cleanup",
    "scheduled_sync",
    "orphan_cleanup",
)

DEFAULT_JOB_CRONS: dict[str, str] = {
    "reminders": "* * * * *",
    "webhook_renewal": "*/5 * * * *",
    "webhook_cleanup": "0 * * * *",
    "scheduled_sync": "0 */6 * * *",
    "orphan_cleanup": "30 3 * * *",
}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [fieldsync.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    name: str = "fieldsync"
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class ProviderCredentials:
    client_id: str = ""
    client_secret: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class HttpConfig:
    timeout_s: float = 30.0


@dataclass
class WebhookConfig:
    """Push-subscription settings from the [webhooks] section.

    ``callback_url`` is the public base URL; provider paths are appended.
    """

    callback_url: str | None = None
    ttl_seconds: int = 3600
    renew_before_minutes: int = 15


@dataclass
class ReminderConfig:
    buffer_minutes: int = 2
    batch_limit: int = 100
    webhook_timeout_s: float = 10.0


@dataclass
class SyncConfig:
    min_resync_interval_minutes: int = 60
    window_days: int = 365
    default_timezone: str = "UTC"


@dataclass
class JobConfig:
    """A single periodic job entry from [[jobs]]."""

    name: str
    cron: str
    enabled: bool = True


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    cron_secret: str | None = None


def _default_jobs() -> list[JobConfig]:
    return [JobConfig(name=name, cron=DEFAULT_JOB_CRONS[name]) for name in JOB_NAMES]


@dataclass
class FieldSyncConfig:
    """Parsed and validated service configuration."""

    service_name: str = "fieldsync"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    google: ProviderCredentials = field(default_factory=ProviderCredentials)
    outlook: ProviderCredentials = field(default_factory=ProviderCredentials)
    http: HttpConfig = field(default_factory=HttpConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    jobs: list[JobConfig] = field(default_factory=_default_jobs)
    api: ApiConfig = field(default_factory=ApiConfig)

    def job(self, name: str) -> JobConfig | None:
        for job in self.jobs:
            if job.name == name:
                return job
        return None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
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


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be positive.")
    return value


def _section(data: dict[str, Any], *keys: str) -> dict[str, Any]:
    current: Any = data
    for key in keys:
        current = current.get(key, {}) if isinstance(current, dict) else {}
    if not isinstance(current, dict):
        raise ConfigError(f"[{'.'.join(keys)}] must be a TOML table")
    return current


def _parse_credentials(data: dict[str, Any], name: str) -> ProviderCredentials:
    section = _section(data, "providers", name)
    return ProviderCredentials(
        client_id=str(section.get("client_id", "")).strip(),
        client_secret=str(section.get("client_secret", "")).strip(),
    )


def _parse_job_entry(entry: Any, index: int) -> JobConfig:
    """Parse and validate one ``[[jobs]]`` entry."""
    entry_path = f"jobs[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{entry_path} must be a TOML table")

    name = entry.get("name")
    if not isinstance(name, str) or name.strip() not in JOB_NAMES:
        raise ConfigError(
            f"Invalid {entry_path}.name: {name!r}. Expected one of: {', '.join(JOB_NAMES)}"
        )
    name = name.strip()

    cron = entry.get("cron", DEFAULT_JOB_CRONS[name])
    if not isinstance(cron, str) or not croniter.is_valid(cron):
        raise ConfigError(f"Invalid {entry_path}.cron: {cron!r}")

    enabled = entry.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"{entry_path}.enabled must be a boolean")
    return JobConfig(name=name, cron=cron, enabled=enabled)


def parse_config(data: dict[str, Any]) -> FieldSyncConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    # --- [fieldsync] section ---
    root = _section(data, "fieldsync")
    service_name = str(root.get("service_name", "fieldsync")).strip() or "fieldsync"

    logging_section = _section(data, "fieldsync", "logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid fieldsync.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    db_section = _section(data, "fieldsync", "db")
    db_name = str(db_section.get("name", "fieldsync")).strip()
    if not db_name:
        raise ConfigError("fieldsync.db.name must be a non-empty string")
    database = DatabaseConfig(
        name=db_name,
        min_pool_size=_positive_int(db_section, "min_pool_size", 2, "fieldsync.db"),
        max_pool_size=_positive_int(db_section, "max_pool_size", 10, "fieldsync.db"),
    )

    http_section = _section(data, "fieldsync", "http")
    http = HttpConfig(timeout_s=_positive_float(http_section, "timeout_s", 30.0, "fieldsync.http"))

    # --- [webhooks] ---
    webhook_section = _section(data, "webhooks")
    callback_url = webhook_section.get("callback_url")
    if callback_url is not None and not str(callback_url).startswith(("http://", "https://")):
        raise ConfigError(
            f"Invalid webhooks.callback_url: {callback_url!r}. Must be an http(s) URL."
        )
    webhooks = WebhookConfig(
        callback_url=callback_url,
        ttl_seconds=_positive_int(webhook_section, "ttl_seconds", 3600, "webhooks"),
        renew_before_minutes=_positive_int(
            webhook_section, "renew_before_minutes", 15, "webhooks"
        ),
    )

    # --- [reminders] ---
    reminder_section = _section(data, "reminders")
    reminders = ReminderConfig(
        buffer_minutes=_positive_int(reminder_section, "buffer_minutes", 2, "reminders"),
        batch_limit=_positive_int(reminder_section, "batch_limit", 100, "reminders"),
        webhook_timeout_s=_positive_float(
            reminder_section, "webhook_timeout_s", 10.0, "reminders"
        ),
    )

    # --- [sync] ---
    sync_section = _section(data, "sync")
    sync = SyncConfig(
        min_resync_interval_minutes=_positive_int(
            sync_section, "min_resync_interval_minutes", 60, "sync"
        ),
        window_days=_positive_int(sync_section, "window_days", 365, "sync"),
        default_timezone=str(sync_section.get("default_timezone", "UTC")),
    )

    # --- [[jobs]] overrides merged over defaults by name ---
    raw_jobs = data.get("jobs", [])
    if not isinstance(raw_jobs, list):
        raise ConfigError("[[jobs]] must be an array of tables")
    jobs = {job.name: job for job in _default_jobs()}
    for i, entry in enumerate(raw_jobs):
        job = _parse_job_entry(entry, i)
        jobs[job.name] = job

    # --- [api] ---
    api_section = _section(data, "api")
    cron_secret = api_section.get("cron_secret")
    api = ApiConfig(
        host=str(api_section.get("host", "0.0.0.0")),
        port=_positive_int(api_section, "port", 8080, "api"),
        cron_secret=str(cron_secret) if cron_secret else None,
    )

    return FieldSyncConfig(
        service_name=service_name,
        logging=logging_config,
        database=database,
        google=_parse_credentials(data, "google"),
        outlook=_parse_credentials(data, "outlook"),
        http=http,
        webhooks=webhooks,
        reminders=reminders,
        sync=sync,
        jobs=[jobs[name] for name in JOB_NAMES],
        api=api,
    )


def load_config(path: Path) -> FieldSyncConfig:
    """Load and validate ``fieldsync.toml``.

    *path* may be the file itself or the directory containing it.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
