"""Tests for fieldsync configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from fieldsync.config import (
    DEFAULT_JOB_CRONS,
    JOB_NAMES,
    ConfigError,
    FieldSyncConfig,
    JobConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[fieldsync]
service_name = "fieldsync-east"

[fieldsync.logging]
level = "debug"
format = "json"

[fieldsync.db]
name = "fields"
max_pool_size = 4

[providers.google]
client_id = "g-id"
client_secret = "${TEST_GOOGLE_SECRET}"

[webhooks]
callback_url = "https://sync.example.com"
ttl_seconds = 7200

[reminders]
buffer_minutes = 5

[sync]
default_timezone = "America/Chicago"

[[jobs]]
name = "reminders"
cron = "*/2 * * * *"

[[jobs]]
name = "orphan_cleanup"
enabled = false

[api]
port = 9090
cron_secret = "hunter2"
"""


def _write_toml(tmp_path: Path, content: str, filename: str = "fieldsync.toml") -> Path:
    """Write *content* to a TOML file inside *tmp_path* and return the directory."""
    (tmp_path / filename).write_text(content)
    return tmp_path


# ---------------------------------------------------------------------------
# Happy-path tests
# ---------------------------------------------------------------------------


def test_load_full_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TEST_GOOGLE_SECRET", "g-secret")
    cfg = load_config(_write_toml(tmp_path, FULL_TOML))

    assert isinstance(cfg, FieldSyncConfig)
    assert cfg.service_name == "fieldsync-east"
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.format == "json"
    assert cfg.database.name == "fields"
    assert cfg.database.max_pool_size == 4
    assert cfg.google.client_secret == "g-secret"
    assert cfg.google.configured
    assert not cfg.outlook.configured
    assert cfg.webhooks.callback_url == "https://sync.example.com"
    assert cfg.webhooks.ttl_seconds == 7200
    assert cfg.reminders.buffer_minutes == 5
    assert cfg.sync.default_timezone == "America/Chicago"
    assert cfg.api.port == 9090
    assert cfg.api.cron_secret == "hunter2"


def test_jobs_merge_over_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TEST_GOOGLE_SECRET", "g-secret")
    cfg = load_config(_write_toml(tmp_path, FULL_TOML))

    assert [job.name for job in cfg.jobs] == list(JOB_NAMES)
    assert cfg.job("reminders") == JobConfig(name="reminders", cron="*/2 * * * *")
    assert cfg.job("orphan_cleanup").enabled is False
    assert cfg.job("orphan_cleanup").cron == DEFAULT_JOB_CRONS["orphan_cleanup"]
    assert cfg.job("scheduled_sync").cron == DEFAULT_JOB_CRONS["scheduled_sync"]


def test_empty_document_uses_defaults():
    cfg = parse_config({})
    assert cfg.webhooks.callback_url is None
    assert cfg.api.cron_secret is None
    assert cfg.sync.default_timezone == "UTC"
    assert len(cfg.jobs) == len(JOB_NAMES)
    assert cfg.job("nonexistent") is None


def test_load_accepts_file_path(tmp_path: Path):
    _write_toml(tmp_path, "[api]\nport = 8181\n", filename="custom.toml")
    cfg = load_config(tmp_path / "custom.toml")
    assert cfg.api.port == 8181


# ---------------------------------------------------------------------------
# Environment resolution
# ---------------------------------------------------------------------------


def test_resolve_env_vars_walks_nested_values(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("FS_HOST", "db.internal")
    resolved = resolve_env_vars({"a": ["${FS_HOST}:5432", 3], "b": {"c": True}})
    assert resolved == {"a": ["db.internal:5432", 3], "b": {"c": True}}


def test_missing_env_vars_reported_together(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("FS_MISSING_A", raising=False)
    monkeypatch.delenv("FS_MISSING_B", raising=False)
    with pytest.raises(ConfigError, match="FS_MISSING_A, FS_MISSING_B"):
        resolve_env_vars("${FS_MISSING_A}/${FS_MISSING_B}")


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path)


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write_toml(tmp_path, "[api\nport = 1"))


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ({"fieldsync": {"logging": {"format": "xml"}}}, "logging.format"),
        ({"fieldsync": {"db": {"name": " "}}}, "db.name"),
        ({"webhooks": {"callback_url": "ftp://example.com"}}, "callback_url"),
        ({"webhooks": {"ttl_seconds": 0}}, "ttl_seconds"),
        ({"reminders": {"batch_limit": "many"}}, "batch_limit"),
        ({"jobs": [{"name": "unknown"}]}, "jobs\\[0\\].name"),
        ({"jobs": [{"name": "reminders", "cron": "every minute"}]}, "jobs\\[0\\].cron"),
        ({"jobs": [{"name": "reminders", "enabled": "yes"}]}, "enabled"),
        ({"jobs": {"name": "reminders"}}, "array of tables"),
        ({"api": "localhost"}, "\\[api\\]"),
    ],
)
def test_invalid_values(document, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(document)
