"""Tests for the fieldsync CLI commands that need no database."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from fieldsync.cli import cli

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


class TestTimezoneCommand:
    def test_transitions(self, runner):
        result = runner.invoke(cli, ["timezone", "America/New_York", "--year", "2025"])

        assert result.exit_code == 0
        assert "America/New_York:" in result.output
        assert "start 2025-03-09T07:00:00+00:00 -0500 -> -0400" in result.output
        assert "end   2025-11-02T06:00:00+00:00 -0400 -> -0500" in result.output

    def test_vtimezone(self, runner):
        result = runner.invoke(
            cli, ["timezone", "America/New_York", "--vtimezone", "--year", "2025"]
        )

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0] == "BEGIN:VTIMEZONE"
        assert lines[-1] == "END:VTIMEZONE"

    def test_unknown_zone(self, runner):
        result = runner.invoke(cli, ["timezone", "Mars/Olympus_Mons"])
        assert result.exit_code == 1
        assert "Unknown timezone" in result.output


class TestCheckConfig:
    def test_summary(self, runner, tmp_path):
        (tmp_path / "fieldsync.toml").write_text(
            '[fieldsync]\nservice_name = "fieldsync-test"\n\n'
            '[api]\ncron_secret = "s3cret"\n'
        )

        result = runner.invoke(cli, ["check-config", "--config", str(tmp_path)])

        assert result.exit_code == 0
        assert "Service: fieldsync-test" in result.output
        assert "Google sync: disabled" in result.output
        assert "Cron secret: set" in result.output
        assert "job reminders" in result.output

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["check-config", "--config", str(tmp_path / "nope.toml")])
        assert result.exit_code == 1
        assert "Config error" in result.output
