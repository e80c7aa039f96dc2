"""CLI for the FieldSync calendar sync engine."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from fieldsync.config import CONFIG_FILENAME, JOB_NAMES, ConfigError, FieldSyncConfig, load_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(CONFIG_FILENAME)


def _load(config_path: Path) -> FieldSyncConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


def _setup(config: FieldSyncConfig) -> None:
    from fieldsync.core.logging import configure_logging
    from fieldsync.core.telemetry import init_telemetry

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        service_name=config.service_name,
    )
    init_telemetry(config.service_name)


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to fieldsync.toml (or the directory containing it)",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """FieldSync: calendar sync and reminders for field reservations."""


@cli.command()
@config_option
@click.option("--no-jobs", is_flag=True, help="Do not run the in-process job scheduler")
@click.option(
    "--listen/--no-listen",
    default=True,
    help="Consume reservation change notifications from PostgreSQL",
)
def serve(config_path: Path, no_jobs: bool, listen: bool) -> None:
    """Run the HTTP API together with the job scheduler."""
    config = _load(config_path)
    _setup(config)
    asyncio.run(_serve(config, run_jobs=not no_jobs, listen=listen))


async def _serve(config: FieldSyncConfig, *, run_jobs: bool, listen: bool) -> None:
    import uvicorn

    from fieldsync.api import create_app
    from fieldsync.jobs import JobRunner
    from fieldsync.services import build_services
    from fieldsync.triggers import ReservationChangeListener

    services = await build_services(config)
    runner: JobRunner | None = None
    listener: ReservationChangeListener | None = None
    try:
        if run_jobs:
            runner = JobRunner(services, config.jobs)
            runner.start()
        if listen and services.database is not None:
            listener = ReservationChangeListener(
                services.database.dsn,
                services.orchestrator,
                services.store,
                default_timezone=config.sync.default_timezone,
            )
            await listener.start()

        app = create_app(services=services)
        server = uvicorn.Server(
            uvicorn.Config(app, host=config.api.host, port=config.api.port, log_config=None)
        )
        click.echo(f"FieldSync listening on {config.api.host}:{config.api.port}")
        await server.serve()
    finally:
        if listener is not None:
            await listener.stop()
        if runner is not None:
            await runner.stop()
        await services.aclose()


@cli.command("run-job")
@click.argument("name", type=click.Choice(JOB_NAMES))
@config_option
def run_job_cmd(name: str, config_path: Path) -> None:
    """Run one maintenance job immediately and print its summary."""
    from fieldsync.jobs import run_job

    config = _load(config_path)
    _setup(config)
    summary = asyncio.run(_with_services(config, lambda services: run_job(name, services)))
    click.echo(json.dumps(summary, indent=2, default=str))


@cli.command("sync-user")
@click.argument("user_id")
@click.option("--force", is_flag=True, help="Re-sync even if synced recently")
@config_option
def sync_user(user_id: str, force: bool, config_path: Path) -> None:
    """Push all of a user's upcoming reservations to their calendars."""
    config = _load(config_path)
    _setup(config)

    async def _sync(services):
        return await services.orchestrator.bulk_sync_user(user_id, force_resync=force)

    result = asyncio.run(_with_services(config, _sync))
    click.echo(f"Synced {result.synced}/{result.total} reservation(s), {result.failed} failed")
    for error in result.errors:
        click.echo(f"  {error}")
    if not result.ok:
        sys.exit(1)


async def _with_services(config: FieldSyncConfig, action):
    from fieldsync.services import build_services

    services = await build_services(config)
    try:
        return await action(services)
    finally:
        await services.aclose()


@cli.command()
@click.argument("zone")
@click.option("--vtimezone", is_flag=True, help="Print the iCalendar VTIMEZONE block")
@click.option("--year", type=int, default=None, help="Year for DST transitions")
def timezone(zone: str, vtimezone: bool, year: int | None) -> None:
    """Show offset, abbreviation and DST transitions for an IANA zone."""
    from datetime import UTC, datetime

    from fieldsync import timezones

    if not timezones.is_valid_timezone(zone):
        click.echo(f"Unknown timezone: {zone}", err=True)
        sys.exit(1)
    if vtimezone:
        click.echo("\n".join(timezones.render_vtimezone(zone, year)))
        return

    info = timezones.get_timezone_info(zone)
    offset = timezones.format_offset(info.offset_minutes)
    click.echo(f"{info.zone}: {info.abbreviation} (UTC{offset})")
    click.echo(f"DST active: {'yes' if info.is_dst else 'no'}")
    for transition in timezones.get_dst_transitions(zone, year or datetime.now(UTC).year):
        click.echo(
            f"  {transition.kind:<5} {transition.at.isoformat()} "
            f"{timezones.format_offset(transition.offset_before)} -> "
            f"{timezones.format_offset(transition.offset_after)}"
        )


@cli.command()
@click.option("--revision", default="head", show_default=True, help="Target revision")
def migrate(revision: str) -> None:
    """Apply database migrations (uses DATABASE_URL or POSTGRES_* variables)."""
    from fieldsync.db import Database
    from fieldsync.migrations import run_migrations

    asyncio.run(run_migrations(Database.from_env().dsn, revision))
    click.echo(f"Database migrated to {revision}")


@cli.command("check-config")
@config_option
def check_config(config_path: Path) -> None:
    """Validate fieldsync.toml and summarize what is enabled."""
    config = _load(config_path)
    click.echo(f"Service: {config.service_name}")
    click.echo(f"Google sync: {'enabled' if config.google.configured else 'disabled'}")
    click.echo(f"Outlook sync: {'enabled' if config.outlook.configured else 'disabled'}")
    click.echo(f"Webhook callback: {config.webhooks.callback_url or '(not configured)'}")
    click.echo(f"Cron secret: {'set' if config.api.cron_secret else 'not set'}")
    for job in config.jobs:
        state = "enabled" if job.enabled else "disabled"
        click.echo(f"  job {job.name:<16} {job.cron:<16} {state}")


def main() -> None:
    cli()
