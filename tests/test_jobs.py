"""Tests for the periodic maintenance jobs and the cron-driven runner."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from fieldsync.config import JobConfig
from fieldsync.jobs import JOB_HANDLERS, JobRunner, next_run, run_job
from fieldsync.models import Provider
from tests.conftest import USER_ID, make_integration, make_reservation

pytestmark = pytest.mark.unit


class TestRunJob:
    async def test_every_configured_job_has_a_handler(self, services):
        assert set(JOB_HANDLERS) == {job.name for job in services.config.jobs}

    async def test_unknown_job(self, services):
        with pytest.raises(ValueError, match="Unknown job"):
            await run_job("vacuum", services)

    async def test_reminders_job_summary(self, services, store):
        store.add_reservation(make_reservation())
        start = make_reservation().start_instant()
        await services.reminders.create_reminders("res-1", USER_ID, start)

        summary = await run_job("reminders", services)

        assert summary == {"processed": 0, "failed": 0, "errors": []}

    async def test_webhook_cleanup_disables_stale_integrations(self, services, store):
        store.add_integration(
            make_integration(
                Provider.GOOGLE, token_expires_at=datetime.now(UTC) - timedelta(days=30)
            )
        )
        store.add_integration(make_integration(Provider.OUTLOOK))

        summary = await run_job("webhook_cleanup", services)

        assert summary == {"cleaned": 0, "disabled_integrations": 1}
        assert store.integrations["int-google"].sync_enabled is False
        assert store.integrations["int-outlook"].sync_enabled is True

    async def test_scheduled_sync_and_orphan_cleanup(self, services, store):
        store.add_integration(make_integration(Provider.GOOGLE))
        store.add_reservation(make_reservation())

        sync_summary = await run_job("scheduled_sync", services)
        orphan_summary = await run_job("orphan_cleanup", services)

        assert sync_summary["synced"] == 1
        assert orphan_summary == {"cleaned": 0, "errors": []}

    async def test_handler_errors_propagate(self, services):
        services.webhooks.renew_expiring = AsyncMock(side_effect=RuntimeError("boom"))
        with pytest.raises(RuntimeError, match="boom"):
            await run_job("webhook_renewal", services)


class TestJobRunner:
    def test_next_run_is_strictly_after_anchor(self):
        anchor = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
        assert next_run("*/5 * * * *", anchor) == datetime(2025, 1, 1, 12, 5, tzinfo=UTC)
        assert next_run("0 * * * *", anchor) == datetime(2025, 1, 1, 13, 0, tzinfo=UTC)

    async def test_first_tick_only_schedules(self, services):
        services.reminders.process_due = AsyncMock()
        runner = JobRunner(services, [JobConfig(name="reminders", cron="* * * * *")])
        now = datetime(2025, 1, 1, 12, 0, 30, tzinfo=UTC)

        assert await runner.tick(now) == 0
        assert runner.next_runs == {"reminders": datetime(2025, 1, 1, 12, 1, tzinfo=UTC)}
        services.reminders.process_due.assert_not_awaited()

    async def test_due_jobs_run_and_reschedule(self, services):
        runner = JobRunner(
            services,
            [
                JobConfig(name="webhook_renewal", cron="*/5 * * * *"),
                JobConfig(name="orphan_cleanup", cron="0 3 * * *"),
            ],
        )
        start = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
        await runner.tick(start)

        ran = await runner.tick(start + timedelta(minutes=5))

        assert ran == 1
        assert runner.next_runs["webhook_renewal"] == datetime(2025, 1, 1, 12, 10, tzinfo=UTC)
        assert runner.next_runs["orphan_cleanup"] == datetime(2025, 1, 2, 3, 0, tzinfo=UTC)

    async def test_failed_job_does_not_stop_the_others(self, services):
        services.webhooks.renew_expiring = AsyncMock(side_effect=RuntimeError("boom"))
        services.webhooks.cleanup_expired = AsyncMock(return_value=0)
        runner = JobRunner(
            services,
            [
                JobConfig(name="webhook_renewal", cron="* * * * *"),
                JobConfig(name="webhook_cleanup", cron="* * * * *"),
            ],
        )
        start = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
        await runner.tick(start)

        ran = await runner.tick(start + timedelta(minutes=1))

        assert ran == 1
        services.webhooks.cleanup_expired.assert_awaited_once()
        assert runner.next_runs["webhook_renewal"] == datetime(2025, 1, 1, 12, 2, tzinfo=UTC)

    async def test_disabled_jobs_are_dropped(self, services):
        runner = JobRunner(
            services, [JobConfig(name="reminders", cron="* * * * *", enabled=False)]
        )
        await runner.tick(datetime(2025, 1, 1, tzinfo=UTC))
        assert runner.next_runs == {}

    async def test_start_and_stop(self, services):
        runner = JobRunner(services, [], tick_interval_seconds=0.01)
        task = runner.start()
        await runner.stop()
        assert task.done()
