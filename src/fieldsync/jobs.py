"""Periodic maintenance jobs and the cron-driven loop that runs them.

Each job is an async function of the service graph returning a JSON-able
summary. ``JobRunner`` evaluates job cron expressions via croniter; a job
failure is logged and the loop moves on to the next job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from croniter import croniter

from fieldsync.config import JobConfig
from fieldsync.core import metrics
from fieldsync.core.telemetry import sync_span
from fieldsync.services import Services

logger = logging.getLogger(__name__)

# Integrations whose token expired longer ago than this stop syncing.
STALE_INTEGRATION_AGE = timedelta(days=7)

JobHandler = Callable[[Services], Awaitable[dict[str, Any]]]


async def _reminders(services: Services) -> dict[str, Any]:
    result = await services.reminders.process_due()
    return result.model_dump()


async def _webhook_renewal(services: Services) -> dict[str, Any]:
    return {"renewed": await services.webhooks.renew_expiring()}


async def _webhook_cleanup(services: Services) -> dict[str, Any]:
    cleaned = await services.webhooks.cleanup_expired()
    disabled = await services.store.disable_stale_integrations(
        datetime.now(UTC) - STALE_INTEGRATION_AGE
    )
    if disabled:
        logger.info("Disabled %d integration(s) with long-expired tokens", disabled)
    return {"cleaned": cleaned, "disabled_integrations": disabled}


async def _scheduled_sync(services: Services) -> dict[str, Any]:
    result = await services.orchestrator.run_scheduled_sync()
    return result.model_dump()


async def _orphan_cleanup(services: Services) -> dict[str, Any]:
    result = await services.orchestrator.run_orphaned_event_cleanup()
    return result.model_dump()


JOB_HANDLERS: dict[str, JobHandler] = {
    "reminders": _reminders,
    "webhook_renewal": _webhook_renewal,
    "webhook_cleanup": _webhook_cleanup,
    "scheduled_sync": _scheduled_sync,
    "orphan_cleanup": _orphan_cleanup,
}


async def run_job(name: str, services: Services) -> dict[str, Any]:
    """Run one job by name inside a ``fieldsync.job.<name>`` span."""
    handler = JOB_HANDLERS.get(name)
    if handler is None:
        raise ValueError(f"Unknown job {name!r}. Expected one of: {', '.join(JOB_HANDLERS)}")
    with sync_span(f"job.{name}"):
        try:
            summary = await handler(services)
        except Exception:
            metrics.record_job_run(name, "failed")
            raise
    metrics.record_job_run(name, "success")
    return summary


def next_run(cron: str, now: datetime | None = None) -> datetime:
    """Next UTC fire time for *cron* strictly after *now*."""
    anchor = now or datetime.now(UTC)
    return croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)


class JobRunner:
    """asyncio loop dispatching due jobs serially."""

    def __init__(
        self,
        services: Services,
        jobs: list[JobConfig],
        *,
        tick_interval_seconds: float = 15.0,
    ) -> None:
        self._services = services
        self._jobs = [job for job in jobs if job.enabled]
        self._tick_interval = tick_interval_seconds
        self._next_runs: dict[str, datetime] = {}
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def next_runs(self) -> dict[str, datetime]:
        return dict(self._next_runs)

    async def tick(self, now: datetime | None = None) -> int:
        """Run every job that is due; returns the number that succeeded."""
        current = now or datetime.now(UTC)
        succeeded = 0
        for job in self._jobs:
            due_at = self._next_runs.get(job.name)
            if due_at is None:
                self._next_runs[job.name] = next_run(job.cron, current)
                continue
            if due_at > current:
                continue
            try:
                summary = await run_job(job.name, self._services)
                succeeded += 1
                logger.info("Job %s finished: %s", job.name, summary)
            except Exception:
                logger.exception("Job %s failed", job.name)
            # Always advance, whether the run succeeded or failed
            self._next_runs[job.name] = next_run(job.cron, current)
        return succeeded

    async def run(self) -> None:
        logger.info("Job runner started with %d job(s)", len(self._jobs))
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._tick_interval)
            except TimeoutError:
                pass
        logger.info("Job runner stopped")

    def start(self) -> asyncio.Task:
        self._stopping.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
