"""Prometheus metrics for the sync engine.

Metrics exported:
- fieldsync_provider_operations_total: Counter of provider create/update/delete calls
- fieldsync_provider_latency_seconds: Histogram of provider call latency
- fieldsync_reminders_total: Counter of reminder deliveries by channel and status
- fieldsync_webhook_events_total: Counter of inbound notifications by outcome
- fieldsync_job_runs_total: Counter of maintenance job runs

Scraped through ``GET /metrics`` on the API.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

provider_operations_total = Counter(
    "fieldsync_provider_operations_total",
    "Total number of external calendar operations",
    labelnames=["provider", "operation", "status"],
)

provider_latency_seconds = Histogram(
    "fieldsync_provider_latency_seconds",
    "Latency of external calendar operations in seconds",
    labelnames=["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

reminders_total = Counter(
    "fieldsync_reminders_total",
    "Total number of reminder delivery attempts",
    labelnames=["channel", "status"],
)

webhook_events_total = Counter(
    "fieldsync_webhook_events_total",
    "Total number of inbound provider notifications",
    labelnames=["provider", "outcome"],
)

job_runs_total = Counter(
    "fieldsync_job_runs_total",
    "Total number of maintenance job runs",
    labelnames=["job", "status"],
)


def record_provider_operation(provider: str, operation: str, status: str) -> None:
    provider_operations_total.labels(provider=provider, operation=operation, status=status).inc()


@contextmanager
def track_provider_latency(provider: str, operation: str) -> Iterator[None]:
    """Observe the wall time of a provider call, successful or not."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        provider_latency_seconds.labels(provider=provider, operation=operation).observe(
            time.perf_counter() - start_time
        )


def record_reminder(channel: str, status: str) -> None:
    reminders_total.labels(channel=channel, status=status).inc()


def record_webhook_event(provider: str, outcome: str) -> None:
    webhook_events_total.labels(provider=provider, outcome=outcome).inc()


def record_job_run(job: str, status: str) -> None:
    job_runs_total.labels(job=job, status=status).inc()
