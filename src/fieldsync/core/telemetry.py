"""OpenTelemetry tracing for sync operations.

Tracing is opt-in: without ``OTEL_EXPORTER_OTLP_ENDPOINT`` the global no-op
provider stays in place and ``sync_span`` costs nothing.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

TRACER_NAME = "fieldsync"
SPAN_PREFIX = "fieldsync."

_provider: TracerProvider | None = None


def init_telemetry(service_name: str, endpoint: str | None = None) -> bool:
    """Install an OTLP-exporting tracer provider once per process.

    Returns True when spans are exported. Repeated calls keep the first
    provider, since OpenTelemetry refuses to replace a global provider.
    """
    global _provider

    endpoint = endpoint or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.debug("No OTLP endpoint configured; spans are not exported")
        return False
    if _provider is not None:
        return True

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    _provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": service_name,
                "deployment.environment": os.environ.get("FIELDSYNC_ENV", "development"),
            }
        )
    )
    _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(_provider)
    logger.info("Exporting %s traces to %s", service_name, endpoint)
    return True


@contextmanager
def sync_span(operation: str, **attributes: str | int | bool) -> Iterator[trace.Span]:
    """Run the block inside a ``fieldsync.<operation>`` span.

    Keyword attributes are recorded under the ``fieldsync.`` namespace; an
    escaping exception marks the span as errored and is re-raised.
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        f"{SPAN_PREFIX}{operation}",
        attributes={f"{SPAN_PREFIX}{key}": value for key, value in attributes.items()},
    ) as span:
        yield span
