"""Structured logging for the sync service.

Modules keep using ``logging.getLogger(__name__)``; structlog's
``ProcessorFormatter`` renders those records as coloured console lines
(``text``) or JSON lines (``json``). Every record carries:

- ``service``: the configured service name
- ``trace_id`` / ``span_id``: when emitted inside an active span
- any ids bound with ``bind_sync_context`` (reservation, user, provider)

OAuth tokens and client secrets are scrubbed from messages before they are
rendered. With ``log_root`` set, JSON copies are also written to
``{log_root}/{service}.log``; HTTP access logs go to
``{log_root}/{service}.access.log``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

from fieldsync.providers.base import redact_credential_values

QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg", "uvicorn.error")
ACCESS_LOGGER = "uvicorn.access"

_service_name = "fieldsync"


@contextmanager
def bind_sync_context(**identifiers: str | None) -> Iterator[None]:
    """Bind reservation/user/provider ids onto every log line in the block."""
    values = {key: value for key, value in identifiers.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**values):
        yield


def _add_service(_logger: Any, _method: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", _service_name)
    return event_dict


def _add_trace_ids(_logger: Any, _method: str, event_dict: dict) -> dict:
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _redact(_logger: Any, _method: str, event_dict: dict) -> dict:
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = redact_credential_values(event)
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=True),
        structlog.stdlib.ExtraAdder(),
        _add_service,
        _add_trace_ids,
        _redact,
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str | None = None,
) -> None:
    """Install console (and optional file) handlers on the root logger.

    Safe to call more than once; previous root handlers are replaced.
    """
    global _service_name
    if service_name:
        _service_name = service_name

    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    access = logging.getLogger(ACCESS_LOGGER)
    access.handlers.clear()
    if log_root is not None:
        root.addHandler(_json_file_handler(Path(log_root) / f"{_service_name}.log"))
        access.addHandler(_json_file_handler(Path(log_root) / f"{_service_name}.access.log"))
        access.propagate = False
    else:
        access.setLevel(logging.WARNING)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
