"""Structured logging and timing utilities for storyqueue.

Queue lifecycle events (``task.enqueued``, ``task.retry_scheduled``,
``queue.store_unavailable`` ...) are logged through ``log_event`` so they
read as ``event key=value`` lines in plain output and as flat JSON objects
under ``StructuredFormatter``.

Usage:
    from storyqueue.observability.logging import log_event, timed_operation

    with timed_operation(logger, "task.process", task_id=task.id) as ctx:
        result = await processor.process(task.id, task.payload)
        ctx["success"] = result.success

    log_event(logger, "task.retry_scheduled", task_id=task.id, attempt=2)
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# LogRecord attributes that carry storyqueue context
EVENT_ATTR = "event_type"
FIELDS_ATTR = "fields"


class StructuredFormatter(logging.Formatter):
    """Render records as one JSON object per line.

    Event fields are merged into the top level next to ``ts``, ``level``,
    ``logger`` and ``msg`` so log pipelines can filter on ``task_id``
    directly.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        event = getattr(record, EVENT_ATTR, None)
        if event:
            entry["event"] = event
        fields = getattr(record, FIELDS_ATTR, None)
        if isinstance(fields, Mapping):
            for key, value in fields.items():
                entry.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            entry["exc_type"] = type(exc).__name__
            entry["exc_message"] = str(exc)

        return json.dumps(entry, default=str)


def _render(event: str, fields: Mapping[str, Any]) -> str:
    if not fields:
        return event
    pairs = " ".join(f"{key}={value}" for key, value in fields.items())
    return f"{event} {pairs}"


def _extra(event: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    return {EVENT_ATTR: event, FIELDS_ATTR: dict(fields)}


@contextmanager
def timed_operation(
    log: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    **fields: Any,
) -> Iterator[dict[str, Any]]:
    """Time the enclosed block and log how it ended.

    The yielded dict is merged into the completion record, so callers can
    attach outcome fields (``ctx["success"] = ...``). Exceptions are logged
    at WARNING with the elapsed time and re-raised; cancellation is not
    logged here.
    """
    ctx: dict[str, Any] = {}
    started = time.perf_counter()
    log.debug(_render(f"{operation}.start", fields), extra=_extra(f"{operation}.start", fields))
    try:
        yield ctx
    except Exception as e:
        elapsed = round(time.perf_counter() - started, 3)
        done = {**fields, **ctx, "duration_s": elapsed, "error": str(e) or type(e).__name__}
        log.warning(_render(f"{operation}.error", done), extra=_extra(f"{operation}.error", done))
        raise
    elapsed = round(time.perf_counter() - started, 3)
    done = {**fields, **ctx, "duration_s": elapsed}
    log.log(level, _render(f"{operation}.done", done), extra=_extra(f"{operation}.done", done))


def log_event(
    log: logging.Logger,
    event_type: str,
    level: int = logging.INFO,
    message: str | None = None,
    **fields: Any,
) -> None:
    """Log a queue event.

    Args:
        log: Logger to emit on.
        event_type: Dotted event name, e.g. "task.finalized".
        level: Log level.
        message: Text for plain output. Defaults to "event key=value ...".
        **fields: Event context (task_id, attempt, ...).
    """
    log.log(level, message or _render(event_type, fields), extra=_extra(event_type, fields))


def configure_logging(level: int = logging.INFO, structured: bool = False) -> None:
    """Install a single stderr handler on the root logger.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if structured else logging.Formatter(PLAIN_FORMAT))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
