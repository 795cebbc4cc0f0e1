"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Engine records carry
their correlation ids in ``extra``; the formatter lifts those to the top level
of each line so a run, batch job or unit can be followed with a plain grep::

    {"level": "INFO", "message": "Decision routed", "run_id": "...", "step_id": "check",
     "extra": {"target": "approve"}}
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

_RESERVED_LOG_RECORD_ATTRS: frozenset[str] = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }
)

# Order is the field order in the output line.
CORRELATION_FIELDS: tuple[str, ...] = (
    "workflow_id",
    "run_id",
    "parent_run_id",
    "step_id",
    "unit_id",
    "job_id",
)

_QUIET_LOGGERS = ("urllib3", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, correlation ids first."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        fields = record.__dict__
        for key in CORRELATION_FIELDS:
            value = fields.get(key)
            if value is not None:
                payload[key] = value

        extra = {
            key: value
            for key, value in fields.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS
            and key not in CORRELATION_FIELDS
            and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # Enums, datetimes and ids in extra are rendered with str().
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, *, stream: IO[str] | None = None) -> None:
    """Configure root logging with structured JSON output."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(root.level, logging.INFO))
