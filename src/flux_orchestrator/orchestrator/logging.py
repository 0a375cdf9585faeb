"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Records go to stderr:
stdout carries pipeline data and stage records.

Every record carries the emitting process id. Nested runners, DELAY children
and join workers all log to the same stream, so records also name the worker
thread (outside the main thread) and the stage inherited through
``FLUX_STAGE``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from datetime import UTC, datetime
from typing import Any

STAGE_ENV = "FLUX_STAGE"

# Attributes every LogRecord has; anything else came in through `extra=`.
_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with the caller's `extra` fields nested."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "message": record.getMessage(),
        }
        if record.thread != threading.main_thread().ident:
            payload["thread"] = record.threadName
        stage = os.environ.get(STAGE_ENV)
        if stage:
            payload["stage"] = stage

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Send JSON records to stderr at `level`, replacing existing handlers."""

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    # The server's access log and the test client are noisy at DEBUG.
    for name in ("uvicorn.access", "httpx"):
        logging.getLogger(name).setLevel(max(root.level, logging.INFO))
