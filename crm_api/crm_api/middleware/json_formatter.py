"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object.  Activate by setting
``CRM_STRUCTURED_LOGGING=true``.

Output schema per line::

    {
        "timestamp": "2026-03-02T09:30:00.000000+00:00",
        "level": "INFO",
        "logger": "crm_api.access",
        "message": "request completed",
        "request": { ... },          // present when emitted by RequestLoggingMiddleware
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_structured_logging(level: int = logging.INFO) -> None:
    """Replace the root handlers with one JSON-emitting stream handler."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
