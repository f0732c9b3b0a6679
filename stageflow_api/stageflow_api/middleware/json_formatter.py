"""Single-line JSON log records for log aggregation.

Enabled with ``API_STRUCTURED_LOGGING=true``.  Each record becomes::

    {"timestamp": "...", "level": "INFO", "logger": "stageflow_api.access",
     "message": "request completed", "trace_id": "...", "span_id": "...",
     "request": {...}, "exc_info": "Traceback ..."}

``trace_id``/``span_id`` appear when :class:`TraceLoggingFilter` is
attached, ``request`` when the record came from the access logger, and
``exc_info`` only for exceptions.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

_OPTIONAL_FIELDS: tuple[str, ...] = ("trace_id", "span_id", "request")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _OPTIONAL_FIELDS:
            value = getattr(record, field, None)
            if value:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_structured_logging(level: int = logging.INFO) -> None:
    """Replace the root handlers with one JSON stream handler."""
    from stageflow_api.middleware.trace_context import TraceLoggingFilter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
