"""Single-line JSON log output.

Enabled with ``API_STRUCTURED_LOGGING=true``.  Every record becomes one JSON
object; access-log records keep their request context under ``request``
and repeat the correlation id at the top level so that application logs
and access logs of one request can be joined on a single field::

    {
        "timestamp": "2024-01-01T12:34:56.789012+00:00",
        "level": "WARNING",
        "logger": "api.access",
        "message": "request completed",
        "correlation_id": "9f1c...",  // access-log records only
        "request": { ... },           // access-log records only
        "exc_info": "Traceback ..."   // only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# uvicorn's own access log duplicates ``api.access``.
_QUIETED_LOGGERS: tuple[str, ...] = ("uvicorn.access",)


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
        if isinstance(request_data, dict):
            correlation_id = request_data.get("correlation_id")
            if correlation_id:
                payload["correlation_id"] = correlation_id
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def install_json_logging(level: int = logging.INFO) -> None:
    """Route all logging through one JSON stream handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    for name in _QUIETED_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
