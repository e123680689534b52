"""Single-line JSON log formatter.

Activated by ``API_STRUCTURED_LOGGING=true``; the lifespan hook then
replaces the root handlers with one ``StreamHandler`` using
:class:`JSONFormatter`.

One line per record::

    {"timestamp": "...", "level": "INFO", "logger": "api.access",
     "message": "request completed", "correlation_id": "...",
     "business_id": "...", "request": {...}}
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Request fields copied to the top level so aggregators can index them.
_PROMOTED_FIELDS: tuple[str, ...] = ("correlation_id", "business_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def __init__(self, *, service: str = "billing-api") -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "service": self._service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_data = getattr(record, "request", None)
        if isinstance(request_data, dict):
            for name in _PROMOTED_FIELDS:
                if request_data.get(name) is not None:
                    payload[name] = request_data[name]
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
