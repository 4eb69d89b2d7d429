from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id


_ERROR_MAX_LENGTH = 500
_FIELD_WHITELIST = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "company_id",
        "pipeline_id",
        "entity_type",
        "entity_id",
        "action",
        "table_name",
        "backend",
        "operation",
        "error",
    }
)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _collect_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {key: value for key, value in record.__dict__.items() if key in _FIELD_WHITELIST}
    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:_ERROR_MAX_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    """Render records as one JSON object per line; only whitelisted extras are emitted."""

    def format(self, record: logging.LogRecord) -> str:
        fields = _collect_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_aether_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._aether_configured = True  # type: ignore[attr-defined]
