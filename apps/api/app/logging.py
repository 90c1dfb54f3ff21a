from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_enrollment_id


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "tenant_id",
    "automation_id",
    "enrollment_id",
    "step_index",
    "step_type",
    "action_type",
    "trigger_type",
    "event_type",
    "event_id",
    "entity_type",
    "entity_id",
    "outcome",
    "reason",
    "due_count",
    "workflow_depth",
    "max_depth",
    "policy",
    "steps_run",
    "processed",
    "error",
}


def _attach_context(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if not getattr(record, "enrollment_id", None):
        enrollment_id = get_enrollment_id()
        if enrollment_id is not None:
            record.enrollment_id = enrollment_id


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _attach_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _attach_context(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }

        if record.exc_info:
            extras["exception"] = self.formatException(record.exc_info)

        error_value = extras.get("error")
        if isinstance(error_value, str):
            extras["error"] = error_value[:500]

        payload["fields"] = extras
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_relay_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._relay_configured = True  # type: ignore[attr-defined]
