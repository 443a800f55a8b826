from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_automation_depth, get_correlation_id


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_CONTEXT_KEYS = {"correlation_id", "automation_depth"}
_KNOWN_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "rule_id",
        "rule_name",
        "trigger",
        "entity_type",
        "entity_id",
        "action_type",
        "stage_id",
        "kind",
        "reason",
        "depth",
        "max_depth",
        "interval_seconds",
        "deleted",
        "status",
        "event_name",
        "service",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500


def _attach_context(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if getattr(record, "automation_depth", None) is None:
        record.automation_depth = get_automation_depth()


class LogContextFilter(logging.Filter):
    """Stamps records with the correlation id and automation depth of the caller."""

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
        automation_depth = getattr(record, "automation_depth", 0)
        if automation_depth:
            payload["automation_depth"] = automation_depth

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS and key not in _CONTEXT_KEYS
        }
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._crm_configured = True  # type: ignore[attr-defined]
