from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from estatecrm.context import get_correlation_id, get_user_id
from estatecrm.core.config import get_settings

MAX_ERROR_LENGTH = 500

# Only these ``extra=`` keys make it into a log line; anything else stays in-process.
LOGGED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "user_id",
        "entity_type",
        "entity_id",
        "from_status",
        "to_status",
        "notification_type",
        "operation",
        "outcome",
        "cause",
        "event_name",
        "object_path",
        "job_type",
        "status",
        "count",
        "error",
    }
)


class CorrelationIdFilter(logging.Filter):
    """Stamps the active correlation id and user id onto records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = getattr(record, "correlation_id", None) or get_correlation_id()
        record.user_id = getattr(record, "user_id", None) or get_user_id()
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in vars(record).items() if key in LOGGED_FIELDS and value is not None}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        line = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "fields": fields,
        }
        return json.dumps(line, default=str)


def _install_record_factory() -> None:
    base_factory = logging.getLogRecordFactory()
    if getattr(base_factory, "stamps_correlation_id", False):
        return

    def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = base_factory(*args, **kwargs)
        record.correlation_id = get_correlation_id()
        return record

    factory.stamps_correlation_id = True  # type: ignore[attr-defined]
    logging.setLogRecordFactory(factory)


def configure_logging() -> None:
    _install_record_factory()
    root = logging.getLogger()
    if any(isinstance(handler.formatter, JsonLogFormatter) for handler in root.handlers):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
