"""Structured JSON logging with correlation ids."""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id


class JsonFormatter(logging.Formatter):
    """One JSON object per line; merges ``extra_fields`` into the record."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_obj.update(extra_fields)

        return json.dumps(log_obj, default=str)


def configure_logging(level: int | str | None = None) -> None:
    """Route the ``hotelbook`` logger tree to stdout as JSON.

    Domain modules log through ``logging.getLogger(__name__)``; configuring
    the package root once covers all of them. ``level`` defaults to
    LOG_LEVEL from the environment, then INFO.
    """
    root = logging.getLogger("hotelbook")
    if any(isinstance(h.formatter, JsonFormatter) for h in root.handlers):
        return
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Logger for API modules; ensures JSON output is configured."""
    configure_logging()
    return logging.getLogger(name)
