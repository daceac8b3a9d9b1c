"""
Structured JSON logging.

Every line carries the request correlation id (set by the X-Request-ID
middleware in calldesk.main) and any `extra=` fields passed by the caller,
so call ids and provider ids can be grepped across webhook deliveries.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from calldesk.config import get_settings

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else came in through `extra=`.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

_QUIET_LOGGERS = ("httpx", "httpcore", "python_multipart", "uvicorn.access")
_SQLALCHEMY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.dialects")


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            # never let an extra shadow a base key
            entry[f"extra_{key}" if key in entry else key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _stdout_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    return handler


def get_logger(name: str) -> logging.Logger:
    """Module logger writing JSON to stdout.

    Args:
        name: Logger name (typically __name__).
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.addHandler(_stdout_handler())
        logger.propagate = False
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    return logger


def setup_logging() -> None:
    """Route the root logger through the JSON formatter and quiet library chatter.

    SQLAlchemy stays at WARNING unless SQLALCHEMY_LOG_LEVEL asks for more.
    """
    settings = get_settings()

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.upper())
    root_logger.handlers = [_stdout_handler()]

    sqlalchemy_level = os.getenv("SQLALCHEMY_LOG_LEVEL", "").strip().upper() or "WARNING"
    for name in _SQLALCHEMY_LOGGERS:
        logging.getLogger(name).setLevel(sqlalchemy_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
