"""Structured JSON logging for orderrelay."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Dynamically derive standard LogRecord attributes at module import time
# This ensures future Python additions (like taskName) are automatically handled
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)

# Fields that identify the message being worked on; emitted first when present
_PIPELINE_FIELDS = ("order_id", "store_id", "topic", "partition", "offset", "retry_count")


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for field in _PIPELINE_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Add any extra fields passed via extra={}
        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except Exception:
            # Fallback to safe string representation if serialization fails
            return str(log_data)


def _setup_json_handler(logger: logging.Logger, level: int | str) -> None:
    """Configure a logger with JSON formatting.

    Args:
        logger: The logger to configure.
        level: The logging level to set.
    """
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def get_logger(name: str = "orderrelay", level: int | str = logging.INFO) -> logging.Logger:
    """Get a logger with JSON formatting.

    Args:
        name: The logger name. Defaults to "orderrelay".
        level: The logging level to set. Defaults to logging.INFO.
    """
    logger = logging.getLogger(name)
    _setup_json_handler(logger, level)
    return logger


def configure_logging(level: int | str = logging.INFO) -> None:
    """Set the level of every component logger at once."""
    for name in ("orderrelay", "orderrelay.dispatcher", "orderrelay.scheduler",
                 "orderrelay.consumer", "orderrelay.redis", "orderrelay.sql"):
        get_logger(name, level)
