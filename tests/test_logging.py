"""Tests for structured JSON log output."""

import json
import logging
import sys
from datetime import datetime
from uuid import uuid4

import pytest

from orderrelay.core.logging import JSONFormatter, configure_logging, get_logger


def _record(msg: str = "Order persisted", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="orderrelay.consumer",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_base_fields():
    data = json.loads(JSONFormatter().format(_record()))

    assert data["level"] == "INFO"
    assert data["message"] == "Order persisted"
    assert data["logger"] == "orderrelay.consumer"
    assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None


def test_pipeline_fields_come_first():
    order_id = uuid4()
    record = _record(shopper_id=3, order_id=order_id, topic="orders.incoming", partition=1, offset="42")

    data = json.loads(JSONFormatter().format(record))

    keys = list(data)
    assert keys[4:8] == ["order_id", "topic", "partition", "offset"]
    assert data["order_id"] == str(order_id)
    assert data["shopper_id"] == 3


def test_exception_is_formatted():
    try:
        raise ValueError("bad payload")
    except ValueError:
        record = _record("Failed", logging.ERROR)
        record.exc_info = sys.exc_info()

    data = json.loads(JSONFormatter().format(record))

    assert "ValueError: bad payload" in data["exception"]


def test_get_logger_attaches_one_handler():
    name = f"orderrelay.test.{uuid4().hex}"
    logger = get_logger(name)
    get_logger(name)

    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, JSONFormatter)
    assert logger.propagate is False


@pytest.mark.parametrize("level", ["DEBUG", "WARNING"])
def test_configure_logging_sets_component_levels(level):
    configure_logging(level)
    try:
        assert logging.getLogger("orderrelay.scheduler").level == logging.getLevelName(level)
    finally:
        configure_logging(logging.INFO)
