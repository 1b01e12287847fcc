"""Pytest configuration, Hypothesis profiles and shared fixtures."""

import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from hypothesis import settings

from orderrelay.core.config import RelaySettings
from orderrelay.core.message import OrderMessage

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def at(self, level: int) -> list[logging.LogRecord]:
        return [r for r in self.records if r.levelno == level]

    def clear(self) -> None:
        self.records.clear()


def make_message(
    store_id: str = "store-1",
    email: str = "ada@example.com",
    first_name: str = "Ada",
    last_name: str = "Lovelace",
    quantity: int = 2,
    unit_price: str = "19.99",
    **overrides: Any,
) -> OrderMessage:
    message = OrderMessage.create(
        store_id=store_id,
        shopper={"email": email, "firstName": first_name, "lastName": last_name},
        order_date=T0,
        line_items=[
            {
                "externalProductId": "SKU-1",
                "productName": "Widget",
                "productDescription": "A widget",
                "unitPrice": Decimal(unit_price),
                "quantity": quantity,
            }
        ],
    )
    if overrides:
        message = message.model_copy(update=overrides)
    return message


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def relay_settings() -> RelaySettings:
    """Settings with short timings for loop tests."""
    return RelaySettings(
        send_timeout=timedelta(milliseconds=200),
        sweep_interval=timedelta(milliseconds=50),
        initial_backoff=timedelta(seconds=5),
        max_backoff=timedelta(minutes=5),
        max_attempts=5,
        batch_size=100,
        consumer_pull_timeout=0.05,
        max_consecutive_pull_failures=3,
    )


@pytest.fixture
def log_capture():
    """Attach a LogCapture to the orderrelay component loggers."""
    names = ["orderrelay.dispatcher", "orderrelay.scheduler", "orderrelay.consumer"]
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)
    loggers = [logging.getLogger(name) for name in names]
    original_levels = [lg.level for lg in loggers]
    for lg in loggers:
        lg.addHandler(handler)
        lg.setLevel(logging.DEBUG)

    yield handler

    for lg, level in zip(loggers, original_levels):
        lg.removeHandler(handler)
        lg.setLevel(level)
