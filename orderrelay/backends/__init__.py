"""Broker and store implementations."""

from orderrelay.backends.base import (
    Broker,
    DeadLetterStore,
    Delivery,
    DeliveryReceipt,
    OrderStore,
    OrderUnitOfWork,
    RetryStore,
)
from orderrelay.backends.inmemory import (
    InMemoryBroker,
    InMemoryDeadLetterStore,
    InMemoryOrderStore,
    InMemoryRetryStore,
)
from orderrelay.backends.redis_backend import RedisStreamsBroker

__all__ = [
    "Broker",
    "DeadLetterStore",
    "Delivery",
    "DeliveryReceipt",
    "OrderStore",
    "OrderUnitOfWork",
    "RetryStore",
    "InMemoryBroker",
    "InMemoryDeadLetterStore",
    "InMemoryOrderStore",
    "InMemoryRetryStore",
    "RedisStreamsBroker",
]
