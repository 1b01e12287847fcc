"""orderrelay - reliable order ingestion over a message broker."""

# core must load before backends: backends.base imports core.records
from orderrelay.core import (
    BrokerUnavailableError,
    DeadLetterRecord,
    Dispatcher,
    ErrorClassifier,
    ErrorType,
    IngestionConsumer,
    OrderCreatedEvent,
    OrderMessage,
    RelaySettings,
    RetryPersistenceError,
    RetryRecord,
    RetryScheduler,
)
from orderrelay.backends import (  # noqa: I001
    InMemoryBroker,
    InMemoryDeadLetterStore,
    InMemoryOrderStore,
    InMemoryRetryStore,
    RedisStreamsBroker,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "OrderMessage",
    "OrderCreatedEvent",
    "RetryRecord",
    "DeadLetterRecord",
    "ErrorType",
    "Dispatcher",
    "RetryScheduler",
    "IngestionConsumer",
    "ErrorClassifier",
    "RelaySettings",
    # Failure handling
    "BrokerUnavailableError",
    "RetryPersistenceError",
    # Backends
    "InMemoryBroker",
    "InMemoryRetryStore",
    "InMemoryDeadLetterStore",
    "InMemoryOrderStore",
    "RedisStreamsBroker",
    # Meta
    "__version__",
]
