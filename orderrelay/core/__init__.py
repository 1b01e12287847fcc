"""Core components of the order ingestion pipeline.

Types:
    OrderMessage: Immutable, validated order submission (the unit of work).
    OrderCreatedEvent: Domain event published after an order is persisted.
    RetryRecord: A message currently failing to reach the broker.
    DeadLetterRecord: Terminal artifact for a message that could not be applied.

Components:
    Dispatcher: Synchronous publish with fallback to the retry store.
    RetryScheduler: Periodic redrive of due retry records with backoff.
    IngestionConsumer: Idempotent persistence with dead-lettering.
    ErrorClassifier: Maps failures to an ErrorType.

Configuration:
    RelaySettings: Environment-driven settings (``ORDERRELAY_`` prefix).
"""

from orderrelay.core.backoff import BackoffPolicy, backoff_delay
from orderrelay.core.classifier import ClassificationRule, ErrorClassifier
from orderrelay.core.config import RelaySettings
from orderrelay.core.consumer import ConsumeOutcome, ConsumerStats, IngestionConsumer
from orderrelay.core.dispatcher import Dispatcher, EventPublishStats, PublishOutcome
from orderrelay.core.errors import (
    BrokerUnavailableError,
    DataIntegrityError,
    DuplicateOrderError,
    DuplicateShopperError,
    MessageValidationError,
    OrderRelayError,
    PublishError,
    PublishTimeoutError,
    RetryPersistenceError,
    SerializationError,
)
from orderrelay.core.message import LineItemSnapshot, OrderCreatedEvent, OrderMessage, ShopperSnapshot
from orderrelay.core.records import DeadLetterRecord, ErrorType, LineItem, Order, RetryRecord, Shopper
from orderrelay.core.scheduler import RetryScheduler, SweepStats

__all__ = [
    "BackoffPolicy",
    "backoff_delay",
    "ClassificationRule",
    "ErrorClassifier",
    "RelaySettings",
    "ConsumeOutcome",
    "ConsumerStats",
    "IngestionConsumer",
    "Dispatcher",
    "EventPublishStats",
    "PublishOutcome",
    "RetryScheduler",
    "SweepStats",
    # Messages and records
    "OrderMessage",
    "ShopperSnapshot",
    "LineItemSnapshot",
    "OrderCreatedEvent",
    "RetryRecord",
    "DeadLetterRecord",
    "ErrorType",
    "Shopper",
    "Order",
    "LineItem",
    # Errors
    "OrderRelayError",
    "PublishError",
    "PublishTimeoutError",
    "BrokerUnavailableError",
    "SerializationError",
    "MessageValidationError",
    "DataIntegrityError",
    "DuplicateOrderError",
    "DuplicateShopperError",
    "RetryPersistenceError",
]
