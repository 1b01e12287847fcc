"""Protocols for the external services the pipeline depends on.

The core never talks to a broker client or a database driver directly. It
goes through these interfaces:

- Broker: publish with delivery acknowledgment, at-least-once consumer
  delivery, ordering per partition key.
- RetryStore: persistent retry queue.
- DeadLetterStore: append-only terminal storage.
- OrderStore: transactional shopper/order persistence with unique constraints.
"""

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

from orderrelay.core.records import (
    DeadLetterRecord,
    ErrorType,
    Order,
    RetryRecord,
    Shopper,
)


@dataclass(frozen=True)
class DeliveryReceipt:
    """Broker acknowledgment of an accepted send."""

    topic: str
    partition: int
    offset: str


@dataclass(frozen=True)
class Delivery:
    """One message handed to a consumer.

    Attributes:
        topic: Topic the message was read from.
        partition: Partition within the topic.
        offset: Broker position of the message, as text.
        key: Partition key the producer used.
        value: Raw message body.
        delivery_count: How many times the broker has handed this message out.
    """

    topic: str
    partition: int
    offset: str
    key: str | None
    value: bytes
    delivery_count: int = 1


class Broker(Protocol):
    """Message broker client.

    Sends are keyed: every message with the same key lands on the same
    partition and is delivered in send order.
    """

    async def send(self, topic: str, key: str, value: bytes) -> DeliveryReceipt:
        """Publish and wait for the broker's acknowledgment.

        Raises:
            Exception: Any failure to publish (connection, broker error).
        """
        ...

    async def pull(self, timeout: float = 1.0) -> Delivery | None:
        """Return the next delivery, or None if timeout expires with none available."""
        ...

    async def ack(self, delivery: Delivery) -> None:
        """Mark a delivery processed; unacknowledged deliveries are redelivered."""
        ...

    async def close(self) -> None: ...


class RetryStore(Protocol):
    """Persistent queue of messages that failed to reach the broker."""

    async def upsert(self, record: RetryRecord) -> None:
        """Insert or replace the record keyed by its order_id."""
        ...

    async def get(self, order_id: UUID) -> RetryRecord | None: ...

    async def claim_ready(
        self,
        now: datetime,
        limit: int,
        max_attempts: int,
        worker_id: str,
        lease_until: datetime,
    ) -> list[RetryRecord]:
        """Atomically claim up to ``limit`` ready records, oldest-due first.

        Ready means ``next_retry_at <= now``, ``retry_count < max_attempts``
        and no live lease held by another worker. Claimed records carry
        ``claimed_by=worker_id`` until ``lease_until``.
        """
        ...

    async def extend_claim(self, order_id: UUID, worker_id: str, lease_until: datetime) -> bool:
        """Push the lease out if ``worker_id`` still holds the claim.

        Returns False when the record is gone or another worker claimed it.
        """
        ...

    async def reschedule(self, record: RetryRecord, worker_id: str | None = None) -> bool:
        """Persist a record produced by ``RetryRecord.rescheduled``.

        With ``worker_id``, only while that worker still holds the claim.
        Returns whether a record was updated.
        """
        ...

    async def delete(self, order_id: UUID, worker_id: str | None = None) -> bool:
        """Remove the record; with ``worker_id``, only while that worker holds the claim."""
        ...

    async def find_exhausted(self, max_attempts: int) -> list[RetryRecord]:
        """Records whose retry_count reached max_attempts."""
        ...

    async def count(self) -> int: ...


class DeadLetterStore(Protocol):
    """Append-only storage for unrecoverable messages."""

    async def add(self, record: DeadLetterRecord) -> None: ...

    async def get(self, record_id: UUID) -> DeadLetterRecord | None: ...

    async def recent(
        self, limit: int = 100, error_type: ErrorType | None = None
    ) -> list[DeadLetterRecord]:
        """Most recent first."""
        ...

    async def count(self) -> int: ...


class OrderUnitOfWork(Protocol):
    """Operations available inside one OrderStore transaction."""

    async def find_shopper(self, store_id: str, email: str) -> Shopper | None: ...

    async def save_shopper(self, shopper: Shopper) -> Shopper:
        """Insert (id is None) or update; returns the stored shopper with its id."""
        ...

    async def order_exists(self, order_id: UUID) -> bool: ...

    async def insert_order(self, order: Order) -> Order:
        """Insert the order and its line items as one write.

        Raises:
            DuplicateOrderError: If order_id is already taken.
            DataIntegrityError: On any other constraint violation.
        """
        ...


class OrderStore(Protocol):
    """Durable store for shoppers and orders."""

    def transaction(self) -> AbstractAsyncContextManager[OrderUnitOfWork]:
        """Begin a unit of work; committed on clean exit, rolled back on error."""
        ...

    async def get_order(self, order_id: UUID) -> Order | None: ...

    async def get_shopper(self, store_id: str, email: str) -> Shopper | None: ...

    async def count_orders(self) -> int: ...

    async def count_shoppers(self) -> int: ...
