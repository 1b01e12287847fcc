"""Persistent records: retry queue entries, dead letters, shoppers and orders."""

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from orderrelay.core.message import OrderMessage, utcnow

MAX_ERROR_LENGTH = 2000


def _truncate(text: str | None, limit: int = MAX_ERROR_LENGTH) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return text[:limit]


class ErrorType(str, Enum):
    """Dead-letter classification."""

    VALIDATION_ERROR = "ValidationError"
    DATA_INTEGRITY = "DataIntegrity"
    UNKNOWN = "Unknown"
    # Only written by the scheduler when a retry record runs out of attempts
    RETRIES_EXHAUSTED = "RetriesExhausted"


class RetryRecord(BaseModel):
    """A message currently failing to reach the broker.

    Keyed by order_id. Records are immutable values; stores replace them
    with the successor produced by ``rescheduled()``.

    Attributes:
        order_id: Natural dedupe key.
        store_id: Partition key used on redrive.
        message_payload: Serialized OrderMessage, replayed verbatim.
        retry_count: Failed redrive attempts so far.
        next_retry_at: Earliest time the scheduler may redrive.
        last_error: Summary of the most recent failure.
        claimed_by: Worker currently holding the lease, if any.
        claimed_until: Lease expiry.
    """

    order_id: UUID
    store_id: str
    message_payload: dict[str, Any]
    retry_count: int = Field(default=0, ge=0)
    next_retry_at: datetime = Field(default_factory=utcnow)
    last_error: str | None = None
    claimed_by: str | None = None
    claimed_until: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @field_validator("last_error")
    @classmethod
    def truncate_error(cls, v: str | None) -> str | None:
        return _truncate(v)

    @classmethod
    def for_message(cls, message: OrderMessage, error: str, now: datetime | None = None) -> "RetryRecord":
        """First retry record for a message whose publish just failed."""
        return cls(
            order_id=message.order_id,
            store_id=message.store_id,
            message_payload=message.to_payload(),
            retry_count=0,
            next_retry_at=now or utcnow(),
            last_error=error,
        )

    def is_ready(self, now: datetime, max_attempts: int) -> bool:
        """Due, under the attempt limit, and not held by a live lease."""
        if self.next_retry_at > now or self.retry_count >= max_attempts:
            return False
        return self.claimed_until is None or self.claimed_until <= now

    def claimed(self, worker_id: str, until: datetime) -> "RetryRecord":
        return self.model_copy(update={"claimed_by": worker_id, "claimed_until": until})

    def rescheduled(self, now: datetime, delay: timedelta, error: str) -> "RetryRecord":
        """Successor after a failed redrive.

        retry_count strictly increases; next_retry_at never moves backwards.
        """
        return self.model_copy(
            update={
                "retry_count": self.retry_count + 1,
                "next_retry_at": max(self.next_retry_at, now + delay),
                "last_error": _truncate(error),
                "claimed_by": None,
                "claimed_until": None,
            }
        )


class DeadLetterRecord(BaseModel):
    """Terminal artifact for a message that could not be applied. Write-once."""

    id: UUID = Field(default_factory=uuid4)
    order_id: UUID
    original_topic: str
    partition_id: int | None = None
    offset_id: str | None = None
    message_key: str | None = None
    message_payload: dict[str, Any]
    error_type: ErrorType
    error_message: str
    stack_trace: str | None = None
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


class Shopper(BaseModel):
    """Shopper identified by (store_id, email). Names are updated in place."""

    id: int | None = None
    store_id: str
    email: str
    first_name: str
    last_name: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    def with_names(self, first_name: str, last_name: str) -> "Shopper":
        return self.model_copy(
            update={"first_name": first_name, "last_name": last_name, "updated_at": utcnow()}
        )


class LineItem(BaseModel):
    external_product_id: str
    product_name: str
    product_description: str | None = None
    unit_price: Decimal
    quantity: int

    model_config = {"frozen": True}

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    """Persisted order. Its existence is the consumer's idempotency checkpoint."""

    order_id: UUID
    store_id: str
    shopper_id: int | None
    order_date: datetime
    line_items: list[LineItem]
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @classmethod
    def from_message(cls, message: OrderMessage, shopper: Shopper) -> "Order":
        return cls(
            order_id=message.order_id,
            store_id=message.store_id,
            shopper_id=shopper.id,
            order_date=message.order_date,
            line_items=[
                LineItem(
                    external_product_id=item.external_product_id,
                    product_name=item.product_name,
                    product_description=item.product_description,
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                )
                for item in message.line_items
            ],
        )
