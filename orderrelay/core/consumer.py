"""IngestionConsumer: idempotent persistence of incoming OrderMessages.

For each delivery the consumer either persists the order, recognizes it as
a redelivery, or writes a dead-letter record. The delivery is acknowledged
in all three cases so one bad message never blocks its partition.
"""

import asyncio
import json
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from orderrelay.backends.base import (
    Broker,
    DeadLetterStore,
    Delivery,
    OrderStore,
    OrderUnitOfWork,
)
from orderrelay.core.classifier import ErrorClassifier
from orderrelay.core.config import RelaySettings
from orderrelay.core.dispatcher import Dispatcher
from orderrelay.core.errors import BrokerUnavailableError, DuplicateOrderError, DuplicateShopperError
from orderrelay.core.logging import get_logger
from orderrelay.core.message import OrderCreatedEvent, OrderMessage
from orderrelay.core.records import DeadLetterRecord, Order, Shopper


class ConsumeOutcome(Enum):
    PERSISTED = "persisted"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class ConsumerStats:
    """Statistics from a consumer run."""

    received: int = 0
    persisted: int = 0
    duplicates: int = 0
    dead_lettered: int = 0
    dead_letter_errors: int = 0
    ack_errors: int = 0
    pull_errors: int = 0


def _delivery_extra(delivery: Delivery) -> dict[str, Any]:
    return {
        "topic": delivery.topic,
        "partition": delivery.partition,
        "offset": delivery.offset,
    }


def dead_letter_payload(value: bytes) -> dict[str, Any]:
    """Best-effort JSON object for a raw body; ``{"raw": text}`` otherwise."""
    text = value.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"raw": text}
    return parsed if isinstance(parsed, dict) else {"raw": text}


def dead_letter_order_id(payload: dict[str, Any]) -> UUID:
    """``orderId`` from the payload when it is a UUID, else a fresh one."""
    value = payload.get("orderId")
    if isinstance(value, str):
        try:
            return UUID(value)
        except ValueError:
            pass
    return uuid4()


_TRUNCATED = "... truncated"


def format_stack_trace(error: BaseException, limit: int) -> str:
    """Formatted traceback, at most ``limit`` characters long."""
    text = "".join(traceback.format_exception(error))
    if len(text) <= limit:
        return text
    return text[: limit - len(_TRUNCATED)] + _TRUNCATED


class IngestionConsumer:
    """Applies OrderMessages from the incoming topic to the order store.

    Args:
        broker: Source of deliveries.
        order_store: Durable shopper/order store.
        dead_letter_store: Terminal storage for messages that cannot be applied.
        dispatcher: Publishes OrderCreated events after each commit.
        classifier: Maps failures to an ErrorType. Defaults to ``ErrorClassifier()``.
        settings: Pull timeout, circuit-breaker threshold, stack trace limit.
    """

    def __init__(
        self,
        broker: Broker,
        order_store: OrderStore,
        dead_letter_store: DeadLetterStore,
        dispatcher: Dispatcher,
        classifier: ErrorClassifier | None = None,
        settings: RelaySettings | None = None,
    ) -> None:
        self.broker = broker
        self.order_store = order_store
        self.dead_letter_store = dead_letter_store
        self.dispatcher = dispatcher
        self.classifier = classifier or ErrorClassifier()
        self.settings = settings or dispatcher.settings
        self._log = get_logger("orderrelay.consumer")
        self._running = False
        self._stats = ConsumerStats()
        self._consecutive_pull_failures = 0
        self._last_pull_error: str | None = None

    def stop(self) -> None:
        self._running = False

    def get_stats(self) -> ConsumerStats:
        """Return a copy of current statistics."""
        return ConsumerStats(**vars(self._stats))

    async def handle(self, delivery: Delivery) -> ConsumeOutcome:
        """Apply one delivery and acknowledge it."""
        self._stats.received += 1
        try:
            outcome = await self._apply(delivery)
        except Exception as e:
            outcome = ConsumeOutcome.DEAD_LETTERED
            await self._dead_letter(delivery, e)

        if outcome is ConsumeOutcome.PERSISTED:
            self._stats.persisted += 1
        elif outcome is ConsumeOutcome.DUPLICATE:
            self._stats.duplicates += 1
        else:
            self._stats.dead_lettered += 1

        await self._ack(delivery)
        return outcome

    async def _apply(self, delivery: Delivery) -> ConsumeOutcome:
        message = OrderMessage.from_bytes(delivery.value)
        extra = {
            "order_id": str(message.order_id),
            "store_id": message.store_id,
            **_delivery_extra(delivery),
        }

        # Second pass only after a concurrent delivery created the shopper
        for attempt in (1, 2):
            try:
                shopper, order = await self._persist(message, extra)
                break
            except DuplicateShopperError:
                if attempt == 2:
                    raise
                self._log.info("Shopper created concurrently, retrying unit of work", extra=extra)
            except DuplicateOrderError:
                self._log.info("Order persisted concurrently, skipping redelivery", extra=extra)
                return ConsumeOutcome.DUPLICATE

        if order is None:
            return ConsumeOutcome.DUPLICATE

        self._log.info(
            "Order persisted",
            extra={**extra, "shopper_id": shopper.id, "line_items": len(order.line_items)},
        )
        self.dispatcher.publish_event(OrderCreatedEvent.from_order(order, shopper))
        return ConsumeOutcome.PERSISTED

    async def _persist(
        self, message: OrderMessage, extra: dict[str, Any]
    ) -> tuple[Shopper, Order | None]:
        """One unit of work. The order is None when it was already persisted."""
        async with self.order_store.transaction() as uow:
            shopper = await self._upsert_shopper(uow, message)
            if await uow.order_exists(message.order_id):
                self._log.info("Order already persisted, skipping redelivery", extra=extra)
                return shopper, None
            order = await uow.insert_order(Order.from_message(message, shopper))
        return shopper, order

    async def _upsert_shopper(self, uow: OrderUnitOfWork, message: OrderMessage) -> Shopper:
        snapshot = message.shopper
        existing = await uow.find_shopper(message.store_id, snapshot.email)
        if existing is None:
            return await uow.save_shopper(
                Shopper(
                    store_id=message.store_id,
                    email=snapshot.email,
                    first_name=snapshot.first_name,
                    last_name=snapshot.last_name,
                )
            )
        if (existing.first_name, existing.last_name) != (snapshot.first_name, snapshot.last_name):
            return await uow.save_shopper(
                existing.with_names(snapshot.first_name, snapshot.last_name)
            )
        return existing

    async def _dead_letter(self, delivery: Delivery, error: Exception) -> None:
        error_type = self.classifier.classify(error)
        payload = dead_letter_payload(delivery.value)
        record = DeadLetterRecord(
            order_id=dead_letter_order_id(payload),
            original_topic=delivery.topic,
            partition_id=delivery.partition,
            offset_id=delivery.offset,
            message_key=delivery.key,
            message_payload=payload,
            error_type=error_type,
            error_message=str(error) or type(error).__name__,
            stack_trace=format_stack_trace(error, self.settings.stack_trace_limit),
            retry_count=0,
        )
        extra = {
            "order_id": str(record.order_id),
            "error_type": error_type.value,
            "error": str(error),
            **_delivery_extra(delivery),
        }
        self._log.error(f"Failed to process order message: {error}", extra=extra)

        try:
            await self.dead_letter_store.add(record)
        except Exception as e:
            self._stats.dead_letter_errors += 1
            self._log.critical(
                f"Failed to write dead-letter record: {e}",
                extra={**extra, "dead_letter_error": str(e)},
            )
            return
        self._log.warning("Message sent to dead-letter store", extra=extra)

    async def _ack(self, delivery: Delivery) -> None:
        try:
            await self.broker.ack(delivery)
        except Exception as e:
            self._stats.ack_errors += 1
            self._log.error(
                f"Failed to ack delivery: {e}",
                extra={**_delivery_extra(delivery), "error": str(e)},
            )

    async def run(self, max_messages: int | None = None) -> ConsumerStats:
        """Pull and handle deliveries until stopped or ``max_messages`` handled.

        Raises:
            BrokerUnavailableError: After too many consecutive pull failures.
        """
        self._stats = ConsumerStats()
        self._running = True
        self._consecutive_pull_failures = 0
        threshold = self.settings.max_consecutive_pull_failures

        while self._running:
            if max_messages is not None and self._stats.received >= max_messages:
                break

            # Circuit breaker for broker failures
            if self._consecutive_pull_failures >= threshold:
                self._running = False
                raise BrokerUnavailableError(
                    f"Broker unavailable after {self._consecutive_pull_failures} failures",
                    failure_count=self._consecutive_pull_failures,
                    last_error=self._last_pull_error,
                )

            try:
                delivery = await self.broker.pull(timeout=self.settings.consumer_pull_timeout)
                self._consecutive_pull_failures = 0
                self._last_pull_error = None
            except Exception as e:
                self._consecutive_pull_failures += 1
                self._stats.pull_errors += 1
                self._last_pull_error = str(e)
                self._log.error(
                    f"Broker pull failed ({self._consecutive_pull_failures}/{threshold}): {e}",
                    extra={
                        "error": str(e),
                        "consecutive_failures": self._consecutive_pull_failures,
                    },
                )
                # Back off briefly so a dead broker doesn't spin the loop
                await asyncio.sleep(min(0.1 * self._consecutive_pull_failures, 1.0))
                continue

            if delivery is None:
                continue

            await self.handle(delivery)

        self._running = False
        return self.get_stats()
