"""Dispatcher: synchronous publish with durable fallback.

Every OrderMessage handed to ``publish`` ends up either acknowledged by the
broker or recorded in the retry store. The only way it can be lost is a
failure of the retry store itself, which raises RetryPersistenceError.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import pydantic_core

from orderrelay.backends.base import Broker, DeliveryReceipt, RetryStore
from orderrelay.core.config import RelaySettings
from orderrelay.core.errors import (
    PublishTimeoutError,
    RetryPersistenceError,
    SerializationError,
    error_summary,
)
from orderrelay.core.logging import get_logger
from orderrelay.core.message import OrderCreatedEvent, OrderMessage
from orderrelay.core.records import RetryRecord, utcnow

Serializer = Callable[[dict[str, Any]], bytes]
EventListener = Callable[[OrderCreatedEvent, Exception | None], None]


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Default wire encoding: compact JSON of the camelCase payload."""
    return pydantic_core.to_json(payload)


class PublishOutcome(Enum):
    """Result of Dispatcher.publish."""

    ACCEPTED = "accepted"
    QUEUED = "queued"


@dataclass
class EventPublishStats:
    """Counters for best-effort OrderCreated publication."""

    published: int = 0
    failed: int = 0


class Dispatcher:
    """Publishes OrderMessages and OrderCreated events.

    Args:
        broker: Broker client used for every send.
        retry_store: Where messages go when the broker does not accept them.
        settings: Topics and send timeout. Defaults to ``RelaySettings()``.
        serializer: Payload encoder. Defaults to ``encode_payload``.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        broker: Broker,
        retry_store: RetryStore,
        settings: RelaySettings | None = None,
        serializer: Serializer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.broker = broker
        self.retry_store = retry_store
        self.settings = settings or RelaySettings()
        self._serializer = serializer or encode_payload
        self._clock = clock or utcnow
        self._log = get_logger("orderrelay.dispatcher")
        self._event_stats = EventPublishStats()
        self._event_tasks: set[asyncio.Task] = set()
        self._late_sends: set[asyncio.Future] = set()
        self._listeners: list[EventListener] = []

    @property
    def send_timeout(self) -> float:
        return self.settings.send_timeout.total_seconds()

    async def publish(self, message: OrderMessage) -> PublishOutcome:
        """Publish to the incoming topic, falling back to the retry store.

        Returns:
            ACCEPTED if the broker acknowledged within the send timeout,
            QUEUED if the message was recorded for retry instead.

        Raises:
            RetryPersistenceError: If the retry store could not record it.
        """
        payload = message.to_payload()
        try:
            receipt = await self.send(message.store_id, payload)
        except Exception as e:
            error = error_summary(e)
            self._log.warning(
                f"Publish failed, queueing for retry: {error}",
                extra={
                    "order_id": str(message.order_id),
                    "store_id": message.store_id,
                    "topic": self.settings.incoming_topic,
                    "error": error,
                },
            )
            await self._queue_for_retry(message, error)
            return PublishOutcome.QUEUED

        self._log.info(
            "Order published",
            extra={
                "order_id": str(message.order_id),
                "store_id": message.store_id,
                "topic": receipt.topic,
                "partition": receipt.partition,
                "offset": receipt.offset,
            },
        )
        return PublishOutcome.ACCEPTED

    async def _queue_for_retry(self, message: OrderMessage, error: str) -> None:
        record = RetryRecord.for_message(message, error, now=self._clock())
        try:
            await self.retry_store.upsert(record)
        except Exception as e:
            self._log.critical(
                f"Failed to queue order for retry, message may be lost: {e}",
                extra={
                    "order_id": str(message.order_id),
                    "store_id": message.store_id,
                    "error": str(e),
                    "publish_error": error,
                    "payload": record.message_payload,
                },
            )
            raise RetryPersistenceError(message.order_id, e) from e

    async def send(self, store_id: str, payload: dict[str, Any]) -> DeliveryReceipt:
        """Serialize a stored payload and send it to the incoming topic.

        Raises:
            SerializationError: If the payload cannot be encoded.
            PublishTimeoutError: If the broker did not answer in time.
            Exception: Whatever the broker raised.
        """
        try:
            value = self._serializer(payload)
        except Exception as e:
            raise SerializationError(e) from e
        return await self._send(self.settings.incoming_topic, store_id, value)

    async def _send(self, topic: str, key: str, value: bytes) -> DeliveryReceipt:
        send = asyncio.ensure_future(self.broker.send(topic, key, value))
        try:
            return await asyncio.wait_for(asyncio.shield(send), self.send_timeout)
        except TimeoutError:
            # The broker may still accept it; a late success means a duplicate
            # delivery once the retry record is redriven.
            self._late_sends.add(send)
            send.add_done_callback(self._on_late_send)
            raise PublishTimeoutError(self.send_timeout) from None

    def _on_late_send(self, send: asyncio.Future) -> None:
        self._late_sends.discard(send)
        if send.cancelled():
            return
        error = send.exception()
        if error is not None:
            self._log.warning(
                f"Timed-out send failed: {error}",
                extra={"error": str(error)},
            )
            return
        receipt = send.result()
        self._log.warning(
            "Timed-out send was accepted by the broker",
            extra={
                "topic": receipt.topic,
                "partition": receipt.partition,
                "offset": receipt.offset,
            },
        )

    def publish_event(self, event: OrderCreatedEvent) -> asyncio.Task:
        """Publish an OrderCreated event without waiting for it.

        Failures are logged, counted and reported to listeners; they are
        never queued for retry.
        """
        task = asyncio.create_task(self._publish_event(event))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)
        return task

    async def _publish_event(self, event: OrderCreatedEvent) -> DeliveryReceipt | None:
        receipt = None
        error: Exception | None = None
        try:
            receipt = await self._send(self.settings.created_topic, event.store_id, event.to_bytes())
        except Exception as e:
            error = e
            self._event_stats.failed += 1
            self._log.warning(
                f"Failed to publish {event.event_name} event: {e}",
                extra={
                    "order_id": str(event.order_id),
                    "store_id": event.store_id,
                    "topic": self.settings.created_topic,
                    "error": str(e),
                },
            )
        else:
            self._event_stats.published += 1
            self._log.info(
                f"Published {event.event_name} event",
                extra={
                    "order_id": str(event.order_id),
                    "store_id": event.store_id,
                    "topic": receipt.topic,
                    "partition": receipt.partition,
                    "offset": receipt.offset,
                },
            )

        for listener in list(self._listeners):
            try:
                listener(event, error)
            except Exception as e:
                self._log.error(
                    f"Event listener raised exception: {e}",
                    extra={"order_id": str(event.order_id), "error": str(e)},
                )
        return receipt

    def add_event_listener(self, listener: EventListener) -> None:
        """Register ``listener(event, error_or_None)`` for every event publish."""
        self._listeners.append(listener)

    @property
    def event_stats(self) -> EventPublishStats:
        """Snapshot of event publication counters."""
        return EventPublishStats(
            published=self._event_stats.published,
            failed=self._event_stats.failed,
        )

    @property
    def pending(self) -> int:
        """Event publishes and timed-out sends still outstanding."""
        return len(self._event_tasks) + len(self._late_sends)

    async def drain(self) -> None:
        """Wait for every outstanding event publish and timed-out send."""
        while self._event_tasks or self._late_sends:
            await asyncio.gather(*self._event_tasks, *self._late_sends, return_exceptions=True)
