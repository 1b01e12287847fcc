"""Order pipeline demo application entrypoint.

Wires the Dispatcher, RetryScheduler and IngestionConsumer over one broker
and a set of stores. The demo runs entirely in memory and shows the three
paths an order can take:

    submit -> broker -> consumer -> orders          (broker healthy)
    submit -> retry store -> scheduler -> broker    (broker outage)
    broker -> consumer -> dead-letter store         (poison message)

Usage:
    python -m orderrelay.apps.pipeline.main
"""

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID

import pydantic
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from orderrelay.backends.base import Broker, DeadLetterStore, OrderStore, RetryStore
from orderrelay.backends.inmemory import (
    InMemoryBroker,
    InMemoryDeadLetterStore,
    InMemoryOrderStore,
    InMemoryRetryStore,
)
from orderrelay.core.config import RelaySettings
from orderrelay.core.consumer import ConsumerStats, IngestionConsumer
from orderrelay.core.dispatcher import Dispatcher, PublishOutcome
from orderrelay.core.errors import MessageValidationError
from orderrelay.core.logging import configure_logging
from orderrelay.core.message import MAX_LINE_ITEMS, LineItemSnapshot, OrderMessage, ShopperSnapshot, utcnow
from orderrelay.core.scheduler import RetryScheduler


class OrderRequest(BaseModel):
    """Caller-side order submission; the pipeline assigns the order_id."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    shopper: ShopperSnapshot
    order_date: AwareDatetime | None = None
    line_items: list[LineItemSnapshot] = Field(min_length=1, max_length=MAX_LINE_ITEMS)


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of a submission.

    ``accepted`` is False when the broker was unavailable and the order was
    queued for retry; the order is still durable in that case.
    """

    order_id: UUID
    accepted: bool


class OrderPipeline:
    """Dispatcher, RetryScheduler and IngestionConsumer sharing one configuration."""

    def __init__(
        self,
        broker: Broker,
        retry_store: RetryStore,
        dead_letter_store: DeadLetterStore,
        order_store: OrderStore,
        settings: RelaySettings | None = None,
    ) -> None:
        self.settings = settings or RelaySettings()
        self.broker = broker
        self.retry_store = retry_store
        self.dead_letter_store = dead_letter_store
        self.order_store = order_store
        self.dispatcher = Dispatcher(broker, retry_store, self.settings)
        self.scheduler = RetryScheduler(
            self.dispatcher, retry_store, self.settings, dead_letter_store=dead_letter_store
        )
        self.consumer = IngestionConsumer(
            broker, order_store, dead_letter_store, self.dispatcher, settings=self.settings
        )
        self._consumer_task: asyncio.Task | None = None

    @classmethod
    def in_memory(cls, settings: RelaySettings | None = None, partitions: int = 3) -> "OrderPipeline":
        settings = settings or RelaySettings()
        return cls(
            broker=InMemoryBroker(partitions=partitions, subscriptions=[settings.incoming_topic]),
            retry_store=InMemoryRetryStore(),
            dead_letter_store=InMemoryDeadLetterStore(),
            order_store=InMemoryOrderStore(),
            settings=settings,
        )

    @classmethod
    async def durable(cls, settings: RelaySettings | None = None) -> "OrderPipeline":
        """Redis Streams broker with SQL stores, schema created on demand."""
        from orderrelay.backends.redis_backend import RedisStreamsBroker
        from orderrelay.backends.sql import (
            SqlDeadLetterStore,
            SqlOrderStore,
            SqlRetryStore,
            create_engine,
            create_schema,
            create_session_factory,
        )

        settings = settings or RelaySettings()
        engine = create_engine(settings.database_url)
        await create_schema(engine)
        sessions = create_session_factory(engine)
        return cls(
            broker=RedisStreamsBroker(settings.redis_url, subscriptions=[settings.incoming_topic]),
            retry_store=SqlRetryStore(sessions),
            dead_letter_store=SqlDeadLetterStore(sessions),
            order_store=SqlOrderStore(sessions),
            settings=settings,
        )

    async def submit_order(self, store_id: str, request: OrderRequest | dict[str, Any]) -> SubmitResult:
        """Validate, assign an order_id and publish.

        Raises:
            MessageValidationError: If the request is invalid.
            RetryPersistenceError: If the broker and the retry store both failed.
        """
        if not isinstance(request, OrderRequest):
            try:
                request = OrderRequest.model_validate(request)
            except pydantic.ValidationError as e:
                raise MessageValidationError(str(e)) from e

        message = OrderMessage.create(
            store_id=store_id,
            shopper=request.shopper,
            order_date=request.order_date or utcnow(),
            line_items=request.line_items,
        )
        outcome = await self.dispatcher.publish(message)
        return SubmitResult(order_id=message.order_id, accepted=outcome is PublishOutcome.ACCEPTED)

    @property
    def running(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    def start(self) -> None:
        self.scheduler.start()
        if not self.running:
            self._consumer_task = asyncio.create_task(self.consumer.run(), name="ingestion-consumer")

    async def stop(self) -> ConsumerStats:
        """Stop consuming and redriving, then flush outstanding event publishes."""
        self.consumer.stop()
        await self.scheduler.stop()
        task, self._consumer_task = self._consumer_task, None
        if task is not None:
            try:
                await asyncio.wait_for(task, self.settings.consumer_pull_timeout * 2)
            except TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        await self.dispatcher.drain()
        return self.consumer.get_stats()

    async def close(self) -> None:
        await self.stop()
        await self.broker.close()


SAMPLE_SHOPPERS = [
    {"email": "ada@example.com", "firstName": "Ada", "lastName": "Lovelace"},
    {"email": "alan@example.com", "firstName": "Alan", "lastName": "Turing"},
    {"email": "grace@example.com", "firstName": "Grace", "lastName": "Hopper"},
]


def sample_request(index: int) -> dict[str, Any]:
    return {
        "shopper": SAMPLE_SHOPPERS[index % len(SAMPLE_SHOPPERS)],
        "lineItems": [
            {
                "externalProductId": f"SKU-{100 + index}",
                "productName": f"Widget {index}",
                "unitPrice": "19.99",
                "quantity": index + 1,
            }
        ],
    }


async def run_demo(wait_seconds: float = 3.0) -> dict[str, int]:
    """Run the pipeline through a simulated broker outage.

    Returns:
        Counts of accepted, queued, persisted and dead-lettered orders.
    """
    settings = RelaySettings(
        send_timeout=timedelta(seconds=1),
        sweep_interval=timedelta(milliseconds=200),
        initial_backoff=timedelta(milliseconds=100),
        max_backoff=timedelta(seconds=1),
        consumer_pull_timeout=0.1,
    )
    pipeline = OrderPipeline.in_memory(settings)
    broker = pipeline.broker
    pipeline.start()

    results = [await pipeline.submit_order("store-1", sample_request(i)) for i in range(3)]

    broker.set_available(False)
    results += [await pipeline.submit_order("store-2", sample_request(i)) for i in range(3, 5)]
    print(f"Broker down: {await pipeline.retry_store.count()} orders queued for retry")

    await broker.inject(settings.incoming_topic, b'{"orderId": "not-a-uuid"}', key="store-1")
    broker.set_available(True)

    deadline = asyncio.get_running_loop().time() + wait_seconds
    while asyncio.get_running_loop().time() < deadline:
        queued = await pipeline.retry_store.count()
        if queued == 0 and await pipeline.order_store.count_orders() == len(results):
            break
        await asyncio.sleep(0.1)

    await pipeline.close()
    return {
        "accepted": sum(r.accepted for r in results),
        "queued": sum(not r.accepted for r in results),
        "persisted": await pipeline.order_store.count_orders(),
        "dead_lettered": await pipeline.dead_letter_store.count(),
    }


def main() -> None:
    """Main entry point for the pipeline demo."""
    configure_logging("WARNING")
    print("Starting order pipeline demo...\n")
    summary = asyncio.run(run_demo())
    print(
        f"\nAccepted {summary['accepted']}, queued {summary['queued']}, "
        f"persisted {summary['persisted']}, dead-lettered {summary['dead_lettered']}"
    )


if __name__ == "__main__":
    main()
