"""In-memory broker and stores.

These are suitable for development and testing. They provide no durability
guarantees: everything is lost when the process terminates.
"""

import asyncio
import zlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from uuid import UUID

from orderrelay.backends.base import Delivery, DeliveryReceipt
from orderrelay.core.errors import DataIntegrityError, DuplicateOrderError, DuplicateShopperError
from orderrelay.core.records import (
    DeadLetterRecord,
    ErrorType,
    Order,
    RetryRecord,
    Shopper,
)


def partition_for(key: str, partitions: int) -> int:
    """Stable key -> partition mapping shared by the broker adapters."""
    return zlib.crc32(key.encode("utf-8")) % partitions


class InMemoryBroker:
    """Partitioned, at-least-once broker backed by asyncio.Queue.

    Every send is appended to a per-partition log and, when the topic is
    subscribed, handed to ``pull``. Deliveries stay unacknowledged until
    ``ack``; ``redeliver()`` hands them out again, which is how a consumer
    group rebalance looks to the consumer.

    Args:
        partitions: Number of partitions per topic.
        subscriptions: Topics returned by ``pull``. None means every topic.
    """

    def __init__(self, partitions: int = 3, subscriptions: list[str] | None = None) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.partitions = partitions
        self._subscriptions = set(subscriptions) if subscriptions is not None else None
        self._logs: dict[tuple[str, int], list[tuple[str, bytes]]] = {}
        self._queue: asyncio.Queue[Delivery] = asyncio.Queue()
        self._unacked: dict[tuple[str, int, str], Delivery] = {}
        self._available = True
        self._send_delay = 0.0
        self.send_attempts = 0

    def set_available(self, available: bool) -> None:
        """Simulate an outage (False) or recovery (True)."""
        self._available = available

    def set_send_delay(self, seconds: float) -> None:
        """Make every send take this long before the broker acknowledges it."""
        self._send_delay = seconds

    async def send(self, topic: str, key: str, value: bytes) -> DeliveryReceipt:
        self.send_attempts += 1
        if not self._available:
            raise ConnectionError("Broker unavailable")
        if self._send_delay:
            await asyncio.sleep(self._send_delay)

        partition = partition_for(key, self.partitions)
        log = self._logs.setdefault((topic, partition), [])
        offset = str(len(log))
        log.append((key, value))

        if self._subscriptions is None or topic in self._subscriptions:
            await self._queue.put(
                Delivery(topic=topic, partition=partition, offset=offset, key=key, value=value)
            )
        return DeliveryReceipt(topic=topic, partition=partition, offset=offset)

    async def pull(self, timeout: float = 1.0) -> Delivery | None:
        try:
            delivery = await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None
        self._unacked[(delivery.topic, delivery.partition, delivery.offset)] = delivery
        return delivery

    async def ack(self, delivery: Delivery) -> None:
        self._unacked.pop((delivery.topic, delivery.partition, delivery.offset), None)

    async def redeliver(self) -> int:
        """Hand every unacknowledged delivery out again. Returns how many."""
        pending = list(self._unacked.values())
        self._unacked.clear()
        for delivery in pending:
            await self._queue.put(
                Delivery(
                    topic=delivery.topic,
                    partition=delivery.partition,
                    offset=delivery.offset,
                    key=delivery.key,
                    value=delivery.value,
                    delivery_count=delivery.delivery_count + 1,
                )
            )
        return len(pending)

    async def inject(self, topic: str, value: bytes, key: str | None = None) -> Delivery:
        """Place a raw body on a topic, bypassing producer-side checks."""
        partition = partition_for(key or "", self.partitions)
        log = self._logs.setdefault((topic, partition), [])
        offset = str(len(log))
        log.append((key or "", value))
        delivery = Delivery(topic=topic, partition=partition, offset=offset, key=key, value=value)
        await self._queue.put(delivery)
        return delivery

    def messages(self, topic: str) -> list[tuple[int, str, bytes]]:
        """(partition, key, value) for every message on a topic, partition by partition."""
        result = []
        for partition in range(self.partitions):
            for key, value in self._logs.get((topic, partition), []):
                result.append((partition, key, value))
        return result

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    def qsize(self) -> int:
        """Return deliveries waiting to be pulled."""
        return self._queue.qsize()

    async def close(self) -> None:
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break


class InMemoryRetryStore:
    """Retry queue held in a dict keyed by order_id."""

    def __init__(self) -> None:
        self._records: dict[UUID, RetryRecord] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, record: RetryRecord) -> None:
        async with self._lock:
            self._records[record.order_id] = record

    async def get(self, order_id: UUID) -> RetryRecord | None:
        return self._records.get(order_id)

    async def claim_ready(
        self,
        now: datetime,
        limit: int,
        max_attempts: int,
        worker_id: str,
        lease_until: datetime,
    ) -> list[RetryRecord]:
        async with self._lock:
            ready = sorted(
                (r for r in self._records.values() if r.is_ready(now, max_attempts)),
                key=lambda r: r.next_retry_at,
            )[:limit]
            claimed = []
            for record in ready:
                record = record.claimed(worker_id, lease_until)
                self._records[record.order_id] = record
                claimed.append(record)
            return claimed

    def _held_by(self, order_id: UUID, worker_id: str | None) -> bool:
        record = self._records.get(order_id)
        if record is None:
            return False
        return worker_id is None or record.claimed_by == worker_id

    async def extend_claim(self, order_id: UUID, worker_id: str, lease_until: datetime) -> bool:
        async with self._lock:
            if not self._held_by(order_id, worker_id):
                return False
            self._records[order_id] = self._records[order_id].claimed(worker_id, lease_until)
            return True

    async def reschedule(self, record: RetryRecord, worker_id: str | None = None) -> bool:
        async with self._lock:
            if not self._held_by(record.order_id, worker_id):
                return False
            self._records[record.order_id] = record
            return True

    async def delete(self, order_id: UUID, worker_id: str | None = None) -> bool:
        async with self._lock:
            if not self._held_by(order_id, worker_id):
                return False
            del self._records[order_id]
            return True

    async def find_exhausted(self, max_attempts: int) -> list[RetryRecord]:
        return [r for r in self._records.values() if r.retry_count >= max_attempts]

    async def count(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return len(self._records)


class InMemoryDeadLetterStore:
    """Append-only dead-letter list. Records are never evicted."""

    def __init__(self) -> None:
        self._records: list[DeadLetterRecord] = []

    async def add(self, record: DeadLetterRecord) -> None:
        self._records.append(record)

    async def get(self, record_id: UUID) -> DeadLetterRecord | None:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    async def recent(
        self, limit: int = 100, error_type: ErrorType | None = None
    ) -> list[DeadLetterRecord]:
        matching = [
            r for r in reversed(self._records) if error_type is None or r.error_type == error_type
        ]
        return matching[:limit]

    async def count(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return len(self._records)


class _InMemoryUnitOfWork:
    """Staged view over InMemoryOrderStore; applied only on commit."""

    def __init__(self, store: "InMemoryOrderStore") -> None:
        self._store = store
        self.shoppers: dict[tuple[str, str], Shopper] = dict(store._shoppers)
        self.orders: dict[UUID, Order] = {}
        self.next_shopper_id = store._next_shopper_id

    async def find_shopper(self, store_id: str, email: str) -> Shopper | None:
        return self.shoppers.get((store_id, email))

    async def save_shopper(self, shopper: Shopper) -> Shopper:
        if shopper.id is None:
            if (shopper.store_id, shopper.email) in self.shoppers:
                raise DuplicateShopperError(shopper.store_id, shopper.email)
            shopper = shopper.model_copy(update={"id": self.next_shopper_id})
            self.next_shopper_id += 1
        self.shoppers[(shopper.store_id, shopper.email)] = shopper
        return shopper

    async def order_exists(self, order_id: UUID) -> bool:
        return order_id in self.orders or order_id in self._store._orders

    async def insert_order(self, order: Order) -> Order:
        # Unique key on order_id
        if order.order_id in self.orders or order.order_id in self._store._orders:
            raise DuplicateOrderError(order.order_id)
        if order.shopper_id not in {s.id for s in self.shoppers.values()}:
            raise DataIntegrityError(
                f"Shopper {order.shopper_id} does not exist", constraint="fk_orders_shopper"
            )
        for item in order.line_items:
            if item.quantity <= 0:
                raise DataIntegrityError(
                    "quantity must be positive", constraint="chk_line_items_quantity_positive"
                )
            if item.unit_price < 0:
                raise DataIntegrityError(
                    "unit_price must be non-negative", constraint="chk_line_items_price_positive"
                )
        self.orders[order.order_id] = order
        return order


class InMemoryOrderStore:
    """Shopper/order store with all-or-nothing transactions.

    Transactions are serialized by a lock; writes are staged and applied only
    when the ``transaction()`` block exits cleanly.
    """

    def __init__(self) -> None:
        self._shoppers: dict[tuple[str, str], Shopper] = {}
        self._orders: dict[UUID, Order] = {}
        self._next_shopper_id = 1
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryUnitOfWork]:
        async with self._lock:
            uow = _InMemoryUnitOfWork(self)
            yield uow
            # Only reached when the block raised nothing
            self._shoppers = uow.shoppers
            self._orders.update(uow.orders)
            self._next_shopper_id = uow.next_shopper_id

    async def get_order(self, order_id: UUID) -> Order | None:
        return self._orders.get(order_id)

    async def get_shopper(self, store_id: str, email: str) -> Shopper | None:
        return self._shoppers.get((store_id, email))

    async def count_orders(self) -> int:
        return len(self._orders)

    async def count_shoppers(self) -> int:
        return len(self._shoppers)

    @property
    def order_count(self) -> int:
        return len(self._orders)

    @property
    def shopper_count(self) -> int:
        return len(self._shoppers)
