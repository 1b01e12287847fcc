"""Tests for the in-memory broker and stores."""

from datetime import timedelta
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from orderrelay.backends.inmemory import (
    InMemoryBroker,
    InMemoryDeadLetterStore,
    InMemoryOrderStore,
    InMemoryRetryStore,
    partition_for,
)
from orderrelay.core.errors import DataIntegrityError, DuplicateOrderError, DuplicateShopperError
from orderrelay.core.records import DeadLetterRecord, ErrorType, LineItem, Order, RetryRecord, Shopper
from tests.conftest import T0, make_message


@given(key=st.text(), partitions=st.integers(min_value=1, max_value=64))
def test_partition_is_stable_and_in_range(key: str, partitions: int):
    partition = partition_for(key, partitions)
    assert 0 <= partition < partitions
    assert partition == partition_for(key, partitions)


# =============================================================================
# InMemoryBroker
# =============================================================================


class TestInMemoryBroker:
    @pytest.fixture
    def broker(self):
        return InMemoryBroker(partitions=4)

    async def test_offsets_are_per_partition(self, broker):
        first = await broker.send("t", "k", b"1")
        second = await broker.send("t", "k", b"2")
        assert first.partition == second.partition
        assert (first.offset, second.offset) == ("0", "1")

    async def test_pull_returns_in_send_order(self, broker):
        for i in range(5):
            await broker.send("t", "k", str(i).encode())
        values = [(await broker.pull(timeout=0.1)).value for _ in range(5)]
        assert values == [b"0", b"1", b"2", b"3", b"4"]

    @pytest.mark.timeout(2)
    async def test_pull_times_out_with_none(self, broker):
        assert await broker.pull(timeout=0.01) is None

    async def test_unacked_deliveries_are_redelivered(self, broker):
        await broker.send("t", "k", b"a")
        await broker.send("t", "k", b"b")
        first = await broker.pull(timeout=0.1)
        await broker.pull(timeout=0.1)
        await broker.ack(first)

        assert await broker.redeliver() == 1
        again = await broker.pull(timeout=0.1)
        assert again.value == b"b"
        assert again.delivery_count == 2

    async def test_unsubscribed_topics_are_not_pulled(self):
        broker = InMemoryBroker(subscriptions=["in"])
        await broker.send("out", "k", b"x")
        assert await broker.pull(timeout=0.01) is None
        assert broker.messages("out") == [(partition_for("k", 3), "k", b"x")]

    async def test_outage(self, broker):
        broker.set_available(False)
        with pytest.raises(ConnectionError):
            await broker.send("t", "k", b"x")
        broker.set_available(True)
        await broker.send("t", "k", b"x")
        assert broker.send_attempts == 2

    async def test_partitions_must_be_positive(self):
        with pytest.raises(ValueError):
            InMemoryBroker(partitions=0)


# =============================================================================
# InMemoryRetryStore
# =============================================================================


class TestInMemoryRetryStore:
    @pytest.fixture
    def store(self):
        return InMemoryRetryStore()

    async def test_upsert_replaces_by_order_id(self, store):
        message = make_message()
        await store.upsert(RetryRecord.for_message(message, "first", now=T0))
        await store.upsert(RetryRecord.for_message(message, "second", now=T0))
        assert await store.count() == 1
        assert (await store.get(message.order_id)).last_error == "second"

    async def test_claim_marks_records(self, store):
        record = RetryRecord.for_message(make_message(), "e", now=T0)
        await store.upsert(record)

        [claimed] = await store.claim_ready(T0, 10, 5, "w1", T0 + timedelta(seconds=30))

        assert claimed.claimed_by == "w1"
        assert await store.claim_ready(T0, 10, 5, "w2", T0 + timedelta(seconds=30)) == []

    async def test_reschedule_ignores_deleted_record(self, store):
        record = RetryRecord.for_message(make_message(), "e", now=T0)
        assert await store.reschedule(record) is False
        assert await store.count() == 0

    async def test_claim_owner_guards_writes(self, store):
        record = RetryRecord.for_message(make_message(), "e", now=T0)
        await store.upsert(record)
        [claimed] = await store.claim_ready(T0, 10, 5, "w1", T0 + timedelta(seconds=30))
        later = T0 + timedelta(minutes=5)

        assert await store.extend_claim(record.order_id, "w2", later) is False
        assert await store.reschedule(claimed.rescheduled(T0, timedelta(seconds=5), "x"), "w2") is False
        assert await store.delete(record.order_id, "w2") is False
        assert (await store.get(record.order_id)).retry_count == 0

        assert await store.extend_claim(record.order_id, "w1", later) is True
        assert (await store.get(record.order_id)).claimed_until == later
        assert await store.delete(record.order_id, "w1") is True
        assert await store.count() == 0

    async def test_find_exhausted(self, store):
        live = RetryRecord.for_message(make_message(), "e", now=T0)
        dead = RetryRecord.for_message(make_message(), "e", now=T0).model_copy(update={"retry_count": 3})
        await store.upsert(live)
        await store.upsert(dead)
        assert await store.find_exhausted(3) == [dead]


# =============================================================================
# InMemoryDeadLetterStore
# =============================================================================


def _dead_letter(error_type: ErrorType = ErrorType.UNKNOWN) -> DeadLetterRecord:
    return DeadLetterRecord(
        order_id=make_message().order_id,
        original_topic="orders.incoming",
        message_payload={},
        error_type=error_type,
        error_message="x",
    )


class TestInMemoryDeadLetterStore:
    async def test_recent_is_newest_first_and_filterable(self):
        store = InMemoryDeadLetterStore()
        records = [_dead_letter(ErrorType.UNKNOWN), _dead_letter(ErrorType.VALIDATION_ERROR), _dead_letter()]
        for record in records:
            await store.add(record)

        assert await store.recent() == list(reversed(records))
        assert await store.recent(limit=1) == [records[2]]
        assert await store.recent(error_type=ErrorType.VALIDATION_ERROR) == [records[1]]
        assert await store.get(records[0].id) == records[0]

    async def test_records_are_never_evicted(self):
        store = InMemoryDeadLetterStore()
        records = [_dead_letter() for _ in range(50)]
        for record in records:
            await store.add(record)

        assert await store.count() == 50
        assert await store.get(records[0].id) == records[0]


# =============================================================================
# InMemoryOrderStore
# =============================================================================


def _order(shopper: Shopper, quantity: int = 1, price: str = "1.00") -> Order:
    message = make_message()
    return Order(
        order_id=message.order_id,
        store_id=shopper.store_id,
        shopper_id=shopper.id,
        order_date=T0,
        line_items=[
            LineItem(external_product_id="SKU", product_name="W", unit_price=Decimal(price), quantity=quantity)
        ],
    )


class TestInMemoryOrderStore:
    @pytest.fixture
    def store(self):
        return InMemoryOrderStore()

    async def test_commit_on_clean_exit(self, store):
        async with store.transaction() as uow:
            shopper = await uow.save_shopper(
                Shopper(store_id="s", email="a@b.co", first_name="A", last_name="B")
            )
            order = await uow.insert_order(_order(shopper))

        assert shopper.id == 1
        assert await store.get_order(order.order_id) == order
        assert await store.get_shopper("s", "a@b.co") == shopper

    async def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            async with store.transaction() as uow:
                await uow.save_shopper(Shopper(store_id="s", email="a@b.co", first_name="A", last_name="B"))
                raise RuntimeError("abort")

        assert store.shopper_count == 0
        async with store.transaction() as uow:
            shopper = await uow.save_shopper(
                Shopper(store_id="s", email="a@b.co", first_name="A", last_name="B")
            )
        assert shopper.id == 1

    async def test_duplicate_order_rejected(self, store):
        async with store.transaction() as uow:
            shopper = await uow.save_shopper(Shopper(store_id="s", email="a@b.co", first_name="A", last_name="B"))
            order = await uow.insert_order(_order(shopper))

        with pytest.raises(DuplicateOrderError):
            async with store.transaction() as uow:
                await uow.insert_order(order)

    async def test_duplicate_shopper_rejected(self, store):
        with pytest.raises(DuplicateShopperError) as exc_info:
            async with store.transaction() as uow:
                await uow.save_shopper(Shopper(store_id="s", email="a@b.co", first_name="A", last_name="B"))
                await uow.save_shopper(Shopper(store_id="s", email="a@b.co", first_name="C", last_name="D"))
        assert exc_info.value.constraint == "uq_shoppers_store_email"

    async def test_missing_shopper_rejected(self, store):
        ghost = Shopper(id=99, store_id="s", email="a@b.co", first_name="A", last_name="B")
        with pytest.raises(DataIntegrityError, match="does not exist"):
            async with store.transaction() as uow:
                await uow.insert_order(_order(ghost))

    @pytest.mark.parametrize("quantity, price", [(0, "1.00"), (1, "-0.01")])
    async def test_line_item_checks(self, store, quantity, price):
        with pytest.raises(DataIntegrityError):
            async with store.transaction() as uow:
                shopper = await uow.save_shopper(
                    Shopper(store_id="s", email="a@b.co", first_name="A", last_name="B")
                )
                await uow.insert_order(_order(shopper, quantity=quantity, price=price))
        assert store.order_count == 0
