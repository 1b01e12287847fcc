"""Tests for the OrderMessage wire model and OrderCreatedEvent."""

import json
from datetime import datetime, timedelta
from decimal import Decimal

import pydantic
import pytest
from hypothesis import given
from hypothesis import strategies as st

from orderrelay.core.errors import MessageValidationError
from orderrelay.core.message import ORDER_CREATED_EVENT_NAME, OrderCreatedEvent, OrderMessage
from orderrelay.core.records import Order, Shopper
from tests.conftest import T0, make_message


def _line(**overrides):
    item = {
        "externalProductId": "SKU-1",
        "productName": "Widget",
        "unitPrice": "10.00",
        "quantity": 1,
    }
    item.update(overrides)
    return item


def _create(**overrides):
    kwargs = {
        "store_id": "store-1",
        "shopper": {"email": "ada@example.com", "firstName": "Ada", "lastName": "Lovelace"},
        "order_date": T0,
        "line_items": [_line()],
    }
    kwargs.update(overrides)
    return OrderMessage.create(**kwargs)


# =============================================================================
# Construction and validation
# =============================================================================


class TestCreate:
    def test_create_assigns_order_id(self):
        first, second = _create(), _create()
        assert first.order_id != second.order_id

    def test_message_is_immutable(self):
        message = _create()
        with pytest.raises(pydantic.ValidationError):
            message.store_id = "other"  # type: ignore[misc]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"store_id": "  "},
            {"line_items": []},
            {"line_items": [_line()] * 101},
            {"line_items": [_line(quantity=0)]},
            {"line_items": [_line(unitPrice="-1.00")]},
            {"line_items": [_line(unitPrice="1.001")]},
            {"line_items": [_line(productName=" ")]},
            {"shopper": {"email": "not-an-email", "firstName": "A", "lastName": "B"}},
            {"shopper": {"email": "a@b.co", "firstName": "", "lastName": "B"}},
            {"order_date": datetime(2026, 1, 1, 12, 0)},
        ],
    )
    def test_invalid_fields_rejected(self, overrides):
        with pytest.raises(MessageValidationError):
            _create(**overrides)

    def test_hundred_line_items_allowed(self):
        assert len(_create(line_items=[_line()] * 100).line_items) == 100

    def test_legacy_product_price_alias(self):
        legacy = _line()
        legacy["productPrice"] = legacy.pop("unitPrice")
        message = _create(line_items=[legacy])
        assert message.line_items[0].unit_price == Decimal("10.00")
        assert "unitPrice" in message.to_payload()["lineItems"][0]


# =============================================================================
# Wire format
# =============================================================================


class TestWireFormat:
    def test_payload_is_camel_case_json(self):
        payload = make_message().to_payload()
        assert set(payload) == {"orderId", "storeId", "shopper", "orderDate", "lineItems"}
        assert set(payload["shopper"]) == {"email", "firstName", "lastName"}
        item = payload["lineItems"][0]
        assert item["unitPrice"] == "19.99"
        assert item["externalProductId"] == "SKU-1"
        json.dumps(payload)

    def test_bytes_parse_back_to_equal_message(self):
        message = make_message()
        assert OrderMessage.from_bytes(message.to_bytes()) == message

    def test_payload_parse_back_to_equal_message(self):
        message = make_message()
        assert OrderMessage.from_payload(message.to_payload()) == message

    def test_unknown_field_rejected(self):
        payload = make_message().to_payload()
        payload["surprise"] = 1
        with pytest.raises(MessageValidationError):
            OrderMessage.from_payload(payload)

    @pytest.mark.parametrize("body", [b"", b"not json", b"[]", b'{"orderId": "x"}', b"\xff\xfe"])
    def test_malformed_bytes_rejected(self, body):
        with pytest.raises(MessageValidationError):
            OrderMessage.from_bytes(body)


@given(
    quantity=st.integers(min_value=1, max_value=10_000),
    cents=st.integers(min_value=0, max_value=99_999_999),
)
def test_prices_survive_the_wire(quantity: int, cents: int):
    price = Decimal(cents).scaleb(-2)
    message = _create(line_items=[_line(unitPrice=str(price), quantity=quantity)])
    parsed = OrderMessage.from_bytes(message.to_bytes())
    assert parsed.line_items[0].unit_price == price
    assert parsed.line_items[0].quantity == quantity


# =============================================================================
# OrderCreatedEvent
# =============================================================================


class TestOrderCreatedEvent:
    def test_from_order_totals(self):
        message = make_message(quantity=3, unit_price="2.50")
        shopper = Shopper(id=7, store_id="store-1", email="ada@example.com", first_name="Ada", last_name="Lovelace")
        event = OrderCreatedEvent.from_order(Order.from_message(message, shopper), shopper)

        assert event.event_name == ORDER_CREATED_EVENT_NAME
        assert event.order_id == message.order_id
        assert event.shopper.shopper_id == 7
        assert event.line_items[0].line_total == Decimal("7.50")
        assert event.total_amount == Decimal("7.50")

    def test_event_bytes_are_camel_case(self):
        message = make_message()
        shopper = Shopper(id=1, store_id="store-1", email="ada@example.com", first_name="Ada", last_name="Lovelace")
        body = json.loads(OrderCreatedEvent.from_order(Order.from_message(message, shopper), shopper).to_bytes())
        assert body["eventName"] == "orders/created"
        assert body["orderId"] == str(message.order_id)
        assert "totalAmount" in body

    def test_event_time_is_utc(self):
        message = make_message()
        shopper = Shopper(id=1, store_id="store-1", email="ada@example.com", first_name="Ada", last_name="Lovelace")
        event = OrderCreatedEvent.from_order(Order.from_message(message, shopper), shopper)
        assert event.event_time.utcoffset() == timedelta(0)
