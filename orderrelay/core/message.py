"""Wire models: the OrderMessage unit of work and the OrderCreated event."""

import re
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import pydantic
from pydantic import AliasChoices, AwareDatetime, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from orderrelay.core.errors import MessageValidationError

if TYPE_CHECKING:
    from orderrelay.core.records import Order, Shopper

# Pragmatic address check; full RFC 5322 validation is the HTTP layer's job
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ORDER_CREATED_EVENT_NAME = "orders/created"
MAX_LINE_ITEMS = 100

_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="forbid",
    frozen=True,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def _non_blank(value: str, field_name: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} must not be blank")
    return value


class ShopperSnapshot(BaseModel):
    """Shopper identity and name as carried by one order."""

    model_config = _WIRE_CONFIG

    email: str = Field(max_length=255)
    first_name: str = Field(max_length=100)
    last_name: str = Field(max_length=100)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if not _EMAIL_PATTERN.match(v):
            raise ValueError(f"invalid email format: {v!r}")
        return v

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_name(cls, v: str, info: pydantic.ValidationInfo) -> str:
        return _non_blank(v, info.field_name)


class LineItemSnapshot(BaseModel):
    """Product line as purchased. Never re-derived from a catalog."""

    model_config = _WIRE_CONFIG

    external_product_id: str = Field(max_length=255)
    product_name: str = Field(max_length=500)
    product_description: str | None = Field(default=None, max_length=2000)
    unit_price: Decimal = Field(
        ge=0,
        max_digits=10,
        decimal_places=2,
        validation_alias=AliasChoices("unitPrice", "productPrice", "unit_price"),
        serialization_alias="unitPrice",
    )
    quantity: int = Field(ge=1, le=10_000)

    @field_validator("external_product_id", "product_name")
    @classmethod
    def validate_required_text(cls, v: str, info: pydantic.ValidationInfo) -> str:
        return _non_blank(v, info.field_name)


class OrderMessage(BaseModel):
    """Immutable, validated order submission.

    The same value is what gets published, persisted, retried or
    dead-lettered. Field names travel as camelCase JSON.

    Attributes:
        order_id: Unique identity, generated by the caller.
        store_id: Tenant and partition key.
        shopper: Shopper snapshot at submission time.
        order_date: When the order was placed (timezone-aware).
        line_items: Between 1 and 100 purchased lines.
    """

    model_config = _WIRE_CONFIG

    order_id: UUID
    store_id: str = Field(max_length=255)
    shopper: ShopperSnapshot
    order_date: AwareDatetime
    line_items: list[LineItemSnapshot] = Field(min_length=1, max_length=MAX_LINE_ITEMS)

    @field_validator("store_id")
    @classmethod
    def validate_store_id(cls, v: str) -> str:
        return _non_blank(v, "store_id")

    @classmethod
    def create(
        cls,
        store_id: str,
        shopper: ShopperSnapshot | dict[str, Any],
        order_date: datetime,
        line_items: list[LineItemSnapshot] | list[dict[str, Any]],
    ) -> "OrderMessage":
        """Build a message with a freshly generated order_id.

        Raises:
            MessageValidationError: If any field is invalid.
        """
        try:
            return cls(
                order_id=uuid4(),
                store_id=store_id,
                shopper=shopper,
                order_date=order_date,
                line_items=line_items,
            )
        except pydantic.ValidationError as e:
            raise MessageValidationError(str(e)) from e

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible dict, stored verbatim for replay."""
        return self.model_dump(mode="json", by_alias=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OrderMessage":
        try:
            return cls.model_validate(payload)
        except pydantic.ValidationError as e:
            raise MessageValidationError(str(e)) from e

    @classmethod
    def from_bytes(cls, data: bytes | str) -> "OrderMessage":
        """Parse a wire body.

        Raises:
            MessageValidationError: On malformed JSON or invalid fields.
        """
        try:
            return cls.model_validate_json(data)
        except pydantic.ValidationError as e:
            raise MessageValidationError(str(e)) from e


class ShopperInfo(BaseModel):
    model_config = _WIRE_CONFIG

    shopper_id: int | None
    email: str
    first_name: str
    last_name: str


class LineItemInfo(BaseModel):
    model_config = _WIRE_CONFIG

    external_product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class OrderCreatedEvent(BaseModel):
    """Domain event published after an order is persisted.

    Downstream consumers (review requests, analytics) are eventually
    consistent; publication is best-effort.
    """

    model_config = _WIRE_CONFIG

    event_name: str = ORDER_CREATED_EVENT_NAME
    event_time: datetime = Field(default_factory=utcnow)
    order_id: UUID
    store_id: str
    shopper: ShopperInfo
    order_date: datetime
    created_at: datetime
    line_items: list[LineItemInfo]
    total_amount: Decimal

    @classmethod
    def from_order(cls, order: "Order", shopper: "Shopper") -> "OrderCreatedEvent":
        items = [
            LineItemInfo(
                external_product_id=item.external_product_id,
                product_name=item.product_name,
                unit_price=item.unit_price,
                quantity=item.quantity,
                line_total=item.line_total,
            )
            for item in order.line_items
        ]
        return cls(
            order_id=order.order_id,
            store_id=order.store_id,
            shopper=ShopperInfo(
                shopper_id=shopper.id,
                email=shopper.email,
                first_name=shopper.first_name,
                last_name=shopper.last_name,
            ),
            order_date=order.order_date,
            created_at=order.created_at,
            line_items=items,
            total_amount=sum((i.line_total for i in items), Decimal("0")),
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")
