"""SQLAlchemy (async) implementations of the durable stores.

Tables: ``shoppers``, ``orders``, ``line_items``, ``retry_queue`` and
``dead_letter_queue``. Constraint violations are translated into
DuplicateOrderError / DataIntegrityError where they happen, so callers
never see driver exceptions.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    and_,
    delete,
    event,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from orderrelay.core.errors import DataIntegrityError, DuplicateOrderError, DuplicateShopperError
from orderrelay.core.logging import get_logger
from orderrelay.core.records import (
    DeadLetterRecord,
    ErrorType,
    LineItem,
    Order,
    RetryRecord,
    Shopper,
    utcnow,
)

logger = get_logger("orderrelay.sql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC.

    Drivers without timezone support (SQLite) hand back naive values; those
    are read as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    pass


class ShopperRow(Base):
    __tablename__ = "shoppers"
    __table_args__ = (UniqueConstraint("store_id", "email", name="uq_shoppers_store_email"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class OrderRow(Base):
    __tablename__ = "orders"
    __table_args__ = (Index("idx_orders_store_date", "store_id", "order_date"),)

    order_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    store_id: Mapped[str] = mapped_column(String(255), nullable=False)
    shopper_id: Mapped[int] = mapped_column(ForeignKey("shoppers.id"), nullable=False)
    order_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class LineItemRow(Base):
    __tablename__ = "line_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_line_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="chk_line_items_price_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[UUID] = mapped_column(
        ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_name: Mapped[str] = mapped_column(String(500), nullable=False)
    product_description: Mapped[str | None] = mapped_column(Text)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


class RetryRow(Base):
    __tablename__ = "retry_queue"
    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="chk_retry_queue_retry_count"),
        Index("idx_retry_queue_next_retry", "next_retry_at"),
    )

    order_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    store_id: Mapped[str] = mapped_column(String(255), nullable=False)
    message_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    claimed_by: Mapped[str | None] = mapped_column(String(255))
    claimed_until: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class DeadLetterRow(Base):
    __tablename__ = "dead_letter_queue"
    __table_args__ = (
        Index("idx_dlq_created_at", "created_at"),
        Index("idx_dlq_error_type", "error_type"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    order_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    original_topic: Mapped[str] = mapped_column(String(255), nullable=False)
    partition_id: Mapped[int | None] = mapped_column(Integer)
    offset_id: Mapped[str | None] = mapped_column(String(64))
    message_key: Mapped[str | None] = mapped_column(String(255))
    message_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    error_type: Mapped[str] = mapped_column(String(50), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    stack_trace: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Async engine; SQLite connections get foreign key enforcement turned on."""
    engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready", extra={"tables": sorted(Base.metadata.tables)})


def _constraint_from(error: IntegrityError) -> str | None:
    text = str(error.orig)
    for table in Base.metadata.sorted_tables:
        for constraint in table.constraints:
            if constraint.name and constraint.name in text:
                return constraint.name
    return None


def _is_duplicate_key(error: IntegrityError) -> bool:
    text = str(error.orig).lower()
    return "unique" in text or "duplicate" in text or "pkey" in text


def _integrity_error(error: IntegrityError) -> DataIntegrityError:
    return DataIntegrityError(f"Constraint violation: {error.orig}", constraint=_constraint_from(error))


def _shopper(row: ShopperRow) -> Shopper:
    return Shopper(
        id=row.id,
        store_id=row.store_id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _retry_record(row: RetryRow) -> RetryRecord:
    return RetryRecord(
        order_id=row.order_id,
        store_id=row.store_id,
        message_payload=row.message_payload,
        retry_count=row.retry_count,
        next_retry_at=row.next_retry_at,
        last_error=row.last_error,
        claimed_by=row.claimed_by,
        claimed_until=row.claimed_until,
        created_at=row.created_at,
    )


def _dead_letter_record(row: DeadLetterRow) -> DeadLetterRecord:
    return DeadLetterRecord(
        id=row.id,
        order_id=row.order_id,
        original_topic=row.original_topic,
        partition_id=row.partition_id,
        offset_id=row.offset_id,
        message_key=row.message_key,
        message_payload=row.message_payload,
        error_type=ErrorType(row.error_type),
        error_message=row.error_message,
        stack_trace=row.stack_trace,
        retry_count=row.retry_count,
        created_at=row.created_at,
    )


class SqlUnitOfWork:
    """OrderUnitOfWork bound to one open session transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_shopper(self, store_id: str, email: str) -> Shopper | None:
        result = await self.session.execute(
            select(ShopperRow).where(ShopperRow.store_id == store_id, ShopperRow.email == email)
        )
        row = result.scalar_one_or_none()
        return _shopper(row) if row is not None else None

    async def save_shopper(self, shopper: Shopper) -> Shopper:
        if shopper.id is None:
            row = ShopperRow(
                store_id=shopper.store_id,
                email=shopper.email,
                first_name=shopper.first_name,
                last_name=shopper.last_name,
                created_at=shopper.created_at,
                updated_at=shopper.updated_at,
            )
            self.session.add(row)
        else:
            row = await self.session.get(ShopperRow, shopper.id)
            if row is None:
                raise DataIntegrityError(f"Shopper {shopper.id} does not exist", constraint="shoppers.id")
            row.first_name = shopper.first_name
            row.last_name = shopper.last_name
            row.updated_at = shopper.updated_at

        try:
            await self.session.flush()
        except IntegrityError as e:
            if shopper.id is None and _is_duplicate_key(e):
                raise DuplicateShopperError(shopper.store_id, shopper.email) from e
            raise _integrity_error(e) from e
        return _shopper(row)

    async def order_exists(self, order_id: UUID) -> bool:
        result = await self.session.execute(
            select(OrderRow.order_id).where(OrderRow.order_id == order_id)
        )
        return result.first() is not None

    async def insert_order(self, order: Order) -> Order:
        self.session.add(
            OrderRow(
                order_id=order.order_id,
                store_id=order.store_id,
                shopper_id=order.shopper_id,
                order_date=order.order_date,
                created_at=order.created_at,
            )
        )
        # Order row flushed alone so a key clash is told apart from line item failures
        try:
            await self.session.flush()
        except IntegrityError as e:
            if _is_duplicate_key(e):
                raise DuplicateOrderError(order.order_id) from e
            raise _integrity_error(e) from e

        self.session.add_all(
            LineItemRow(
                order_id=order.order_id,
                external_product_id=item.external_product_id,
                product_name=item.product_name,
                product_description=item.product_description,
                unit_price=item.unit_price,
                quantity=item.quantity,
            )
            for item in order.line_items
        )
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise _integrity_error(e) from e
        return order


class SqlOrderStore:
    """Shopper/order store; each ``transaction()`` is one database transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlUnitOfWork]:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield SqlUnitOfWork(session)
            except IntegrityError as e:
                # Deferred constraints surface on commit
                raise _integrity_error(e) from e

    async def get_order(self, order_id: UUID) -> Order | None:
        async with self._session_factory() as session:
            row = await session.get(OrderRow, order_id)
            if row is None:
                return None
            items = await session.execute(
                select(LineItemRow).where(LineItemRow.order_id == order_id).order_by(LineItemRow.id)
            )
            return Order(
                order_id=row.order_id,
                store_id=row.store_id,
                shopper_id=row.shopper_id,
                order_date=row.order_date,
                created_at=row.created_at,
                line_items=[
                    LineItem(
                        external_product_id=item.external_product_id,
                        product_name=item.product_name,
                        product_description=item.product_description,
                        unit_price=item.unit_price,
                        quantity=item.quantity,
                    )
                    for item in items.scalars()
                ],
            )

    async def get_shopper(self, store_id: str, email: str) -> Shopper | None:
        async with self._session_factory() as session:
            return await SqlUnitOfWork(session).find_shopper(store_id, email)

    async def count_orders(self) -> int:
        async with self._session_factory() as session:
            return await session.scalar(select(func.count()).select_from(OrderRow))

    async def count_shoppers(self) -> int:
        async with self._session_factory() as session:
            return await session.scalar(select(func.count()).select_from(ShopperRow))


class SqlRetryStore:
    """Retry queue table. Claims use a conditional UPDATE so two workers never share a record."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(self, record: RetryRecord) -> None:
        async with self._session_factory() as session, session.begin():
            await session.merge(
                RetryRow(
                    order_id=record.order_id,
                    store_id=record.store_id,
                    message_payload=record.message_payload,
                    retry_count=record.retry_count,
                    next_retry_at=record.next_retry_at,
                    last_error=record.last_error,
                    claimed_by=record.claimed_by,
                    claimed_until=record.claimed_until,
                    created_at=record.created_at,
                )
            )

    async def get(self, order_id: UUID) -> RetryRecord | None:
        async with self._session_factory() as session:
            row = await session.get(RetryRow, order_id)
            return _retry_record(row) if row is not None else None

    async def claim_ready(
        self,
        now: datetime,
        limit: int,
        max_attempts: int,
        worker_id: str,
        lease_until: datetime,
    ) -> list[RetryRecord]:
        ready = and_(
            RetryRow.next_retry_at <= now,
            RetryRow.retry_count < max_attempts,
            or_(RetryRow.claimed_until.is_(None), RetryRow.claimed_until <= now),
        )
        claimed: list[UUID] = []
        async with self._session_factory() as session, session.begin():
            candidates = await session.scalars(
                select(RetryRow.order_id).where(ready).order_by(RetryRow.next_retry_at).limit(limit)
            )
            for order_id in candidates.all():
                result = await session.execute(
                    update(RetryRow)
                    .where(RetryRow.order_id == order_id, ready)
                    .values(claimed_by=worker_id, claimed_until=lease_until)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(order_id)

        if not claimed:
            return []
        logger.debug(
            f"Claimed {len(claimed)} retry records",
            extra={"worker_id": worker_id, "count": len(claimed)},
        )
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(RetryRow).where(RetryRow.order_id.in_(claimed)).order_by(RetryRow.next_retry_at)
            )
            return [_retry_record(row) for row in rows]

    async def extend_claim(self, order_id: UUID, worker_id: str, lease_until: datetime) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(RetryRow)
                .where(RetryRow.order_id == order_id, RetryRow.claimed_by == worker_id)
                .values(claimed_until=lease_until)
            )
            return result.rowcount == 1

    async def reschedule(self, record: RetryRecord, worker_id: str | None = None) -> bool:
        query = update(RetryRow).where(RetryRow.order_id == record.order_id)
        if worker_id is not None:
            query = query.where(RetryRow.claimed_by == worker_id)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                query.values(
                    retry_count=record.retry_count,
                    next_retry_at=record.next_retry_at,
                    last_error=record.last_error,
                    claimed_by=record.claimed_by,
                    claimed_until=record.claimed_until,
                )
            )
            return result.rowcount == 1

    async def delete(self, order_id: UUID, worker_id: str | None = None) -> bool:
        query = delete(RetryRow).where(RetryRow.order_id == order_id)
        if worker_id is not None:
            query = query.where(RetryRow.claimed_by == worker_id)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(query)
            return result.rowcount == 1

    async def find_exhausted(self, max_attempts: int) -> list[RetryRecord]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(RetryRow).where(RetryRow.retry_count >= max_attempts)
            )
            return [_retry_record(row) for row in rows]

    async def count(self) -> int:
        async with self._session_factory() as session:
            return await session.scalar(select(func.count()).select_from(RetryRow))


class SqlDeadLetterStore:
    """Append-only dead-letter table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, record: DeadLetterRecord) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                DeadLetterRow(
                    id=record.id,
                    order_id=record.order_id,
                    original_topic=record.original_topic,
                    partition_id=record.partition_id,
                    offset_id=record.offset_id,
                    message_key=record.message_key,
                    message_payload=record.message_payload,
                    error_type=record.error_type.value,
                    error_message=record.error_message,
                    stack_trace=record.stack_trace,
                    retry_count=record.retry_count,
                    created_at=record.created_at,
                )
            )

    async def get(self, record_id: UUID) -> DeadLetterRecord | None:
        async with self._session_factory() as session:
            row = await session.get(DeadLetterRow, record_id)
            return _dead_letter_record(row) if row is not None else None

    async def recent(
        self, limit: int = 100, error_type: ErrorType | None = None
    ) -> list[DeadLetterRecord]:
        query = select(DeadLetterRow).order_by(DeadLetterRow.created_at.desc()).limit(limit)
        if error_type is not None:
            query = query.where(DeadLetterRow.error_type == error_type.value)
        async with self._session_factory() as session:
            rows = await session.scalars(query)
            return [_dead_letter_record(row) for row in rows]

    async def count(self) -> int:
        async with self._session_factory() as session:
            return await session.scalar(select(func.count()).select_from(DeadLetterRow))
