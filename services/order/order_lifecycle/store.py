"""
Order Service — Order store

The only shared mutable resource. Tables are SQLAlchemy Core so the same
statements run on PostgreSQL (asyncpg) and SQLite (aiosqlite, tests).

Every order write is a conditional UPDATE on `version`: a writer whose
snapshot is stale matches zero rows and gets a ConflictError instead of
overwriting someone else's change.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.types import TypeDecorator

from .errors import ConflictError, NotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes in, timezone-aware UTC datetimes out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("payment_method", String(32), nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("status", String(32), nullable=False, index=True),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    # milestones
    Column("processing_at", UTCDateTime),
    Column("shipped_at", UTCDateTime),
    Column("out_for_delivery_at", UTCDateTime),
    Column("delivered_at", UTCDateTime),
    Column("cancelled_at", UTCDateTime),
    Column("refund_processing_at", UTCDateTime),
    Column("refunded_at", UTCDateTime),
    # tracking
    Column("tracking_number", String(255)),
    Column("courier_name", String(255)),
    Column("estimated_delivery", UTCDateTime),
    # cancellation / return
    Column("cancellation_reason", Text),
    Column("cancellation_note", Text),
    Column("cancellation_images", JSON),
    Column("cancellation_requested_at", UTCDateTime),
    Column("cancellation_approved_by", Integer),
    Column("cancellation_approved_at", UTCDateTime),
    Column("cancellation_rejected", Boolean, nullable=False, default=False),
    Column("cancellation_rejection_reason", Text),
    Column("cancellation_rejected_by", Integer),
    Column("cancellation_rejected_at", UTCDateTime),
    # refund
    Column("refund_status", String(32)),
    Column("refund_amount", Numeric(12, 2)),
    Column("refund_transaction_id", String(255)),
    # detail access
    Column("details_access_granted", Boolean, nullable=False, default=False),
    # soft delete
    Column("is_deleted", Boolean, nullable=False, default=False, index=True),
    Column("deleted_at", UTCDateTime),
    Column("deleted_by", Integer),
    Column("deletion_expires_at", UTCDateTime),
    Column("status_before_deletion", String(32)),
    # restoration
    Column("restoration_requested", Boolean, nullable=False, default=False),
    Column("restoration_requested_at", UTCDateTime),
    Column("restoration_requested_by", Integer),
    Column("restoration_reason", Text),
    Column("restoration_status", String(16), nullable=False, default="none"),
    Column("restoration_approved_by", Integer),
    Column("restoration_approved_at", UTCDateTime),
    Column("restoration_rejected_by", Integer),
    Column("restoration_rejected_at", UTCDateTime),
    Column("restoration_rejection_reason", Text),
    sqlite_autoincrement=True,
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, nullable=False, index=True),
    Column("product_id", String(100), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("image", Text),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("line_total", Numeric(12, 2), nullable=False),
)

order_requests = Table(
    "order_requests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, nullable=False, index=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("kind", String(32), nullable=False, index=True),
    Column("reason", Text, nullable=False),
    Column("sub_reason", Text),
    Column("description", Text),
    Column("images", JSON),
    Column("status", String(16), nullable=False, index=True),
    Column("previous_status", String(32)),
    Column("admin_id", Integer),
    Column("admin_note", Text),
    Column("created_at", UTCDateTime, nullable=False),
    Column("decided_at", UTCDateTime),
    sqlite_autoincrement=True,
)

order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, nullable=False, index=True),
    Column("event_type", String(64), nullable=False),
    Column("from_status", String(32)),
    Column("to_status", String(32)),
    Column("actor_id", Integer),
    Column("actor_role", String(16), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    UniqueConstraint("order_id", "version", name="uq_order_events_order_version"),
)


class OrderStore:
    """Owns the async engine and hands out sessions. Call init() before use
    and dispose() on shutdown."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=echo)
        self._session_factory = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self, create_schema: bool = True) -> None:
        try:
            async with self.engine.begin() as conn:
                if create_schema:
                    await conn.run_sync(metadata.create_all)
        except (OperationalError, InterfaceError, OSError) as exc:
            raise StoreUnavailableError("Order store is unavailable") from exc
        logger.info("Order store ready (%s)", self.engine.url.render_as_string(hide_password=True))

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Order store closed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session scope. Anything not committed when the block exits is
        rolled back; connectivity failures surface as StoreUnavailableError."""
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.error("Order store unavailable: %s", exc)
            raise StoreUnavailableError("Order store is unavailable") from exc


# ── Row helpers ──────────────────────────────────


async def fetch_order(session: AsyncSession, order_id: int) -> dict[str, Any]:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.mappings().first()
    if row is None:
        raise NotFoundError(f"Order {order_id} not found")
    return dict(row)


async def fetch_items(session: AsyncSession, order_id: int) -> list[dict[str, Any]]:
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.id)
    )
    return [dict(row) for row in result.mappings().all()]


async def insert_order(
    session: AsyncSession, values: dict[str, Any], items: list[dict[str, Any]]
) -> int:
    result = await session.execute(insert(orders).values(**values))
    order_id = result.inserted_primary_key[0]
    if items:
        await session.execute(
            insert(order_items), [{**item, "order_id": order_id} for item in items]
        )
    return order_id


async def save_order(
    session: AsyncSession,
    order_id: int,
    expected_version: int,
    values: dict[str, Any],
) -> int:
    """Conditional update keyed on the version the caller read.

    Returns the new version. Raises NotFoundError if the order vanished
    (purged) and ConflictError if someone else committed first.
    """
    new_version = expected_version + 1
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.version == expected_version)
        .values(**values, version=new_version)
    )
    if result.rowcount != 1:
        still_there = await session.scalar(select(orders.c.id).where(orders.c.id == order_id))
        if still_there is None:
            raise NotFoundError(f"Order {order_id} not found")
        raise ConflictError(
            f"Order {order_id} was modified concurrently, retry with fresh state",
            {"expected_version": expected_version},
        )
    return new_version


async def remove_order(
    session: AsyncSession, order_id: int, expected_version: int, now: datetime
) -> None:
    """Hard delete, guarded so that only an expired soft-deleted row matches."""
    result = await session.execute(
        delete(orders).where(
            orders.c.id == order_id,
            orders.c.version == expected_version,
            orders.c.is_deleted.is_(True),
            orders.c.deletion_expires_at < now,
        )
    )
    if result.rowcount != 1:
        still_there = await session.scalar(select(orders.c.id).where(orders.c.id == order_id))
        if still_there is None:
            raise NotFoundError(f"Order {order_id} not found")
        raise ConflictError(f"Order {order_id} changed before it could be purged")
    await session.execute(delete(order_items).where(order_items.c.order_id == order_id))
    await session.execute(delete(order_requests).where(order_requests.c.order_id == order_id))
