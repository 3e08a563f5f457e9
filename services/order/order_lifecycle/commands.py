"""
Order Service — Workflow engine (write side)

Every command against an existing order runs the same sequence:

    1. take the per-order lock (commands on one order run in arrival order)
    2. read the order row and decide against that snapshot; every status
       change must be an edge of the transition graph
    3. conditional UPDATE on the version that was read
    4. append the event to the order history
    5. commit, then publish the event (failure to publish is only logged)

Either all of a command's writes commit together or none do.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping
from weakref import WeakValueDictionary

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import events, states
from .aggregate import OrderAggregate
from .catalog import CatalogClient
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    ValidationFailedError,
)
from .event_store import append_event
from .events import OrderEvent
from .identity import SYSTEM_PRINCIPAL, Principal
from .notifications import EventPublisher
from .store import (
    OrderStore,
    fetch_items,
    fetch_order,
    insert_order,
    orders,
    remove_order,
    save_order,
)

logger = logging.getLogger(__name__)

PAYMENT_METHODS: frozenset[str] = frozenset(
    {"credit_card", "debit_card", "paypal", "cash", "cod", "card", "upi", "netbanking", "wallet"}
)

ADDRESS_FIELDS = ("street", "city", "state", "zip_code", "phone", "country")

REFUND_PENDING = "pending"
REFUND_PROCESSING = "processing"
REFUND_COMPLETED = "completed"

# a new deletion starts a new restoration cycle; earlier cycles live in the event log
RESTORATION_RESET: dict[str, Any] = {
    "restoration_requested": False,
    "restoration_requested_at": None,
    "restoration_requested_by": None,
    "restoration_reason": None,
    "restoration_status": "none",
    "restoration_approved_by": None,
    "restoration_approved_at": None,
    "restoration_rejected_by": None,
    "restoration_rejected_at": None,
    "restoration_rejection_reason": None,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OrderChange:
    """What a command decided: the column values to write and the event to record.

    `then` chains a follow-on step written in the same transaction, each step
    with its own version and event.
    """

    event_type: str
    values: dict[str, Any]
    data: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    then: "OrderChange | None" = None


Decide = Callable[[AsyncSession, OrderAggregate, datetime], Awaitable[OrderChange]]


class WorkflowEngine:
    """Sole writer of orders and requests."""

    def __init__(
        self,
        store: OrderStore,
        publisher: EventPublisher | None = None,
        catalog: CatalogClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.catalog = catalog
        self.clock = clock
        self._locks: WeakValueDictionary[int, asyncio.Lock] = WeakValueDictionary()

    def now(self) -> datetime:
        return self.clock()

    # ── Plumbing ─────────────────────────────────

    @asynccontextmanager
    async def _order_lock(self, order_id: int) -> AsyncIterator[None]:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        async with lock:
            yield

    async def _publish(self, event: OrderEvent) -> None:
        if self.publisher is not None:
            await self.publisher.publish(event)

    async def apply(
        self, order_id: int, actor: Principal, decide: Decide
    ) -> tuple[OrderAggregate, OrderChange]:
        """Run one command against one order under the lock and in one transaction."""
        async with self._order_lock(order_id):
            async with self.store.session() as session:
                order = OrderAggregate(await fetch_order(session, order_id))
                now = self.now()
                change = await decide(session, order, now)

                updated, recorded = order, []
                step: OrderChange | None = change
                while step is not None:
                    values = {**step.values, "updated_at": now}
                    target = values.get("status", updated.status)
                    if target != updated.status and not states.is_valid_transition(
                        updated.status, target
                    ):
                        raise InvalidTransitionError(
                            f"Cannot move order {order.id} from {updated.status} to {target}",
                            {"from": updated.status, "to": target},
                        )
                    version = await save_order(session, order.id, updated.version, values)
                    event = OrderEvent(
                        order_id=order.id,
                        event_type=step.event_type,
                        from_status=updated.status,
                        to_status=target,
                        actor_id=actor.user_id,
                        actor_role=actor.role,
                        timestamp=now,
                        version=version,
                        data=step.data,
                    )
                    await append_event(session, event)
                    recorded.append(event)
                    updated = updated.evolve({**values, "version": version})
                    step = step.then
                await session.commit()

        for event in recorded:
            logger.info(
                "%s: order %s %s -> %s by %s %s",
                event.event_type,
                order.id,
                event.from_status,
                event.to_status,
                actor.role,
                actor.user_id,
            )
            await self._publish(event)
        return updated, change

    async def load(self, order_id: int, with_items: bool = False) -> OrderAggregate:
        async with self.store.session() as session:
            row = await fetch_order(session, order_id)
            items = await fetch_items(session, order_id) if with_items else None
        return OrderAggregate(row, items)

    # ── Create ───────────────────────────────────

    async def create_order(
        self,
        actor: Principal,
        items: Iterable[Mapping[str, Any]],
        payment_method: str,
        shipping_address: Mapping[str, Any] | None,
    ) -> OrderAggregate:
        """Place an order. It always starts in `pending`."""
        if actor.is_system:
            raise ForbiddenError("Orders are placed by customers")

        lines = await self._prepare_lines(items)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationFailedError(
                f"Invalid payment method: {payment_method}", {"field": "payment_method"}
            )
        address = _prepare_address(shipping_address)
        total = sum((line["line_total"] for line in lines), Decimal("0"))

        now = self.now()
        row = {
            "user_id": actor.user_id,
            "total_amount": total,
            "payment_method": payment_method,
            "shipping_address": address,
            "status": states.PENDING,
            "version": 1,
            "created_at": now,
            "updated_at": now,
            "cancellation_images": [],
            "cancellation_rejected": False,
            "details_access_granted": False,
            "is_deleted": False,
            "restoration_requested": False,
            "restoration_status": "none",
        }

        async with self.store.session() as session:
            order_id = await insert_order(session, row, lines)
            event = OrderEvent(
                order_id=order_id,
                event_type=events.ORDER_CREATED,
                to_status=states.PENDING,
                actor_id=actor.user_id,
                actor_role=actor.role,
                timestamp=now,
                version=1,
                data={"total_amount": str(total), "item_count": len(lines)},
            )
            await append_event(session, event)
            await session.commit()

        logger.info("Order %s created for user %s (total %s)", order_id, actor.user_id, total)
        await self._publish(event)
        return OrderAggregate(
            {**row, "id": order_id}, [{**line, "order_id": order_id} for line in lines]
        )

    async def _prepare_lines(self, items: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        lines = []
        for index, item in enumerate(items or []):
            product_id = str(item.get("product_id") or "").strip()
            if not product_id:
                raise ValidationFailedError(
                    "Product ID is required", {"field": f"items[{index}].product_id"}
                )
            try:
                quantity = int(item.get("quantity"))
                price = Decimal(str(item.get("price")))
            except (TypeError, ValueError, InvalidOperation):
                raise ValidationFailedError(
                    "Quantity and price must be numbers", {"field": f"items[{index}]"}
                )
            if quantity < 1:
                raise ValidationFailedError(
                    "Quantity must be at least 1", {"field": f"items[{index}].quantity"}
                )
            if price < 0:
                raise ValidationFailedError(
                    "Price must be non-negative", {"field": f"items[{index}].price"}
                )

            name, image = item.get("name"), item.get("image")
            if not name and self.catalog is not None:
                product = await self.catalog.get_product(product_id)
                if product:
                    name = product.get("name")
                    image = image or product.get("image") or product.get("image_url")
            lines.append(
                {
                    "product_id": product_id,
                    "product_name": name or "Product",
                    "image": image,
                    "quantity": quantity,
                    "unit_price": price,
                    "line_total": price * quantity,
                }
            )
        if not lines:
            raise ValidationFailedError("Items must be a non-empty list", {"field": "items"})
        return lines

    # ── Status transitions ───────────────────────

    async def request_transition(
        self,
        order_id: int,
        actor: Principal,
        target_status: str,
        *,
        tracking_number: str | None = None,
        courier_name: str | None = None,
        estimated_delivery: datetime | None = None,
        refund_amount: Decimal | None = None,
        transaction_id: str | None = None,
    ) -> OrderAggregate:
        """Admin moves an order one edge along the forward or refund path."""
        if not (actor.is_admin or actor.is_system):
            raise ForbiddenError("Only admins can update order status")
        if target_status not in states.ALL_STATUSES:
            raise ValidationFailedError(
                f"Unknown status: {target_status}", {"field": "status"}
            )

        async def decide(session, order, now):
            if target_status in (states.CANCEL_REQUESTED, states.CANCELLED):
                raise InvalidTransitionError(
                    "Cancellation goes through a cancellation request and an admin decision"
                )
            if not states.is_admin_transition(order.status, target_status):
                raise InvalidTransitionError(
                    f"Cannot move order {order.id} from {order.status} to {target_status}",
                    {"from": order.status, "to": target_status},
                )
            values = _transition_values(
                order,
                target_status,
                now,
                tracking_number=tracking_number,
                courier_name=courier_name,
                estimated_delivery=estimated_delivery,
                refund_amount=refund_amount,
                transaction_id=transaction_id,
            )
            event_type = (
                events.REFUND_COMPLETED
                if target_status == states.REFUNDED
                else events.STATUS_CHANGED
            )
            return OrderChange(event_type, values)

        updated, _ = await self.apply(order_id, actor, decide)
        return updated

    async def complete_refund(
        self,
        order_id: int,
        actor: Principal,
        transaction_id: str,
        amount: Decimal | None = None,
    ) -> OrderAggregate:
        """Record the payment system's confirmation that the money went back."""
        return await self.request_transition(
            order_id,
            actor,
            states.REFUNDED,
            refund_amount=amount,
            transaction_id=transaction_id,
        )

    # ── Soft delete & purge ──────────────────────

    async def soft_delete(self, order_id: int, actor: Principal) -> OrderAggregate:
        """Hide an order for 30 days. Status and milestones are left untouched."""

        async def decide(session, order, now):
            if not (actor.is_admin or order.is_owned_by(actor.user_id)):
                raise ForbiddenError("You can only delete your own orders")
            if order.is_deleted:
                raise ConflictError(f"Order {order.id} is already deleted")
            return OrderChange(
                events.ORDER_SOFT_DELETED,
                {
                    "is_deleted": True,
                    "deleted_at": now,
                    "deleted_by": actor.user_id,
                    "deletion_expires_at": now + states.RESTORATION_WINDOW,
                    "status_before_deletion": order.status,
                    **RESTORATION_RESET,
                },
                {"deletion_expires_at": (now + states.RESTORATION_WINDOW).isoformat()},
            )

        updated, _ = await self.apply(order_id, actor, decide)
        return updated

    async def find_purge_candidates(self, now: datetime | None = None) -> list[int]:
        now = now or self.now()
        async with self.store.session() as session:
            result = await session.execute(
                select(orders.c.id)
                .where(orders.c.is_deleted.is_(True), orders.c.deletion_expires_at < now)
                .order_by(orders.c.id)
            )
            return [row.id for row in result.fetchall()]

    async def purge_order(
        self, order_id: int, actor: Principal = SYSTEM_PRINCIPAL
    ) -> None:
        """Permanently remove an order whose restoration window has lapsed."""
        if not (actor.is_admin or actor.is_system):
            raise ForbiddenError("Only the system or an admin can purge orders")

        async with self._order_lock(order_id):
            async with self.store.session() as session:
                order = OrderAggregate(await fetch_order(session, order_id))
                now = self.now()
                if not order.is_purge_eligible(now):
                    raise InvalidTransitionError(
                        f"Order {order_id} is not eligible for purge",
                        {"deletion_expires_at": _iso(order.get("deletion_expires_at"))},
                    )
                await remove_order(session, order.id, order.version, now)
                event = OrderEvent(
                    order_id=order.id,
                    event_type=events.ORDER_PURGED,
                    from_status=order.status,
                    to_status=None,
                    actor_id=actor.user_id,
                    actor_role=actor.role,
                    timestamp=now,
                    version=order.version + 1,
                    data={"deleted_at": _iso(order.get("deleted_at"))},
                )
                await append_event(session, event)
                await session.commit()

        logger.info("Order %s permanently purged", order_id)
        await self._publish(event)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _prepare_address(address: Mapping[str, Any] | None) -> dict[str, Any]:
    if not address:
        raise ValidationFailedError("Shipping address is required", {"field": "shipping_address"})
    cleaned = {key: address.get(key) for key in ADDRESS_FIELDS if address.get(key)}
    cleaned.setdefault("country", "India")
    if not cleaned.get("street") or not cleaned.get("city"):
        raise ValidationFailedError(
            "Shipping address needs at least a street and a city",
            {"field": "shipping_address"},
        )
    return cleaned


def _transition_values(
    order: OrderAggregate,
    target: str,
    now: datetime,
    *,
    tracking_number: str | None,
    courier_name: str | None,
    estimated_delivery: datetime | None,
    refund_amount: Decimal | None,
    transaction_id: str | None,
) -> dict[str, Any]:
    values: dict[str, Any] = {"status": target, states.MILESTONE_FIELDS[target]: now}

    if target == states.SHIPPED:
        tracking_number = (tracking_number or "").strip()
        courier_name = (courier_name or "").strip()
        missing = [
            name
            for name, value in (("tracking_number", tracking_number), ("courier_name", courier_name))
            if not value
        ]
        if missing:
            raise ValidationFailedError(
                "Tracking number and courier name are required to ship an order",
                {"missing": missing},
            )
        values.update(
            tracking_number=tracking_number,
            courier_name=courier_name,
            estimated_delivery=estimated_delivery,
        )
    elif target == states.REFUND_PROCESSING:
        values["refund_status"] = REFUND_PROCESSING
    elif target == states.REFUNDED:
        transaction_id = (transaction_id or "").strip()
        if not transaction_id:
            raise ValidationFailedError(
                "Refund transaction id is required", {"field": "transaction_id"}
            )
        amount = order.total_amount if refund_amount is None else Decimal(str(refund_amount))
        if amount < 0 or amount > order.total_amount:
            raise ValidationFailedError(
                "Refund amount must be between 0 and the order total",
                {"field": "amount", "total_amount": str(order.total_amount)},
            )
        values.update(
            refund_status=REFUND_COMPLETED,
            refund_amount=amount,
            refund_transaction_id=transaction_id,
        )
    return values
