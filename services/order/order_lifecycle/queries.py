"""
Order Service — Query handlers (read side)

Reads go straight to the order tables. Nothing here writes; visibility
rules (ownership, soft deletion, hidden details) are applied per caller.
"""

import math
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate
from .errors import ForbiddenError, NotFoundError, ValidationFailedError
from .event_store import load_events
from .identity import Principal
from .request_queue import (
    REQUEST_KINDS,
    REQUEST_STATUSES,
    find_latest_request,
    serialize_request,
)
from .store import fetch_items, fetch_order, order_items, order_requests, orders

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

SUMMARY_FIELDS = ("id", "user_id", "status", "total_amount", "created_at", "updated_at")


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _serialize_item(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "product_id": item["product_id"],
        "name": item["product_name"],
        "image": item.get("image"),
        "quantity": item["quantity"],
        "price": float(item["unit_price"]),
        "line_total": float(item["line_total"]),
    }


def serialize_order(order: OrderAggregate, viewer: Principal, now: datetime) -> dict[str, Any]:
    """Full row for viewers who may see the details, a summary otherwise."""
    can_view = order.details_visible_to(viewer.user_id, viewer.is_admin)
    if can_view:
        body = {key: _jsonable(value) for key, value in order.data.items()}
        body["items"] = [_serialize_item(item) for item in order.items]
    else:
        body = {key: _jsonable(order.get(key)) for key in SUMMARY_FIELDS}
        body["item_count"] = len(order.items)
    body["status"] = order.display_status
    body["is_deleted"] = order.is_deleted
    body["can_view_details"] = can_view
    body["can_request_details"] = not viewer.is_admin and order.can_request_details(now)
    return body


def _pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}


def _check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationFailedError("Page must be at least 1", {"field": "page"})
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationFailedError(
            f"Limit must be between 1 and {MAX_PAGE_SIZE}", {"field": "limit"}
        )


async def _items_by_order(session: AsyncSession, order_ids: list[int]) -> dict[int, list[dict]]:
    grouped: dict[int, list[dict]] = {order_id: [] for order_id in order_ids}
    if not order_ids:
        return grouped
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.id)
    )
    for row in result.mappings().all():
        grouped[row["order_id"]].append(dict(row))
    return grouped


async def _visible_order(
    session: AsyncSession, order_id: int, viewer: Principal
) -> OrderAggregate:
    """Admins see everything; customers see their own orders that are not deleted."""
    order = OrderAggregate(await fetch_order(session, order_id))
    if viewer.is_admin:
        return order
    if not order.is_owned_by(viewer.user_id) or order.is_deleted:
        raise NotFoundError("Order not found")
    return order


# ── Orders ───────────────────────────────────────


async def get_order(
    session: AsyncSession, order_id: int, viewer: Principal, now: datetime
) -> dict[str, Any]:
    order = await _visible_order(session, order_id, viewer)
    order.items = await fetch_items(session, order_id)
    return serialize_order(order, viewer, now)


async def list_orders(
    session: AsyncSession,
    viewer: Principal,
    now: datetime,
    *,
    status: str | None = None,
    user_id: int | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict[str, Any]:
    """Active (not deleted) orders, newest first. Customers only ever get their own."""
    _check_paging(page, limit)
    conditions = [orders.c.is_deleted.is_(False)]
    if not viewer.is_admin:
        conditions.append(orders.c.user_id == viewer.user_id)
    elif user_id is not None:
        conditions.append(orders.c.user_id == user_id)
    if status:
        conditions.append(orders.c.status == status)

    total = await session.scalar(select(func.count()).select_from(orders).where(*conditions))
    result = await session.execute(
        select(orders)
        .where(*conditions)
        .order_by(orders.c.created_at.desc(), orders.c.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = [dict(row) for row in result.mappings().all()]
    items = await _items_by_order(session, [row["id"] for row in rows])
    return {
        "orders": [
            serialize_order(OrderAggregate(row, items[row["id"]]), viewer, now) for row in rows
        ],
        "pagination": _pagination(page, limit, total or 0),
    }


async def list_deleted_orders(
    session: AsyncSession, viewer: Principal, now: datetime
) -> list[dict[str, Any]]:
    """Soft-deleted orders still inside their restoration window, newest deletion first."""
    conditions = [orders.c.is_deleted.is_(True), orders.c.deletion_expires_at >= now]
    if not viewer.is_admin:
        conditions.append(orders.c.user_id == viewer.user_id)
    result = await session.execute(
        select(orders).where(*conditions).order_by(orders.c.deleted_at.desc(), orders.c.id.desc())
    )
    rows = [dict(row) for row in result.mappings().all()]
    items = await _items_by_order(session, [row["id"] for row in rows])

    deleted = []
    for row in rows:
        order = OrderAggregate(row, items[row["id"]])
        body = serialize_order(order, viewer, now)
        body.update(
            deleted_at=_jsonable(order.get("deleted_at")),
            deletion_expires_at=_jsonable(order.get("deletion_expires_at")),
            status_before_deletion=order.get("status_before_deletion"),
            restoration_requested=bool(order.get("restoration_requested")),
            restoration_status=order.get("restoration_status"),
            restoration_rejection_reason=order.get("restoration_rejection_reason"),
            days_until_purge=max((order["deletion_expires_at"] - now).days, 0),
        )
        deleted.append(body)
    return deleted


async def get_tracking(
    session: AsyncSession, order_id: int, viewer: Principal
) -> dict[str, Any]:
    order = await _visible_order(session, order_id, viewer)
    return {
        "order_id": order.id,
        "status": order.status,
        "tracking_number": order.get("tracking_number"),
        "courier_name": order.get("courier_name"),
        "estimated_delivery": _jsonable(order.get("estimated_delivery")),
        "timeline": [
            {**entry, "timestamp": _jsonable(entry["timestamp"])} for entry in order.timeline()
        ],
    }


async def get_history(
    session: AsyncSession, order_id: int, viewer: Principal
) -> list[dict[str, Any]]:
    """Event log of one order. Only admins can read the log of a purged order."""
    if not viewer.is_admin:
        await _visible_order(session, order_id, viewer)
    return await load_events(session, order_id)


# ── Requests ─────────────────────────────────────


async def list_requests(
    session: AsyncSession,
    viewer: Principal,
    *,
    kind: str | None = None,
    status: str | None = "pending",
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict[str, Any]:
    """Admin work queue, oldest first so requests are handled in arrival order."""
    if not viewer.is_admin:
        raise ForbiddenError("Only admins can list requests")
    _check_paging(page, limit)
    if kind is not None and kind not in REQUEST_KINDS:
        raise ValidationFailedError(f"Unknown request kind: {kind}", {"field": "kind"})
    if status is not None and status not in REQUEST_STATUSES:
        raise ValidationFailedError(f"Unknown request status: {status}", {"field": "status"})

    conditions = []
    if kind:
        conditions.append(order_requests.c.kind == kind)
    if status:
        conditions.append(order_requests.c.status == status)

    total = await session.scalar(
        select(func.count()).select_from(order_requests).where(*conditions)
    )
    result = await session.execute(
        select(order_requests)
        .where(*conditions)
        .order_by(order_requests.c.created_at.asc(), order_requests.c.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "requests": [serialize_request(dict(row)) for row in result.mappings().all()],
        "pagination": _pagination(page, limit, total or 0),
    }


async def get_latest_request(
    session: AsyncSession, order_id: int, viewer: Principal, kind: str
) -> dict[str, Any] | None:
    """Most recent request of one kind, whatever its status."""
    if kind not in REQUEST_KINDS:
        raise ValidationFailedError(f"Unknown request kind: {kind}", {"field": "kind"})
    order = OrderAggregate(await fetch_order(session, order_id))
    if not (viewer.is_admin or order.is_owned_by(viewer.user_id)):
        raise NotFoundError("Order not found")

    request = await find_latest_request(session, order_id, kind)
    return serialize_request(request) if request else None
