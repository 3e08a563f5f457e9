"""
Order Service — Request queue

Customer asks that need one admin decision. All kinds share one table and
one pending → approved | rejected lifecycle:

    cancel          forward order before delivery      → cancel_requested
    return/replace  delivered within 7 days            → cancel_requested
    detail_access   details hidden (deleted/cancelled), within 30 days
    restoration     soft-deleted, before deletion_expires_at

cancel/return/replace share the cancel_requested state, so at most one of
them is open per order. detail_access and restoration each allow one open
request per order and may be resubmitted after a decision.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import events, reasons, states
from .aggregate import OrderAggregate
from .commands import OrderChange, WorkflowEngine
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
    WindowExpiredError,
)
from .identity import Principal
from .store import order_requests

logger = logging.getLogger(__name__)

KIND_CANCEL = "cancel"
KIND_RETURN = "return"
KIND_REPLACE = "replace"
KIND_DETAIL_ACCESS = "detail_access"
KIND_RESTORATION = "restoration"

REQUEST_KINDS: tuple[str, ...] = (
    KIND_CANCEL,
    KIND_RETURN,
    KIND_REPLACE,
    KIND_DETAIL_ACCESS,
    KIND_RESTORATION,
)

# Kinds that park the order in cancel_requested.
CANCELLATION_FAMILY: frozenset[str] = frozenset({KIND_CANCEL, KIND_RETURN, KIND_REPLACE})

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
REQUEST_STATUSES: tuple[str, ...] = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)


# ── Request rows ─────────────────────────────────


def serialize_request(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "order_id": row["order_id"],
        "user_id": row["user_id"],
        "kind": row["kind"],
        "reason": row["reason"],
        "sub_reason": row.get("sub_reason"),
        "description": row.get("description"),
        "images": row.get("images") or [],
        "status": row["status"],
        "previous_status": row.get("previous_status"),
        "admin_id": row.get("admin_id"),
        "admin_note": row.get("admin_note"),
        "created_at": row["created_at"].isoformat() if row.get("created_at") else None,
        "decided_at": row["decided_at"].isoformat() if row.get("decided_at") else None,
    }


async def fetch_request(session: AsyncSession, request_id: int) -> dict[str, Any]:
    result = await session.execute(select(order_requests).where(order_requests.c.id == request_id))
    row = result.mappings().first()
    if row is None:
        raise NotFoundError(f"Request {request_id} not found")
    return dict(row)


async def find_open_request(
    session: AsyncSession, order_id: int, kinds: frozenset[str] | set[str]
) -> dict[str, Any] | None:
    result = await session.execute(
        select(order_requests)
        .where(
            order_requests.c.order_id == order_id,
            order_requests.c.kind.in_(sorted(kinds)),
            order_requests.c.status == STATUS_PENDING,
        )
        .order_by(order_requests.c.id.desc())
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def find_latest_request(
    session: AsyncSession, order_id: int, kind: str
) -> dict[str, Any] | None:
    """Most recent request of one kind, whatever its status."""
    result = await session.execute(
        select(order_requests)
        .where(order_requests.c.order_id == order_id, order_requests.c.kind == kind)
        .order_by(order_requests.c.id.desc())
        .limit(1)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def close_request(
    session: AsyncSession,
    request_id: int,
    status: str,
    admin: Principal,
    note: str | None,
    now: datetime,
) -> dict[str, Any]:
    """pending → approved|rejected, exactly once."""
    result = await session.execute(
        update(order_requests)
        .where(order_requests.c.id == request_id, order_requests.c.status == STATUS_PENDING)
        .values(status=status, admin_id=admin.user_id, admin_note=note, decided_at=now)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Request {request_id} has already been decided")
    return await fetch_request(session, request_id)


class RequestQueue:
    """Accepts customer requests through the workflow engine."""

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine

    async def submit(
        self,
        order_id: int,
        actor: Principal,
        kind: str,
        reason: str | None,
        *,
        sub_reason: str | None = None,
        description: str | None = None,
        images: list[str] | None = None,
    ) -> dict[str, Any]:
        if kind == KIND_RESTORATION:
            return await self.submit_restoration(order_id, actor, reason)
        if kind not in REQUEST_KINDS:
            raise ValidationFailedError(f"Unknown request kind: {kind}", {"field": "kind"})

        async def decide(session, order, now):
            self._check_requester(order, actor, kind)
            if kind == KIND_CANCEL:
                parsed = reasons.validate_cancellation_reason(reason, description)
            elif kind == KIND_DETAIL_ACCESS:
                parsed = reasons.validate_detail_reason(reason, description)
            else:
                parsed = reasons.validate_return_reason(reason, sub_reason, description)
            evidence = reasons.validate_images(images)

            family = CANCELLATION_FAMILY if kind in CANCELLATION_FAMILY else {kind}
            if await find_open_request(session, order.id, family) is not None:
                raise ConflictError(
                    f"Order {order.id} already has an open {kind.replace('_', ' ')} request"
                )

            if kind == KIND_DETAIL_ACCESS:
                values = _check_detail_access(order, now)
            else:
                _check_cancellation_family(order, kind, now)
                values = {
                    "status": states.CANCEL_REQUESTED,
                    "cancellation_reason": parsed.display,
                    "cancellation_note": parsed.description,
                    "cancellation_images": evidence,
                    "cancellation_requested_at": now,
                    "cancellation_rejected": False,
                }

            row = {
                "order_id": order.id,
                "user_id": actor.user_id,
                "kind": kind,
                "reason": parsed.reason,
                "sub_reason": parsed.sub_reason,
                "description": parsed.description,
                "images": evidence,
                "status": STATUS_PENDING,
                "previous_status": order.status,
                "created_at": now,
            }
            result = await session.execute(insert(order_requests).values(**row))
            row["id"] = result.inserted_primary_key[0]
            return OrderChange(
                events.REQUEST_SUBMITTED,
                values,
                {"request_id": row["id"], "kind": kind, "reason": parsed.display},
                result=row,
            )

        _, change = await self.engine.apply(order_id, actor, decide)
        return serialize_request(change.result)

    async def submit_restoration(
        self, order_id: int, actor: Principal, reason: str | None
    ) -> dict[str, Any]:
        """Ask for a soft-deleted order back while its 30 days are running."""

        async def decide(session, order, now):
            if not order.is_deleted:
                raise NotFoundError("Deleted order not found")
            if not order.is_owned_by(actor.user_id):
                raise ForbiddenError("You can only restore your own orders")
            cleaned = reasons.validate_restoration_reason(reason)
            if not order.restoration_window_open(now):
                raise WindowExpiredError(
                    "This order has been permanently deleted and cannot be restored"
                )
            if order.get("restoration_requested") or await find_open_request(
                session, order.id, {KIND_RESTORATION}
            ):
                raise ConflictError("Restoration already requested for this order")

            row = {
                "order_id": order.id,
                "user_id": actor.user_id,
                "kind": KIND_RESTORATION,
                "reason": cleaned,
                "images": [],
                "status": STATUS_PENDING,
                "previous_status": order.status,
                "created_at": now,
            }
            result = await session.execute(insert(order_requests).values(**row))
            row["id"] = result.inserted_primary_key[0]
            return OrderChange(
                events.RESTORATION_REQUESTED,
                {
                    "restoration_requested": True,
                    "restoration_requested_at": now,
                    "restoration_requested_by": actor.user_id,
                    "restoration_reason": cleaned,
                    "restoration_status": STATUS_PENDING,
                },
                {"request_id": row["id"]},
                result=row,
            )

        _, change = await self.engine.apply(order_id, actor, decide)
        return serialize_request(change.result)

    @staticmethod
    def _check_requester(order: OrderAggregate, actor: Principal, kind: str) -> None:
        if actor.is_system:
            raise ForbiddenError("Requests are submitted by customers")
        if kind in CANCELLATION_FAMILY:
            # admins may file a cancellation on a customer's behalf
            if not (actor.is_admin or order.is_owned_by(actor.user_id)):
                raise ForbiddenError("You can only submit requests for your own orders")
            if order.is_deleted:
                raise NotFoundError(f"Order {order.id} not found")
        elif not order.is_owned_by(actor.user_id):
            raise ForbiddenError("You can only submit requests for your own orders")


def _check_cancellation_family(order: OrderAggregate, kind: str, now: datetime) -> None:
    if kind == KIND_CANCEL:
        if not order.can_request_cancellation():
            raise InvalidTransitionError(
                f"Cannot cancel order with status: {order.status}. "
                "Orders can only be cancelled before delivery.",
                {"status": order.status},
            )
        return
    if order.status != states.DELIVERED:
        raise InvalidTransitionError(
            f"Only delivered orders can be returned or replaced (status: {order.status})",
            {"status": order.status},
        )
    if not order.is_return_eligible(now):
        raise WindowExpiredError(
            "The 7-day return/replacement window for this order has closed",
            {"delivered_at": order["delivered_at"].isoformat()},
        )


def _check_detail_access(order: OrderAggregate, now: datetime) -> dict[str, Any]:
    if order.details_hidden_since() is None:
        raise InvalidTransitionError("Order details are already visible")
    if not order.can_request_details(now):
        raise WindowExpiredError(
            "Order details can only be requested within 30 days of cancellation or deletion"
        )
    return {}
