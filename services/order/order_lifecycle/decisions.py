"""
Order Service — Admin decision handler

One entry point for every request kind. A decision is applied exactly once:
the request row moves out of `pending` with a conditional UPDATE in the
same transaction as the order change, so a replayed or racing second
decision gets a ConflictError.

Side effects per kind:
    cancel / return   approve → cancelled and refund_processing, committed together
                      reject  → back to the status held before the request
    replace           approve → back to delivered, replacement dispatched downstream
                      reject  → back to delivered
    detail_access     approve → details_access_granted
    restoration       approve → deletion cleared
                      reject  → stays deleted, a new request may be filed
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import events, states
from .aggregate import OrderAggregate
from .commands import REFUND_PENDING, REFUND_PROCESSING, OrderChange, WorkflowEngine
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
    WindowExpiredError,
)
from .identity import Principal
from .request_queue import (
    KIND_CANCEL,
    KIND_DETAIL_ACCESS,
    KIND_REPLACE,
    KIND_RESTORATION,
    KIND_RETURN,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    close_request,
    fetch_request,
    find_latest_request,
    serialize_request,
)

logger = logging.getLogger(__name__)

APPROVE = "approve"
REJECT = "reject"
DECISIONS = (APPROVE, REJECT)

REFUNDABLE_KINDS = frozenset({KIND_CANCEL, KIND_RETURN})


class DecisionHandler:
    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine

    async def decide(
        self,
        request_id: int,
        actor: Principal,
        decision: str,
        note: str | None = None,
    ) -> dict[str, Any]:
        if not actor.is_admin:
            raise ForbiddenError("Only admins can decide requests")
        if decision not in DECISIONS:
            raise ValidationFailedError(
                f"Decision must be one of {', '.join(DECISIONS)}", {"field": "decision"}
            )
        note = (note or "").strip() or None

        async with self.engine.store.session() as session:
            request = await fetch_request(session, request_id)
        if request["status"] != STATUS_PENDING:
            raise ConflictError(
                f"Request {request_id} has already been {request['status']}",
                {"status": request["status"]},
            )

        async def decide(session: AsyncSession, order: OrderAggregate, now):
            # re-read under the order lock; an earlier decision may have landed
            current = await fetch_request(session, request_id)
            if current["status"] != STATUS_PENDING:
                raise ConflictError(f"Request {request_id} has already been {current['status']}")

            change = _decide(order, current, actor, decision, note, now)
            status = STATUS_APPROVED if decision == APPROVE else STATUS_REJECTED
            change.result = await close_request(session, request_id, status, actor, note, now)
            change.data.update(request_id=request_id, kind=current["kind"], decision=decision)
            return change

        order, change = await self.engine.apply(request["order_id"], actor, decide)

        logger.info(
            "Request %s (%s) for order %s %sd by admin %s",
            request_id,
            request["kind"],
            order.id,
            decision,
            actor.user_id,
        )
        return {"request": serialize_request(change.result), "order_status": order.status}

    async def decide_restoration(
        self,
        order_id: int,
        actor: Principal,
        decision: str,
        note: str | None = None,
    ) -> dict[str, Any]:
        if not actor.is_admin:
            raise ForbiddenError("Only admins can decide restoration requests")
        async with self.engine.store.session() as session:
            request = await find_latest_request(session, order_id, KIND_RESTORATION)
        if request is None:
            raise NotFoundError("Restoration request not found")
        return await self.decide(request["id"], actor, decision, note)


def _require_note(note: str | None, what: str) -> str:
    if not note:
        raise ValidationFailedError(f"A rejection reason is required to reject {what}", {"field": "note"})
    return note


def _decide(
    order: OrderAggregate,
    request: dict[str, Any],
    admin: Principal,
    decision: str,
    note: str | None,
    now,
) -> OrderChange:
    kind = request["kind"]

    if kind in (KIND_CANCEL, KIND_RETURN, KIND_REPLACE):
        if order.status != states.CANCEL_REQUESTED:
            raise InvalidTransitionError(
                "Order does not have a pending cancellation request",
                {"status": order.status},
            )
        previous = request.get("previous_status") or states.PROCESSING
        if decision == REJECT:
            return OrderChange(
                events.REQUEST_REJECTED,
                {
                    "status": previous,
                    "cancellation_rejected": True,
                    "cancellation_rejection_reason": _require_note(note, "a request"),
                    "cancellation_rejected_by": admin.user_id,
                    "cancellation_rejected_at": now,
                },
            )
        if kind not in REFUNDABLE_KINDS:
            return OrderChange(
                events.REPLACEMENT_APPROVED,
                {"status": previous, "cancellation_approved_by": admin.user_id,
                 "cancellation_approved_at": now},
            )
        refund = OrderChange(
            events.STATUS_CHANGED,
            {
                "status": states.REFUND_PROCESSING,
                "refund_processing_at": now,
                "refund_status": REFUND_PROCESSING,
            },
        )
        return OrderChange(
            events.REQUEST_APPROVED,
            {
                "status": states.CANCELLED,
                "cancelled_at": now,
                "cancellation_approved_by": admin.user_id,
                "cancellation_approved_at": now,
                "refund_status": REFUND_PENDING,
            },
            then=refund,
        )

    if kind == KIND_DETAIL_ACCESS:
        if decision == APPROVE:
            return OrderChange(events.REQUEST_APPROVED, {"details_access_granted": True})
        return OrderChange(events.REQUEST_REJECTED, {})

    if kind == KIND_RESTORATION:
        if not order.is_deleted:
            raise ConflictError(f"Order {order.id} is not deleted")
        if decision == REJECT:
            return OrderChange(
                events.RESTORATION_REJECTED,
                {
                    "restoration_requested": False,
                    "restoration_status": STATUS_REJECTED,
                    "restoration_rejected_by": admin.user_id,
                    "restoration_rejected_at": now,
                    "restoration_rejection_reason": _require_note(note, "a restoration"),
                },
            )
        if not order.restoration_window_open(now):
            raise WindowExpiredError(
                f"Order {order.id} passed its restoration deadline and awaits purge"
            )
        return OrderChange(
            events.ORDER_RESTORED,
            {
                "is_deleted": False,
                "deleted_at": None,
                "deleted_by": None,
                "deletion_expires_at": None,
                "status_before_deletion": None,
                "restoration_requested": False,
                "restoration_status": STATUS_APPROVED,
                "restoration_approved_by": admin.user_id,
                "restoration_approved_at": now,
            },
        )

    raise ValidationFailedError(f"Unknown request kind: {kind}")
