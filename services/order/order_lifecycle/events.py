"""
Order Service — Event definitions

Facts recorded in the per-order history and published on the
notification channel. Named in the past tense and never mutated.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

ORDER_CREATED = "OrderCreated"
STATUS_CHANGED = "OrderStatusChanged"
REQUEST_SUBMITTED = "RequestSubmitted"
REQUEST_APPROVED = "RequestApproved"
REQUEST_REJECTED = "RequestRejected"
REFUND_COMPLETED = "RefundCompleted"
REPLACEMENT_APPROVED = "ReplacementApproved"
ORDER_SOFT_DELETED = "OrderSoftDeleted"
RESTORATION_REQUESTED = "RestorationRequested"
ORDER_RESTORED = "OrderRestored"
RESTORATION_REJECTED = "RestorationRejected"
ORDER_PURGED = "OrderPurged"


class OrderEvent(BaseModel):
    """One lifecycle event: who moved which order from where to where."""

    order_id: int
    event_type: str
    from_status: str | None = None
    to_status: str | None = None
    actor_id: int | None = None
    actor_role: str
    timestamp: datetime
    version: int
    data: dict[str, Any] = Field(default_factory=dict)
