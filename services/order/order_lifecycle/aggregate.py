"""
Order Service — Order Aggregate

A read-only snapshot of one order row (plus its items) with the rules that
depend only on the snapshot and the current time. Commands decide with it;
they never mutate it in place, they write a change set and take a fresh
snapshot with evolve().
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from . import states


class OrderAggregate:
    """
    Status flow:
        pending → processing → shipped → out_for_delivery → delivered
        (any of the above) → cancel_requested → cancelled → refund_processing → refunded
    Deletion is orthogonal: `is_deleted` hides the order without touching status.
    """

    def __init__(self, row: dict[str, Any], items: list[dict[str, Any]] | None = None) -> None:
        self.data: dict[str, Any] = dict(row)
        self.items: list[dict[str, Any]] = list(items or [])

    # ── Attributes ───────────────────────────────

    @property
    def id(self) -> int:
        return self.data["id"]

    @property
    def user_id(self) -> int:
        return self.data["user_id"]

    @property
    def status(self) -> str:
        return self.data["status"]

    @property
    def version(self) -> int:
        return self.data["version"]

    @property
    def total_amount(self) -> Decimal:
        return Decimal(str(self.data["total_amount"]))

    @property
    def is_deleted(self) -> bool:
        return bool(self.data.get("is_deleted"))

    def __getitem__(self, field: str) -> Any:
        return self.data[field]

    def get(self, field: str, default: Any = None) -> Any:
        return self.data.get(field, default)

    def evolve(self, values: dict[str, Any]) -> "OrderAggregate":
        return OrderAggregate({**self.data, **values}, self.items)

    # ── Rules ────────────────────────────────────

    def is_owned_by(self, user_id: int) -> bool:
        return self.user_id == user_id

    def can_request_cancellation(self) -> bool:
        return self.status in states.CANCELLABLE_STATUSES

    def is_return_eligible(self, now: datetime) -> bool:
        """Delivered, and at most 7 days ago (inclusive)."""
        delivered_at = self.data.get("delivered_at")
        if self.status != states.DELIVERED or delivered_at is None:
            return False
        return now - delivered_at <= states.RETURN_WINDOW

    def restoration_window_open(self, now: datetime) -> bool:
        expires_at = self.data.get("deletion_expires_at")
        return self.is_deleted and expires_at is not None and now <= expires_at

    def is_purge_eligible(self, now: datetime) -> bool:
        expires_at = self.data.get("deletion_expires_at")
        return self.is_deleted and expires_at is not None and now > expires_at

    def details_hidden_since(self) -> datetime | None:
        """When the owner lost sight of the details, or None if they can see them."""
        if self.data.get("details_access_granted"):
            return None
        if self.is_deleted:
            return self.data.get("deleted_at")
        if self.status in states.DETAILS_HIDDEN_STATUSES:
            return self.data.get("cancelled_at") or self.data.get("updated_at")
        return None

    def details_visible_to(self, user_id: int, is_admin: bool) -> bool:
        if is_admin:
            return True
        return self.is_owned_by(user_id) and self.details_hidden_since() is None

    def can_request_details(self, now: datetime) -> bool:
        hidden_since = self.details_hidden_since()
        if hidden_since is None:
            return False
        return now - hidden_since <= states.DETAIL_REQUEST_WINDOW

    @property
    def display_status(self) -> str:
        if self.is_deleted:
            return self.data.get("status_before_deletion") or self.status
        return self.status

    def timeline(self) -> list[dict[str, Any]]:
        entries = [
            {
                "status": states.PENDING,
                "timestamp": self.data.get("created_at"),
                "label": states.MILESTONE_LABELS[states.PENDING],
            }
        ]
        for status, field in states.MILESTONE_FIELDS.items():
            timestamp = self.data.get(field)
            if timestamp is not None:
                entries.append(
                    {
                        "status": status,
                        "timestamp": timestamp,
                        "label": states.MILESTONE_LABELS[status],
                    }
                )
        return entries
