"""
Order Service — Order state machine

    pending → processing → shipped → out_for_delivery → delivered
        │          │           │              │             │ (return / replace,
        └──────────┴───────────┴──────────────┘             │  7 days)
                             ▼                              ▼
                      cancel_requested ◀────────────────────┘
                             │ approve            │ reject
                             ▼                    └──▶ status held before the request
                         cancelled → refund_processing → refunded

Forward edges are admin-only. Entering and leaving cancel_requested happens
only through the request/decision flow, never through a plain transition.
"""

from datetime import timedelta

PENDING = "pending"
PROCESSING = "processing"
SHIPPED = "shipped"
OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERED = "delivered"
CANCEL_REQUESTED = "cancel_requested"
CANCELLED = "cancelled"
REFUND_PROCESSING = "refund_processing"
REFUNDED = "refunded"

FORWARD_FLOW: tuple[str, ...] = (
    PENDING,
    PROCESSING,
    SHIPPED,
    OUT_FOR_DELIVERY,
    DELIVERED,
)

ALL_STATUSES: frozenset[str] = frozenset(
    FORWARD_FLOW + (CANCEL_REQUESTED, CANCELLED, REFUND_PROCESSING, REFUNDED)
)

# Customer-initiated cancellation is open from any forward state before delivery.
CANCELLABLE_STATUSES: frozenset[str] = frozenset(FORWARD_FLOW[:-1])

# Details are hidden from the owner in these states unless access was granted.
DETAILS_HIDDEN_STATUSES: frozenset[str] = frozenset(
    {CANCELLED, REFUND_PROCESSING, REFUNDED}
)

# Edges a plain admin transition command may take.
ADMIN_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING}),
    PROCESSING: frozenset({SHIPPED}),
    SHIPPED: frozenset({OUT_FOR_DELIVERY}),
    OUT_FOR_DELIVERY: frozenset({DELIVERED}),
    CANCELLED: frozenset({REFUND_PROCESSING}),
    REFUND_PROCESSING: frozenset({REFUNDED}),
}

# Full graph, including the edges driven by requests and decisions.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING, CANCEL_REQUESTED}),
    PROCESSING: frozenset({SHIPPED, CANCEL_REQUESTED}),
    SHIPPED: frozenset({OUT_FOR_DELIVERY, CANCEL_REQUESTED}),
    OUT_FOR_DELIVERY: frozenset({DELIVERED, CANCEL_REQUESTED}),
    DELIVERED: frozenset({CANCEL_REQUESTED}),
    CANCEL_REQUESTED: frozenset({CANCELLED}) | frozenset(FORWARD_FLOW),
    CANCELLED: frozenset({REFUND_PROCESSING}),
    REFUND_PROCESSING: frozenset({REFUNDED}),
    REFUNDED: frozenset(),
}

MILESTONE_FIELDS: dict[str, str] = {
    PROCESSING: "processing_at",
    SHIPPED: "shipped_at",
    OUT_FOR_DELIVERY: "out_for_delivery_at",
    DELIVERED: "delivered_at",
    CANCELLED: "cancelled_at",
    REFUND_PROCESSING: "refund_processing_at",
    REFUNDED: "refunded_at",
}

MILESTONE_LABELS: dict[str, str] = {
    PENDING: "Order Placed",
    PROCESSING: "Processing",
    SHIPPED: "Shipped",
    OUT_FOR_DELIVERY: "Out for Delivery",
    DELIVERED: "Delivered",
    CANCELLED: "Cancelled",
    REFUND_PROCESSING: "Refund Processing",
    REFUNDED: "Refunded",
}

RETURN_WINDOW = timedelta(days=7)
RESTORATION_WINDOW = timedelta(days=30)
DETAIL_REQUEST_WINDOW = timedelta(days=30)


def is_valid_transition(current: str, target: str) -> bool:
    """Return True if current -> target is an edge of the order graph."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_admin_transition(current: str, target: str) -> bool:
    """Return True if an admin may move current -> target with a plain command."""
    return target in ADMIN_TRANSITIONS.get(current, frozenset())


def next_forward_status(current: str) -> str | None:
    if current not in FORWARD_FLOW or current == DELIVERED:
        return None
    return FORWARD_FLOW[FORWARD_FLOW.index(current) + 1]
