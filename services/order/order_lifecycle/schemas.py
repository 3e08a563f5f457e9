"""
Order Service — Request bodies

Pydantic only checks shape here. Business rules (allowed payment methods,
reason taxonomies, windows) live in the workflow and raise WorkflowError.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int
    price: Decimal
    name: str | None = None
    image: str | None = None


class ShippingAddress(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    phone: str | None = None
    country: str | None = None


class CreateOrderRequest(BaseModel):
    items: list[OrderItemIn]
    payment_method: str
    shipping_address: ShippingAddress | None = None


class TransitionRequest(BaseModel):
    status: str
    tracking_number: str | None = None
    courier_name: str | None = None
    estimated_delivery: datetime | None = None


class RefundCompletionRequest(BaseModel):
    transaction_id: str
    amount: Decimal | None = None


class SubmitRequestBody(BaseModel):
    kind: str
    reason: str | None = None
    sub_reason: str | None = None
    description: str | None = None
    images: list[str] = Field(default_factory=list)


class RestorationRequestBody(BaseModel):
    reason: str | None = None


class DecisionBody(BaseModel):
    decision: str
    note: str | None = None
