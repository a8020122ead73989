from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from storefront.models.order import OrderStatus


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid4()}"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


class CartItem(BaseModel):
    product_id: str = Field(min_length=1)
    product_name: str | None = None
    size: str | None = None
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def line_total(self) -> float:
        return round(self.unit_price * self.quantity, 2)


def compute_cart_total(cart: list[CartItem]) -> float:
    return round(sum(item.unit_price * item.quantity for item in cart), 2)


AMOUNT_TOLERANCE = 0.01


def amounts_match(actual: float, expected: float) -> bool:
    return abs(round(actual - expected, 2)) < AMOUNT_TOLERANCE


class PickupInfo(BaseModel):
    location: str | None = None
    notes: str | None = None
    start_date: str | None = None
    end_date: str | None = None


class TransitionMetadata(BaseModel):
    cancel_reason: str | None = None
    tracking_number: str | None = None
    shipping_provider: str | None = None
    pickup: PickupInfo | None = None
    note: str | None = None


class PaymentEvidence(BaseModel):
    kind: str
    fingerprint: str
    amount: float | None = None
    verified: bool = True
    amount_matched: bool = True
    raw_ref: str | None = None
    gateway: str | None = None
    gateway_ref: str | None = None
    trans_ref: str | None = None
    sender_name: str | None = None
    receiver_name: str | None = None
    file_name: str | None = None
    mime: str | None = None
    accepted_at: datetime
    accepted_by: str


class RefundRecord(BaseModel):
    amount: float
    gateway: str
    gateway_ref: str
    full: bool
    refunded_at: datetime


class Order(BaseModel):
    ref: str = Field(min_length=1)
    status: OrderStatus = OrderStatus.WAITING_PAYMENT

    customer_email: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None

    cart: list[CartItem] = Field(default_factory=list)
    total_amount: float = Field(default=0, ge=0)
    discount: float = Field(default=0, ge=0)
    paid_amount: float | None = None
    payment_evidence: PaymentEvidence | None = None

    tracking_number: str | None = None
    shipping_provider: str | None = None
    pickup: PickupInfo | None = None
    ready_at: datetime | None = None

    cancel_reason: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None

    refund: RefundRecord | None = None
    notes: str | None = None

    created_at: datetime
    updated_at: datetime

    # Store revision; never serialized into the record itself.
    version: int = Field(default=0, exclude=True)

    @field_validator("customer_email")
    @classmethod
    def strip_email(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return value.strip()

    @property
    def amount_due(self) -> float:
        return max(round(self.total_amount - self.discount, 2), 0.0)

    def contains_product(self, product_id: str) -> bool:
        return any(item.product_id == product_id for item in self.cart)


class OrderSummary(BaseModel):
    ref: str
    status: OrderStatus
    total_amount: float
    item_count: int
    customer_name: str | None = None
    tracking_number: str | None = None
    shipping_provider: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderSummary":
        return cls(
            ref=order.ref,
            status=order.status,
            total_amount=order.total_amount,
            item_count=sum(item.quantity for item in order.cart),
            customer_name=order.customer_name,
            tracking_number=order.tracking_number,
            shipping_provider=order.shipping_provider,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
