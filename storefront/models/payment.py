import enum
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, Field

from storefront.models.domain import Order, now_utc


class ReasonCode(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    ALREADY_PAID = "ALREADY_PAID"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    DUPLICATE_EVIDENCE = "DUPLICATE_EVIDENCE"
    INVALID_QR = "INVALID_QR"
    WRONG_RECEIVER = "WRONG_RECEIVER"
    SLIP_REJECTED = "SLIP_REJECTED"
    VERIFICATION_INCONCLUSIVE = "VERIFICATION_INCONCLUSIVE"
    INVALID_EVIDENCE = "INVALID_EVIDENCE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    ORDER_NOT_PAYABLE = "ORDER_NOT_PAYABLE"
    PAYMENT_DISABLED = "PAYMENT_DISABLED"


class EvidenceKind(str, enum.Enum):
    SLIP = "SLIP"
    GATEWAY_CHARGE = "GATEWAY_CHARGE"


class SlipEvidence(BaseModel):
    content: bytes
    mime: str = "image/png"
    file_name: str | None = None


class GatewayChargeEvidence(BaseModel):
    provider: str
    charge_id: str
    amount: float


Evidence = Union[SlipEvidence, GatewayChargeEvidence]


class VerificationOutcome(BaseModel):
    accepted: bool
    amount_matched: bool
    reason_code: ReasonCode | None = None
    raw_ref: str | None = None
    amount: float | None = None
    raw_details: dict[str, Any] = Field(default_factory=dict)


class GatewayEventKind(str, enum.Enum):
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    CHARGE_EXPIRED = "charge_expired"
    REFUND_ISSUED = "refund_issued"


class GatewayEvent(BaseModel):
    kind: GatewayEventKind
    provider: str
    order_ref: str
    amount: float = Field(ge=0)
    gateway_ref: str
    charge_ref: str | None = None
    failure_message: str | None = None
    occurred_at: datetime = Field(default_factory=now_utc)


class PaymentResult(BaseModel):
    accepted: bool
    reason_code: ReasonCode
    message: str
    order_ref: str
    already_paid: bool = False
    order: Order | None = None
