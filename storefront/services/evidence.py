import hashlib
from datetime import datetime

from storefront.errors import EvidenceValidationError
from storefront.models.domain import PaymentEvidence
from storefront.models.payment import (
    Evidence,
    EvidenceKind,
    GatewayChargeEvidence,
    ReasonCode,
    SlipEvidence,
    VerificationOutcome,
)

MAX_SLIP_BYTES = 10 * 1024 * 1024
ALLOWED_SLIP_MIME_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/webp", "image/gif"}

REASON_MESSAGES: dict[ReasonCode, str] = {
    ReasonCode.ACCEPTED: "ชำระเงินสำเร็จ",
    ReasonCode.ALREADY_PAID: "คำสั่งซื้อนี้ได้รับการชำระเงินแล้ว",
    ReasonCode.AMOUNT_MISMATCH: "ยอดเงินในสลิปไม่ตรงกับยอดที่ต้องชำระ",
    ReasonCode.DUPLICATE_EVIDENCE: "สลิปนี้เคยใช้แล้ว ไม่สามารถใช้ซ้ำได้",
    ReasonCode.INVALID_QR: "QR นี้ไม่ใช่สลิปโอนเงิน กรุณาอัพโหลดสลิปจริง",
    ReasonCode.WRONG_RECEIVER: "บัญชีผู้รับไม่ตรงกับบัญชีร้านค้า",
    ReasonCode.SLIP_REJECTED: "ไม่สามารถตรวจสอบสลิปได้ กรุณาลองใหม่",
    ReasonCode.VERIFICATION_INCONCLUSIVE: "ไม่สามารถเชื่อมต่อระบบตรวจสอบสลิปได้ กรุณาลองใหม่",
    ReasonCode.INVALID_EVIDENCE: "กรุณาอัพโหลดรูปสลิปที่มี QR Code",
    ReasonCode.INVALID_AMOUNT: "ยอดชำระของคำสั่งซื้อไม่ถูกต้อง",
    ReasonCode.ORDER_NOT_PAYABLE: "คำสั่งซื้อนี้ไม่สามารถชำระเงินได้",
    ReasonCode.PAYMENT_DISABLED: "ระบบชำระเงินปิดให้บริการชั่วคราว กรุณารอการแจ้งเปิดจากแอดมิน",
}


def reason_message(
    code: ReasonCode,
    *,
    expected_amount: float | None = None,
    actual_amount: float | None = None,
) -> str:
    message = REASON_MESSAGES[code]
    if code == ReasonCode.AMOUNT_MISMATCH and expected_amount is not None and actual_amount is not None:
        message = f"{message} (ยอดที่ต้องชำระ ฿{expected_amount:,.2f} แต่สลิปมียอด ฿{actual_amount:,.2f})"
    return message


def validate_evidence(evidence: Evidence) -> None:
    if isinstance(evidence, SlipEvidence):
        if not evidence.content:
            raise EvidenceValidationError("Slip image is empty")
        if len(evidence.content) > MAX_SLIP_BYTES:
            raise EvidenceValidationError("Slip image exceeds 10MB")
        if evidence.mime.lower() not in ALLOWED_SLIP_MIME_TYPES:
            raise EvidenceValidationError(f"Unsupported slip type: {evidence.mime}")
        return
    if isinstance(evidence, GatewayChargeEvidence):
        if not evidence.provider.strip() or not evidence.charge_id.strip():
            raise EvidenceValidationError("Gateway charge requires provider and charge id")
        if evidence.amount <= 0:
            raise EvidenceValidationError("Gateway charge amount must be positive")
        return
    raise EvidenceValidationError(f"Unsupported evidence type: {type(evidence).__name__}")


def fingerprint_evidence(evidence: Evidence) -> str:
    if isinstance(evidence, SlipEvidence):
        return hashlib.sha256(evidence.content).hexdigest()
    raw = f"gateway:{evidence.provider.strip().lower()}:{evidence.charge_id.strip()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def summarize_outcome(
    evidence: Evidence,
    outcome: VerificationOutcome,
    *,
    fingerprint: str,
    accepted_by: str,
    accepted_at: datetime,
) -> PaymentEvidence:
    """Reduce an accepted verification to the record kept on the order."""
    if isinstance(evidence, GatewayChargeEvidence):
        return PaymentEvidence(
            kind=EvidenceKind.GATEWAY_CHARGE.value,
            fingerprint=fingerprint,
            amount=evidence.amount,
            amount_matched=outcome.amount_matched,
            raw_ref=outcome.raw_ref or evidence.charge_id,
            gateway=evidence.provider.strip().lower(),
            gateway_ref=evidence.charge_id,
            accepted_at=accepted_at,
            accepted_by=accepted_by,
        )

    details = outcome.raw_details
    return PaymentEvidence(
        kind=EvidenceKind.SLIP.value,
        fingerprint=fingerprint,
        amount=outcome.amount,
        verified=bool(details.get("verified", True)),
        amount_matched=outcome.amount_matched,
        raw_ref=outcome.raw_ref,
        trans_ref=details.get("trans_ref") or outcome.raw_ref,
        sender_name=details.get("sender_name"),
        receiver_name=details.get("receiver_name"),
        file_name=evidence.file_name,
        mime=evidence.mime,
        accepted_at=accepted_at,
        accepted_by=accepted_by,
    )
