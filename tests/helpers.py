import asyncio
from datetime import datetime, timezone

from storefront.models.domain import amounts_match
from storefront.models.order import OrderStatus
from storefront.models.payment import ReasonCode, VerificationOutcome

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
BUYER_EMAIL = "buyer@example.com"
ADMIN_EMAIL = "ops@storefront.local"


class StubSlipVerifier:
    """Reports the slip amount registered for the given bytes, or the expected amount."""

    def __init__(self, delay_s: float = 0.0) -> None:
        self.delay_s = delay_s
        self.amounts: dict[bytes, float] = {}
        self.calls: list[tuple[bytes, float]] = []

    async def verify_slip(self, evidence_bytes: bytes, expected_amount: float) -> VerificationOutcome:
        self.calls.append((evidence_bytes, expected_amount))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        amount = self.amounts.get(evidence_bytes, expected_amount)
        matched = amounts_match(amount, expected_amount)
        return VerificationOutcome(
            accepted=matched,
            amount_matched=matched,
            reason_code=None if matched else ReasonCode.AMOUNT_MISMATCH,
            raw_ref=f"TX-{len(self.calls)}",
            amount=amount,
            raw_details={"trans_ref": f"TX-{len(self.calls)}", "sender_name": "Buyer"},
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, OrderStatus]] = []

    async def notify(self, order, new_status, context) -> None:
        self.sent.append((order.ref, new_status))
