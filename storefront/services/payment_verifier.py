import asyncio
import logging

from storefront.integrations.errors import IntegrationError
from storefront.integrations.slip_verifier_client import SlipVerifier
from storefront.models.domain import amounts_match
from storefront.models.payment import (
    Evidence,
    GatewayChargeEvidence,
    ReasonCode,
    VerificationOutcome,
)
from storefront.observability import log_event, metrics_store, observe_timing


def _inconclusive(detail: str) -> VerificationOutcome:
    return VerificationOutcome(
        accepted=False,
        amount_matched=False,
        reason_code=ReasonCode.VERIFICATION_INCONCLUSIVE,
        raw_details={"error": detail},
    )


class PaymentVerifierAdapter:
    """Single verification entry point for slips and gateway charges.

    A gateway charge has already been settled by the gateway, so only the
    amount is checked. Slips go to the external verifier under a timeout;
    any timeout or integration failure is reported as inconclusive and the
    order stays untouched.
    """

    def __init__(self, slip_verifier: SlipVerifier, *, timeout_s: float) -> None:
        self.slip_verifier = slip_verifier
        self.timeout_s = timeout_s

    async def verify(self, evidence: Evidence, expected_amount: float) -> VerificationOutcome:
        if isinstance(evidence, GatewayChargeEvidence):
            matched = amounts_match(evidence.amount, expected_amount)
            return VerificationOutcome(
                accepted=matched,
                amount_matched=matched,
                reason_code=None if matched else ReasonCode.AMOUNT_MISMATCH,
                raw_ref=evidence.charge_id,
                amount=evidence.amount,
            )

        try:
            with observe_timing("slip_verification_s"):
                outcome = await asyncio.wait_for(
                    self.slip_verifier.verify_slip(evidence.content, expected_amount),
                    timeout=self.timeout_s,
                )
        except asyncio.TimeoutError:
            metrics_store.increment("slip_verification_inconclusive_total", cause="timeout")
            log_event("slip_verification_timeout", level=logging.WARNING, timeout_s=self.timeout_s)
            return _inconclusive("timeout")
        except IntegrationError as err:
            metrics_store.increment("slip_verification_inconclusive_total", cause=err.code)
            log_event("slip_verification_failed", level=logging.WARNING, **err.log_fields())
            return _inconclusive(str(err))

        # The vendor amount check is optional on their side; enforce it here.
        amount_differs = outcome.amount is not None and not amounts_match(outcome.amount, expected_amount)
        if outcome.accepted and (amount_differs or not outcome.amount_matched):
            return outcome.model_copy(
                update={
                    "accepted": False,
                    "amount_matched": False,
                    "reason_code": ReasonCode.AMOUNT_MISMATCH,
                }
            )
        return outcome
