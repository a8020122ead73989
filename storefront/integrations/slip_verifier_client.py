import asyncio
import base64
from typing import Any, Protocol

import httpx

from storefront.config import settings
from storefront.integrations.errors import (
    SLIP_VERIFIER,
    IntegrationBadGatewayError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
)
from storefront.models.domain import amounts_match
from storefront.models.payment import ReasonCode, VerificationOutcome

SERVICE = SLIP_VERIFIER

# Vendor error codes that map onto our own rejection reasons.
VENDOR_REASON_CODES: dict[int, ReasonCode] = {
    1000: ReasonCode.INVALID_QR,
    1006: ReasonCode.INVALID_QR,
    1007: ReasonCode.INVALID_QR,
    1008: ReasonCode.INVALID_QR,
    1010: ReasonCode.VERIFICATION_INCONCLUSIVE,
    1012: ReasonCode.DUPLICATE_EVIDENCE,
    1013: ReasonCode.AMOUNT_MISMATCH,
    1014: ReasonCode.WRONG_RECEIVER,
}
INVALID_CREDENTIALS_CODE = 1002


class SlipVerifier(Protocol):
    async def verify_slip(self, evidence_bytes: bytes, expected_amount: float) -> VerificationOutcome: ...


def _party_name(party: Any) -> str | None:
    if not isinstance(party, dict):
        return None
    account = party.get("account")
    if isinstance(account, dict):
        name = account.get("name")
        if isinstance(name, dict):
            return name.get("th") or name.get("en")
    return party.get("displayName") or party.get("name")


def _slip_details(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "trans_ref": data.get("transRef"),
        "trans_date": data.get("transDate"),
        "trans_time": data.get("transTime"),
        "sender_name": _party_name(data.get("sender")),
        "receiver_name": _party_name(data.get("receiver")),
    }


def _parse_amount(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def outcome_from_response(status_code: int, body: dict[str, Any], expected_amount: float) -> VerificationOutcome:
    data = body.get("data")
    if not isinstance(data, dict):
        data = {}
    amount = _parse_amount(data.get("amount"))

    if 200 <= status_code < 300 and body.get("success") and data.get("success"):
        if amount is None:
            raise IntegrationBadGatewayError(SERVICE, "Slip verifier response is missing amount")
        matched = amounts_match(amount, expected_amount)
        return VerificationOutcome(
            accepted=matched,
            amount_matched=matched,
            reason_code=None if matched else ReasonCode.AMOUNT_MISMATCH,
            raw_ref=data.get("transRef"),
            amount=amount,
            raw_details=_slip_details(data),
        )

    try:
        code = int(body.get("code") or 0)
    except (TypeError, ValueError):
        code = 0
    if code == INVALID_CREDENTIALS_CODE:
        raise IntegrationBadGatewayError(SERVICE, "Slip verifier rejected the configured API key")

    reason = VENDOR_REASON_CODES.get(code, ReasonCode.SLIP_REJECTED)
    amount_matched = reason != ReasonCode.AMOUNT_MISMATCH and (
        amount is not None and amounts_match(amount, expected_amount)
    )
    return VerificationOutcome(
        accepted=False,
        amount_matched=amount_matched,
        reason_code=reason,
        raw_ref=data.get("transRef"),
        amount=amount,
        raw_details={
            "vendor_code": code,
            "vendor_message": body.get("message"),
            **_slip_details(data),
        },
    )


class SlipVerifierClient:
    def __init__(
        self,
        base_url: str,
        branch_id: str,
        api_key: str,
        timeout_s: float,
        max_retries: int,
        backoff_s: float,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.branch_id = branch_id
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    async def verify_slip(self, evidence_bytes: bytes, expected_amount: float) -> VerificationOutcome:
        if not (self.base_url and self.branch_id and self.api_key):
            raise IntegrationUnavailableError(SERVICE, "Slip verifier credentials are not configured")

        payload: dict[str, Any] = {
            "files": base64.b64encode(evidence_bytes).decode("ascii"),
            "log": True,
        }
        if expected_amount > 0:
            payload["amount"] = expected_amount
        url = f"{self.base_url}/api/line/apikey/{self.branch_id}"

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                timeout = httpx.Timeout(
                    connect=self.timeout_s,
                    read=self.timeout_s,
                    write=self.timeout_s,
                    pool=self.timeout_s,
                )
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(
                        url,
                        json=payload,
                        headers={"x-authorization": self.api_key},
                    )

                if response.status_code >= 500:
                    raise IntegrationUnavailableError(SERVICE, "Slip verifier returned 5xx")

                try:
                    body = response.json()
                except ValueError as err:
                    raise IntegrationBadGatewayError(SERVICE, "Slip verifier returned non-JSON body") from err
                if not isinstance(body, dict):
                    raise IntegrationBadGatewayError(SERVICE, "Slip verifier returned malformed payload")
                return outcome_from_response(response.status_code, body, expected_amount)
            except httpx.TimeoutException:
                integration_error = IntegrationTimeoutError(SERVICE)
            except httpx.TransportError as err:
                integration_error = IntegrationUnavailableError(SERVICE, str(err))
            except IntegrationUnavailableError as err:
                integration_error = err

            if attempt >= self.max_retries:
                raise integration_error

            await asyncio.sleep(self.backoff_s * (2**attempt))

        raise IntegrationUnavailableError(SERVICE)


class UnverifiedSlipVerifier:
    """Accepts every slip for the expected amount. Only usable when testing."""

    async def verify_slip(self, evidence_bytes: bytes, expected_amount: float) -> VerificationOutcome:
        return VerificationOutcome(
            accepted=True,
            amount_matched=True,
            amount=expected_amount,
            raw_details={"verified": False},
        )


def get_slip_verifier() -> SlipVerifier:
    if settings.allow_unverified_slips and not (
        settings.slip_verifier_branch_id and settings.slip_verifier_api_key
    ):
        return UnverifiedSlipVerifier()
    return SlipVerifierClient(
        settings.slip_verifier_base_url,
        branch_id=settings.slip_verifier_branch_id,
        api_key=settings.slip_verifier_api_key,
        timeout_s=settings.slip_verifier_timeout_s,
        max_retries=settings.slip_verifier_max_retries,
        backoff_s=settings.slip_verifier_backoff_s,
    )
