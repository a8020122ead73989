"""Normalization of raw payment-gateway webhook payloads.

Signature checks happen at the HTTP boundary. These functions only turn an
already-trusted payload into a :class:`GatewayEvent`, or ``None`` when the
event type is not one the order engine acts on.
"""

from datetime import datetime, timezone
from typing import Any, Callable

from storefront.integrations.errors import IntegrationBadGatewayError
from storefront.models.payment import GatewayEvent, GatewayEventKind

# Gateways report amounts in satang.
MINOR_UNITS = 100

OMISE_EVENT_KINDS = {
    "charge.complete": GatewayEventKind.CHARGE_SUCCEEDED,
    "charge.fail": GatewayEventKind.CHARGE_FAILED,
    "charge.expire": GatewayEventKind.CHARGE_EXPIRED,
    "refund.create": GatewayEventKind.REFUND_ISSUED,
}

STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": GatewayEventKind.CHARGE_SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventKind.CHARGE_FAILED,
    "payment_intent.canceled": GatewayEventKind.CHARGE_EXPIRED,
    "charge.refunded": GatewayEventKind.REFUND_ISSUED,
}

ChargeOrderResolver = Callable[[str], str | None]


def _minor_to_major(value: Any, provider: str) -> float:
    try:
        return round(int(value) / MINOR_UNITS, 2)
    except (TypeError, ValueError) as err:
        raise IntegrationBadGatewayError(provider, f"Invalid amount in webhook: {value!r}") from err


def _order_ref(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        return None
    ref = metadata.get("orderId") or metadata.get("order_ref")
    return str(ref).strip() if ref else None


def _occurred_at(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _event(
    kind: GatewayEventKind,
    provider: str,
    order_ref: str | None,
    *,
    amount: float,
    gateway_ref: str | None,
    charge_ref: str | None = None,
    failure_message: str | None = None,
    occurred_at: datetime | None = None,
) -> GatewayEvent | None:
    if not order_ref or not gateway_ref:
        return None
    fields: dict[str, Any] = {
        "kind": kind,
        "provider": provider,
        "order_ref": order_ref,
        "amount": amount,
        "gateway_ref": gateway_ref,
        "charge_ref": charge_ref,
        "failure_message": failure_message,
    }
    if occurred_at is not None:
        fields["occurred_at"] = occurred_at
    return GatewayEvent(**fields)


def normalize_omise_event(
    payload: dict[str, Any],
    *,
    resolve_charge_order: ChargeOrderResolver | None = None,
) -> GatewayEvent | None:
    kind = OMISE_EVENT_KINDS.get(str(payload.get("key") or ""))
    data = payload.get("data")
    if kind is None or not isinstance(data, dict):
        return None
    occurred_at = _occurred_at(payload.get("created_at") or payload.get("created"))

    if kind == GatewayEventKind.REFUND_ISSUED:
        charge = data.get("charge")
        charge_id = charge.get("id") if isinstance(charge, dict) else charge
        order_ref = _order_ref(data)
        if order_ref is None and isinstance(charge, dict):
            order_ref = _order_ref(charge)
        if order_ref is None and charge_id and resolve_charge_order is not None:
            order_ref = resolve_charge_order(str(charge_id))
        return _event(
            kind,
            "omise",
            order_ref,
            amount=_minor_to_major(data.get("amount"), "omise"),
            gateway_ref=data.get("id"),
            charge_ref=str(charge_id) if charge_id else None,
            occurred_at=occurred_at,
        )

    # charge.complete is sent for both outcomes of a 3-D Secure charge.
    if kind == GatewayEventKind.CHARGE_SUCCEEDED and data.get("status") == "failed":
        kind = GatewayEventKind.CHARGE_FAILED

    return _event(
        kind,
        "omise",
        _order_ref(data),
        amount=_minor_to_major(data.get("amount"), "omise"),
        gateway_ref=data.get("id"),
        failure_message=data.get("failure_message"),
        occurred_at=occurred_at,
    )


def normalize_stripe_event(payload: dict[str, Any]) -> GatewayEvent | None:
    kind = STRIPE_EVENT_KINDS.get(str(payload.get("type") or ""))
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if kind is None or not isinstance(obj, dict):
        return None
    occurred_at = _occurred_at(payload.get("created"))

    if kind == GatewayEventKind.REFUND_ISSUED:
        refunds = obj.get("refunds")
        refund_items = refunds.get("data") if isinstance(refunds, dict) else None
        amount_refunded = obj.get("amount_refunded") or 0
        if refund_items:
            gateway_ref = refund_items[0].get("id")
        else:
            gateway_ref = f"{obj.get('id')}:refund:{amount_refunded}"
        return _event(
            kind,
            "stripe",
            _order_ref(obj),
            amount=_minor_to_major(amount_refunded, "stripe"),
            gateway_ref=gateway_ref,
            charge_ref=obj.get("payment_intent") or obj.get("id"),
            occurred_at=occurred_at,
        )

    failure_message = None
    last_error = obj.get("last_payment_error")
    if isinstance(last_error, dict):
        failure_message = last_error.get("message")
    amount = obj.get("amount_received") if kind == GatewayEventKind.CHARGE_SUCCEEDED else obj.get("amount")
    return _event(
        kind,
        "stripe",
        _order_ref(obj),
        amount=_minor_to_major(amount or 0, "stripe"),
        gateway_ref=obj.get("id"),
        failure_message=failure_message,
        occurred_at=occurred_at,
    )
