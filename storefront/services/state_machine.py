from storefront.errors import TransitionNotAllowedError
from storefront.models.order import PAID_OR_LATER, OrderStatus, TransitionTrigger

_REFUND_TARGETS: frozenset[OrderStatus] = frozenset(
    {OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED}
)

ORDER_STATE_TRANSITIONS: dict[TransitionTrigger, dict[OrderStatus, frozenset[OrderStatus]]] = {
    TransitionTrigger.PAYMENT_VERIFIED: {
        OrderStatus.WAITING_PAYMENT: frozenset({OrderStatus.PAID}),
    },
    TransitionTrigger.ADMIN: {
        OrderStatus.WAITING_PAYMENT: frozenset({OrderStatus.CANCELLED}),
        OrderStatus.PAID: frozenset(
            {
                OrderStatus.PROCESSING,
                OrderStatus.READY,
                OrderStatus.SHIPPED,
                OrderStatus.COMPLETED,
                OrderStatus.CANCELLED,
            }
        ),
        OrderStatus.PROCESSING: frozenset(
            {
                OrderStatus.READY,
                OrderStatus.SHIPPED,
                OrderStatus.COMPLETED,
                OrderStatus.CANCELLED,
            }
        ),
        OrderStatus.READY: frozenset(
            {OrderStatus.SHIPPED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}
        ),
        OrderStatus.SHIPPED: frozenset({OrderStatus.COMPLETED}),
    },
    TransitionTrigger.PICKUP_ENABLED: {
        OrderStatus.PAID: frozenset({OrderStatus.READY}),
    },
    TransitionTrigger.EXPIRY: {
        OrderStatus.WAITING_PAYMENT: frozenset({OrderStatus.CANCELLED}),
    },
    TransitionTrigger.GATEWAY_REFUND: {
        OrderStatus.PAID: _REFUND_TARGETS,
        OrderStatus.PROCESSING: _REFUND_TARGETS,
        OrderStatus.READY: _REFUND_TARGETS,
        OrderStatus.SHIPPED: _REFUND_TARGETS,
        OrderStatus.COMPLETED: _REFUND_TARGETS,
        # Money movement outranks a manual cancellation that raced it.
        OrderStatus.CANCELLED: _REFUND_TARGETS,
    },
}


def allowed_targets(
    current: OrderStatus,
    trigger: TransitionTrigger,
    *,
    has_payment_evidence: bool = False,
) -> frozenset[OrderStatus]:
    if (
        trigger == TransitionTrigger.GATEWAY_REFUND
        and current == OrderStatus.CANCELLED
        and not has_payment_evidence
    ):
        return frozenset()
    return ORDER_STATE_TRANSITIONS.get(trigger, {}).get(current, frozenset())


def is_valid_transition(
    current: OrderStatus,
    next_status: OrderStatus,
    trigger: TransitionTrigger,
    *,
    has_payment_evidence: bool = False,
) -> bool:
    if next_status == current:
        return True
    return next_status in allowed_targets(
        current, trigger, has_payment_evidence=has_payment_evidence
    )


def ensure_valid_transition(
    current: OrderStatus,
    next_status: OrderStatus,
    trigger: TransitionTrigger,
    *,
    has_payment_evidence: bool = False,
) -> None:
    if not is_valid_transition(
        current, next_status, trigger, has_payment_evidence=has_payment_evidence
    ):
        raise TransitionNotAllowedError(current.value, next_status.value, trigger.value)


def is_paid_or_later(status: OrderStatus) -> bool:
    return status in PAID_OR_LATER
