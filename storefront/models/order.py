import enum


class OrderStatus(str, enum.Enum):
    WAITING_PAYMENT = "WAITING_PAYMENT"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    READY = "READY"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class TransitionTrigger(str, enum.Enum):
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
    ADMIN = "ADMIN"
    PICKUP_ENABLED = "PICKUP_ENABLED"
    EXPIRY = "EXPIRY"
    GATEWAY_REFUND = "GATEWAY_REFUND"


# Statuses that mean money has been accepted for the order.
PAID_OR_LATER: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.PAID,
        OrderStatus.PROCESSING,
        OrderStatus.READY,
        OrderStatus.SHIPPED,
        OrderStatus.COMPLETED,
        OrderStatus.REFUNDED,
        OrderStatus.PARTIALLY_REFUNDED,
    }
)

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
        OrderStatus.PARTIALLY_REFUNDED,
    }
)
