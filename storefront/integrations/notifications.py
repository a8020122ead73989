import logging
from typing import Any, Protocol

from storefront.models.domain import Order
from storefront.models.order import OrderStatus
from storefront.observability import log_event

STATUS_SUBJECTS: dict[OrderStatus, str] = {
    OrderStatus.WAITING_PAYMENT: "ได้รับคำสั่งซื้อแล้ว รอชำระเงิน",
    OrderStatus.PAID: "ได้รับการชำระเงินแล้ว",
    OrderStatus.PROCESSING: "กำลังเตรียมสินค้า",
    OrderStatus.READY: "สินค้าพร้อมรับแล้ว",
    OrderStatus.SHIPPED: "จัดส่งสินค้าแล้ว",
    OrderStatus.COMPLETED: "คำสั่งซื้อเสร็จสมบูรณ์",
    OrderStatus.CANCELLED: "คำสั่งซื้อถูกยกเลิก",
    OrderStatus.REFUNDED: "คืนเงินเรียบร้อยแล้ว",
    OrderStatus.PARTIALLY_REFUNDED: "คืนเงินบางส่วนเรียบร้อยแล้ว",
}


def notification_subject(order: Order, status: OrderStatus) -> str:
    return f"[{order.ref}] {STATUS_SUBJECTS.get(status, status.value)}"


class NotificationSink(Protocol):
    async def notify(self, order: Order, new_status: OrderStatus, context: dict[str, Any]) -> None: ...


class OrderExporter(Protocol):
    async def export(self, rows: list[list[Any]]) -> None: ...


class LoggingNotificationSink:
    """Writes customer notifications to the structured log."""

    def __init__(self) -> None:
        self.sent = 0

    async def notify(self, order: Order, new_status: OrderStatus, context: dict[str, Any]) -> None:
        if not order.customer_email:
            log_event(
                "notification_skipped_no_recipient",
                level=logging.WARNING,
                order_ref=order.ref,
                status=new_status.value,
            )
            return
        self.sent += 1
        log_event(
            "notification_dispatched",
            order_ref=order.ref,
            recipient=order.customer_email,
            subject=notification_subject(order, new_status),
            status=new_status.value,
            context=context,
        )


class LoggingOrderExporter:
    def __init__(self) -> None:
        self.last_rows: list[list[Any]] = []

    async def export(self, rows: list[list[Any]]) -> None:
        self.last_rows = rows
        log_event("order_export_written", rows=max(len(rows) - 1, 0))
