from typing import Any

from storefront.models.domain import CartItem, Order
from storefront.models.order import OrderStatus

EXPORT_HEADER = [
    "ref",
    "created_at",
    "customer_name",
    "customer_email",
    "customer_phone",
    "total_amount",
    "status",
    "customer_address",
    "items",
    "notes",
    "slip_ref",
    "paid_at",
    "tracking_number",
]


def describe_item(item: CartItem) -> str:
    name = item.product_name or item.product_id
    parts = [f"{name} ({item.size or '-'}) x{item.quantity} ฿{item.unit_price:,.0f} → ฿{item.line_total:,.0f}"]
    custom_name = item.options.get("customName")
    custom_number = item.options.get("customNumber")
    if custom_name:
        parts.append(f"Name:{custom_name}")
    if custom_number:
        parts.append(f"No:{custom_number}")
    if item.options.get("isLongSleeve"):
        parts.append("LongSleeve")
    return " | ".join(parts)


def build_export_rows(orders: list[Order], *, statuses: set[OrderStatus] | None = None) -> list[list[Any]]:
    rows: list[list[Any]] = [list(EXPORT_HEADER)]
    selected = [order for order in orders if statuses is None or order.status in statuses]
    for order in sorted(selected, key=lambda order: (order.created_at, order.ref)):
        evidence = order.payment_evidence
        rows.append(
            [
                order.ref,
                order.created_at.isoformat(),
                order.customer_name or "",
                order.customer_email or "",
                order.customer_phone or "",
                order.amount_due,
                order.status.value,
                order.customer_address or "",
                "; ".join(describe_item(item) for item in order.cart),
                order.notes or "",
                (evidence.trans_ref or evidence.raw_ref or "") if evidence else "",
                evidence.accepted_at.isoformat() if evidence else "",
                order.tracking_number or "",
            ]
        )
    return rows
