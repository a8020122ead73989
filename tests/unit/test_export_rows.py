from datetime import timedelta

from storefront.models.domain import CartItem
from storefront.models.order import OrderStatus
from storefront.services.export_rows import EXPORT_HEADER, build_export_rows, describe_item
from tests.helpers import BASE_TIME


def test_describe_item_includes_customisation():
    item = CartItem(
        product_id="JERSEY",
        product_name="Jersey",
        size="L",
        quantity=2,
        unit_price=350,
        options={"customName": "SOMCHAI", "customNumber": "10", "isLongSleeve": True},
    )

    assert describe_item(item) == "Jersey (L) x2 ฿350 → ฿700 | Name:SOMCHAI | No:10 | LongSleeve"


def test_build_export_rows_sorts_by_creation_and_filters_status(make_order):
    orders = [
        make_order("ORD-2", 200, created_at=BASE_TIME + timedelta(hours=1), status=OrderStatus.PAID),
        make_order("ORD-1", 100, created_at=BASE_TIME, status=OrderStatus.PAID),
        make_order("ORD-3", 300, created_at=BASE_TIME, status=OrderStatus.CANCELLED),
    ]

    rows = build_export_rows(orders, statuses={OrderStatus.PAID})

    assert rows[0] == EXPORT_HEADER
    assert [row[0] for row in rows[1:]] == ["ORD-1", "ORD-2"]
    assert rows[1][5] == 100
    assert rows[1][6] == "PAID"
