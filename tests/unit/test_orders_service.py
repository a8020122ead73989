import asyncio
from datetime import timedelta

import pytest

from storefront.dependencies import build_container
from storefront.errors import CartValidationError, DuplicateOrderError, OrderNotFoundError
from storefront.integrations.notifications import LoggingOrderExporter
from storefront.models.audit import Actor
from storefront.models.domain import CartItem
from storefront.models.order import OrderStatus
from storefront.schemas.order import OrderCreate
from storefront.services import orders_service
from storefront.storage.blob_store import InMemoryBlobStore
from tests.helpers import BASE_TIME, BUYER_EMAIL


def _payload(**overrides) -> OrderCreate:
    values = {
        "customer_email": f"  {BUYER_EMAIL}  ",
        "customer_name": "Somchai",
        "cart": [CartItem(product_id="SHIRT-1", quantity=2, unit_price=170)],
    }
    values.update(overrides)
    return OrderCreate(**values)


def test_create_order_generates_ref_and_computes_total(container):
    order = asyncio.run(
        orders_service.create_order(container.engine, _payload(discount=40), actor=Actor.customer(BUYER_EMAIL))
    )

    assert order.ref.startswith(orders_service.REF_PREFIX)
    assert len(order.ref) == len(orders_service.REF_PREFIX) + 10
    assert order.status == OrderStatus.WAITING_PAYMENT
    assert order.customer_email == BUYER_EMAIL
    assert order.total_amount == 340
    assert order.amount_due == 300


def test_create_order_rejects_discount_above_total(container):
    with pytest.raises(CartValidationError):
        asyncio.run(orders_service.create_order(container.engine, _payload(discount=500), actor=Actor.system()))


def test_get_order_raises_for_unknown_ref(container):
    with pytest.raises(OrderNotFoundError):
        asyncio.run(orders_service.get_order(container.engine, "ORD-MISSING"))


def test_list_orders_filters_by_status_newest_first(container, make_order, seed):
    asyncio.run(
        seed(
            make_order("ORD-A", 100, created_at=BASE_TIME),
            make_order("ORD-B", 100, created_at=BASE_TIME + timedelta(hours=1)),
            make_order("ORD-C", 100, status=OrderStatus.PAID),
        )
    )

    waiting = asyncio.run(orders_service.list_orders(container.engine, OrderStatus.WAITING_PAYMENT))
    everything = asyncio.run(orders_service.list_orders(container.engine))

    assert [order.ref for order in waiting] == ["ORD-B", "ORD-A"]
    assert len(everything) == 3


def test_list_customer_orders_without_email_is_empty(container):
    assert asyncio.run(orders_service.list_customer_orders(container.engine, "  ")) == []


class _ScanCountingBlobStore(InMemoryBlobStore):
    def __init__(self) -> None:
        super().__init__()
        self.scans = 0

    async def list_keys(self, prefix: str) -> list[str]:
        self.scans += 1
        return await super().list_keys(prefix)


def test_generated_refs_are_created_without_scanning_the_store(slip_verifier, notifier, audit_log):
    blobs = _ScanCountingBlobStore()
    container = build_container(
        blobs,
        slip_verifier=slip_verifier,
        notifier=notifier,
        exporter=LoggingOrderExporter(),
        audit_log=audit_log,
    )

    async def scenario():
        return [
            await orders_service.create_order(container.engine, _payload(), actor=Actor.system()) for _ in range(3)
        ]

    orders = asyncio.run(scenario())

    assert len({order.ref for order in orders}) == 3
    assert blobs.scans == 0


def test_caller_ref_is_unique_across_month_partitions(container, make_order, seed):
    asyncio.run(seed(make_order("ORD-MONTH", 100, created_at=BASE_TIME)))

    with pytest.raises(DuplicateOrderError):
        asyncio.run(
            orders_service.create_order(
                container.engine,
                _payload(ref="ORD-MONTH"),
                actor=Actor.system(),
                now=BASE_TIME + timedelta(days=45),
            )
        )
