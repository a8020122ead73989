from datetime import datetime

import pytest

from storefront.config import settings
from storefront.dependencies import build_container
from storefront.integrations.notifications import LoggingOrderExporter
from storefront.models.domain import CartItem, Order
from storefront.models.order import OrderStatus
from storefront.observability import metrics_store
from storefront.services.audit_log import InMemoryAuditLog
from storefront.storage.blob_store import InMemoryBlobStore
from tests.helpers import BASE_TIME, BUYER_EMAIL, RecordingNotifier, StubSlipVerifier


@pytest.fixture(scope="session", autouse=True)
def enable_testing_mode():
    original = settings.testing
    settings.testing = True
    yield
    settings.testing = original


@pytest.fixture(autouse=True)
def reset_metrics_store():
    metrics_store.reset()
    yield


@pytest.fixture
def slip_verifier():
    return StubSlipVerifier()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def container(slip_verifier, notifier, audit_log):
    return build_container(
        InMemoryBlobStore(),
        slip_verifier=slip_verifier,
        notifier=notifier,
        exporter=LoggingOrderExporter(),
        audit_log=audit_log,
    )


@pytest.fixture
def make_order():
    def factory(
        ref: str,
        total: float,
        *,
        status: OrderStatus = OrderStatus.WAITING_PAYMENT,
        email: str | None = BUYER_EMAIL,
        created_at: datetime = BASE_TIME,
        product_id: str = "SHIRT-1",
    ) -> Order:
        return Order(
            ref=ref,
            status=status,
            customer_email=email,
            customer_name="Somchai",
            cart=[
                CartItem(
                    product_id=product_id,
                    product_name="Team Shirt",
                    size="M",
                    quantity=1,
                    unit_price=total,
                )
            ],
            total_amount=total,
            created_at=created_at,
            updated_at=created_at,
        )

    return factory


@pytest.fixture
def seed(container):
    async def put(*orders: Order) -> None:
        for order in orders:
            await container.store.put(order.ref, order, expected_version=0)

    return put
