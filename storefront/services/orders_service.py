import secrets
import string
from datetime import datetime

from storefront.errors import CartValidationError, DuplicateOrderError, PermissionDeniedError
from storefront.models.audit import Actor, ActorKind
from storefront.models.domain import Order, OrderSummary, compute_cart_total, normalize_email, now_utc
from storefront.models.order import TERMINAL_STATUSES, OrderStatus
from storefront.schemas.order import CartUpdate, ContactUpdate, OrderCreate
from storefront.services.permissions import AdminPermission
from storefront.services.reconciliation_engine import ReconciliationEngine
from storefront.storage.customer_index import customer_key

_REF_ALPHABET = string.ascii_uppercase + string.digits
REF_PREFIX = "ORD-"
MAX_REF_ATTEMPTS = 5


def _generate_ref(length: int = 10) -> str:
    return REF_PREFIX + "".join(secrets.choice(_REF_ALPHABET) for _ in range(length))


def _ensure_owner(order: Order, actor: Actor) -> None:
    if normalize_email(order.customer_email) != normalize_email(actor.id):
        raise PermissionDeniedError(actor.label, f"order:{order.ref}")


async def create_order(
    engine: ReconciliationEngine,
    payload: OrderCreate,
    *,
    actor: Actor,
    now: datetime | None = None,
) -> Order:
    total = compute_cart_total(payload.cart)
    if payload.discount > total:
        raise CartValidationError("Discount exceeds cart total")

    created_at = now or now_utc()

    def build(ref: str) -> Order:
        return Order(
            ref=ref,
            status=OrderStatus.WAITING_PAYMENT,
            customer_email=payload.customer_email,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            customer_address=payload.customer_address,
            cart=payload.cart,
            total_amount=total,
            discount=payload.discount,
            notes=payload.notes,
            created_at=created_at,
            updated_at=created_at,
        )

    if payload.ref:
        return await engine.create_order(build(payload.ref), actor=actor)

    # Generated refs rely on the create-only write to detect a collision.
    for attempt in range(MAX_REF_ATTEMPTS):
        try:
            return await engine.create_order(build(_generate_ref()), actor=actor, fresh_ref=True)
        except DuplicateOrderError:
            if attempt + 1 >= MAX_REF_ATTEMPTS:
                raise
    raise RuntimeError("order ref generation loop exhausted unexpectedly")


async def get_order(engine: ReconciliationEngine, ref: str) -> Order:
    return await engine.load_order(ref)


async def list_orders(engine: ReconciliationEngine, status: OrderStatus | None = None) -> list[Order]:
    orders = await engine.store.list()
    if status is not None:
        orders = [order for order in orders if order.status == status]
    return sorted(orders, key=lambda order: order.created_at, reverse=True)


async def list_customer_orders(engine: ReconciliationEngine, email: str) -> list[OrderSummary]:
    key = customer_key(email)
    if key is None:
        return []
    return await engine.index.get(key)


async def update_contact(
    engine: ReconciliationEngine,
    ref: str,
    payload: ContactUpdate,
    *,
    actor: Actor,
) -> Order:
    if actor.kind == ActorKind.ADMIN:
        engine.permissions.require(actor, AdminPermission.MANAGE_ORDERS)
    changes = payload.model_dump(exclude_unset=True)

    def apply(order: Order) -> Order:
        if actor.kind == ActorKind.CUSTOMER:
            _ensure_owner(order, actor)
        return order.model_copy(update=changes)

    return await engine.mutate_order(ref, apply, actor=actor, action="contact_updated")


async def edit_cart(
    engine: ReconciliationEngine,
    ref: str,
    payload: CartUpdate,
    *,
    actor: Actor,
) -> Order:
    """Replace the cart and recompute the total.

    Customers may only edit their own order while it waits for payment.
    Admins may edit any order that has not reached a terminal status.
    """
    if actor.kind == ActorKind.ADMIN:
        engine.permissions.require(actor, AdminPermission.MANAGE_ORDERS)
    elif actor.kind != ActorKind.CUSTOMER:
        raise PermissionDeniedError(actor.label, "edit_cart")

    total = compute_cart_total(payload.cart)

    def apply(order: Order) -> Order:
        if actor.kind == ActorKind.CUSTOMER:
            _ensure_owner(order, actor)
            if order.status != OrderStatus.WAITING_PAYMENT:
                raise CartValidationError("Cart can only be changed while waiting for payment")
        elif order.status in TERMINAL_STATUSES:
            raise CartValidationError(f"Cart cannot be changed in status {order.status.value}")

        discount = order.discount if payload.discount is None else payload.discount
        if discount > total:
            raise CartValidationError("Discount exceeds cart total")
        return order.model_copy(update={"cart": payload.cart, "total_amount": total, "discount": discount})

    return await engine.mutate_order(ref, apply, actor=actor, action="cart_updated")


async def delete_order(engine: ReconciliationEngine, ref: str, *, actor: Actor) -> None:
    await engine.delete_order(ref, actor=actor)
