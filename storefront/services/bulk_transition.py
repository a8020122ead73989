import logging
from dataclasses import dataclass, field
from typing import Callable

from storefront.models.audit import Actor
from storefront.models.domain import Order, PickupInfo, TransitionMetadata
from storefront.models.order import OrderStatus, TransitionTrigger
from storefront.observability import log_event
from storefront.services.concurrency import gather_bounded
from storefront.services.permissions import AdminPermission
from storefront.services.reconciliation_engine import ReconciliationEngine

OrderPredicate = Callable[[Order], bool]


@dataclass
class BulkError:
    ref: str
    error: str


@dataclass
class BulkResult:
    matched: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[BulkError] = field(default_factory=list)
    updated_refs: list[str] = field(default_factory=list)


class BulkTransitionExecutor:
    def __init__(self, engine: ReconciliationEngine, *, concurrency: int = 8) -> None:
        self.engine = engine
        self.concurrency = concurrency

    async def run_bulk_transition(
        self,
        predicate: OrderPredicate,
        new_status: OrderStatus,
        metadata: TransitionMetadata | None = None,
        *,
        actor: Actor,
        trigger: TransitionTrigger = TransitionTrigger.ADMIN,
    ) -> BulkResult:
        """Apply one transition to every order matching ``predicate``.

        The predicate is re-checked on each order's fresh record inside its
        lock, so an order that changed after the scan is skipped rather
        than overwritten. One failing order never aborts the batch.
        """
        if trigger == TransitionTrigger.ADMIN:
            self.engine.permissions.require(actor, AdminPermission.MANAGE_ORDERS)

        matched = [order for order in await self.engine.store.list() if predicate(order)]
        results = await gather_bounded(
            matched,
            lambda order: self.engine.apply_transition(
                order.ref,
                new_status,
                actor=actor,
                trigger=trigger,
                metadata=metadata,
                guard=predicate,
            ),
            self.concurrency,
        )

        result = BulkResult(matched=len(matched))
        for order, outcome in zip(matched, results):
            if isinstance(outcome, BaseException):
                result.errors.append(BulkError(ref=order.ref, error=str(outcome)))
                continue
            if outcome.applied:
                result.updated += 1
                result.updated_refs.append(order.ref)
            else:
                result.skipped += 1

        log_event(
            "bulk_transition_completed",
            level=logging.WARNING if result.errors else logging.INFO,
            actor=actor.label,
            to_status=new_status.value,
            trigger=trigger.value,
            matched=result.matched,
            updated=result.updated,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def enable_pickup(self, product_id: str, pickup: PickupInfo, *, actor: Actor) -> BulkResult:
        self.engine.permissions.require(actor, AdminPermission.MANAGE_PICKUP)

        def paid_with_product(order: Order) -> bool:
            return order.status == OrderStatus.PAID and order.contains_product(product_id)

        return await self.run_bulk_transition(
            paid_with_product,
            OrderStatus.READY,
            TransitionMetadata(pickup=pickup, note=f"Pickup enabled for product: {product_id}"),
            actor=actor,
            trigger=TransitionTrigger.PICKUP_ENABLED,
        )
