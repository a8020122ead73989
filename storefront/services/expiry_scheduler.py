import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from storefront.errors import OrderError
from storefront.integrations.errors import IntegrationError
from storefront.models.audit import Actor
from storefront.models.domain import Order, TransitionMetadata
from storefront.models.order import OrderStatus, TransitionTrigger
from storefront.observability import log_event, metrics_store, observe_timing
from storefront.services.concurrency import gather_bounded
from storefront.services.reconciliation_engine import ReconciliationEngine, TransitionOutcome
from storefront.storage.order_store import ORDERS_PREFIX

AUTO_CANCEL_REASON = "ยกเลิกอัตโนมัติ: ไม่ได้ชำระเงินภายใน 24 ชั่วโมง"


@dataclass
class SweepError:
    ref: str
    error: str


@dataclass
class SweepSummary:
    checked: int = 0
    cancelled: int = 0
    errors: list[SweepError] = field(default_factory=list)
    cancelled_refs: list[str] = field(default_factory=list)
    listing_error: str | None = None

    @property
    def error_count(self) -> int:
        return len(self.errors) + (1 if self.listing_error else 0)


class ExpiryScheduler:
    """Cancels orders left in WAITING_PAYMENT past the expiry window."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        *,
        expiry_window: timedelta = timedelta(hours=24),
        concurrency: int = 8,
    ) -> None:
        self.engine = engine
        self.expiry_window = expiry_window
        self.concurrency = concurrency

    def is_expired(self, order: Order, now: datetime) -> bool:
        return order.status == OrderStatus.WAITING_PAYMENT and now >= order.created_at + self.expiry_window

    async def expire_order(self, ref: str, now: datetime) -> TransitionOutcome:
        return await self.engine.apply_transition(
            ref,
            OrderStatus.CANCELLED,
            actor=Actor.system(),
            trigger=TransitionTrigger.EXPIRY,
            metadata=TransitionMetadata(cancel_reason=AUTO_CANCEL_REASON),
            guard=lambda order: self.is_expired(order, now),
        )

    async def run_expiry_sweep(self, now: datetime | None = None) -> SweepSummary:
        now = now or self.engine.clock()
        summary = SweepSummary()
        try:
            orders = await self.engine.store.list(ORDERS_PREFIX)
        except (IntegrationError, OrderError) as err:
            summary.listing_error = str(err)
            metrics_store.increment("expiry_sweep_failed_total")
            log_event("expiry_sweep_listing_failed", level=logging.ERROR, error=str(err))
            return summary

        summary.checked = len(orders)
        candidates = [order for order in orders if self.is_expired(order, now)]
        with observe_timing("expiry_sweep_s"):
            results = await gather_bounded(
                candidates,
                lambda order: self.expire_order(order.ref, now),
                self.concurrency,
            )

        for order, result in zip(candidates, results):
            if isinstance(result, BaseException):
                summary.errors.append(SweepError(ref=order.ref, error=str(result)))
                log_event(
                    "expiry_cancel_failed",
                    level=logging.WARNING,
                    order_ref=order.ref,
                    error=str(result),
                )
                continue
            if result.applied:
                summary.cancelled += 1
                summary.cancelled_refs.append(order.ref)

        metrics_store.increment("orders_expired_total", summary.cancelled)
        log_event(
            "expiry_sweep_completed",
            checked=summary.checked,
            cancelled=summary.cancelled,
            errors=len(summary.errors),
        )
        return summary

    async def run_forever(self, interval_s: float, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.run_expiry_sweep()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue
