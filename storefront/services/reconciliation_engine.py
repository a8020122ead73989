"""Order lifecycle and payment reconciliation.

The engine is the only writer of order status and payment fields. Every
write follows the same path: take the per-order lock, re-read the record,
validate against the transition table, compare-and-set on the stored
version, then refresh the customer index, record the audit event and hand
notifications and exports to the side-effect dispatcher.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from storefront.errors import (
    CartValidationError,
    DuplicateOrderError,
    EvidenceValidationError,
    OrderNotFoundError,
    TransitionNotAllowedError,
    VersionConflictError,
)
from storefront.integrations.errors import IntegrationError
from storefront.integrations.notifications import NotificationSink
from storefront.models.audit import Actor, ActorKind, AuditEvent
from storefront.models.domain import (
    Order,
    OrderSummary,
    RefundRecord,
    TransitionMetadata,
    amounts_match,
    compute_cart_total,
    now_utc,
)
from storefront.models.order import OrderStatus, TransitionTrigger
from storefront.models.payment import (
    Evidence,
    GatewayChargeEvidence,
    GatewayEvent,
    GatewayEventKind,
    PaymentResult,
    ReasonCode,
)
from storefront.observability import log_event, metrics_store
from storefront.services.audit_log import AuditLog
from storefront.services.concurrency import KeyedLocks
from storefront.services.evidence import (
    fingerprint_evidence,
    reason_message,
    summarize_outcome,
    validate_evidence,
)
from storefront.services.payment_verifier import PaymentVerifierAdapter
from storefront.services.permissions import AdminPermission, PermissionResolver
from storefront.services.side_effects import CoalescingExportScheduler, SideEffectDispatcher
from storefront.services.state_machine import ensure_valid_transition, is_paid_or_later
from storefront.storage.customer_index import CustomerIndex, customer_key
from storefront.storage.order_store import OrderStore

ADMIN_CANCEL_REASON = "ยกเลิกโดยผู้ดูแลระบบ"
MAX_COMMIT_ATTEMPTS = 3

OrderGuard = Callable[[Order], bool]
OrderMutation = Callable[[Order], Order]


@dataclass
class TransitionOutcome:
    order: Order
    applied: bool
    previous_status: OrderStatus
    reason: str | None = None


def _with_cart_total(order: Order) -> Order:
    total = compute_cart_total(order.cart)
    if order.discount > total:
        raise CartValidationError("Discount exceeds cart total")
    if order.total_amount == total:
        return order
    return order.model_copy(update={"total_amount": total})


class ReconciliationEngine:
    def __init__(
        self,
        *,
        store: OrderStore,
        index: CustomerIndex,
        verifier: PaymentVerifierAdapter,
        notifier: NotificationSink,
        audit_log: AuditLog,
        permissions: PermissionResolver,
        dispatcher: SideEffectDispatcher,
        export_scheduler: CoalescingExportScheduler | None = None,
        store_read_max_retries: int = 2,
        store_read_backoff_s: float = 0.2,
        clock: Callable[[], Any] = now_utc,
    ) -> None:
        self.store = store
        self.index = index
        self.verifier = verifier
        self.notifier = notifier
        self.audit_log = audit_log
        self.permissions = permissions
        self.dispatcher = dispatcher
        self.export_scheduler = export_scheduler
        self.store_read_max_retries = store_read_max_retries
        self.store_read_backoff_s = store_read_backoff_s
        self.clock = clock
        self._locks = KeyedLocks()

    async def load_order(self, ref: str) -> Order:
        attempts = self.store_read_max_retries + 1
        for attempt in range(attempts):
            try:
                order = await self.store.get(ref)
            except IntegrationError as err:
                if not err.retryable or attempt >= self.store_read_max_retries:
                    raise
                log_event(
                    "order_read_retry",
                    level=logging.WARNING,
                    order_ref=ref,
                    attempt=attempt + 1,
                    error=str(err),
                )
                await asyncio.sleep(self.store_read_backoff_s * (2**attempt))
                continue
            if order is None:
                raise OrderNotFoundError(ref)
            return order
        raise OrderNotFoundError(ref)

    async def create_order(self, order: Order, *, actor: Actor, fresh_ref: bool = False) -> Order:
        """Store a new order.

        Refs are unique across date partitions, so a caller-chosen ref is
        looked up first. Pass ``fresh_ref=True`` for a freshly generated ref;
        the create-only write still rejects a collision in the same partition.
        """
        if order.status != OrderStatus.WAITING_PAYMENT:
            raise TransitionNotAllowedError("NEW", order.status.value, TransitionTrigger.ADMIN.value)
        order = _with_cart_total(order)
        async with self._locks.hold(order.ref):
            if not fresh_ref and await self.store.get(order.ref) is not None:
                raise DuplicateOrderError(order.ref)
            try:
                stored = await self.store.put(order.ref, order, expected_version=0)
            except VersionConflictError as err:
                raise DuplicateOrderError(order.ref) from err
            await self._after_commit(
                stored,
                previous_status=None,
                actor=actor,
                action="order_created",
                context={"event": "order_created"},
            )
        return stored

    async def mutate_order(
        self,
        ref: str,
        mutation: OrderMutation,
        *,
        actor: Actor,
        action: str,
        notify: bool = False,
    ) -> Order:
        """Apply a field edit that must leave the status unchanged."""
        async with self._locks.hold(ref):
            for _ in range(MAX_COMMIT_ATTEMPTS):
                current = await self.load_order(ref)
                updated = mutation(current)
                if updated.status != current.status:
                    raise ValueError("order mutations may not change status")
                updated = _with_cart_total(updated).model_copy(update={"updated_at": self.clock()})
                try:
                    stored = await self.store.put(ref, updated, expected_version=current.version)
                except VersionConflictError:
                    continue

                old_key = customer_key(current.customer_email)
                if old_key is not None and old_key != customer_key(stored.customer_email):
                    await self._remove_from_index(old_key, ref)
                await self._after_commit(
                    stored,
                    previous_status=current.status,
                    actor=actor,
                    action=action,
                    notify=notify,
                )
                return stored
        raise VersionConflictError(ref, None, None)

    async def delete_order(self, ref: str, *, actor: Actor) -> None:
        self.permissions.require(actor, AdminPermission.MANAGE_ORDERS)
        async with self._locks.hold(ref):
            order = await self.load_order(ref)
            await self.store.delete(ref)
            key = customer_key(order.customer_email)
            if key is not None:
                await self._remove_from_index(key, ref)
            await self._audit(
                AuditEvent(
                    order_ref=ref,
                    action="order_deleted",
                    actor=actor.label,
                    from_status=order.status.value,
                    accepted=True,
                )
            )
            log_event("order_deleted", level=logging.WARNING, order_ref=ref, actor=actor.label)
            self._trigger_export()

    def _result(
        self,
        ref: str,
        code: ReasonCode,
        *,
        order: Order | None = None,
        message: str | None = None,
    ) -> PaymentResult:
        accepted = code in (ReasonCode.ACCEPTED, ReasonCode.ALREADY_PAID)
        return PaymentResult(
            accepted=accepted,
            reason_code=code,
            message=message or reason_message(code),
            order_ref=ref,
            already_paid=code == ReasonCode.ALREADY_PAID,
            order=order,
        )

    async def _reject_payment(
        self,
        order: Order | None,
        ref: str,
        code: ReasonCode,
        *,
        actor: Actor,
        message: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> PaymentResult:
        metrics_store.increment("payment_rejected_total", reason=code.value)
        log_event(
            "payment_rejected",
            level=logging.WARNING,
            order_ref=ref,
            actor=actor.label,
            reason_code=code.value,
            **(detail or {}),
        )
        await self._audit(
            AuditEvent(
                order_ref=ref,
                action="payment_rejected",
                actor=actor.label,
                from_status=order.status.value if order else None,
                to_status=order.status.value if order else None,
                accepted=False,
                reason_code=code.value,
                detail=detail or {},
            )
        )
        return self._result(ref, code, order=order, message=message)

    async def _acknowledge_paid(self, order: Order, *, actor: Actor, fingerprint: str) -> PaymentResult:
        log_event(
            "payment_already_applied",
            order_ref=order.ref,
            actor=actor.label,
            status=order.status.value,
        )
        await self._audit(
            AuditEvent(
                order_ref=order.ref,
                action="payment_duplicate_ignored",
                actor=actor.label,
                from_status=order.status.value,
                to_status=order.status.value,
                accepted=False,
                reason_code=ReasonCode.ALREADY_PAID.value,
                detail={"fingerprint": fingerprint},
            )
        )
        return self._result(order.ref, ReasonCode.ALREADY_PAID, order=order)

    @staticmethod
    def _already_paid(order: Order, fingerprint: str) -> bool:
        if is_paid_or_later(order.status):
            return True
        evidence = order.payment_evidence
        return evidence is not None and evidence.fingerprint == fingerprint

    async def request_payment(
        self,
        ref: str,
        evidence: Evidence,
        *,
        actor: Actor | None = None,
    ) -> PaymentResult:
        """Verify ``evidence`` against the order and mark it PAID when accepted.

        Verification runs without holding the order lock. The commit
        re-reads the order under the lock and writes with a version check,
        so concurrent submissions resolve to one PAID transition and every
        other caller gets an idempotent ALREADY_PAID acknowledgement.
        """
        try:
            validate_evidence(evidence)
        except EvidenceValidationError as err:
            return await self._reject_payment(
                None,
                ref,
                ReasonCode.INVALID_EVIDENCE,
                actor=actor or Actor.system(),
                detail={"error": err.message},
            )

        order = await self.load_order(ref)
        if actor is None:
            actor = Actor.customer(order.customer_email or "anonymous")

        fingerprint = fingerprint_evidence(evidence)
        if self._already_paid(order, fingerprint):
            return await self._acknowledge_paid(order, actor=actor, fingerprint=fingerprint)

        allowed, disabled_message = self.permissions.payment_gate(actor)
        if not allowed:
            return await self._reject_payment(
                order,
                ref,
                ReasonCode.PAYMENT_DISABLED,
                actor=actor,
                message=disabled_message,
            )
        if order.status != OrderStatus.WAITING_PAYMENT:
            return await self._reject_payment(
                order, ref, ReasonCode.ORDER_NOT_PAYABLE, actor=actor, detail={"status": order.status.value}
            )

        expected_amount = order.amount_due
        if expected_amount <= 0:
            return await self._reject_payment(
                order, ref, ReasonCode.INVALID_AMOUNT, actor=actor, detail={"amount_due": expected_amount}
            )

        outcome = await self.verifier.verify(evidence, expected_amount)
        if not (outcome.accepted and outcome.amount_matched):
            code = outcome.reason_code or (
                ReasonCode.AMOUNT_MISMATCH if outcome.accepted else ReasonCode.SLIP_REJECTED
            )
            if code == ReasonCode.ACCEPTED:
                code = ReasonCode.AMOUNT_MISMATCH
            return await self._reject_payment(
                order,
                ref,
                code,
                actor=actor,
                message=reason_message(code, expected_amount=expected_amount, actual_amount=outcome.amount),
                detail={
                    "expected_amount": expected_amount,
                    "actual_amount": outcome.amount,
                    "raw_ref": outcome.raw_ref,
                    **outcome.raw_details,
                },
            )

        async with self._locks.hold(ref):
            for _ in range(MAX_COMMIT_ATTEMPTS):
                current = await self.load_order(ref)
                if self._already_paid(current, fingerprint):
                    return await self._acknowledge_paid(current, actor=actor, fingerprint=fingerprint)
                if current.status != OrderStatus.WAITING_PAYMENT:
                    return await self._reject_payment(
                        current,
                        ref,
                        ReasonCode.ORDER_NOT_PAYABLE,
                        actor=actor,
                        detail={"status": current.status.value},
                    )
                if not amounts_match(current.amount_due, expected_amount):
                    # Cart was edited while the slip was being verified.
                    return await self._reject_payment(
                        current,
                        ref,
                        ReasonCode.AMOUNT_MISMATCH,
                        actor=actor,
                        detail={"expected_amount": current.amount_due, "verified_amount": expected_amount},
                    )
                ensure_valid_transition(current.status, OrderStatus.PAID, TransitionTrigger.PAYMENT_VERIFIED)

                now = self.clock()
                payment_evidence = summarize_outcome(
                    evidence,
                    outcome,
                    fingerprint=fingerprint,
                    accepted_by=actor.label,
                    accepted_at=now,
                )
                updated = current.model_copy(
                    update={
                        "status": OrderStatus.PAID,
                        "payment_evidence": payment_evidence,
                        "paid_amount": outcome.amount if outcome.amount is not None else expected_amount,
                        "updated_at": now,
                    }
                )
                try:
                    stored = await self.store.put(ref, updated, expected_version=current.version)
                except VersionConflictError:
                    log_event("payment_commit_conflict", level=logging.WARNING, order_ref=ref)
                    continue

                metrics_store.increment("payment_accepted_total")
                await self._after_commit(
                    stored,
                    previous_status=current.status,
                    actor=actor,
                    action="payment_accepted",
                    reason_code=ReasonCode.ACCEPTED.value,
                    context={
                        "trigger": TransitionTrigger.PAYMENT_VERIFIED.value,
                        "evidence_kind": payment_evidence.kind,
                        "amount": stored.paid_amount,
                    },
                )
                return self._result(ref, ReasonCode.ACCEPTED, order=stored)

        # Every commit attempt lost to another writer; report the fresh state.
        latest = await self.load_order(ref)
        if self._already_paid(latest, fingerprint):
            return self._result(ref, ReasonCode.ALREADY_PAID, order=latest)
        return await self._reject_payment(latest, ref, ReasonCode.VERIFICATION_INCONCLUSIVE, actor=actor)

    async def handle_gateway_event(self, event: GatewayEvent) -> PaymentResult | TransitionOutcome:
        actor = Actor.gateway(event.provider)
        log_event(
            "gateway_event_received",
            order_ref=event.order_ref,
            actor=actor.label,
            kind=event.kind.value,
            gateway_ref=event.gateway_ref,
            amount=event.amount,
        )

        if event.kind == GatewayEventKind.CHARGE_SUCCEEDED:
            evidence = GatewayChargeEvidence(
                provider=event.provider,
                charge_id=event.gateway_ref,
                amount=event.amount,
            )
            return await self.request_payment(event.order_ref, evidence, actor=actor)

        if event.kind == GatewayEventKind.REFUND_ISSUED:
            return await self._apply_refund(event, actor)

        order = await self.load_order(event.order_ref)
        await self._audit(
            AuditEvent(
                order_ref=order.ref,
                action=f"gateway_{event.kind.value}",
                actor=actor.label,
                from_status=order.status.value,
                to_status=order.status.value,
                accepted=False,
                reason_code=event.kind.value,
                detail={"gateway_ref": event.gateway_ref, "failure_message": event.failure_message},
            )
        )
        return TransitionOutcome(order=order, applied=False, previous_status=order.status, reason=event.kind.value)

    async def _apply_refund(self, event: GatewayEvent, actor: Actor) -> TransitionOutcome:
        order = await self.load_order(event.order_ref)
        if order.refund is not None and order.refund.gateway_ref == event.gateway_ref:
            return TransitionOutcome(order=order, applied=False, previous_status=order.status, reason="duplicate_refund")

        evidence = order.payment_evidence
        if (
            evidence is not None
            and event.charge_ref
            and evidence.gateway_ref
            and event.charge_ref != evidence.gateway_ref
        ):
            await self._audit(
                AuditEvent(
                    order_ref=order.ref,
                    action="refund_rejected",
                    actor=actor.label,
                    from_status=order.status.value,
                    to_status=order.status.value,
                    accepted=False,
                    reason_code="CHARGE_MISMATCH",
                    detail={"charge_ref": event.charge_ref, "paid_charge_ref": evidence.gateway_ref},
                )
            )
            log_event(
                "refund_charge_mismatch",
                level=logging.ERROR,
                order_ref=order.ref,
                actor=actor.label,
                charge_ref=event.charge_ref,
            )
            return TransitionOutcome(order=order, applied=False, previous_status=order.status, reason="charge_mismatch")

        if evidence is not None and evidence.amount is not None:
            charged = evidence.amount
        else:
            charged = order.paid_amount if order.paid_amount is not None else order.amount_due
        full = event.amount >= charged or amounts_match(event.amount, charged)
        target = OrderStatus.REFUNDED if full else OrderStatus.PARTIALLY_REFUNDED
        refund = RefundRecord(
            amount=event.amount,
            gateway=event.provider,
            gateway_ref=event.gateway_ref,
            full=full,
            refunded_at=event.occurred_at,
        )

        def not_yet_refunded(current: Order) -> bool:
            return current.refund is None or current.refund.gateway_ref != event.gateway_ref

        return await self.apply_transition(
            event.order_ref,
            target,
            actor=actor,
            trigger=TransitionTrigger.GATEWAY_REFUND,
            updates={"refund": refund},
            guard=not_yet_refunded,
        )

    async def apply_admin_transition(
        self,
        ref: str,
        new_status: OrderStatus,
        *,
        actor: Actor,
        metadata: TransitionMetadata | None = None,
    ) -> Order:
        self.permissions.require(actor, AdminPermission.MANAGE_ORDERS)
        outcome = await self.apply_transition(
            ref,
            new_status,
            actor=actor,
            trigger=TransitionTrigger.ADMIN,
            metadata=metadata,
        )
        return outcome.order

    async def apply_transition(
        self,
        ref: str,
        new_status: OrderStatus,
        *,
        actor: Actor,
        trigger: TransitionTrigger,
        metadata: TransitionMetadata | None = None,
        updates: dict[str, Any] | None = None,
        guard: OrderGuard | None = None,
    ) -> TransitionOutcome:
        """Move one order to ``new_status``.

        ``guard`` is evaluated against the freshly read record inside the
        order lock; a false guard skips the order without error. Moving to
        the current status is an idempotent no-op.
        """
        async with self._locks.hold(ref):
            for _ in range(MAX_COMMIT_ATTEMPTS):
                current = await self.load_order(ref)
                if guard is not None and not guard(current):
                    return TransitionOutcome(
                        order=current,
                        applied=False,
                        previous_status=current.status,
                        reason="precondition_failed",
                    )
                if current.status == new_status:
                    return TransitionOutcome(
                        order=current,
                        applied=False,
                        previous_status=current.status,
                        reason="already_in_status",
                    )

                try:
                    ensure_valid_transition(
                        current.status,
                        new_status,
                        trigger,
                        has_payment_evidence=current.payment_evidence is not None,
                    )
                except TransitionNotAllowedError:
                    await self._record_rejected_transition(current, new_status, actor=actor, trigger=trigger)
                    raise

                updated = self._with_status(current, new_status, actor=actor, metadata=metadata, updates=updates)
                try:
                    stored = await self.store.put(ref, updated, expected_version=current.version)
                except VersionConflictError:
                    log_event("order_transition_conflict", level=logging.WARNING, order_ref=ref)
                    continue

                await self._after_commit(
                    stored,
                    previous_status=current.status,
                    actor=actor,
                    action="status_changed",
                    context=self._notification_context(trigger, metadata),
                )
                return TransitionOutcome(order=stored, applied=True, previous_status=current.status)
        raise VersionConflictError(ref, None, None)

    def _with_status(
        self,
        order: Order,
        new_status: OrderStatus,
        *,
        actor: Actor,
        metadata: TransitionMetadata | None,
        updates: dict[str, Any] | None,
    ) -> Order:
        now = self.clock()
        fields: dict[str, Any] = {"status": new_status, "updated_at": now}
        meta = metadata or TransitionMetadata()

        if new_status == OrderStatus.CANCELLED:
            fields["cancel_reason"] = meta.cancel_reason or ADMIN_CANCEL_REASON
            fields["cancelled_at"] = now
            fields["cancelled_by"] = actor.label
        if new_status == OrderStatus.READY:
            fields["ready_at"] = now
            if meta.pickup is not None:
                fields["pickup"] = meta.pickup
        if new_status == OrderStatus.SHIPPED:
            if meta.tracking_number:
                fields["tracking_number"] = meta.tracking_number
            if meta.shipping_provider:
                fields["shipping_provider"] = meta.shipping_provider
        if meta.note:
            fields["notes"] = meta.note if not order.notes else f"{order.notes}\n{meta.note}"

        fields.update(updates or {})
        return order.model_copy(update=fields)

    @staticmethod
    def _notification_context(trigger: TransitionTrigger, metadata: TransitionMetadata | None) -> dict[str, Any]:
        context: dict[str, Any] = {"trigger": trigger.value}
        if metadata is not None:
            context.update(metadata.model_dump(mode="json", exclude_none=True))
        return context

    async def _record_rejected_transition(
        self,
        order: Order,
        requested: OrderStatus,
        *,
        actor: Actor,
        trigger: TransitionTrigger,
    ) -> None:
        metrics_store.increment("transition_rejected_total", trigger=trigger.value)
        level = logging.ERROR if actor.kind != ActorKind.ADMIN else logging.WARNING
        log_event(
            "order_transition_rejected",
            level=level,
            order_ref=order.ref,
            actor=actor.label,
            from_status=order.status.value,
            to_status=requested.value,
            trigger=trigger.value,
        )
        await self._audit(
            AuditEvent(
                order_ref=order.ref,
                action="status_change_rejected",
                actor=actor.label,
                from_status=order.status.value,
                to_status=requested.value,
                accepted=False,
                reason_code="TRANSITION_NOT_ALLOWED",
                detail={"trigger": trigger.value},
            )
        )

    async def _after_commit(
        self,
        order: Order,
        *,
        previous_status: OrderStatus | None,
        actor: Actor,
        action: str,
        reason_code: str | None = None,
        context: dict[str, Any] | None = None,
        notify: bool = True,
    ) -> None:
        await self._refresh_index(order)
        await self._audit(
            AuditEvent(
                order_ref=order.ref,
                action=action,
                actor=actor.label,
                from_status=previous_status.value if previous_status else None,
                to_status=order.status.value,
                accepted=True,
                reason_code=reason_code,
                detail=context or {},
            )
        )
        log_event(
            "order_committed",
            order_ref=order.ref,
            actor=actor.label,
            action=action,
            from_status=previous_status.value if previous_status else None,
            to_status=order.status.value,
            version=order.version,
        )

        if notify and previous_status != order.status:
            status = order.status
            payload = dict(context or {})
            self.dispatcher.dispatch(
                "notify_customer",
                lambda: self.notifier.notify(order, status, payload),
                order_ref=order.ref,
            )
        self._trigger_export()

    def _trigger_export(self) -> None:
        if self.export_scheduler is not None:
            self.export_scheduler.trigger()

    async def _refresh_index(self, order: Order) -> None:
        key = customer_key(order.customer_email)
        if key is None:
            return
        try:
            await self.index.upsert(key, OrderSummary.from_order(order))
        except Exception as err:
            self._index_warning(order.ref, err)

    async def _remove_from_index(self, key: str, ref: str) -> None:
        try:
            await self.index.remove(key, ref)
        except Exception as err:
            self._index_warning(ref, err)

    @staticmethod
    def _index_warning(ref: str, err: Exception) -> None:
        metrics_store.increment("customer_index_write_failed_total")
        log_event(
            "customer_index_reconciliation_warning",
            level=logging.WARNING,
            order_ref=ref,
            error=str(err),
        )

    async def _audit(self, event: AuditEvent) -> None:
        try:
            await self.audit_log.record(event)
        except Exception as err:
            metrics_store.increment("audit_write_failed_total")
            log_event(
                "audit_write_failed",
                level=logging.ERROR,
                order_ref=event.order_ref,
                action=event.action,
                error=str(err),
            )
