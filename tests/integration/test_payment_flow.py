import asyncio

import pytest

from storefront.errors import OrderNotFoundError, TransitionNotAllowedError
from storefront.models.audit import Actor
from storefront.models.order import OrderStatus, TransitionTrigger
from storefront.models.payment import (
    GatewayEvent,
    GatewayEventKind,
    ReasonCode,
    SlipEvidence,
    VerificationOutcome,
)
from storefront.observability import metrics_store
from storefront.services.permissions import ShopConfig
from storefront.storage.customer_index import INDEX_PREFIX, customer_key
from tests.helpers import ADMIN_EMAIL, BUYER_EMAIL, StubSlipVerifier


def _slip(content: bytes = b"slip-1") -> SlipEvidence:
    return SlipEvidence(content=content, mime="image/jpeg", file_name="slip.jpg")


def test_matching_slip_marks_order_paid_and_notifies(container, make_order, seed, notifier, audit_log):
    async def scenario():
        await seed(make_order("ORD-1", 340))
        result = await container.engine.request_payment("ORD-1", _slip())
        await container.dispatcher.drain()
        return result, await container.store.get("ORD-1")

    result, stored = asyncio.run(scenario())

    assert result.accepted is True
    assert result.reason_code == ReasonCode.ACCEPTED
    assert stored.status == OrderStatus.PAID
    assert stored.paid_amount == 340
    assert stored.payment_evidence.amount_matched is True
    assert stored.payment_evidence.trans_ref == "TX-1"
    assert notifier.sent == [("ORD-1", OrderStatus.PAID)]
    assert [event.action for event in audit_log.events] == ["payment_accepted"]
    assert metrics_store.snapshot().counters["payment_accepted_total"] == 1


def test_amount_mismatch_rejects_without_touching_order(container, make_order, seed, slip_verifier, notifier):
    slip_verifier.amounts[b"short-slip"] = 280

    async def scenario():
        await seed(make_order("ORD-2", 300))
        result = await container.engine.request_payment("ORD-2", _slip(b"short-slip"))
        await container.dispatcher.drain()
        return result, await container.store.get("ORD-2")

    result, stored = asyncio.run(scenario())

    assert result.accepted is False
    assert result.reason_code == ReasonCode.AMOUNT_MISMATCH
    assert "300.00" in result.message and "280.00" in result.message
    assert stored.status == OrderStatus.WAITING_PAYMENT
    assert stored.payment_evidence is None
    assert stored.version == 1
    assert notifier.sent == []
    assert metrics_store.snapshot().counters["payment_rejected_total"] == 1
    assert metrics_store.counter("payment_rejected_total", reason="AMOUNT_MISMATCH") == 1


def test_concurrent_submissions_produce_exactly_one_paid_transition(
    container, make_order, seed, notifier, audit_log
):
    verifier = StubSlipVerifier(delay_s=0.01)
    container.engine.verifier.slip_verifier = verifier

    async def scenario():
        await seed(make_order("ORD-3", 500))
        results = await asyncio.gather(
            container.engine.request_payment("ORD-3", _slip(b"first")),
            container.engine.request_payment("ORD-3", _slip(b"second")),
        )
        await container.dispatcher.drain()
        return results, await container.store.get("ORD-3")

    results, stored = asyncio.run(scenario())

    assert len(verifier.calls) == 2
    assert sorted(result.reason_code for result in results) == sorted(
        [ReasonCode.ACCEPTED, ReasonCode.ALREADY_PAID]
    )
    assert all(result.accepted for result in results)
    assert stored.status == OrderStatus.PAID
    assert notifier.sent == [("ORD-3", OrderStatus.PAID)]
    assert [event.action for event in audit_log.events].count("payment_accepted") == 1


def test_resubmitting_same_slip_is_acknowledged_without_verification(container, make_order, seed, slip_verifier):
    async def scenario():
        await seed(make_order("ORD-5", 120))
        first = await container.engine.request_payment("ORD-5", _slip(b"same"))
        second = await container.engine.request_payment("ORD-5", _slip(b"same"))
        return first, second, await container.store.get("ORD-5")

    first, second, stored = asyncio.run(scenario())

    assert first.reason_code == ReasonCode.ACCEPTED
    assert second.accepted is True
    assert second.already_paid is True
    assert second.reason_code == ReasonCode.ALREADY_PAID
    assert len(slip_verifier.calls) == 1
    assert stored.version == 2


def test_cancelled_order_is_not_payable(container, make_order, seed, slip_verifier):
    async def scenario():
        await seed(make_order("ORD-6", 200, status=OrderStatus.CANCELLED))
        return await container.engine.request_payment("ORD-6", _slip())

    result = asyncio.run(scenario())

    assert result.accepted is False
    assert result.reason_code == ReasonCode.ORDER_NOT_PAYABLE
    assert slip_verifier.calls == []


def test_zero_amount_due_is_rejected(container, make_order, seed):
    order = make_order("ORD-7", 100).model_copy(update={"discount": 100})

    async def scenario():
        await seed(order)
        return await container.engine.request_payment("ORD-7", _slip())

    assert asyncio.run(scenario()).reason_code == ReasonCode.INVALID_AMOUNT


def test_empty_slip_is_invalid_evidence(container, make_order, seed):
    async def scenario():
        await seed(make_order("ORD-8", 100))
        return await container.engine.request_payment("ORD-8", SlipEvidence(content=b""))

    assert asyncio.run(scenario()).reason_code == ReasonCode.INVALID_EVIDENCE


def test_unknown_order_raises_not_found(container):
    with pytest.raises(OrderNotFoundError):
        asyncio.run(container.engine.request_payment("ORD-404", _slip()))


def test_payment_disabled_blocks_customers_but_not_admins(container, make_order, seed):
    async def scenario():
        await seed(make_order("ORD-9", 150), make_order("ORD-10", 150))
        await container.permissions.save(
            ShopConfig(
                payment_enabled=False,
                payment_disabled_message="ปิดปรับปรุง",
                admin_emails=[ADMIN_EMAIL],
            )
        )
        customer = await container.engine.request_payment("ORD-9", _slip(b"a"), actor=Actor.customer(BUYER_EMAIL))
        admin = await container.engine.request_payment("ORD-10", _slip(b"b"), actor=Actor.admin(ADMIN_EMAIL))
        return customer, admin

    customer, admin = asyncio.run(scenario())

    assert customer.reason_code == ReasonCode.PAYMENT_DISABLED
    assert customer.message == "ปิดปรับปรุง"
    assert admin.reason_code == ReasonCode.ACCEPTED


def test_verifier_timeout_is_inconclusive(container, make_order, seed):
    container.engine.verifier.slip_verifier = StubSlipVerifier(delay_s=0.2)
    container.engine.verifier.timeout_s = 0.01

    async def scenario():
        await seed(make_order("ORD-11", 90))
        result = await container.engine.request_payment("ORD-11", _slip())
        return result, await container.store.get("ORD-11")

    result, stored = asyncio.run(scenario())

    assert result.reason_code == ReasonCode.VERIFICATION_INCONCLUSIVE
    assert stored.status == OrderStatus.WAITING_PAYMENT


def test_paid_amount_matches_amount_due_for_every_paid_order(container, make_order, seed):
    async def scenario():
        await seed(*(make_order(f"ORD-A{i}", 100 + i * 10) for i in range(5)))
        for i in range(5):
            await container.engine.request_payment(f"ORD-A{i}", _slip(f"slip-{i}".encode()))
        return await container.store.list()

    for order in asyncio.run(scenario()):
        assert order.status == OrderStatus.PAID
        assert order.payment_evidence.amount == pytest.approx(order.amount_due, abs=0.01)


def test_gateway_charge_then_refund(container, make_order, seed, notifier):
    charge = GatewayEvent(
        kind=GatewayEventKind.CHARGE_SUCCEEDED,
        provider="omise",
        order_ref="ORD-12",
        amount=450,
        gateway_ref="chrg_1",
    )
    refund = GatewayEvent(
        kind=GatewayEventKind.REFUND_ISSUED,
        provider="omise",
        order_ref="ORD-12",
        amount=450,
        gateway_ref="rfnd_1",
        charge_ref="chrg_1",
    )

    async def scenario():
        await seed(make_order("ORD-12", 450))
        paid = await container.engine.handle_gateway_event(charge)
        refunded = await container.engine.handle_gateway_event(refund)
        duplicate = await container.engine.handle_gateway_event(refund)
        await container.dispatcher.drain()
        return paid, refunded, duplicate

    paid, refunded, duplicate = asyncio.run(scenario())

    assert paid.reason_code == ReasonCode.ACCEPTED
    assert paid.order.payment_evidence.gateway_ref == "chrg_1"
    assert refunded.applied is True
    assert refunded.order.status == OrderStatus.REFUNDED
    assert refunded.order.refund.full is True
    assert duplicate.applied is False
    assert notifier.sent == [("ORD-12", OrderStatus.PAID), ("ORD-12", OrderStatus.REFUNDED)]


def test_partial_refund_after_manual_cancel(container, make_order, seed):
    async def scenario():
        await seed(make_order("ORD-13", 400))
        await container.engine.request_payment("ORD-13", _slip())
        await container.engine.apply_transition(
            "ORD-13",
            OrderStatus.CANCELLED,
            actor=Actor.system(),
            trigger=TransitionTrigger.ADMIN,
        )
        return await container.engine.handle_gateway_event(
            GatewayEvent(
                kind=GatewayEventKind.REFUND_ISSUED,
                provider="stripe",
                order_ref="ORD-13",
                amount=100,
                gateway_ref="re_1",
            )
        )

    outcome = asyncio.run(scenario())

    assert outcome.applied is True
    assert outcome.previous_status == OrderStatus.CANCELLED
    assert outcome.order.status == OrderStatus.PARTIALLY_REFUNDED


def test_refund_for_unpaid_order_is_rejected(container, make_order, seed):
    async def scenario():
        await seed(make_order("ORD-14", 400))
        await container.engine.handle_gateway_event(
            GatewayEvent(
                kind=GatewayEventKind.REFUND_ISSUED,
                provider="omise",
                order_ref="ORD-14",
                amount=400,
                gateway_ref="rfnd_x",
            )
        )

    with pytest.raises(TransitionNotAllowedError):
        asyncio.run(scenario())
    assert metrics_store.snapshot().counters["transition_rejected_total"] == 1


def test_failed_charge_is_audited_only(container, make_order, seed, audit_log):
    async def scenario():
        await seed(make_order("ORD-15", 80))
        return await container.engine.handle_gateway_event(
            GatewayEvent(
                kind=GatewayEventKind.CHARGE_FAILED,
                provider="omise",
                order_ref="ORD-15",
                amount=80,
                gateway_ref="chrg_fail",
                failure_message="insufficient funds",
            )
        )

    outcome = asyncio.run(scenario())

    assert outcome.applied is False
    assert outcome.order.status == OrderStatus.WAITING_PAYMENT
    assert audit_log.events[-1].action == "gateway_charge_failed"


def test_payment_refreshes_customer_index(container, make_order, seed):
    async def scenario():
        await seed(make_order("ORD-16", 60))
        await container.engine.request_payment("ORD-16", _slip())
        return await container.index.get(customer_key(BUYER_EMAIL))

    entries = asyncio.run(scenario())

    assert [(entry.ref, entry.status) for entry in entries] == [("ORD-16", OrderStatus.PAID)]


class _AcceptingWithoutAmountVerifier:
    async def verify_slip(self, evidence_bytes, expected_amount):
        return VerificationOutcome(accepted=True, amount_matched=False, raw_ref="TX-NOAMOUNT")


def test_outcome_without_amount_match_never_marks_paid(container, make_order, seed, notifier):
    container.engine.verifier.slip_verifier = _AcceptingWithoutAmountVerifier()

    async def scenario():
        await seed(make_order("ORD-X", 300))
        result = await container.engine.request_payment("ORD-X", _slip())
        await container.dispatcher.drain()
        return result, await container.store.get("ORD-X")

    result, stored = asyncio.run(scenario())

    assert result.accepted is False
    assert result.reason_code == ReasonCode.AMOUNT_MISMATCH
    assert stored.status == OrderStatus.WAITING_PAYMENT
    assert stored.payment_evidence is None
    assert notifier.sent == []


def test_malformed_index_entry_does_not_fail_committed_payment(container, make_order, seed, notifier, audit_log):
    async def scenario():
        await seed(make_order("ORD-J1", 250))
        await container.blobs.write(
            f"{INDEX_PREFIX}{customer_key(BUYER_EMAIL)}.json",
            [{"ref": 7, "status": "NOT_A_STATUS"}],
        )
        result = await container.engine.request_payment("ORD-J1", _slip())
        await container.dispatcher.drain()
        return result, await container.store.get("ORD-J1"), await container.index.get(customer_key(BUYER_EMAIL))

    result, stored, entries = asyncio.run(scenario())

    assert result.reason_code == ReasonCode.ACCEPTED
    assert stored.status == OrderStatus.PAID
    assert notifier.sent == [("ORD-J1", OrderStatus.PAID)]
    assert [event.action for event in audit_log.events] == ["payment_accepted"]
    assert [entry.ref for entry in entries] == ["ORD-J1"]


def test_unexpected_index_error_after_commit_is_only_a_warning(container, make_order, seed, notifier, monkeypatch):
    async def broken_upsert(key, summary):
        raise RuntimeError("index blob corrupted")

    monkeypatch.setattr(container.index, "upsert", broken_upsert)

    async def scenario():
        await seed(make_order("ORD-J2", 80))
        result = await container.engine.request_payment("ORD-J2", _slip())
        await container.dispatcher.drain()
        return result, await container.store.get("ORD-J2")

    result, stored = asyncio.run(scenario())

    assert result.reason_code == ReasonCode.ACCEPTED
    assert stored.status == OrderStatus.PAID
    assert notifier.sent == [("ORD-J2", OrderStatus.PAID)]
    assert metrics_store.snapshot().counters["customer_index_write_failed_total"] == 1


def test_resubmission_after_payment_is_acknowledged_while_payments_disabled(container, make_order, seed):
    async def scenario():
        await seed(make_order("ORD-K1", 150))
        await container.engine.request_payment("ORD-K1", _slip(b"paid-slip"), actor=Actor.customer(BUYER_EMAIL))
        await container.permissions.save(ShopConfig(payment_enabled=False, payment_disabled_message="ปิดรับชำระ"))
        return await container.engine.request_payment(
            "ORD-K1", _slip(b"paid-slip"), actor=Actor.customer(BUYER_EMAIL)
        )

    result = asyncio.run(scenario())

    assert result.accepted is True
    assert result.already_paid is True
    assert result.reason_code == ReasonCode.ALREADY_PAID
