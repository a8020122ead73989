import json
import logging

from storefront.observability import JsonFormatter, log_event, metrics_store, observe_timing


def test_metrics_store_reset_clears_counters_and_timings():
    metrics_store.increment("payment_accepted_total")
    with observe_timing("slip_verification_s"):
        pass

    assert metrics_store.snapshot().timings["slip_verification_s"]["count"] == 1.0

    metrics_store.reset()

    snapshot = metrics_store.snapshot()
    assert snapshot.counters == {}
    assert snapshot.timings == {}


def test_log_event_emits_json_with_order_context(caplog):
    with caplog.at_level(logging.INFO, logger="storefront.orders"):
        log_event("order_committed", order_ref="ORD-1", actor="SYSTEM_AUTO", to_status="CANCELLED")

    record = caplog.records[-1]
    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "order_committed"
    assert payload["order_ref"] == "ORD-1"
    assert payload["actor"] == "SYSTEM_AUTO"
    assert payload["fields"] == {"to_status": "CANCELLED"}


def test_labeled_counters_keep_unlabeled_total():
    metrics_store.increment("payment_rejected_total", reason="AMOUNT_MISMATCH")
    metrics_store.increment("payment_rejected_total", reason="AMOUNT_MISMATCH")
    metrics_store.increment("payment_rejected_total", reason="INVALID_QR")

    snapshot = metrics_store.snapshot()

    assert snapshot.counters["payment_rejected_total"] == 3
    assert snapshot.labeled["payment_rejected_total"] == {"reason=AMOUNT_MISMATCH": 2, "reason=INVALID_QR": 1}
    assert metrics_store.counter("payment_rejected_total", reason="INVALID_QR") == 1
    assert metrics_store.counter("payment_accepted_total") == 0
