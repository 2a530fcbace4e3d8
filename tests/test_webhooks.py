import json
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from checkout.application.inventory import InventoryAdjuster
from checkout.application.orders import OrderLedger
from checkout.domain.models import GiftCardTransaction, PaymentTransaction
from checkout.infrastructure.gateway.fake_adapter import SIGNATURE_HEADER


def _pending_session(orchestrator, place_order, catalog):
    placed = place_order([{"product_id": catalog.mug_id, "quantity": 1}])
    return placed.order_id, orchestrator.create_payment_session(placed.order_id)


def _payments(session_factory, order_id, type):
    with session_factory() as db:
        return db.query(PaymentTransaction).filter(
            PaymentTransaction.order_id == order_id, PaymentTransaction.type == type
        ).all()


def _status(session_factory, order_id):
    with session_factory() as db:
        order = OrderLedger(db).get(order_id)
        return order.status, order.payment_status


def test_capture_completed_is_applied_once(reconciler, orchestrator, place_order, gateway, session_factory, catalog):
    order_id, external_id = _pending_session(orchestrator, place_order, catalog)
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.COMPLETED", external_order_id=external_id,
                                          capture_id="WH-CAP-1")

    first = reconciler.handle(headers, body)
    second = reconciler.handle(headers, body)

    assert first.status_code == 200 and first.body["handled"] is True
    assert second.status_code == 200 and second.body["handled"] is True
    assert _status(session_factory, order_id) == ("confirmed", "paid")
    captures = _payments(session_factory, order_id, "capture")
    assert [c.provider_transaction_id for c in captures] == ["WH-CAP-1"]


def test_webhook_after_direct_capture_is_a_no_op(reconciler, orchestrator, place_order, gateway, session_factory, catalog):
    order_id, external_id = _pending_session(orchestrator, place_order, catalog)
    outcome = orchestrator.capture(order_id, external_id)
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.COMPLETED", external_order_id=external_id)

    result = reconciler.handle(headers, body)

    assert result.status_code == 200
    captures = _payments(session_factory, order_id, "capture")
    assert [c.provider_transaction_id for c in captures] == [outcome.capture_id]


def test_direct_capture_after_webhook_returns_settled_order(reconciler, orchestrator, place_order, gateway, session_factory, catalog):
    order_id, external_id = _pending_session(orchestrator, place_order, catalog)
    captured = gateway.capture_order(external_id)
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.COMPLETED", external_order_id=external_id)
    assert reconciler.handle(headers, body).status_code == 200

    outcome = orchestrator.capture(order_id, external_id)
    assert outcome.already_applied is True
    assert outcome.capture_id == captured.capture_id
    assert len(_payments(session_factory, order_id, "capture")) == 1


def test_bad_signature_is_rejected(reconciler, orchestrator, place_order, gateway, session_factory, catalog):
    order_id, external_id = _pending_session(orchestrator, place_order, catalog)
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.COMPLETED", external_order_id=external_id,
                                          capture_id="WH-CAP-1")
    headers[SIGNATURE_HEADER] = "0" * 64

    result = reconciler.handle(headers, body)
    assert result.status_code == 401
    assert _status(session_factory, order_id) == ("pending", "pending")


def test_missing_signature_and_bad_json_are_malformed(reconciler, gateway):
    assert reconciler.handle({}, b"{}").status_code == 400

    body = b"not json"
    assert reconciler.handle({SIGNATURE_HEADER: gateway.sign(body)}, body).status_code == 400

    body = json.dumps({"id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}).encode()
    assert reconciler.handle({SIGNATURE_HEADER: gateway.sign(body)}, body).status_code == 400


def test_capture_denied_fails_pending_order(reconciler, orchestrator, place_order, gateway, session_factory, catalog):
    order_id, external_id = _pending_session(orchestrator, place_order, catalog)
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.DENIED", external_order_id=external_id,
                                          capture_id="WH-DENIED-1")

    result = reconciler.handle(headers, body)
    assert result.status_code == 200
    assert result.body["handled"] is True
    assert _status(session_factory, order_id) == ("failed", "failed")


def test_capture_denied_does_not_touch_paid_order(reconciler, paid_order, gateway, session_factory):
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.DENIED", external_order_id=paid_order.external_order_id)

    result = reconciler.handle(headers, body)
    assert result.status_code == 200
    assert result.body["handled"] is False
    assert _status(session_factory, paid_order.order_id) == ("confirmed", "paid")


def test_refund_processed_is_recorded_once(reconciler, paid_order, gateway, session_factory):
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.REFUNDED", external_order_id=paid_order.external_order_id,
                                          refund_id="WH-REF-1", amount=Decimal("15.00"))

    assert reconciler.handle(headers, body).status_code == 200
    assert reconciler.handle(headers, body).status_code == 200

    refunds = _payments(session_factory, paid_order.order_id, "refund")
    assert [(r.provider_transaction_id, r.amount) for r in refunds] == [("WH-REF-1", Decimal("15.00"))]
    assert _status(session_factory, paid_order.order_id) == ("confirmed", "partially_refunded")


def test_event_for_unknown_order_is_acknowledged(reconciler, gateway):
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.COMPLETED", external_order_id="FAKE-NOPE",
                                          capture_id="WH-CAP-X", amount=Decimal("10.00"), custom_marker="999999")

    result = reconciler.handle(headers, body)
    assert result.status_code == 200
    assert result.body["handled"] is False
    assert result.body["reason"] == "NOT_FOUND"


def test_unhandled_event_type_is_acknowledged(reconciler, gateway):
    body = json.dumps({"id": "WH-2", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "X"}}).encode()

    result = reconciler.handle({SIGNATURE_HEADER: gateway.sign(body)}, body)
    assert result.status_code == 200
    assert result.body == {"received": True, "event_id": "WH-2", "handled": False}


def test_unexpected_error_asks_for_redelivery(reconciler, orchestrator, place_order, gateway, catalog, monkeypatch):
    order_id, external_id = _pending_session(orchestrator, place_order, catalog)
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.COMPLETED", external_order_id=external_id,
                                          capture_id="WH-CAP-1")

    def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")
    monkeypatch.setattr(orchestrator, "settle", broken)

    result = reconciler.handle(headers, body)
    assert result.status_code == 500
    assert result.body["retryable"] is True


def test_webhook_racing_direct_capture_settles_once(reconciler, orchestrator, place_order, gateway,
                                                    session_factory, catalog):
    placed = place_order([{"product_id": catalog.mug_id, "quantity": 1}], gift_card_code=catalog.gift_card_code)
    external_id = orchestrator.create_payment_session(placed.order_id)
    provider_side = gateway.capture_order(external_id)
    headers, body = gateway.build_webhook("PAYMENT.CAPTURE.COMPLETED", external_order_id=external_id)
    barrier = threading.Barrier(2)

    def deliver():
        barrier.wait()
        return reconciler.handle(headers, body)

    def capture():
        barrier.wait()
        return orchestrator.capture(placed.order_id, external_id)

    with ThreadPoolExecutor(max_workers=2) as pool:
        delivered = pool.submit(deliver)
        captured = pool.submit(capture)
        result, outcome = delivered.result(), captured.result()

    assert result.status_code == 200 and result.body["handled"] is True
    assert (outcome.status, outcome.capture_id) == ("paid", provider_side.capture_id)
    assert _status(session_factory, placed.order_id) == ("confirmed", "paid")
    captures = _payments(session_factory, placed.order_id, "capture")
    assert [c.provider_transaction_id for c in captures] == [provider_side.capture_id]
    with session_factory() as db:
        assert db.query(GiftCardTransaction).filter(GiftCardTransaction.type == "redemption").count() == 1
        assert len(InventoryAdjuster(db).transactions(catalog.mug_id)) == 1
