import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from checkout.application.giftcards import GiftCardLedger
from checkout.application.inventory import InventoryAdjuster
from checkout.application.orders import OrderLedger
from checkout.application.settlement import SettlementOrchestrator
from checkout.domain.errors import ConflictError, GatewayError, PaymentError, ValidationError, InsufficientStock
from checkout.domain.models import CouponUsage, Coupon, GiftCard, GiftCardTransaction, PaymentTransaction, Product
from checkout.infrastructure.gateway import CaptureResult

def _payments(session_factory, order_id, type=None):
    with session_factory() as db:
        query = db.query(PaymentTransaction).filter(PaymentTransaction.order_id == order_id)
        if type:
            query = query.filter(PaymentTransaction.type == type)
        return query.order_by(PaymentTransaction.id).all()

def _order(session_factory, order_id):
    with session_factory() as db:
        order = OrderLedger(db).get(order_id)
        order.items, order.history
        return order

def test_create_order_prices_and_persists(place_order, session_factory, catalog):
    placed = place_order(
        [{"product_id": catalog.shirt_id, "variation_id": catalog.large_id, "quantity": 2}],
        coupon_code="tenoff",
    )
    assert placed.totals.subtotal == Decimal("60.00")
    assert placed.totals.discount_total == Decimal("10.00")
    assert placed.totals.grand_total == Decimal("65.00")
    order = _order(session_factory, placed.order_id)
    assert order.coupon_code == "TENOFF"
    assert order.items[0].variation_name == "Large"
    assert order.items[0].sku == "TSHIRT-L"

def test_create_order_rejects_unknown_product_and_bad_coupon(place_order, catalog):
    with pytest.raises(ValidationError):
        place_order([{"product_id": 9999, "quantity": 1}])
    with pytest.raises(ValidationError):
        place_order([{"product_id": catalog.shirt_id, "quantity": 1}], coupon_code="ONCE")

def test_create_order_rejects_quantity_over_stock(place_order, catalog):
    with pytest.raises(InsufficientStock):
        place_order([{"product_id": catalog.mug_id, "quantity": 6}])

def test_tax_uses_most_specific_rate(session_factory, gateway, settings, catalog, order_create):
    taxed = SettlementOrchestrator(session_factory, gateway, settings.model_copy(update={"TAX_ENABLED": True}))
    ca = taxed.create_order(order_create([{"product_id": catalog.mug_id, "quantity": 1}], state="CA"))
    ny = taxed.create_order(order_create([{"product_id": catalog.mug_id, "quantity": 1}], state="NY"))
    # 4.125 rounds half to even
    assert ca.totals.tax_total == Decimal("4.12")
    assert ny.totals.tax_total == Decimal("2.50")

def test_capture_settles_every_ledger(paid_order, session_factory, catalog):
    order = _order(session_factory, paid_order.order_id)
    assert (order.status, order.payment_status) == ("confirmed", "paid")
    assert order.payment_transaction_id == paid_order.capture_id
    assert order.paid_at is not None

    captures = _payments(session_factory, order.id, "capture")
    assert len(captures) == 1
    assert captures[0].amount == Decimal("65.00")
    assert captures[0].status == "completed"

    with session_factory() as db:
        card = GiftCardLedger(db).get(catalog.gift_card_code)
        assert card.current_balance == Decimal("0.00")
        assert card.status == "depleted"
        stock = {p.id: p.stock_quantity for p in db.query(Product).all()}
        assert stock[catalog.shirt_id] == 8
        assert stock[catalog.mug_id] == 4
        assert len(InventoryAdjuster(db).transactions(catalog.shirt_id)) == 1

def test_concurrent_captures_both_succeed_with_one_capture_row(orchestrator, place_order, session_factory, gateway, catalog):
    placed = place_order([{"product_id": catalog.mug_id, "quantity": 1}], gift_card_code=catalog.gift_card_code)
    external_id = orchestrator.create_payment_session(placed.order_id)
    barrier = threading.Barrier(2)

    def capture():
        barrier.wait()
        return orchestrator.capture(placed.order_id, external_id)

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(lambda _: capture(), range(2)))

    assert all(o.status == "paid" for o in outcomes)
    assert len({o.capture_id for o in outcomes}) == 1
    assert len(_payments(session_factory, placed.order_id, "capture")) == 1
    with session_factory() as db:
        assert db.query(GiftCardTransaction).filter(GiftCardTransaction.type == "redemption").count() == 1
        assert len(InventoryAdjuster(db).transactions(catalog.mug_id)) == 1

def test_capture_of_paid_order_is_idempotent(paid_order, orchestrator, session_factory):
    outcome = orchestrator.capture(paid_order.order_id, paid_order.external_order_id)
    assert outcome.already_applied is True
    assert outcome.capture_id == paid_order.capture_id
    assert len(_payments(session_factory, paid_order.order_id)) == 1

def test_capture_of_failed_order_is_a_conflict(orchestrator, place_order, gateway, session_factory, catalog):
    placed = place_order([{"product_id": catalog.shirt_id, "quantity": 1}])
    external_id = orchestrator.create_payment_session(placed.order_id)
    gateway.fail_next("capture_order", GatewayError.DECLINED)
    with pytest.raises(GatewayError):
        orchestrator.capture(placed.order_id, external_id)
    rows_before = len(_payments(session_factory, placed.order_id))

    with pytest.raises(ConflictError):
        orchestrator.capture(placed.order_id, external_id)
    assert len(_payments(session_factory, placed.order_id)) == rows_before

def test_declined_capture_fails_the_order(orchestrator, place_order, gateway, session_factory, catalog):
    placed = place_order([{"product_id": catalog.mug_id, "quantity": 1}], gift_card_code=catalog.gift_card_code)
    external_id = orchestrator.create_payment_session(placed.order_id)
    gateway.fail_next("capture_order", GatewayError.DECLINED)

    with pytest.raises(GatewayError) as exc:
        orchestrator.capture(placed.order_id, external_id)
    assert exc.value.kind == GatewayError.DECLINED

    order = _order(session_factory, placed.order_id)
    assert (order.status, order.payment_status) == ("failed", "failed")
    failed = _payments(session_factory, placed.order_id)
    assert [(p.type, p.status) for p in failed] == [("capture", "failed")]
    with session_factory() as db:
        assert GiftCardLedger(db).get(catalog.gift_card_code).current_balance == Decimal("50.00")

def test_timeout_leaves_order_pending_and_retry_recovers(orchestrator, place_order, gateway, session_factory, catalog):
    placed = place_order([{"product_id": catalog.shirt_id, "quantity": 1}])
    external_id = orchestrator.create_payment_session(placed.order_id)
    gateway.fail_next("capture_order", GatewayError.NETWORK_TIMEOUT)

    with pytest.raises(GatewayError) as exc:
        orchestrator.capture(placed.order_id, external_id)
    assert exc.value.retryable is True
    assert _order(session_factory, placed.order_id).payment_status == "pending"

    outcome = orchestrator.capture(placed.order_id, external_id)
    assert outcome.status == "paid"

def test_already_captured_recovers_capture_details(orchestrator, place_order, gateway, session_factory, catalog):
    placed = place_order([{"product_id": catalog.shirt_id, "quantity": 1}])
    external_id = orchestrator.create_payment_session(placed.order_id)
    provider_side = gateway.capture_order(external_id)

    outcome = orchestrator.capture(placed.order_id, external_id)
    assert outcome.status == "paid"
    assert outcome.capture_id == provider_side.capture_id
    assert len(gateway.calls_to("get_capture")) == 1

def test_capture_rejects_foreign_external_order(orchestrator, place_order, catalog):
    placed = place_order([{"product_id": catalog.shirt_id, "quantity": 1}])
    orchestrator.create_payment_session(placed.order_id)
    with pytest.raises(ValidationError):
        orchestrator.capture(placed.order_id, "SOMEONE-ELSES")

def test_apply_capture_twice_applies_side_effects_once(orchestrator, place_order, gateway, session_factory, catalog):
    placed = place_order([{"product_id": catalog.mug_id, "quantity": 1}])
    external_id = orchestrator.create_payment_session(placed.order_id)
    capture = gateway.capture_order(external_id)

    first = orchestrator.apply_capture(placed.order_id, capture, actor="test")
    second = orchestrator.apply_capture(placed.order_id, capture, actor="test")
    assert first.already_applied is False
    assert second.already_applied is True
    assert len(_payments(session_factory, placed.order_id, "capture")) == 1
    with session_factory() as db:
        assert len(InventoryAdjuster(db).transactions(catalog.mug_id)) == 1

def test_capture_that_cannot_be_settled_is_refunded(orchestrator, place_order, gateway, session_factory, catalog):
    first = place_order([{"product_id": catalog.limited_id, "quantity": 1}])
    second = place_order([{"product_id": catalog.limited_id, "quantity": 1}])
    ext_first = orchestrator.create_payment_session(first.order_id)
    ext_second = orchestrator.create_payment_session(second.order_id)
    orchestrator.capture(first.order_id, ext_first)

    with pytest.raises(InsufficientStock):
        orchestrator.capture(second.order_id, ext_second)

    order = _order(session_factory, second.order_id)
    assert (order.status, order.payment_status) == ("failed", "failed")
    refunds = [p for p in _payments(session_factory, second.order_id, "refund") if p.status == "completed"]
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("115.00")
    assert len(gateway.calls_to("refund_payment")) == 1
    with session_factory() as db:
        assert db.get(Product, catalog.limited_id).stock_quantity == 0

def test_coupon_usage_is_recorded_once(orchestrator, place_order, session_factory, catalog):
    placed = place_order([{"product_id": catalog.mug_id, "quantity": 1}], coupon_code="SAVE20")
    external_id = orchestrator.create_payment_session(placed.order_id)
    orchestrator.capture(placed.order_id, external_id)
    orchestrator.capture(placed.order_id, external_id)
    with session_factory() as db:
        assert db.query(CouponUsage).count() == 1
        assert db.query(Coupon).filter(Coupon.code == "SAVE20").one().usage_count == 1

def test_gift_card_products_issue_new_cards(orchestrator, place_order, session_factory, catalog):
    placed = place_order([{"product_id": catalog.gift_product_id, "quantity": 2}])
    external_id = orchestrator.create_payment_session(placed.order_id)
    orchestrator.capture(placed.order_id, external_id)
    with session_factory() as db:
        cards = db.query(GiftCard).filter(GiftCard.purchased_order_id == placed.order_id).all()
        assert len(cards) == 2
        assert all(c.current_balance == Decimal("25.00") for c in cards)
        assert all(c.purchaser_email == "ada@example.com" for c in cards)

def test_notifier_receives_confirmation(session_factory, gateway, settings, catalog, order_create):
    sent = []
    orchestrator = SettlementOrchestrator(session_factory, gateway, settings, notifier=lambda e, p: sent.append((e, p)))
    placed = orchestrator.create_order(order_create([{"product_id": catalog.ebook_id, "quantity": 1}]))
    orchestrator.capture(placed.order_id, orchestrator.create_payment_session(placed.order_id))
    assert [e for e, _ in sent] == ["order_confirmed"]
    assert sent[0][1]["order_number"] == placed.order_number
    assert sent[0][1]["grand_total"] == "25.00"

def test_failing_notifier_does_not_undo_settlement(session_factory, gateway, settings, catalog, order_create):
    def broken(event, payload):
        raise RuntimeError("smtp down")
    orchestrator = SettlementOrchestrator(session_factory, gateway, settings, notifier=broken)
    placed = orchestrator.create_order(order_create([{"product_id": catalog.ebook_id, "quantity": 1}]))
    outcome = orchestrator.capture(placed.order_id, orchestrator.create_payment_session(placed.order_id))
    assert outcome.status == "paid"

def test_zero_total_order_completes_without_gateway(orchestrator, place_order, session_factory, gateway, catalog):
    placed = place_order([{"product_id": catalog.ebook_id, "quantity": 1}], gift_card_code=catalog.gift_card_code)
    assert placed.totals.grand_total == Decimal("0.00")
    assert placed.totals.gift_card_amount == Decimal("25.00")

    with pytest.raises(ValidationError):
        orchestrator.create_payment_session(placed.order_id)
    outcome = orchestrator.complete_without_payment(placed.order_id)
    assert outcome.status == "paid"
    assert gateway.calls == []

    order = _order(session_factory, placed.order_id)
    assert order.payment_provider == "none"
    assert _payments(session_factory, placed.order_id) == []
    with session_factory() as db:
        assert GiftCardLedger(db).get(catalog.gift_card_code).current_balance == Decimal("25.00")

def test_complete_without_payment_requires_zero_total(orchestrator, place_order, catalog):
    placed = place_order([{"product_id": catalog.ebook_id, "quantity": 1}])
    with pytest.raises(PaymentError):
        orchestrator.complete_without_payment(placed.order_id)

def test_apply_capture_rejects_amount_mismatch(orchestrator, place_order, session_factory, catalog):
    placed = place_order([{"product_id": catalog.ebook_id, "quantity": 1}])
    external_id = orchestrator.create_payment_session(placed.order_id)
    bogus = CaptureResult(status="COMPLETED", external_order_id=external_id, capture_id="CAP-X",
                          amount=Decimal("1.00"))
    with pytest.raises(ConflictError):
        orchestrator.apply_capture(placed.order_id, bogus)
    assert _order(session_factory, placed.order_id).payment_status == "pending"

def test_coupon_limit_is_enforced_at_capture(orchestrator, place_order, gateway, session_factory, catalog):
    with session_factory.begin() as db:
        db.add(Coupon(code="LASTONE", type="fixed_amount", value=Decimal("5.00"), minimum_order_amount=Decimal("0"),
                      usage_limit=1, usage_count=0, is_active=True))
    first = place_order([{"product_id": catalog.mug_id, "quantity": 1}], coupon_code="LASTONE")
    second = place_order([{"product_id": catalog.mug_id, "quantity": 1}], coupon_code="LASTONE")
    ext_first = orchestrator.create_payment_session(first.order_id)
    ext_second = orchestrator.create_payment_session(second.order_id)
    orchestrator.capture(first.order_id, ext_first)

    with pytest.raises(ConflictError) as exc:
        orchestrator.capture(second.order_id, ext_second)
    assert exc.value.code == "coupon_exhausted"

    order = _order(session_factory, second.order_id)
    assert (order.status, order.payment_status) == ("failed", "failed")
    refunds = [p for p in _payments(session_factory, second.order_id, "refund") if p.status == "completed"]
    assert [r.amount for r in refunds] == [Decimal("60.00")]
    with session_factory() as db:
        coupon = db.query(Coupon).filter(Coupon.code == "LASTONE").one()
        assert (coupon.usage_count, coupon.usage_limit) == (1, 1)
        assert db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon.id).count() == 1
        # the second order's stock decrement was rolled back with it
        assert db.get(Product, catalog.mug_id).stock_quantity == 4
