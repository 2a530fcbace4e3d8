from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from checkout.application.giftcards import GiftCardLedger, normalize_code
from checkout.domain.errors import GiftCardUnavailable, InsufficientBalance
from checkout.domain.models import GiftCard, GiftCardTransaction

def _issue(session_factory, amount="50.00", **kwargs):
    with session_factory.begin() as db:
        return GiftCardLedger(db).issue(Decimal(amount), **kwargs).code

def _card(session_factory, code):
    with session_factory() as db:
        return GiftCardLedger(db).get(code)

def test_issue_creates_active_card_with_purchase_row(session_factory):
    code = _issue(session_factory, purchaser_email="a@example.com")
    assert code.startswith("GC-") and len(code) == 22
    with session_factory() as db:
        ledger = GiftCardLedger(db)
        card = ledger.get(code.lower())
        assert card.status == "active"
        assert card.current_balance == Decimal("50.00")
        assert card.expires_at > datetime.utcnow() + timedelta(days=364)
        rows = ledger.transactions(code)
        assert [r.type for r in rows] == ["purchase"]

def test_redeem_debits_and_records(session_factory):
    code = _issue(session_factory)
    with session_factory.begin() as db:
        txn = GiftCardLedger(db).redeem(code, Decimal("20.00"), order_id=None)
        assert (txn.balance_before, txn.balance_after) == (Decimal("50.00"), Decimal("30.00"))
    card = _card(session_factory, code)
    assert card.current_balance == Decimal("30.00")
    assert card.last_used_at is not None

def test_redeem_full_balance_depletes_card(session_factory):
    code = _issue(session_factory, "25.00")
    with session_factory.begin() as db:
        GiftCardLedger(db).redeem(code, Decimal("25.00"))
    card = _card(session_factory, code)
    assert card.status == "depleted"
    assert card.current_balance == Decimal("0.00")
    with session_factory() as db:
        with pytest.raises(GiftCardUnavailable) as exc:
            GiftCardLedger(db).validate(code)
        assert exc.value.code == "inactive"

def test_redeem_more_than_balance_is_rejected(session_factory):
    code = _issue(session_factory, "10.00")
    with session_factory.begin() as db:
        with pytest.raises(InsufficientBalance):
            GiftCardLedger(db).redeem(code, Decimal("10.01"))
    assert _card(session_factory, code).current_balance == Decimal("10.00")

def test_unknown_disabled_and_expired_cards(session_factory):
    disabled = _issue(session_factory)
    expired = _issue(session_factory)
    with session_factory.begin() as db:
        db.query(GiftCard).filter(GiftCard.code == disabled).update({"status": "disabled"})
        db.query(GiftCard).filter(GiftCard.code == expired).update(
            {"expires_at": datetime.utcnow() - timedelta(days=1)})

    with session_factory.begin() as db:
        ledger = GiftCardLedger(db)
        with pytest.raises(GiftCardUnavailable) as exc:
            ledger.redeem("GC-NOPE-NOPE-NOPE-NOPE", Decimal("1.00"))
        assert exc.value.code == "not_found"
        assert exc.value.status_code == 404
        with pytest.raises(GiftCardUnavailable) as exc:
            ledger.redeem(disabled, Decimal("1.00"))
        assert exc.value.code == "inactive"
        with pytest.raises(GiftCardUnavailable) as exc:
            ledger.validate(expired)
        assert exc.value.code == "expired"

def test_concurrent_redemptions_cannot_double_spend(session_factory):
    code = _issue(session_factory, "50.00")

    def spend():
        try:
            with session_factory.begin() as db:
                GiftCardLedger(db).redeem(code, Decimal("40.00"))
            return "ok"
        except InsufficientBalance:
            return "insufficient"

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: spend(), range(4)))

    assert results.count("ok") == 1
    assert results.count("insufficient") == 3
    card = _card(session_factory, code)
    assert card.current_balance == Decimal("10.00")
    with session_factory() as db:
        redemptions = db.query(GiftCardTransaction).filter(GiftCardTransaction.type == "redemption").count()
        assert redemptions == 1

def test_credit_is_capped_at_initial_balance(session_factory):
    code = _issue(session_factory, "50.00")
    with session_factory.begin() as db:
        ledger = GiftCardLedger(db)
        ledger.redeem(code, Decimal("50.00"))
        txn = ledger.credit(code, Decimal("80.00"), notes="refund")
        assert txn.amount == Decimal("50.00")
        assert ledger.credit(code, Decimal("1.00")) is None
    card = _card(session_factory, code)
    assert card.current_balance == Decimal("50.00")
    assert card.status == "active"

def test_adjust_may_raise_initial_balance(session_factory):
    code = _issue(session_factory, "20.00")
    with session_factory.begin() as db:
        ledger = GiftCardLedger(db)
        ledger.adjust(code, Decimal("5.00"), notes="goodwill")
        with pytest.raises(InsufficientBalance):
            ledger.adjust(code, Decimal("-30.00"))
    card = _card(session_factory, code)
    assert card.current_balance == Decimal("25.00")
    assert card.initial_balance == Decimal("25.00")

def test_reconcile_replays_the_ledger(session_factory):
    code = _issue(session_factory, "50.00")
    with session_factory.begin() as db:
        ledger = GiftCardLedger(db)
        ledger.redeem(code, Decimal("12.34"))
        ledger.redeem(code, Decimal("7.66"))
        ledger.credit(code, Decimal("5.00"))
    with session_factory() as db:
        report = GiftCardLedger(db).reconcile(code)
    assert report["consistent"] is True
    assert report["current_balance"] == Decimal("35.00")
    assert report["ledger_balance"] == Decimal("35.00")
    assert report["transactions"] == 4

def test_normalize_code():
    assert normalize_code("  gc-abcd-efgh ") == "GC-ABCD-EFGH"
