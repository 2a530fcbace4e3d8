import json
from datetime import datetime, timedelta

import pytest

from checkout import tasks
from checkout.application.orders import OrderLedger
from checkout.domain.models import Order


def _last_line(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


@pytest.fixture(autouse=True)
def task_settings(settings, monkeypatch):
    monkeypatch.setattr(tasks, "get_settings", lambda: settings)
    return settings


def test_expire_pending_cancels_stale_orders(place_order, session_factory, catalog, capsys):
    stale = place_order([{"product_id": catalog.mug_id, "quantity": 1}])
    fresh = place_order([{"product_id": catalog.mug_id, "quantity": 1}])
    with session_factory.begin() as db:
        db.query(Order).filter(Order.id == stale.order_id).update(
            {"created_at": datetime.utcnow() - timedelta(hours=2)})

    assert tasks.main(["expire-pending", "--ttl-minutes", "60"]) == 0
    assert _last_line(capsys) == {"expired": [stale.order_id]}

    with session_factory() as db:
        ledger = OrderLedger(db)
        assert ledger.get(stale.order_id).status == "cancelled"
        assert ledger.get(fresh.order_id).status == "pending"


def test_expire_pending_without_ttl_keeps_orders(place_order, session_factory, catalog, capsys):
    placed = place_order([{"product_id": catalog.mug_id, "quantity": 1}])
    assert tasks.main(["expire-pending"]) == 0
    assert "expired" not in capsys.readouterr().out
    with session_factory() as db:
        assert OrderLedger(db).get(placed.order_id).status == "pending"


def test_reconcile_gift_card_command(paid_order, catalog, capsys):
    assert tasks.main(["reconcile-gift-card", catalog.gift_card_code]) == 0
    report = _last_line(capsys)
    assert report["consistent"] is True
    assert report["current_balance"] == "0.00"
