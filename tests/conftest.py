"""Pytest fixtures for checkout tests: a file-backed SQLite database per test,
a seeded catalog and the in-memory fake payment gateway."""

from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from checkout.application.giftcards import GiftCardLedger
from checkout.application.refunds import RefundProcessor
from checkout.application.schemas import OrderCreate
from checkout.application.settlement import SettlementOrchestrator
from checkout.application.webhooks import WebhookReconciler
from checkout.core_settings import Settings
from checkout.domain.models import Product, ProductVariation, Coupon, TaxRate
from checkout.infrastructure.db import create_db_engine, build_session_factory, init_models
from checkout.infrastructure.gateway import FakeGateway
from checkout.main import create_app

WEBHOOK_SECRET = "test-secret"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'checkout.db'}",
        PAYMENT_GATEWAY="fake",
        FAKE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        FREE_SHIPPING_THRESHOLD=None,
        TAX_ENABLED=False,
        AUTO_CREATE_TABLES=True,
        RUN_MIGRATIONS=False,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database_url)
    init_models(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def gateway():
    return FakeGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def orchestrator(session_factory, gateway, settings):
    return SettlementOrchestrator(session_factory, gateway, settings)


@pytest.fixture
def refunds(session_factory, gateway, settings):
    return RefundProcessor(session_factory, gateway, settings)


@pytest.fixture
def reconciler(session_factory, gateway, orchestrator, refunds):
    return WebhookReconciler(session_factory, gateway, orchestrator, refunds)


@pytest.fixture
def catalog(session_factory):
    """Products, a variation, coupons, a tax rate and one 50.00 gift card."""
    with session_factory.begin() as db:
        shirt = Product(sku="TSHIRT", name="T-Shirt", price=Decimal("25.00"), stock_quantity=10,
                        track_inventory=True, allow_backorder=False, is_taxable=True,
                        is_gift_card=False, is_active=True)
        mug = Product(sku="MUG", name="Mug", price=Decimal("50.00"), stock_quantity=5,
                      track_inventory=True, allow_backorder=False, is_taxable=True,
                      is_gift_card=False, is_active=True)
        limited = Product(sku="LIMITED", name="Limited Print", price=Decimal("100.00"), stock_quantity=1,
                          track_inventory=True, allow_backorder=False, is_taxable=False,
                          is_gift_card=False, is_active=True)
        ebook = Product(sku="EBOOK", name="E-Book", price=Decimal("10.00"), stock_quantity=0,
                        track_inventory=False, allow_backorder=False, is_taxable=False,
                        is_gift_card=False, is_active=True)
        gift = Product(sku="GIFT-25", name="Gift Card $25", price=Decimal("25.00"), stock_quantity=0,
                       track_inventory=False, allow_backorder=False, is_taxable=False,
                       is_gift_card=True, is_active=True)
        db.add_all([shirt, mug, limited, ebook, gift])
        db.flush()
        large = ProductVariation(product_id=shirt.id, name="Large", sku="TSHIRT-L",
                                 price_modifier=Decimal("5.00"), stock_quantity=3, is_active=True)
        db.add(large)
        db.add_all([
            Coupon(code="SAVE20", type="percentage", value=Decimal("20"), minimum_order_amount=Decimal("0"),
                   maximum_discount=Decimal("15.00"), usage_count=0, is_active=True),
            Coupon(code="TENOFF", type="fixed_amount", value=Decimal("10.00"),
                   minimum_order_amount=Decimal("50.00"), usage_count=0, is_active=True),
            Coupon(code="SHIPFREE", type="free_shipping", value=Decimal("0"),
                   minimum_order_amount=Decimal("0"), usage_count=0, is_active=True),
            Coupon(code="ONCE", type="fixed_amount", value=Decimal("5.00"),
                   minimum_order_amount=Decimal("0"), usage_limit=1, usage_count=1, is_active=True),
            TaxRate(country="US", state="CA", rate=Decimal("8.250"), is_active=True),
            TaxRate(country="US", state="*", rate=Decimal("5.000"), is_active=True),
        ])
        card = GiftCardLedger(db).issue(Decimal("50.00"), purchaser_email="buyer@example.com")
        db.flush()
        return SimpleNamespace(
            shirt_id=shirt.id,
            large_id=large.id,
            mug_id=mug.id,
            limited_id=limited.id,
            ebook_id=ebook.id,
            gift_product_id=gift.id,
            gift_card_code=card.code,
        )


def order_payload(items, gift_card_code=None, coupon_code=None, state="NY", country="US"):
    return {
        "items": items,
        "shipping_address": {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "line1": "1 Analytical Way",
            "city": "New York",
            "state": state,
            "zip": "10001",
            "country": country,
        },
        "email": "ada@example.com",
        "gift_card_code": gift_card_code,
        "coupon_code": coupon_code,
    }


@pytest.fixture
def order_create():
    """Build an OrderCreate request body."""
    def _build(items, **kwargs):
        return OrderCreate(**order_payload(items, **kwargs))
    return _build


@pytest.fixture
def place_order(orchestrator):
    """Create an order and return the PlacedOrder."""
    def _place(items, **kwargs):
        return orchestrator.create_order(OrderCreate(**order_payload(items, **kwargs)))
    return _place


@pytest.fixture
def paid_order(orchestrator, place_order, catalog):
    """100.00 of goods + 15.00 shipping, 50.00 from the gift card: 65.00 captured."""
    placed = place_order(
        [{"product_id": catalog.shirt_id, "quantity": 2}, {"product_id": catalog.mug_id, "quantity": 1}],
        gift_card_code=catalog.gift_card_code,
    )
    external_id = orchestrator.create_payment_session(placed.order_id)
    outcome = orchestrator.capture(placed.order_id, external_id)
    return SimpleNamespace(order_id=placed.order_id, external_order_id=external_id, capture_id=outcome.capture_id)


@pytest.fixture
def client(settings, engine, gateway):
    app = create_app(settings=settings, engine=engine, gateway=gateway)
    with TestClient(app) as c:
        yield c
