from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from checkout.infrastructure.db import get_db
from checkout.application.catalog import CatalogService
from checkout.application.giftcards import GiftCardLedger
from checkout.application.orders import OrderLedger
from checkout.application.refunds import RefundProcessor
from checkout.application.settlement import SettlementOrchestrator
from checkout.application.webhooks import WebhookReconciler
from checkout.application.schemas import (
    OrderCreate,
    OrderCreated,
    OrderRead,
    PaymentSessionCreate,
    PaymentSessionRead,
    CaptureRequest,
    CompleteRequest,
    CaptureRead,
    RefundRequest,
    RefundRead,
    CancelRequest,
    ShipRequest,
    GiftCardValidate,
    GiftCardRead,
    CouponValidate,
    CouponRead,
)

def get_orchestrator(request: Request) -> SettlementOrchestrator:
    return request.app.state.orchestrator

def get_refunds(request: Request) -> RefundProcessor:
    return request.app.state.refunds

def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler

orders_router = APIRouter(prefix="/orders", tags=["orders"])

@orders_router.post("", response_model=OrderCreated, status_code=201)
def create_order(payload: OrderCreate, orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    placed = orchestrator.create_order(payload)
    return OrderCreated(order_id=placed.order_id, order_number=placed.order_number, totals=placed.totals)

@orders_router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db)):
    return OrderLedger(db).get(order_id)

@orders_router.get("/number/{order_number}", response_model=OrderRead)
def get_order_by_number(order_number: str, db: Session = Depends(get_db)):
    return OrderLedger(db).get_by_number(order_number)

payments_router = APIRouter(prefix="/payments", tags=["payments"])

@payments_router.post("/create-session", response_model=PaymentSessionRead, status_code=201)
def create_payment_session(payload: PaymentSessionCreate,
                           orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    external_order_id = orchestrator.create_payment_session(payload.order_id)
    return PaymentSessionRead(order_id=payload.order_id, external_order_id=external_order_id)

@payments_router.post("/capture", response_model=CaptureRead)
def capture_payment(payload: CaptureRequest, orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    return orchestrator.capture(payload.order_id, payload.external_order_id)

@payments_router.post("/complete", response_model=CaptureRead)
def complete_order(payload: CompleteRequest, orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    """Settle an order fully covered by a coupon or gift card."""
    return orchestrator.complete_without_payment(payload.order_id)

webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

@webhooks_router.post("/payment-provider")
async def payment_provider_webhook(request: Request):
    # signature verification needs the exact bytes the provider signed
    raw_body = await request.body()
    reconciler = get_reconciler(request)
    result = await run_in_threadpool(reconciler.handle, dict(request.headers), raw_body)
    return JSONResponse(status_code=result.status_code, content=result.body)

gift_cards_router = APIRouter(prefix="/gift-cards", tags=["gift-cards"])

@gift_cards_router.post("/validate", response_model=GiftCardRead)
def validate_gift_card(payload: GiftCardValidate, db: Session = Depends(get_db)):
    return GiftCardLedger(db).validate(payload.code)

@gift_cards_router.get("/{code}", response_model=GiftCardRead)
def get_gift_card(code: str, db: Session = Depends(get_db)):
    return GiftCardLedger(db).get(code)

coupons_router = APIRouter(prefix="/coupons", tags=["coupons"])

@coupons_router.post("/validate", response_model=CouponRead)
def validate_coupon(payload: CouponValidate, db: Session = Depends(get_db)):
    return CatalogService(db).validate_coupon(payload.code, payload.subtotal)

admin_router = APIRouter(prefix="/admin/orders", tags=["admin"])

@admin_router.post("/{order_id}/refund", response_model=RefundRead)
def refund_order(order_id: int, payload: RefundRequest, refunds: RefundProcessor = Depends(get_refunds)):
    return refunds.refund(
        order_id,
        amount=payload.amount,
        reason=payload.reason,
        restock=payload.restock,
        restock_items=payload.restock_items,
    )

@admin_router.post("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(order_id: int, payload: CancelRequest, db: Session = Depends(get_db)):
    order = OrderLedger(db).cancel(order_id, reason=payload.reason, actor="admin")
    db.commit()
    return order

@admin_router.post("/{order_id}/ship", response_model=OrderRead)
def ship_order(order_id: int, payload: ShipRequest, db: Session = Depends(get_db)):
    order = OrderLedger(db).mark_shipped(order_id, carrier=payload.carrier,
                                         tracking_number=payload.tracking_number)
    db.commit()
    return order

@admin_router.post("/{order_id}/deliver", response_model=OrderRead)
def deliver_order(order_id: int, db: Session = Depends(get_db)):
    order = OrderLedger(db).mark_delivered(order_id)
    db.commit()
    return order

@admin_router.get("/{order_id}/reconcile-gift-card")
def reconcile_gift_card(order_id: int, db: Session = Depends(get_db)):
    order = OrderLedger(db).get(order_id)
    if not order.gift_card_code:
        return {"order_id": order_id, "gift_card": None}
    return {"order_id": order_id, "gift_card": GiftCardLedger(db).reconcile(order.gift_card_code)}

routers = [orders_router, payments_router, webhooks_router, gift_cards_router, coupons_router, admin_router]
