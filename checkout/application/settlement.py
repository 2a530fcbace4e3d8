"""Settlement orchestration.

Sequences pricing, the order ledger, the payment gateway and the gift card /
inventory ledgers. Gateway calls always happen outside a database
transaction; everything a capture changes locally is applied by
:meth:`SettlementOrchestrator.apply_capture` inside a single transaction,
which both the direct capture call and the webhook reconciler go through.
"""

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import sessionmaker

from checkout.application.catalog import CatalogService
from checkout.application.giftcards import GiftCardLedger
from checkout.application.inventory import InventoryAdjuster
from checkout.application.orders import OrderLedger
from checkout.application.pricing import calculate_totals, ShippingPolicy, OrderTotals, money, ZERO
from checkout.application.schemas import OrderCreate
from checkout.domain.enums import (
    PaymentStatus,
    OrderStatus,
    TransactionType,
    TransactionStatus,
    SETTLED_PAYMENT_STATUSES,
)
from checkout.domain.errors import ConflictError, GatewayError, PaymentError, ValidationError
from checkout.domain.models import Coupon, CouponUsage, Order, PaymentTransaction
from checkout.infrastructure.gateway.port import PaymentGateway, CaptureResult, CAPTURE_STATUS_COMPLETED
from shared.core.logging_config import get_logger, log_payment_event, set_request_context

logger = get_logger(__name__)

NO_PAYMENT_PROVIDER = "none"


@dataclass(frozen=True)
class PlacedOrder:
    order_id: int
    order_number: str
    totals: OrderTotals


@dataclass(frozen=True)
class CaptureOutcome:
    order_id: int
    order_number: str
    status: str
    capture_id: Optional[str]
    amount: Decimal
    already_applied: bool = False


class SettlementOrchestrator:
    def __init__(self, session_factory: sessionmaker, gateway: PaymentGateway, settings,
                 notifier: Optional[Callable[[str, dict], None]] = None):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings
        self.notifier = notifier

    def shipping_policy(self) -> ShippingPolicy:
        return ShippingPolicy(
            flat_rate=self.settings.SHIPPING_FLAT_RATE,
            free_threshold=self.settings.FREE_SHIPPING_THRESHOLD,
        )

    def _gift_cards(self, db) -> GiftCardLedger:
        return GiftCardLedger(db, validity_days=self.settings.GIFT_CARD_VALIDITY_DAYS)

    # Order creation

    def create_order(self, data: OrderCreate) -> PlacedOrder:
        address = data.shipping_address.model_dump()
        with self.session_factory.begin() as db:
            catalog = CatalogService(db)
            lines = catalog.resolve_lines(data.items)
            coupon = catalog.coupon_terms(data.coupon_code)
            tax_rate = None
            if self.settings.TAX_ENABLED and address.get("country", "US") == self.settings.TAX_COUNTRY:
                tax_rate = catalog.tax_rate_for(self.settings.TAX_COUNTRY, address.get("state"))

            gift_card_code = None
            gift_card_balance = ZERO
            if data.gift_card_code:
                card = self._gift_cards(db).validate(data.gift_card_code)
                gift_card_code = card.code
                gift_card_balance = money(card.current_balance)

            totals = calculate_totals(
                lines,
                coupon=coupon,
                tax_rate=tax_rate,
                gift_card_balance=gift_card_balance,
                shipping_policy=self.shipping_policy(),
            )
            order = OrderLedger(db).create(
                totals,
                email=data.email,
                shipping_address=address,
                currency=self.settings.CURRENCY,
                phone=data.phone,
                gift_card_code=gift_card_code,
                customer_notes=data.customer_notes,
            )
            return PlacedOrder(order_id=order.id, order_number=order.order_number, totals=totals)

    # Payment session

    def create_payment_session(self, order_id: int) -> str:
        with self.session_factory.begin() as db:
            order = OrderLedger(db).get(order_id)
            self._ensure_awaiting_payment(order)
            if money(order.grand_total) <= ZERO:
                raise ValidationError(
                    "Order total is covered; complete it without a payment session",
                    details={"order_id": order_id},
                )
            amount = money(order.grand_total)
            currency = order.currency
            items = [
                {
                    "name": item.name + (f" ({item.variation_name})" if item.variation_name else ""),
                    "sku": item.sku,
                    "unit_price": item.unit_price,
                    "quantity": item.quantity,
                }
                for item in order.items
            ]
            address = {
                "first_name": order.customer_first_name,
                "last_name": order.customer_last_name,
                "line1": order.shipping_line1,
                "line2": order.shipping_line2,
                "city": order.shipping_city,
                "state": order.shipping_state,
                "zip": order.shipping_zip,
                "country": order.shipping_country,
            }

        external_order_id = self.gateway.create_order(amount, currency, items, address, str(order_id))

        with self.session_factory.begin() as db:
            ledger = OrderLedger(db)
            ledger.attach_external_order(ledger.get_for_update(order_id), external_order_id, self.gateway.provider)

        log_payment_event("payment_session_created", order_id=order_id,
                          external_order_id=external_order_id, amount=str(amount))
        return external_order_id

    def _ensure_awaiting_payment(self, order: Order):
        if order.payment_status != PaymentStatus.PENDING.value or order.status != OrderStatus.PENDING.value:
            raise ConflictError(
                "Order is not awaiting payment",
                details={"order_id": order.id, "status": order.status, "payment_status": order.payment_status},
            )

    # Capture

    def capture(self, order_id: int, external_order_id: str) -> CaptureOutcome:
        set_request_context(order_id=order_id)
        with self.session_factory.begin() as db:
            order = OrderLedger(db).get(order_id)
            if order.external_order_id != external_order_id:
                raise ValidationError(
                    "External order does not belong to this order",
                    details={"order_id": order_id, "external_order_id": external_order_id},
                )
            if order.payment_status == PaymentStatus.PAID.value:
                # retried or concurrent capture of an order that is already settled
                return self._outcome(order, already_applied=True)
            self._ensure_awaiting_payment(order)

        try:
            result = self.gateway.capture_order(external_order_id)
        except GatewayError as e:
            if e.kind == GatewayError.ALREADY_CAPTURED:
                logger.info(
                    "External order already captured, recovering capture details",
                    extra={'extra_fields': {'order_id': order_id, 'external_order_id': external_order_id}}
                )
                result = self.gateway.get_capture(external_order_id)
            elif e.kind == GatewayError.DECLINED:
                self.fail_payment(order_id, f"Payment declined: {e.message}", actor="customer")
                raise
            else:
                # outcome unknown; the order stays pending and the capture may be retried
                logger.error(
                    "Capture failed with transient gateway error",
                    extra={'extra_fields': {'order_id': order_id, 'kind': e.kind, 'retryable': e.retryable}}
                )
                raise

        if result.status != CAPTURE_STATUS_COMPLETED:
            self.fail_payment(order_id, f"Capture not completed: {result.status}", actor="customer",
                              event_reference=result.capture_id)
            raise GatewayError(GatewayError.DECLINED, "Payment capture was not completed",
                               details={"status": result.status})

        return self.settle(order_id, result, actor="customer")

    def complete_without_payment(self, order_id: int) -> CaptureOutcome:
        """Settle an order whose total is fully covered by discounts or a gift card."""
        with self.session_factory.begin() as db:
            order = OrderLedger(db).get(order_id)
            if money(order.grand_total) > ZERO:
                raise PaymentError("Order requires payment", details={"order_id": order_id, "grand_total": str(order.grand_total)})
        capture = CaptureResult(status=CAPTURE_STATUS_COMPLETED, external_order_id=None, amount=ZERO)
        return self.apply_capture(order_id, capture, actor="customer", provider=NO_PAYMENT_PROVIDER)

    def settle(self, order_id: int, capture: CaptureResult, actor: str) -> CaptureOutcome:
        """apply_capture, refunding the provider when the capture cannot be settled locally."""
        try:
            return self.apply_capture(order_id, capture, actor=actor)
        except ConflictError as e:
            self._compensate(order_id, capture, e)
            raise

    def apply_capture(self, order_id: int, capture: CaptureResult, actor: str = "system",
                      provider: Optional[str] = None) -> CaptureOutcome:
        """Apply every local side effect of a completed capture exactly once.

        Safe to call any number of times, concurrently, for the same
        ``(external_order_id, capture_id)``: the order claim lets one caller
        through and every other caller gets the settled order back with
        ``already_applied=True``.
        """
        if not capture.completed:
            raise PaymentError("Capture is not completed", details={"status": capture.status})
        provider = provider or self.gateway.provider

        with self.session_factory.begin() as db:
            ledger = OrderLedger(db)
            order = ledger.get(order_id)
            if capture.external_order_id and order.external_order_id \
                    and capture.external_order_id != order.external_order_id:
                raise ConflictError(
                    "Capture belongs to a different external order",
                    details={"order_id": order_id, "external_order_id": capture.external_order_id},
                )
            if capture.capture_id is not None and money(capture.amount) != money(order.grand_total):
                raise ConflictError(
                    "Captured amount does not match order total",
                    details={"order_id": order_id, "captured": str(capture.amount), "grand_total": str(order.grand_total)},
                )

            claimed = ledger.claim_for_capture(
                order_id,
                capture.capture_id,
                payer_id=capture.payer_id,
                provider=provider,
                actor=actor,
                notes=f"Payment captured via {provider}",
            )
            if not claimed:
                order = ledger.get(order_id)
                db.refresh(order)
                if order.payment_status in SETTLED_PAYMENT_STATUSES \
                        and order.payment_transaction_id == capture.capture_id:
                    return self._outcome(order, already_applied=True)
                raise ConflictError(
                    "Order is not awaiting payment",
                    details={"order_id": order_id, "status": order.status, "payment_status": order.payment_status},
                )

            order = ledger.get(order_id)
            if capture.capture_id is not None:
                db.add(PaymentTransaction(
                    order_id=order.id,
                    provider=provider,
                    type=TransactionType.CAPTURE.value,
                    status=TransactionStatus.COMPLETED.value,
                    amount=money(capture.amount),
                    currency=capture.currency or order.currency,
                    provider_transaction_id=capture.capture_id,
                    provider_payer_id=capture.payer_id,
                    provider_response=json.dumps(capture.raw, default=str),
                ))

            if order.gift_card_code and money(order.gift_card_amount) > ZERO:
                self._gift_cards(db).redeem(order.gift_card_code, order.gift_card_amount, order.id)

            inventory = InventoryAdjuster(db)
            issued = []
            for item in order.items:
                inventory.decrement(item.product_id, item.variation_id, item.quantity, order.id)
                if item.is_gift_card:
                    for _ in range(item.quantity):
                        card = self._gift_cards(db).issue(
                            item.unit_price,
                            order_id=order.id,
                            purchaser_email=order.customer_email,
                            recipient_name=" ".join(filter(None, [order.customer_first_name, order.customer_last_name])) or None,
                            currency=order.currency,
                        )
                        issued.append(card.code)

            if order.coupon_code:
                self._record_coupon_usage(db, order)

            outcome = self._outcome(order)
            payload = self._confirmation_payload(order, issued)

        log_payment_event(
            "payment_captured",
            order_id=order_id,
            capture_id=capture.capture_id,
            amount=str(capture.amount),
            provider=provider,
            actor=actor,
        )
        self._notify("order_confirmed", payload)
        return outcome

    def _record_coupon_usage(self, db, order: Order):
        coupon = db.query(Coupon).filter(Coupon.code == order.coupon_code).first()
        if not coupon:
            logger.warning("Coupon on order no longer exists", extra={'extra_fields': {'order_id': order.id, 'coupon_code': order.coupon_code}})
            return
        # usage_limit is re-checked here; pending orders may share the last use
        result = db.execute(
            update(Coupon).where(
                Coupon.id == coupon.id,
                or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
            )
            .values(usage_count=Coupon.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "Coupon usage limit reached",
                details={"order_id": order.id, "coupon_code": order.coupon_code},
                code="coupon_exhausted",
            )
        db.add(CouponUsage(coupon_id=coupon.id, order_id=order.id, discount_amount=order.discount_total))
        db.flush()

    def _outcome(self, order: Order, already_applied: bool = False) -> CaptureOutcome:
        return CaptureOutcome(
            order_id=order.id,
            order_number=order.order_number,
            status=order.payment_status,
            capture_id=order.payment_transaction_id,
            amount=money(order.grand_total),
            already_applied=already_applied,
        )

    def _confirmation_payload(self, order: Order, gift_card_codes: list) -> dict:
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "email": order.customer_email,
            "first_name": order.customer_first_name,
            "grand_total": str(order.grand_total),
            "currency": order.currency,
            "items": [
                {"sku": i.sku, "name": i.name, "quantity": i.quantity, "total_price": str(i.total_price)}
                for i in order.items
            ],
            "gift_card_codes": gift_card_codes,
        }

    def _notify(self, event: str, payload: dict):
        if self.notifier is None:
            return
        try:
            self.notifier(event, payload)
        except Exception:
            # delivery problems never undo a settled payment
            logger.exception("Notifier failed", extra={'extra_fields': {'event': event, 'order_id': payload.get("order_id")}})

    # Failure paths

    def fail_payment(self, order_id: int, reason: str, actor: str = "system",
                     event_reference: Optional[str] = None) -> bool:
        """Move a still-pending order to failed; returns False if it was already settled."""
        with self.session_factory.begin() as db:
            ledger = OrderLedger(db)
            failed = ledger.mark_failed(order_id, reason, actor=actor, event_reference=event_reference)
            if failed:
                order = ledger.get(order_id)
                db.add(PaymentTransaction(
                    order_id=order_id,
                    provider=order.payment_provider or self.gateway.provider,
                    type=TransactionType.CAPTURE.value,
                    status=TransactionStatus.FAILED.value,
                    amount=money(order.grand_total),
                    currency=order.currency,
                    provider_transaction_id=event_reference,
                    error_message=reason,
                ))
        if failed:
            log_payment_event("payment_failed", order_id=order_id, reason=reason, actor=actor)
        return failed

    def _compensate(self, order_id: int, capture: CaptureResult, error: Exception):
        """Refund a provider capture that could not be settled against the order."""
        if capture.capture_id is None:
            return
        amount = money(capture.amount)
        provider = self.gateway.provider
        with self.session_factory.begin() as db:
            ledger = OrderLedger(db)
            order = ledger.get_for_update(order_id)
            existing = db.query(PaymentTransaction.id).filter(
                PaymentTransaction.type == TransactionType.REFUND.value,
                PaymentTransaction.related_transaction_id == capture.capture_id,
            ).first()
            if existing:
                return
            db.add(PaymentTransaction(
                order_id=order.id,
                provider=provider,
                type=TransactionType.CAPTURE.value,
                status=TransactionStatus.COMPLETED.value,
                amount=amount,
                currency=capture.currency or order.currency,
                provider_transaction_id=capture.capture_id,
                provider_payer_id=capture.payer_id,
                provider_response=json.dumps(capture.raw, default=str),
                error_message=f"Not settled: {error}",
            ))
            db.add(PaymentTransaction(
                order_id=order.id,
                provider=provider,
                type=TransactionType.REFUND.value,
                status=TransactionStatus.PENDING.value,
                amount=amount,
                currency=capture.currency or order.currency,
                related_transaction_id=capture.capture_id,
            ))

        refund_id = None
        refund_error = None
        try:
            refund_id = self.gateway.refund_payment(
                capture.capture_id, amount, "Order could not be fulfilled", capture.currency or "USD"
            ).refund_id
        except GatewayError as e:
            refund_error = e.message
            logger.error(
                "Compensating refund failed, manual review required",
                extra={'extra_fields': {'order_id': order_id, 'capture_id': capture.capture_id, 'kind': e.kind}}
            )

        with self.session_factory.begin() as db:
            ledger = OrderLedger(db)
            order = ledger.get_for_update(order_id)
            db.add(PaymentTransaction(
                order_id=order.id,
                provider=provider,
                type=TransactionType.REFUND.value,
                status=TransactionStatus.FAILED.value if refund_error else TransactionStatus.COMPLETED.value,
                amount=amount,
                currency=capture.currency or order.currency,
                provider_transaction_id=refund_id,
                related_transaction_id=capture.capture_id,
                error_message=refund_error,
            ))
            if order.payment_status == PaymentStatus.PENDING.value:
                ledger.mark_failed(order_id, f"Capture could not be settled: {error}", event_reference=capture.capture_id)

        log_payment_event(
            "payment_compensated",
            order_id=order_id,
            capture_id=capture.capture_id,
            refund_id=refund_id,
            reason=str(error),
            refunded=refund_error is None,
        )
