import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from checkout.application.giftcards import GiftCardLedger
from checkout.application.inventory import InventoryAdjuster
from checkout.application.orders import OrderLedger
from checkout.application.pricing import money, ZERO
from checkout.domain.enums import (
    FulfillmentStatus,
    OrderStatus,
    PaymentStatus,
    TransactionStatus,
    TransactionType,
    REFUNDABLE_PAYMENT_STATUSES,
)
from checkout.domain.errors import InvalidTransition, ValidationError
from checkout.domain.models import Order, PaymentTransaction
from checkout.infrastructure.gateway.port import PaymentGateway
from shared.core.logging_config import get_logger, log_payment_event, set_request_context

logger = get_logger(__name__)

SHIPPED_FULFILLMENT_STATUSES = (FulfillmentStatus.FULFILLED.value, FulfillmentStatus.PARTIALLY_FULFILLED.value)


@dataclass(frozen=True)
class RefundOutcome:
    order_id: int
    refund_id: Optional[str]
    amount: Decimal
    payment_status: str
    status: str
    already_applied: bool = False


def refunded_total(db: Session, order_id: int) -> Decimal:
    total = db.query(func.coalesce(func.sum(PaymentTransaction.amount), 0)).filter(
        PaymentTransaction.order_id == order_id,
        PaymentTransaction.type == TransactionType.REFUND.value,
        PaymentTransaction.status == TransactionStatus.COMPLETED.value,
    ).scalar()
    return money(total)


class RefundProcessor:
    """Refunds against settled orders.

    The provider is called first, outside any transaction; the local ledger
    is then updated by :meth:`apply_refund`, which the webhook reconciler
    also uses for refunds issued from the provider's side.
    """

    def __init__(self, session_factory: sessionmaker, gateway: PaymentGateway, settings):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings

    def _ensure_refundable(self, order: Order):
        if order.payment_status not in REFUNDABLE_PAYMENT_STATUSES:
            raise InvalidTransition(
                "Order has no settled payment to refund",
                details={"order_id": order.id, "payment_status": order.payment_status},
            )

    def refund(self, order_id: int, amount: Optional[Decimal] = None, reason: Optional[str] = None,
               restock: bool = False, restock_items: Optional[Dict[int, int]] = None,
               actor: str = "admin") -> RefundOutcome:
        set_request_context(order_id=order_id)
        with self.session_factory.begin() as db:
            order = OrderLedger(db).get(order_id)
            self._ensure_refundable(order)
            remaining = money(order.grand_total) - refunded_total(db, order_id)
            amount = remaining if amount is None else money(amount)
            if remaining <= ZERO and money(order.grand_total) > ZERO:
                raise InvalidTransition("Order is already fully refunded", details={"order_id": order_id})
            if amount < ZERO or amount > remaining or (amount == ZERO and remaining > ZERO):
                raise ValidationError(
                    "Refund amount must be positive and at most the remaining balance",
                    details={"amount": str(amount), "remaining": str(remaining)},
                )
            capture_id = order.payment_transaction_id
            currency = order.currency
            provider = order.payment_provider

        refund_id = None
        raw = None
        if amount > ZERO and capture_id:
            result = self.gateway.refund_payment(capture_id, amount, reason, currency)
            refund_id = result.refund_id
            raw = result.raw
            provider = self.gateway.provider

        return self.apply_refund(
            order_id,
            amount,
            refund_id=refund_id,
            reason=reason,
            restock=restock,
            restock_items=restock_items,
            actor=actor,
            raw=raw,
            provider=provider,
        )

    def apply_refund(self, order_id: int, amount: Decimal, refund_id: Optional[str] = None,
                     reason: Optional[str] = None, restock: bool = False,
                     restock_items: Optional[Dict[int, int]] = None, actor: str = "system",
                     raw: Optional[dict] = None, provider: Optional[str] = None) -> RefundOutcome:
        """Record a refund the provider has completed; idempotent per ``refund_id``."""
        amount = money(amount)
        with self.session_factory.begin() as db:
            ledger = OrderLedger(db)
            order = ledger.get_for_update(order_id)

            if refund_id and db.query(PaymentTransaction.id).filter(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.type == TransactionType.REFUND.value,
                PaymentTransaction.provider_transaction_id == refund_id,
            ).first():
                # the provider's notification may have recorded it first; a requested restock still applies
                if restock:
                    self._restock(db, order, restock_items, reason)
                    if order.payment_status == PaymentStatus.REFUNDED.value:
                        self._mark_returned(ledger, order, actor, refund_id)
                return RefundOutcome(order_id, refund_id, amount, order.payment_status, order.status, already_applied=True)

            self._ensure_refundable(order)
            remaining = money(order.grand_total) - refunded_total(db, order_id)
            if amount > remaining:
                logger.warning(
                    "Refund exceeds remaining balance, clamping",
                    extra={'extra_fields': {'order_id': order_id, 'amount': str(amount), 'remaining': str(remaining)}}
                )
                amount = remaining
            full = amount >= remaining

            db.add(PaymentTransaction(
                order_id=order.id,
                provider=provider or order.payment_provider or self.gateway.provider,
                type=TransactionType.REFUND.value,
                status=TransactionStatus.COMPLETED.value,
                amount=amount,
                currency=order.currency,
                provider_transaction_id=refund_id,
                related_transaction_id=order.payment_transaction_id,
                provider_response=json.dumps(raw, default=str) if raw is not None else None,
            ))

            if restock:
                self._restock(db, order, restock_items, reason)

            if full and self.settings.REFUND_RECREDIT_GIFT_CARD \
                    and order.gift_card_code and money(order.gift_card_amount) > ZERO:
                GiftCardLedger(db).credit(order.gift_card_code, order.gift_card_amount, order.id,
                                          notes=f"Refund of order {order.order_number}")

            fulfillment = None
            if full and restock and order.fulfillment_status in SHIPPED_FULFILLMENT_STATUSES:
                fulfillment = FulfillmentStatus.RETURNED.value

            ledger.transition(
                order,
                status=OrderStatus.REFUNDED.value if full else None,
                payment_status=PaymentStatus.REFUNDED.value if full else PaymentStatus.PARTIALLY_REFUNDED.value,
                fulfillment_status=fulfillment,
                actor=actor,
                notes=f"Refund of {amount}: {reason or 'No reason provided'}",
                event_reference=refund_id,
            )
            outcome = RefundOutcome(order.id, refund_id, amount, order.payment_status, order.status)

        log_payment_event(
            "payment_refunded",
            order_id=order_id,
            refund_id=refund_id,
            amount=str(amount),
            full=full,
            restock=restock,
            actor=actor,
        )
        return outcome

    def _restock(self, db: Session, order: Order, restock_items: Optional[Dict[int, int]], reason: Optional[str]):
        """Return refunded units; repeat calls are capped by what the order still holds."""
        inventory = InventoryAdjuster(db)
        for item in order.items:
            quantity = item.quantity if restock_items is None else restock_items.get(item.id, 0)
            if quantity > 0:
                inventory.restock(item.product_id, item.variation_id, quantity, order.id,
                                  notes=reason or "Refund")

    def _mark_returned(self, ledger: OrderLedger, order: Order, actor: str, refund_id: Optional[str]):
        if order.fulfillment_status in SHIPPED_FULFILLMENT_STATUSES:
            ledger.transition(order, fulfillment_status=FulfillmentStatus.RETURNED.value, actor=actor,
                              notes="Refunded goods returned to stock", event_reference=refund_id)
