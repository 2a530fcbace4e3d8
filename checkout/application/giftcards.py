"""Gift card balances and their append-only transaction ledger.

Balance changes always go through a conditional UPDATE or a locked row so
two concurrent redemptions can never spend the same money twice.
"""

import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update, func, or_
from sqlalchemy.orm import Session

from checkout.application.pricing import money, ZERO
from checkout.domain.enums import GiftCardStatus, GiftCardTransactionType
from checkout.domain.errors import GiftCardUnavailable, InsufficientBalance, ValidationError
from checkout.domain.models import GiftCard, GiftCardTransaction
from shared.core.logging_config import get_logger

logger = get_logger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_gift_card_code() -> str:
    """Code in format GC-XXXX-XXXX-XXXX-XXXX"""
    groups = ["".join(secrets.choice(CODE_ALPHABET) for _ in range(4)) for _ in range(4)]
    return "GC-" + "-".join(groups)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class GiftCardLedger:
    def __init__(self, db: Session, validity_days: int = 365):
        self.db = db
        self.validity_days = validity_days

    def get(self, code: str) -> GiftCard:
        card = self.db.query(GiftCard).filter(GiftCard.code == normalize_code(code)).first()
        if not card:
            raise GiftCardUnavailable("Gift card not found", code="not_found", details={"code": code})
        return card

    def _reload(self, card_id: int) -> GiftCard:
        return self.db.query(GiftCard).populate_existing().filter(GiftCard.id == card_id).one()

    def _ensure_usable(self, card: GiftCard, now: datetime):
        if card.status == GiftCardStatus.DISABLED.value:
            raise GiftCardUnavailable("Gift card is disabled", code="inactive", details={"code": card.code})
        if card.status == GiftCardStatus.EXPIRED.value or (card.expires_at is not None and card.expires_at <= now):
            raise GiftCardUnavailable("Gift card has expired", code="expired", details={"code": card.code})

    def validate(self, code: str) -> GiftCard:
        """Checkout-time lookup: the card must exist, be active and hold a balance."""
        card = self.get(code)
        self._ensure_usable(card, datetime.utcnow())
        if card.status == GiftCardStatus.DEPLETED.value or money(card.current_balance) <= ZERO:
            raise GiftCardUnavailable("Gift card has no remaining balance", code="inactive", details={"code": card.code})
        return card

    def redeem(self, code: str, amount: Decimal, order_id: Optional[int] = None) -> GiftCardTransaction:
        amount = money(amount)
        if amount <= ZERO:
            raise ValidationError("Redemption amount must be positive", details={"amount": str(amount)})
        now = datetime.utcnow()
        card = self.get(code)
        self._ensure_usable(card, now)

        result = self.db.execute(
            update(GiftCard)
            .where(
                GiftCard.id == card.id,
                GiftCard.status == GiftCardStatus.ACTIVE.value,
                GiftCard.current_balance >= amount,
                or_(GiftCard.expires_at.is_(None), GiftCard.expires_at > now),
            )
            .values(
                current_balance=func.round(GiftCard.current_balance - amount, 2),
                last_used_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        card = self._reload(card.id)
        if result.rowcount != 1:
            # state changed between the lookup and the update
            self._ensure_usable(card, now)
            raise InsufficientBalance(
                "Gift card balance is insufficient",
                details={"code": card.code, "requested": str(amount), "available": str(money(card.current_balance))},
            )

        balance_after = money(card.current_balance)
        if balance_after <= ZERO:
            balance_after = ZERO
            card.current_balance = ZERO
            card.status = GiftCardStatus.DEPLETED.value
        txn = GiftCardTransaction(
            gift_card_id=card.id,
            order_id=order_id,
            type=GiftCardTransactionType.REDEMPTION.value,
            amount=amount,
            balance_before=balance_after + amount,
            balance_after=balance_after,
        )
        self.db.add(txn)
        self.db.flush()

        logger.info(
            "Gift card redeemed",
            extra={'extra_fields': {
                'gift_card_id': card.id,
                'order_id': order_id,
                'amount': str(amount),
                'balance_after': str(balance_after),
            }}
        )
        return txn

    def credit(self, code: str, amount: Decimal, order_id: Optional[int] = None,
               notes: Optional[str] = None) -> Optional[GiftCardTransaction]:
        """Give balance back (refund path), never above the initial balance.

        The credited amount is capped at ``initial_balance - current_balance``;
        returns ``None`` when nothing could be credited.
        """
        amount = money(amount)
        if amount <= ZERO:
            raise ValidationError("Credit amount must be positive", details={"amount": str(amount)})
        card = self.db.query(GiftCard).populate_existing().with_for_update().filter(
            GiftCard.code == normalize_code(code)
        ).first()
        if not card:
            raise GiftCardUnavailable("Gift card not found", code="not_found", details={"code": code})

        before = money(card.current_balance)
        credited = min(amount, money(card.initial_balance) - before)
        if credited <= ZERO:
            logger.warning(
                "Gift card credit skipped, card already at initial balance",
                extra={'extra_fields': {'gift_card_id': card.id, 'order_id': order_id}}
            )
            return None

        after = before + credited
        card.current_balance = after
        if card.status == GiftCardStatus.DEPLETED.value:
            card.status = GiftCardStatus.ACTIVE.value
        txn = GiftCardTransaction(
            gift_card_id=card.id,
            order_id=order_id,
            type=GiftCardTransactionType.REFUND.value,
            amount=credited,
            balance_before=before,
            balance_after=after,
            notes=notes,
        )
        self.db.add(txn)
        self.db.flush()
        logger.info(
            "Gift card credited",
            extra={'extra_fields': {'gift_card_id': card.id, 'order_id': order_id, 'amount': str(credited)}}
        )
        return txn

    def adjust(self, code: str, delta: Decimal, notes: Optional[str] = None) -> GiftCardTransaction:
        """Explicit manual correction; may raise the card above its initial balance."""
        delta = money(delta)
        if delta == ZERO:
            raise ValidationError("Adjustment must be non-zero")
        card = self.db.query(GiftCard).populate_existing().with_for_update().filter(
            GiftCard.code == normalize_code(code)
        ).first()
        if not card:
            raise GiftCardUnavailable("Gift card not found", code="not_found", details={"code": code})

        before = money(card.current_balance)
        after = before + delta
        if after < ZERO:
            raise InsufficientBalance(
                "Adjustment would make the balance negative",
                details={"code": card.code, "balance": str(before), "delta": str(delta)},
            )
        card.current_balance = after
        if after > money(card.initial_balance):
            card.initial_balance = after
        if after == ZERO and card.status == GiftCardStatus.ACTIVE.value:
            card.status = GiftCardStatus.DEPLETED.value
        elif after > ZERO and card.status == GiftCardStatus.DEPLETED.value:
            card.status = GiftCardStatus.ACTIVE.value
        txn = GiftCardTransaction(
            gift_card_id=card.id,
            type=GiftCardTransactionType.ADJUSTMENT.value,
            amount=abs(delta),
            balance_before=before,
            balance_after=after,
            notes=notes,
        )
        self.db.add(txn)
        self.db.flush()
        return txn

    def issue(
        self,
        amount: Decimal,
        order_id: Optional[int] = None,
        purchaser_email: Optional[str] = None,
        recipient_email: Optional[str] = None,
        recipient_name: Optional[str] = None,
        currency: str = "USD",
    ) -> GiftCard:
        """Create a new active card and its opening ``purchase`` entry."""
        amount = money(amount)
        if amount <= ZERO:
            raise ValidationError("Gift card amount must be positive", details={"amount": str(amount)})
        code = generate_gift_card_code()
        while self.db.query(GiftCard.id).filter(GiftCard.code == code).first():
            code = generate_gift_card_code()

        card = GiftCard(
            code=code,
            initial_balance=amount,
            current_balance=amount,
            currency=currency,
            status=GiftCardStatus.ACTIVE.value,
            purchaser_email=purchaser_email,
            recipient_email=recipient_email or purchaser_email,
            recipient_name=recipient_name,
            purchased_order_id=order_id,
            expires_at=datetime.utcnow() + timedelta(days=self.validity_days),
        )
        self.db.add(card)
        self.db.flush()
        self.db.add(GiftCardTransaction(
            gift_card_id=card.id,
            order_id=order_id,
            type=GiftCardTransactionType.PURCHASE.value,
            amount=amount,
            balance_before=ZERO,
            balance_after=amount,
        ))
        self.db.flush()
        logger.info(
            "Gift card issued",
            extra={'extra_fields': {'gift_card_id': card.id, 'order_id': order_id, 'amount': str(amount)}}
        )
        return card

    def transactions(self, code: str) -> List[GiftCardTransaction]:
        card = self.get(code)
        return self.db.query(GiftCardTransaction).filter(
            GiftCardTransaction.gift_card_id == card.id
        ).order_by(GiftCardTransaction.id).all()

    def reconcile(self, code: str) -> dict:
        """Replay the ledger and compare it with the stored balance."""
        card = self.get(code)
        rows = self.transactions(code)
        ledger_balance = ZERO
        chain_ok = True
        for row in rows:
            before, after, amount = money(row.balance_before), money(row.balance_after), money(row.amount)
            if row.type == GiftCardTransactionType.REDEMPTION.value:
                chain_ok = chain_ok and after == before - amount
            elif row.type == GiftCardTransactionType.ADJUSTMENT.value:
                chain_ok = chain_ok and abs(after - before) == amount
            else:
                chain_ok = chain_ok and after == before + amount
            chain_ok = chain_ok and before == ledger_balance
            ledger_balance = after
        current = money(card.current_balance)
        return {
            "code": card.code,
            "initial_balance": money(card.initial_balance),
            "current_balance": current,
            "ledger_balance": ledger_balance,
            "transactions": len(rows),
            "consistent": chain_ok and ledger_balance == current and ZERO <= current <= money(card.initial_balance),
        }
