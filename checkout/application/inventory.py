from typing import List, Optional

from sqlalchemy import update, func
from sqlalchemy.orm import Session

from checkout.domain.enums import InventoryTransactionType
from checkout.domain.errors import InsufficientStock, NotFoundError, ValidationError
from checkout.domain.models import Product, ProductVariation, InventoryTransaction
from shared.core.logging_config import get_logger

logger = get_logger(__name__)

ORDER_REFERENCE = "order"


class InventoryAdjuster:
    """Stock mutations plus their inventory_transactions trail.

    Decrements are conditional UPDATEs guarded on the current stock, so
    concurrent captures of the same product cannot oversell it.
    """

    def __init__(self, db: Session):
        self.db = db

    def _product(self, product_id: int) -> Product:
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError("Product not found", details={"product_id": product_id})
        return product

    def _stock(self, product_id: int) -> int:
        return self.db.query(Product.stock_quantity).filter(Product.id == product_id).scalar()

    def _record(self, product_id, variation_id, txn_type, delta, new_quantity,
                reference_type=None, reference_id=None, notes=None) -> InventoryTransaction:
        txn = InventoryTransaction(
            product_id=product_id,
            variation_id=variation_id,
            type=txn_type,
            quantity=delta,
            previous_quantity=new_quantity - delta,
            new_quantity=new_quantity,
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
        )
        self.db.add(txn)
        self.db.flush()
        return txn

    def decrement(self, product_id: int, variation_id: Optional[int], quantity: int,
                  order_id: Optional[int] = None) -> Optional[InventoryTransaction]:
        """Take stock for a sale; ``None`` when the product does not track inventory."""
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", details={"quantity": quantity})
        product = self._product(product_id)
        if not product.track_inventory:
            return None
        guarded = not product.allow_backorder

        stmt = update(Product).where(Product.id == product_id)
        if guarded:
            stmt = stmt.where(Product.stock_quantity >= quantity)
        result = self.db.execute(
            stmt.values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientStock(
                f"Insufficient stock for {product.name}",
                details={"product_id": product_id, "requested": quantity, "available": self._stock(product_id)},
            )

        if variation_id:
            vstmt = update(ProductVariation).where(
                ProductVariation.id == variation_id, ProductVariation.product_id == product_id
            )
            if guarded:
                vstmt = vstmt.where(ProductVariation.stock_quantity >= quantity)
            result = self.db.execute(
                vstmt.values(stock_quantity=ProductVariation.stock_quantity - quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientStock(
                    f"Insufficient stock for {product.name}",
                    details={"product_id": product_id, "variation_id": variation_id, "requested": quantity},
                )

        txn = self._record(
            product_id, variation_id, InventoryTransactionType.SALE.value, -quantity,
            self._stock(product_id), ORDER_REFERENCE, order_id,
        )
        logger.info(
            "Inventory decremented",
            extra={'extra_fields': {
                'product_id': product_id,
                'variation_id': variation_id,
                'quantity': quantity,
                'new_quantity': txn.new_quantity,
                'order_id': order_id,
            }}
        )
        return txn

    def returnable_quantity(self, order_id: int, product_id: int, variation_id: Optional[int] = None) -> int:
        """Units sold for this order line that have not been restocked yet."""
        net = self.db.query(func.coalesce(func.sum(InventoryTransaction.quantity), 0)).filter(
            InventoryTransaction.reference_type == ORDER_REFERENCE,
            InventoryTransaction.reference_id == order_id,
            InventoryTransaction.product_id == product_id,
            InventoryTransaction.variation_id.is_(None) if variation_id is None
            else InventoryTransaction.variation_id == variation_id,
            InventoryTransaction.type.in_([
                InventoryTransactionType.SALE.value, InventoryTransactionType.RETURN.value,
            ]),
        ).scalar()
        return max(0, -int(net))

    def restock(self, product_id: int, variation_id: Optional[int], quantity: int,
                order_id: int, notes: Optional[str] = None) -> Optional[InventoryTransaction]:
        """Put refunded units back, capped at what the order actually took."""
        product = self._product(product_id)
        if not product.track_inventory or quantity <= 0:
            return None
        quantity = min(quantity, self.returnable_quantity(order_id, product_id, variation_id))
        if quantity <= 0:
            return None

        self.db.execute(
            update(Product).where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        if variation_id:
            self.db.execute(
                update(ProductVariation).where(ProductVariation.id == variation_id)
                .values(stock_quantity=ProductVariation.stock_quantity + quantity)
                .execution_options(synchronize_session=False)
            )
        txn = self._record(
            product_id, variation_id, InventoryTransactionType.RETURN.value, quantity,
            self._stock(product_id), ORDER_REFERENCE, order_id, notes,
        )
        logger.info(
            "Inventory restocked",
            extra={'extra_fields': {'product_id': product_id, 'quantity': quantity, 'order_id': order_id}}
        )
        return txn

    def adjust(self, product_id: int, delta: int, variation_id: Optional[int] = None,
               notes: Optional[str] = None) -> InventoryTransaction:
        """Manual stock correction (stock count, damage, ...)."""
        if delta == 0:
            raise ValidationError("Adjustment must be non-zero")
        product = self._product(product_id)
        stmt = update(Product).where(Product.id == product_id)
        if delta < 0 and not product.allow_backorder:
            stmt = stmt.where(Product.stock_quantity >= -delta)
        result = self.db.execute(
            stmt.values(stock_quantity=Product.stock_quantity + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientStock(
                "Adjustment would make stock negative",
                details={"product_id": product_id, "delta": delta, "available": self._stock(product_id)},
            )
        if variation_id:
            self.db.execute(
                update(ProductVariation).where(ProductVariation.id == variation_id)
                .values(stock_quantity=ProductVariation.stock_quantity + delta)
                .execution_options(synchronize_session=False)
            )
        return self._record(
            product_id, variation_id, InventoryTransactionType.ADJUSTMENT.value, delta,
            self._stock(product_id), "manual", None, notes,
        )

    def transactions(self, product_id: int) -> List[InventoryTransaction]:
        return self.db.query(InventoryTransaction).filter(
            InventoryTransaction.product_id == product_id
        ).order_by(InventoryTransaction.id).all()
