"""Read-side lookups that feed the pricing calculator."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from checkout.application.pricing import LineInput, CouponTerms, calculate_discount
from checkout.domain.errors import ValidationError
from checkout.domain.models import Product, ProductVariation, Coupon, TaxRate


class CatalogService:
    def __init__(self, db: Session):
        self.db = db

    def resolve_lines(self, items: Sequence) -> List[LineInput]:
        """Turn requested (product_id, variation_id, quantity) items into pricing input.

        Unknown or inactive products and variations are validation errors.
        """
        lines = []
        for item in items:
            product = self.db.query(Product).filter(
                Product.id == item.product_id, Product.is_active.is_(True)
            ).first()
            if not product:
                raise ValidationError(f"Product not found: {item.product_id}", details={"product_id": item.product_id})

            variation = None
            available = product.stock_quantity
            if item.variation_id:
                variation = self.db.query(ProductVariation).filter(
                    ProductVariation.id == item.variation_id,
                    ProductVariation.product_id == product.id,
                    ProductVariation.is_active.is_(True),
                ).first()
                if not variation:
                    raise ValidationError(
                        f"Variation not found for {product.name}",
                        details={"product_id": product.id, "variation_id": item.variation_id},
                    )
                available = min(available, variation.stock_quantity)

            lines.append(LineInput(
                product_id=product.id,
                variation_id=variation.id if variation else None,
                sku=variation.sku if variation else product.sku,
                name=product.name,
                variation_name=variation.name if variation else None,
                quantity=item.quantity,
                base_price=Decimal(product.price),
                price_modifier=Decimal(variation.price_modifier) if variation else Decimal("0"),
                is_taxable=product.is_taxable,
                is_gift_card=product.is_gift_card,
                track_inventory=product.track_inventory,
                allow_backorder=product.allow_backorder,
                available_stock=available,
            ))
        return lines

    def find_coupon(self, code: str, now: Optional[datetime] = None) -> Optional[Coupon]:
        now = now or datetime.utcnow()
        return self.db.query(Coupon).filter(
            Coupon.code == code.strip().upper(),
            Coupon.is_active.is_(True),
            or_(Coupon.starts_at.is_(None), Coupon.starts_at <= now),
            or_(Coupon.expires_at.is_(None), Coupon.expires_at > now),
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        ).first()

    def coupon_terms(self, code: Optional[str]) -> Optional[CouponTerms]:
        if not code:
            return None
        coupon = self.find_coupon(code)
        if coupon is None:
            raise ValidationError("Invalid or expired coupon", details={"coupon_code": code})
        return to_terms(coupon)

    def validate_coupon(self, code: str, subtotal: Decimal) -> dict:
        coupon = self.find_coupon(code)
        if coupon is None:
            raise ValidationError("Invalid or expired coupon", details={"coupon_code": code})
        if coupon.minimum_order_amount and subtotal < coupon.minimum_order_amount:
            raise ValidationError(
                f"Minimum order amount is ${Decimal(coupon.minimum_order_amount):.2f}",
                details={"minimum_order_amount": str(coupon.minimum_order_amount)},
            )
        return {
            "code": coupon.code,
            "type": coupon.type,
            "value": Decimal(coupon.value),
            "discount": calculate_discount(subtotal, to_terms(coupon)),
            "minimum_order_amount": Decimal(coupon.minimum_order_amount or 0),
        }

    def tax_rate_for(self, country: str, state: Optional[str]) -> Optional[Decimal]:
        """Most specific active rate for the address; ``*`` rows match any state."""
        if not state:
            return None
        rows = self.db.query(TaxRate).filter(
            TaxRate.country == country,
            or_(TaxRate.state == state.upper(), TaxRate.state == "*"),
            TaxRate.is_active.is_(True),
        ).all()
        if not rows:
            return None
        rows.sort(key=lambda r: r.state == "*")
        return Decimal(rows[0].rate)


def to_terms(coupon: Coupon) -> CouponTerms:
    return CouponTerms(
        code=coupon.code,
        type=coupon.type,
        value=Decimal(coupon.value),
        minimum_order_amount=Decimal(coupon.minimum_order_amount or 0),
        maximum_discount=Decimal(coupon.maximum_discount) if coupon.maximum_discount is not None else None,
    )
