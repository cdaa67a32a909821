"""Shopping cart rules: kg quantities, threshold pricing, discounts and VAT."""

from __future__ import annotations

import logging
import re
from typing import List

from greengrocer.config import StoreConfig, load_config
from greengrocer.dao import ProductDAO
from greengrocer.models import Coupon, round_money
from greengrocer.session import CartLine, Session

logger = logging.getLogger(__name__)

_QUANTITY_PATTERN = re.compile(r"^\d+(\.\d{1,2})?$")


class CartService:
    """Operates on ``session.cart``.

    Unit prices are fixed when a line is added or its quantity changes:
    a product sells at double price when its stock is at or below the
    threshold or when the requested quantity exceeds the threshold.
    """

    def __init__(self, session: Session, config: StoreConfig | None = None,
                 product_dao: ProductDAO | None = None) -> None:
        self.session = session
        self.config = config or load_config()
        self.product_dao = product_dao or ProductDAO()

    @property
    def cart(self):
        return self.session.cart

    @staticmethod
    def parse_quantity(text: str) -> float:
        """Parse a kg amount such as ``"1.5"`` or ``"2,25"``.

        Raises:
            ValueError: If the text is not a positive number with at most
                two decimals.
        """
        cleaned = (text or "").strip().replace(",", ".")
        if not _QUANTITY_PATTERN.match(cleaned):
            raise ValueError("Quantity must be a positive number with at most 2 decimals.")
        quantity = float(cleaned)
        if quantity <= 0:
            raise ValueError("Quantity must be positive.")
        return quantity

    def _price_line(self, product_id: int, quantity: float) -> CartLine:
        if quantity <= 0:
            raise ValueError("Quantity must be positive.")
        product = self.product_dao.get_product(product_id)
        if product is None:
            raise ValueError("Product not found.")
        if quantity > product.stock:
            raise ValueError(f"Only {product.stock:.2f} kg of {product.name} in stock.")
        return CartLine(
            product_id=product.id,
            product_name=product.name,
            quantity=quantity,
            unit_price=product.effective_price(quantity),
        )

    def add_to_cart(self, product_id: int, quantity: float) -> CartLine:
        """Add ``quantity`` kg, merging with an existing line for the product."""
        existing = self.cart.lines.get(product_id)
        total = quantity + (existing.quantity if existing else 0.0)
        line = self._price_line(product_id, total)
        self.cart.lines[product_id] = line
        self._drop_inapplicable_coupon()
        return line

    def update_quantity(self, product_id: int, quantity: float) -> CartLine:
        if product_id not in self.cart.lines:
            raise ValueError("Product is not in the cart.")
        line = self._price_line(product_id, quantity)
        self.cart.lines[product_id] = line
        self._drop_inapplicable_coupon()
        return line

    def remove_from_cart(self, product_id: int) -> None:
        self.cart.lines.pop(product_id, None)
        self._drop_inapplicable_coupon()

    def clear_cart(self) -> None:
        self.cart.clear()

    def view_cart(self) -> List[CartLine]:
        return list(self.cart.lines.values())

    # ---- Discounts ----

    def apply_loyalty_discount(self, percent: float) -> None:
        if percent < 0 or percent > 100:
            raise ValueError("Loyalty discount must be between 0 and 100.")
        self.cart.loyalty_discount_percent = percent

    def apply_coupon(self, coupon: Coupon) -> None:
        """Attach a validated coupon.  Only one coupon per cart."""
        if self.cart.coupon is not None:
            raise ValueError("Only one coupon can be used per order. Remove current coupon first.")
        if not coupon.can_apply_to(self.subtotal()):
            raise ValueError(f"Minimum order: {coupon.minimum_order_value:.2f} TL")
        self.cart.coupon = coupon

    def remove_coupon(self) -> None:
        self.cart.coupon = None

    def _drop_inapplicable_coupon(self) -> None:
        coupon = self.cart.coupon
        if coupon is not None and not coupon.can_apply_to(self.subtotal()):
            logger.info(
                "Coupon removed from cart; minimum no longer met",
                extra={"user_id": self.session.user_id, "extra": {"coupon": coupon.code}},
            )
            self.cart.coupon = None

    # ---- Totals ----

    def subtotal(self) -> float:
        return round_money(sum(line.line_total for line in self.cart.lines.values()))

    def loyalty_discount_amount(self) -> float:
        return round_money(self.subtotal() * self.cart.loyalty_discount_percent / 100.0)

    def coupon_discount_amount(self) -> float:
        if self.cart.coupon is None:
            return 0.0
        return self.cart.coupon.calculate_discount(self.subtotal())

    def discount_amount(self) -> float:
        """Loyalty plus coupon discount, never more than the subtotal."""
        return round_money(min(self.subtotal(), self.loyalty_discount_amount() + self.coupon_discount_amount()))

    def vat_amount(self) -> float:
        return round_money((self.subtotal() - self.discount_amount()) * self.config.vat_rate)

    def total(self) -> float:
        return round_money(self.subtotal() - self.discount_amount() + self.vat_amount())

    def meets_minimum_value(self) -> bool:
        return self.subtotal() >= self.config.min_cart_value

    # ---- Stock ----

    def stock_issues(self) -> List[str]:
        issues = []
        for line in self.cart.lines.values():
            product = self.product_dao.get_product(line.product_id)
            if product is None:
                issues.append(f"{line.product_name}: no longer available")
            elif product.stock < line.quantity:
                issues.append(
                    f"{line.product_name}: requested {line.quantity:.2f} kg, only {product.stock:.2f} kg left"
                )
        return issues

    def validate_stock(self) -> bool:
        return not self.stock_issues()

    def stock_issues_summary(self) -> str:
        return "\n".join(f"• {issue}" for issue in self.stock_issues())
