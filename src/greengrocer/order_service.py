"""Order placement, cancellation and the carrier delivery workflow.

Checkout validates the cart, then writes the order, its items, the stock
decrements and the coupon redemption in a single SQLite transaction:
either all of them land or none do.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from greengrocer.cart_service import CartService
from greengrocer.config import StoreConfig, load_config
from greengrocer.coupon_service import CouponService
from greengrocer.dao import CouponDAO, OrderDAO, ProductDAO, get_request_connection
from greengrocer.errors import NotLoggedInError, OrderStateError
from greengrocer.loyalty_service import LoyaltyService
from greengrocer.metrics import (
    CHECKOUT_DURATION_SECONDS,
    CHECKOUT_ERROR_TOTAL,
    COUPONS_REDEEMED_TOTAL,
    ORDER_STATUS_CHANGES_TOTAL,
    ORDERS_PLACED_TOTAL,
)
from greengrocer.models import (
    ACTIVE_CARRIER_STATUSES,
    Coupon,
    Order,
    OrderItem,
    STATUS_ASSIGNED,
    STATUS_CANCELLED,
    STATUS_DELIVERED,
    STATUS_PENDING,
)
from greengrocer.session import Session

logger = logging.getLogger(__name__)

DELIVERY_SLOT_HOURS = tuple(range(9, 21))


class CheckoutError(ValueError):
    """Checkout rejected; ``reason`` is a short machine-readable tag."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass
class PlacedOrder:
    order: Order
    points_earned: int


class OrderService:
    def __init__(
        self,
        session: Session,
        cart: CartService,
        loyalty: LoyaltyService,
        coupons: CouponService,
        config: StoreConfig | None = None,
        order_dao: OrderDAO | None = None,
    ) -> None:
        self.session = session
        self.cart = cart
        self.loyalty = loyalty
        self.coupons = coupons
        self.config = config or load_config()
        self.order_dao = order_dao or OrderDAO()

    # ---- Delivery time ----

    def is_valid_delivery_time(self, requested: datetime, now: datetime | None = None) -> bool:
        now = now or datetime.now()
        earliest = now + timedelta(hours=self.config.min_delivery_hours)
        latest = now + timedelta(hours=self.config.max_delivery_hours)
        return earliest <= requested <= latest

    def delivery_slots(self, now: datetime | None = None) -> List[datetime]:
        """Hourly 09:00-20:00 slots that fall inside the delivery window."""
        now = now or datetime.now()
        slots = []
        for offset in range(3):
            day = (now + timedelta(days=offset)).date()
            for hour in DELIVERY_SLOT_HOURS:
                slot = datetime(day.year, day.month, day.day, hour)
                if self.is_valid_delivery_time(slot, now):
                    slots.append(slot)
        return slots

    # ---- Checkout ----

    def _validate_checkout(self, requested: datetime, now: datetime) -> Optional[Coupon]:
        user = self.session.user
        if user is None:
            raise NotLoggedInError("You must be logged in.")
        if not user.is_customer:
            raise CheckoutError("not_customer", "Only customers can place orders.")
        if self.cart.cart.is_empty:
            raise CheckoutError("empty_cart", "Your cart is empty.")
        if not self.cart.meets_minimum_value():
            raise CheckoutError(
                "below_minimum", f"Minimum order value is {self.config.min_cart_value:.2f} TL."
            )
        if not self.cart.validate_stock():
            raise CheckoutError(
                "stock_insufficient",
                "Some items are no longer available:\n" + self.cart.stock_issues_summary(),
            )
        if not self.is_valid_delivery_time(requested, now):
            raise CheckoutError(
                "delivery_time",
                f"Delivery must be between {self.config.min_delivery_hours:g} and "
                f"{self.config.max_delivery_hours:g} hours from now.",
            )
        applied = self.cart.cart.coupon
        if applied is None:
            return None
        fresh = self.coupons.validate_coupon(applied.code, now.date())
        if fresh is None:
            self.cart.remove_coupon()
            raise CheckoutError("coupon_invalid", f"Your coupon '{applied.code}' has expired or is no longer valid.")
        if not fresh.can_apply_to(self.cart.subtotal(), now.date()):
            self.cart.remove_coupon()
            raise CheckoutError(
                "coupon_minimum", f"Your coupon requires a minimum order of {fresh.minimum_order_value:.2f} TL."
            )
        self.cart.cart.coupon = fresh
        return fresh

    def create_order(self, requested_delivery_time: datetime, now: datetime | None = None) -> PlacedOrder:
        """Turn the session cart into a pending order.

        The loyalty discount is refreshed from the customer's current tier
        before totals are computed.  On success the cart is emptied.  The
        loyalty points the order earns are recorded on it and credited when
        it is delivered.

        Raises:
            NotLoggedInError: No user in the session.
            CheckoutError: The cart, delivery time or coupon is not acceptable,
                or stock ran out while the order was being written.
            sqlite3.Error: The order transaction failed and was rolled back.
        """
        start_time = time.perf_counter()
        now = now or datetime.now()
        error_type: str | None = None
        try:
            self.cart.apply_loyalty_discount(self.loyalty.current_user_discount())
            coupon = self._validate_checkout(requested_delivery_time, now)
            user = self.session.require_user()
            lines = list(self.cart.cart.lines.values())
            items = [
                OrderItem(product_id=ln.product_id, product_name=ln.product_name,
                          quantity=ln.quantity, unit_price=ln.unit_price)
                for ln in lines
            ]
            subtotal = self.cart.subtotal()
            discount = self.cart.discount_amount()
            vat = self.cart.vat_amount()
            total = self.cart.total()
            points = self.loyalty.points_earned(total)

            conn = get_request_connection()
            order_dao = OrderDAO(conn)
            product_dao = ProductDAO(conn)
            coupon_dao = CouponDAO(conn)
            with conn:
                order_id = order_dao.create_order(
                    customer_id=user.id,
                    items=items,
                    requested_delivery_time=requested_delivery_time,
                    subtotal=subtotal,
                    discount_amount=discount,
                    vat_amount=vat,
                    total_cost=total,
                    coupon_code=coupon.code if coupon else None,
                    order_time=now,
                    points_earned=points,
                )
                for item in items:
                    if not product_dao.decrease_stock_if_available(item.product_id, item.quantity):
                        raise CheckoutError("stock_insufficient",
                                            f"{item.product_name} sold out while placing the order.")
                if coupon is not None and not coupon_dao.mark_as_used(coupon.code, order_id):
                    raise CheckoutError("coupon_invalid", f"Coupon '{coupon.code}' was already used.")
        except CheckoutError as e:
            error_type = e.reason
            raise
        except NotLoggedInError:
            error_type = "not_logged_in"
            raise
        except sqlite3.Error as e:
            error_type = "db_error"
            logger.error("Order transaction failed", extra={"user_id": self.session.user_id, "extra": {"error": str(e)}})
            raise
        finally:
            CHECKOUT_DURATION_SECONDS.observe(time.perf_counter() - start_time)
            if error_type:
                CHECKOUT_ERROR_TOTAL.inc(type=error_type)

        ORDERS_PLACED_TOTAL.inc()
        if coupon is not None:
            COUPONS_REDEEMED_TOTAL.inc()
        self.cart.clear_cart()
        order = self.order_dao.find_by_id(order_id)
        logger.info(
            "Order placed",
            extra={"user_id": user.id, "order_id": order_id,
                   "extra": {"total": total, "discount": discount, "items": len(items),
                             "coupon": coupon.code if coupon else None, "points": points}},
        )
        return PlacedOrder(order=order, points_earned=points)

    # ---- Cancellation ----

    def can_cancel_order(self, order_id: int, now: datetime | None = None) -> bool:
        order = self._placed_by_me(order_id)
        return order is not None and self._cancellable(order, now or datetime.now())

    def _cancellable(self, order: Order, now: datetime) -> bool:
        if order.status != STATUS_PENDING:
            return False
        return now - order.order_time <= timedelta(hours=self.config.cancel_window_hours)

    def cancellation_blocker(self, order_id: int, now: datetime | None = None) -> Optional[str]:
        """Human readable reason an order cannot be cancelled, or None."""
        order = self._placed_by_me(order_id)
        if order is None:
            return "Order not found."
        if order.status in ACTIVE_CARRIER_STATUSES:
            return "A carrier has already accepted this delivery."
        if order.status == STATUS_DELIVERED:
            return "This order has already been delivered."
        if order.status == STATUS_CANCELLED:
            return "This order has already been cancelled."
        if not self._cancellable(order, now or datetime.now()):
            return f"The {self.config.cancel_window_hours:g}-hour cancellation window has passed."
        return None

    def cancel_order(self, order_id: int, now: datetime | None = None) -> Order:
        """Cancel a pending order within the window; restores stock and coupon.

        Raises:
            OrderStateError: The order is missing, not the caller's, or not
                cancellable any more.
        """
        reason = self.cancellation_blocker(order_id, now)
        if reason is not None:
            raise OrderStateError(reason)
        order = self.order_dao.find_by_id(order_id)
        conn = get_request_connection()
        with conn:
            if not OrderDAO(conn).cancel_if_pending(order_id):
                raise OrderStateError("Order is no longer pending.")
            product_dao = ProductDAO(conn)
            for item in order.items:
                product_dao.increase_stock(item.product_id, item.quantity)
            if order.coupon_code:
                CouponDAO(conn).restore(order.coupon_code)
        ORDER_STATUS_CHANGES_TOTAL.inc(status=STATUS_CANCELLED)
        logger.info("Order cancelled", extra={"user_id": self.session.user_id, "order_id": order_id})
        return self.order_dao.find_by_id(order_id)

    def _own_order(self, order_id: int) -> Optional[Order]:
        user = self.session.require_user()
        order = self.order_dao.find_by_id(order_id)
        if order is None or (user.is_customer and order.customer_id != user.id):
            return None
        return order

    def _placed_by_me(self, order_id: int) -> Optional[Order]:
        """The order, only when the logged-in user is the customer who placed it."""
        user = self.session.require_user()
        order = self.order_dao.find_by_id(order_id)
        if order is None or order.customer_id != user.id:
            return None
        return order

    # ---- Listings ----

    def my_orders(self) -> List[Order]:
        user = self.session.user
        if user is None:
            return []
        try:
            return self.order_dao.find_by_customer(user.id)
        except sqlite3.Error as e:
            logger.error("Could not load order history", extra={"user_id": user.id, "extra": {"error": str(e)}})
            return []

    def order_details(self, order_id: int) -> Optional[Order]:
        try:
            return self._own_order(order_id)
        except sqlite3.Error as e:
            logger.error("Could not load order", extra={"extra": {"order_id": order_id, "error": str(e)}})
            return None

    def all_orders(self, status: str | None = None) -> List[Order]:
        try:
            return self.order_dao.find_by_status(status) if status else self.order_dao.find_all()
        except sqlite3.Error as e:
            logger.error("Could not load orders", extra={"extra": {"status": status, "error": str(e)}})
            return []

    # ---- Carrier workflow ----

    def available_orders(self) -> List[Order]:
        try:
            return self.order_dao.find_available()
        except sqlite3.Error as e:
            logger.error("Could not load available orders", extra={"extra": {"error": str(e)}})
            return []

    def _require_carrier(self):
        user = self.session.require_user()
        if not user.is_carrier:
            raise OrderStateError("Only carriers can take deliveries.")
        return user

    def assign_order_to_carrier(self, order_id: int) -> Order:
        """Claim a pending order for the logged-in carrier.

        Raises:
            OrderStateError: The caller is not a carrier or the order was
                already taken, cancelled or delivered.
        """
        carrier = self._require_carrier()
        if not self.order_dao.assign_carrier(order_id, carrier.id):
            raise OrderStateError("Order is no longer available.")
        ORDER_STATUS_CHANGES_TOTAL.inc(status=STATUS_ASSIGNED)
        logger.info("Order assigned", extra={"user_id": carrier.id, "role": carrier.role, "order_id": order_id})
        return self.order_dao.find_by_id(order_id)

    def current_orders(self) -> List[Order]:
        carrier = self._require_carrier()
        return self.order_dao.find_by_carrier(carrier.id, ACTIVE_CARRIER_STATUSES)

    def completed_orders(self) -> List[Order]:
        carrier = self._require_carrier()
        return self.order_dao.find_by_carrier(carrier.id, (STATUS_DELIVERED,))

    def mark_order_delivered(self, order_id: int, delivered_at: datetime | None = None) -> Order:
        """Close an assigned order.

        The customer is credited with the completed order and the points
        recorded at checkout; purchases of 500 or more also earn a reward
        coupon.
        """
        carrier = self._require_carrier()
        order = self.order_dao.find_by_id(order_id, with_items=False)
        if order is None or order.carrier_id != carrier.id:
            raise OrderStateError("Order is not assigned to you.")
        delivered_at = delivered_at or datetime.now()
        if delivered_at < order.order_time:
            raise ValueError("Delivery time cannot be before the order time.")
        conn = get_request_connection()
        with conn:
            if not OrderDAO(conn).mark_delivered(order_id, carrier.id, delivered_at):
                raise OrderStateError(f"Order cannot be delivered from status '{order.status}'.")
        ORDER_STATUS_CHANGES_TOTAL.inc(status=STATUS_DELIVERED)
        logger.info("Order delivered", extra={"user_id": carrier.id, "role": carrier.role, "order_id": order_id})
        self.coupons.award_coupon_for_purchase(order.customer_id, order.total_cost, delivered_at.date())
        return self.order_dao.find_by_id(order_id)
