"""Application facade used by the command line interface.

``GroceryApp`` owns one :class:`Session` and wires every service to it.
User-facing actions return ``(ok, message)`` tuples; read-only queries
return model objects directly.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from greengrocer.auth_service import AuthService
from greengrocer.carrier_service import CarrierService
from greengrocer.cart_service import CartService
from greengrocer.config import StoreConfig, load_config
from greengrocer.coupon_service import CouponService
from greengrocer.dao import ProductDAO
from greengrocer.errors import AccessDeniedError, CarrierBusyError, OrderStateError
from greengrocer.image_service import ImageLoaderService
from greengrocer.loyalty_service import LoyaltyService
from greengrocer.message_service import MessageService
from greengrocer.metrics import generate_metrics_text
from greengrocer.models import PRODUCT_TYPES, ROLE_OWNER, LoyaltySettings, Message, Order, Product, User
from greengrocer.order_service import CheckoutError, OrderService
from greengrocer.report_service import ReportService
from greengrocer.session import CartLine, Session

logger = logging.getLogger(__name__)

Result = Tuple[bool, str]


class GroceryApp:
    """
    Business facade for one user session: authentication, catalogue, cart,
    checkout, deliveries, messaging, and the owner's administration.
    """

    @dataclass
    class Totals:
        subtotal: float
        loyalty_discount: float
        coupon_discount: float
        discount: float
        vat: float
        total: float
        coupon_code: str | None = None

    def __init__(self, config: StoreConfig | None = None, session: Session | None = None) -> None:
        self.config = config or load_config()
        self.session = session or Session()
        self.product_dao = ProductDAO()

        self.auth = AuthService(self.session)
        self.loyalty = LoyaltyService(self.session)
        self.coupons = CouponService(self.session, loyalty=self.loyalty)
        self.cart = CartService(self.session, self.config, self.product_dao)
        self.orders = OrderService(self.session, self.cart, self.loyalty, self.coupons, self.config)
        self.messages = MessageService(self.session)
        self.carriers = CarrierService(self.session)
        self.reports = ReportService(product_dao=self.product_dao)
        self.images = ImageLoaderService(self.config, self.product_dao)

    @property
    def current_user(self) -> Optional[User]:
        return self.session.user

    def _require_owner(self) -> User:
        user = self.session.require_user()
        if user.role != ROLE_OWNER:
            raise AccessDeniedError("Only the owner can do that.")
        return user

    # ---- Authentication ----

    def register(self, username: str, password: str, address: str,
                 email: str | None = None, phone: str | None = None) -> Result:
        try:
            self.auth.register_customer(username, password, address, email=email, phone=phone)
        except ValueError as e:
            return False, str(e)
        return True, "Registration successful. You can now log in."

    def login(self, username: str, password: str) -> bool:
        return self.auth.login(username, password) is not None

    def logout(self) -> None:
        self.auth.logout()

    def change_password(self, current_password: str, new_password: str) -> Result:
        try:
            ok = self.auth.change_password(current_password, new_password)
        except (ValueError, AccessDeniedError) as e:
            return False, str(e)
        return (ok, "Password changed." if ok else "Could not change password.")

    def update_profile(self, email: str | None, phone: str | None, address: str | None) -> Result:
        try:
            self.auth.update_profile(email, phone, address)
        except (ValueError, AccessDeniedError) as e:
            return False, str(e)
        return True, "Profile updated."

    # ---- Product catalogue ----

    def list_products(self, product_type: str | None = None) -> List[Product]:
        """In-stock products sorted by name; an owner sees sold-out ones too."""
        owner = self.session.role == ROLE_OWNER
        try:
            return self.product_dao.list_products(product_type, in_stock_only=not owner)
        except sqlite3.Error as e:
            logger.error("Could not list products", extra={"extra": {"error": str(e)}})
            return []

    def search_products(self, keyword: str) -> List[Product]:
        needle = (keyword or "").strip().lower()
        return [p for p in self.list_products() if needle in p.name.lower()]

    def add_product(self, name: str, product_type: str, price: float, stock: float,
                    threshold: float = 5.0) -> Result:
        try:
            self._require_owner()
        except AccessDeniedError as e:
            return False, str(e)
        if not name or not name.strip():
            return False, "Product name is required."
        if product_type not in PRODUCT_TYPES:
            return False, f"Type must be one of: {', '.join(PRODUCT_TYPES)}."
        if price <= 0 or stock < 0 or threshold < 0:
            return False, "Price must be positive; stock and threshold cannot be negative."
        try:
            product_id = self.product_dao.add_product(name.strip(), product_type, price, stock, threshold)
        except sqlite3.Error as e:
            logger.error("Could not add product", extra={"extra": {"name": name, "error": str(e)}})
            return False, "Could not add product."
        logger.info("Product added", extra={"user_id": self.session.user_id, "extra": {"product_id": product_id}})
        return True, f"Added {name.strip()} (#{product_id})."

    def update_product(self, product_id: int, name: str, price: float, threshold: float) -> Result:
        try:
            self._require_owner()
        except AccessDeniedError as e:
            return False, str(e)
        if not name or not name.strip():
            return False, "Product name is required."
        if price <= 0 or threshold < 0:
            return False, "Price must be positive and threshold cannot be negative."
        try:
            ok = self.product_dao.update_product(product_id, name.strip(), price, threshold)
        except sqlite3.Error as e:
            logger.error("Could not update product", extra={"extra": {"product_id": product_id, "error": str(e)}})
            return False, "Could not update product."
        return (ok, "Product updated." if ok else "Product not found.")

    def restock(self, product_id: int, new_stock: float) -> Result:
        try:
            self._require_owner()
        except AccessDeniedError as e:
            return False, str(e)
        if new_stock < 0:
            return False, "Stock cannot be negative."
        try:
            if self.product_dao.get_product(product_id) is None:
                return False, "Product not found."
            self.product_dao.update_stock(product_id, new_stock)
        except sqlite3.Error as e:
            logger.error("Could not restock product", extra={"extra": {"product_id": product_id, "error": str(e)}})
            return False, "Could not update stock."
        return True, f"Stock set to {new_stock:.2f} kg."

    def remove_product(self, product_id: int) -> Result:
        try:
            self._require_owner()
            self.product_dao.delete_product(product_id)
        except AccessDeniedError as e:
            return False, str(e)
        except sqlite3.IntegrityError:
            return False, "Product appears in past orders and cannot be removed."
        return True, "Product removed."

    # ---- Cart ----

    def add_to_cart(self, product_id: int, quantity: float | str) -> Result:
        try:
            qty = CartService.parse_quantity(quantity) if isinstance(quantity, str) else quantity
            line = self.cart.add_to_cart(product_id, qty)
        except ValueError as e:
            return False, str(e)
        return True, f"{line.product_name}: {line.quantity:g} kg in cart at {line.unit_price:.2f} TL/kg"

    def update_cart_quantity(self, product_id: int, quantity: float | str) -> Result:
        try:
            qty = CartService.parse_quantity(quantity) if isinstance(quantity, str) else quantity
            line = self.cart.update_quantity(product_id, qty)
        except ValueError as e:
            return False, str(e)
        return True, f"{line.product_name}: {line.quantity:g} kg"

    def remove_from_cart(self, product_id: int) -> None:
        self.cart.remove_from_cart(product_id)

    def clear_cart(self) -> None:
        self.cart.clear_cart()

    def view_cart(self) -> List[CartLine]:
        return self.cart.view_cart()

    def compute_cart_totals(self) -> Totals:
        self.cart.apply_loyalty_discount(self.loyalty.current_user_discount())
        return GroceryApp.Totals(
            subtotal=self.cart.subtotal(),
            loyalty_discount=self.cart.loyalty_discount_amount(),
            coupon_discount=self.cart.coupon_discount_amount(),
            discount=self.cart.discount_amount(),
            vat=self.cart.vat_amount(),
            total=self.cart.total(),
            coupon_code=self.session.cart.applied_coupon_code,
        )

    def apply_coupon(self, code: str) -> Result:
        coupon = self.coupons.validate_coupon(code)
        if coupon is None:
            return False, "Invalid, expired or already used coupon."
        try:
            self.cart.apply_coupon(coupon)
        except ValueError as e:
            return False, str(e)
        return True, f"Coupon {coupon.code} applied: {coupon.discount_description}"

    def remove_coupon(self) -> None:
        self.cart.remove_coupon()

    # ---- Checkout and orders ----

    def checkout(self, requested_delivery_time: datetime) -> Result:
        try:
            placed = self.orders.create_order(requested_delivery_time)
        except (CheckoutError, AccessDeniedError) as e:
            return False, str(e)
        except sqlite3.Error:
            return False, "Checkout failed. Please try again."
        message = f"Order #{placed.order.id} placed. Total {placed.order.total_cost:.2f} TL."
        if placed.points_earned:
            message += f" You will earn {placed.points_earned} points on delivery."
        return True, message

    def delivery_slots(self) -> List[datetime]:
        return self.orders.delivery_slots()

    def my_orders(self) -> List[Order]:
        return self.orders.my_orders()

    def order_details(self, order_id: int) -> Optional[Order]:
        return self.orders.order_details(order_id)

    def cancel_order(self, order_id: int) -> Result:
        try:
            self.orders.cancel_order(order_id)
        except (OrderStateError, AccessDeniedError) as e:
            return False, str(e)
        return True, f"Order #{order_id} cancelled."

    # ---- Loyalty and coupons ----

    def loyalty_summary(self) -> Dict[str, object]:
        return {
            "tier": self.loyalty.current_user_tier(),
            "discount": self.loyalty.current_user_discount(),
            "progress": self.loyalty.current_user_progress(),
            "points": self.loyalty.current_user_points(),
        }

    def my_coupons(self):
        return self.coupons.available_coupons()

    def redeem_points(self) -> Result:
        coupon = self.coupons.redeem_loyalty_points()
        if coupon is None:
            needed = self.loyalty.get_settings().points_for_coupon
            return False, f"You need at least {needed} points to redeem a coupon."
        return True, f"New coupon {coupon.code}: {coupon.discount_description}, {coupon.expiration_info()}."

    def create_coupon(self, code: str, discount_percentage: float, expiration_date: date,
                      minimum_order_value: float = 0.0, maximum_discount: float = 0.0,
                      user_id: int | None = None) -> Result:
        try:
            self._require_owner()
            coupon = self.coupons.create_coupon(code, discount_percentage, expiration_date,
                                                minimum_order_value, maximum_discount, user_id)
        except (ValueError, AccessDeniedError) as e:
            return False, str(e)
        except sqlite3.Error:
            return False, "Could not create coupon."
        return True, f"Coupon {coupon.code} created."

    def update_loyalty_settings(self, settings: LoyaltySettings) -> Result:
        try:
            self._require_owner()
            ok = self.loyalty.update_settings(settings)
        except (ValueError, AccessDeniedError) as e:
            return False, str(e)
        return (ok, "Loyalty settings saved." if ok else "Could not save loyalty settings.")

    # ---- Carrier workflow ----

    def take_order(self, order_id: int) -> Result:
        try:
            self.orders.assign_order_to_carrier(order_id)
        except (OrderStateError, AccessDeniedError) as e:
            return False, str(e)
        return True, f"Order #{order_id} assigned to you."

    def deliver_order(self, order_id: int, delivered_at: datetime | None = None) -> Result:
        try:
            self.orders.mark_order_delivered(order_id, delivered_at)
        except (OrderStateError, ValueError, AccessDeniedError) as e:
            return False, str(e)
        return True, f"Order #{order_id} marked as delivered."

    def employ_carrier(self, username: str, email: str | None, password: str) -> Result:
        try:
            self._require_owner()
            carrier = self.carriers.employ_carrier(username, email, password)
        except (ValueError, AccessDeniedError) as e:
            return False, str(e)
        return True, f"Carrier {carrier.username} employed."

    def fire_carrier(self, carrier_id: int) -> Result:
        try:
            self._require_owner()
            ok = self.carriers.fire_carrier(carrier_id)
        except (CarrierBusyError, AccessDeniedError) as e:
            return False, str(e)
        return (ok, "Carrier dismissed." if ok else "Carrier not found.")

    def rate_carrier(self, order_id: int, rating: int, comment: str | None = None) -> Result:
        try:
            self.carriers.rate_carrier(order_id, rating, comment)
        except (ValueError, OrderStateError, AccessDeniedError) as e:
            return False, str(e)
        return True, "Thank you for rating your delivery."

    # ---- Messaging ----

    def send_to_owner(self, subject: str, content: str) -> Result:
        return self._sent(lambda: self.messages.send_to_owner(subject, content))

    def orders_with_carriers(self) -> List[Order]:
        """The customer's orders currently out with a carrier."""
        return self.messages.my_orders_with_carriers()

    def send_to_carrier(self, order_id: int, subject: str, content: str) -> Result:
        return self._sent(lambda: self.messages.send_to_carrier_for_order(order_id, subject, content))

    def send_message(self, receiver_id: int, subject: str, content: str) -> Result:
        return self._sent(lambda: self.messages.send_message(receiver_id, subject, content))

    def reply(self, message_id: int, content: str) -> Result:
        return self._sent(lambda: self.messages.reply_to_message(message_id, content))

    def _sent(self, send) -> Result:
        try:
            message: Optional[Message] = send()
        except (ValueError, AccessDeniedError) as e:
            return False, str(e)
        if message is None:
            return False, "Message could not be sent."
        return True, f"Message sent to {message.receiver_name or message.receiver_id}."

    def inbox(self) -> List[Message]:
        if self.session.role == ROLE_OWNER:
            return self.messages.all_messages_for_owner()
        return self.messages.received_messages()

    def read_message(self, message_id: int) -> List[Message]:
        """The whole conversation ``message_id`` belongs to; marks it read."""
        self.messages.mark_as_read(message_id)
        return self.messages.conversation_thread(message_id)

    def unread_count(self) -> int:
        return self.messages.unread_count()

    # ---- Reports and operations ----

    def dashboard(self) -> Dict[str, object]:
        return self.reports.dashboard_statistics()

    def load_default_images(self) -> Tuple[int, int]:
        return self.images.load_default_images()

    def metrics_text(self) -> str:
        return generate_metrics_text().decode("utf-8")
