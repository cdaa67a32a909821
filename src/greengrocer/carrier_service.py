"""Carrier staffing for the owner and delivery ratings for customers."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from greengrocer import passwords, validation
from greengrocer.dao import OrderDAO, RatingDAO, UserDAO
from greengrocer.errors import CarrierBusyError, OrderStateError
from greengrocer.models import ROLE_CARRIER, CarrierRating, Order, User
from greengrocer.session import Session

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


class CarrierService:
    def __init__(self, session: Session, user_dao: UserDAO | None = None, order_dao: OrderDAO | None = None,
                 rating_dao: RatingDAO | None = None) -> None:
        self.session = session
        self.user_dao = user_dao or UserDAO()
        self.order_dao = order_dao or OrderDAO()
        self.rating_dao = rating_dao or RatingDAO()

    # ---- Owner: staffing ----

    def employ_carrier(self, username: str, email: str | None, password: str) -> User:
        """Create a carrier account.

        Raises:
            ValueError: Invalid or duplicate username, invalid e-mail or a
                weak password.
        """
        username = (username or "").strip()
        if not validation.is_valid_username(username):
            raise ValueError("Username must be 3-50 letters, digits or underscores.")
        if email and not validation.is_valid_email(email):
            raise ValueError("Invalid e-mail address.")
        if not passwords.is_strong_password(password):
            raise ValueError(passwords.password_requirements())
        user_id = self.user_dao.create_user(username, passwords.hash_password(password), ROLE_CARRIER, email=email)
        if user_id is None:
            raise ValueError(f"Username '{username}' is already taken.")
        logger.info(
            "Carrier employed",
            extra={"user_id": self.session.user_id, "extra": {"carrier_id": user_id, "username": username}},
        )
        return self.user_dao.find_by_id(user_id)

    def fire_carrier(self, carrier_id: int) -> bool:
        """Deactivate a carrier account.

        The row is kept so past orders and ratings still name the carrier.

        Raises:
            CarrierBusyError: The carrier still has undelivered orders.
        """
        carrier = self.user_dao.find_by_id(carrier_id)
        if carrier is None or not carrier.is_carrier:
            return False
        if self.order_dao.has_active_orders(carrier_id):
            raise CarrierBusyError(f"{carrier.username} still has orders out for delivery.")
        ok = self.user_dao.set_active(carrier_id, False)
        if ok:
            logger.info("Carrier fired", extra={"user_id": self.session.user_id, "extra": {"carrier_id": carrier_id}})
        return ok

    def all_carriers(self, active_only: bool = True) -> List[User]:
        try:
            return self.user_dao.find_by_role(ROLE_CARRIER, active_only=active_only)
        except sqlite3.Error as e:
            logger.error("Could not load carriers", extra={"extra": {"error": str(e)}})
            return []

    # ---- Customer: ratings ----

    def _rateable_order(self, order_id: int) -> Order:
        user = self.session.require_user()
        order = self.order_dao.find_by_id(order_id, with_items=False)
        if order is None or order.customer_id != user.id:
            raise OrderStateError("Order not found.")
        if not order.is_delivered or order.carrier_id is None:
            raise OrderStateError("Only delivered orders can be rated.")
        return order

    def can_rate_order(self, order_id: int) -> bool:
        try:
            self._rateable_order(order_id)
            return self.rating_dao.find_by_order(order_id) is None
        except (OrderStateError, sqlite3.Error):
            return False

    def rate_carrier(self, order_id: int, rating: int, comment: str | None = None) -> CarrierRating:
        """Rate the carrier who delivered ``order_id``; once per order.

        Raises:
            ValueError: Rating outside 1..5.
            OrderStateError: Not the caller's delivered order, or already rated.
        """
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}.")
        order = self._rateable_order(order_id)
        record = CarrierRating(
            carrier_id=order.carrier_id,
            customer_id=order.customer_id,
            order_id=order_id,
            rating=rating,
            comment=(comment or "").strip() or None,
        )
        if self.rating_dao.insert(record) is None:
            raise OrderStateError("This order has already been rated.")
        logger.info(
            "Carrier rated",
            extra={"user_id": order.customer_id, "order_id": order_id,
                   "extra": {"carrier_id": order.carrier_id, "rating": rating}},
        )
        return record

    def existing_rating(self, order_id: int) -> Optional[CarrierRating]:
        try:
            return self.rating_dao.find_by_order(order_id)
        except sqlite3.Error as e:
            logger.error("Could not load rating", extra={"order_id": order_id, "extra": {"error": str(e)}})
            return None

    def average_rating(self, carrier_id: int) -> float:
        try:
            return round(self.rating_dao.average_for_carrier(carrier_id), 2)
        except sqlite3.Error as e:
            logger.error("Could not load average rating", extra={"extra": {"carrier_id": carrier_id, "error": str(e)}})
            return 0.0

    def ratings_for_carrier(self, carrier_id: int) -> List[CarrierRating]:
        try:
            return self.rating_dao.find_by_carrier(carrier_id)
        except sqlite3.Error as e:
            logger.error("Could not load ratings", extra={"extra": {"carrier_id": carrier_id, "error": str(e)}})
            return []

    def all_ratings(self) -> List[CarrierRating]:
        try:
            return self.rating_dao.find_all()
        except sqlite3.Error as e:
            logger.error("Could not load ratings", extra={"extra": {"error": str(e)}})
            return []

    def performance_summary(self) -> List[Dict[str, Any]]:
        try:
            rows = self.rating_dao.performance_summary()
        except sqlite3.Error as e:
            logger.error("Could not load carrier performance", extra={"extra": {"error": str(e)}})
            return []
        return [dict(r) for r in rows]
