"""Loyalty tiers and points for customers.

Tier discounts depend only on a customer's completed order count; the
thresholds and percentages come from the ``loyalty_settings`` row and are
cached per service instance until updated or refreshed.
"""

from __future__ import annotations

import logging
import sqlite3

from greengrocer.dao import LoyaltySettingsDAO, UserDAO
from greengrocer.models import LoyaltySettings, User
from greengrocer.session import Session

logger = logging.getLogger(__name__)


class LoyaltyService:
    def __init__(self, session: Session, settings_dao: LoyaltySettingsDAO | None = None,
                 user_dao: UserDAO | None = None) -> None:
        self.session = session
        self.settings_dao = settings_dao or LoyaltySettingsDAO()
        self.user_dao = user_dao or UserDAO()
        self._cached: LoyaltySettings | None = None

    def get_settings(self) -> LoyaltySettings:
        """Current settings, falling back to the defaults when none are stored."""
        if self._cached is None:
            try:
                self._cached = self.settings_dao.get() or LoyaltySettings()
            except sqlite3.Error as e:
                logger.error("Could not load loyalty settings", extra={"extra": {"error": str(e)}})
                return LoyaltySettings()
        return self._cached

    def update_settings(self, settings: LoyaltySettings) -> bool:
        settings.validate()
        try:
            ok = self.settings_dao.update(settings)
        except sqlite3.Error as e:
            logger.error("Could not save loyalty settings", extra={"extra": {"error": str(e)}})
            return False
        if ok:
            self._cached = settings
            logger.info(
                "Loyalty settings updated",
                extra={"user_id": self.session.user_id, "extra": {"tier3_discount": settings.tier3_discount}},
            )
        return ok

    def refresh_settings(self) -> LoyaltySettings:
        self._cached = None
        return self.get_settings()

    def _fresh_user(self, user_id: int) -> User | None:
        try:
            return self.user_dao.find_by_id(user_id)
        except sqlite3.Error as e:
            logger.error("Could not load user for loyalty lookup",
                         extra={"extra": {"target_user": user_id, "error": str(e)}})
            return None

    def _current_customer(self) -> User | None:
        user = self.session.user
        if user is None or not user.is_customer:
            return None
        # The session copy may lag behind deliveries made since login
        return self._fresh_user(user.id) or user

    # ---- Current user ----

    def current_user_tier(self) -> str:
        user = self._current_customer()
        return self.get_settings().tier_name(user.completed_orders) if user else "Standard"

    def current_user_discount(self) -> float:
        user = self._current_customer()
        return self.get_settings().discount_for_orders(user.completed_orders) if user else 0.0

    def current_user_points(self) -> int:
        user = self._current_customer()
        return user.loyalty_points if user else 0

    def current_user_progress(self) -> str:
        """e.g. ``"Bronze tier • 3 more order(s) to Silver"`` or ``"Gold tier (Max)"``."""
        user = self._current_customer()
        if user is None:
            return ""
        settings = self.get_settings()
        tier = settings.tier_name(user.completed_orders)
        upcoming = settings.next_tier(user.completed_orders)
        if upcoming is None:
            return f"{tier} tier (Max)"
        name, threshold = upcoming
        return f"{tier} tier • {threshold - user.completed_orders} more order(s) to {name}"

    # ---- Arbitrary users ----

    def discount_for_user(self, user: User) -> float:
        if not user.is_customer:
            return 0.0
        return self.get_settings().discount_for_orders(user.completed_orders)

    def tier_for_user(self, user: User) -> str:
        if not user.is_customer:
            return "Standard"
        return self.get_settings().tier_name(user.completed_orders)

    def orders_to_next_tier(self, completed_orders: int) -> int:
        """Orders still needed to reach the next tier; 0 at the top tier."""
        upcoming = self.get_settings().next_tier(completed_orders)
        return upcoming[1] - completed_orders if upcoming else 0

    def points_earned(self, amount: float) -> int:
        return self.get_settings().points_earned(amount)

    def add_points(self, user_id: int, points: int) -> bool:
        if points <= 0:
            return False
        try:
            return self.user_dao.add_loyalty_points(user_id, points)
        except sqlite3.Error as e:
            logger.error("Could not add loyalty points",
                         extra={"extra": {"target_user": user_id, "points": points, "error": str(e)}})
            return False

    def increment_completed_orders(self, user_id: int) -> bool:
        try:
            return self.user_dao.increment_completed_orders(user_id)
        except sqlite3.Error as e:
            logger.error("Could not increment completed orders",
                         extra={"extra": {"target_user": user_id, "error": str(e)}})
            return False
