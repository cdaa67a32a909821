"""Coupon creation, validation and redemption."""

from __future__ import annotations

import calendar
import logging
import secrets
import sqlite3
import string
from datetime import date, timedelta
from typing import Dict, List, Optional

from greengrocer.dao import CouponDAO, UserDAO, get_request_connection
from greengrocer.loyalty_service import LoyaltyService
from greengrocer.models import Coupon
from greengrocer.session import Session

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8

# Reward for large purchases
REWARD_MIN_PURCHASE = 500.0
REWARD_PERCENTAGE = 10.0
REWARD_MIN_ORDER = 100.0
REWARD_MAX_DISCOUNT = 50.0
REWARD_VALID_MONTHS = 3
POINTS_COUPON_VALID_DAYS = 30


def add_months(day: date, months: int) -> date:
    """``day`` shifted by whole months, clamped to the target month's length."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


class CouponService:
    def __init__(self, session: Session, coupon_dao: CouponDAO | None = None,
                 loyalty: LoyaltyService | None = None, user_dao: UserDAO | None = None) -> None:
        self.session = session
        self.coupon_dao = coupon_dao or CouponDAO()
        self.user_dao = user_dao or UserDAO()
        self.loyalty = loyalty or LoyaltyService(session, user_dao=self.user_dao)

    # ---- Customer side ----

    def validate_coupon(self, code: str, today: date | None = None) -> Optional[Coupon]:
        """The coupon if the logged-in user may redeem ``code`` now, else None."""
        user_id = self.session.user_id
        if user_id is None or not code:
            return None
        try:
            return self.coupon_dao.validate(code.strip(), user_id, today)
        except sqlite3.Error as e:
            logger.error("Coupon validation failed",
                         extra={"user_id": user_id, "extra": {"code": code, "error": str(e)}})
            return None

    def available_coupons(self, today: date | None = None) -> List[Coupon]:
        user_id = self.session.user_id
        if user_id is None:
            return []
        try:
            return self.coupon_dao.find_available_for_user(user_id, today)
        except sqlite3.Error as e:
            logger.error("Could not list coupons", extra={"user_id": user_id, "extra": {"error": str(e)}})
            return []

    def mark_coupon_used(self, code: str, order_id: int | None = None) -> bool:
        try:
            conn = get_request_connection()
            with conn:
                return self.coupon_dao.mark_as_used(code, order_id)
        except sqlite3.Error as e:
            logger.error("Could not mark coupon used", extra={"extra": {"code": code, "error": str(e)}})
            return False

    @staticmethod
    def calculate_discount(coupon: Coupon | None, order_value: float, today: date | None = None) -> float:
        if coupon is None:
            return 0.0
        return coupon.calculate_discount(order_value, today)

    # ---- Owner side ----

    def create_coupon(
        self,
        code: str,
        discount_percentage: float,
        expiration_date: date | None,
        minimum_order_value: float = 0.0,
        maximum_discount: float = 0.0,
        user_id: int | None = None,
        today: date | None = None,
    ) -> Coupon:
        """Validate and store a new coupon.

        Raises:
            ValueError: For an empty or duplicate code, a percentage outside
                (0, 100], a missing or past expiration date, or negative
                minimum/maximum amounts.
            sqlite3.Error: If the insert itself fails.
        """
        code = (code or "").strip().upper()
        if not code:
            raise ValueError("Coupon code cannot be empty")
        if self.coupon_dao.code_exists(code):
            raise ValueError("Coupon code already exists")
        if discount_percentage <= 0 or discount_percentage > 100:
            raise ValueError("Discount percentage must be between 0 and 100")
        if expiration_date is None or expiration_date < (today or date.today()):
            raise ValueError("Expiration date must be in the future")
        if minimum_order_value < 0:
            raise ValueError("Minimum order value cannot be negative")
        if maximum_discount < 0:
            raise ValueError("Maximum discount cannot be negative")
        if user_id is not None and self.user_dao.find_by_id(user_id) is None:
            raise ValueError("Coupon owner does not exist")
        coupon = Coupon(
            code=code,
            discount_percentage=discount_percentage,
            expiration_date=expiration_date,
            minimum_order_value=minimum_order_value,
            maximum_discount=maximum_discount,
            user_id=user_id,
            created_date=today or date.today(),
        )
        self.coupon_dao.insert(coupon)
        logger.info(
            "Coupon created",
            extra={"user_id": self.session.user_id,
                   "extra": {"code": code, "percentage": discount_percentage, "personal": user_id is not None}},
        )
        return coupon

    def update_coupon(self, coupon: Coupon) -> bool:
        if coupon.discount_percentage <= 0 or coupon.discount_percentage > 100:
            raise ValueError("Discount percentage must be between 0 and 100")
        if coupon.minimum_order_value < 0 or coupon.maximum_discount < 0:
            raise ValueError("Coupon amounts cannot be negative")
        try:
            return self.coupon_dao.update(coupon)
        except sqlite3.Error as e:
            logger.error("Could not update coupon", extra={"extra": {"code": coupon.code, "error": str(e)}})
            return False

    def delete_coupon(self, coupon_id: int) -> bool:
        try:
            return self.coupon_dao.delete(coupon_id)
        except sqlite3.Error as e:
            logger.error("Could not delete coupon", extra={"extra": {"coupon_id": coupon_id, "error": str(e)}})
            return False

    def all_coupons(self) -> List[Coupon]:
        try:
            return self.coupon_dao.find_all()
        except sqlite3.Error as e:
            logger.error("Could not list coupons", extra={"extra": {"error": str(e)}})
            return []

    def active_coupons(self, today: date | None = None) -> List[Coupon]:
        try:
            return self.coupon_dao.find_all_active(today)
        except sqlite3.Error as e:
            logger.error("Could not list active coupons", extra={"extra": {"error": str(e)}})
            return []

    def expiring_soon(self, days: int = 3, today: date | None = None) -> List[Coupon]:
        try:
            return self.coupon_dao.find_expiring_soon(days, today)
        except sqlite3.Error as e:
            logger.error("Could not list expiring coupons", extra={"extra": {"error": str(e)}})
            return []

    def statistics(self, today: date | None = None) -> Dict[str, int]:
        try:
            return self.coupon_dao.statistics(today)
        except sqlite3.Error as e:
            logger.error("Could not compute coupon statistics", extra={"extra": {"error": str(e)}})
            return {"total": 0, "used": 0, "active": 0, "expired": 0}

    def purge_expired(self, today: date | None = None) -> int:
        try:
            removed = self.coupon_dao.delete_expired(today)
        except sqlite3.Error as e:
            logger.error("Could not purge expired coupons", extra={"extra": {"error": str(e)}})
            return 0
        logger.info("Expired coupons purged", extra={"extra": {"removed": removed}})
        return removed

    def code_exists(self, code: str) -> bool:
        """True when taken; also True if the lookup fails, so callers never reuse a code blindly."""
        try:
            return self.coupon_dao.code_exists(code)
        except sqlite3.Error as e:
            logger.error("Coupon code lookup failed", extra={"extra": {"code": code, "error": str(e)}})
            return True

    def generate_unique_code(self) -> str:
        while True:
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            if not self.code_exists(code):
                return code

    # ---- Rewards ----

    def award_coupon_for_purchase(self, user_id: int, purchase_amount: float,
                                  today: date | None = None) -> Optional[Coupon]:
        """Give a personal 10% coupon (min 100, max 50, 3 months) for purchases of 500+."""
        if purchase_amount < REWARD_MIN_PURCHASE:
            return None
        start = today or date.today()
        coupon = Coupon(
            code=self.generate_unique_code(),
            discount_percentage=REWARD_PERCENTAGE,
            expiration_date=add_months(start, REWARD_VALID_MONTHS),
            minimum_order_value=REWARD_MIN_ORDER,
            maximum_discount=REWARD_MAX_DISCOUNT,
            user_id=user_id,
            created_date=start,
        )
        try:
            self.coupon_dao.insert(coupon)
        except sqlite3.Error as e:
            logger.error("Could not award purchase coupon",
                         extra={"extra": {"target_user": user_id, "error": str(e)}})
            return None
        logger.info("Purchase reward coupon issued",
                    extra={"extra": {"target_user": user_id, "code": coupon.code, "amount": purchase_amount}})
        return coupon

    def redeem_loyalty_points(self, today: date | None = None) -> Optional[Coupon]:
        """Trade the logged-in customer's points for a personal coupon.

        Costs ``points_for_coupon`` points and yields a ``coupon_value``
        percent coupon valid for 30 days.  The deduction and the coupon are
        written in one transaction.  None when the balance is short.
        """
        user = self.session.user
        if user is None or not user.is_customer:
            return None
        settings = self.loyalty.get_settings()
        fresh = self.user_dao.find_by_id(user.id)
        if fresh is None or not settings.can_generate_coupon(fresh.loyalty_points):
            return None
        start = today or date.today()
        coupon = Coupon(
            code=self.generate_unique_code(),
            discount_percentage=settings.coupon_value,
            expiration_date=start + timedelta(days=POINTS_COUPON_VALID_DAYS),
            user_id=user.id,
            created_date=start,
        )
        conn = get_request_connection()
        try:
            with conn:
                if not UserDAO(conn).spend_loyalty_points(user.id, settings.points_for_coupon):
                    return None
                CouponDAO(conn).insert(coupon, commit=False)
        except sqlite3.Error as e:
            logger.error("Could not redeem loyalty points", extra={"user_id": user.id, "extra": {"error": str(e)}})
            return None
        logger.info("Loyalty points redeemed",
                    extra={"user_id": user.id, "extra": {"code": coupon.code, "points": settings.points_for_coupon}})
        return coupon
