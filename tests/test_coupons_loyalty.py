import helpers
from helpers import fresh_db, make_user, remove_db, session_for

import sqlite3
import unittest
from datetime import date, timedelta
from unittest import mock

from greengrocer.coupon_service import CouponService, add_months
from greengrocer.dao import CouponDAO, LoyaltySettingsDAO, UserDAO
from greengrocer.loyalty_service import LoyaltyService
from greengrocer.models import Coupon, LoyaltySettings

TODAY = date(2025, 6, 15)


class TestAddMonths(unittest.TestCase):
    def test_clamps_to_month_end(self):
        self.assertEqual(add_months(date(2025, 1, 31), 1), date(2025, 2, 28))
        self.assertEqual(add_months(date(2024, 11, 30), 3), date(2025, 2, 28))
        self.assertEqual(add_months(date(2025, 6, 15), 3), date(2025, 9, 15))
        self.assertEqual(add_months(date(2025, 3, 10), -3), date(2024, 12, 10))


class TestCouponService(unittest.TestCase):
    def setUp(self):
        self.db_path = fresh_db()
        self.owner = make_user("boss", role="owner")
        self.alice = make_user("alice")
        self.bob = make_user("bob")
        self.owner_coupons = CouponService(session_for(self.owner))
        self.alice_coupons = CouponService(session_for(self.alice))

    def tearDown(self):
        remove_db(self.db_path)

    def test_create_normalises_code_and_stores(self):
        coupon = self.owner_coupons.create_coupon(" summer ", 15.0, TODAY + timedelta(days=30),
                                                  minimum_order_value=50.0, today=TODAY)
        self.assertEqual(coupon.code, "SUMMER")
        self.assertIsNotNone(coupon.id)
        stored = CouponDAO().find_by_code("SUMMER")
        self.assertEqual(stored.discount_percentage, 15.0)
        self.assertEqual(stored.created_date, TODAY)

    def test_create_rejects_invalid_input(self):
        self.owner_coupons.create_coupon("TAKEN", 10.0, TODAY + timedelta(days=5), today=TODAY)
        cases = {
            "empty": dict(code="  ", discount_percentage=10.0, expiration_date=TODAY),
            "duplicate": dict(code="taken", discount_percentage=10.0, expiration_date=TODAY),
            "zero pct": dict(code="A1", discount_percentage=0.0, expiration_date=TODAY),
            "pct over 100": dict(code="A2", discount_percentage=100.5, expiration_date=TODAY),
            "past expiry": dict(code="A3", discount_percentage=10.0, expiration_date=TODAY - timedelta(days=1)),
            "no expiry": dict(code="A4", discount_percentage=10.0, expiration_date=None),
            "negative minimum": dict(code="A5", discount_percentage=10.0, expiration_date=TODAY,
                                     minimum_order_value=-1.0),
            "negative maximum": dict(code="A6", discount_percentage=10.0, expiration_date=TODAY,
                                     maximum_discount=-1.0),
            "unknown owner": dict(code="A7", discount_percentage=10.0, expiration_date=TODAY, user_id=9999),
        }
        for label, kwargs in cases.items():
            with self.subTest(case=label):
                with self.assertRaises(ValueError):
                    self.owner_coupons.create_coupon(today=TODAY, **kwargs)
        self.assertEqual(len(self.owner_coupons.all_coupons()), 1)

    def test_validate_respects_owner_usage_and_expiry(self):
        CouponDAO().insert(Coupon(code="GENERAL", discount_percentage=5.0, expiration_date=TODAY))
        CouponDAO().insert(Coupon(code="BOBONLY", discount_percentage=5.0,
                                  expiration_date=TODAY + timedelta(days=3), user_id=self.bob.id))
        CouponDAO().insert(Coupon(code="OLD", discount_percentage=5.0, expiration_date=TODAY - timedelta(days=1)))
        CouponDAO().insert(Coupon(code="SPENT", discount_percentage=5.0, expiration_date=None, is_used=True))
        self.assertEqual(self.alice_coupons.validate_coupon(" GENERAL ", TODAY).code, "GENERAL")
        self.assertIsNone(self.alice_coupons.validate_coupon("BOBONLY", TODAY))
        self.assertIsNone(self.alice_coupons.validate_coupon("OLD", TODAY))
        self.assertIsNone(self.alice_coupons.validate_coupon("SPENT", TODAY))
        self.assertIsNone(self.alice_coupons.validate_coupon("", TODAY))

    def test_coupons_without_expiry_are_available(self):
        CouponDAO().insert(Coupon(code="FOREVER", discount_percentage=5.0, expiration_date=None))
        CouponDAO().insert(Coupon(code="SOON", discount_percentage=5.0, expiration_date=TODAY + timedelta(days=1),
                                  user_id=self.alice.id))
        CouponDAO().insert(Coupon(code="BOBS", discount_percentage=5.0, expiration_date=None, user_id=self.bob.id))
        codes = [c.code for c in self.alice_coupons.available_coupons(TODAY)]
        self.assertEqual(codes, ["SOON", "FOREVER"])
        self.assertIsNotNone(self.alice_coupons.validate_coupon("FOREVER", date(2099, 1, 1)))

    def test_mark_used_only_once(self):
        CouponDAO().insert(Coupon(code="ONCE", discount_percentage=5.0, expiration_date=None))
        self.assertTrue(self.alice_coupons.mark_coupon_used("ONCE"))
        self.assertFalse(self.alice_coupons.mark_coupon_used("ONCE"))
        self.assertTrue(CouponDAO().find_by_code("ONCE").is_used)

    def test_award_for_large_purchase(self):
        self.assertIsNone(self.owner_coupons.award_coupon_for_purchase(self.alice.id, 499.99, TODAY))
        coupon = self.owner_coupons.award_coupon_for_purchase(self.alice.id, 500.0, TODAY)
        self.assertEqual(coupon.user_id, self.alice.id)
        self.assertEqual(coupon.discount_percentage, 10.0)
        self.assertEqual(coupon.minimum_order_value, 100.0)
        self.assertEqual(coupon.maximum_discount, 50.0)
        self.assertEqual(coupon.expiration_date, date(2025, 9, 15))
        self.assertEqual(len(coupon.code), 8)
        self.assertTrue(coupon.code.isalnum() and coupon.code.upper() == coupon.code)
        self.assertEqual([c.code for c in self.alice_coupons.available_coupons(TODAY)], [coupon.code])

    def test_redeem_points_needs_enough_balance(self):
        UserDAO().add_loyalty_points(self.alice.id, 99)
        self.assertIsNone(self.alice_coupons.redeem_loyalty_points(TODAY))
        UserDAO().add_loyalty_points(self.alice.id, 31)
        coupon = self.alice_coupons.redeem_loyalty_points(TODAY)
        self.assertEqual(coupon.discount_percentage, 10.0)
        self.assertEqual(coupon.expiration_date, TODAY + timedelta(days=30))
        self.assertEqual(coupon.user_id, self.alice.id)
        self.assertEqual(UserDAO().find_by_id(self.alice.id).loyalty_points, 30)

    def test_failed_redemption_keeps_points_and_issues_nothing(self):
        UserDAO().add_loyalty_points(self.alice.id, 150)
        with mock.patch.object(CouponDAO, "_insert_row", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertLogs("greengrocer.coupon_service", level="ERROR"):
                self.assertIsNone(self.alice_coupons.redeem_loyalty_points(TODAY))
        self.assertEqual(UserDAO().find_by_id(self.alice.id).loyalty_points, 150)
        self.assertEqual(self.alice_coupons.available_coupons(TODAY), [])

    def test_owner_cannot_redeem_points(self):
        UserDAO().add_loyalty_points(self.owner.id, 500)
        self.assertIsNone(self.owner_coupons.redeem_loyalty_points(TODAY))

    def test_statistics_purge_and_expiring(self):
        dao = CouponDAO()
        dao.insert(Coupon(code="USED", discount_percentage=5.0, expiration_date=TODAY, is_used=True))
        dao.insert(Coupon(code="LIVE", discount_percentage=5.0, expiration_date=TODAY + timedelta(days=2)))
        dao.insert(Coupon(code="LATER", discount_percentage=5.0, expiration_date=TODAY + timedelta(days=20)))
        dao.insert(Coupon(code="GONE", discount_percentage=5.0, expiration_date=TODAY - timedelta(days=2)))
        self.assertEqual(self.owner_coupons.statistics(TODAY),
                         {"total": 4, "used": 1, "active": 2, "expired": 1})
        self.assertEqual([c.code for c in self.owner_coupons.expiring_soon(3, TODAY)], ["LIVE"])
        self.assertEqual([c.code for c in self.owner_coupons.active_coupons(TODAY)], ["LIVE", "LATER"])
        self.assertEqual(self.owner_coupons.purge_expired(TODAY), 1)
        self.assertFalse(self.owner_coupons.code_exists("GONE"))
        self.assertTrue(self.owner_coupons.code_exists("USED"))

    def test_update_and_delete(self):
        coupon = self.owner_coupons.create_coupon("EDIT", 10.0, TODAY + timedelta(days=5), today=TODAY)
        coupon.discount_percentage = 25.0
        self.assertTrue(self.owner_coupons.update_coupon(coupon))
        self.assertEqual(CouponDAO().find_by_id(coupon.id).discount_percentage, 25.0)
        coupon.discount_percentage = 0.0
        with self.assertRaises(ValueError):
            self.owner_coupons.update_coupon(coupon)
        self.assertTrue(self.owner_coupons.delete_coupon(coupon.id))
        self.assertFalse(self.owner_coupons.delete_coupon(coupon.id))


class TestLoyaltyService(unittest.TestCase):
    def setUp(self):
        self.db_path = fresh_db()
        self.owner = make_user("boss", role="owner")
        self.alice = make_user("alice")
        self.session = session_for(self.alice)
        self.loyalty = LoyaltyService(self.session)

    def tearDown(self):
        remove_db(self.db_path)

    def _complete_orders(self, count):
        for _ in range(count):
            UserDAO().increment_completed_orders(self.alice.id)

    def test_defaults_without_stored_settings(self):
        self.assertIsNone(LoyaltySettingsDAO().get())
        settings = self.loyalty.get_settings()
        self.assertEqual((settings.tier1_threshold, settings.tier3_discount), (5, 15.0))
        self.assertEqual(self.loyalty.current_user_tier(), "Standard")
        self.assertEqual(self.loyalty.current_user_discount(), 0.0)
        self.assertEqual(self.loyalty.current_user_progress(), "Standard tier • 5 more order(s) to Bronze")

    def test_tier_follows_completed_orders_after_login(self):
        self._complete_orders(7)
        self.assertEqual(self.loyalty.current_user_tier(), "Bronze")
        self.assertEqual(self.loyalty.current_user_discount(), 5.0)
        self.assertEqual(self.loyalty.current_user_progress(), "Bronze tier • 3 more order(s) to Silver")
        self._complete_orders(13)
        self.assertEqual(self.loyalty.current_user_progress(), "Gold tier (Max)")
        self.assertEqual(self.loyalty.orders_to_next_tier(20), 0)

    def test_non_customers_get_no_discount(self):
        owner_loyalty = LoyaltyService(session_for(self.owner))
        self.assertEqual(owner_loyalty.current_user_discount(), 0.0)
        self.assertEqual(owner_loyalty.current_user_progress(), "")
        self.assertEqual(owner_loyalty.discount_for_user(self.owner), 0.0)
        self.assertEqual(owner_loyalty.tier_for_user(self.owner), "Standard")

    def test_update_settings_persists_and_validates(self):
        custom = LoyaltySettings(tier1_threshold=1, tier1_discount=2.0, tier2_threshold=2,
                                 tier2_discount=4.0, tier3_threshold=3, tier3_discount=6.0)
        self.assertTrue(self.loyalty.update_settings(custom))
        self.assertEqual(LoyaltySettingsDAO().get().tier3_discount, 6.0)
        self._complete_orders(2)
        self.assertEqual(LoyaltyService(self.session).current_user_discount(), 4.0)
        with self.assertRaises(ValueError):
            self.loyalty.update_settings(LoyaltySettings(tier1_threshold=5, tier2_threshold=3))
        self.assertEqual(self.loyalty.refresh_settings().tier3_discount, 6.0)

    def test_points(self):
        self.assertEqual(self.loyalty.points_earned(250.75), 250)
        self.assertFalse(self.loyalty.add_points(self.alice.id, 0))
        self.assertTrue(self.loyalty.add_points(self.alice.id, 40))
        self.assertEqual(self.loyalty.current_user_points(), 40)


if __name__ == "__main__":
    unittest.main(verbosity=2)
