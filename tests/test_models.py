import helpers  # noqa: F401  (puts src/ on sys.path)

import unittest
from datetime import date, timedelta

from greengrocer.models import Coupon, LoyaltySettings, Message, OrderItem, Product, round_money

TODAY = date(2025, 6, 15)


class TestLoyaltyTiers(unittest.TestCase):
    """Tier discounts keyed by completed order count (default 5/10/20 -> 5/10/15%)."""

    def setUp(self):
        self.settings = LoyaltySettings()

    def test_discount_table(self):
        cases = [(0, 0.0), (4, 0.0), (5, 5.0), (9, 5.0), (10, 10.0), (19, 10.0), (20, 15.0), (250, 15.0)]
        for completed, expected in cases:
            with self.subTest(completed=completed):
                self.assertEqual(self.settings.discount_for_orders(completed), expected)

    def test_tier_names_and_next_tier(self):
        self.assertEqual(self.settings.tier_name(0), "Standard")
        self.assertEqual(self.settings.tier_name(5), "Bronze")
        self.assertEqual(self.settings.tier_name(12), "Silver")
        self.assertEqual(self.settings.tier_name(20), "Gold")
        self.assertEqual(self.settings.next_tier(3), ("Bronze", 5))
        self.assertEqual(self.settings.next_tier(5), ("Silver", 10))
        self.assertIsNone(self.settings.next_tier(20))

    def test_custom_thresholds(self):
        s = LoyaltySettings(tier1_threshold=2, tier1_discount=3.0, tier2_threshold=4,
                            tier2_discount=6.0, tier3_threshold=8, tier3_discount=12.0)
        self.assertEqual(s.discount_for_orders(1), 0.0)
        self.assertEqual(s.discount_for_orders(3), 3.0)
        self.assertEqual(s.discount_for_orders(8), 12.0)

    def test_points(self):
        self.assertEqual(self.settings.points_earned(123.99), 123)
        self.assertTrue(self.settings.can_generate_coupon(100))
        self.assertFalse(self.settings.can_generate_coupon(99))

    def test_validate_rejects_bad_settings(self):
        with self.assertRaises(ValueError):
            LoyaltySettings(tier1_threshold=10, tier2_threshold=10).validate()
        with self.assertRaises(ValueError):
            LoyaltySettings(tier3_discount=150.0).validate()
        for value in (0.0, -5.0, 150.0):
            with self.subTest(coupon_value=value):
                with self.assertRaises(ValueError):
                    LoyaltySettings(coupon_value=value).validate()
        LoyaltySettings().validate()
        LoyaltySettings(coupon_value=100.0).validate()


class TestCouponRules(unittest.TestCase):
    def make(self, **kw):
        defaults = dict(code="SAVE10", discount_percentage=10.0, expiration_date=TODAY + timedelta(days=10),
                        minimum_order_value=100.0, maximum_discount=50.0)
        defaults.update(kw)
        return Coupon(**defaults)

    def test_discount_is_capped_and_respects_minimum(self):
        coupon = self.make()
        self.assertEqual(coupon.calculate_discount(99.99, TODAY), 0.0)
        self.assertEqual(coupon.calculate_discount(100.0, TODAY), 10.0)
        self.assertEqual(coupon.calculate_discount(200.0, TODAY), 20.0)
        self.assertEqual(coupon.calculate_discount(1000.0, TODAY), 50.0)

    def test_zero_maximum_means_uncapped(self):
        coupon = self.make(maximum_discount=0.0, minimum_order_value=0.0)
        self.assertEqual(coupon.calculate_discount(1000.0, TODAY), 100.0)

    def test_used_or_expired_coupon_gives_nothing(self):
        used = self.make(is_used=True)
        expired = self.make(expiration_date=TODAY - timedelta(days=1))
        self.assertEqual(used.calculate_discount(500.0, TODAY), 0.0)
        self.assertEqual(expired.calculate_discount(500.0, TODAY), 0.0)
        self.assertTrue(expired.is_expired(TODAY))
        self.assertFalse(self.make(expiration_date=TODAY).is_expired(TODAY))

    def test_no_expiration_never_expires(self):
        coupon = self.make(expiration_date=None)
        self.assertFalse(coupon.is_expired(date(2100, 1, 1)))
        self.assertIsNone(coupon.days_until_expiration(TODAY))
        self.assertEqual(coupon.expiration_info(TODAY), "No expiration")
        self.assertEqual(coupon.status(TODAY), "Active")

    def test_status_labels(self):
        self.assertEqual(self.make(is_used=True).status(TODAY), "Used")
        self.assertEqual(self.make(expiration_date=TODAY - timedelta(days=2)).status(TODAY), "Expired")
        self.assertEqual(self.make(expiration_date=TODAY).status(TODAY), "Expires Today!")
        self.assertEqual(self.make(expiration_date=TODAY + timedelta(days=3)).status(TODAY), "Expiring Soon")
        self.assertEqual(self.make(expiration_date=TODAY + timedelta(days=4)).status(TODAY), "Active")

    def test_expiration_info(self):
        self.assertEqual(self.make(expiration_date=TODAY - timedelta(days=3)).expiration_info(TODAY), "Expired 3 days ago")
        self.assertEqual(self.make(expiration_date=TODAY).expiration_info(TODAY), "Expires today!")
        self.assertEqual(self.make(expiration_date=TODAY + timedelta(days=1)).expiration_info(TODAY), "Expires tomorrow")
        self.assertEqual(self.make(expiration_date=TODAY + timedelta(days=5)).expiration_info(TODAY), "Expires in 5 days")

    def test_description_and_identity(self):
        coupon = self.make()
        self.assertEqual(coupon.discount_description, "10% off (max 50.00 TL) on orders over 100.00 TL")
        self.assertTrue(coupon.is_general)
        self.assertTrue(self.make(user_id=7).is_personal)
        self.assertEqual(coupon, self.make(discount_percentage=20.0))
        self.assertNotEqual(coupon, self.make(code="OTHER"))


class TestProductPricing(unittest.TestCase):
    def test_price_doubles_at_threshold_or_for_large_orders(self):
        product = Product(id=1, name="Apple", type="fruit", price=20.0, stock=100.0, threshold=5.0)
        self.assertEqual(product.effective_price(3.0), 20.0)
        self.assertEqual(product.effective_price(5.0), 20.0)
        self.assertEqual(product.effective_price(5.5), 40.0)
        product.stock = 5.0
        self.assertTrue(product.is_price_doubled)
        self.assertEqual(product.effective_price(1.0), 40.0)

    def test_order_item_total_and_money_rounding(self):
        self.assertEqual(OrderItem(product_id=1, product_name="Kiwi", quantity=0.5, unit_price=12.25).total_price, 6.13)
        self.assertEqual(round_money(0.125), 0.13)
        self.assertEqual(round_money(2.675), 2.68)


class TestMessageRules(unittest.TestCase):
    def test_reply_swaps_parties_and_prefixes_subject(self):
        original = Message(sender_id=1, receiver_id=2, subject="Delivery", content="Where is it?",
                           id=10, sender_name="cust", receiver_name="own")
        reply = original.create_reply("On its way")
        self.assertEqual((reply.sender_id, reply.receiver_id), (2, 1))
        self.assertEqual(reply.subject, "Re: Delivery")
        self.assertEqual(reply.parent_message_id, 10)
        self.assertTrue(reply.is_reply)
        self.assertEqual(reply.create_reply("ok").subject, "Re: Delivery")

    def test_reply_to_blank_subject(self):
        original = Message(sender_id=1, receiver_id=2, subject="", content="hi", id=3)
        self.assertEqual(original.create_reply("hello").subject, "Re: (No Subject)")

    def test_content_preview(self):
        message = Message(sender_id=1, receiver_id=2, subject="s", content="a" * 60)
        self.assertEqual(message.content_preview(), "a" * 50 + "...")
        self.assertEqual(Message(sender_id=1, receiver_id=2, subject="s", content="short").content_preview(), "short")


if __name__ == "__main__":
    unittest.main(verbosity=2)
