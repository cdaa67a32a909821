import helpers
from helpers import fresh_db, make_product, make_user, place_order, remove_db, session_for

import json
import logging
import os
import shutil
import tempfile
import unittest
from datetime import datetime
from unittest import mock

from greengrocer import passwords, validation
from greengrocer.auth_service import AuthService
from greengrocer.carrier_service import CarrierService
from greengrocer.config import StoreConfig, load_config
from greengrocer.dao import OrderDAO, ProductDAO, UserDAO, get_request_connection
from greengrocer.errors import CarrierBusyError, NotLoggedInError, OrderStateError
from greengrocer.image_service import PRODUCT_IMAGES, ImageLoaderService
from greengrocer.logging_config import JsonFormatter, configure_logging
from greengrocer.metrics import Counter, Histogram, generate_metrics_text
from greengrocer.session import Session


class TestPasswordsAndValidation(unittest.TestCase):
    def test_hash_and_verify(self):
        stored = passwords.hash_password("secret1")
        self.assertTrue(passwords.is_hashed(stored))
        self.assertTrue(passwords.verify_password("secret1", stored))
        self.assertFalse(passwords.verify_password("secret2", stored))
        self.assertNotEqual(stored, passwords.hash_password("secret1"))
        with self.assertRaises(ValueError):
            passwords.hash_password("")

    def test_legacy_plain_text_and_garbage(self):
        self.assertTrue(passwords.verify_password("cust", "cust"))
        self.assertFalse(passwords.verify_password("cust", "other"))
        self.assertFalse(passwords.verify_password("x", "!!notbase64:??"))
        self.assertFalse(passwords.verify_password(None, "cust"))

    def test_strength(self):
        self.assertFalse(passwords.is_strong_password("abcdef"))
        self.assertFalse(passwords.is_strong_password("a1"))
        self.assertTrue(passwords.is_strong_password("abcde1"))
        self.assertTrue(passwords.password_strength("abc").startswith("Too short"))
        self.assertEqual(passwords.password_strength("abcdef1"), "Weak")
        self.assertEqual(passwords.password_strength("Abcdefgh12!x"), "Strong")

    def test_validation_helpers(self):
        self.assertTrue(validation.is_valid_email("a.b@example.com"))
        self.assertFalse(validation.is_valid_email("not-an-email"))
        self.assertTrue(validation.is_valid_username("alice_01"))
        self.assertFalse(validation.is_valid_username("al"))
        self.assertEqual(validation.format_turkish_mobile("+90 533 458 92 43"), "05334589243")
        self.assertEqual(validation.format_turkish_mobile("0533-458-92-43"), "05334589243")
        self.assertEqual(validation.format_turkish_mobile("12345"), "12345")
        self.assertTrue(validation.is_valid_turkish_mobile("05334589243"))
        self.assertFalse(validation.is_valid_turkish_mobile("5334589243"))
        self.assertEqual(validation.parse_float(" 2.5 ", 0.0), 2.5)
        self.assertEqual(validation.parse_int("x", 7), 7)


class TestAuthService(unittest.TestCase):
    def setUp(self):
        self.db_path = fresh_db()
        self.session = Session()
        self.auth = AuthService(self.session)

    def tearDown(self):
        remove_db(self.db_path)

    def test_register_normalises_phone(self):
        user = self.auth.register_customer("alice", "secret1", " Kadikoy ", "alice@example.com", "+90 533 458 92 43")
        self.assertEqual(user.role, "customer")
        self.assertEqual(user.phone, "05334589243")
        self.assertEqual(user.address, "Kadikoy")
        self.assertFalse(self.auth.is_username_available("alice"))
        self.assertTrue(passwords.is_hashed(user.password_hash))

    def test_register_rejects_bad_input(self):
        self.auth.register_customer("alice", "secret1", "Moda")
        cases = {
            "short username": ("al", "secret1", "Moda", None, None),
            "weak password": ("bob", "secret", "Moda", None, None),
            "no address": ("bob", "secret1", "  ", None, None),
            "bad email": ("bob", "secret1", "Moda", "bob@", None),
            "bad phone": ("bob", "secret1", "Moda", None, "12345"),
            "taken": ("alice", "secret1", "Moda", None, None),
        }
        for label, args in cases.items():
            with self.subTest(case=label):
                with self.assertRaises(ValueError):
                    self.auth.register_customer(*args)

    def test_login_and_logout(self):
        self.auth.register_customer("alice", "secret1", "Moda")
        self.assertIsNone(self.auth.login("alice", "wrong1"))
        self.assertIsNone(self.auth.login("nobody", "secret1"))
        self.assertFalse(self.session.is_logged_in)
        user = self.auth.login(" alice ", "secret1")
        self.assertEqual(self.session.user_id, user.id)
        self.auth.logout()
        self.assertFalse(self.session.is_logged_in)

    def test_legacy_and_inactive_accounts(self):
        legacy_id = UserDAO().create_user("carr", "carr", "carrier")
        self.assertIsNotNone(self.auth.login("carr", "carr"))
        UserDAO().set_active(legacy_id, False)
        self.assertIsNone(AuthService(Session()).login("carr", "carr"))

    def test_change_password(self):
        self.auth.register_customer("alice", "secret1", "Moda")
        with self.assertRaises(NotLoggedInError):
            self.auth.change_password("secret1", "better2")
        self.auth.login("alice", "secret1")
        with self.assertRaises(ValueError):
            self.auth.change_password("wrong1", "better2")
        with self.assertRaises(ValueError):
            self.auth.change_password("secret1", "short")
        self.assertTrue(self.auth.change_password("secret1", "better2"))
        self.assertIsNotNone(AuthService(Session()).login("alice", "better2"))

    def test_update_profile(self):
        self.auth.register_customer("alice", "secret1", "Moda")
        self.auth.login("alice", "secret1")
        with self.assertRaises(ValueError):
            self.auth.update_profile(None, None, "")
        self.auth.update_profile("a@example.com", "05551112233", "Besiktas")
        stored = UserDAO().find_by_username("alice")
        self.assertEqual((stored.email, stored.phone, stored.address), ("a@example.com", "05551112233", "Besiktas"))


class TestCarrierService(unittest.TestCase):
    def setUp(self):
        self.db_path = fresh_db()
        self.owner = make_user("boss", role="owner")
        self.alice = make_user("alice")
        self.bob = make_user("bob")
        self.staff = CarrierService(session_for(self.owner))
        self.tomato = make_product()

    def tearDown(self):
        remove_db(self.db_path)

    def test_employ_carrier(self):
        carrier = self.staff.employ_carrier(" driver ", "d@example.com", "drive1")
        self.assertEqual((carrier.username, carrier.role), ("driver", "carrier"))
        self.assertTrue(passwords.verify_password("drive1", carrier.password_hash))
        for args in (("driver", None, "drive1"), ("x", None, "drive1"),
                     ("other", "bad@", "drive1"), ("other", None, "weak")):
            with self.subTest(args=args):
                with self.assertRaises(ValueError):
                    self.staff.employ_carrier(*args)

    def test_fire_is_refused_while_orders_are_out(self):
        carrier = self.staff.employ_carrier("driver", None, "drive1")
        order = place_order(self.alice, self.tomato, carrier=carrier)
        with self.assertRaises(CarrierBusyError):
            self.staff.fire_carrier(carrier.id)
        self.assertFalse(self.staff.fire_carrier(self.alice.id))
        conn = get_request_connection()
        with conn:
            OrderDAO(conn).mark_delivered(order.id, carrier.id, datetime.now())
        self.assertTrue(self.staff.fire_carrier(carrier.id))
        self.assertEqual(self.staff.all_carriers(), [])
        self.assertEqual([c.username for c in self.staff.all_carriers(active_only=False)], ["driver"])
        self.assertFalse(UserDAO().find_by_id(carrier.id).is_active)

    def test_rating_rules(self):
        carrier = make_user("driver", role="carrier")
        delivered = place_order(self.alice, self.tomato, carrier=carrier, delivered=True)
        in_transit = place_order(self.alice, self.tomato, carrier=carrier)
        ratings = CarrierService(session_for(self.alice))
        self.assertTrue(ratings.can_rate_order(delivered.id))
        self.assertFalse(ratings.can_rate_order(in_transit.id))
        with self.assertRaises(ValueError):
            ratings.rate_carrier(delivered.id, 6)
        with self.assertRaises(OrderStateError):
            ratings.rate_carrier(in_transit.id, 5)
        with self.assertRaises(OrderStateError):
            CarrierService(session_for(self.bob)).rate_carrier(delivered.id, 5)

        record = ratings.rate_carrier(delivered.id, 4, "   ")
        self.assertIsNone(record.comment)
        self.assertFalse(ratings.can_rate_order(delivered.id))
        with self.assertRaises(OrderStateError):
            ratings.rate_carrier(delivered.id, 5)
        self.assertEqual(ratings.existing_rating(delivered.id).customer_name, "alice")
        self.assertEqual(ratings.average_rating(carrier.id), 4.0)
        self.assertEqual(len(ratings.all_ratings()), 1)
        self.assertEqual([r.rating for r in ratings.ratings_for_carrier(carrier.id)], [4])
        self.assertEqual(ratings.ratings_for_carrier(self.bob.id), [])
        self.assertEqual(self.staff.performance_summary()[0]["total_ratings"], 1)


class TestImageLoader(unittest.TestCase):
    def setUp(self):
        self.db_path = fresh_db()
        self.image_dir = tempfile.mkdtemp()
        with open(os.path.join(self.image_dir, "tomato.png"), "wb") as fh:
            fh.write(b"\x89PNG tomato")
        self.tomato = make_product("Tomato")
        self.apple = make_product("Apple", "fruit")
        self.loader = ImageLoaderService(StoreConfig(image_dir=self.image_dir))

    def tearDown(self):
        shutil.rmtree(self.image_dir, ignore_errors=True)
        remove_db(self.db_path)

    def test_loads_missing_images_once(self):
        loaded, skipped = self.loader.load_default_images()
        self.assertEqual(loaded, 1)
        self.assertEqual(skipped, len(PRODUCT_IMAGES) - 2)
        self.assertEqual(ProductDAO().get_product(self.tomato.id).image, b"\x89PNG tomato")
        self.assertFalse(ProductDAO().get_product(self.apple.id).has_image)
        self.assertEqual(self.loader.load_default_images(), (0, 0))

    def test_force_reload_overwrites(self):
        ProductDAO().update_image(self.tomato.id, b"old")
        self.assertEqual(self.loader.load_default_images()[0], 0)
        self.assertEqual(self.loader.force_reload_all_images(), 1)
        self.assertEqual(ProductDAO().get_product(self.tomato.id).image, b"\x89PNG tomato")

    def test_missing_directory_is_skipped(self):
        loader = ImageLoaderService(StoreConfig(image_dir=os.path.join(self.image_dir, "nope")))
        self.assertEqual(loader.load_default_images(), (0, 0))

    def test_registration_is_per_instance(self):
        with open(os.path.join(self.image_dir, "plum.png"), "wb") as fh:
            fh.write(b"plum")
        plum = make_product("Plum", "fruit")
        self.loader.register_product_image("PLUM", "plum.png")
        self.assertEqual(self.loader.registered_image_count(), len(PRODUCT_IMAGES) + 1)
        self.assertNotIn("plum", PRODUCT_IMAGES)
        self.assertEqual(self.loader.load_default_images()[0], 2)
        self.assertEqual(ProductDAO().get_product(plum.id).image, b"plum")


class TestConfig(unittest.TestCase):
    def test_environment_overrides(self):
        with mock.patch.dict(os.environ, {"GREENGROCER_VAT_RATE": "0.2", "GREENGROCER_MIN_CART_VALUE": "75",
                                          "GREENGROCER_IMAGE_DIR": "/tmp/pics"}):
            config = load_config()
        self.assertEqual(config.vat_rate, 0.2)
        self.assertEqual(config.min_cart_value, 75.0)
        self.assertEqual(config.image_dir, "/tmp/pics")

    def test_invalid_number_falls_back(self):
        with mock.patch.dict(os.environ, {"GREENGROCER_CANCEL_WINDOW_HOURS": "soon"}):
            with self.assertLogs("greengrocer.config", level="WARNING"):
                config = load_config()
        self.assertEqual(config.cancel_window_hours, 2.0)


class TestMetrics(unittest.TestCase):
    def test_counter_labels_and_rendering(self):
        counter = Counter("test_events_total", "Events seen in tests", ["kind"])
        counter.inc(kind="a")
        counter.inc(2, kind="a")
        counter.inc(kind="b")
        self.assertEqual(counter.value(kind="a"), 3.0)
        with self.assertRaises(ValueError):
            counter.inc(-1, kind="a")
        text = generate_metrics_text().decode("utf-8")
        self.assertIn("# TYPE test_events_total counter", text)
        self.assertIn('test_events_total{kind="a"} 3.0', text)
        self.assertIn("# TYPE orders_placed_total counter", text)

    def test_histogram_buckets_are_cumulative(self):
        histogram = Histogram("test_latency_seconds", "Latency in tests", buckets=[0.1, 1.0])
        for value in (0.05, 0.5, 5.0):
            histogram.observe(value)
        samples = histogram.samples()
        self.assertIn('test_latency_seconds_bucket{le="0.1"} 1', samples)
        self.assertIn('test_latency_seconds_bucket{le="1.0"} 2', samples)
        self.assertIn('test_latency_seconds_bucket{le="+Inf"} 3', samples)
        self.assertIn("test_latency_seconds_count 3", samples)
        self.assertEqual(histogram.count(), 3)


class TestLogging(unittest.TestCase):
    def test_json_formatter_flattens_context(self):
        record = logging.makeLogRecord({
            "name": "greengrocer.test", "levelname": "INFO", "msg": "Order placed",
            "user_id": 3, "extra": {"total": 9.5},
        })
        payload = json.loads(JsonFormatter().format(record))
        self.assertEqual(payload["message"], "Order placed")
        self.assertEqual(payload["user_id"], 3)
        self.assertEqual(payload["total"], 9.5)
        self.assertEqual(payload["logger"], "greengrocer.test")
        self.assertNotIn("order_id", payload)

    def test_configure_logging_writes_json_lines(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        log_dir = tempfile.mkdtemp()
        try:
            path = configure_logging(log_dir=log_dir, console_level=logging.CRITICAL)
            logging.getLogger("greengrocer.test").info("hello", extra={"order_id": 7})
            for handler in root.handlers:
                handler.flush()
            with open(path, encoding="utf-8") as fh:
                line = json.loads(fh.readline())
            self.assertEqual((line["message"], line["order_id"]), ("hello", 7))
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
            shutil.rmtree(log_dir, ignore_errors=True)


if __name__ == "__main__":
    unittest.main(verbosity=2)
