# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

# Lets ``python -m unittest`` run without an installed package
if SRC.is_dir() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
# --- end path/bootstrap ---

import os
import tempfile
from datetime import datetime, timedelta

from greengrocer.dao import OrderDAO, ProductDAO, UserDAO, close_request_connection, get_request_connection
from greengrocer.models import OrderItem, round_money
from greengrocer.passwords import hash_password
from greengrocer.session import Session


def fresh_db():
    """
    Create a fresh temporary DB file, point GREENGROCER_DB_PATH at it, and
    drop the thread's cached connection so each test starts isolated.
    """
    close_request_connection()
    tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    tmp.close()
    os.environ["GREENGROCER_DB_PATH"] = tmp.name
    return tmp.name


def remove_db(path):
    close_request_connection()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except FileNotFoundError:
            pass


def make_user(username, role="customer", password="secret1", **contact):
    dao = UserDAO()
    user_id = dao.create_user(username, hash_password(password), role, **contact)
    return dao.find_by_id(user_id)


def session_for(user):
    session = Session()
    session.login(user)
    return session


def make_product(name="Tomato", product_type="vegetable", price=20.0, stock=100.0, threshold=5.0):
    dao = ProductDAO()
    return dao.get_product(dao.add_product(name, product_type, price, stock, threshold))


def place_order(customer, product, quantity=1.0, order_time=None, carrier=None, delivered=False):
    """Insert an order directly, optionally claimed and delivered by ``carrier``."""
    order_time = order_time or datetime.now().replace(microsecond=0)
    item = OrderItem(product_id=product.id, product_name=product.name, quantity=quantity, unit_price=product.price)
    subtotal = item.total_price
    vat = round_money(subtotal * 0.18)
    conn = get_request_connection()
    dao = OrderDAO(conn)
    with conn:
        order_id = dao.create_order(customer.id, [item], order_time + timedelta(hours=2), subtotal, 0.0, vat,
                                    round_money(subtotal + vat), order_time=order_time)
    if carrier is not None:
        dao.assign_carrier(order_id, carrier.id)
        if delivered:
            with conn:
                dao.mark_delivered(order_id, carrier.id, order_time + timedelta(hours=2))
    return dao.find_by_id(order_id)
