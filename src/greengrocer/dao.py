"""
Data access layer for the GreenGrocer application.

Provides:
 - per-thread SQLite connections with the schema applied on first use
 - one DAO class per table; every statement is parameterised
 - row -> model mapping for the dataclasses in ``greengrocer.models``

DAOs let ``sqlite3.Error`` propagate; services decide how to degrade.
"""

from __future__ import annotations
import logging, os, sqlite3, threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from greengrocer.config import resolve_db_path
from greengrocer.models import (
    ACTIVE_CARRIER_STATUSES,
    CarrierRating,
    Coupon,
    LoyaltySettings,
    Message,
    Order,
    OrderItem,
    Product,
    ROLE_CARRIER,
    ROLE_CUSTOMER,
    ROLE_OWNER,
    STATUS_ASSIGNED,
    STATUS_CANCELLED,
    STATUS_DELIVERED,
    STATUS_PENDING,
    User,
    format_timestamp,
    parse_date,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_thread_local = threading.local()

_THIS_FILE = Path(__file__).resolve()
_BUNDLED_SCHEMA = _THIS_FILE.parent / "db" / "init.sql"
_BUNDLED_SEED = _THIS_FILE.parent / "db" / "seed.sql"
# Guards against cycles in corrupted parent chains
MAX_THREAD_DEPTH = 100

# ------------------------------------------------------------------------------
# Connection management
# ------------------------------------------------------------------------------
def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

def _find_schema_path() -> Optional[Path]:
    env = os.environ.get("GREENGROCER_SCHEMA_PATH")
    if env:
        p = Path(env).expanduser().resolve()
        if p.is_file():
            return p
        logger.warning("GREENGROCER_SCHEMA_PATH does not exist; using bundled schema",
                       extra={"extra": {"path": env}})
    return _BUNDLED_SCHEMA if _BUNDLED_SCHEMA.is_file() else None

def _apply_schema_if_needed(conn: sqlite3.Connection) -> None:
    (ver,) = conn.execute("PRAGMA user_version;").fetchone()
    if int(ver) > 0:
        return
    schema_path = _find_schema_path()
    if schema_path is None:
        raise sqlite3.OperationalError("Schema file init.sql not found")
    conn.executescript(schema_path.read_text(encoding="utf-8"))
    conn.execute("PRAGMA user_version = 1;")
    logger.info("Database schema applied", extra={"extra": {"schema": str(schema_path)}})

def _new_connection() -> sqlite3.Connection:
    """Open a configured SQLite connection.

    The connection uses :class:`sqlite3.Row` rows, enforces foreign keys,
    waits up to ten seconds on a locked database and runs in WAL mode when
    the filesystem supports it.  A brand new file gets the bundled schema.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened.
    """
    db_path = resolve_db_path()
    _ensure_parent_dir(db_path)
    try:
        conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA busy_timeout = 10000;")
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.OperationalError:
            # Some filesystems cannot host the WAL file
            logger.warning("WAL journal mode unavailable", extra={"extra": {"db_path": db_path}})
        _apply_schema_if_needed(conn)
        return conn
    except sqlite3.OperationalError as e:
        logger.error("DB open failed", extra={"extra": {"db_path": db_path, "error": str(e)}})
        raise

def get_request_connection() -> sqlite3.Connection:
    """Return this thread's connection, opening it on first use."""
    conn = getattr(_thread_local, "conn", None)
    if conn is None:
        conn = _new_connection()
        _thread_local.conn = conn
    return conn

def close_request_connection() -> None:
    """Close and forget this thread's connection (tests and shutdown)."""
    conn = getattr(_thread_local, "conn", None)
    if conn is not None:
        conn.close()
        _thread_local.conn = None


def seed_default_data() -> bool:
    """Load the bundled accounts and catalogue into a store with no owner.

    Returns True when data was inserted.
    """
    conn = get_request_connection()
    if conn.execute("SELECT 1 FROM users WHERE role = ? LIMIT 1;", (ROLE_OWNER,)).fetchone():
        return False
    conn.executescript(_BUNDLED_SEED.read_text(encoding="utf-8"))
    logger.info("Default store data loaded", extra={"extra": {"seed": str(_BUNDLED_SEED)}})
    return True


def _now() -> str:
    return format_timestamp(datetime.now())

def _day_start(value: date) -> str:
    return format_timestamp(datetime.combine(value, datetime.min.time()))

def _day_end(value: date) -> str:
    return format_timestamp(datetime.combine(value, datetime.max.time().replace(microsecond=0)))


# ------------------------------------------------------------------------------
# Base DAO
# ------------------------------------------------------------------------------

class BaseDAO:
    """
    Base class for all DAOs.

    A DAO built with an explicit connection runs on it (used to group several
    DAO calls in one transaction); otherwise it uses the thread's connection.
    """

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        self._conn_explicit = conn

    def _conn(self) -> sqlite3.Connection:
        return self._conn_explicit if self._conn_explicit is not None else get_request_connection()


# ------------------------------------------------------------------------------
# User DAO
# ------------------------------------------------------------------------------

_USER_COLUMNS = (
    "id, username, password_hash, role, email, phone, address, "
    "completed_orders, loyalty_points, is_active, created_at"
)

def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        password_hash=row["password_hash"],
        role=row["role"],
        email=row["email"],
        phone=row["phone"],
        address=row["address"],
        completed_orders=row["completed_orders"],
        loyalty_points=row["loyalty_points"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


class UserDAO(BaseDAO):
    """Data Access Object for the users table."""

    def create_user(
        self,
        username: str,
        password_hash: str,
        role: str = ROLE_CUSTOMER,
        email: str | None = None,
        phone: str | None = None,
        address: str | None = None,
    ) -> Optional[int]:
        """Insert a user and return its id, or None if the username is taken."""
        conn = self._conn()
        try:
            with conn:
                cur = conn.execute(
                    "INSERT INTO users (username, password_hash, role, email, phone, address)"
                    " VALUES (?, ?, ?, ?, ?, ?);",
                    (username, password_hash, role, email, phone, address),
                )
            return cur.lastrowid
        except sqlite3.IntegrityError:
            return None

    def find_by_id(self, user_id: int) -> Optional[User]:
        row = self._conn().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?;", (user_id,)
        ).fetchone()
        return _row_to_user(row) if row else None

    def find_by_username(self, username: str) -> Optional[User]:
        row = self._conn().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE username = ?;", (username,)
        ).fetchone()
        return _row_to_user(row) if row else None

    def find_owner(self) -> Optional[User]:
        row = self._conn().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE role = ? ORDER BY id LIMIT 1;",
            (ROLE_OWNER,),
        ).fetchone()
        return _row_to_user(row) if row else None

    def find_by_role(self, role: str, active_only: bool = True) -> List[User]:
        sql = f"SELECT {_USER_COLUMNS} FROM users WHERE role = ?"
        if active_only:
            sql += " AND is_active = 1"
        rows = self._conn().execute(sql + " ORDER BY username;", (role,)).fetchall()
        return [_row_to_user(r) for r in rows]

    def find_all_customers(self) -> List[User]:
        return self.find_by_role(ROLE_CUSTOMER)

    def find_all_carriers(self) -> List[User]:
        return self.find_by_role(ROLE_CARRIER)

    def username_exists(self, username: str) -> bool:
        row = self._conn().execute(
            "SELECT COUNT(*) FROM users WHERE username = ?;", (username,)
        ).fetchone()
        return row[0] > 0

    def update_password(self, user_id: int, password_hash: str) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?;", (password_hash, user_id)
            )
        return cur.rowcount > 0

    def update_contact(self, user_id: int, email: str | None, phone: str | None, address: str | None) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE users SET email = ?, phone = ?, address = ? WHERE id = ?;",
                (email, phone, address, user_id),
            )
        return cur.rowcount > 0

    def add_loyalty_points(self, user_id: int, points: int) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE users SET loyalty_points = loyalty_points + ? WHERE id = ?;",
                (points, user_id),
            )
        return cur.rowcount > 0

    def spend_loyalty_points(self, user_id: int, points: int) -> bool:
        """Deduct ``points`` only if the balance covers them.  No commit."""
        cur = self._conn().execute(
            "UPDATE users SET loyalty_points = loyalty_points - ? WHERE id = ? AND loyalty_points >= ?;",
            (points, user_id, points),
        )
        return cur.rowcount > 0

    def increment_completed_orders(self, user_id: int) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE users SET completed_orders = completed_orders + 1 WHERE id = ?;",
                (user_id,),
            )
        return cur.rowcount > 0

    def set_active(self, user_id: int, active: bool) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE users SET is_active = ? WHERE id = ?;", (1 if active else 0, user_id)
            )
        return cur.rowcount > 0

    def delete(self, user_id: int) -> bool:
        """Hard delete; raises IntegrityError while orders still reference the user."""
        conn = self._conn()
        with conn:
            cur = conn.execute("DELETE FROM users WHERE id = ?;", (user_id,))
        return cur.rowcount > 0


# ------------------------------------------------------------------------------
# Product DAO
# ------------------------------------------------------------------------------

_PRODUCT_COLUMNS = "id, name, type, price, stock, threshold, image"

def _row_to_product(row: sqlite3.Row) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        price=row["price"],
        stock=row["stock"],
        threshold=row["threshold"],
        image=row["image"],
    )


class ProductDAO(BaseDAO):
    """DAO for product records."""

    def add_product(self, name: str, product_type: str, price: float, stock: float, threshold: float = 5.0) -> int:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "INSERT INTO products (name, type, price, stock, threshold) VALUES (?, ?, ?, ?, ?);",
                (name, product_type, price, stock, threshold),
            )
        return cur.lastrowid

    def get_product(self, product_id: int) -> Optional[Product]:
        row = self._conn().execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM products WHERE id = ?;", (product_id,)
        ).fetchone()
        return _row_to_product(row) if row else None

    def get_product_by_name(self, name: str) -> Optional[Product]:
        """Case-insensitive lookup of the first product with ``name``."""
        row = self._conn().execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM products WHERE lower(name) = lower(?) ORDER BY id LIMIT 1;",
            (name,),
        ).fetchone()
        return _row_to_product(row) if row else None

    def list_products(self, product_type: str | None = None, in_stock_only: bool = False) -> List[Product]:
        sql = f"SELECT {_PRODUCT_COLUMNS} FROM products"
        clauses, params = [], []
        if product_type is not None:
            clauses.append("type = ?")
            params.append(product_type)
        if in_stock_only:
            clauses.append("stock > 0")
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        rows = self._conn().execute(sql + " ORDER BY name;", params).fetchall()
        return [_row_to_product(r) for r in rows]

    def products_without_image(self) -> List[Product]:
        rows = self._conn().execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM products WHERE image IS NULL OR length(image) = 0;"
        ).fetchall()
        return [_row_to_product(r) for r in rows]

    def update_product(self, product_id: int, name: str, price: float, threshold: float) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE products SET name = ?, price = ?, threshold = ? WHERE id = ?;",
                (name, price, threshold, product_id),
            )
        return cur.rowcount > 0

    def update_stock(self, product_id: int, new_stock: float) -> None:
        conn = self._conn()
        with conn:
            conn.execute("UPDATE products SET stock = ? WHERE id = ?;", (new_stock, product_id))

    def update_image(self, product_id: int, image: bytes | None) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute("UPDATE products SET image = ? WHERE id = ?;", (image, product_id))
        return cur.rowcount > 0

    def update_image_by_name(self, name: str, image: bytes, only_missing: bool = True) -> int:
        """Store ``image`` on every product called ``name`` (case-insensitive)."""
        sql = "UPDATE products SET image = ? WHERE lower(name) = lower(?)"
        if only_missing:
            sql += " AND (image IS NULL OR length(image) = 0)"
        conn = self._conn()
        with conn:
            cur = conn.execute(sql + ";", (image, name))
        return cur.rowcount

    def decrease_stock_if_available(self, product_id: int, qty: float) -> bool:
        """
        Subtract ``qty`` kg only if that much is in stock; False otherwise.

        The conditional UPDATE makes the check and the write a single
        statement.  Does not commit: callers wrap it in ``with conn`` so the
        decrement joins the order transaction.
        """
        if qty < 0:
            raise ValueError("Quantity to decrease must be non-negative")
        cur = self._conn().execute(
            "UPDATE products SET stock = stock - ? WHERE id = ? AND stock >= ?;",
            (qty, product_id, qty),
        )
        return cur.rowcount > 0

    def increase_stock(self, product_id: int, qty: float) -> bool:
        """Put ``qty`` kg back, e.g. when an order is cancelled.  No commit."""
        if qty < 0:
            raise ValueError("Quantity to increase must be non-negative")
        cur = self._conn().execute(
            "UPDATE products SET stock = stock + ? WHERE id = ?;", (qty, product_id)
        )
        return cur.rowcount > 0

    def delete_product(self, product_id: int) -> None:
        conn = self._conn()
        with conn:
            conn.execute("DELETE FROM products WHERE id = ?;", (product_id,))


# ------------------------------------------------------------------------------
# Order DAO
# ------------------------------------------------------------------------------

_ORDER_SELECT = (
    "SELECT o.id, o.customer_id, o.carrier_id, o.status, o.order_time, o.requested_delivery_time,"
    " o.actual_delivery_time, o.subtotal, o.discount_amount, o.vat_amount, o.total_cost,"
    " o.coupon_code, o.points_earned, cu.username AS customer_name, ca.username AS carrier_name"
    " FROM orders o"
    " JOIN users cu ON o.customer_id = cu.id"
    " LEFT JOIN users ca ON o.carrier_id = ca.id"
)

def _row_to_order(row: sqlite3.Row) -> Order:
    return Order(
        id=row["id"],
        customer_id=row["customer_id"],
        carrier_id=row["carrier_id"],
        status=row["status"],
        order_time=parse_timestamp(row["order_time"]),
        requested_delivery_time=parse_timestamp(row["requested_delivery_time"]),
        actual_delivery_time=parse_timestamp(row["actual_delivery_time"]),
        subtotal=row["subtotal"],
        discount_amount=row["discount_amount"],
        vat_amount=row["vat_amount"],
        total_cost=row["total_cost"],
        coupon_code=row["coupon_code"],
        points_earned=row["points_earned"],
        customer_name=row["customer_name"],
        carrier_name=row["carrier_name"],
    )


class OrderDAO(BaseDAO):
    """DAO for the orders and order_items tables."""

    def create_order(
        self,
        customer_id: int,
        items: List[OrderItem],
        requested_delivery_time: datetime,
        subtotal: float,
        discount_amount: float,
        vat_amount: float,
        total_cost: float,
        coupon_code: str | None = None,
        order_time: datetime | None = None,
        points_earned: int = 0,
    ) -> int:
        """Insert the order header and its items.

        Does not commit; the caller owns the transaction so stock and coupon
        updates are applied atomically with the insert.
        """
        conn = self._conn()
        cur = conn.execute(
            "INSERT INTO orders (customer_id, status, order_time, requested_delivery_time,"
            " subtotal, discount_amount, vat_amount, total_cost, coupon_code, points_earned)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
            (
                customer_id,
                STATUS_PENDING,
                format_timestamp(order_time or datetime.now()),
                format_timestamp(requested_delivery_time),
                subtotal,
                discount_amount,
                vat_amount,
                total_cost,
                coupon_code,
                points_earned,
            ),
        )
        order_id = cur.lastrowid
        conn.executemany(
            "INSERT INTO order_items (order_id, product_id, product_name, quantity, unit_price)"
            " VALUES (?, ?, ?, ?, ?);",
            [(order_id, it.product_id, it.product_name, it.quantity, it.unit_price) for it in items],
        )
        return order_id

    def find_by_id(self, order_id: int, with_items: bool = True) -> Optional[Order]:
        row = self._conn().execute(_ORDER_SELECT + " WHERE o.id = ?;", (order_id,)).fetchone()
        if not row:
            return None
        order = _row_to_order(row)
        if with_items:
            order.items = self.get_items(order_id)
        return order

    def get_items(self, order_id: int) -> List[OrderItem]:
        rows = self._conn().execute(
            "SELECT id, order_id, product_id, product_name, quantity, unit_price"
            " FROM order_items WHERE order_id = ? ORDER BY id;",
            (order_id,),
        ).fetchall()
        return [
            OrderItem(
                id=r["id"],
                order_id=r["order_id"],
                product_id=r["product_id"],
                product_name=r["product_name"],
                quantity=r["quantity"],
                unit_price=r["unit_price"],
            )
            for r in rows
        ]

    def _query(self, where: str, params: Iterable = (), order_by: str = "o.order_time DESC") -> List[Order]:
        rows = self._conn().execute(
            f"{_ORDER_SELECT} WHERE {where} ORDER BY {order_by};", tuple(params)
        ).fetchall()
        return [_row_to_order(r) for r in rows]

    def find_by_customer(self, customer_id: int) -> List[Order]:
        return self._query("o.customer_id = ?", (customer_id,))

    def find_by_carrier(self, carrier_id: int, statuses: Iterable[str] | None = None) -> List[Order]:
        if statuses is None:
            return self._query("o.carrier_id = ?", (carrier_id,))
        statuses = list(statuses)
        marks = ", ".join("?" for _ in statuses)
        return self._query(f"o.carrier_id = ? AND o.status IN ({marks})", (carrier_id, *statuses))

    def find_by_status(self, status: str) -> List[Order]:
        return self._query("o.status = ?", (status,))

    def find_all(self) -> List[Order]:
        return self._query("1 = 1")

    def find_available(self) -> List[Order]:
        """Pending orders without a carrier, earliest delivery first."""
        return self._query(
            "o.status = ? AND o.carrier_id IS NULL", (STATUS_PENDING,), "o.requested_delivery_time ASC"
        )

    def find_by_date_range(self, start: date, end: date) -> List[Order]:
        """Orders placed between the start of ``start`` and the end of ``end``."""
        return self._query(
            "o.order_time BETWEEN ? AND ?", (_day_start(start), _day_end(end)), "o.order_time ASC"
        )

    def update_status(self, order_id: int, status: str) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute("UPDATE orders SET status = ? WHERE id = ?;", (status, order_id))
        return cur.rowcount > 0

    def cancel_if_pending(self, order_id: int) -> bool:
        """Flip a pending order to cancelled.  No commit."""
        cur = self._conn().execute(
            "UPDATE orders SET status = ? WHERE id = ? AND status = ?;",
            (STATUS_CANCELLED, order_id, STATUS_PENDING),
        )
        return cur.rowcount > 0

    def assign_carrier(self, order_id: int, carrier_id: int) -> bool:
        """Claim a pending, unassigned order.  False if another carrier won."""
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE orders SET carrier_id = ?, status = ?"
                " WHERE id = ? AND status = ? AND carrier_id IS NULL;",
                (carrier_id, STATUS_ASSIGNED, order_id, STATUS_PENDING),
            )
        return cur.rowcount > 0

    def mark_delivered(self, order_id: int, carrier_id: int, delivered_at: datetime) -> bool:
        """Set delivered status and time, then credit the customer with the
        completed order and the points recorded at checkout.  No commit."""
        conn = self._conn()
        cur = conn.execute(
            "UPDATE orders SET status = ?, actual_delivery_time = ?"
            " WHERE id = ? AND carrier_id = ? AND status IN (?, ?);",
            (STATUS_DELIVERED, format_timestamp(delivered_at), order_id, carrier_id, *ACTIVE_CARRIER_STATUSES),
        )
        if cur.rowcount == 0:
            return False
        conn.execute(
            "UPDATE users SET completed_orders = completed_orders + 1,"
            " loyalty_points = loyalty_points + (SELECT points_earned FROM orders WHERE id = ?)"
            " WHERE id = (SELECT customer_id FROM orders WHERE id = ?);",
            (order_id, order_id),
        )
        return True

    def total_revenue(self, start: date, end: date) -> float:
        row = self._conn().execute(
            "SELECT COALESCE(SUM(total_cost), 0) FROM orders"
            " WHERE status = ? AND order_time BETWEEN ? AND ?;",
            (STATUS_DELIVERED, _day_start(start), _day_end(end)),
        ).fetchone()
        return float(row[0])

    def count_by_status(self, status: str) -> int:
        row = self._conn().execute(
            "SELECT COUNT(*) FROM orders WHERE status = ?;", (status,)
        ).fetchone()
        return row[0]

    def has_active_orders(self, carrier_id: int) -> bool:
        return bool(self.find_by_carrier(carrier_id, ACTIVE_CARRIER_STATUSES))

    def active_orders_with_carriers(self, customer_id: int) -> List[Order]:
        """Customer orders currently out with a carrier, newest first."""
        marks = ", ".join("?" for _ in ACTIVE_CARRIER_STATUSES)
        return self._query(
            f"o.customer_id = ? AND o.carrier_id IS NOT NULL AND o.status IN ({marks})",
            (customer_id, *ACTIVE_CARRIER_STATUSES),
        )

    def latest_assigned_for_customer(self, customer_id: int) -> Optional[Order]:
        found = self.active_orders_with_carriers(customer_id)
        return found[0] if found else None


# ------------------------------------------------------------------------------
# Coupon DAO
# ------------------------------------------------------------------------------

_COUPON_COLUMNS = (
    "id, code, discount_percentage, user_id, is_used, created_date, expiration_date,"
    " minimum_order_value, maximum_discount"
)
# Coupons without an expiration date never expire
_NOT_EXPIRED = "(expiration_date IS NULL OR expiration_date >= ?)"

def _row_to_coupon(row: sqlite3.Row) -> Coupon:
    return Coupon(
        id=row["id"],
        code=row["code"],
        discount_percentage=row["discount_percentage"],
        user_id=row["user_id"],
        is_used=bool(row["is_used"]),
        created_date=parse_date(row["created_date"]),
        expiration_date=parse_date(row["expiration_date"]),
        minimum_order_value=row["minimum_order_value"],
        maximum_discount=row["maximum_discount"],
    )

def _iso(today: date | None) -> str:
    return (today or date.today()).isoformat()


class CouponDAO(BaseDAO):
    """DAO for the coupons table."""

    def _select(self, where: str = "", params: Iterable = (), order_by: str = "") -> List[Coupon]:
        sql = f"SELECT {_COUPON_COLUMNS} FROM coupons"
        if where:
            sql += f" WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        rows = self._conn().execute(sql + ";", tuple(params)).fetchall()
        return [_row_to_coupon(r) for r in rows]

    def find_by_id(self, coupon_id: int) -> Optional[Coupon]:
        found = self._select("id = ?", (coupon_id,))
        return found[0] if found else None

    def find_by_code(self, code: str) -> Optional[Coupon]:
        found = self._select("code = ?", (code,))
        return found[0] if found else None

    def find_all(self) -> List[Coupon]:
        return self._select(order_by="created_date DESC, id DESC")

    def find_available_for_user(self, user_id: int, today: date | None = None) -> List[Coupon]:
        """Unused, unexpired coupons that are personal to ``user_id`` or general."""
        return self._select(
            f"(user_id = ? OR user_id IS NULL) AND is_used = 0 AND {_NOT_EXPIRED}",
            (user_id, _iso(today)),
            "expiration_date IS NULL, expiration_date ASC",
        )

    def find_all_active(self, today: date | None = None) -> List[Coupon]:
        return self._select(
            f"is_used = 0 AND {_NOT_EXPIRED}", (_iso(today),), "expiration_date IS NULL, expiration_date ASC"
        )

    def insert(self, coupon: Coupon, commit: bool = True) -> int:
        """Insert ``coupon`` and set its id.

        With ``commit=False`` the insert joins the caller's transaction.
        """
        conn = self._conn()
        if not commit:
            return self._insert_row(conn, coupon)
        with conn:
            return self._insert_row(conn, coupon)

    def _insert_row(self, conn: sqlite3.Connection, coupon: Coupon) -> int:
        cur = conn.execute(
            "INSERT INTO coupons (code, discount_percentage, user_id, is_used, created_date,"
            " expiration_date, minimum_order_value, maximum_discount)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
            (
                coupon.code,
                coupon.discount_percentage,
                coupon.user_id,
                1 if coupon.is_used else 0,
                coupon.created_date.isoformat(),
                coupon.expiration_date.isoformat() if coupon.expiration_date else None,
                coupon.minimum_order_value,
                coupon.maximum_discount,
            ),
        )
        coupon.id = cur.lastrowid
        return coupon.id

    def update(self, coupon: Coupon) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE coupons SET code = ?, discount_percentage = ?, user_id = ?, is_used = ?,"
                " expiration_date = ?, minimum_order_value = ?, maximum_discount = ? WHERE id = ?;",
                (
                    coupon.code,
                    coupon.discount_percentage,
                    coupon.user_id,
                    1 if coupon.is_used else 0,
                    coupon.expiration_date.isoformat() if coupon.expiration_date else None,
                    coupon.minimum_order_value,
                    coupon.maximum_discount,
                    coupon.id,
                ),
            )
        return cur.rowcount > 0

    def mark_as_used(self, code: str, order_id: int | None = None) -> bool:
        """Mark an unused coupon as used, optionally recording the order.

        Does not commit, so checkout can include it in the order transaction.
        Returns False when the coupon was already used or does not exist.
        """
        cur = self._conn().execute(
            "UPDATE coupons SET is_used = 1, used_at = ?, used_in_order_id = ?"
            " WHERE code = ? AND is_used = 0;",
            (_now(), order_id, code),
        )
        return cur.rowcount > 0

    def restore(self, code: str) -> bool:
        """Make a coupon usable again after its order is cancelled.  No commit."""
        cur = self._conn().execute(
            "UPDATE coupons SET is_used = 0, used_at = NULL, used_in_order_id = NULL WHERE code = ?;",
            (code,),
        )
        return cur.rowcount > 0

    def delete(self, coupon_id: int) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute("DELETE FROM coupons WHERE id = ?;", (coupon_id,))
        return cur.rowcount > 0

    def code_exists(self, code: str) -> bool:
        row = self._conn().execute("SELECT COUNT(*) FROM coupons WHERE code = ?;", (code,)).fetchone()
        return row[0] > 0

    def validate(self, code: str, user_id: int, today: date | None = None) -> Optional[Coupon]:
        """Return the coupon if ``user_id`` may redeem ``code`` right now."""
        found = self._select(
            f"code = ? AND (user_id IS NULL OR user_id = ?) AND is_used = 0 AND {_NOT_EXPIRED}",
            (code, user_id, _iso(today)),
        )
        return found[0] if found else None

    def is_still_valid(self, code: str, today: date | None = None) -> bool:
        row = self._conn().execute(
            f"SELECT COUNT(*) FROM coupons WHERE code = ? AND is_used = 0 AND {_NOT_EXPIRED};",
            (code, _iso(today)),
        ).fetchone()
        return row[0] > 0

    def find_expired(self, today: date | None = None) -> List[Coupon]:
        return self._select("expiration_date < ?", (_iso(today),), "expiration_date DESC")

    def find_expiring_soon(self, days: int, today: date | None = None) -> List[Coupon]:
        start = today or date.today()
        return self._select(
            "is_used = 0 AND expiration_date BETWEEN ? AND ?",
            (start.isoformat(), (start + timedelta(days=days)).isoformat()),
            "expiration_date ASC",
        )

    def statistics(self, today: date | None = None) -> Dict[str, int]:
        """Counts of all, used, usable and expired-unused coupons."""
        row = self._conn().execute(
            "SELECT COUNT(*) AS total,"
            " COALESCE(SUM(is_used = 1), 0) AS used,"
            f" COALESCE(SUM(is_used = 0 AND {_NOT_EXPIRED}), 0) AS active,"
            " COALESCE(SUM(is_used = 0 AND expiration_date < ?), 0) AS expired"
            " FROM coupons;",
            (_iso(today), _iso(today)),
        ).fetchone()
        return {"total": row["total"], "used": row["used"], "active": row["active"], "expired": row["expired"]}

    def delete_expired(self, today: date | None = None) -> int:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "DELETE FROM coupons WHERE is_used = 0 AND expiration_date < ?;", (_iso(today),)
            )
        return cur.rowcount


# ------------------------------------------------------------------------------
# Loyalty settings DAO
# ------------------------------------------------------------------------------

_LOYALTY_FIELDS = (
    "tier1_threshold", "tier1_discount", "tier2_threshold", "tier2_discount",
    "tier3_threshold", "tier3_discount", "points_per_currency", "points_for_coupon", "coupon_value",
)


class LoyaltySettingsDAO(BaseDAO):
    """The loyalty_settings table holds at most one meaningful row."""

    def get(self) -> Optional[LoyaltySettings]:
        row = self._conn().execute(
            f"SELECT id, {', '.join(_LOYALTY_FIELDS)} FROM loyalty_settings ORDER BY id LIMIT 1;"
        ).fetchone()
        if not row:
            return None
        return LoyaltySettings(**{k: row[k] for k in ("id", *_LOYALTY_FIELDS)})

    def create_if_not_exists(self) -> LoyaltySettings:
        existing = self.get()
        if existing is not None:
            return existing
        defaults = LoyaltySettings()
        conn = self._conn()
        with conn:
            cur = conn.execute(
                f"INSERT INTO loyalty_settings ({', '.join(_LOYALTY_FIELDS)})"
                f" VALUES ({', '.join('?' for _ in _LOYALTY_FIELDS)});",
                tuple(getattr(defaults, f) for f in _LOYALTY_FIELDS),
            )
        defaults.id = cur.lastrowid
        return defaults

    def update(self, settings: LoyaltySettings) -> bool:
        if settings.id is None:
            settings.id = self.create_if_not_exists().id
        conn = self._conn()
        with conn:
            cur = conn.execute(
                f"UPDATE loyalty_settings SET {', '.join(f + ' = ?' for f in _LOYALTY_FIELDS)} WHERE id = ?;",
                (*(getattr(settings, f) for f in _LOYALTY_FIELDS), settings.id),
            )
        return cur.rowcount > 0


# ------------------------------------------------------------------------------
# Message DAO
# ------------------------------------------------------------------------------

_MESSAGE_SELECT = (
    "SELECT m.id, m.sender_id, m.receiver_id, m.subject, m.content, m.sent_at, m.is_read,"
    " m.parent_message_id, s.username AS sender_name, r.username AS receiver_name"
    " FROM messages m"
    " JOIN users s ON m.sender_id = s.id"
    " JOIN users r ON m.receiver_id = r.id"
)

def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        subject=row["subject"] or "",
        content=row["content"],
        sent_at=parse_timestamp(row["sent_at"]),
        is_read=bool(row["is_read"]),
        parent_message_id=row["parent_message_id"],
        sender_name=row["sender_name"],
        receiver_name=row["receiver_name"],
    )


class MessageDAO(BaseDAO):
    """DAO for the messages table; every read joins in both usernames."""

    def _query(self, where: str, params: Iterable = (), order_by: str = "m.sent_at DESC, m.id DESC") -> List[Message]:
        rows = self._conn().execute(
            f"{_MESSAGE_SELECT} WHERE {where} ORDER BY {order_by};", tuple(params)
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def find_by_id(self, message_id: int) -> Optional[Message]:
        found = self._query("m.id = ?", (message_id,))
        return found[0] if found else None

    def find_by_receiver(self, receiver_id: int) -> List[Message]:
        return self._query("m.receiver_id = ?", (receiver_id,))

    def find_by_sender(self, sender_id: int) -> List[Message]:
        return self._query("m.sender_id = ?", (sender_id,))

    def find_unread_by_receiver(self, receiver_id: int) -> List[Message]:
        return self._query("m.receiver_id = ? AND m.is_read = 0", (receiver_id,))

    def find_children(self, parent_id: int) -> List[Message]:
        return self._query("m.parent_message_id = ?", (parent_id,), "m.sent_at ASC, m.id ASC")

    def find_root_id(self, message_id: int) -> int:
        """Follow parent links up to the thread root.

        Gives up after ``MAX_THREAD_DEPTH`` hops (a cycle) and returns the
        starting id in that case.
        """
        current = message_id
        for _ in range(MAX_THREAD_DEPTH):
            row = self._conn().execute(
                "SELECT parent_message_id FROM messages WHERE id = ?;", (current,)
            ).fetchone()
            if row is None:
                break
            if row["parent_message_id"] is None:
                return current
            current = row["parent_message_id"]
        return message_id

    def find_conversation_thread(self, message_id: int) -> List[Message]:
        """The whole thread containing ``message_id``, oldest first."""
        root = self.find_by_id(self.find_root_id(message_id))
        if root is None:
            return []
        collected: Dict[int, Message] = {root.id: root}
        pending = [root.id]
        while pending:
            parent_id = pending.pop()
            for child in self.find_children(parent_id):
                if child.id not in collected:
                    collected[child.id] = child
                    pending.append(child.id)
        return sorted(collected.values(), key=lambda m: (m.sent_at, m.id))

    def find_conversation_between(self, user_a: int, user_b: int) -> List[Message]:
        return self._query(
            "(m.sender_id = ? AND m.receiver_id = ?) OR (m.sender_id = ? AND m.receiver_id = ?)",
            (user_a, user_b, user_b, user_a),
        )

    def find_all(self) -> List[Message]:
        return self._query("1 = 1")

    def insert(self, message: Message) -> int:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "INSERT INTO messages (sender_id, receiver_id, subject, content, sent_at, is_read, parent_message_id)"
                " VALUES (?, ?, ?, ?, ?, ?, ?);",
                (
                    message.sender_id,
                    message.receiver_id,
                    message.subject,
                    message.content,
                    format_timestamp(message.sent_at),
                    1 if message.is_read else 0,
                    message.parent_message_id,
                ),
            )
        message.id = cur.lastrowid
        return message.id

    def mark_as_read(self, message_id: int) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute("UPDATE messages SET is_read = 1 WHERE id = ?;", (message_id,))
        return cur.rowcount > 0

    def mark_all_as_read(self, receiver_id: int) -> int:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE messages SET is_read = 1 WHERE receiver_id = ? AND is_read = 0;", (receiver_id,)
            )
        return cur.rowcount

    def delete(self, message_id: int) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute("DELETE FROM messages WHERE id = ?;", (message_id,))
        return cur.rowcount > 0

    def unread_count(self, receiver_id: int) -> int:
        row = self._conn().execute(
            "SELECT COUNT(*) FROM messages WHERE receiver_id = ? AND is_read = 0;", (receiver_id,)
        ).fetchone()
        return row[0]


# ------------------------------------------------------------------------------
# Carrier rating DAO
# ------------------------------------------------------------------------------

_RATING_SELECT = (
    "SELECT r.id, r.carrier_id, r.customer_id, r.order_id, r.rating, r.comment, r.rated_at,"
    " c.username AS carrier_name, u.username AS customer_name"
    " FROM carrier_ratings r"
    " LEFT JOIN users c ON c.id = r.carrier_id"
    " LEFT JOIN users u ON u.id = r.customer_id"
)


def _row_to_rating(row: sqlite3.Row) -> CarrierRating:
    return CarrierRating(
        id=row["id"],
        carrier_id=row["carrier_id"],
        customer_id=row["customer_id"],
        order_id=row["order_id"],
        rating=row["rating"],
        comment=row["comment"],
        rated_at=parse_timestamp(row["rated_at"]),
        carrier_name=row["carrier_name"],
        customer_name=row["customer_name"],
    )


class RatingDAO(BaseDAO):
    """DAO for carrier_ratings; one rating per delivered order."""

    def insert(self, rating: CarrierRating) -> Optional[int]:
        """Store a rating; None if the order has already been rated."""
        conn = self._conn()
        try:
            with conn:
                cur = conn.execute(
                    "INSERT INTO carrier_ratings (carrier_id, customer_id, order_id, rating, comment, rated_at)"
                    " VALUES (?, ?, ?, ?, ?, ?);",
                    (rating.carrier_id, rating.customer_id, rating.order_id, rating.rating, rating.comment, _now()),
                )
        except sqlite3.IntegrityError:
            return None
        rating.id = cur.lastrowid
        return rating.id

    def find_by_order(self, order_id: int) -> Optional[CarrierRating]:
        row = self._conn().execute(_RATING_SELECT + " WHERE r.order_id = ?;", (order_id,)).fetchone()
        return _row_to_rating(row) if row else None

    def find_all(self) -> List[CarrierRating]:
        rows = self._conn().execute(_RATING_SELECT + " ORDER BY r.rated_at DESC, r.id DESC;").fetchall()
        return [_row_to_rating(r) for r in rows]

    def find_by_carrier(self, carrier_id: int) -> List[CarrierRating]:
        rows = self._conn().execute(
            _RATING_SELECT + " WHERE r.carrier_id = ? ORDER BY r.rated_at DESC, r.id DESC;", (carrier_id,)
        ).fetchall()
        return [_row_to_rating(r) for r in rows]

    def average_for_carrier(self, carrier_id: int) -> float:
        row = self._conn().execute(
            "SELECT COALESCE(AVG(rating), 0) FROM carrier_ratings WHERE carrier_id = ?;", (carrier_id,)
        ).fetchone()
        return float(row[0])

    def performance_summary(self) -> List[sqlite3.Row]:
        """One row per rated carrier: name, average, count, latest comment and order."""
        return self._conn().execute(
            "SELECT u.id AS carrier_id, u.username AS carrier_name,"
            " AVG(r.rating) AS average_rating, COUNT(r.id) AS total_ratings,"
            " (SELECT r2.comment FROM carrier_ratings r2 WHERE r2.carrier_id = u.id"
            "  ORDER BY r2.rated_at DESC, r2.id DESC LIMIT 1) AS latest_comment,"
            " (SELECT r3.order_id FROM carrier_ratings r3 WHERE r3.carrier_id = u.id"
            "  ORDER BY r3.rated_at DESC, r3.id DESC LIMIT 1) AS latest_order_id"
            " FROM users u JOIN carrier_ratings r ON r.carrier_id = u.id"
            " GROUP BY u.id, u.username"
            " ORDER BY average_rating DESC, total_ratings DESC;"
        ).fetchall()
