"""Domain records and the pure business rules attached to them.

Coupon and loyalty calculations live here as plain methods so they can be
table‑tested without a database.  Methods that depend on the current date
accept an optional ``today``/``now`` argument and fall back to the clock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

ROLE_CUSTOMER = "customer"
ROLE_CARRIER = "carrier"
ROLE_OWNER = "owner"
ROLES = (ROLE_CUSTOMER, ROLE_CARRIER, ROLE_OWNER)

PRODUCT_TYPES = ("vegetable", "fruit")

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_ASSIGNED = "assigned"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"
ORDER_STATUSES = (
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_ASSIGNED,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
)
# Orders a carrier is still responsible for
ACTIVE_CARRIER_STATUSES = (STATUS_ASSIGNED, STATUS_CONFIRMED)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def round_money(value: float) -> float:
    """Round half‑up to two decimals (``0.125 -> 0.13``)."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value[:10])


# ------------------------------------------------------------------------------
# Users and catalogue
# ------------------------------------------------------------------------------

@dataclass
class User:
    id: int
    username: str
    password_hash: str
    role: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    completed_orders: int = 0
    loyalty_points: int = 0
    is_active: bool = True
    created_at: str | None = None

    @property
    def is_customer(self) -> bool:
        return self.role == ROLE_CUSTOMER

    @property
    def is_carrier(self) -> bool:
        return self.role == ROLE_CARRIER

    @property
    def is_owner(self) -> bool:
        return self.role == ROLE_OWNER


@dataclass
class Product:
    """A product sold by weight.

    ``price`` is per kilogram and ``stock``/``threshold`` are kilograms.
    When stock falls to the threshold, or a single purchase exceeds it,
    the product is sold at double price.
    """

    id: int
    name: str
    type: str
    price: float
    stock: float
    threshold: float = 5.0
    image: bytes | None = field(default=None, repr=False)

    @property
    def is_price_doubled(self) -> bool:
        return self.stock <= self.threshold

    def is_large_order(self, quantity: float) -> bool:
        return quantity > self.threshold

    def effective_price(self, quantity: float | None = None) -> float:
        if self.is_price_doubled or (quantity is not None and self.is_large_order(quantity)):
            return self.price * 2
        return self.price

    @property
    def has_image(self) -> bool:
        return bool(self.image)


# ------------------------------------------------------------------------------
# Orders
# ------------------------------------------------------------------------------

@dataclass
class OrderItem:
    product_id: int
    product_name: str
    quantity: float
    unit_price: float
    id: int | None = None
    order_id: int | None = None

    @property
    def total_price(self) -> float:
        return round_money(self.quantity * self.unit_price)


@dataclass
class Order:
    id: int
    customer_id: int
    status: str
    order_time: datetime
    requested_delivery_time: datetime
    subtotal: float
    total_cost: float
    discount_amount: float = 0.0
    vat_amount: float = 0.0
    carrier_id: int | None = None
    actual_delivery_time: datetime | None = None
    coupon_code: str | None = None
    points_earned: int = 0
    customer_name: str | None = None
    carrier_name: str | None = None
    items: List[OrderItem] = field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    @property
    def is_delivered(self) -> bool:
        return self.status == STATUS_DELIVERED


# ------------------------------------------------------------------------------
# Loyalty
# ------------------------------------------------------------------------------

@dataclass
class LoyaltySettings:
    """Loyalty tiers keyed by completed order count plus points rules."""

    id: int | None = None
    tier1_threshold: int = 5
    tier1_discount: float = 5.0
    tier2_threshold: int = 10
    tier2_discount: float = 10.0
    tier3_threshold: int = 20
    tier3_discount: float = 15.0
    points_per_currency: float = 1.0
    points_for_coupon: int = 100
    coupon_value: float = 10.0

    def discount_for_orders(self, completed_orders: int) -> float:
        if completed_orders >= self.tier3_threshold:
            return self.tier3_discount
        if completed_orders >= self.tier2_threshold:
            return self.tier2_discount
        if completed_orders >= self.tier1_threshold:
            return self.tier1_discount
        return 0.0

    def tier_name(self, completed_orders: int) -> str:
        if completed_orders >= self.tier3_threshold:
            return "Gold"
        if completed_orders >= self.tier2_threshold:
            return "Silver"
        if completed_orders >= self.tier1_threshold:
            return "Bronze"
        return "Standard"

    def next_tier(self, completed_orders: int) -> tuple[str, int] | None:
        """Return ``(tier_name, threshold)`` of the next tier, or None at the top."""
        for name, threshold in (
            ("Bronze", self.tier1_threshold),
            ("Silver", self.tier2_threshold),
            ("Gold", self.tier3_threshold),
        ):
            if completed_orders < threshold:
                return name, threshold
        return None

    def points_earned(self, amount: float) -> int:
        return int(amount * self.points_per_currency)

    def can_generate_coupon(self, points: int) -> bool:
        return points >= self.points_for_coupon

    def validate(self) -> None:
        """Raise ValueError if the tiers are not increasing or out of range."""
        for name in ("tier1_discount", "tier2_discount", "tier3_discount"):
            value = getattr(self, name)
            if value < 0 or value > 100:
                raise ValueError(f"{name} must be between 0 and 100")
        if self.tier1_threshold < 0:
            raise ValueError("Tier thresholds must be non-negative")
        if not (self.tier1_threshold < self.tier2_threshold < self.tier3_threshold):
            raise ValueError("Tier thresholds must be strictly increasing")
        if self.points_per_currency < 0 or self.points_for_coupon <= 0:
            raise ValueError("Points settings must be positive")
        if not 0 < self.coupon_value <= 100:
            raise ValueError("coupon_value must be greater than 0 and at most 100")


# ------------------------------------------------------------------------------
# Coupons
# ------------------------------------------------------------------------------

@dataclass(eq=False)
class Coupon:
    code: str
    discount_percentage: float
    expiration_date: date | None = None
    minimum_order_value: float = 0.0
    maximum_discount: float = 0.0
    user_id: int | None = None
    is_used: bool = False
    created_date: date = field(default_factory=date.today)
    id: int = 0

    def is_expired(self, today: date | None = None) -> bool:
        if self.expiration_date is None:
            return False
        return (today or date.today()) > self.expiration_date

    def is_valid(self, today: date | None = None) -> bool:
        return not self.is_used and not self.is_expired(today)

    def is_expiring_today(self, today: date | None = None) -> bool:
        if self.expiration_date is None:
            return False
        return (today or date.today()) == self.expiration_date

    def can_apply_to(self, order_value: float, today: date | None = None) -> bool:
        return self.is_valid(today) and order_value >= self.minimum_order_value

    def calculate_discount(self, order_value: float, today: date | None = None) -> float:
        """Percentage discount on ``order_value``, capped by ``maximum_discount``.

        Returns 0.0 when the coupon is used, expired, or the order is below
        the minimum.  A ``maximum_discount`` of 0 means uncapped.
        """
        if not self.can_apply_to(order_value, today):
            return 0.0
        discount = order_value * (self.discount_percentage / 100.0)
        if self.maximum_discount > 0 and discount > self.maximum_discount:
            discount = self.maximum_discount
        return round_money(discount)

    def mark_as_used(self) -> None:
        self.is_used = True

    def mark_as_unused(self) -> None:
        self.is_used = False

    def days_until_expiration(self, today: date | None = None) -> int | None:
        """Days left before expiry; negative once expired, None if it never expires."""
        if self.expiration_date is None:
            return None
        return (self.expiration_date - (today or date.today())).days

    def is_expiring_soon(self, days: int, today: date | None = None) -> bool:
        remaining = self.days_until_expiration(today)
        return remaining is not None and 0 <= remaining <= days

    @property
    def is_personal(self) -> bool:
        return self.user_id is not None

    @property
    def is_general(self) -> bool:
        return self.user_id is None

    @property
    def discount_description(self) -> str:
        text = f"{self.discount_percentage:.0f}% off"
        if self.maximum_discount > 0:
            text += f" (max {self.maximum_discount:.2f} TL)"
        if self.minimum_order_value > 0:
            text += f" on orders over {self.minimum_order_value:.2f} TL"
        return text

    def status(self, today: date | None = None) -> str:
        if self.is_used:
            return "Used"
        if self.is_expired(today):
            return "Expired"
        if self.is_expiring_today(today):
            return "Expires Today!"
        if self.is_expiring_soon(3, today):
            return "Expiring Soon"
        return "Active"

    def expiration_info(self, today: date | None = None) -> str:
        days = self.days_until_expiration(today)
        if days is None:
            return "No expiration"
        if days < 0:
            return f"Expired {abs(days)} days ago"
        if days == 0:
            return "Expires today!"
        if days == 1:
            return "Expires tomorrow"
        return f"Expires in {days} days"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Coupon):
            return NotImplemented
        return (self.id and self.id == other.id) or self.code == other.code

    def __hash__(self) -> int:
        return hash(self.code)


# ------------------------------------------------------------------------------
# Messaging and ratings
# ------------------------------------------------------------------------------

@dataclass
class Message:
    sender_id: int
    receiver_id: int
    subject: str
    content: str
    id: int = 0
    sender_name: str | None = None
    receiver_name: str | None = None
    sent_at: datetime = field(default_factory=lambda: datetime.now().replace(microsecond=0))
    is_read: bool = False
    parent_message_id: int | None = None

    @property
    def is_reply(self) -> bool:
        return self.parent_message_id is not None

    def mark_as_read(self) -> None:
        self.is_read = True

    def create_reply(self, content: str) -> "Message":
        """Build an unsent reply addressed back to the sender of this message."""
        subject = self.subject or ""
        if not subject:
            reply_subject = "Re: (No Subject)"
        elif subject.startswith("Re: "):
            reply_subject = subject
        else:
            reply_subject = "Re: " + subject
        return Message(
            sender_id=self.receiver_id,
            receiver_id=self.sender_id,
            subject=reply_subject,
            content=content,
            sender_name=self.receiver_name,
            receiver_name=self.sender_name,
            parent_message_id=self.id,
        )

    def content_preview(self, max_length: int = 50) -> str:
        if not self.content:
            return ""
        if len(self.content) <= max_length:
            return self.content
        return self.content[:max_length] + "..."


@dataclass
class CarrierRating:
    carrier_id: int
    customer_id: int
    order_id: int
    rating: int
    comment: str | None = None
    id: int = 0
    rated_at: Optional[datetime] = None
    carrier_name: str | None = None
    customer_name: str | None = None
