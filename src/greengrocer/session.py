"""Per-login session state: the authenticated user and their cart.

A :class:`Session` is created by the application facade and passed into
each service, so several sessions (and tests) can coexist in one process.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from greengrocer.errors import NotLoggedInError
from greengrocer.models import Coupon, User


@dataclass
class CartLine:
    """A line in the in‑memory shopping cart (quantity in kg)."""
    product_id: int
    product_name: str
    quantity: float
    unit_price: float

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_price


@dataclass
class Cart:
    lines: Dict[int, CartLine] = field(default_factory=dict)
    loyalty_discount_percent: float = 0.0
    coupon: Coupon | None = None

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def applied_coupon_code(self) -> str | None:
        return self.coupon.code if self.coupon else None

    def clear(self) -> None:
        self.lines.clear()
        self.coupon = None


class Session:
    def __init__(self) -> None:
        self.user: User | None = None
        self.cart = Cart()

    @property
    def is_logged_in(self) -> bool:
        return self.user is not None

    @property
    def user_id(self) -> int | None:
        return self.user.id if self.user else None

    @property
    def role(self) -> str | None:
        return self.user.role if self.user else None

    def require_user(self) -> User:
        if self.user is None:
            raise NotLoggedInError("You must be logged in.")
        return self.user

    def login(self, user: User) -> None:
        self.user = user
        self.cart = Cart()

    def logout(self) -> None:
        self.user = None
        self.cart = Cart()
