"""Registration, login and account maintenance."""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from greengrocer import passwords, validation
from greengrocer.dao import UserDAO
from greengrocer.models import ROLE_CUSTOMER, User
from greengrocer.session import Session

logger = logging.getLogger(__name__)


class AuthService:
    def __init__(self, session: Session, user_dao: UserDAO | None = None) -> None:
        self.session = session
        self.user_dao = user_dao or UserDAO()

    @staticmethod
    def password_requirements() -> str:
        return passwords.password_requirements()

    @staticmethod
    def _check_contact(email: str | None, phone: str | None) -> Optional[str]:
        """Normalised phone; raises ValueError for a malformed e-mail or phone."""
        if email and not validation.is_valid_email(email):
            raise ValueError("Invalid e-mail address.")
        if validation.is_empty(phone):
            return None
        normalised = validation.format_turkish_mobile(phone)
        if not validation.is_valid_turkish_mobile(normalised):
            raise ValueError(validation.phone_error_message(phone))
        return normalised

    def is_username_available(self, username: str) -> bool:
        try:
            return not self.user_dao.username_exists(username)
        except sqlite3.Error as e:
            logger.error("Username lookup failed", extra={"extra": {"error": str(e)}})
            return False

    def register_customer(
        self,
        username: str,
        password: str,
        address: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> User:
        """Create a customer account.

        Raises:
            ValueError: Any field fails validation or the username is taken.
        """
        username = (username or "").strip()
        if not validation.is_valid_username(username):
            raise ValueError("Username must be 3-50 letters, digits or underscores.")
        if not passwords.is_strong_password(password):
            raise ValueError(passwords.password_requirements())
        if validation.is_empty(address):
            raise ValueError("Delivery address is required.")
        phone = self._check_contact(email, phone)
        user_id = self.user_dao.create_user(
            username, passwords.hash_password(password), ROLE_CUSTOMER,
            email=email or None, phone=phone, address=address.strip(),
        )
        if user_id is None:
            raise ValueError("Username already taken.")
        logger.info("Customer registered", extra={"user_id": user_id, "role": ROLE_CUSTOMER})
        return self.user_dao.find_by_id(user_id)

    def login(self, username: str, password: str) -> Optional[User]:
        """Authenticate and attach the user to the session; None on failure."""
        if validation.is_empty(username) or not password:
            return None
        try:
            user = self.user_dao.find_by_username(username.strip())
        except sqlite3.Error as e:
            logger.error("Login lookup failed", extra={"extra": {"error": str(e)}})
            return None
        if user is None or not user.is_active or not passwords.verify_password(password, user.password_hash):
            logger.warning("Login failed", extra={"extra": {"username": username}})
            return None
        self.session.login(user)
        logger.info("User logged in", extra={"user_id": user.id, "role": user.role})
        return user

    def logout(self) -> None:
        if self.session.user is not None:
            logger.info("User logged out", extra={"user_id": self.session.user_id, "role": self.session.role})
        self.session.logout()

    def change_password(self, current_password: str, new_password: str) -> bool:
        """Replace the logged-in user's password.

        Raises:
            ValueError: The current password is wrong or the new one is weak.
        """
        user = self.session.require_user()
        if not passwords.verify_password(current_password, user.password_hash):
            raise ValueError("Current password is incorrect.")
        if not passwords.is_strong_password(new_password):
            raise ValueError(passwords.password_requirements())
        new_hash = passwords.hash_password(new_password)
        if not self.user_dao.update_password(user.id, new_hash):
            return False
        user.password_hash = new_hash
        logger.info("Password changed", extra={"user_id": user.id})
        return True

    def update_profile(self, email: str | None, phone: str | None, address: str | None) -> User:
        user = self.session.require_user()
        if user.is_customer and validation.is_empty(address):
            raise ValueError("Delivery address is required.")
        phone = self._check_contact(email, phone)
        self.user_dao.update_contact(user.id, email or None, phone, (address or "").strip() or None)
        user.email, user.phone, user.address = email or None, phone, (address or "").strip() or None
        logger.info("Profile updated", extra={"user_id": user.id})
        return user
