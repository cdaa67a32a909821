"""Salted SHA‑256 password hashing.

Hashes are stored as ``base64(salt):base64(sha256(salt + password))``.
Values without the ``:`` separator are legacy plain‑text passwords and are
compared directly so old accounts can still log in.
"""

import base64
import hashlib
import hmac
import os
import re

SALT_LENGTH = 16
SEPARATOR = ":"
MIN_PASSWORD_LENGTH = 6

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


def _digest(password: str, salt: bytes) -> bytes:
    return hashlib.sha256(salt + password.encode("utf-8")).digest()


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty")
    salt = os.urandom(SALT_LENGTH)
    return (
        base64.b64encode(salt).decode("ascii")
        + SEPARATOR
        + base64.b64encode(_digest(password, salt)).decode("ascii")
    )


def verify_password(password: str | None, stored: str | None) -> bool:
    """Check ``password`` against a stored hash (or legacy plain text)."""
    if password is None or stored is None:
        return False
    if not is_hashed(stored):
        return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))
    parts = stored.split(SEPARATOR)
    if len(parts) != 2:
        return False
    try:
        salt = base64.b64decode(parts[0], validate=True)
        expected = base64.b64decode(parts[1], validate=True)
    except ValueError:
        return False
    return hmac.compare_digest(expected, _digest(password, salt))


def is_hashed(stored: str | None) -> bool:
    return stored is not None and SEPARATOR in stored


def is_strong_password(password: str | None) -> bool:
    if password is None or len(password) < MIN_PASSWORD_LENGTH:
        return False
    return any(c.isalpha() for c in password) and any(c.isdigit() for c in password)


def password_strength(password: str | None) -> str:
    if password is None or len(password) < MIN_PASSWORD_LENGTH:
        return f"Too short (minimum {MIN_PASSWORD_LENGTH} characters)"
    score = 0
    score += len(password) >= 8
    score += len(password) >= 12
    score += bool(re.search(r"[a-z]", password))
    score += bool(re.search(r"[A-Z]", password))
    score += bool(re.search(r"\d", password))
    score += bool(_SPECIAL_CHARS.search(password))
    if score <= 2:
        return "Weak"
    if score <= 4:
        return "Medium"
    return "Strong"


def password_requirements() -> str:
    return f"At least {MIN_PASSWORD_LENGTH} characters, including a letter and a digit."
