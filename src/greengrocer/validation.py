"""Input validation helpers shared by registration, profile and admin forms."""

import re

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,50}$")
TURKISH_MOBILE_PATTERN = re.compile(r"^0\d{10}$")

PHONE_FORMAT_HINT = (
    "Phone number must be in format '05334589243' (11 digits starting with 0, no spaces allowed)"
)


def is_empty(value: str | None) -> bool:
    return value is None or not value.strip()


def is_valid_email(email: str | None) -> bool:
    return not is_empty(email) and bool(EMAIL_PATTERN.match(email))


def is_valid_username(username: str | None) -> bool:
    return username is not None and bool(USERNAME_PATTERN.match(username))


def parse_float(value: str | None, default: float | None) -> float | None:
    if is_empty(value):
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def parse_int(value: str | None, default: int | None) -> int | None:
    if is_empty(value):
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def is_valid_turkish_mobile(phone: str | None) -> bool:
    if phone is None:
        return False
    return bool(TURKISH_MOBILE_PATTERN.match(re.sub(r"\s+", "", phone)))


def format_turkish_mobile(phone: str | None) -> str | None:
    """Normalise ``+90 533 ...`` style input to ``0533...``.

    Returns the input unchanged when it cannot be turned into an
    11 digit number starting with 0.
    """
    if phone is None:
        return None
    digits = re.sub(r"[^0-9]", "", phone)
    if digits.startswith("90") and len(digits) == 12:
        digits = "0" + digits[2:]
    if len(digits) == 11 and digits.startswith("0"):
        return digits
    return phone


def phone_error_message(phone: str | None) -> str:
    if is_empty(phone):
        return "Phone number is required"
    return PHONE_FORMAT_HINT
