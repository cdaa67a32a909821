"""Runtime configuration resolved from environment variables.

Values are read when :func:`load_config` is called rather than at import
time so tests can point the application at a temporary database or image
directory by setting the relevant variables first.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_PACKAGE_DIR = Path(__file__).resolve().parent
_DEFAULT_DB_PATH = (_PACKAGE_DIR / ".." / ".." / "db" / "greengrocer.db").resolve()
_DEFAULT_IMAGE_DIR = (_PACKAGE_DIR / ".." / ".." / "images").resolve()


def resolve_db_path() -> str:
    return os.environ.get("GREENGROCER_DB_PATH", str(_DEFAULT_DB_PATH))


def resolve_log_dir() -> str:
    return os.environ.get("GREENGROCER_LOG_DIR", "logs")


def resolve_image_dir() -> str:
    return os.environ.get("GREENGROCER_IMAGE_DIR", str(_DEFAULT_IMAGE_DIR))


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(
            "Ignoring invalid numeric setting",
            extra={"extra": {"variable": name, "value": raw, "default": default}},
        )
        return default


@dataclass(frozen=True)
class StoreConfig:
    """Business constants for carts, checkout and cancellation."""

    vat_rate: float = 0.18
    min_cart_value: float = 50.0
    cancel_window_hours: float = 2.0
    min_delivery_hours: float = 1.0
    max_delivery_hours: float = 48.0
    image_dir: str = str(_DEFAULT_IMAGE_DIR)


def load_config() -> StoreConfig:
    """Build a :class:`StoreConfig` from the current environment."""
    return StoreConfig(
        vat_rate=_float_env("GREENGROCER_VAT_RATE", 0.18),
        min_cart_value=_float_env("GREENGROCER_MIN_CART_VALUE", 50.0),
        cancel_window_hours=_float_env("GREENGROCER_CANCEL_WINDOW_HOURS", 2.0),
        image_dir=resolve_image_dir(),
    )
