"""Loads bundled product pictures from disk into the products table."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Dict, Tuple

from greengrocer.config import StoreConfig, load_config
from greengrocer.dao import ProductDAO

logger = logging.getLogger(__name__)

# Lower-case product name -> file name in the image directory
PRODUCT_IMAGES: Dict[str, str] = {
    "apple": "apple.png",
    "artichoke": "artichoke.png",
    "avocado": "avocado.png",
    "banana": "banana.png",
    "broccoli": "broccoli.png",
    "cabbage": "cabbage.png",
    "carrot": "carrot.png",
    "cauliflower": "cauliflower.png",
    "celery root": "celery-root.png",
    "cherry": "cherry.png",
    "coconut": "coconut.png",
    "corn": "corn.png",
    "cucumber": "cucumber.png",
    "dragonfruit": "dragon-fruit.png",
    "dragon fruit": "dragon-fruit.png",
    "eggplant": "eggplant.png",
    "fennel": "fennel.png",
    "grape": "grape.png",
    "kiwi": "kiwi.png",
    "kohlrabi": "kohlrabi.png",
    "leek": "leek.png",
    "lemon": "lemon.png",
    "mandarin": "mandarin.png",
    "lettuce": "lettuce.png",
    "mango": "mango.png",
    "melon": "melon.png",
    "onion": "onion.png",
    "orange": "orange.png",
    "papaya": "papaya.png",
    "passion fruit": "passion-fruit.png",
    "passionfruit": "passion-fruit.png",
    "peach": "peach.png",
    "pear": "pear.png",
    "persimmon": "persimmon.png",
    "pineapple": "pineapple.png",
    "pepper": "pepper.png",
    "pomegranate": "pomegranate.png",
    "potato": "patato.png",
    "pumpkin": "pumpkin.png",
    "red cabbage": "red-cabbage.png",
    "redcabbage": "red-cabbage.png",
    "spinach": "spinach.png",
    "strawberry": "strawberry.png",
    "tomato": "tomato.png",
    "watermelon": "watermelon.png",
    "zucchini": "zucchini.png",
}


class ImageLoaderService:
    """
    Fills in missing product images from ``config.image_dir``.

    Mappings registered through :meth:`register_product_image` are kept on
    the instance, so the module level table is never mutated.
    """

    def __init__(self, config: StoreConfig | None = None, product_dao: ProductDAO | None = None) -> None:
        self.config = config or load_config()
        self.product_dao = product_dao or ProductDAO()
        self.images: Dict[str, str] = dict(PRODUCT_IMAGES)
        self.images_loaded = False

    def _read_image(self, file_name: str) -> bytes | None:
        path = Path(self.config.image_dir) / file_name
        try:
            return path.read_bytes()
        except FileNotFoundError:
            logger.warning("Image file not found", extra={"extra": {"path": str(path)}})
            return None
        except OSError as e:
            logger.error("Could not read image file", extra={"extra": {"path": str(path), "error": str(e)}})
            return None

    def _load(self, only_missing: bool) -> Tuple[int, int]:
        loaded = skipped = 0
        if not Path(self.config.image_dir).is_dir():
            logger.info("Image directory not found", extra={"extra": {"image_dir": self.config.image_dir}})
            return loaded, skipped
        for product_name, file_name in self.images.items():
            try:
                product = self.product_dao.get_product_by_name(product_name)
                if product is None or (only_missing and product.has_image):
                    skipped += 1
                    continue
                data = self._read_image(file_name)
                if not data:
                    continue
                if self.product_dao.update_image_by_name(product_name, data, only_missing=only_missing):
                    logger.info(
                        "Loaded product image",
                        extra={"extra": {"product": product_name, "kb": len(data) // 1024}},
                    )
                    loaded += 1
            except sqlite3.Error as e:
                logger.error("Failed to store product image", extra={"extra": {"product": product_name, "error": str(e)}})
        return loaded, skipped

    def load_default_images(self) -> Tuple[int, int]:
        """
        Store images for products that have none.

        Runs once per service instance; later calls return ``(0, 0)``.
        Returns ``(loaded, skipped)``.
        """
        if self.images_loaded:
            logger.info("Default images already loaded")
            return 0, 0
        loaded, skipped = self._load(only_missing=True)
        self.images_loaded = True
        logger.info("Default image load complete", extra={"extra": {"loaded": loaded, "skipped": skipped}})
        return loaded, skipped

    def force_reload_all_images(self) -> int:
        """Overwrite the image of every mapped product; returns how many were updated."""
        loaded, _ = self._load(only_missing=False)
        logger.info("Forced image reload complete", extra={"extra": {"loaded": loaded}})
        return loaded

    def register_product_image(self, product_name: str, file_name: str) -> None:
        self.images[product_name.lower()] = file_name

    def registered_image_count(self) -> int:
        return len(self.images)
