"""
Centralized configuration for the co-purchase service.

Process-level knobs come from the environment; merchant-editable settings
(number of products, price display, ...) live in the configuration table and
are read through ``services.configuration.ConfigurationStore`` using the key
names declared here.
"""
from __future__ import annotations

import os
from typing import Any, Iterable, List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


DEFAULT_SHOP_ID: int = _env_int("DEFAULT_SHOP_ID", 1)

# Scope used for values that are not bound to a shop.
GLOBAL_SCOPE: int = 0

# Configuration keys (persisted in copurchase_configuration)
SETTINGS_NUMBER_OF_PRODUCTS = "COPURCHASE_NBR"
SETTINGS_DISPLAY_PRICE = "COPURCHASE_DISPLAY_PRICE"
SETTINGS_LAST_UPDATE = "COPURCHASE_LAST_UPDATE_TS"
SETTINGS_GROUP_FEATURE_ACTIVE = "GROUP_FEATURE_ACTIVE"
SETTINGS_PRICE_TAX_INCLUDED = "PRICE_TAX_INCLUDED"
SETTINGS_ORDER_OUT_OF_STOCK = "ORDER_OUT_OF_STOCK"

MODULE_SETTINGS_KEYS = (
    SETTINGS_DISPLAY_PRICE,
    SETTINGS_NUMBER_OF_PRODUCTS,
    SETTINGS_LAST_UPDATE,
)

# How often should we attempt to update the pair table, default 5 minutes
UPDATE_PERIOD_SECONDS: int = _env_int("COPURCHASE_UPDATE_PERIOD_SECONDS", 60 * 5)

# Orders folded per transaction
BATCH_SIZE: int = max(1, _env_int("COPURCHASE_BATCH_SIZE", 50))

LOCK_NAME = "copurchase_update"
LOCK_TIMEOUT_SECONDS: float = _env_float("COPURCHASE_LOCK_TIMEOUT_SECONDS", 1.0)
LOCK_LEASE_SECONDS: int = _env_int("COPURCHASE_LOCK_LEASE_SECONDS", 900)
LOCK_POLL_INTERVAL_SECONDS: float = 0.05

DEFAULT_NUMBER_OF_PRODUCTS: int = _env_int("COPURCHASE_DEFAULT_NUMBER_OF_PRODUCTS", 10)
DEFAULT_CUSTOMER_GROUP_ID: int = _env_int("COPURCHASE_DEFAULT_GROUP_ID", 1)

# Catalog visibility values that allow a product in storefront listings
LISTING_VISIBILITIES = ("both", "catalog")

STORE_BASE_URL: str = (os.getenv("STORE_BASE_URL") or "http://localhost").rstrip("/")


def sanitize_number_of_products(value: Optional[Any]) -> int:
    """Coerce the configured block size to a positive int (default 10)."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return DEFAULT_NUMBER_OF_PRODUCTS
    if number <= 0:
        return DEFAULT_NUMBER_OF_PRODUCTS
    return number


def sanitize_id(value: Optional[Any]) -> Optional[int]:
    """Normalize raw identifiers to positive ints, None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    return number


def sanitize_ids(values: Optional[Iterable[Any]]) -> List[int]:
    """Positive, de-duplicated ids in first-seen order."""
    if not values:
        return []
    seen = set()
    result: List[int] = []
    for value in values:
        number = sanitize_id(value)
        if number is not None and number not in seen:
            seen.add(number)
            result.append(number)
    return result


def resolve_shop_id(*candidates: Optional[Any]) -> int:
    """
    Pick the first usable shop identifier from candidates, otherwise fall back to DEFAULT_SHOP_ID.
    """
    for candidate in candidates:
        normalized = sanitize_id(candidate)
        if normalized:
            return normalized
    return DEFAULT_SHOP_ID
