"""Constants shared across the point-of-sale ledger modules.

Centralises storage keys, sheet names, and identifier prefixes so that the
persistence layer, the inventory rules, the order interpreter, and the CLI all
rely on a single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Store layout version expected by all layers when loading configuration.
EXPECTED_SCHEMA_VERSION = "1.0.0"

ZERO = Decimal("0")

# Rendered in listings when a sale line points at a product that no longer exists.
MISSING_PRODUCT_LABEL = "Deleted"
EXPORT_MISSING_PRODUCT_LABEL = "N/A"

API_KEY_ENV_VAR = "POS_LEDGER_API_KEY"


class StoreKey(str, Enum):
    """Enumerate the blob keys persisted by the data layer."""

    PRODUCTS = "products"
    SALES = "sales"


class IdPrefix(str, Enum):
    """Enumerate identifier prefixes for generated record ids."""

    PRODUCT = "P"
    SALE = "S"


class SheetName(str, Enum):
    """Enumerate the worksheet names written by the report export."""

    INVENTORY = "Inventory"
    SALES = "Sales"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ZERO",
    "MISSING_PRODUCT_LABEL",
    "EXPORT_MISSING_PRODUCT_LABEL",
    "API_KEY_ENV_VAR",
    "StoreKey",
    "IdPrefix",
    "SheetName",
]
