"""Enumerations shared across Kasir ERP modules.

Centralises domain constants so that the record store, the inventory and
transaction logic, the metrics layer and the CLI rely on a single source of
truth for collection names, sheet names and stock bands.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Effective minimum stock for products that do not declare one.
DEFAULT_MINIMUM_STOCK = 5

TRANSACTION_ID_PREFIX = "T"
TRANSACTION_ID_WIDTH = 3
TRANSACTION_COUNTER = "transactions"


class CollectionName(str, Enum):
    """Enumerate the record collections managed by the record store."""

    PRODUCTS = "products"
    TRANSACTIONS = "transactions"
    SETTINGS = "settings"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"
    TRANSACTION_ITEMS = "TransactionItems"
    SETTINGS = "Settings"
    META = "Meta"


class StockLevel(str, Enum):
    """Enumerate the stock bands, from most to least urgent."""

    OUT = "out"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def label(self) -> str:
        return STOCK_LEVEL_LABELS[self]


STOCK_LEVEL_LABELS = {
    StockLevel.OUT: "Out of Stock",
    StockLevel.LOW: "Low Stock",
    StockLevel.MEDIUM: "Medium Stock",
    StockLevel.HIGH: "In Stock",
}


class ProductSortField(str, Enum):
    """Enumerate the product attributes catalog listings can be sorted by."""

    NAME = "name"
    CATEGORY = "category"
    BUY_PRICE = "buy_price"
    SELL_PRICE = "sell_price"
    CURRENT_STOCK = "current_stock"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_MINIMUM_STOCK",
    "TRANSACTION_ID_PREFIX",
    "TRANSACTION_ID_WIDTH",
    "TRANSACTION_COUNTER",
    "CollectionName",
    "SheetName",
    "StockLevel",
    "STOCK_LEVEL_LABELS",
    "ProductSortField",
]
