"""Error taxonomy shared by the record store and the business layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .inventory import Shortage


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced product or transaction is unknown."""


class EmptyCartError(BusinessRuleViolation):
    """Raised when a sale is submitted without any line items."""


class InsufficientPaymentError(BusinessRuleViolation):
    """Raised when the cash received does not cover the transaction total."""

    def __init__(self, total: int, cash_received: int):
        self.total = total
        self.cash_received = cash_received
        super().__init__(
            f"Cash received {cash_received} does not cover total {total}"
        )


class InsufficientStockError(BusinessRuleViolation):
    """Raised when applying a sale would drive product stock below zero."""

    def __init__(self, shortages: Sequence["Shortage"]):
        self.shortages = tuple(shortages)
        details = ", ".join(
            f"{item.product_id} (requested {item.requested}, available {item.available})"
            for item in self.shortages
        )
        super().__init__(f"Insufficient stock for: {details}")


class ProductValidationError(BusinessRuleViolation):
    """Raised when product data fails catalog validation."""

    def __init__(self, problems: dict[str, str]):
        self.problems = dict(problems)
        details = "; ".join(f"{field}: {message}" for field, message in self.problems.items())
        super().__init__(f"Invalid product data: {details}")


class StorageFailure(Exception):
    """Raised when the record store cannot read or write its collections."""


class ConcurrentModificationError(StorageFailure):
    """Raised when a commit is based on a stale collection version."""

    def __init__(self, collection: str, expected: int, actual: int):
        self.collection = collection
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Collection '{collection}' changed underneath the writer "
            f"(expected version {expected}, found {actual})"
        )
