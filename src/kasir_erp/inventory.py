"""Stock classification and the stock ledger.

The ledger turns transaction line items into stock deltas on the product
collection. Staging functions (``apply_sale_to``/``revert_sale_to``) work on
plain product sequences so the transaction layer can fold them into a single
commit; the store-bound ``apply_sale``/``revert_sale`` run a full
read-modify-write against a record store on their own.

Items only need ``product_id`` and ``quantity`` attributes, so both
``TransactionItemRow`` and cart lines are accepted.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from . import data_manager, log
from .constants import DEFAULT_MINIMUM_STOCK, CollectionName, StockLevel
from .errors import InsufficientStockError


class StockItem(Protocol):
    product_id: Optional[str]
    quantity: int


@dataclass(frozen=True)
class DanglingReference:
    """A line item whose product no longer exists in the catalog."""

    product_id: Optional[str]
    quantity: int
    product_name: str = ""


@dataclass(frozen=True)
class Shortage:
    """A product that a sale would drive below zero."""

    product_id: str
    product_name: str
    requested: int
    available: int


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of staging stock deltas against a product collection."""

    products: Tuple[data_manager.ProductRow, ...]
    dangling: Tuple[DanglingReference, ...] = ()
    shortages: Tuple[Shortage, ...] = ()


def classify_stock(
    current_stock: int,
    minimum_stock: Optional[int] = None,
    *,
    default_minimum: int = DEFAULT_MINIMUM_STOCK,
) -> StockLevel:
    """Map a stock count to its band given the product's minimum stock.

    Ties resolve to the more urgent band: a stock equal to the minimum is
    ``LOW`` and a stock equal to twice the minimum is ``MEDIUM``. Counts at or
    below zero are ``OUT``.
    """

    minimum = default_minimum if minimum_stock is None else minimum_stock
    if current_stock <= 0:
        return StockLevel.OUT
    if current_stock <= minimum:
        return StockLevel.LOW
    if current_stock <= minimum * 2:
        return StockLevel.MEDIUM
    return StockLevel.HIGH


def product_stock_level(product: data_manager.ProductRow, *, default_minimum: int = DEFAULT_MINIMUM_STOCK) -> StockLevel:
    """Classify ``product`` using its own minimum or ``default_minimum``."""

    return classify_stock(product.current_stock, product.minimum_stock, default_minimum=default_minimum)


def is_low_stock(product: data_manager.ProductRow, *, default_minimum: int = DEFAULT_MINIMUM_STOCK) -> bool:
    return product.current_stock <= product.effective_minimum(default_minimum)


def _collect_deltas(
    products: Sequence[data_manager.ProductRow],
    items: Iterable[StockItem],
) -> Tuple[Dict[str, int], List[DanglingReference]]:
    known = {product.product_id for product in products}
    quantities: Dict[str, int] = {}
    dangling: List[DanglingReference] = []
    for item in items:
        if item.product_id is None or item.product_id not in known:
            reference = DanglingReference(
                product_id=item.product_id,
                quantity=item.quantity,
                product_name=getattr(item, "product_name", ""),
            )
            log.warning(
                "Dangling product reference '%s' (%s x%d) skipped by stock ledger",
                reference.product_id,
                reference.product_name or "unnamed item",
                reference.quantity,
            )
            dangling.append(reference)
            continue
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return quantities, dangling


def apply_sale_to(
    products: Sequence[data_manager.ProductRow],
    items: Iterable[StockItem],
    *,
    allow_negative: bool = False,
) -> LedgerResult:
    """Stage the stock decrements of a sale without touching storage.

    Args:
        products: Current product collection.
        items: Sold line items.
        allow_negative: When ``False`` any shortage raises and nothing is
            staged. When ``True`` the stock may go below zero and shortages
            are only reported in the result.

    Raises:
        InsufficientStockError: If a product would go negative and
            ``allow_negative`` is ``False``.
    """

    quantities, dangling = _collect_deltas(products, items)

    shortages = [
        Shortage(
            product_id=product.product_id,
            product_name=product.name,
            requested=quantities[product.product_id],
            available=product.current_stock,
        )
        for product in products
        if product.product_id in quantities and product.current_stock < quantities[product.product_id]
    ]
    if shortages and not allow_negative:
        for shortage in shortages:
            log.error(
                "Insufficient stock for '%s': requested %d, available %d",
                shortage.product_id,
                shortage.requested,
                shortage.available,
            )
        raise InsufficientStockError(shortages)
    for shortage in shortages:
        log.warning(
            "Stock for '%s' goes negative: requested %d, available %d",
            shortage.product_id,
            shortage.requested,
            shortage.available,
        )

    updated = tuple(
        replace(product, current_stock=product.current_stock - quantities[product.product_id])
        if product.product_id in quantities
        else product
        for product in products
    )
    log.debug("Staged sale deltas for %d products", len(quantities))
    return LedgerResult(products=updated, dangling=tuple(dangling), shortages=tuple(shortages))


def revert_sale_to(
    products: Sequence[data_manager.ProductRow],
    items: Iterable[StockItem],
) -> LedgerResult:
    """Stage the stock increments that undo a sale."""

    quantities, dangling = _collect_deltas(products, items)
    updated = tuple(
        replace(product, current_stock=product.current_stock + quantities[product.product_id])
        if product.product_id in quantities
        else product
        for product in products
    )
    log.debug("Staged revert deltas for %d products", len(quantities))
    return LedgerResult(products=updated, dangling=tuple(dangling))


def apply_sale(
    store: data_manager.RecordStore,
    items: Sequence[StockItem],
    *,
    allow_negative: bool = False,
) -> LedgerResult:
    """Decrement stock for ``items`` in one read-modify-write of the store."""

    state = store.snapshot()
    result = apply_sale_to(state.products, items, allow_negative=allow_negative)
    store.set_all(
        CollectionName.PRODUCTS,
        result.products,
        expected_version=state.version(CollectionName.PRODUCTS),
    )
    log.info("Applied sale of %d line items to stock", len(items))
    return result


def revert_sale(store: data_manager.RecordStore, items: Sequence[StockItem]) -> LedgerResult:
    """Increment stock for ``items`` in one read-modify-write of the store."""

    state = store.snapshot()
    result = revert_sale_to(state.products, items)
    store.set_all(
        CollectionName.PRODUCTS,
        result.products,
        expected_version=state.version(CollectionName.PRODUCTS),
    )
    log.info("Reverted sale of %d line items from stock", len(items))
    return result
