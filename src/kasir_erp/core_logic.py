"""Business logic layer for Kasir ERP.

This module owns the product catalog rules and the transaction lifecycle.
Every sale, edit or deletion is staged against a consistent snapshot of the
record store (stock deltas through :mod:`kasir_erp.inventory`, the record
itself here) and written back in a single commit, so product stock and the
transaction history cannot drift apart when a write fails. Commits carry the
collection versions they were based on; a concurrent writer causes the whole
operation to be re-staged from a fresh snapshot.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields, replace
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from . import data_manager, inventory, log, metrics
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    TRANSACTION_COUNTER,
    TRANSACTION_ID_PREFIX,
    TRANSACTION_ID_WIDTH,
    CollectionName,
    ProductSortField,
)
from .errors import (
    BusinessRuleViolation,
    ConcurrentModificationError,
    EmptyCartError,
    InsufficientPaymentError,
    NotFoundError,
    ProductValidationError,
)


T = TypeVar("T")

_TRANSACTION_ID_PATTERN = re.compile(rf"^{re.escape(TRANSACTION_ID_PREFIX)}(\d+)$")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the record store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: data_manager.RecordStore


@dataclass(frozen=True)
class CartLine:
    """One product and quantity picked at the register."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a new sale."""

    lines: Sequence[CartLine]
    cash_received: int
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UpdateCommand:
    """User intent for replacing the contents of a recorded sale."""

    transaction_id: str
    lines: Sequence[CartLine]
    cash_received: int
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ProductDraft:
    """Catalog data entered for a new or edited product."""

    name: str
    category: str
    buy_price: int
    sell_price: int
    current_stock: int = 0
    minimum_stock: Optional[int] = None


@dataclass(frozen=True)
class HistoryTotals:
    """Totals shown under a transaction history listing."""

    transaction_count: int
    total_sales: int
    total_items: int


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _expected_versions(state: data_manager.StoreState) -> Dict[CollectionName, int]:
    return {name: state.version(name) for name in data_manager.RECORD_COLLECTIONS}


def _with_retries(context: RuntimeContext, description: str, operation: Callable[[], T]) -> T:
    """Run ``operation`` again from a fresh snapshot after a concurrent write."""

    attempts = context.settings.max_commit_retries
    attempt = 1
    while True:
        try:
            return operation()
        except ConcurrentModificationError as exc:
            if attempt >= attempts:
                log.error("%s failed after %d attempts: %s", description, attempt, exc)
                raise
            log.warning("%s raced with another writer (attempt %d of %d); retrying", description, attempt, attempts)
            attempt += 1


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook-backed record store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookRecordStore(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def refresh_context(context: RuntimeContext) -> List[CollectionName]:
    """Pick up writes made by other processes; return the changed collections."""

    return context.store.refresh()


# ---------------------------------------------------------------------------
# Product catalog
# ---------------------------------------------------------------------------


def list_products(
    context: RuntimeContext,
    *,
    category: Optional[str] = None,
    sort_by: Optional[ProductSortField] = None,
    descending: bool = False,
) -> List[data_manager.ProductRow]:
    """Return catalog products, optionally filtered by category and sorted.

    Text fields sort case-insensitively. Without ``sort_by`` the products keep
    their stored order.
    """
    products = context.store.get_all(CollectionName.PRODUCTS)
    if category:
        products = [product for product in products if product.category == category]
    if sort_by is not None:
        attribute = ProductSortField(sort_by).value

        def sort_key(product: data_manager.ProductRow) -> object:
            value = getattr(product, attribute)
            return value.lower() if isinstance(value, str) else value

        products.sort(key=sort_key, reverse=descending)
    return products


def list_categories(context: RuntimeContext) -> List[str]:
    """Return the distinct product categories in alphabetical order."""

    return sorted({product.category for product in context.store.get_all(CollectionName.PRODUCTS)})


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        NotFoundError: If ``product_id`` is absent from the catalog.
    """
    for product in context.store.get_all(CollectionName.PRODUCTS):
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise NotFoundError(f"Unknown product id: {product_id}")


def validate_product(draft: ProductDraft) -> None:
    """Check catalog entry rules and report every violated rule at once.

    Raises:
        ProductValidationError: Mapping each offending field to a message.
    """
    problems: Dict[str, str] = {}
    if not draft.name.strip():
        problems["name"] = "Product name is required"
    elif ILLEGAL_CHARACTERS_RE.search(draft.name):
        problems["name"] = "Product name contains control characters"
    if not draft.category.strip():
        problems["category"] = "Category is required"
    elif ILLEGAL_CHARACTERS_RE.search(draft.category):
        problems["category"] = "Category contains control characters"
    if draft.buy_price <= 0:
        problems["buy_price"] = "Buy price must be greater than zero"
    if draft.sell_price <= 0:
        problems["sell_price"] = "Sell price must be greater than zero"
    elif draft.sell_price <= draft.buy_price:
        problems["sell_price"] = "Sell price must be greater than buy price"
    if draft.current_stock < 0:
        problems["current_stock"] = "Stock cannot be negative"
    if draft.minimum_stock is not None and draft.minimum_stock < 0:
        problems["minimum_stock"] = "Minimum stock cannot be negative"

    if problems:
        log.error("Product validation failed: %s", problems)
        raise ProductValidationError(problems)


def generate_product_id(existing_ids: Sequence[str], *, when: Optional[datetime] = None) -> str:
    """Generate a ``p<epoch millis>`` identifier not present in ``existing_ids``."""

    millis = int(_resolve_timestamp(when).timestamp() * 1000)
    taken = set(existing_ids)
    while f"p{millis}" in taken:
        millis += 1
    return f"p{millis}"


def add_product(context: RuntimeContext, draft: ProductDraft, *, product_id: Optional[str] = None) -> data_manager.ProductRow:
    """Validate ``draft`` and append it to the catalog.

    Raises:
        ProductValidationError: If the draft breaks a catalog rule.
        BusinessRuleViolation: If ``product_id`` is already taken.
    """
    validate_product(draft)

    def attempt() -> data_manager.ProductRow:
        state = context.store.snapshot()
        existing_ids = [product.product_id for product in state.products]
        if product_id is not None and product_id in existing_ids:
            log.warning("Attempted to add duplicate product id '%s'", product_id)
            raise BusinessRuleViolation(f"Product id already exists: {product_id}")
        product = data_manager.ProductRow(
            product_id=product_id or generate_product_id(existing_ids),
            name=draft.name.strip(),
            category=draft.category.strip(),
            buy_price=draft.buy_price,
            sell_price=draft.sell_price,
            current_stock=draft.current_stock,
            minimum_stock=draft.minimum_stock,
        )
        context.store.set_all(
            CollectionName.PRODUCTS,
            [*state.products, product],
            expected_version=state.version(CollectionName.PRODUCTS),
        )
        return product

    product = _with_retries(context, "Add product", attempt)
    log.info("Added product '%s' (%s)", product.product_id, product.name)
    return product


def update_product(context: RuntimeContext, product_id: str, draft: ProductDraft) -> data_manager.ProductRow:
    """Replace the catalog data of an existing product, keeping its id.

    Historic transactions keep their snapshot names and prices.

    Raises:
        ProductValidationError: If the draft breaks a catalog rule.
        NotFoundError: If ``product_id`` is unknown.
    """
    validate_product(draft)

    def attempt() -> data_manager.ProductRow:
        state = context.store.snapshot()
        index = _index_of_product(state, product_id)
        updated = replace(
            state.products[index],
            name=draft.name.strip(),
            category=draft.category.strip(),
            buy_price=draft.buy_price,
            sell_price=draft.sell_price,
            current_stock=draft.current_stock,
            minimum_stock=draft.minimum_stock,
        )
        products = list(state.products)
        products[index] = updated
        context.store.set_all(
            CollectionName.PRODUCTS,
            products,
            expected_version=state.version(CollectionName.PRODUCTS),
        )
        return updated

    product = _with_retries(context, "Update product", attempt)
    log.info("Updated product '%s'", product_id)
    return product


def delete_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Remove a product from the catalog.

    Transactions that sold the product are left untouched; their items keep
    the snapshot and now carry a dangling product reference.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
    """

    def attempt() -> Tuple[data_manager.ProductRow, int]:
        state = context.store.snapshot()
        index = _index_of_product(state, product_id)
        removed = state.products[index]
        context.store.set_all(
            CollectionName.PRODUCTS,
            [*state.products[:index], *state.products[index + 1:]],
            expected_version=state.version(CollectionName.PRODUCTS),
        )
        referencing = sum(
            1
            for transaction in state.transactions
            if any(item.product_id == product_id for item in transaction.items)
        )
        return removed, referencing

    removed, referencing = _with_retries(context, "Delete product", attempt)
    log.info(
        "Deleted product '%s'; %d recorded transactions still reference it",
        product_id,
        referencing,
    )
    return removed


def _index_of_product(state: data_manager.StoreState, product_id: str) -> int:
    for index, product in enumerate(state.products):
        if product.product_id == product_id:
            return index
    log.warning("Product lookup failed for id '%s'", product_id)
    raise NotFoundError(f"Unknown product id: {product_id}")


# ---------------------------------------------------------------------------
# Transaction queries
# ---------------------------------------------------------------------------


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return every recorded transaction in stored order."""

    return context.store.get_all(CollectionName.TRANSACTIONS)


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve a transaction by its identifier.

    Raises:
        NotFoundError: If no transaction carries ``transaction_id``.
    """
    _, transaction = _locate_transaction(context.store.snapshot(), transaction_id)
    return transaction


def search_transactions(
    context: RuntimeContext,
    term: str = "",
    *,
    on_date: Optional[date] = None,
) -> List[data_manager.TransactionRow]:
    """Filter the history by id or product name and by calendar day.

    ``term`` matches case-insensitively against the transaction id and the
    item product names. Results are ordered newest first.
    """
    needle = term.strip().lower()

    def matches(transaction: data_manager.TransactionRow) -> bool:
        if needle and needle not in transaction.transaction_id.lower() and not any(
            needle in item.product_name.lower() for item in transaction.items
        ):
            return False
        return on_date is None or metrics.to_local_day(transaction.timestamp) == on_date

    found = [transaction for transaction in list_transactions(context) if matches(transaction)]
    found.sort(key=lambda transaction: metrics.to_local_datetime(transaction.timestamp), reverse=True)
    return found


def transaction_history_totals(transactions: Sequence[data_manager.TransactionRow]) -> HistoryTotals:
    """Sum sales and item quantities over ``transactions``."""

    return HistoryTotals(
        transaction_count=len(transactions),
        total_sales=sum(transaction.total for transaction in transactions),
        total_items=sum(item.quantity for transaction in transactions for item in transaction.items),
    )


def _locate_transaction(state: data_manager.StoreState, transaction_id: str) -> Tuple[int, data_manager.TransactionRow]:
    for index, transaction in enumerate(state.transactions):
        if transaction.transaction_id == transaction_id:
            return index, transaction
    log.warning("Transaction lookup failed for id '%s'", transaction_id)
    raise NotFoundError(f"Unknown transaction id: {transaction_id}")


# ---------------------------------------------------------------------------
# Transaction lifecycle
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a whole number greater than zero.

    Raises:
        ValueError: If ``quantity`` is not an integer or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: int) -> None:
    """Validate that a monetary value is a whole, nonnegative amount.

    Raises:
        ValueError: If ``amount`` is not an integer or is less than zero.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be a whole number, zero or positive")


def generate_transaction_id(
    number: int,
    *,
    prefix: str = TRANSACTION_ID_PREFIX,
    width: int = TRANSACTION_ID_WIDTH,
) -> str:
    """Format a sequence number as ``T001``; numbers past the width grow it."""

    return f"{prefix}{number:0{width}d}"


def next_transaction_number(state: data_manager.StoreState) -> int:
    """Return the next sequence number for a transaction id.

    The persisted counter survives deletions. Ids already present in the
    collection are also taken into account, so workbooks filled before the
    counter existed never produce a duplicate.
    """
    highest = state.counter(TRANSACTION_COUNTER)
    for transaction in state.transactions:
        match = _TRANSACTION_ID_PATTERN.match(transaction.transaction_id)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def build_line_items(
    products: Sequence[data_manager.ProductRow],
    lines: Sequence[CartLine],
) -> Tuple[data_manager.TransactionItemRow, ...]:
    """Resolve cart lines into line items priced from the live catalog.

    Lines for the same product are merged in first-seen order. The product
    name and sell price are copied into each item so later catalog edits do
    not alter the sale.

    Raises:
        ValueError: If a quantity is not a positive whole number.
        NotFoundError: If a line references an unknown product.
    """
    by_id = {product.product_id: product for product in products}
    quantities: Dict[str, int] = {}
    for line in lines:
        require_positive_quantity(line.quantity)
        if line.product_id not in by_id:
            log.warning("Sale references unknown product '%s'", line.product_id)
            raise NotFoundError(f"Unknown product id: {line.product_id}")
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

    return tuple(
        data_manager.TransactionItemRow(
            product_id=product_id,
            product_name=by_id[product_id].name,
            price=by_id[product_id].sell_price,
            quantity=quantity,
            subtotal=by_id[product_id].sell_price * quantity,
        )
        for product_id, quantity in quantities.items()
    )


def _price_sale(
    products: Sequence[data_manager.ProductRow],
    lines: Sequence[CartLine],
    cash_received: int,
) -> Tuple[Tuple[data_manager.TransactionItemRow, ...], int, int]:
    if not lines:
        log.error("Rejected sale with an empty cart")
        raise EmptyCartError("Cannot record a sale without items")
    require_nonnegative_money(cash_received)
    items = build_line_items(products, lines)
    total = sum(item.subtotal for item in items)
    if cash_received < total:
        log.error("Rejected sale: cash received %s does not cover total %s", cash_received, total)
        raise InsufficientPaymentError(total, cash_received)
    return items, total, cash_received - total


def create_transaction(context: RuntimeContext, command: SaleCommand) -> data_manager.TransactionRow:
    """Record a sale and take its items out of stock in one commit.

    Returns:
        data_manager.TransactionRow: The committed sale, ready for a receipt.

    Raises:
        EmptyCartError: If ``command.lines`` is empty.
        NotFoundError: If a line references an unknown product.
        InsufficientPaymentError: If the cash does not cover the total.
        InsufficientStockError: If stock would go negative and the
            configuration does not allow it.
        StorageFailure: If the record store cannot persist the commit.
    """
    timestamp = _resolve_timestamp(command.timestamp)

    def attempt() -> data_manager.TransactionRow:
        state = context.store.snapshot()
        items, total, change = _price_sale(state.products, command.lines, command.cash_received)
        staged = inventory.apply_sale_to(
            state.products,
            items,
            allow_negative=context.settings.allow_negative_stock,
        )
        number = next_transaction_number(state)
        transaction = data_manager.TransactionRow(
            transaction_id=generate_transaction_id(number),
            items=items,
            total=total,
            cash_received=command.cash_received,
            change=change,
            timestamp=timestamp,
        )
        context.store.commit(
            {
                CollectionName.PRODUCTS: staged.products,
                CollectionName.TRANSACTIONS: [*state.transactions, transaction],
            },
            counters={TRANSACTION_COUNTER: number},
            expected_versions=_expected_versions(state),
        )
        return transaction

    transaction = _with_retries(context, "Create transaction", attempt)
    log.info(
        "Recorded transaction '%s' (%d items, total=%s, change=%s)",
        transaction.transaction_id,
        len(transaction.items),
        transaction.total,
        transaction.change,
    )
    return transaction


def update_transaction(context: RuntimeContext, command: UpdateCommand) -> data_manager.TransactionRow:
    """Replace the items and payment of a recorded sale.

    The stock taken by the stored items is returned first and the new items
    are taken afterwards, so a product present in both versions is counted
    once. The transaction keeps its id and position; its timestamp becomes
    the edit time.

    Raises:
        NotFoundError: If the transaction or a referenced product is unknown.
        EmptyCartError: If ``command.lines`` is empty.
        InsufficientPaymentError: If the cash does not cover the new total.
        InsufficientStockError: If stock would go negative and the
            configuration does not allow it.
        StorageFailure: If the record store cannot persist the commit.
    """
    timestamp = _resolve_timestamp(command.timestamp)

    def attempt() -> data_manager.TransactionRow:
        state = context.store.snapshot()
        index, original = _locate_transaction(state, command.transaction_id)
        reverted = inventory.revert_sale_to(state.products, original.items)
        items, total, change = _price_sale(reverted.products, command.lines, command.cash_received)
        staged = inventory.apply_sale_to(
            reverted.products,
            items,
            allow_negative=context.settings.allow_negative_stock,
        )
        updated = replace(
            original,
            items=items,
            total=total,
            cash_received=command.cash_received,
            change=change,
            timestamp=timestamp,
        )
        transactions = list(state.transactions)
        transactions[index] = updated
        context.store.commit(
            {
                CollectionName.PRODUCTS: staged.products,
                CollectionName.TRANSACTIONS: transactions,
            },
            expected_versions=_expected_versions(state),
        )
        return updated

    transaction = _with_retries(context, "Update transaction", attempt)
    log.info(
        "Updated transaction '%s' (%d items, total=%s, change=%s)",
        transaction.transaction_id,
        len(transaction.items),
        transaction.total,
        transaction.change,
    )
    return transaction


def delete_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Delete a recorded sale and return its items to stock in one commit.

    Returns:
        data_manager.TransactionRow: The removed transaction.

    Raises:
        NotFoundError: If ``transaction_id`` is unknown.
        StorageFailure: If the record store cannot persist the commit.
    """

    def attempt() -> data_manager.TransactionRow:
        state = context.store.snapshot()
        index, original = _locate_transaction(state, transaction_id)
        reverted = inventory.revert_sale_to(state.products, original.items)
        context.store.commit(
            {
                CollectionName.PRODUCTS: reverted.products,
                CollectionName.TRANSACTIONS: [*state.transactions[:index], *state.transactions[index + 1:]],
            },
            expected_versions=_expected_versions(state),
        )
        return original

    removed = _with_retries(context, "Delete transaction", attempt)
    log.info("Deleted transaction '%s' and restored its stock", transaction_id)
    return removed


# ---------------------------------------------------------------------------
# Shop settings
# ---------------------------------------------------------------------------


def get_shop_settings(context: RuntimeContext) -> data_manager.ShopSettings:
    return context.store.get_settings()


def update_shop_settings(context: RuntimeContext, **changes: str) -> data_manager.ShopSettings:
    """Change selected shop identity fields.

    Raises:
        KeyError: If a keyword does not name a settings field.
        ValueError: If the shop name would become empty.
    """
    known = {field.name for field in fields(data_manager.ShopSettings)}
    unknown = sorted(set(changes) - known)
    if unknown:
        raise KeyError(f"Unknown settings field: {', '.join(unknown)}")

    settings = replace(context.store.get_settings(), **changes)
    if not settings.shop_name.strip():
        raise ValueError("Shop name cannot be empty")
    for name, value in changes.items():
        if ILLEGAL_CHARACTERS_RE.search(value):
            raise ValueError(f"Settings field '{name}' contains control characters")
    context.store.set_settings(settings)
    log.info("Updated shop settings: %s", ", ".join(sorted(changes)))
    return settings
