"""Command-line entry points for the Kasir ERP toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer and rendering the results as plain text. Keeping the CLI thin ensures
the same parser configuration can be reused by tests, scripts, or any
alternative front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple, Type

from . import core_logic, data_manager, log, metrics, setup_excel
from .constants import ProductSortField
from .errors import (
    BusinessRuleViolation,
    ConcurrentModificationError,
    EmptyCartError,
    InsufficientPaymentError,
    InsufficientStockError,
    NotFoundError,
    ProductValidationError,
    StorageFailure,
)


Executor = Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Executor
    requires_context: bool = True


# Most specific classes first; the first match wins.
ERROR_EXIT_CODES: Tuple[Tuple[Type[BaseException], str, int], ...] = (
    (NotFoundError, "NOT FOUND", 4),
    (EmptyCartError, "EMPTY CART", 5),
    (InsufficientPaymentError, "INSUFFICIENT PAYMENT", 6),
    (InsufficientStockError, "INSUFFICIENT STOCK", 7),
    (ProductValidationError, "INVALID PRODUCT", 8),
    (BusinessRuleViolation, "RULE VIOLATION", 2),
    (ConcurrentModificationError, "CONCURRENT WRITE", 10),
    (StorageFailure, "STORAGE FAILURE", 9),
    (FileExistsError, "ALREADY EXISTS", 12),
    (FileNotFoundError, "CONFIGURATION", 3),
    (KeyError, "CONFIGURATION", 3),
    (ValueError, "INVALID INPUT", 11),
    (RuntimeError, "SCHEMA", 13),
)


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="kasir-cli",
        description="Command-line tools for the Kasir ERP point of sale workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and catalog edits."""
    specs = {
        "init": register_init_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "edit-sale": register_edit_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
        "settings": register_settings_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "products": register_products_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "receipt": register_receipt_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "report": register_report_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create the master workbook named in config.ini."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, requires_context=False)


def _add_product_fields(parser: argparse.ArgumentParser, *, required: bool, clearable: bool = False) -> None:
    parser.add_argument("--name", required=required)
    parser.add_argument("--category", required=required)
    parser.add_argument("--buy-price", type=int, required=required)
    parser.add_argument("--sell-price", type=int, required=required)
    parser.add_argument("--stock", type=int, default=None)
    if not clearable:
        parser.add_argument("--minimum-stock", type=int, default=None)
        return
    minimum = parser.add_mutually_exclusive_group()
    minimum.add_argument("--minimum-stock", type=int, default=None)
    minimum.add_argument(
        "--clear-minimum-stock",
        action="store_true",
        help="Fall back to the configured default minimum stock.",
    )


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None, help="Explicit id (generated when omitted).")
        _add_product_fields(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""
    name = "edit-product"
    help_text = "Change catalog data of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        _add_product_fields(parser, required=False, clearable=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def _add_cart_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_cart_line,
        default=[],
        metavar="PRODUCT_ID:QTY",
        help="Product and quantity; repeat for every cart line.",
    )
    parser.add_argument("--cash", type=int, required=True, help="Cash received.")


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale and print its receipt."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_cart_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_edit_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-sale``."""
    name = "edit-sale"
    help_text = "Replace the items and payment of a recorded sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        _add_cart_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_sale)


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""
    name = "delete-sale"
    help_text = "Delete a recorded sale and return its items to stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sale)


def register_settings_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settings``."""
    name = "settings"
    help_text = "Show or change the shop identity printed on receipts and reports."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--shop-name", default=None)
        parser.add_argument("--shop-address", default=None)
        parser.add_argument("--principal-name", default=None)
        parser.add_argument("--manager-name", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settings)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List catalog products with their stock status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", default=None)
        parser.add_argument(
            "--sort",
            choices=[member.value for member in ProductSortField],
            default=None,
        )
        parser.add_argument("--desc", action="store_true", help="Sort in descending order.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products)


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "Show the transaction history, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default="", help="Match transaction id or product name.")
        parser.add_argument("--date", type=date.fromisoformat, default=None, help="Only this day (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions)


def register_receipt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receipt``."""
    name = "receipt"
    help_text = "Print the receipt of a recorded sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receipt)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display sales summaries, the 7-day series and stock alerts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display daily sales and profit over a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=date.fromisoformat, required=True, help="First day (YYYY-MM-DD).")
        parser.add_argument("--end", type=date.fromisoformat, required=True, help="Last day (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def parse_cart_line(raw: str) -> core_logic.CartLine:
    """Parse ``PRODUCT_ID:QTY`` (quantity defaults to 1) into a cart line."""
    product_id, separator, quantity_raw = raw.rpartition(":")
    if not separator:
        product_id, quantity_raw = raw, "1"
    product_id = product_id.strip()
    if not product_id:
        raise argparse.ArgumentTypeError(f"Missing product id in '{raw}'")
    try:
        quantity = int(quantity_raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in '{raw}'") from exc
    return core_logic.CartLine(product_id=product_id, quantity=quantity)


def translate_add_product(args: argparse.Namespace) -> core_logic.ProductDraft:
    """Translate CLI args into a product draft."""
    return core_logic.ProductDraft(
        name=args.name,
        category=args.category,
        buy_price=args.buy_price,
        sell_price=args.sell_price,
        current_stock=args.stock if args.stock is not None else 0,
        minimum_stock=args.minimum_stock,
    )


def translate_edit_product(
    existing: data_manager.ProductRow,
    args: argparse.Namespace,
) -> core_logic.ProductDraft:
    """Overlay the options given on the command line onto ``existing``."""

    def pick(value, fallback):
        return fallback if value is None else value

    minimum_stock = pick(args.minimum_stock, existing.minimum_stock)
    if getattr(args, "clear_minimum_stock", False):
        minimum_stock = None

    return core_logic.ProductDraft(
        name=pick(args.name, existing.name),
        category=pick(args.category, existing.category),
        buy_price=pick(args.buy_price, existing.buy_price),
        sell_price=pick(args.sell_price, existing.sell_price),
        current_stock=pick(args.stock, existing.current_stock),
        minimum_stock=minimum_stock,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(lines=tuple(args.items), cash_received=args.cash)


def translate_edit_sale(args: argparse.Namespace) -> core_logic.UpdateCommand:
    """Translate CLI args into an update command object."""
    return core_logic.UpdateCommand(
        transaction_id=args.transaction_id,
        lines=tuple(args.items),
        cash_received=args.cash,
    )


def translate_settings(args: argparse.Namespace) -> Dict[str, str]:
    """Collect the settings fields given on the command line."""
    fields = ("shop_name", "shop_address", "principal_name", "manager_name")
    return {field: getattr(args, field) for field in fields if getattr(args, field, None) is not None}


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def format_currency(amount: int) -> str:
    """Render whole rupiah with dot thousand separators, e.g. ``Rp 1.500``."""
    return "Rp " + f"{amount:,}".replace(",", ".")


def format_timestamp(value) -> str:
    return metrics.to_local_datetime(value).strftime("%Y-%m-%d %H:%M")


def format_receipt(
    transaction: data_manager.TransactionRow,
    settings: data_manager.ShopSettings,
    *,
    width: int = 40,
) -> str:
    """Render a plain-text receipt from the price snapshot kept on the sale."""
    rule = "-" * width
    lines: List[str] = [
        settings.shop_name.center(width).rstrip(),
        settings.shop_address.center(width).rstrip(),
        rule,
        f"No   : {transaction.transaction_id}",
        f"Date : {format_timestamp(transaction.timestamp)}",
        rule,
    ]
    for item in transaction.items:
        lines.append(item.product_name)
        detail = f"  {item.quantity} x {format_currency(item.price)}"
        lines.append(_pad_columns(detail, format_currency(item.subtotal), width))
    lines.extend(
        [
            rule,
            _pad_columns("Total", format_currency(transaction.total), width),
            _pad_columns("Cash", format_currency(transaction.cash_received), width),
            _pad_columns("Change", format_currency(transaction.change), width),
            rule,
            "Thank you for shopping!".center(width).rstrip(),
        ]
    )
    return "\n".join(lines)


def _pad_columns(left: str, right: str, width: int) -> str:
    gap = max(width - len(left) - len(right), 1)
    return f"{left}{' ' * gap}{right}"


def format_product_table(
    products: Sequence[data_manager.ProductRow],
    *,
    default_minimum: int,
) -> str:
    rows = [("ID", "Name", "Category", "Buy", "Sell", "Stock", "Min", "Status")]
    for product, row in zip(products, metrics.stock_status(products, default_minimum=default_minimum)):
        rows.append(
            (
                row.product_id,
                row.name,
                row.category,
                format_currency(product.buy_price),
                format_currency(row.sell_price),
                str(row.current_stock),
                str(row.minimum_stock),
                row.level.label,
            )
        )
    return _render_table(rows)


def format_transaction_table(transactions: Sequence[data_manager.TransactionRow]) -> str:
    rows = [("ID", "Date", "Items", "Total", "Cash", "Change")]
    for transaction in transactions:
        rows.append(
            (
                transaction.transaction_id,
                format_timestamp(transaction.timestamp),
                ", ".join(f"{item.product_name} x{item.quantity}" for item in transaction.items),
                format_currency(transaction.total),
                format_currency(transaction.cash_received),
                format_currency(transaction.change),
            )
        )
    totals = core_logic.transaction_history_totals(transactions)
    footer = (
        f"{totals.transaction_count} transactions, {totals.total_items} items sold, "
        f"total {format_currency(totals.total_sales)}"
    )
    return f"{_render_table(rows)}\n{footer}"


def format_series(points: Sequence[metrics.SalesDataPoint]) -> str:
    rows = [("Date", "Sales", "Profit", "Margin")]
    for point in points:
        rows.append(
            (
                point.date.isoformat(),
                format_currency(point.sales),
                format_currency(point.profit),
                f"{point.margin_percent}%",
            )
        )
    return _render_table(rows)


def format_dashboard(dashboard: metrics.Dashboard) -> str:
    summary = dashboard.summary
    growth_sign = "+" if summary.profit_growth > 0 else ""
    parts = [
        f"Sales today       : {format_currency(summary.sales_today)} ({summary.transactions_today} transactions)",
        f"Sales this week   : {format_currency(summary.sales_week)}",
        f"Sales this month  : {format_currency(summary.sales_month)}",
        f"Profit this month : {format_currency(summary.profit_month)} ({growth_sign}{summary.profit_growth}% vs previous month)",
        f"Low stock products: {summary.low_stock_count}",
        "",
        format_series(dashboard.series),
    ]
    if dashboard.alerts.out:
        parts.append("")
        parts.append("Out of stock: " + ", ".join(product.name for product in dashboard.alerts.out))
    if dashboard.alerts.low:
        parts.append("Running low : " + ", ".join(product.name for product in dashboard.alerts.low))
    return "\n".join(parts)


def format_report(summary: metrics.RangeSummary, settings: data_manager.ShopSettings) -> str:
    header = [
        settings.shop_name,
        f"Sales report {summary.start.isoformat()} to {summary.end.isoformat()}",
        "",
    ]
    footer = [
        "",
        f"Transactions : {summary.transaction_count}",
        f"Total sales  : {format_currency(summary.total_sales)}",
        f"Total profit : {format_currency(summary.total_profit)} ({summary.margin_percent}%)",
        f"Average sale : {format_currency(summary.average_sale)}",
        "",
        f"Principal: {settings.principal_name}    Manager: {settings.manager_name}",
    ]
    return "\n".join([*header, format_series(summary.daily), *footer])


def format_settings(settings: data_manager.ShopSettings) -> str:
    return "\n".join(
        [
            f"Shop name      : {settings.shop_name}",
            f"Shop address   : {settings.shop_address}",
            f"Principal name : {settings.principal_name}",
            f"Manager name   : {settings.manager_name}",
        ]
    )


def _render_table(rows: Sequence[Sequence[str]]) -> str:
    widths = [max(len(row[index]) for row in rows) for index in range(len(rows[0]))]
    rendered = ["  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows]
    rendered.insert(1, "  ".join("-" * width for width in widths))
    return "\n".join(rendered)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the master workbook from the configuration file."""
    config_path = data_manager.find_config_file(getattr(args, "config", None))
    output_path = setup_excel.run_from_config(config_path, overwrite=args.force)
    print(f"Created master workbook at '{output_path}'.")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args), product_id=args.product_id)
    print(f"Added product {product.product_id} ({product.name}).")
    return 0


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-product workflow in the BLL."""
    existing = core_logic.get_product(context, args.product_id)
    product = core_logic.update_product(context, args.product_id, translate_edit_product(existing, args))
    print(f"Updated product {product.product_id} ({product.name}).")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    product = core_logic.delete_product(context, args.product_id)
    print(f"Deleted product {product.product_id} ({product.name}).")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL and print the receipt."""
    transaction = core_logic.create_transaction(context, translate_sale(args))
    print(format_receipt(transaction, core_logic.get_shop_settings(context)))
    return 0


def run_edit_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction update workflow via the BLL."""
    transaction = core_logic.update_transaction(context, translate_edit_sale(args))
    print(format_receipt(transaction, core_logic.get_shop_settings(context)))
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction deletion workflow via the BLL."""
    transaction = core_logic.delete_transaction(context, args.transaction_id)
    print(f"Deleted transaction {transaction.transaction_id}; stock restored.")
    return 0


def run_settings(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Show the shop settings, updating them first when options are given."""
    changes = translate_settings(args)
    if changes:
        settings = core_logic.update_shop_settings(context, **changes)
    else:
        settings = core_logic.get_shop_settings(context)
    print(format_settings(settings))
    return 0


def run_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product listing workflow."""
    sort_by = ProductSortField(args.sort) if args.sort else None
    products = core_logic.list_products(context, category=args.category, sort_by=sort_by, descending=args.desc)
    print(format_product_table(products, default_minimum=context.settings.default_minimum_stock))
    return 0


def run_transactions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction history workflow."""
    transactions = core_logic.search_transactions(context, args.search, on_date=args.date)
    print(format_transaction_table(transactions))
    return 0


def run_receipt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the receipt of a recorded transaction."""
    transaction = core_logic.get_transaction(context, args.transaction_id)
    print(format_receipt(transaction, core_logic.get_shop_settings(context)))
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard workflow."""
    dashboard = metrics.build_dashboard(context.store, default_minimum=context.settings.default_minimum_stock)
    print(format_dashboard(dashboard))
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the range report workflow."""
    state = context.store.snapshot()
    summary = metrics.summarize_range(state.products, state.transactions, args.start, args.end)
    print(format_report(summary, state.settings))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into a distinct message and exit code."""
    for error_type, label, exit_code in ERROR_EXIT_CODES:
        if isinstance(error, error_type):
            log.error("[%s] %s", label, error)
            return exit_code
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table.get(args.command)
        context = None
        if spec is None or spec.requires_context:
            context = load_runtime_context(getattr(args, "config", None))
            core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
