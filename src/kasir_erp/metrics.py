"""Read-only aggregates for the dashboard and the sales reports.

Every function here takes plain product and transaction sequences (or a
record store snapshot) and returns frozen dataclasses, so results can be
recomputed on every refresh and compared for equality.

Transactions are bucketed by *local* calendar day: aware timestamps are
converted to the local timezone before the time of day is dropped. Profit is
always computed from the live catalog prices, not from the price snapshot
kept on each line item, so historical profit follows the current pricing.
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple, Union

from . import data_manager, inventory, log
from .constants import DEFAULT_MINIMUM_STOCK, StockLevel


DEFAULT_SERIES_DAYS = 7


@dataclass(frozen=True)
class SummaryData:
    """Figures shown on the dashboard summary cards."""

    sales_today: int
    sales_week: int
    sales_month: int
    transactions_today: int
    low_stock_count: int
    profit_month: int
    profit_growth: int


@dataclass(frozen=True)
class SalesDataPoint:
    date: date
    sales: int
    profit: int

    @property
    def margin_percent(self) -> int:
        return profit_margin(self.sales, self.profit)


@dataclass(frozen=True)
class TimeWindows:
    """Transactions bucketed by the dashboard time windows."""

    today: Tuple[data_manager.TransactionRow, ...]
    week: Tuple[data_manager.TransactionRow, ...]
    month: Tuple[data_manager.TransactionRow, ...]
    previous_month: Tuple[data_manager.TransactionRow, ...]


@dataclass(frozen=True)
class RangeSummary:
    """Totals of a sales report over an inclusive day range."""

    start: date
    end: date
    total_sales: int
    total_profit: int
    transaction_count: int
    average_sale: int
    margin_percent: int
    daily: Tuple[SalesDataPoint, ...]


@dataclass(frozen=True)
class StockStatusRow:
    product_id: str
    name: str
    category: str
    current_stock: int
    minimum_stock: int
    sell_price: int
    level: StockLevel


@dataclass(frozen=True)
class StockAlerts:
    """Products needing attention: running low (but available) and sold out."""

    low: Tuple[data_manager.ProductRow, ...]
    out: Tuple[data_manager.ProductRow, ...]


@dataclass(frozen=True)
class Dashboard:
    summary: SummaryData
    series: Tuple[SalesDataPoint, ...]
    stock: Tuple[StockStatusRow, ...]
    alerts: StockAlerts


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards positive infinity."""

    return math.floor(value + 0.5)


def to_local_datetime(value: datetime) -> datetime:
    """Return ``value`` as a naive datetime in local time.

    Naive values are assumed to be local already.
    """

    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def to_local_day(value: Union[datetime, date]) -> date:
    """Truncate a timestamp to its local calendar day."""

    if isinstance(value, datetime):
        return to_local_datetime(value).date()
    return value


def shift_months(day: date, months: int) -> date:
    """Move ``day`` by whole calendar months, clamping to the month's last day.

    ``shift_months(date(2024, 3, 31), -1)`` is ``date(2024, 2, 29)``.
    """

    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def _today(now: Optional[Union[datetime, date]]) -> date:
    return to_local_day(now if now is not None else datetime.now(UTC))


def partition_transactions(
    transactions: Sequence[data_manager.TransactionRow],
    now: Optional[Union[datetime, date]] = None,
) -> TimeWindows:
    """Bucket transactions into the today/week/month/previous-month windows.

    The week window starts seven days before today, the month window one
    calendar month before today and the previous month window two calendar
    months before today (up to, not including, the month window start).
    """

    today = _today(now)
    week_start = today - timedelta(days=7)
    month_start = shift_months(today, -1)
    previous_start = shift_months(today, -2)

    today_bucket: List[data_manager.TransactionRow] = []
    week: List[data_manager.TransactionRow] = []
    month: List[data_manager.TransactionRow] = []
    previous: List[data_manager.TransactionRow] = []
    for transaction in transactions:
        day = to_local_day(transaction.timestamp)
        if day == today:
            today_bucket.append(transaction)
        if day >= week_start:
            week.append(transaction)
        if day >= month_start:
            month.append(transaction)
        elif day >= previous_start:
            previous.append(transaction)

    return TimeWindows(
        today=tuple(today_bucket),
        week=tuple(week),
        month=tuple(month),
        previous_month=tuple(previous),
    )


def _product_index(products: Sequence[data_manager.ProductRow]) -> Dict[str, data_manager.ProductRow]:
    return {product.product_id: product for product in products}


def transaction_profit(
    transaction: data_manager.TransactionRow,
    products: Union[Sequence[data_manager.ProductRow], Dict[str, data_manager.ProductRow]],
) -> int:
    """Profit of one sale at the current catalog prices.

    Items whose product no longer exists contribute nothing.
    """

    by_id = products if isinstance(products, dict) else _product_index(products)
    profit = 0
    for item in transaction.items:
        product = by_id.get(item.product_id) if item.product_id is not None else None
        if product is None:
            log.debug(
                "No live product for '%s' in transaction '%s'; profit counted as zero",
                item.product_id,
                transaction.transaction_id,
            )
            continue
        profit += (product.sell_price - product.buy_price) * item.quantity
    return profit


def total_profit(
    transactions: Sequence[data_manager.TransactionRow],
    products: Sequence[data_manager.ProductRow],
) -> int:
    by_id = _product_index(products)
    return sum(transaction_profit(transaction, by_id) for transaction in transactions)


def calculate_profit_growth(current_profit: int, previous_profit: int) -> int:
    """Month-over-month profit growth in whole percent."""

    if previous_profit > 0:
        return round_half_up((current_profit - previous_profit) / previous_profit * 100)
    if current_profit > 0:
        return 100
    return 0


def profit_margin(sales: int, profit: int) -> int:
    """Profit as a whole percentage of sales; zero when nothing was sold."""

    if sales <= 0:
        return 0
    return round_half_up(profit / sales * 100)


def count_low_stock(
    products: Sequence[data_manager.ProductRow],
    *,
    default_minimum: int = DEFAULT_MINIMUM_STOCK,
) -> int:
    return sum(1 for product in products if inventory.is_low_stock(product, default_minimum=default_minimum))


def calculate_summary(
    products: Sequence[data_manager.ProductRow],
    transactions: Sequence[data_manager.TransactionRow],
    *,
    now: Optional[Union[datetime, date]] = None,
    default_minimum: int = DEFAULT_MINIMUM_STOCK,
) -> SummaryData:
    """Compute the dashboard summary cards."""

    windows = partition_transactions(transactions, now)
    profit_month = total_profit(windows.month, products)
    previous_profit = total_profit(windows.previous_month, products)
    return SummaryData(
        sales_today=sum(transaction.total for transaction in windows.today),
        sales_week=sum(transaction.total for transaction in windows.week),
        sales_month=sum(transaction.total for transaction in windows.month),
        transactions_today=len(windows.today),
        low_stock_count=count_low_stock(products, default_minimum=default_minimum),
        profit_month=profit_month,
        profit_growth=calculate_profit_growth(profit_month, previous_profit),
    )


def generate_sales_series(
    products: Sequence[data_manager.ProductRow],
    transactions: Sequence[data_manager.TransactionRow],
    *,
    now: Optional[Union[datetime, date]] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    days: int = DEFAULT_SERIES_DAYS,
) -> List[SalesDataPoint]:
    """Produce one sales/profit point per calendar day.

    Without an explicit range the series covers the trailing ``days`` days up
    to and including today. With ``start`` and ``end`` both bounds are
    inclusive; a range whose start lies after its end yields an empty list.

    Raises:
        ValueError: If only one of ``start``/``end`` is given, or ``days`` is
            not positive.
    """

    if (start is None) != (end is None):
        raise ValueError("start and end must be given together")
    if start is None or end is None:
        if days <= 0:
            raise ValueError("days must be greater than zero")
        end = _today(now)
        start = end - timedelta(days=days - 1)
    if start > end:
        log.debug("Empty sales series requested (%s after %s)", start, end)
        return []

    by_id = _product_index(products)
    sales: Dict[date, int] = {}
    profit: Dict[date, int] = {}
    day = start
    while day <= end:
        sales[day] = 0
        profit[day] = 0
        day += timedelta(days=1)

    for transaction in transactions:
        day = to_local_day(transaction.timestamp)
        if day in sales:
            sales[day] += transaction.total
            profit[day] += transaction_profit(transaction, by_id)

    return [SalesDataPoint(date=day, sales=sales[day], profit=profit[day]) for day in sales]


def transactions_in_range(
    transactions: Sequence[data_manager.TransactionRow],
    start: date,
    end: date,
) -> List[data_manager.TransactionRow]:
    """Transactions whose local day falls within ``start``..``end`` inclusive."""

    return [
        transaction
        for transaction in transactions
        if start <= to_local_day(transaction.timestamp) <= end
    ]


def summarize_range(
    products: Sequence[data_manager.ProductRow],
    transactions: Sequence[data_manager.TransactionRow],
    start: date,
    end: date,
) -> RangeSummary:
    """Build the sales report for an inclusive day range."""

    daily = generate_sales_series(products, transactions, start=start, end=end)
    selected = transactions_in_range(transactions, start, end)
    total_sales = sum(point.sales for point in daily)
    total = sum(point.profit for point in daily)
    count = len(selected)
    return RangeSummary(
        start=start,
        end=end,
        total_sales=total_sales,
        total_profit=total,
        transaction_count=count,
        average_sale=round_half_up(total_sales / count) if count else 0,
        margin_percent=profit_margin(total_sales, total),
        daily=tuple(daily),
    )


def stock_status(
    products: Sequence[data_manager.ProductRow],
    *,
    default_minimum: int = DEFAULT_MINIMUM_STOCK,
) -> List[StockStatusRow]:
    return [
        StockStatusRow(
            product_id=product.product_id,
            name=product.name,
            category=product.category,
            current_stock=product.current_stock,
            minimum_stock=product.effective_minimum(default_minimum),
            sell_price=product.sell_price,
            level=inventory.product_stock_level(product, default_minimum=default_minimum),
        )
        for product in products
    ]


def stock_alerts(
    products: Sequence[data_manager.ProductRow],
    *,
    default_minimum: int = DEFAULT_MINIMUM_STOCK,
) -> StockAlerts:
    low = tuple(
        product
        for product in products
        if product.current_stock > 0 and inventory.is_low_stock(product, default_minimum=default_minimum)
    )
    out = tuple(product for product in products if product.current_stock <= 0)
    return StockAlerts(low=low, out=out)


def build_dashboard(
    store: data_manager.RecordStore,
    *,
    now: Optional[Union[datetime, date]] = None,
    default_minimum: int = DEFAULT_MINIMUM_STOCK,
) -> Dashboard:
    """Compute every dashboard panel from one consistent store snapshot."""

    state = store.snapshot()
    dashboard = Dashboard(
        summary=calculate_summary(state.products, state.transactions, now=now, default_minimum=default_minimum),
        series=tuple(generate_sales_series(state.products, state.transactions, now=now)),
        stock=tuple(stock_status(state.products, default_minimum=default_minimum)),
        alerts=stock_alerts(state.products, default_minimum=default_minimum),
    )
    log.debug(
        "Dashboard computed over %d products and %d transactions",
        len(state.products),
        len(state.transactions),
    )
    return dashboard
