"""Integration tests describing the end-to-end Kasir ERP workflows.

These scenarios run the business logic, the metrics layer and the workbook
record store together against a real workbook in a temporary folder.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta

import pytest

from kasir_erp import core_logic, metrics
from kasir_erp.constants import CollectionName
from kasir_erp.errors import StorageFailure


def _register_sample_product(context: core_logic.RuntimeContext, *, product_id: str = "p1", stock: int = 10) -> None:
    """Add the product used by the sale scenarios through the business layer."""

    core_logic.add_product(
        context,
        core_logic.ProductDraft("Pulpen", "ATK", 1000, 1500, current_stock=stock, minimum_stock=5),
        product_id=product_id,
    )


def _push_mtime_forward(context: core_logic.RuntimeContext) -> None:
    path = context.settings.data_file
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))


def test_sale_lifecycle_flow(runtime_context, config_file):
    """Create, edit and delete a sale, reloading the workbook between steps."""

    context = runtime_context
    _register_sample_product(context)

    sale = core_logic.create_transaction(
        context,
        core_logic.SaleCommand([core_logic.CartLine("p1", 3)], cash_received=5000),
    )
    assert (sale.total, sale.change) == (4500, 500)

    # A fresh context mirrors a restart of the application.
    context = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(context, "p1").current_stock == 7
    assert core_logic.get_transaction(context, "T001") == sale

    core_logic.update_transaction(
        context,
        core_logic.UpdateCommand("T001", [core_logic.CartLine("p1", 5)], cash_received=7500),
    )
    context = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(context, "p1").current_stock == 5
    assert core_logic.get_transaction(context, "T001").change == 0

    core_logic.delete_transaction(context, "T001")
    context = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(context, "p1").current_stock == 10
    assert core_logic.list_transactions(context) == []

    follow_up = core_logic.create_transaction(
        context,
        core_logic.SaleCommand([core_logic.CartLine("p1", 1)], cash_received=1500),
    )
    assert follow_up.transaction_id == "T002"


def test_failed_save_keeps_workbook_and_memory_consistent(runtime_context, config_file, monkeypatch):
    """A save error must not leave stock reduced without the matching sale."""

    _register_sample_product(runtime_context)

    def refuse(workbook, destination):
        raise PermissionError("workbook is open in another program")

    monkeypatch.setattr(core_logic.data_manager, "save_workbook", refuse)

    with pytest.raises(StorageFailure):
        core_logic.create_transaction(
            runtime_context,
            core_logic.SaleCommand([core_logic.CartLine("p1", 2)], cash_received=3000),
        )

    assert core_logic.get_product(runtime_context, "p1").current_stock == 10
    assert core_logic.list_transactions(runtime_context) == []

    monkeypatch.undo()
    reloaded = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(reloaded, "p1").current_stock == 10
    assert core_logic.list_transactions(reloaded) == []


def test_two_registers_sharing_a_workbook_do_not_lose_sales(config_file):
    """A stale register re-reads the workbook and retries its sale."""

    first = core_logic.load_runtime_context(config_file)
    _register_sample_product(first)
    second = core_logic.load_runtime_context(config_file)

    core_logic.create_transaction(first, core_logic.SaleCommand([core_logic.CartLine("p1", 2)], 3000))
    _push_mtime_forward(first)
    late = core_logic.create_transaction(second, core_logic.SaleCommand([core_logic.CartLine("p1", 3)], 4500))

    assert late.transaction_id == "T002"
    final = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(final, "p1").current_stock == 5
    assert [t.transaction_id for t in core_logic.list_transactions(final)] == ["T001", "T002"]


def test_register_selling_mid_save_waits_and_keeps_both_sales(config_file, monkeypatch):
    """A sale attempted while another register is saving never overwrites it."""

    first = core_logic.load_runtime_context(config_file)
    _register_sample_product(first)
    second = core_logic.load_runtime_context(config_file)
    second.store.lock_timeout = 0.1
    real_save = core_logic.data_manager.save_workbook
    rival = []

    def save_after_rival_tries(workbook, destination):
        if workbook is first.store.workbook and not rival:
            with pytest.raises(StorageFailure):
                core_logic.create_transaction(second, core_logic.SaleCommand([core_logic.CartLine("p1", 3)], 4500))
            rival.append("waited")
        real_save(workbook, destination)

    monkeypatch.setattr(core_logic.data_manager, "save_workbook", save_after_rival_tries)
    core_logic.create_transaction(first, core_logic.SaleCommand([core_logic.CartLine("p1", 2)], 3000))
    monkeypatch.undo()

    late = core_logic.create_transaction(second, core_logic.SaleCommand([core_logic.CartLine("p1", 3)], 4500))

    assert rival == ["waited"]
    assert late.transaction_id == "T002"
    final = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(final, "p1").current_stock == 5
    assert [t.transaction_id for t in core_logic.list_transactions(final)] == ["T001", "T002"]


def test_dashboard_refreshes_on_change_notifications(config_file):
    """Listeners re-compute the dashboard when another register writes."""

    register = core_logic.load_runtime_context(config_file)
    _register_sample_product(register)
    display = core_logic.load_runtime_context(config_file)

    snapshots = []

    def recompute(collection: CollectionName) -> None:
        snapshots.append(metrics.build_dashboard(display.store).summary.sales_today)

    display.store.on_changed(CollectionName.TRANSACTIONS, recompute)

    core_logic.create_transaction(register, core_logic.SaleCommand([core_logic.CartLine("p1", 2)], 3000))
    _push_mtime_forward(register)

    assert core_logic.refresh_context(display) == [CollectionName.PRODUCTS, CollectionName.TRANSACTIONS]
    assert snapshots == [3000]


def test_deleted_product_keeps_history_and_drops_profit(runtime_context):
    """History survives catalog deletions; profit for the item becomes zero."""

    context = runtime_context
    _register_sample_product(context)
    core_logic.add_product(
        context,
        core_logic.ProductDraft("Buku", "ATK", 3000, 5000, current_stock=4),
        product_id="p2",
    )
    today = datetime.now() - timedelta(minutes=1)
    core_logic.create_transaction(
        context,
        core_logic.SaleCommand(
            [core_logic.CartLine("p1", 2), core_logic.CartLine("p2", 1)],
            cash_received=8000,
            timestamp=today,
        ),
    )

    before = metrics.build_dashboard(context.store, now=today)
    core_logic.delete_product(context, "p2")
    after = metrics.build_dashboard(context.store, now=today)

    assert before.summary.sales_today == after.summary.sales_today == 8000
    assert before.summary.profit_month == 3000
    assert after.summary.profit_month == 1000

    core_logic.delete_transaction(context, "T001")
    assert core_logic.get_product(context, "p1").current_stock == 10
