"""Shared pytest fixtures and utilities for Kasir ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from kasir_erp import cli, constants, core_logic, data_manager  # noqa: E402
from kasir_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Inventory]\n"
    "DefaultMinimumStock = {default_minimum_stock}\n"
    "AllowNegativeStock = {allow_negative_stock}\n\n"
    "[Transactions]\n"
    "MaxCommitRetries = 3\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


def make_product(
    product_id: str = "p1",
    *,
    name: str = "Pulpen",
    category: str = "ATK",
    buy_price: int = 1000,
    sell_price: int = 1500,
    current_stock: int = 10,
    minimum_stock: int | None = 5,
) -> data_manager.ProductRow:
    """Build a product row with sensible defaults."""

    return data_manager.ProductRow(
        product_id=product_id,
        name=name,
        category=category,
        buy_price=buy_price,
        sell_price=sell_price,
        current_stock=current_stock,
        minimum_stock=minimum_stock,
    )


def make_transaction(
    transaction_id: str,
    timestamp: datetime,
    *items: tuple[str | None, int, int],
    cash_received: int | None = None,
    names: dict[str, str] | None = None,
) -> data_manager.TransactionRow:
    """Build a transaction from ``(product_id, price, quantity)`` triples."""

    rows = tuple(
        data_manager.TransactionItemRow(
            product_id=product_id,
            product_name=(names or {}).get(product_id or "", product_id or "Deleted item"),
            price=price,
            quantity=quantity,
            subtotal=price * quantity,
        )
        for product_id, price, quantity in items
    )
    total = sum(row.subtotal for row in rows)
    cash = total if cash_received is None else cash_received
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        items=rows,
        total=total,
        cash_received=cash,
        change=cash - total,
        timestamp=timestamp,
    )


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        shop_name: str = "Test Shop",
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            shop_settings=data_manager.ShopSettings(shop_name=shop_name),
            overwrite=True,
        )
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_minimum_stock: int = constants.DEFAULT_MINIMUM_STOCK,
        allow_negative_stock: bool = False,
        create_workbook: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        if create_workbook:
            workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", shop_name=shop_name)
        else:
            workbook_path = bundle_dir / "master_workbook.xlsx"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                default_minimum_stock=default_minimum_stock,
                allow_negative_stock=str(allow_negative_stock).lower(),
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="kasir-cli", description="Kasir CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        shop_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def memory_store() -> data_manager.MemoryRecordStore:
    """Return an in-memory store holding the product from the sale scenarios."""

    return data_manager.MemoryRecordStore(products=[make_product()])


@pytest.fixture
def context(settings: data_manager.ConfigSettings, memory_store: data_manager.MemoryRecordStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and an in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=memory_store)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
