"""Utility for initializing the Kasir ERP master workbook.

The module doubles as a script (``python -m kasir_erp.setup_excel``) and as a
library used by the CLI ``init`` command and by tests, so the workbook
bootstrap logic stays identical regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import SheetName

# Column layout of every sheet managed by the record store.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ProductName",
        "Category",
        "BuyPrice",
        "SellPrice",
        "CurrentStock",
        "MinimumStock",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "Timestamp",
        "Total",
        "CashReceived",
        "Change",
    ],
    SheetName.TRANSACTION_ITEMS.value: [
        "TransactionID",
        "LineNumber",
        "ProductID",
        "ProductName",
        "Price",
        "Quantity",
        "Subtotal",
    ],
    SheetName.SETTINGS.value: ["Key", "Value"],
    SheetName.META.value: ["Key", "Value"],
}

CONFIG_FILE = "config.ini"


def create_master_workbook(
    destination: Path,
    *,
    shop_settings: Optional[data_manager.ShopSettings] = None,
    overwrite: bool = False,
) -> Path:
    """Create the Kasir ERP master workbook at ``destination``.

    The workbook receives bold headers on every sheet, the shop identity on
    the ``Settings`` sheet and zeroed collection versions on the ``Meta``
    sheet. When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    settings = shop_settings if shop_settings is not None else data_manager.ShopSettings()
    data_manager.write_state(workbook, data_manager.StoreState(settings=settings))

    data_manager.save_workbook(workbook, destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini`` using its shop name."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(
        settings.data_file,
        shop_settings=data_manager.ShopSettings(shop_name=settings.shop_name),
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize Kasir ERP data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Kasir ERP Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
