"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
import os
from datetime import UTC, datetime
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

import kasir_erp
from kasir_erp import constants, data_manager  # noqa: E402
from kasir_erp.constants import CollectionName
from kasir_erp.errors import ConcurrentModificationError, StorageFailure

from conftest import make_product, make_transaction


def _push_mtime_forward(path: Path) -> None:
    """Move the file modification time so another store notices the write."""

    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))


def test_package_logger_is_configured_on_import():
    handler_types = {type(handler).__name__ for handler in kasir_erp.log.handlers}

    assert kasir_erp.log.name == "kasir_erp"
    assert "StreamHandler" in handler_types
    assert "logger" in kasir_erp.__doc__


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "nested" / "deeper"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "ShopName") == "Test Shop"
    assert parser.getint("Inventory", "DefaultMinimumStock") == constants.DEFAULT_MINIMUM_STOCK


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.shop_name == "Test Shop"


def test_parse_settings_applies_defaults_for_optional_sections(tmp_path):
    """Only the [System] section is mandatory."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nShopName = Koperasi\nSchemaVersion = 1.0.0\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.default_minimum_stock == constants.DEFAULT_MINIMUM_STOCK
    assert settings.allow_negative_stock is False
    assert settings.max_commit_retries == data_manager.DEFAULT_MAX_COMMIT_RETRIES


def test_parse_settings_reads_inventory_overrides(config_factory):
    parser = data_manager.read_config(
        config_factory(default_minimum_stock=3, allow_negative_stock=True).config_path
    )
    settings = data_manager.parse_settings(parser)
    assert settings.default_minimum_stock == 3
    assert settings.allow_negative_stock is True


def test_parse_settings_rejects_invalid_retry_count(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nShopName = Koperasi\nSchemaVersion = 1.0.0\n"
        "[Transactions]\nMaxCommitRetries = 0\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook and sheet helpers
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_iter_products_reads_rows_and_blank_minimum(master_workbook_path):
    """Blank MinimumStock cells should stay None and numbers become ints."""

    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[constants.SheetName.PRODUCTS.value]
    sheet.append(["p1", "Pulpen", "ATK", 1000, 1500, 10, 5])
    sheet.append(["p2", "Buku", "ATK", "3000", "4500", "7"])
    data_manager.save_workbook(workbook, master_workbook_path)

    products = list(data_manager.iter_products(data_manager.open_workbook(master_workbook_path)))

    assert products == [
        make_product("p1", name="Pulpen"),
        make_product("p2", name="Buku", buy_price=3000, sell_price=4500, current_stock=7, minimum_stock=None),
    ]


def test_iter_transactions_joins_items_in_line_order(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    workbook[constants.SheetName.TRANSACTIONS.value].append(
        ["T001", "2024-05-01T10:00:00+00:00", 6000, 10000, 4000]
    )
    items = workbook[constants.SheetName.TRANSACTION_ITEMS.value]
    items.append(["T001", 2, None, "Deleted", 1500, 1, 1500])
    items.append(["T001", 1, "p1", "Pulpen", 1500, 3, 4500])
    data_manager.save_workbook(workbook, master_workbook_path)

    (transaction,) = data_manager.iter_transactions(data_manager.open_workbook(master_workbook_path))

    assert transaction.transaction_id == "T001"
    assert transaction.timestamp == datetime(2024, 5, 1, 10, tzinfo=UTC)
    assert [item.product_id for item in transaction.items] == ["p1", None]
    assert transaction.change == 4000


def test_write_sheet_replaces_existing_rows(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.write_sheet(workbook, data_manager.META_SHEET, [["a", 1], ["b", 2], ["c", 3]])
    data_manager.write_sheet(workbook, data_manager.META_SHEET, [["d", 4]])

    assert data_manager.read_meta(workbook) == {"d": 4}


def test_read_shop_settings_defaults_missing_keys(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.write_sheet(workbook, data_manager.SETTINGS_SHEET, [["ShopName", "Koperasi"]])

    settings = data_manager.read_shop_settings(workbook)

    assert settings.shop_name == "Koperasi"
    assert settings.manager_name == data_manager.ShopSettings().manager_name


def test_deserialize_transaction_item_rejects_non_numeric_price():
    with pytest.raises(ValueError):
        data_manager.deserialize_transaction_item(["T001", 1, "p1", "Pulpen", "lots", 1, 1500])


# ---------------------------------------------------------------------------
# In-memory record store
# ---------------------------------------------------------------------------


def test_set_all_bumps_collection_version():
    store = data_manager.MemoryRecordStore(products=[make_product()])
    assert store.version(CollectionName.PRODUCTS) == 0

    store.set_all(CollectionName.PRODUCTS, [make_product(current_stock=3)])

    assert store.version(CollectionName.PRODUCTS) == 1
    assert store.version(CollectionName.TRANSACTIONS) == 0
    assert store.get_all(CollectionName.PRODUCTS)[0].current_stock == 3


def test_get_all_returns_independent_list():
    store = data_manager.MemoryRecordStore(products=[make_product()])
    records = store.get_all(CollectionName.PRODUCTS)
    records.clear()
    assert len(store.get_all(CollectionName.PRODUCTS)) == 1


def test_stale_expected_version_is_rejected_without_writing():
    store = data_manager.MemoryRecordStore(products=[make_product()])
    store.set_all(CollectionName.PRODUCTS, [make_product(current_stock=9)])

    with pytest.raises(ConcurrentModificationError) as excinfo:
        store.set_all(CollectionName.PRODUCTS, [make_product(current_stock=1)], expected_version=0)

    assert excinfo.value.expected == 0
    assert excinfo.value.actual == 1
    assert store.get_all(CollectionName.PRODUCTS)[0].current_stock == 9


def test_commit_writes_collections_and_counters_together():
    store = data_manager.MemoryRecordStore(products=[make_product()])
    transaction = make_transaction("T001", datetime(2024, 5, 1, tzinfo=UTC), ("p1", 1500, 1))

    state = store.commit(
        {
            CollectionName.PRODUCTS: [make_product(current_stock=9)],
            CollectionName.TRANSACTIONS: [transaction],
        },
        counters={"transactions": 1},
        expected_versions={CollectionName.PRODUCTS: 0, CollectionName.TRANSACTIONS: 0},
    )

    assert state is store.snapshot()
    assert state.transactions == (transaction,)
    assert state.counter("transactions") == 1
    assert state.version(CollectionName.PRODUCTS) == 1
    assert state.version(CollectionName.TRANSACTIONS) == 1


def test_commit_failure_keeps_previous_state(monkeypatch):
    store = data_manager.MemoryRecordStore(products=[make_product()])
    events = []
    store.on_changed(CollectionName.PRODUCTS, events.append)

    def broken_persist(state):
        raise PermissionError("workbook is open in another program")

    monkeypatch.setattr(store, "_persist", broken_persist)

    with pytest.raises(StorageFailure):
        store.set_all(CollectionName.PRODUCTS, [])

    assert store.get_all(CollectionName.PRODUCTS) == [make_product()]
    assert store.version(CollectionName.PRODUCTS) == 0
    assert events == []


def test_on_changed_notifies_once_per_changed_collection():
    store = data_manager.MemoryRecordStore()
    events = []
    store.on_changed(CollectionName.PRODUCTS, events.append)
    store.on_changed(CollectionName.TRANSACTIONS, events.append)
    store.on_changed(CollectionName.SETTINGS, events.append)

    store.commit({CollectionName.PRODUCTS: [], CollectionName.TRANSACTIONS: []})

    assert events == [CollectionName.PRODUCTS, CollectionName.TRANSACTIONS]


def test_on_changed_unsubscribe_stops_notifications():
    store = data_manager.MemoryRecordStore()
    events = []
    unsubscribe = store.on_changed(CollectionName.SETTINGS, events.append)

    store.set_settings(data_manager.ShopSettings(shop_name="Satu"))
    unsubscribe()
    store.set_settings(data_manager.ShopSettings(shop_name="Dua"))

    assert events == [CollectionName.SETTINGS]
    assert store.get_settings().shop_name == "Dua"


def test_failing_listener_does_not_undo_the_write(caplog):
    store = data_manager.MemoryRecordStore()

    def explode(collection):
        raise RuntimeError("listener bug")

    store.on_changed(CollectionName.PRODUCTS, explode)
    store.set_all(CollectionName.PRODUCTS, [make_product()])

    assert store.get_all(CollectionName.PRODUCTS) == [make_product()]
    assert "Change listener failed" in caplog.text


def test_set_settings_requires_shop_settings_instance():
    store = data_manager.MemoryRecordStore()
    with pytest.raises(TypeError):
        store.commit({CollectionName.SETTINGS: {"shop_name": "x"}})


# ---------------------------------------------------------------------------
# Workbook record store
# ---------------------------------------------------------------------------


def test_workbook_store_persists_commits(master_workbook_path):
    store = data_manager.WorkbookRecordStore(master_workbook_path)
    transaction = make_transaction(
        "T001",
        datetime(2024, 5, 1, 9, 30, tzinfo=UTC),
        ("p1", 1500, 2),
        (None, 2000, 1),
        cash_received=5000,
    )
    store.commit(
        {
            CollectionName.PRODUCTS: [make_product(current_stock=8), make_product("p2", minimum_stock=None)],
            CollectionName.TRANSACTIONS: [transaction],
        },
        counters={"transactions": 1},
    )

    reloaded = data_manager.WorkbookRecordStore(master_workbook_path).snapshot()

    assert reloaded.products == (make_product(current_stock=8), make_product("p2", minimum_stock=None))
    assert reloaded.transactions == (transaction,)
    assert reloaded.counter("transactions") == 1
    assert reloaded.version(CollectionName.PRODUCTS) == 1
    assert reloaded.version(CollectionName.TRANSACTIONS) == 1
    assert reloaded.settings.shop_name == "Test Shop"


def test_workbook_store_meta_sheet_holds_versions_and_counters(master_workbook_path):
    store = data_manager.WorkbookRecordStore(master_workbook_path)
    store.commit({CollectionName.PRODUCTS: [make_product()]}, counters={"transactions": 4})

    meta = data_manager.read_meta(openpyxl.load_workbook(master_workbook_path))

    assert meta["version:products"] == 1
    assert meta["counter:transactions"] == 4


def test_workbook_store_refresh_picks_up_external_writes(master_workbook_path):
    reader = data_manager.WorkbookRecordStore(master_workbook_path)
    writer = data_manager.WorkbookRecordStore(master_workbook_path)
    events = []
    reader.on_changed(CollectionName.PRODUCTS, events.append)

    writer.set_all(CollectionName.PRODUCTS, [make_product()])
    _push_mtime_forward(master_workbook_path)

    changed = reader.refresh()

    assert changed == [CollectionName.PRODUCTS]
    assert events == [CollectionName.PRODUCTS]
    assert reader.get_all(CollectionName.PRODUCTS) == [make_product()]


def test_workbook_store_rejects_commit_based_on_stale_read(master_workbook_path):
    first = data_manager.WorkbookRecordStore(master_workbook_path)
    second = data_manager.WorkbookRecordStore(master_workbook_path)
    stale_version = second.version(CollectionName.PRODUCTS)

    first.set_all(CollectionName.PRODUCTS, [make_product()])
    _push_mtime_forward(master_workbook_path)

    with pytest.raises(ConcurrentModificationError):
        second.set_all(CollectionName.PRODUCTS, [make_product("p9")], expected_version=stale_version)

    assert data_manager.WorkbookRecordStore(master_workbook_path).get_all(CollectionName.PRODUCTS) == [make_product()]


def test_workbook_store_save_failure_raises_storage_failure(master_workbook_path, monkeypatch):
    store = data_manager.WorkbookRecordStore(master_workbook_path)
    store.set_all(CollectionName.PRODUCTS, [make_product()])

    def refuse(workbook, destination):
        raise PermissionError("locked")

    monkeypatch.setattr(data_manager, "save_workbook", refuse)

    with pytest.raises(StorageFailure):
        store.set_all(CollectionName.PRODUCTS, [])

    assert store.get_all(CollectionName.PRODUCTS) == [make_product()]
    assert list(data_manager.iter_products(store.workbook)) == [make_product()]


def test_interrupted_save_leaves_previous_workbook_on_disk(master_workbook_path, monkeypatch):
    store = data_manager.WorkbookRecordStore(master_workbook_path)
    store.set_all(CollectionName.PRODUCTS, [make_product()])

    def write_half_then_fail(self, filename):
        Path(filename).write_bytes(b"PK\x03\x04partial")
        raise OSError("No space left on device")

    monkeypatch.setattr(OpenpyxlWorkbook, "save", write_half_then_fail)

    with pytest.raises(StorageFailure):
        store.set_all(CollectionName.PRODUCTS, [])

    monkeypatch.undo()
    assert store.get_all(CollectionName.PRODUCTS) == [make_product()]
    assert data_manager.WorkbookRecordStore(master_workbook_path).get_all(CollectionName.PRODUCTS) == [make_product()]
    assert list(master_workbook_path.parent.glob(".*.tmp")) == []
    assert not store.lock_file.exists()

    store.set_all(CollectionName.PRODUCTS, [])
    assert data_manager.WorkbookRecordStore(master_workbook_path).get_all(CollectionName.PRODUCTS) == []


def test_save_workbook_replaces_target_in_one_step(master_workbook_path):
    workbook = openpyxl.load_workbook(master_workbook_path)
    inode_before = master_workbook_path.stat().st_ino
    data_manager.write_sheet(workbook, data_manager.PRODUCTS_SHEET, [data_manager.serialize_product(make_product())])

    data_manager.save_workbook(workbook, master_workbook_path)

    assert master_workbook_path.stat().st_ino != inode_before
    assert list(data_manager.iter_products(openpyxl.load_workbook(master_workbook_path))) == [make_product()]


def test_unreadable_workbook_on_reload_raises_storage_failure(master_workbook_path):
    store = data_manager.WorkbookRecordStore(master_workbook_path)
    store.set_all(CollectionName.PRODUCTS, [make_product()])

    master_workbook_path.write_bytes(b"not a workbook")
    _push_mtime_forward(master_workbook_path)

    with pytest.raises(StorageFailure):
        store.refresh()
    assert store.get_all(CollectionName.PRODUCTS) == [make_product()]


def test_writer_is_blocked_while_another_commit_holds_the_lock(master_workbook_path, monkeypatch):
    first = data_manager.WorkbookRecordStore(master_workbook_path)
    second = data_manager.WorkbookRecordStore(master_workbook_path, lock_timeout=0.1)
    real_save = data_manager.save_workbook
    rival_attempts = []

    def save_while_rival_writes(workbook, destination):
        if workbook is first.workbook and not rival_attempts:
            with pytest.raises(StorageFailure, match="locked"):
                second.set_all(CollectionName.PRODUCTS, [make_product("p9")], expected_version=0)
            rival_attempts.append("blocked")
        real_save(workbook, destination)

    monkeypatch.setattr(data_manager, "save_workbook", save_while_rival_writes)

    first.set_all(CollectionName.PRODUCTS, [make_product()], expected_version=0)

    assert rival_attempts == ["blocked"]
    assert not first.lock_file.exists()
    with pytest.raises(ConcurrentModificationError):
        second.set_all(CollectionName.PRODUCTS, [make_product("p9")], expected_version=0)
    assert data_manager.WorkbookRecordStore(master_workbook_path).get_all(CollectionName.PRODUCTS) == [make_product()]


def test_stale_lock_file_is_cleared(master_workbook_path):
    store = data_manager.WorkbookRecordStore(master_workbook_path, lock_timeout=0.1)
    store.lock_file.write_text("12345")
    old = store.lock_file.stat().st_mtime - data_manager.STALE_LOCK_SECONDS - 10
    os.utime(store.lock_file, (old, old))

    store.set_all(CollectionName.PRODUCTS, [make_product()])

    assert not store.lock_file.exists()
    assert store.get_all(CollectionName.PRODUCTS) == [make_product()]


def test_text_the_workbook_cannot_hold_raises_storage_failure(master_workbook_path):
    store = data_manager.WorkbookRecordStore(master_workbook_path)
    store.set_all(CollectionName.PRODUCTS, [make_product()])

    with pytest.raises(StorageFailure):
        store.set_all(CollectionName.PRODUCTS, [make_product(), make_product("p2", name="Pul\x01pen")])

    assert store.get_all(CollectionName.PRODUCTS) == [make_product()]
    assert list(data_manager.iter_products(store.workbook)) == [make_product()]
    assert data_manager.WorkbookRecordStore(master_workbook_path).get_all(CollectionName.PRODUCTS) == [make_product()]
