"""Data access layer for Kasir ERP.

This module provides the helpers that read from and write to the master
workbook, plus the record store that the business layer talks to. Business
logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: converting typed records to and from worksheet rows.
4. Record storage: versioned ``products``/``transactions`` collections and the
   ``settings`` record, with change notifications and atomic commits.
"""


from __future__ import annotations

import configparser
import contextlib
import os
import tempfile
import threading
import time
import zipfile
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_MINIMUM_STOCK, CollectionName, SheetName
from .errors import ConcurrentModificationError, StorageFailure


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
TRANSACTION_ITEMS_SHEET = SheetName.TRANSACTION_ITEMS.value
SETTINGS_SHEET = SheetName.SETTINGS.value
META_SHEET = SheetName.META.value

DEFAULT_MAX_COMMIT_RETRIES = 3
DEFAULT_LOCK_TIMEOUT = 10.0
STALE_LOCK_SECONDS = 120.0
_LOCK_POLL_SECONDS = 0.05

_VERSION_KEY = "version:{}"
_COUNTER_KEY = "counter:{}"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_minimum_stock: int = DEFAULT_MINIMUM_STOCK
    allow_negative_stock: bool = False
    max_commit_retries: int = DEFAULT_MAX_COMMIT_RETRIES


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category: str
    buy_price: int
    sell_price: int
    current_stock: int
    minimum_stock: Optional[int] = None

    def effective_minimum(self, default: int = DEFAULT_MINIMUM_STOCK) -> int:
        """Return the declared minimum stock or ``default`` when absent."""

        return self.minimum_stock if self.minimum_stock is not None else default


@dataclass(frozen=True)
class TransactionItemRow:
    """One line of a sale, holding a snapshot of the product name and price."""

    product_id: Optional[str]
    product_name: str
    price: int
    quantity: int
    subtotal: int


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a sale with its line items."""

    transaction_id: str
    items: Tuple[TransactionItemRow, ...]
    total: int
    cash_received: int
    change: int
    timestamp: datetime


@dataclass(frozen=True)
class ShopSettings:
    """Shop identity printed on receipts and report headers."""

    shop_name: str = "SMK GLOBIN"
    shop_address: str = "Jl. Cibeureum Tengah RT.06/01 Ds. Sinarsari"
    principal_name: str = "Saepullah, S.Kom."
    manager_name: str = "Sari Maya, S.Pd., Gr."


SETTINGS_FIELDS: Mapping[str, str] = {
    "ShopName": "shop_name",
    "ShopAddress": "shop_address",
    "PrincipalName": "principal_name",
    "ManagerName": "manager_name",
}


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Inventory]`` and ``[Transactions]``
    are optional and fall back to the package defaults. Relative ``DataFile``
    paths are expanded against ``base_path`` when provided, or against the
    current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If an optional numeric or boolean entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_minimum = parser.getint("Inventory", "DefaultMinimumStock", fallback=DEFAULT_MINIMUM_STOCK)
    allow_negative = parser.getboolean("Inventory", "AllowNegativeStock", fallback=False)
    max_retries = parser.getint("Transactions", "MaxCommitRetries", fallback=DEFAULT_MAX_COMMIT_RETRIES)
    if default_minimum < 0:
        raise ValueError("DefaultMinimumStock must be zero or positive")
    if max_retries < 1:
        raise ValueError("MaxCommitRetries must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_minimum_stock=default_minimum,
        allow_negative_stock=allow_negative,
        max_commit_retries=max_retries,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is written to a temporary file next to ``destination`` and
    moved over it in one step, so readers see either the old or the new file.
    Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=".tmp", dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(temp_name)
        os.replace(temp_name, dest)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(temp_name)
        raise


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The header row and fully empty rows are skipped.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream sales from the ``Transactions`` sheet joined with their items.

    Items are grouped by ``TransactionID`` and ordered by ``LineNumber``.
    Transactions keep the worksheet order.
    """

    items_by_transaction: Dict[str, List[Tuple[int, TransactionItemRow]]] = defaultdict(list)
    for raw in workbook[TRANSACTION_ITEMS_SHEET].iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            transaction_id, line_number, item = deserialize_transaction_item(raw)
            items_by_transaction[transaction_id].append((line_number, item))

    for raw in workbook[TRANSACTIONS_SHEET].iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            header = deserialize_transaction(raw)
            lines = sorted(items_by_transaction.get(header.transaction_id, []), key=lambda pair: pair[0])
            yield replace(header, items=tuple(item for _, item in lines))


def read_shop_settings(workbook: Workbook) -> ShopSettings:
    """Read the key/value ``Settings`` sheet, defaulting missing keys."""

    values: Dict[str, str] = {}
    for key, value in _iter_key_values(workbook, SETTINGS_SHEET):
        attribute = SETTINGS_FIELDS.get(key)
        if attribute is not None and value is not None:
            values[attribute] = str(value)
    return ShopSettings(**values)


def read_meta(workbook: Workbook) -> Dict[str, int]:
    """Read collection versions and id counters from the ``Meta`` sheet."""

    return {str(key): _to_int(value) for key, value in _iter_key_values(workbook, META_SHEET)}


def _iter_key_values(workbook: Workbook, sheet_name: str) -> Iterable[Tuple[Any, Any]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, max_col=2, values_only=True):
        if raw and raw[0] is not None:
            yield raw[0], raw[1] if len(raw) > 1 else None


def write_sheet(workbook: Workbook, sheet_name: str, rows: Sequence[Sequence[object]]) -> None:
    """Replace every data row of ``sheet_name`` while keeping its header row."""

    sheet = workbook[sheet_name]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for row_index, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.name,
        record.category,
        record.buy_price,
        record.sell_price,
        record.current_stock,
        record.minimum_stock,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction header into the ``Transactions`` column order."""

    return [
        record.transaction_id,
        record.timestamp.isoformat(),
        record.total,
        record.cash_received,
        record.change,
    ]


def serialize_transaction_items(record: TransactionRow) -> list[list[object]]:
    """Convert the items of a transaction into ``TransactionItems`` rows."""

    return [
        [record.transaction_id, line_number, item.product_id, item.product_name, item.price, item.quantity, item.subtotal]
        for line_number, item in enumerate(record.items, start=1)
    ]


def serialize_settings(settings: ShopSettings) -> list[list[object]]:
    """Convert shop settings into ``Settings`` key/value rows."""

    return [[key, getattr(settings, attribute)] for key, attribute in SETTINGS_FIELDS.items()]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric cells are normalized to ``int`` and id/name fields are coerced to
    ``str`` to avoid surprises caused by Excel interpreting numbers. A blank
    ``MinimumStock`` cell stays ``None`` so the configured default applies.
    """

    padded = list(raw_row) + [None] * (7 - len(raw_row))
    product_id, name, category, buy_raw, sell_raw, stock_raw, minimum_raw = padded[:7]
    return ProductRow(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        category=str(category) if category is not None else "",
        buy_price=_to_int(buy_raw),
        sell_price=_to_int(sell_raw),
        current_stock=_to_int(stock_raw),
        minimum_stock=_to_int(minimum_raw) if minimum_raw is not None else None,
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a ``Transactions`` row into a record without items."""

    transaction_id, timestamp_raw, total_raw, cash_raw, change_raw = list(raw_row)[:5]
    return TransactionRow(
        transaction_id=str(transaction_id),
        items=(),
        total=_to_int(total_raw),
        cash_received=_to_int(cash_raw),
        change=_to_int(change_raw),
        timestamp=_to_datetime(timestamp_raw),
    )


def deserialize_transaction_item(raw_row: Sequence[object]) -> Tuple[str, int, TransactionItemRow]:
    """Convert a ``TransactionItems`` row into ``(transaction_id, line, item)``."""

    (
        transaction_id,
        line_number,
        product_id,
        product_name,
        price_raw,
        quantity_raw,
        subtotal_raw,
    ) = list(raw_row)[:7]

    item = TransactionItemRow(
        product_id=str(product_id) if product_id not in (None, "") else None,
        product_name=str(product_name) if product_name is not None else "",
        price=_to_int(price_raw),
        quantity=_to_int(quantity_raw),
        subtotal=_to_int(subtotal_raw),
    )
    return str(transaction_id), _to_int(line_number), item


def _to_int(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    try:
        return int(Decimal(str(raw)))
    except InvalidOperation as exc:
        raise ValueError(f"Expected a whole number, found {raw!r}") from exc


def _to_datetime(raw: object) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------


ChangeListener = Callable[[CollectionName], None]

RECORD_COLLECTIONS: Tuple[CollectionName, ...] = (CollectionName.PRODUCTS, CollectionName.TRANSACTIONS)


@dataclass(frozen=True)
class StoreState:
    """Consistent snapshot of everything a record store holds."""

    products: Tuple[ProductRow, ...] = ()
    transactions: Tuple[TransactionRow, ...] = ()
    settings: ShopSettings = field(default_factory=ShopSettings)
    versions: Mapping[CollectionName, int] = field(default_factory=dict)
    counters: Mapping[str, int] = field(default_factory=dict)

    def version(self, collection: CollectionName) -> int:
        return self.versions.get(CollectionName(collection), 0)

    def counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def records(self, collection: CollectionName) -> Tuple[Any, ...]:
        collection = CollectionName(collection)
        if collection is CollectionName.PRODUCTS:
            return self.products
        if collection is CollectionName.TRANSACTIONS:
            return self.transactions
        raise KeyError(f"Not a record collection: {collection.value}")


class RecordStore:
    """Versioned store for the ``products``/``transactions`` collections.

    The base class keeps the state in memory. Subclasses persist it by
    overriding :meth:`_persist` and pick up writes made by other processes by
    overriding :meth:`_sync`. Every write goes through :meth:`commit`, which
    serializes writers with a lock, rejects stale writes when the caller passes
    the versions it read, and only swaps in the new state once persistence has
    succeeded. Listeners registered with :meth:`on_changed` are told which
    collections changed after each successful write.
    """

    def __init__(self, state: Optional[StoreState] = None):
        self._lock = threading.RLock()
        self._state = state if state is not None else StoreState()
        self._listeners: Dict[CollectionName, List[ChangeListener]] = defaultdict(list)

    def snapshot(self) -> StoreState:
        """Return the current state; it is immutable and safe to hold on to."""

        with self._lock:
            return self._state

    def get_all(self, collection: CollectionName) -> list:
        """Return a copy of every record in ``collection``."""

        return list(self.snapshot().records(collection))

    def get_settings(self) -> ShopSettings:
        return self.snapshot().settings

    def version(self, collection: CollectionName) -> int:
        return self.snapshot().version(collection)

    def counter(self, name: str) -> int:
        return self.snapshot().counter(name)

    def set_all(self, collection: CollectionName, records: Sequence[Any], *, expected_version: Optional[int] = None) -> None:
        """Replace the whole ``collection`` with ``records``."""

        expected = None if expected_version is None else {CollectionName(collection): expected_version}
        self.commit({CollectionName(collection): records}, expected_versions=expected)

    def set_settings(self, settings: ShopSettings) -> None:
        self.commit({CollectionName.SETTINGS: settings})

    def commit(
        self,
        changes: Mapping[CollectionName, Any],
        *,
        counters: Optional[Mapping[str, int]] = None,
        expected_versions: Optional[Mapping[CollectionName, int]] = None,
    ) -> StoreState:
        """Write several collections as one unit.

        Args:
            changes: Replacement content keyed by collection. Record
                collections take a sequence of records, ``settings`` takes a
                :class:`ShopSettings`.
            counters: Counter values persisted in the same write.
            expected_versions: Versions the caller based its changes on.

        Returns:
            StoreState: The committed state.

        Raises:
            ConcurrentModificationError: If a collection moved past the
                expected version.
            StorageFailure: If persisting fails; the previous state is kept.
        """

        changed = [CollectionName(name) for name in changes]
        with self._lock, self._exclusive():
            external = self._sync()
            current = self._state
            for name, expected in (expected_versions or {}).items():
                actual = current.version(name)
                if actual != expected:
                    log.warning(
                        "Rejected stale write to '%s' (expected version %s, found %s)",
                        CollectionName(name).value,
                        expected,
                        actual,
                    )
                    raise ConcurrentModificationError(CollectionName(name).value, expected, actual)

            staged = _stage_state(current, changes, counters)
            try:
                self._persist(staged)
            except StorageFailure:
                raise
            except OSError as exc:
                log.error("Failed to persist %s: %s", ", ".join(name.value for name in changed), exc)
                raise StorageFailure(f"Unable to persist changes: {exc}") from exc
            self._state = staged

        log.debug(
            "Committed %s (versions %s)",
            ", ".join(name.value for name in changed),
            {name.value: staged.version(name) for name in changed},
        )
        self._notify([*external, *(name for name in changed if name not in external)])
        return staged

    def refresh(self) -> List[CollectionName]:
        """Pick up writes made by other processes and notify listeners."""

        with self._lock:
            changed = self._sync()
        self._notify(changed)
        return changed

    def on_changed(self, collection: CollectionName, callback: ChangeListener) -> Callable[[], None]:
        """Register ``callback`` for writes to ``collection``.

        Returns:
            Callable[[], None]: Function that removes the registration.
        """

        collection = CollectionName(collection)
        with self._lock:
            self._listeners[collection].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners[collection]:
                    self._listeners[collection].remove(callback)

        return unsubscribe

    def _notify(self, collections: Iterable[CollectionName]) -> None:
        for collection in collections:
            with self._lock:
                listeners = list(self._listeners.get(collection, ()))
            for listener in listeners:
                try:
                    listener(collection)
                except Exception:  # listeners must not undo a committed write
                    log.exception("Change listener failed for '%s'", collection.value)

    def _exclusive(self) -> contextlib.AbstractContextManager:
        """Guard held from the sync check until the write lands."""

        return contextlib.nullcontext()

    def _persist(self, state: StoreState) -> None:
        """Write ``state`` to the backing medium; the base class keeps memory only."""

    def _sync(self) -> List[CollectionName]:
        """Reload state written by other processes; return the changed collections."""

        return []


class MemoryRecordStore(RecordStore):
    """Record store living only in process memory."""

    def __init__(
        self,
        *,
        products: Sequence[ProductRow] = (),
        transactions: Sequence[TransactionRow] = (),
        settings: Optional[ShopSettings] = None,
    ):
        super().__init__(
            StoreState(
                products=tuple(products),
                transactions=tuple(transactions),
                settings=settings if settings is not None else ShopSettings(),
            )
        )


class WorkbookRecordStore(RecordStore):
    """Record store persisted to the master workbook.

    Each commit rewrites the sheets and saves the file once. Writers take an
    exclusive ``<workbook>.lock`` file next to the workbook for the whole
    check-and-write, so two processes cannot interleave a commit. The file
    signature (inode, modification time and size) is remembered after every
    load and save; when it moves, another process wrote the workbook and the
    state is reloaded before the next commit or on :meth:`refresh`.
    """

    def __init__(
        self,
        data_file: Path,
        workbook: Optional[Workbook] = None,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.data_file = Path(data_file).expanduser().resolve()
        self.lock_file = self.data_file.with_name(self.data_file.name + ".lock")
        self.lock_timeout = lock_timeout
        self.workbook = workbook if workbook is not None else open_workbook(self.data_file)
        self._loaded_signature = self._file_signature()
        super().__init__(load_state(self.workbook))
        log.info("Opened record store on workbook '%s'", self.data_file)

    @contextlib.contextmanager
    def _exclusive(self) -> Iterator[None]:
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                self._clear_stale_lock()
                if time.monotonic() >= deadline:
                    log.error("Workbook '%s' is locked by another writer", self.data_file)
                    raise StorageFailure(f"Workbook is locked by another writer: {self.lock_file}") from None
                time.sleep(_LOCK_POLL_SECONDS)
            except OSError as exc:
                raise StorageFailure(f"Unable to lock workbook: {exc}") from exc

        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.close(fd)
            yield
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.lock_file)

    def _clear_stale_lock(self) -> None:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return
        if age > STALE_LOCK_SECONDS:
            log.warning("Removing stale lock '%s' (%.0f seconds old)", self.lock_file, age)
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.lock_file)

    def _persist(self, state: StoreState) -> None:
        try:
            write_state(self.workbook, state)
            save_workbook(self.workbook, self.data_file)
        except (OSError, ValueError, IllegalCharacterError) as exc:
            # keep the in-memory sheets in line with the state that survives
            write_state(self.workbook, self._state)
            log.error("Failed to save workbook '%s': %s", self.data_file, exc)
            raise StorageFailure(f"Unable to persist changes: {exc}") from exc
        self._loaded_signature = self._file_signature()
        log.info("Persisted workbook '%s'", self.data_file)

    def _sync(self) -> List[CollectionName]:
        signature = self._file_signature()
        if signature is None or signature == self._loaded_signature:
            return []

        try:
            workbook = open_workbook(self.data_file)
            state = load_state(workbook)
        except (OSError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            log.error("Unable to reload workbook '%s': %s", self.data_file, exc)
            raise StorageFailure(f"Unable to reload workbook: {exc}") from exc
        changed = [
            name
            for name in CollectionName
            if state.version(name) != self._state.version(name)
        ]
        self.workbook = workbook
        self._state = state
        self._loaded_signature = signature
        log.info(
            "Reloaded workbook '%s' after external change (%s)",
            self.data_file,
            ", ".join(name.value for name in changed) or "no collection changes",
        )
        return changed

    def _file_signature(self) -> Optional[Tuple[int, int, int]]:
        try:
            stat = self.data_file.stat()
        except FileNotFoundError:
            return None
        return stat.st_ino, stat.st_mtime_ns, stat.st_size


def _stage_state(
    current: StoreState,
    changes: Mapping[CollectionName, Any],
    counters: Optional[Mapping[str, int]],
) -> StoreState:
    updates: Dict[str, Any] = {}
    versions = dict(current.versions)
    for name, content in changes.items():
        name = CollectionName(name)
        if name is CollectionName.SETTINGS:
            if not isinstance(content, ShopSettings):
                raise TypeError("settings must be a ShopSettings instance")
            updates["settings"] = content
        else:
            updates[name.value] = tuple(content)
        versions[name] = current.version(name) + 1

    merged_counters = dict(current.counters)
    merged_counters.update(counters or {})
    return replace(current, versions=versions, counters=merged_counters, **updates)


def load_state(workbook: Workbook) -> StoreState:
    """Build a :class:`StoreState` from every sheet of ``workbook``."""

    meta = read_meta(workbook)
    versions = {name: meta.get(_VERSION_KEY.format(name.value), 0) for name in CollectionName}
    prefix = _COUNTER_KEY.format("")
    counters = {key[len(prefix):]: value for key, value in meta.items() if key.startswith(prefix)}
    return StoreState(
        products=tuple(iter_products(workbook)),
        transactions=tuple(iter_transactions(workbook)),
        settings=read_shop_settings(workbook),
        versions=versions,
        counters=counters,
    )


def write_state(workbook: Workbook, state: StoreState) -> None:
    """Write every collection of ``state`` into ``workbook`` (not saved)."""

    write_sheet(workbook, PRODUCTS_SHEET, [serialize_product(record) for record in state.products])
    write_sheet(workbook, TRANSACTIONS_SHEET, [serialize_transaction(record) for record in state.transactions])
    write_sheet(
        workbook,
        TRANSACTION_ITEMS_SHEET,
        [row for record in state.transactions for row in serialize_transaction_items(record)],
    )
    write_sheet(workbook, SETTINGS_SHEET, serialize_settings(state.settings))
    meta_rows: List[List[object]] = [
        [_VERSION_KEY.format(name.value), state.version(name)] for name in CollectionName
    ]
    meta_rows.extend([_COUNTER_KEY.format(name), value] for name, value in sorted(state.counters.items()))
    write_sheet(workbook, META_SHEET, meta_rows)
