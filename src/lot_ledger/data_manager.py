"""Data access layer for the lot ledger.

This module provides low-level helpers that read from and write to the
tabular store. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: opening the configured workbook or spreadsheet.
3. Table operations: decoding rows into structured records and appending or
   updating individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import requests
from openpyxl.utils import get_column_letter

from . import log
from .constants import EXPECTED_SCHEMA_VERSION, SHEET_COLUMNS, Backend, SheetName
from .store import DEFAULT_TIMEOUT, SheetsStore, TabularStore, WorkbookStore, format_range


CONFIG_FILE_NAME = "config.ini"
LOTS_SHEET = SheetName.LOTS.value
SALES_SHEET = SheetName.SALES.value
INVENTORY_SHEET = SheetName.INVENTORY.value
CONFIG_SHEET = SheetName.CONFIG.value
# Piece counts above 10**18 are treated as corrupt cells.
MAX_INT_EXPONENT = 18


class RowFormatError(ValueError):
    """Raised when a stored row does not match its table layout."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    backend: Backend
    data_file: Optional[Path]
    business_name: str
    schema_version: str
    timezone: Optional[str] = None
    spreadsheet_id: Optional[str] = None
    request_timeout: float = DEFAULT_TIMEOUT


@dataclass(frozen=True)
class LotRow:
    """In-memory view of a row from the ``Lots`` table."""

    lot_id: str
    supplier_name: str
    supplier_mobile: str
    pieces: int
    price_per_piece: Decimal
    total_price: Decimal
    image_url: str
    entry_date: str
    status: str
    remaining_pieces: int


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` table."""

    sale_id: str
    lot_id: str
    pieces: int
    price_per_piece: Decimal
    total_price: Decimal
    customer_name: str
    customer_mobile: str
    image_url: str
    sale_date: str
    profit: Decimal


@dataclass(frozen=True)
class InventoryRow:
    """In-memory view of a row from the ``Inventory`` rollup table."""

    lot_id: str
    total_pieces: int
    sold_pieces: int
    remaining_pieces: int
    last_update_date: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
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

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section selects the backend. The workbook backend needs a
    ``DataFile`` entry, resolved against ``base_path`` when relative; the
    sheets backend needs ``[Sheets] SpreadsheetId`` and accepts an optional
    ``RequestTimeout`` in seconds.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` entries.
            Defaults to :func:`Path.cwd`.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing, or the backend
            name is unknown.
        ValueError: If ``RequestTimeout`` is not a positive number.
    """

    try:
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        backend_raw = parser.get("System", "Backend", fallback=Backend.WORKBOOK.value)
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        backend = Backend(backend_raw.strip().lower())
    except ValueError as exc:
        raise KeyError(f"Unknown backend in configuration: {backend_raw}") from exc

    timezone = parser.get("System", "Timezone", fallback="").strip() or None

    data_file_path: Optional[Path] = None
    spreadsheet_id: Optional[str] = None
    request_timeout = DEFAULT_TIMEOUT

    try:
        if backend is Backend.WORKBOOK:
            data_file_path = Path(parser.get("System", "DataFile"))
            if not data_file_path.is_absolute():
                if base_path is None:
                    base_path = Path.cwd()
                data_file_path = (base_path / data_file_path).resolve()
        else:
            spreadsheet_id = parser.get("Sheets", "SpreadsheetId").strip()
            request_timeout = parser.getfloat("Sheets", "RequestTimeout", fallback=DEFAULT_TIMEOUT)
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    if request_timeout <= 0:
        raise ValueError("RequestTimeout must be greater than zero")

    return ConfigSettings(
        backend=backend,
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        timezone=timezone,
        spreadsheet_id=spreadsheet_id,
        request_timeout=request_timeout,
    )


def default_settings(data_file: Path, *, business_name: str = "Lot Ledger") -> ConfigSettings:
    """Settings for a workbook store at ``data_file`` without a config file."""

    return ConfigSettings(
        backend=Backend.WORKBOOK,
        data_file=data_file,
        business_name=business_name,
        schema_version=EXPECTED_SCHEMA_VERSION,
    )


def open_store(
    settings: ConfigSettings,
    *,
    credential: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> TabularStore:
    """Open the tabular store selected by ``settings``.

    Args:
        settings (ConfigSettings): Parsed configuration.
        credential (str | None): Bearer credential from the identity provider,
            forwarded unchanged to the sheets backend.
        session (requests.Session | None): Optional HTTP session to reuse.

    Returns:
        TabularStore: A :class:`WorkbookStore` or :class:`SheetsStore`.

    Raises:
        FileNotFoundError: If the configured workbook does not exist.
        StoreError: If the sheets backend lacks an id or a credential.
    """

    if settings.backend is Backend.WORKBOOK:
        return WorkbookStore.open(settings.data_file)
    return SheetsStore(
        settings.spreadsheet_id or "",
        credential or "",
        timeout=settings.request_timeout,
        session=session,
    )


def column_letter(sheet_name: str, column_name: str) -> str:
    """Return the A1 column letter of ``column_name`` in ``sheet_name``.

    Raises:
        KeyError: If the column is not part of the table layout.
    """

    columns = list(SHEET_COLUMNS[sheet_name])
    if column_name not in columns:
        raise KeyError(f"Unknown column: {sheet_name}.{column_name}")
    return get_column_letter(columns.index(column_name) + 1)


def _data_range(sheet_name: str) -> str:
    width = len(SHEET_COLUMNS[sheet_name])
    return f"A2:{get_column_letter(width)}"


def _iter_raw(store: TabularStore, sheet_name: str) -> Iterable[List[str]]:
    for raw in store.read_range(sheet_name, _data_range(sheet_name)):
        # skip fully empty rows
        if any(cell.strip() for cell in raw):
            yield raw


def iter_lots(store: TabularStore) -> Iterable[LotRow]:
    """Iterate over lot records stored in the ``Lots`` table.

    Header and fully empty rows are skipped. Each remaining row is decoded by
    :func:`deserialize_lot`.

    Args:
        store (TabularStore): Store containing the ``Lots`` table.

    Yields:
        LotRow: One structured row per meaningful record.
    """

    for raw in _iter_raw(store, LOTS_SHEET):
        yield deserialize_lot(raw)


def iter_sales(store: TabularStore) -> Iterable[SaleRow]:
    """Iterate over the ``Sales`` table and yield typed records."""

    for raw in _iter_raw(store, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_inventory(store: TabularStore) -> Iterable[InventoryRow]:
    """Iterate over the ``Inventory`` rollup table and yield typed records."""

    for raw in _iter_raw(store, INVENTORY_SHEET):
        yield deserialize_inventory(raw)


def append_lot(store: TabularStore, record: LotRow) -> int:
    """Append a lot record to the ``Lots`` table.

    Returns:
        int: 1-based row index that received the record.
    """

    return store.append_row(LOTS_SHEET, serialize_lot(record))


def append_sale(store: TabularStore, record: SaleRow) -> int:
    """Append a sale record to the ``Sales`` table."""

    return store.append_row(SALES_SHEET, serialize_sale(record))


def append_inventory(store: TabularStore, record: InventoryRow) -> int:
    """Append a rollup record to the ``Inventory`` table."""

    return store.append_row(INVENTORY_SHEET, serialize_inventory(record))


def locate_row(store: TabularStore, sheet_name: str, key_value: str) -> Optional[int]:
    """Find a row by matching the key stored in the first column.

    Every ledger table keeps its key (``LotID``, ``SaleID``, ``SettingName``)
    in column ``A``. The header row is never matched.

    Args:
        store (TabularStore): Store providing access to ``sheet_name``.
        sheet_name (str): Name of the table to search.
        key_value (str): Value to match within column ``A``.

    Returns:
        int | None: 1-based row index of the first match, otherwise ``None``.
    """

    keys = store.read_range(sheet_name, "A:A")
    for row_idx, row in enumerate(keys, start=1):
        if row_idx == 1:
            continue
        if row and row[0] == key_value:
            return row_idx
    return None


def update_lot_stock(store: TabularStore, lot_id: str, *, remaining_pieces: int, status: str) -> None:
    """Rewrite the ``Status`` and ``RemainingPieces`` cells of a lot.

    These are the only lot columns that change after creation.

    Raises:
        KeyError: If the lot cannot be found.
    """

    row_index = locate_row(store, LOTS_SHEET, lot_id)
    if row_index is None:
        raise KeyError(f"Lot not found: {lot_id}")

    start = column_letter(LOTS_SHEET, "Status")
    end = column_letter(LOTS_SHEET, "RemainingPieces")
    store.write_range(
        LOTS_SHEET,
        f"{start}{row_index}:{end}{row_index}",
        [[status, str(remaining_pieces)]],
    )


def update_inventory(store: TabularStore, record: InventoryRow) -> None:
    """Overwrite the rollup row for ``record.lot_id``.

    Raises:
        KeyError: If no rollup row exists for the lot.
    """

    row_index = locate_row(store, INVENTORY_SHEET, record.lot_id)
    if row_index is None:
        raise KeyError(f"Inventory entry not found: {record.lot_id}")
    width = len(SHEET_COLUMNS[INVENTORY_SHEET])
    store.write_range(
        INVENTORY_SHEET,
        format_range(1, row_index, width, row_index),
        [serialize_inventory(record)],
    )


def read_config_values(store: TabularStore) -> Dict[str, str]:
    """Return the ``Config`` table as a ``SettingName -> Value`` mapping."""

    values: Dict[str, str] = {}
    for row in store.read_range(CONFIG_SHEET, "A2:B"):
        if row and row[0]:
            values.setdefault(row[0], row[1] if len(row) > 1 else "")
    return values


def write_config_value(store: TabularStore, key: str, value: str) -> None:
    """Set ``key`` in the ``Config`` table, appending the row when missing."""

    row_index = locate_row(store, CONFIG_SHEET, key)
    if row_index is None:
        store.append_row(CONFIG_SHEET, [key, value])
        return
    store.write_range(CONFIG_SHEET, f"B{row_index}", [[value]])


def serialize_lot(record: LotRow) -> list[str]:
    """Convert a lot dataclass into the ``Lots`` column ordering."""

    return [
        record.lot_id,
        record.supplier_name,
        record.supplier_mobile,
        str(record.pieces),
        str(record.price_per_piece),
        str(record.total_price),
        record.image_url,
        record.entry_date,
        record.status,
        str(record.remaining_pieces),
    ]


def serialize_sale(record: SaleRow) -> list[str]:
    """Convert a sale dataclass into the ``Sales`` column ordering."""

    return [
        record.sale_id,
        record.lot_id,
        str(record.pieces),
        str(record.price_per_piece),
        str(record.total_price),
        record.customer_name,
        record.customer_mobile,
        record.image_url,
        record.sale_date,
        str(record.profit),
    ]


def serialize_inventory(record: InventoryRow) -> list[str]:
    """Convert a rollup dataclass into the ``Inventory`` column ordering."""

    return [
        record.lot_id,
        str(record.total_pieces),
        str(record.sold_pieces),
        str(record.remaining_pieces),
        record.last_update_date,
    ]


def _padded(raw_row: Sequence[object], sheet_name: str) -> List[str]:
    """Validate the row width and pad trimmed trailing cells with ``""``."""

    width = len(SHEET_COLUMNS[sheet_name])
    if len(raw_row) > width:
        raise RowFormatError(
            f"{sheet_name} row has {len(raw_row)} columns, expected at most {width}: {list(raw_row)!r}"
        )
    cells = ["" if value is None else str(value).strip() for value in raw_row]
    return cells + [""] * (width - len(cells))


def parse_int(raw: str, *, field: str = "value") -> int:
    """Parse an integer cell, falling back to ``0`` when unparseable.

    Values such as ``"12.0"`` that spreadsheets produce for whole numbers are
    accepted. Blank cells silently become ``0``; anything else unparseable is
    logged before defaulting.
    """

    if raw == "":
        return 0
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        number = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        log.warning("Unparseable %s %r; defaulting to 0", field, raw)
        return 0
    if (
        not number.is_finite()
        or number.adjusted() > MAX_INT_EXPONENT
        or number != number.to_integral_value()
    ):
        log.warning("Unparseable %s %r; defaulting to 0", field, raw)
        return 0
    return int(number)


def parse_decimal(raw: str, *, field: str = "value") -> Decimal:
    """Parse a decimal cell, falling back to ``Decimal("0")`` when unparseable."""

    if raw == "":
        return Decimal("0")
    try:
        number = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        log.warning("Unparseable %s %r; defaulting to 0", field, raw)
        return Decimal("0")
    if not number.is_finite():
        log.warning("Unparseable %s %r; defaulting to 0", field, raw)
        return Decimal("0")
    return number


def deserialize_lot(raw_row: Sequence[object]) -> LotRow:
    """Convert a raw ``Lots`` row into a strongly typed lot record.

    The decoder is strict about shape and tolerant about content: a row wider
    than the table raises :class:`RowFormatError`, while numeric cells that
    cannot be parsed default to zero so one damaged row does not break a
    listing. A blank status reads as ``Active``.

    Args:
        raw_row (Sequence[object]): Cell values in table order; trailing blank
            cells may be missing.

    Returns:
        LotRow: Dataclass with consistent Python types.

    Raises:
        RowFormatError: If the row has more cells than the ``Lots`` layout.
    """

    (
        lot_id,
        supplier_name,
        supplier_mobile,
        pieces_raw,
        price_raw,
        total_raw,
        image_url,
        entry_date,
        status,
        remaining_raw,
    ) = _padded(raw_row, LOTS_SHEET)

    return LotRow(
        lot_id=lot_id,
        supplier_name=supplier_name,
        supplier_mobile=supplier_mobile,
        pieces=parse_int(pieces_raw, field="Lots.Pieces"),
        price_per_piece=parse_decimal(price_raw, field="Lots.PricePerPiece"),
        total_price=parse_decimal(total_raw, field="Lots.TotalPrice"),
        image_url=image_url,
        entry_date=entry_date,
        status=status or "Active",
        remaining_pieces=parse_int(remaining_raw, field="Lots.RemainingPieces"),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a strongly typed sale record.

    Follows the same strict-shape, tolerant-number policy as
    :func:`deserialize_lot`.

    Raises:
        RowFormatError: If the row has more cells than the ``Sales`` layout.
    """

    (
        sale_id,
        lot_id,
        pieces_raw,
        price_raw,
        total_raw,
        customer_name,
        customer_mobile,
        image_url,
        sale_date,
        profit_raw,
    ) = _padded(raw_row, SALES_SHEET)

    return SaleRow(
        sale_id=sale_id,
        lot_id=lot_id,
        pieces=parse_int(pieces_raw, field="Sales.Pieces"),
        price_per_piece=parse_decimal(price_raw, field="Sales.PricePerPiece"),
        total_price=parse_decimal(total_raw, field="Sales.TotalPrice"),
        customer_name=customer_name,
        customer_mobile=customer_mobile,
        image_url=image_url,
        sale_date=sale_date,
        profit=parse_decimal(profit_raw, field="Sales.Profit"),
    )


def deserialize_inventory(raw_row: Sequence[object]) -> InventoryRow:
    """Convert a raw ``Inventory`` row into a rollup record."""

    lot_id, total_raw, sold_raw, remaining_raw, last_update = _padded(raw_row, INVENTORY_SHEET)
    return InventoryRow(
        lot_id=lot_id,
        total_pieces=parse_int(total_raw, field="Inventory.TotalPieces"),
        sold_pieces=parse_int(sold_raw, field="Inventory.SoldPieces"),
        remaining_pieces=parse_int(remaining_raw, field="Inventory.RemainingPieces"),
        last_update_date=last_update,
    )
