"""CSV export of ledger tables.

Each export writes the table's header row followed by one row per record, in
the same column order the store uses. Values go through :mod:`csv`, so
commas, quotes, and newlines inside a field are quoted instead of breaking
the row. Free-text fields (names, phone numbers and image references) are
stripped of leading characters that spreadsheet programs would evaluate as
formulas.
"""

from __future__ import annotations

import csv
import re
from pathlib import Path
from typing import Callable, Iterable, List, Sequence, TextIO, TypeVar, Union

from . import data_manager, log
from .constants import SHEET_COLUMNS, SheetName


FORMULA_PREFIXES = frozenset({"=", "+", "-", "@", "\t", "\r"})
PHONE_PATTERN = re.compile(r"\+?[0-9][0-9 ()-]*")

Destination = Union[Path, str, TextIO]
RecordT = TypeVar("RecordT")


def sanitize_text(value: str | None, field_name: str = "unknown") -> str:
    """Strip leading formula-trigger characters from a free-text field.

    A warning is logged whenever something is removed, since it usually means
    a pasted formula or an injection attempt.
    """

    if not value:
        return ""

    text = str(value).strip()
    original = text
    while text and text[0] in FORMULA_PREFIXES:
        text = text[1:]

    if text != original:
        log.warning(
            "Stripped formula prefix from field '%s' (original=%r)",
            field_name,
            original[:100],
        )
    return text


def sanitize_phone(value: str | None, field_name: str = "unknown") -> str:
    """Like :func:`sanitize_text`, but keep an international ``+`` prefix."""

    text = str(value or "").strip()
    if PHONE_PATTERN.fullmatch(text):
        return text
    return sanitize_text(text, field_name)


def _lot_cells(record: data_manager.LotRow) -> List[str]:
    cells = data_manager.serialize_lot(record)
    cells[1] = sanitize_text(record.supplier_name, "SupplierName")
    cells[2] = sanitize_phone(record.supplier_mobile, "SupplierMobile")
    cells[6] = sanitize_text(record.image_url, "ImageURL")
    return cells


def _sale_cells(record: data_manager.SaleRow) -> List[str]:
    cells = data_manager.serialize_sale(record)
    cells[5] = sanitize_text(record.customer_name, "CustomerName")
    cells[6] = sanitize_phone(record.customer_mobile, "CustomerMobile")
    cells[7] = sanitize_text(record.image_url, "ImageURL")
    return cells


def _write(
    records: Iterable[RecordT],
    header: Sequence[str],
    to_cells: Callable[[RecordT], List[str]],
    destination: Destination,
) -> int:
    if isinstance(destination, (str, Path)):
        path = Path(destination).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as handle:
            count = _write(records, header, to_cells, handle)
        log.info("Exported %d row(s) to '%s'", count, path)
        return count

    writer = csv.writer(destination)
    writer.writerow(header)
    count = 0
    for record in records:
        writer.writerow(to_cells(record))
        count += 1
    return count


def export_lots(lots: Iterable[data_manager.LotRow], destination: Destination) -> int:
    """Write lots as CSV; returns the number of data rows written."""

    return _write(lots, SHEET_COLUMNS[SheetName.LOTS.value], _lot_cells, destination)


def export_sales(sales: Iterable[data_manager.SaleRow], destination: Destination) -> int:
    """Write sales as CSV; returns the number of data rows written."""

    return _write(sales, SHEET_COLUMNS[SheetName.SALES.value], _sale_cells, destination)


def export_inventory(rows: Iterable[data_manager.InventoryRow], destination: Destination) -> int:
    """Write inventory rollup rows as CSV; returns the number of data rows written."""

    return _write(
        rows,
        SHEET_COLUMNS[SheetName.INVENTORY.value],
        data_manager.serialize_inventory,
        destination,
    )
