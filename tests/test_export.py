"""Tests for CSV export of ledger tables."""

from __future__ import annotations

import csv
import io
from dataclasses import replace
from decimal import Decimal

from lot_ledger import export
from lot_ledger.constants import SHEET_COLUMNS
from lot_ledger.data_manager import InventoryRow, LotRow, SaleRow


def _lot(supplier_name: str) -> LotRow:
    return LotRow(
        lot_id="LOT-001",
        supplier_name=supplier_name,
        supplier_mobile="01711000000",
        pieces=10,
        price_per_piece=Decimal("12.50"),
        total_price=Decimal("125.00"),
        image_url="",
        entry_date="2024-05-01T09:30:00+00:00",
        status="Active",
        remaining_pieces=10,
    )


def test_export_lots_quotes_commas_and_quotes():
    """Fields containing commas or quotes survive a CSV round trip intact."""

    buffer = io.StringIO()
    count = export.export_lots([_lot('Karim, "Best" Traders')], buffer)

    rows = list(csv.reader(io.StringIO(buffer.getvalue())))
    assert count == 1
    assert rows[0] == list(SHEET_COLUMNS["Lots"])
    assert rows[1][1] == 'Karim, "Best" Traders'
    assert rows[1][4] == "12.50"


def test_export_sales_strips_formula_prefixes():
    """Customer names cannot smuggle spreadsheet formulas into the export."""

    sale = SaleRow(
        sale_id="SALE-001",
        lot_id="LOT-001",
        pieces=2,
        price_per_piece=Decimal("20"),
        total_price=Decimal("40"),
        customer_name="=HYPERLINK(\"x\")",
        customer_mobile="",
        image_url="",
        sale_date="2024-05-02T10:00:00+00:00",
        profit=Decimal("15"),
    )
    buffer = io.StringIO()
    export.export_sales([sale], buffer)

    rows = list(csv.reader(io.StringIO(buffer.getvalue())))
    assert rows[1][5] == 'HYPERLINK("x")'
    assert rows[1][9] == "15"


def test_export_strips_formulas_from_mobile_and_image_fields():
    """Phone and image columns are sanitized while real phone numbers keep their plus sign."""

    lot = replace(_lot("Karim Traders"), supplier_mobile="+880 1711-000000", image_url="=IMPORTXML(\"u\")")
    sale = SaleRow(
        sale_id="SALE-001",
        lot_id="LOT-001",
        pieces=1,
        price_per_piece=Decimal("20"),
        total_price=Decimal("20"),
        customer_name="Nadia",
        customer_mobile="=HYPERLINK(\"x\")",
        image_url="@evil",
        sale_date="2024-05-02T10:00:00+00:00",
        profit=Decimal("7.5"),
    )

    lots_buffer, sales_buffer = io.StringIO(), io.StringIO()
    export.export_lots([lot], lots_buffer)
    export.export_sales([sale], sales_buffer)

    lot_row = list(csv.reader(io.StringIO(lots_buffer.getvalue())))[1]
    sale_row = list(csv.reader(io.StringIO(sales_buffer.getvalue())))[1]
    assert lot_row[2] == "+880 1711-000000"
    assert lot_row[6] == 'IMPORTXML("u")'
    assert sale_row[6] == 'HYPERLINK("x")'
    assert sale_row[7] == "evil"


def test_sanitize_phone_keeps_plain_numbers():
    """Digit-only and plus-prefixed numbers pass through; formulas do not."""

    assert export.sanitize_phone("01811000000") == "01811000000"
    assert export.sanitize_phone("+8801811000000") == "+8801811000000"
    assert export.sanitize_phone("") == ""
    assert export.sanitize_phone("+SUM(A1)") == "SUM(A1)"


def test_sanitize_text_leaves_plain_values_alone():
    """Ordinary names and blanks pass through unchanged."""

    assert export.sanitize_text("Nadia Boutique") == "Nadia Boutique"
    assert export.sanitize_text(None) == ""
    assert export.sanitize_text("+-@Rahim") == "Rahim"


def test_export_inventory_to_path(tmp_path):
    """Exports to a path create parent folders and write UTF-8."""

    destination = tmp_path / "out" / "inventory.csv"
    rows = [
        InventoryRow("LOT-001", 10, 4, 6, "2024-05-02"),
        InventoryRow("LOT-002", 5, 0, 5, "2024-05-03"),
    ]

    assert export.export_inventory(rows, destination) == 2
    lines = destination.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "LotID,TotalPieces,SoldPieces,RemainingPieces,LastUpdateDate"
    assert lines[1] == "LOT-001,10,4,6,2024-05-02"


def test_export_empty_table_writes_header_only():
    """An empty listing still produces the header row."""

    buffer = io.StringIO()
    assert export.export_lots([], buffer) == 0
    assert buffer.getvalue().strip() == ",".join(SHEET_COLUMNS["Lots"])
