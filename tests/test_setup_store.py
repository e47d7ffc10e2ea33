"""Tests for the store bootstrap and workbook setup script."""

from __future__ import annotations

from unittest.mock import Mock

import openpyxl
import pytest

from lot_ledger import setup_store
from lot_ledger.constants import SHEET_COLUMNS
from lot_ledger.store import WorkbookStore


def test_create_master_workbook_builds_tables(tmp_path):
    """The workbook gets every table with a bold header and seeded counters."""

    path = setup_store.create_master_workbook(tmp_path / "ledger.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert workbook.sheetnames == list(SHEET_COLUMNS)
    for sheet_name, columns in SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[sheet_name][1]]
        assert header == list(columns)
        assert workbook[sheet_name]["A1"].font.bold
    config_rows = list(workbook["Config"].iter_rows(min_row=2, values_only=True))
    assert config_rows == [("LastLotID", "LOT-000"), ("LastSaleID", "SALE-000")]


def test_create_master_workbook_refuses_overwrite(tmp_path):
    """An existing workbook is kept unless overwrite is requested."""

    path = setup_store.create_master_workbook(tmp_path / "ledger.xlsx")
    with pytest.raises(FileExistsError):
        setup_store.create_master_workbook(path)
    setup_store.create_master_workbook(path, overwrite=True)


def test_ensure_store_layout_repairs_partial_store():
    """Missing tables, headers, and counters are added; existing rows stay."""

    workbook = openpyxl.Workbook()
    workbook.active.title = "Lots"
    workbook["Lots"].append(list(SHEET_COLUMNS["Lots"]))
    workbook["Lots"].append(["LOT-001", "Karim"])
    store = WorkbookStore(workbook)

    created = setup_store.ensure_store_layout(store)

    assert created == ["Sales", "Inventory", "Config"]
    assert store.read_range("Lots", "A2:B") == [["LOT-001", "Karim"]]
    assert store.read_range("Sales", "A1:B1") == [["SaleID", "LotID"]]
    assert setup_store.ensure_store_layout(store) == []
    assert store.read_range("Config", "A2:B") == [["LastLotID", "LOT-000"], ["LastSaleID", "SALE-000"]]


def test_ensure_store_layout_uses_any_store():
    """Bootstrap only goes through the store contract."""

    store = Mock()
    store.table_names.return_value = []
    store.read_range.return_value = []

    created = setup_store.ensure_store_layout(store)

    assert created == list(SHEET_COLUMNS)
    assert store.create_table.call_count == len(SHEET_COLUMNS)
    assert store.append_row.call_count == 2


def test_main_creates_workbook_from_config(config_factory, capsys):
    """The setup script builds the workbook named in config.ini."""

    bundle = config_factory(create_workbook=False)

    assert setup_store.main(["--config", str(bundle.config_path)]) == 0
    assert bundle.workbook_path.exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    assert setup_store.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out
