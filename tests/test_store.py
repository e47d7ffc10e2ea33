"""Unit tests for the tabular store adapters."""

from __future__ import annotations

from unittest.mock import Mock

import openpyxl
import pytest
import requests

from lot_ledger import store as store_module
from lot_ledger.store import (
    CellRange,
    RangeError,
    SheetsStore,
    StoreError,
    TransientStoreError,
    WorkbookStore,
    format_range,
    parse_range,
    trim_rows,
)


# ---------------------------------------------------------------------------
# Range helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "spec, expected",
    [
        ("A2:J", CellRange(1, 2, 10, None)),
        ("A:A", CellRange(1, None, 1, None)),
        ("C5:E5", CellRange(3, 5, 5, 5)),
        ("B3", CellRange(2, 3, 2, 3)),
        ("i7:j7", CellRange(9, 7, 10, 7)),
    ],
)
def test_parse_range_accepts_supported_forms(spec, expected):
    """parse_range should understand open, closed, and single-cell ranges."""

    assert parse_range(spec) == expected


@pytest.mark.parametrize("spec", ["", "2:3", "C1:A1", "A5:B2", "A0", "Lots!A1"])
def test_parse_range_rejects_malformed_specs(spec):
    """parse_range should reject malformed or inverted ranges."""

    with pytest.raises(RangeError):
        parse_range(spec)


def test_format_range_builds_cell_and_span_addresses():
    """format_range should produce single cells and bounded or open spans."""

    assert format_range(2, 3) == "B3"
    assert format_range(1, 1, 5, 1) == "A1:E1"
    assert format_range(1, 2, 10) == "A2:J"


def test_trim_rows_drops_trailing_blank_cells_and_rows():
    """trim_rows should mimic the trimming done by the Sheets API."""

    rows = [["a", None, ""], [None, None], ["", 3, None], [None]]
    assert trim_rows(rows) == [["a"], [], ["", "3"]]


# ---------------------------------------------------------------------------
# WorkbookStore
# ---------------------------------------------------------------------------


@pytest.fixture
def blank_store() -> WorkbookStore:
    workbook = openpyxl.Workbook()
    workbook.active.title = "Items"
    return WorkbookStore(workbook)


def test_workbook_store_reads_nothing_from_empty_table(blank_store):
    """An empty table should read as an empty list of rows."""

    assert blank_store.read_range("Items", "A1:C") == []


def test_workbook_store_append_row_writes_after_last_key(blank_store):
    """append_row should target the first row after column A's extent."""

    blank_store.write_range("Items", "A1:B1", [["Key", "Value"]])
    assert blank_store.append_row("Items", ["k1", "v1"]) == 2
    assert blank_store.append_row("Items", ["k2"]) == 3
    assert blank_store.read_range("Items", "A1:B") == [["Key", "Value"], ["k1", "v1"], ["k2"]]


def test_workbook_store_write_range_targets_absolute_cells(blank_store):
    """write_range should overwrite only the addressed cells."""

    blank_store.write_range("Items", "A1:E1", [["a", "b", "c", "d", "e"]])
    blank_store.write_range("Items", "C1:D1", [["x", "y"]])
    assert blank_store.read_range("Items", "A1:E1") == [["a", "b", "x", "y", "e"]]


def test_workbook_store_unknown_table_raises(blank_store):
    """Operations against a missing table should raise StoreError."""

    with pytest.raises(StoreError):
        blank_store.read_range("Missing", "A:A")


def test_workbook_store_create_table_rejects_duplicates(blank_store):
    """create_table should add new tables but refuse existing names."""

    blank_store.create_table("Other")
    assert blank_store.table_names() == ["Items", "Other"]
    with pytest.raises(StoreError):
        blank_store.create_table("Other")


def test_workbook_store_save_and_open_round_trip(tmp_path):
    """Saved workbooks should reopen with the written values."""

    workbook = openpyxl.Workbook()
    workbook.active.title = "Items"
    path = tmp_path / "nested" / "ledger.xlsx"
    store = WorkbookStore(workbook, path)
    store.write_range("Items", "A1", [["hello"]])
    store.save()

    reopened = WorkbookStore.open(path)
    assert reopened.read_range("Items", "A1") == [["hello"]]


def test_workbook_store_open_missing_file_raises(tmp_path):
    """Opening a missing workbook should raise FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        WorkbookStore.open(tmp_path / "missing.xlsx")


def test_workbook_store_reload_discards_unsaved_writes(tmp_path):
    """reload should return the on-disk state."""

    workbook = openpyxl.Workbook()
    workbook.active.title = "Items"
    path = tmp_path / "ledger.xlsx"
    store = WorkbookStore(workbook, path)
    store.write_range("Items", "A1", [["saved"]])
    store.save()
    store.write_range("Items", "A1", [["unsaved"]])

    assert store.reload().read_range("Items", "A1") == [["saved"]]


# ---------------------------------------------------------------------------
# SheetsStore
# ---------------------------------------------------------------------------


def _response(payload=None, *, status_error=None):
    response = Mock(name="response")
    response.json.return_value = {} if payload is None else payload
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


@pytest.fixture
def session():
    return Mock(name="session")


@pytest.fixture
def sheets(session):
    return SheetsStore("sheet-123", "token-abc", timeout=5.0, session=session)


def test_sheets_store_requires_spreadsheet_id_and_credential(session):
    """The sheets backend cannot be constructed without its identifiers."""

    with pytest.raises(StoreError):
        SheetsStore("", "token", session=session)
    with pytest.raises(StoreError):
        SheetsStore("sheet", "", session=session)


def test_sheets_store_read_range_sends_bearer_request(sheets, session):
    """read_range should GET the values endpoint with the bearer credential."""

    session.request.return_value = _response({"values": [["LOT-001", "Karim", ""]]})

    rows = sheets.read_range("Lots", "A2:J")

    assert rows == [["LOT-001", "Karim"]]
    session.request.assert_called_once_with(
        "GET",
        f"{store_module.SHEETS_API_ENDPOINT}/sheet-123/values/Lots!A2:J",
        headers={"Authorization": "Bearer token-abc"},
        params=None,
        json=None,
        timeout=5.0,
    )


def test_sheets_store_read_range_without_values_returns_empty(sheets, session):
    """A range with no data comes back without a ``values`` key."""

    session.request.return_value = _response({"range": "Lots!A2:J"})
    assert sheets.read_range("Lots", "A2:J") == []


def test_sheets_store_write_range_puts_raw_values(sheets, session):
    """write_range should PUT the rows with RAW value input."""

    session.request.return_value = _response({})

    sheets.write_range("Lots", "I4:J4", [["Sold Out", "0"]])

    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert method == "PUT"
    assert url.endswith("/values/Lots!I4:J4")
    assert kwargs["params"] == {"valueInputOption": "RAW"}
    assert kwargs["json"] == {"values": [["Sold Out", "0"]]}


def test_sheets_store_append_row_counts_column_a(sheets, session):
    """append_row should write just past the rows found in column A."""

    session.request.side_effect = [
        _response({"values": [["SettingName"], ["LastLotID"]]}),
        _response({}),
    ]

    assert sheets.append_row("Config", ["LastSaleID", "SALE-000"]) == 3
    put_call = session.request.call_args_list[1]
    assert put_call.args[1].endswith("/values/Config!A3:B3")
    assert put_call.kwargs["json"] == {"values": [["LastSaleID", "SALE-000"]]}


def test_sheets_store_table_names_reads_sheet_titles(sheets, session):
    """table_names should list the titles from the spreadsheet metadata."""

    session.request.return_value = _response(
        {"sheets": [{"properties": {"title": "Lots"}}, {"properties": {"title": "Config"}}]}
    )
    assert sheets.table_names() == ["Lots", "Config"]
    assert session.request.call_args.kwargs["params"] == {"fields": "sheets.properties.title"}


def test_sheets_store_create_table_posts_add_sheet(sheets, session):
    """create_table should issue an addSheet batch update."""

    session.request.return_value = _response({})
    sheets.create_table("Inventory")
    method, url = session.request.call_args.args
    assert method == "POST"
    assert url.endswith("/sheet-123:batchUpdate")
    assert session.request.call_args.kwargs["json"] == {
        "requests": [{"addSheet": {"properties": {"title": "Inventory"}}}]
    }


def test_sheets_store_http_error_becomes_transient(sheets, session):
    """HTTP failures should surface as TransientStoreError with the status."""

    error = requests.HTTPError("forbidden", response=Mock(status_code=403))
    session.request.return_value = _response(status_error=error)

    with pytest.raises(TransientStoreError) as excinfo:
        sheets.read_range("Lots", "A:A")
    assert excinfo.value.status == 403


def test_sheets_store_network_error_becomes_transient(sheets, session):
    """Connection problems and timeouts should surface as TransientStoreError."""

    session.request.side_effect = requests.Timeout("slow")

    with pytest.raises(TransientStoreError) as excinfo:
        sheets.read_range("Lots", "A:A")
    assert excinfo.value.status is None


def test_sheets_store_malformed_payload_becomes_transient(sheets, session):
    """Non-JSON or unexpected payloads should surface as TransientStoreError."""

    response = _response()
    response.json.side_effect = ValueError("not json")
    session.request.return_value = response
    with pytest.raises(TransientStoreError):
        sheets.read_range("Lots", "A:A")

    session.request.side_effect = None
    session.request.return_value = _response({"values": "nope"})
    with pytest.raises(TransientStoreError):
        sheets.read_range("Lots", "A:A")


@pytest.mark.parametrize(
    "payload",
    [
        {"sheets": [{"title": "Lots"}]},
        {"sheets": ["Lots"]},
        {"sheets": [{"properties": {"title": 7}}]},
    ],
)
def test_sheets_store_malformed_sheet_entries_become_transient(sheets, session, payload):
    """Sheet entries without a string title should not leak KeyError or TypeError."""

    session.request.return_value = _response(payload)
    with pytest.raises(TransientStoreError):
        sheets.table_names()


def test_sheets_store_malformed_value_rows_become_transient(sheets, session):
    """Every row in a values payload must be a list."""

    session.request.return_value = _response({"values": [["LOT-001"], None]})
    with pytest.raises(TransientStoreError):
        sheets.read_range("Lots", "A2:J")


def test_sheets_store_uses_requests_session_by_default(monkeypatch):
    """Without an injected session the store should go through requests.Session."""

    request = Mock(return_value=_response({"values": [["LotID"]]}))
    monkeypatch.setattr(requests.Session, "request", request)

    store = SheetsStore("sheet-123", "token-abc")

    assert store.read_range("Lots", "A1:A1") == [["LotID"]]
    assert request.call_args.kwargs["timeout"] == store_module.DEFAULT_TIMEOUT
