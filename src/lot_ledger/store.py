"""Tabular store adapters for the lot ledger.

The ledger persists everything in a spreadsheet. This module hides the
concrete spreadsheet behind a small row-oriented contract:

1. ``read_range``: return the rows of a table inside an A1-style range.
2. ``write_range``: overwrite cells starting at an absolute address.
3. ``append_row``: write one row just past the current extent of a table.
4. ``create_table``: add a named, empty table.

Two adapters implement the contract. :class:`WorkbookStore` keeps a local
``.xlsx`` workbook open through ``openpyxl`` and buffers writes until
:meth:`WorkbookStore.save` is called. :class:`SheetsStore` talks to the
Google Sheets v4 REST API and writes through on every call.

Both adapters exchange rows as lists of strings and trim them the way the
Sheets API does: trailing blank cells and trailing blank rows are dropped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence
from urllib.parse import quote

import openpyxl
import requests
from openpyxl.utils import column_index_from_string, get_column_letter
from openpyxl.workbook import Workbook

from . import log


SHEETS_API_ENDPOINT = "https://sheets.googleapis.com/v4/spreadsheets"
DEFAULT_TIMEOUT = 15.0

_RANGE_RE = re.compile(
    r"^(?P<min_col>[A-Za-z]{1,3})(?P<min_row>\d+)?"
    r"(?::(?P<max_col>[A-Za-z]{1,3})(?P<max_row>\d+)?)?$"
)


class StoreError(Exception):
    """Raised when the tabular store rejects an operation."""


class TransientStoreError(StoreError):
    """Raised when a remote store call fails (network, auth, quota, payload)."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RangeError(ValueError):
    """Raised when an A1 range specification cannot be parsed."""


@dataclass(frozen=True)
class CellRange:
    """1-based cell boundaries. ``None`` rows or columns are open-ended."""

    min_col: int
    min_row: Optional[int]
    max_col: int
    max_row: Optional[int]


class TabularStore(Protocol):
    """Contract consumed by the data layer."""

    def table_names(self) -> List[str]:
        ...

    def read_range(self, table_name: str, range_spec: str) -> List[List[str]]:
        ...

    def write_range(self, table_name: str, range_spec: str, rows: Sequence[Sequence[str]]) -> None:
        ...

    def append_row(self, table_name: str, row: Sequence[str]) -> int:
        ...

    def create_table(self, table_name: str) -> None:
        ...

    def save(self) -> None:
        ...


def parse_range(range_spec: str) -> CellRange:
    """Parse an A1 range such as ``A2:J``, ``A:A``, ``C5:E5`` or ``B3``.

    A single cell expands to a one-cell range. A missing row number on either
    side leaves that side open, matching the Sheets API semantics.

    Raises:
        RangeError: If the specification is malformed or inverted.
    """

    match = _RANGE_RE.match(range_spec.strip())
    if not match:
        raise RangeError(f"Invalid range: {range_spec!r}")

    min_col = column_index_from_string(match.group("min_col").upper())
    min_row = int(match.group("min_row")) if match.group("min_row") else None
    if match.group("max_col") is None:
        max_col, max_row = min_col, min_row
    else:
        max_col = column_index_from_string(match.group("max_col").upper())
        max_row = int(match.group("max_row")) if match.group("max_row") else None

    if max_col < min_col:
        raise RangeError(f"Invalid range: {range_spec!r}")
    if min_row is not None and max_row is not None and max_row < min_row:
        raise RangeError(f"Invalid range: {range_spec!r}")
    if min_row is not None and min_row < 1:
        raise RangeError(f"Invalid range: {range_spec!r}")
    return CellRange(min_col=min_col, min_row=min_row, max_col=max_col, max_row=max_row)


def format_range(min_col: int, min_row: int, max_col: Optional[int] = None, max_row: Optional[int] = None) -> str:
    """Build an A1 range string from 1-based boundaries."""

    start = f"{get_column_letter(min_col)}{min_row}"
    if max_col is None:
        return start
    end_row = "" if max_row is None else str(max_row)
    return f"{start}:{get_column_letter(max_col)}{end_row}"


def trim_rows(rows: Sequence[Sequence[Any]]) -> List[List[str]]:
    """Convert raw values to strings and drop trailing blanks."""

    trimmed: List[List[str]] = []
    for raw in rows:
        row = [_cell_to_text(value) for value in raw]
        while row and row[-1] == "":
            row.pop()
        trimmed.append(row)
    while trimmed and not trimmed[-1]:
        trimmed.pop()
    return trimmed


def _cell_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class WorkbookStore:
    """Tabular store backed by a local ``openpyxl`` workbook.

    Writes are applied to the in-memory workbook and reach the disk only when
    :meth:`save` is called, so a failed multi-step operation can be discarded
    by reloading.
    """

    def __init__(self, workbook: Workbook, path: Optional[Path] = None) -> None:
        self.workbook = workbook
        self.path = path

    @classmethod
    def open(cls, data_file: Path) -> "WorkbookStore":
        """Load the workbook at ``data_file``.

        Raises:
            FileNotFoundError: If the file does not exist after resolution.
        """

        data_file = Path(data_file).expanduser().resolve()
        if not data_file.exists():
            raise FileNotFoundError(f"Workbook not found: {data_file}")
        return cls(openpyxl.load_workbook(data_file), data_file)

    def reload(self) -> "WorkbookStore":
        """Return a fresh store read from disk, discarding unsaved writes."""

        if self.path is None:
            raise StoreError("Cannot reload a workbook that has no backing file")
        return WorkbookStore.open(self.path)

    def table_names(self) -> List[str]:
        return list(self.workbook.sheetnames)

    def _sheet(self, table_name: str):
        if table_name not in self.workbook.sheetnames:
            raise StoreError(f"Unknown table: {table_name}")
        return self.workbook[table_name]

    def read_range(self, table_name: str, range_spec: str) -> List[List[str]]:
        sheet = self._sheet(table_name)
        bounds = parse_range(range_spec)
        min_row = bounds.min_row or 1
        max_row = bounds.max_row or sheet.max_row
        if max_row < min_row:
            return []
        raw_rows = sheet.iter_rows(
            min_row=min_row,
            max_row=max_row,
            min_col=bounds.min_col,
            max_col=bounds.max_col,
            values_only=True,
        )
        return trim_rows(list(raw_rows))

    def write_range(self, table_name: str, range_spec: str, rows: Sequence[Sequence[str]]) -> None:
        sheet = self._sheet(table_name)
        bounds = parse_range(range_spec)
        start_row = bounds.min_row or 1
        for row_offset, row in enumerate(rows):
            for col_offset, value in enumerate(row):
                sheet.cell(
                    row=start_row + row_offset,
                    column=bounds.min_col + col_offset,
                    value=value,
                )

    def append_row(self, table_name: str, row: Sequence[str]) -> int:
        next_row = len(self.read_range(table_name, "A:A")) + 1
        self.write_range(table_name, format_range(1, next_row), [row])
        return next_row

    def create_table(self, table_name: str) -> None:
        if table_name in self.workbook.sheetnames:
            raise StoreError(f"Table already exists: {table_name}")
        self.workbook.create_sheet(title=table_name)
        log.info("Created table '%s' in workbook", table_name)

    def save(self) -> None:
        """Persist the workbook to its backing file, creating parent folders."""

        if self.path is None:
            log.debug("Workbook has no backing file; skipping save")
            return
        destination = Path(self.path).expanduser().resolve()
        destination.parent.mkdir(parents=True, exist_ok=True)
        self.workbook.save(destination)


class SheetsStore:
    """Tabular store backed by the Google Sheets v4 REST API.

    The bearer credential comes from the identity provider and is forwarded
    unchanged. Every call carries a bounded timeout; any failure is reported
    as :class:`TransientStoreError` and is never retried here.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        credential: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        endpoint: str = SHEETS_API_ENDPOINT,
    ) -> None:
        if not spreadsheet_id:
            raise StoreError("A spreadsheet id is required for the sheets backend")
        if not credential:
            raise StoreError("An access token is required for the sheets backend")
        self.spreadsheet_id = spreadsheet_id
        self.timeout = timeout
        self.endpoint = endpoint.rstrip("/")
        self._credential = credential
        self._session = session or requests.Session()

    def _request(
        self,
        method: str,
        suffix: str = "",
        *,
        params: Optional[dict] = None,
        payload: Optional[dict] = None,
    ) -> dict:
        url = f"{self.endpoint}/{self.spreadsheet_id}{suffix}"
        headers = {"Authorization": f"Bearer {self._credential}"}
        try:
            response = self._session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            log.error("Sheets API %s %s failed with status %s", method, suffix or "/", status)
            raise TransientStoreError(f"Sheets API request failed ({status}): {exc}", status=status) from exc
        except requests.RequestException as exc:
            log.error("Sheets API %s %s failed: %s", method, suffix or "/", exc)
            raise TransientStoreError(f"Sheets API request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise TransientStoreError("Sheets API returned a malformed response") from exc
        if not isinstance(data, dict):
            raise TransientStoreError("Sheets API returned a malformed response")
        return data

    @staticmethod
    def _values_path(table_name: str, range_spec: str) -> str:
        return "/values/" + quote(f"{table_name}!{range_spec}", safe="!:")

    def table_names(self) -> List[str]:
        data = self._request("GET", params={"fields": "sheets.properties.title"})
        sheets = data.get("sheets")
        if not isinstance(sheets, list):
            raise TransientStoreError("Unexpected spreadsheet metadata format")
        names: List[str] = []
        for sheet in sheets:
            properties = sheet.get("properties") if isinstance(sheet, dict) else None
            title = properties.get("title") if isinstance(properties, dict) else None
            if not isinstance(title, str):
                raise TransientStoreError("Unexpected spreadsheet metadata format")
            names.append(title)
        return names

    def read_range(self, table_name: str, range_spec: str) -> List[List[str]]:
        parse_range(range_spec)
        data = self._request("GET", self._values_path(table_name, range_spec))
        values = data.get("values", [])
        if not isinstance(values, list) or not all(isinstance(row, list) for row in values):
            raise TransientStoreError(f"Unexpected values payload for {table_name}!{range_spec}")
        return trim_rows(values)

    def write_range(self, table_name: str, range_spec: str, rows: Sequence[Sequence[str]]) -> None:
        parse_range(range_spec)
        self._request(
            "PUT",
            self._values_path(table_name, range_spec),
            params={"valueInputOption": "RAW"},
            payload={"values": [list(row) for row in rows]},
        )

    def append_row(self, table_name: str, row: Sequence[str]) -> int:
        next_row = len(self.read_range(table_name, "A:A")) + 1
        range_spec = format_range(1, next_row, max(len(row), 1), next_row)
        self.write_range(table_name, range_spec, [row])
        return next_row

    def create_table(self, table_name: str) -> None:
        self._request(
            "POST",
            ":batchUpdate",
            payload={"requests": [{"addSheet": {"properties": {"title": table_name}}}]},
        )
        log.info("Created table '%s' in spreadsheet", table_name)

    def save(self) -> None:
        """Writes are already durable; nothing to flush."""


__all__ = [
    "SHEETS_API_ENDPOINT",
    "StoreError",
    "TransientStoreError",
    "RangeError",
    "CellRange",
    "TabularStore",
    "parse_range",
    "format_range",
    "trim_rows",
    "WorkbookStore",
    "SheetsStore",
]
