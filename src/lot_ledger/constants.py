"""Enumerations and table layouts shared across the lot ledger modules.

Keeps sheet names, header rows, and identifier prefixes in one place so the
store adapters, the ledger service, and the export/report helpers agree on
the exact spreadsheet layout.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating the store.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class SheetName(str, Enum):
    """Enumerate the tables managed by the data layer."""

    LOTS = "Lots"
    SALES = "Sales"
    INVENTORY = "Inventory"
    CONFIG = "Config"


class EntityType(str, Enum):
    """Entity kinds that receive sequential identifiers."""

    LOT = "LOT"
    SALE = "SALE"

    @property
    def prefix(self) -> str:
        return self.value

    @property
    def counter_key(self) -> str:
        """Name of the ``Config`` row holding the last issued identifier."""
        return COUNTER_KEYS[self]


class LotStatus(str, Enum):
    """Status values written to the ``Status`` column of the Lots table."""

    ACTIVE = "Active"
    SOLD_OUT = "Sold Out"


class StockState(str, Enum):
    """Derived stock level of a lot, used by listings and exports."""

    FULL = "Full"
    PARTIAL = "Partial"
    SOLD_OUT = "Sold Out"


class DiscrepancyKind(str, Enum):
    """Kinds of ledger drift reported by the consistency check."""

    MISSING_INVENTORY = "missing_inventory"
    ROLLUP_MISMATCH = "rollup_mismatch"
    STOCK_MISMATCH = "stock_mismatch"
    REMAINING_OUT_OF_RANGE = "remaining_out_of_range"
    OVERSOLD = "oversold"
    ORPHANED_SALE = "orphaned_sale"


class Backend(str, Enum):
    """Supported tabular store backends."""

    WORKBOOK = "workbook"
    SHEETS = "sheets"


COUNTER_KEYS: Mapping[EntityType, str] = {
    EntityType.LOT: "LastLotID",
    EntityType.SALE: "LastSaleID",
}

ID_PAD_WIDTH = 3

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.LOTS.value: [
        "LotID",
        "SupplierName",
        "SupplierMobile",
        "Pieces",
        "PricePerPiece",
        "TotalPrice",
        "ImageURL",
        "EntryDate",
        "Status",
        "RemainingPieces",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "LotID",
        "Pieces",
        "PricePerPiece",
        "TotalPrice",
        "CustomerName",
        "CustomerMobile",
        "ImageURL",
        "SaleDate",
        "Profit",
    ],
    SheetName.INVENTORY.value: [
        "LotID",
        "TotalPieces",
        "SoldPieces",
        "RemainingPieces",
        "LastUpdateDate",
    ],
    SheetName.CONFIG.value: [
        "SettingName",
        "Value",
    ],
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "SheetName",
    "EntityType",
    "LotStatus",
    "StockState",
    "DiscrepancyKind",
    "Backend",
    "COUNTER_KEYS",
    "ID_PAD_WIDTH",
    "SHEET_COLUMNS",
]
