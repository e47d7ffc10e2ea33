"""Utility for initializing the lot ledger store.

The module doubles as a script (``python -m lot_ledger.setup_store``) and as
a library used by the CLI and tests. :func:`ensure_store_layout` is the
bootstrap sequence run on first use against any store: it creates the
``Lots``, ``Sales``, ``Inventory`` and ``Config`` tables when missing, writes
their header rows, and seeds the identifier counters.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import SHEET_COLUMNS, EntityType, SheetName
from .store import TabularStore, WorkbookStore, format_range


def _initial_counter(entity_type: EntityType) -> str:
    return f"{entity_type.prefix}-000"


def ensure_store_layout(
    store: TabularStore,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
) -> List[str]:
    """Bring ``store`` up to the expected table layout.

    Safe to run repeatedly: existing tables keep their rows, header rows are
    only written into empty tables, and counters are only added when absent.

    Returns:
        list[str]: Names of the tables that had to be created.
    """

    existing = set(store.table_names())
    created: List[str] = []
    for sheet_name, columns in sheet_columns.items():
        if sheet_name not in existing:
            store.create_table(sheet_name)
            created.append(sheet_name)
        header_range = format_range(1, 1, len(columns), 1)
        if not store.read_range(sheet_name, header_range):
            store.write_range(sheet_name, header_range, [list(columns)])
            log.info("Wrote header row for table '%s'", sheet_name)

    counters = data_manager.read_config_values(store)
    for entity_type in EntityType:
        if entity_type.counter_key not in counters:
            store.append_row(
                SheetName.CONFIG.value,
                [entity_type.counter_key, _initial_counter(entity_type)],
            )
            log.info("Initialized counter '%s'", entity_type.counter_key)

    return created


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create a blank ledger workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    store = WorkbookStore(workbook, destination)
    ensure_store_layout(store, sheet_columns=sheet_columns)

    bold_font = Font(bold=True)
    for sheet_name in sheet_columns:
        for cell in workbook[sheet_name][1]:
            cell.font = bold_font

    store.save()
    log.info("Created ledger workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    if settings.data_file is None:
        raise KeyError("Missing required configuration entry: DataFile")
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the lot ledger workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
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

    print("--- Lot Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
