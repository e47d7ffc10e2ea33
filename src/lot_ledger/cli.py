"""Command-line entry points for the lot ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin lets tests and other
front-ends reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, export, log, reports, setup_store, uploads
from .constants import Backend
from .store import TransientStoreError


ACCESS_TOKEN_ENV = "LOT_LEDGER_ACCESS_TOKEN"
EXPORT_TABLES = ("lots", "sales", "inventory")


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    prepare: Optional[Callable[[argparse.Namespace], None]] = None


def decimal_arg(value: str) -> Decimal:
    """argparse type for monetary amounts."""
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {value!r}") from exc


def date_arg(value: str) -> date:
    """argparse type for ``YYYY-MM-DD`` dates."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="lot-ledger",
        description="Record garment lots and sales in a spreadsheet ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.ini (defaults to searching upward from the working directory).",
    )
    parser.add_argument(
        "--access-token",
        default=os.environ.get(ACCESS_TOKEN_ENV),
        help=f"Bearer token for the sheets backend (defaults to ${ACCESS_TOKEN_ENV}).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "init": register_init_command(subparsers),
        "add-lot": register_add_lot_command(subparsers),
        "sale": register_sale_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "lots": register_lots_command(subparsers),
        "sales": register_sales_command(subparsers),
        "inventory": register_inventory_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "top-lots": register_top_lots_command(subparsers),
        "export": register_export_command(subparsers),
        "check": register_check_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create the ledger tables, headers, and counters if missing."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, prepare=prepare_init)


def register_add_lot_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-lot``."""
    name = "add-lot"
    help_text = "Record a newly purchased lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-name", required=True)
        parser.add_argument("--supplier-mobile", default="")
        parser.add_argument("--pieces", type=int, required=True)
        parser.add_argument("--price-per-piece", type=decimal_arg, required=True)
        image = parser.add_mutually_exclusive_group()
        image.add_argument("--image", type=Path, default=None, help="Photo to upload with the lot.")
        image.add_argument("--image-url", default="", help="Existing image reference to store as-is.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_lot)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale of pieces from a lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-id", required=True)
        parser.add_argument("--pieces", type=int, required=True)
        parser.add_argument("--price-per-piece", type=decimal_arg, required=True)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--customer-mobile", default="")
        image = parser.add_mutually_exclusive_group()
        image.add_argument("--image", type=Path, default=None, help="Photo to upload with the sale.")
        image.add_argument("--image-url", default="", help="Existing image reference to store as-is.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_reconcile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Rebuild lot stock and inventory rows from recorded sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile)


def register_lots_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``lots``."""
    name = "lots"
    help_text = "List lots, optionally filtered."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None, help="Match lot id, supplier name, or mobile.")
        parser.add_argument("--start", type=date_arg, default=None, help="Earliest entry date (inclusive).")
        parser.add_argument("--end", type=date_arg, default=None, help="Latest entry date (inclusive).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_lots_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List sales with totals, optionally within a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=date_arg, default=None, help="Earliest sale date (inclusive).")
        parser.add_argument("--end", type=date_arg, default=None, help="Latest sale date (inclusive).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_inventory_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``inventory``."""
    name = "inventory"
    help_text = "Display the per-lot inventory rollup."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_inventory_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display stock, revenue, and profit summaries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report)


def register_top_lots_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``top-lots``."""
    name = "top-lots"
    help_text = "Rank lots by pieces sold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=reports.DEFAULT_TOP_LIMIT)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_top_lots_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export a table as UTF-8 CSV."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("table", choices=EXPORT_TABLES)
        parser.add_argument("--output", type=Path, default=None, help="Target file (defaults to stdout).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def register_check_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``check``."""
    name = "check"
    help_text = "Report inconsistencies between lots, sales, and inventory."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_check)


def load_runtime_context(
    config_path: Optional[Path] = None,
    credential: Optional[str] = None,
) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path, credential=credential)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_lot(args: argparse.Namespace, *, image_url: str = "") -> core_logic.LotCommand:
    """Translate CLI args into a lot command object."""
    return core_logic.LotCommand(
        supplier_name=args.supplier_name,
        supplier_mobile=args.supplier_mobile,
        pieces=args.pieces,
        price_per_piece=args.price_per_piece,
        image_url=image_url or args.image_url,
    )


def translate_sale(args: argparse.Namespace, *, image_url: str = "") -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        lot_id=args.lot_id,
        pieces=args.pieces,
        price_per_piece=args.price_per_piece,
        customer_name=args.customer_name,
        customer_mobile=args.customer_mobile,
        image_url=image_url or args.image_url,
    )


def resolve_image(args: argparse.Namespace) -> str:
    """Upload ``--image`` when given; failures leave the record without a photo."""
    return uploads.upload_best_effort(uploads.DataUrlUploader(), getattr(args, "image", None))


def _print_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> None:
    text_rows = [[str(cell) for cell in row] for row in rows]
    widths = [len(header) for header in headers]
    for row in text_rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))
    print("  ".join(header.ljust(width) for header, width in zip(headers, widths)).rstrip())
    print("  ".join("-" * width for width in widths))
    for row in text_rows:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


def _timezone(context: core_logic.RuntimeContext):
    return reports.resolve_timezone(context.settings.timezone)


def prepare_init(args: argparse.Namespace) -> None:
    """Create the workbook file before the store is opened, when needed."""
    located = data_manager.find_config_file(getattr(args, "config", None))
    config_path = Path(located).expanduser().resolve()
    settings = data_manager.parse_settings(
        data_manager.read_config(config_path), base_path=config_path.parent
    )
    if settings.backend is Backend.WORKBOOK and settings.data_file is not None and not settings.data_file.exists():
        setup_store.create_master_workbook(settings.data_file)


def run_init(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bootstrap workflow."""
    created = core_logic.bootstrap_store(context)
    if created:
        print(f"Created tables: {', '.join(created)}")
    print(
        f"Ledger ready for {context.settings.business_name}: "
        f"{len(core_logic.list_lots(context))} lots, {len(core_logic.list_sales(context))} sales."
    )
    return 0


def run_add_lot(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot entry workflow via the BLL."""
    command = translate_add_lot(args, image_url=resolve_image(args))
    lot = core_logic.record_lot(context, command)
    print(f"Recorded {lot.lot_id}: {lot.pieces} pieces at {lot.price_per_piece} (total {lot.total_price})")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sale(args, image_url=resolve_image(args))
    sale = core_logic.record_sale(context, command)
    print(
        f"Recorded {sale.sale_id}: {sale.pieces} pieces from {sale.lot_id} "
        f"for {sale.total_price} (profit {sale.profit})"
    )
    return 0


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reconciliation workflow via the BLL."""
    adjustments = core_logic.reconcile_inventory(context)
    if not adjustments:
        print("Inventory already consistent.")
        return 0
    _print_table(
        ["LotID", "Remaining (before)", "Remaining (after)", "Sold", "Row created"],
        [
            [a.lot_id, a.previous_remaining, a.remaining_pieces, a.sold_pieces, "yes" if a.inventory_created else ""]
            for a in adjustments
        ],
    )
    return 0


def run_lots_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot listing workflow."""
    lots = reports.search_lots(core_logic.list_lots(context), args.search)
    lots = reports.filter_by_date_range(lots, "entry_date", args.start, args.end, tz=_timezone(context))
    _print_table(
        ["LotID", "Supplier", "Mobile", "Pieces", "Remaining", "Price", "Total", "Stock"],
        [
            [
                lot.lot_id,
                lot.supplier_name,
                lot.supplier_mobile,
                lot.pieces,
                lot.remaining_pieces,
                lot.price_per_piece,
                lot.total_price,
                reports.stock_state(lot).value,
            ]
            for lot in lots
        ],
    )
    totals = reports.lot_totals(lots)
    print(
        f"\n{totals.count} lots, {totals.pieces} pieces, {totals.remaining_pieces} remaining, "
        f"purchase value {totals.purchase_value}"
    )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales listing workflow."""
    sales = reports.filter_by_date_range(
        core_logic.list_sales(context), "sale_date", args.start, args.end, tz=_timezone(context)
    )
    _print_table(
        ["SaleID", "LotID", "Pieces", "Price", "Total", "Customer", "Mobile", "Date", "Profit"],
        [
            [
                sale.sale_id,
                sale.lot_id,
                sale.pieces,
                sale.price_per_piece,
                sale.total_price,
                sale.customer_name,
                sale.customer_mobile,
                sale.sale_date[:10],
                sale.profit,
            ]
            for sale in sales
        ],
    )
    totals = reports.sales_totals(sales)
    print(f"\n{totals.pieces} pieces sold, revenue {totals.revenue}, profit {totals.profit}")
    return 0


def run_inventory_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the inventory rollup listing."""
    _print_table(
        ["LotID", "Total", "Sold", "Remaining", "Updated"],
        [
            [row.lot_id, row.total_pieces, row.sold_pieces, row.remaining_pieces, row.last_update_date]
            for row in core_logic.list_inventory(context)
        ],
    )
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard summary."""
    stats = reports.dashboard_stats(
        core_logic.list_lots(context),
        core_logic.list_sales(context),
        tz=_timezone(context),
    )
    print(f"Lots:      {stats.total_lots} ({stats.active_lots} with stock)")
    print(f"Pieces:    {stats.total_pieces} total, {stats.sold_pieces} sold, {stats.remaining_pieces} remaining")
    print(f"Sales:     {stats.total_sales}")
    print(f"Revenue:   {stats.total_revenue}")
    print(f"Profit:    {stats.total_profit}")
    print()
    _print_table(
        ["Month", "Revenue", "Profit"],
        [
            [revenue.month, revenue.value, profit.value]
            for revenue, profit in zip(stats.monthly_sales, stats.monthly_profit)
        ],
    )
    if stats.top_selling_lots:
        print()
        _print_top_lots(stats.top_selling_lots)
    return 0


def _print_top_lots(ranking: Sequence[reports.TopLot]) -> None:
    _print_table(
        ["LotID", "Supplier", "Sold", "Pieces", "Sold %"],
        [
            [entry.lot_id, entry.supplier_name, entry.total_sold, entry.total_pieces, f"{entry.percentage:.1f}"]
            for entry in ranking
        ],
    )


def run_top_lots_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the top-selling lots ranking."""
    ranking = reports.top_selling_lots(
        core_logic.list_lots(context),
        core_logic.list_sales(context),
        limit=args.limit,
    )
    _print_top_lots(ranking)
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a CSV export."""
    destination = args.output if args.output is not None else sys.stdout
    if args.table == "lots":
        export.export_lots(core_logic.list_lots(context), destination)
    elif args.table == "sales":
        export.export_sales(core_logic.list_sales(context), destination)
    else:
        export.export_inventory(core_logic.list_inventory(context), destination)
    return 0


def run_check(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the consistency check; exits non-zero when drift is found."""
    problems = core_logic.check_consistency(context)
    if not problems:
        print("Ledger is consistent.")
        return 0
    _print_table(
        ["LotID", "Problem", "Detail"],
        [[problem.lot_id, problem.kind.value, problem.detail] for problem in problems],
    )
    return 8


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, core_logic.InsufficientStockError):
        return 6
    if isinstance(error, core_logic.NotFoundError):
        return 5
    if isinstance(error, core_logic.ValidationError):
        return 4
    if isinstance(error, core_logic.BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, TransientStoreError):
        return 7
    return 1


def persist_store(context: core_logic.RuntimeContext) -> None:
    """Persist store changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table.get(args.command)
        if spec is not None and spec.prepare is not None:
            spec.prepare(args)
        context = load_runtime_context(getattr(args, "config", None), getattr(args, "access_token", None))
        core_logic.ensure_schema_version(context)
        core_logic.bootstrap_store(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_store(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
