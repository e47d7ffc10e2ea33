"""Business logic layer for the lot ledger.

This module owns the lifecycle of lots and sales. It consumes the Data Access
Layer (DAL) for all I/O and enforces the stock rules on every mutation:

* identifiers are sequential per entity type (``LOT-001``, ``SALE-001``);
* a lot's remaining pieces never drop below zero or exceed its pieces;
* the ``Inventory`` rollup mirrors each lot (sold + remaining = total).

Writes against the store are sequential and independently failable. All
mutations in one process are serialized through the context's write lock and
re-read the rows they depend on inside that lock. Drift left behind by a
failed multi-step write, or by another process, is reported by
:func:`check_consistency` and repaired by :func:`reconcile_inventory`.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from . import data_manager, log, setup_store
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    ID_PAD_WIDTH,
    DiscrepancyKind,
    EntityType,
    LotStatus,
)
from .store import StoreError, TabularStore, WorkbookStore


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when input is malformed or out of range; nothing was written."""


class NotFoundError(BusinessRuleViolation, LookupError):
    """Raised when a referenced lot, sale, or config key is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a sale asks for more pieces than the lot has left."""

    def __init__(self, lot_id: str, requested: int, remaining: int) -> None:
        super().__init__(
            f"Lot '{lot_id}' has {remaining} pieces remaining; cannot sell {requested}"
        )
        self.lot_id = lot_id
        self.requested = requested
        self.remaining = remaining


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and store references used by the BLL."""

    settings: data_manager.ConfigSettings
    store: TabularStore
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _write_lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class LotCommand:
    """User intent for recording a purchased lot."""

    supplier_name: str
    supplier_mobile: str
    pieces: int
    price_per_piece: Decimal
    image_url: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling pieces out of one lot."""

    lot_id: str
    pieces: int
    price_per_piece: Decimal
    customer_name: str
    customer_mobile: str = ""
    image_url: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Discrepancy:
    """One inconsistency between lots, sales, and the inventory rollup."""

    kind: DiscrepancyKind
    lot_id: str
    detail: str


@dataclass(frozen=True)
class InventoryAdjustment:
    """A lot whose stock figures were rewritten by reconciliation."""

    lot_id: str
    previous_remaining: int
    remaining_pieces: int
    sold_pieces: int
    inventory_created: bool = False


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold precomputed listings keyed by table (lots, sales, inventory)
    so repeated reads within one context do not hit the store again.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating store state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_lots_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the lot cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` lots in table order and a
            ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "lots")
    if "all" not in bucket:
        all_lots = list(data_manager.iter_lots(context.store))
        bucket["all"] = all_lots
        bucket["by_id"] = {}
        for lot in all_lots:
            bucket["by_id"].setdefault(lot.lot_id, lot)
        log.debug("Populated lots cache with %d entries", len(all_lots))
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sale cache bucket on demand."""

    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        all_sales = list(data_manager.iter_sales(context.store))
        bucket["all"] = all_sales
        bucket["by_id"] = {}
        for sale in all_sales:
            bucket["by_id"].setdefault(sale.sale_id, sale)
        log.debug("Populated sales cache with %d entries", len(all_sales))
    return bucket


def _ensure_inventory_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the inventory rollup cache bucket on demand."""

    bucket = _get_cache_bucket(context, "inventory")
    if "all" not in bucket:
        all_rows = list(data_manager.iter_inventory(context.store))
        bucket["all"] = all_rows
        bucket["by_id"] = {}
        for row in all_rows:
            bucket["by_id"].setdefault(row.lot_id, row)
        log.debug("Populated inventory cache with %d entries", len(all_rows))
    return bucket


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    credential: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> RuntimeContext:
    """Load configuration settings and open the configured store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        credential (str | None): Bearer credential from the identity provider,
            required by the sheets backend and ignored by the workbook backend.
        session (requests.Session | None): Optional HTTP session for the
            sheets backend.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.open_store(settings, credential=credential, session=session)
    log.info("Loaded runtime context using the %s backend", settings.backend.value)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def bootstrap_store(context: RuntimeContext) -> List[str]:
    """Create missing tables, header rows, and counters in the store.

    Returns:
        list[str]: Names of the tables that were created.
    """
    with context._write_lock:
        created = setup_store.ensure_store_layout(context.store)
        _invalidate_cache(context, "lots", "sales", "inventory")
    if created:
        log.info("Bootstrapped store tables: %s", ", ".join(created))
    return created


def list_lots(context: RuntimeContext) -> List[data_manager.LotRow]:
    """Return every lot in table order.

    The result is a shallow copy of the cached listing, so two calls with no
    intervening writes return equal sequences.
    """
    return list(_ensure_lots_cache(context)["all"])


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return every sale in table order."""
    return list(_ensure_sales_cache(context)["all"])


def list_inventory(context: RuntimeContext) -> List[data_manager.InventoryRow]:
    """Return every inventory rollup row in table order."""
    return list(_ensure_inventory_cache(context)["all"])


def get_lot(context: RuntimeContext, lot_id: str) -> data_manager.LotRow:
    """Resolve a lot record by its identifier.

    Raises:
        NotFoundError: If ``lot_id`` is absent from the ``Lots`` table.
    """
    cache = _ensure_lots_cache(context)
    try:
        return cache["by_id"][lot_id]
    except KeyError as exc:
        log.warning("Lot lookup failed for id '%s'", lot_id)
        raise NotFoundError(f"Unknown lot id: {lot_id}") from exc


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale record by its identifier.

    Raises:
        NotFoundError: If ``sale_id`` is absent from the ``Sales`` table.
    """
    cache = _ensure_sales_cache(context)
    try:
        return cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise NotFoundError(f"Unknown sale id: {sale_id}") from exc


def format_identifier(entity_type: EntityType, number: int) -> str:
    """Format ``number`` as ``{PREFIX}-{number}``, zero-padded to three digits.

    Numbers wider than the padding keep all their digits (``LOT-1000``).
    """
    return f"{entity_type.prefix}-{number:0{ID_PAD_WIDTH}d}"


def parse_identifier(value: str, entity_type: EntityType) -> int:
    """Return the numeric suffix of an identifier such as ``SALE-042``.

    Raises:
        ValidationError: If the prefix does not match ``entity_type`` or the
            suffix is not a non-negative integer.
    """
    prefix, _, digits = value.strip().rpartition("-")
    if prefix != entity_type.prefix or not digits.isdigit():
        log.error("Malformed %s identifier: %r", entity_type.value, value)
        raise ValidationError(f"Malformed {entity_type.value} identifier: {value!r}")
    return int(digits)


def next_id(context: RuntimeContext, entity_type: EntityType) -> str:
    """Allocate the next identifier for ``entity_type``.

    Reads the last issued value from the ``Config`` table, increments its
    numeric suffix, and stores the new value before returning it. A missing
    counter is first written as ``{PREFIX}-000``. Allocation holds the
    context's write lock, so callers in one process never receive the same
    identifier twice.

    Raises:
        ValidationError: If the stored counter is malformed.
        TransientStoreError: If the store cannot be read or written.
    """
    key = entity_type.counter_key
    with context._write_lock:
        counters = data_manager.read_config_values(context.store)
        last_issued = counters.get(key)
        if last_issued is None:
            last_issued = format_identifier(entity_type, 0)
            log.info("Counter '%s' missing; initializing at %s", key, last_issued)
            data_manager.write_config_value(context.store, key, last_issued)

        allocated = format_identifier(entity_type, parse_identifier(last_issued, entity_type) + 1)
        data_manager.write_config_value(context.store, key, allocated)

    log.debug("Allocated identifier %s", allocated)
    return allocated


def require_text(value: Optional[str], field_name: str) -> str:
    """Return ``value`` stripped, rejecting blank input.

    Raises:
        ValidationError: If the value is ``None`` or only whitespace.
    """
    text = (value or "").strip()
    if not text:
        log.error("Validation failed: %s is required", field_name)
        raise ValidationError(f"{field_name} is required")
    return text


def require_positive_pieces(pieces: int) -> int:
    """Validate that a piece count is a strictly positive integer.

    Raises:
        ValidationError: If ``pieces`` is not an integer or is not above zero.
    """
    if isinstance(pieces, bool) or not isinstance(pieces, int):
        log.error("Piece count validation failed: %r", pieces)
        raise ValidationError("Pieces must be a whole number")
    if pieces <= 0:
        log.error("Piece count validation failed: %s", pieces)
        raise ValidationError("Pieces must be greater than zero")
    return pieces


def require_nonnegative_money(amount: Any) -> Decimal:
    """Validate that a monetary value is a finite, nonnegative decimal.

    Integers and numeric strings are converted with :class:`Decimal`; floats
    go through ``str`` first so ``0.1`` stays ``Decimal("0.1")``.

    Raises:
        ValidationError: If the value is not numeric or is negative.
    """
    if isinstance(amount, bool):
        raise ValidationError("Price must be a number")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        log.error("Monetary value validation failed: %r", amount)
        raise ValidationError(f"Price must be a number: {amount!r}") from exc
    if not value.is_finite() or value < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Price must be zero or positive")
    return value


def build_lot_row(
    command: LotCommand,
    *,
    lot_id: str,
    timestamp: datetime,
    price_per_piece: Decimal,
) -> data_manager.LotRow:
    """Materialize a :class:`LotCommand` into a DAL lot row.

    The total price is fixed at creation and the lot starts with all of its
    pieces remaining.
    """
    return data_manager.LotRow(
        lot_id=lot_id,
        supplier_name=command.supplier_name.strip(),
        supplier_mobile=(command.supplier_mobile or "").strip(),
        pieces=command.pieces,
        price_per_piece=price_per_piece,
        total_price=command.pieces * price_per_piece,
        image_url=command.image_url or "",
        entry_date=timestamp.isoformat(),
        status=LotStatus.ACTIVE.value,
        remaining_pieces=command.pieces,
    )


def build_sale_row(
    command: SaleCommand,
    *,
    sale_id: str,
    timestamp: datetime,
    price_per_piece: Decimal,
    lot: data_manager.LotRow,
) -> data_manager.SaleRow:
    """Materialize a :class:`SaleCommand` into a DAL sale row.

    Profit is measured against the lot's purchase price at the time of sale
    and is stored, never recomputed.
    """
    total_price = command.pieces * price_per_piece
    return data_manager.SaleRow(
        sale_id=sale_id,
        lot_id=lot.lot_id,
        pieces=command.pieces,
        price_per_piece=price_per_piece,
        total_price=total_price,
        customer_name=command.customer_name.strip(),
        customer_mobile=(command.customer_mobile or "").strip(),
        image_url=command.image_url or "",
        sale_date=timestamp.isoformat(),
        profit=total_price - command.pieces * lot.price_per_piece,
    )


def record_lot(context: RuntimeContext, command: LotCommand) -> data_manager.LotRow:
    """Validate and append a new lot plus its inventory rollup row.

    Both rows must be written for the lot to be complete. When the rollup
    write fails the lot row stays behind; the error is logged and re-raised so
    the caller can retry, and :func:`reconcile_inventory` can rebuild the
    missing rollup later.

    Args:
        context (RuntimeContext): Runtime context providing store access and
            caches.
        command (LotCommand): Structured intent describing the purchase.

    Returns:
        data_manager.LotRow: Newly appended lot.

    Raises:
        ValidationError: If required text is blank, pieces are not positive,
            or the price is negative.
        TransientStoreError: If a store call fails.
    """
    require_text(command.supplier_name, "Supplier name")
    require_positive_pieces(command.pieces)
    price = require_nonnegative_money(command.price_per_piece)

    with context._write_lock:
        timestamp = _resolve_timestamp(command.timestamp)
        lot_id = next_id(context, EntityType.LOT)
        lot = build_lot_row(command, lot_id=lot_id, timestamp=timestamp, price_per_piece=price)
        data_manager.append_lot(context.store, lot)
        _invalidate_cache(context, "lots")

        rollup = data_manager.InventoryRow(
            lot_id=lot_id,
            total_pieces=lot.pieces,
            sold_pieces=0,
            remaining_pieces=lot.pieces,
            last_update_date=lot.entry_date,
        )
        try:
            data_manager.append_inventory(context.store, rollup)
        except StoreError:
            log.error("Lot '%s' was recorded without its inventory row; reconcile to repair", lot_id)
            raise
        finally:
            _invalidate_cache(context, "inventory")

    log.info(
        "Recorded lot '%s' from '%s' (pieces=%s, price=%s, total=%s)",
        lot.lot_id,
        lot.supplier_name,
        lot.pieces,
        lot.price_per_piece,
        lot.total_price,
    )
    return lot


def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate and append a sale, then draw its pieces down from the lot.

    The lot is re-read from the store inside the write lock before the stock
    check. Three writes follow in order: the sale row, the lot's remaining
    pieces (and ``Sold Out`` status when it reaches zero), and the inventory
    rollup. A missing rollup row is rebuilt from the lot. If a later write
    fails the sale stays recorded; the failure is logged and re-raised.

    Args:
        context (RuntimeContext): Runtime context providing store access and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleRow: Newly appended sale.

    Raises:
        ValidationError: If required text is blank, pieces are not positive,
            or the price is negative.
        NotFoundError: If the lot does not exist.
        InsufficientStockError: If the lot has fewer pieces remaining than
            requested. Nothing is written in that case.
        TransientStoreError: If a store call fails.
    """
    lot_id = require_text(command.lot_id, "Lot id")
    require_text(command.customer_name, "Customer name")
    require_positive_pieces(command.pieces)
    price = require_nonnegative_money(command.price_per_piece)

    with context._write_lock:
        _invalidate_cache(context, "lots")
        lot = get_lot(context, lot_id)
        if command.pieces > lot.remaining_pieces:
            log.warning(
                "Rejected sale of %s pieces from lot '%s' (remaining=%s)",
                command.pieces,
                lot_id,
                lot.remaining_pieces,
            )
            raise InsufficientStockError(lot_id, command.pieces, lot.remaining_pieces)

        timestamp = _resolve_timestamp(command.timestamp)
        sale_id = next_id(context, EntityType.SALE)
        sale = build_sale_row(command, sale_id=sale_id, timestamp=timestamp, price_per_piece=price, lot=lot)
        data_manager.append_sale(context.store, sale)
        _invalidate_cache(context, "sales")

        remaining = lot.remaining_pieces - command.pieces
        status = LotStatus.SOLD_OUT.value if remaining == 0 else lot.status
        try:
            data_manager.update_lot_stock(context.store, lot_id, remaining_pieces=remaining, status=status)
            _invalidate_cache(context, "lots")
            _apply_sale_to_inventory(context, lot, command.pieces, remaining, timestamp)
        except KeyError as exc:
            log.error("Sale '%s' recorded but lot '%s' vanished before its stock update", sale_id, lot_id)
            raise NotFoundError(f"Unknown lot id: {lot_id}") from exc
        except StoreError:
            log.error("Sale '%s' recorded but stock for lot '%s' was not fully updated; reconcile to repair", sale_id, lot_id)
            raise
        finally:
            _invalidate_cache(context, "lots", "inventory")

    log.info(
        "Recorded sale '%s' of %s pieces from lot '%s' (revenue=%s, profit=%s, remaining=%s)",
        sale.sale_id,
        sale.pieces,
        lot_id,
        sale.total_price,
        sale.profit,
        remaining,
    )
    return sale


def _apply_sale_to_inventory(
    context: RuntimeContext,
    lot: data_manager.LotRow,
    pieces: int,
    remaining: int,
    timestamp: datetime,
) -> None:
    """Move ``pieces`` from remaining to sold in the lot's rollup row."""

    _invalidate_cache(context, "inventory")
    current = _ensure_inventory_cache(context)["by_id"].get(lot.lot_id)
    if current is None:
        log.warning("Inventory row for lot '%s' missing; rebuilding it from the lot", lot.lot_id)
        data_manager.append_inventory(
            context.store,
            data_manager.InventoryRow(
                lot_id=lot.lot_id,
                total_pieces=lot.pieces,
                sold_pieces=lot.pieces - remaining,
                remaining_pieces=remaining,
                last_update_date=timestamp.isoformat(),
            ),
        )
        return

    sold = current.sold_pieces + pieces
    data_manager.update_inventory(
        context.store,
        data_manager.InventoryRow(
            lot_id=lot.lot_id,
            total_pieces=current.total_pieces,
            sold_pieces=sold,
            remaining_pieces=current.total_pieces - sold,
            last_update_date=timestamp.isoformat(),
        ),
    )


def _sold_by_lot(sales: List[data_manager.SaleRow]) -> Dict[str, int]:
    sold: Dict[str, int] = defaultdict(int)
    for sale in sales:
        sold[sale.lot_id] += sale.pieces
    return sold


def check_consistency(context: RuntimeContext) -> List[Discrepancy]:
    """Compare lots, sales, and inventory rollups without changing anything.

    Returns:
        list[Discrepancy]: One entry per problem found, in lot order followed
            by orphaned sales. An empty list means the ledger is consistent.
    """
    _invalidate_cache(context, "lots", "sales", "inventory")
    lots = list_lots(context)
    sales = list_sales(context)
    rollups = _ensure_inventory_cache(context)["by_id"]
    sold_by_lot = _sold_by_lot(sales)

    problems: List[Discrepancy] = []
    for lot in lots:
        if not 0 <= lot.remaining_pieces <= lot.pieces:
            problems.append(Discrepancy(
                DiscrepancyKind.REMAINING_OUT_OF_RANGE,
                lot.lot_id,
                f"remaining {lot.remaining_pieces} outside 0..{lot.pieces}",
            ))

        sold = sold_by_lot.get(lot.lot_id, 0)
        if sold > lot.pieces:
            problems.append(Discrepancy(
                DiscrepancyKind.OVERSOLD,
                lot.lot_id,
                f"sales total {sold} pieces but the lot holds {lot.pieces}",
            ))
        elif lot.pieces - sold != lot.remaining_pieces:
            problems.append(Discrepancy(
                DiscrepancyKind.STOCK_MISMATCH,
                lot.lot_id,
                f"remaining {lot.remaining_pieces} but sales imply {lot.pieces - sold}",
            ))

        rollup = rollups.get(lot.lot_id)
        if rollup is None:
            problems.append(Discrepancy(
                DiscrepancyKind.MISSING_INVENTORY,
                lot.lot_id,
                "no inventory row",
            ))
        elif (
            rollup.total_pieces != lot.pieces
            or rollup.sold_pieces + rollup.remaining_pieces != rollup.total_pieces
            or rollup.remaining_pieces != lot.remaining_pieces
        ):
            problems.append(Discrepancy(
                DiscrepancyKind.ROLLUP_MISMATCH,
                lot.lot_id,
                f"inventory total/sold/remaining {rollup.total_pieces}/{rollup.sold_pieces}/"
                f"{rollup.remaining_pieces} vs lot pieces/remaining {lot.pieces}/{lot.remaining_pieces}",
            ))

    known = {lot.lot_id for lot in lots}
    for sale in sales:
        if sale.lot_id not in known:
            problems.append(Discrepancy(
                DiscrepancyKind.ORPHANED_SALE,
                sale.lot_id,
                f"sale '{sale.sale_id}' references a missing lot",
            ))

    if problems:
        log.warning("Consistency check found %d problem(s)", len(problems))
    else:
        log.info("Consistency check passed for %d lots", len(lots))
    return problems


def reconcile_inventory(
    context: RuntimeContext,
    *,
    timestamp: Optional[datetime] = None,
) -> List[InventoryAdjustment]:
    """Recompute lot stock and inventory rollups from the recorded sales.

    Sales are the source of truth: for each lot, sold pieces are the sum of
    its sales and remaining pieces are ``pieces - sold`` (never below zero).
    Lots whose ``RemainingPieces`` or ``Status`` disagree are rewritten,
    rollup rows are rewritten or appended, and untouched lots are skipped.

    Returns:
        list[InventoryAdjustment]: One entry per lot that was changed.
    """
    with context._write_lock:
        _invalidate_cache(context, "lots", "sales", "inventory")
        lots = list_lots(context)
        sold_by_lot = _sold_by_lot(list_sales(context))
        rollups = dict(_ensure_inventory_cache(context)["by_id"])
        stamp = _resolve_timestamp(timestamp).isoformat()

        adjustments: List[InventoryAdjustment] = []
        try:
            for lot in lots:
                sold = sold_by_lot.get(lot.lot_id, 0)
                if sold > lot.pieces:
                    log.warning("Lot '%s' is oversold (%s of %s pieces)", lot.lot_id, sold, lot.pieces)
                    sold = lot.pieces
                remaining = lot.pieces - sold
                status = LotStatus.SOLD_OUT.value if remaining == 0 else LotStatus.ACTIVE.value

                lot_changed = remaining != lot.remaining_pieces or status != lot.status
                if lot_changed:
                    data_manager.update_lot_stock(
                        context.store, lot.lot_id, remaining_pieces=remaining, status=status
                    )

                expected = data_manager.InventoryRow(
                    lot_id=lot.lot_id,
                    total_pieces=lot.pieces,
                    sold_pieces=sold,
                    remaining_pieces=remaining,
                    last_update_date=stamp,
                )
                current = rollups.get(lot.lot_id)
                created = current is None
                if created:
                    data_manager.append_inventory(context.store, expected)
                elif (current.total_pieces, current.sold_pieces, current.remaining_pieces) != (
                    expected.total_pieces,
                    expected.sold_pieces,
                    expected.remaining_pieces,
                ):
                    data_manager.update_inventory(context.store, expected)
                elif not lot_changed:
                    continue

                adjustments.append(InventoryAdjustment(
                    lot_id=lot.lot_id,
                    previous_remaining=lot.remaining_pieces,
                    remaining_pieces=remaining,
                    sold_pieces=sold,
                    inventory_created=created,
                ))
        finally:
            _invalidate_cache(context, "lots", "inventory")

    log.info("Reconciled inventory: %d lot(s) adjusted", len(adjustments))
    return adjustments


def persist_context(context: RuntimeContext) -> None:
    """Flush buffered store writes.

    The workbook backend writes its file here; the sheets backend has already
    written every change and treats this as a no-op.
    """
    context.store.save()
    log.info("Persisted %s store", context.settings.backend.value)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Drop unsaved modifications and cached reads.

    Returns:
        RuntimeContext: Fresh context sharing the settings. Workbook stores
            are reloaded from disk; remote stores are reused as-is.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    store = context.store
    if isinstance(store, WorkbookStore):
        store = store.reload()
        log.info("Reloaded workbook '%s'", store.path)
    return RuntimeContext(settings=context.settings, store=store)
