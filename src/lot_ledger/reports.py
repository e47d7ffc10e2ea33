"""Reporting helpers for the lot ledger.

Everything here is a pure function over lots and sales that were already
read through the business logic layer; nothing touches the store. Malformed
rows never raise: unparseable dates are skipped and numbers were already
defaulted to zero by the data layer.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, TypeVar
from zoneinfo import ZoneInfo

from . import log
from .constants import StockState
from .data_manager import LotRow, SaleRow


DEFAULT_MONTHS = 6
DEFAULT_TOP_LIMIT = 5
UNKNOWN_SUPPLIER = "Unknown"

RecordT = TypeVar("RecordT")


@dataclass(frozen=True)
class MonthlyPoint:
    """Aggregated value for one ``YYYY-MM`` calendar month."""

    month: str
    value: Decimal


@dataclass(frozen=True)
class TopLot:
    """A lot ranked by the number of pieces sold from it."""

    lot_id: str
    supplier_name: str
    total_sold: int
    total_pieces: int
    percentage: Decimal


@dataclass(frozen=True)
class SalesTotals:
    pieces: int
    revenue: Decimal
    profit: Decimal


@dataclass(frozen=True)
class LotTotals:
    count: int
    pieces: int
    remaining_pieces: int
    purchase_value: Decimal


@dataclass(frozen=True)
class DashboardStats:
    """Headline figures shown on the dashboard."""

    total_lots: int
    active_lots: int
    total_pieces: int
    remaining_pieces: int
    sold_pieces: int
    total_sales: int
    total_revenue: Decimal
    total_profit: Decimal
    monthly_sales: List[MonthlyPoint] = field(default_factory=list)
    monthly_profit: List[MonthlyPoint] = field(default_factory=list)
    top_selling_lots: List[TopLot] = field(default_factory=list)


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """Return the IANA zone called ``name``, or ``None`` for the system zone."""

    if not name:
        return None
    return ZoneInfo(name)


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp or date, returning ``None`` when invalid."""

    text = (value or "").strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.combine(date.fromisoformat(text[:10]), datetime.min.time())
    except ValueError:
        return None


def local_date(value: str, tz: Optional[tzinfo] = None) -> Optional[date]:
    """Calendar date of a stored timestamp in ``tz`` (system zone when ``None``).

    Naive timestamps are taken to be local already.
    """

    moment = parse_timestamp(value)
    if moment is None:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(tz)
    return moment.date()


def _today(today: Optional[date], tz: Optional[tzinfo]) -> date:
    if today is None:
        return datetime.now(tz).date()
    if isinstance(today, datetime):
        return today.astimezone(tz).date() if today.tzinfo is not None else today.date()
    return today


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return Decimal("0")


def _month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def trailing_months(today: date, months: int = DEFAULT_MONTHS) -> List[str]:
    """Return ``months`` ``YYYY-MM`` keys ending with ``today``'s month, oldest first."""

    keys: List[str] = []
    for offset in range(months - 1, -1, -1):
        index = today.year * 12 + (today.month - 1) - offset
        keys.append(_month_key(index // 12, index % 12 + 1))
    return keys


def monthly_rollup(
    records: Iterable[Any],
    date_field: str,
    value_field: str,
    *,
    today: Optional[date] = None,
    tz: Optional[tzinfo] = None,
    months: int = DEFAULT_MONTHS,
) -> List[MonthlyPoint]:
    """Sum ``value_field`` per calendar month over the trailing window.

    The window covers ``months`` months up to and including the current one,
    in the given time zone. Every month in the window appears, with zero when
    nothing matched; records outside the window or with unparseable dates
    are dropped.

    Args:
        records: Row dataclasses (or any objects) exposing both fields.
        date_field: Attribute holding the ISO timestamp, e.g. ``"sale_date"``.
        value_field: Attribute to sum, e.g. ``"total_price"`` or ``"profit"``.
        today: Reference date; defaults to now in ``tz``.
        tz: Zone used for month boundaries; ``None`` means the system zone.
        months: Window length.

    Returns:
        list[MonthlyPoint]: Chronological, oldest first.
    """

    if months < 1:
        raise ValueError("months must be at least 1")

    buckets: "OrderedDict[str, Decimal]" = OrderedDict(
        (key, Decimal("0")) for key in trailing_months(_today(today, tz), months)
    )
    skipped = 0
    for record in records:
        day = local_date(getattr(record, date_field, ""), tz)
        if day is None:
            skipped += 1
            continue
        key = _month_key(day.year, day.month)
        if key in buckets:
            buckets[key] += _as_decimal(getattr(record, value_field, 0))

    if skipped:
        log.debug("Monthly rollup skipped %d record(s) without a usable %s", skipped, date_field)
    return [MonthlyPoint(month=key, value=value) for key, value in buckets.items()]


def top_selling_lots(
    lots: Sequence[LotRow],
    sales: Iterable[SaleRow],
    limit: int = DEFAULT_TOP_LIMIT,
) -> List[TopLot]:
    """Rank lots by pieces sold, best first.

    Sales are grouped by lot in order of first appearance; ties keep that
    order. Sales against a lot that no longer exists are reported with an
    ``Unknown`` supplier and zero total pieces. ``percentage`` is the share of
    the lot sold, or zero when the lot has no pieces.
    """

    if limit < 0:
        raise ValueError("limit must not be negative")

    sold: "OrderedDict[str, int]" = OrderedDict()
    for sale in sales:
        sold[sale.lot_id] = sold.get(sale.lot_id, 0) + sale.pieces

    by_id = {}
    for lot in lots:
        by_id.setdefault(lot.lot_id, lot)

    ranking: List[TopLot] = []
    for lot_id, total_sold in sold.items():
        lot = by_id.get(lot_id)
        total_pieces = lot.pieces if lot is not None else 0
        if total_pieces:
            percentage = Decimal(total_sold * 100) / Decimal(total_pieces)
        else:
            percentage = Decimal("0")
        ranking.append(TopLot(
            lot_id=lot_id,
            supplier_name=lot.supplier_name if lot is not None else UNKNOWN_SUPPLIER,
            total_sold=total_sold,
            total_pieces=total_pieces,
            percentage=percentage,
        ))

    ranking.sort(key=lambda entry: entry.total_sold, reverse=True)
    return ranking[:limit]


def dashboard_stats(
    lots: Sequence[LotRow],
    sales: Sequence[SaleRow],
    *,
    today: Optional[date] = None,
    tz: Optional[tzinfo] = None,
    top_limit: int = DEFAULT_TOP_LIMIT,
) -> DashboardStats:
    """Compute the dashboard summary from a snapshot of lots and sales."""

    total_pieces = sum(lot.pieces for lot in lots)
    remaining_pieces = sum(lot.remaining_pieces for lot in lots)
    return DashboardStats(
        total_lots=len(lots),
        active_lots=sum(1 for lot in lots if lot.remaining_pieces > 0),
        total_pieces=total_pieces,
        remaining_pieces=remaining_pieces,
        sold_pieces=total_pieces - remaining_pieces,
        total_sales=len(sales),
        total_revenue=sum((sale.total_price for sale in sales), Decimal("0")),
        total_profit=sum((sale.profit for sale in sales), Decimal("0")),
        monthly_sales=monthly_rollup(sales, "sale_date", "total_price", today=today, tz=tz),
        monthly_profit=monthly_rollup(sales, "sale_date", "profit", today=today, tz=tz),
        top_selling_lots=top_selling_lots(lots, sales, limit=top_limit),
    )


def filter_by_date_range(
    records: Iterable[RecordT],
    date_field: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    tz: Optional[tzinfo] = None,
    today: Optional[date] = None,
) -> List[RecordT]:
    """Keep records whose local calendar date lies in ``[start, end]``.

    Both bounds are inclusive whole days. With no bounds every record is
    returned unchanged; otherwise a missing ``start`` is open and a missing
    ``end`` means today. Records with unparseable dates are dropped once a
    bound is given.
    """

    records = list(records)
    if start is None and end is None:
        return records

    upper = end if end is not None else _today(today, tz)
    if start is not None and start > upper:
        raise ValueError("start date is after end date")

    selected: List[RecordT] = []
    for record in records:
        day = local_date(getattr(record, date_field, ""), tz)
        if day is None:
            continue
        if (start is None or day >= start) and day <= upper:
            selected.append(record)
    return selected


def search_lots(lots: Iterable[LotRow], term: Optional[str]) -> List[LotRow]:
    """Case-insensitive search on lot id and supplier name, substring on mobile."""

    lots = list(lots)
    needle = (term or "").strip()
    if not needle:
        return lots
    lowered = needle.lower()
    return [
        lot
        for lot in lots
        if lowered in lot.lot_id.lower()
        or lowered in lot.supplier_name.lower()
        or needle in lot.supplier_mobile
    ]


def sales_totals(sales: Iterable[SaleRow]) -> SalesTotals:
    pieces = 0
    revenue = Decimal("0")
    profit = Decimal("0")
    for sale in sales:
        pieces += sale.pieces
        revenue += sale.total_price
        profit += sale.profit
    return SalesTotals(pieces=pieces, revenue=revenue, profit=profit)


def lot_totals(lots: Iterable[LotRow]) -> LotTotals:
    lots = list(lots)
    return LotTotals(
        count=len(lots),
        pieces=sum(lot.pieces for lot in lots),
        remaining_pieces=sum(lot.remaining_pieces for lot in lots),
        purchase_value=sum((lot.total_price for lot in lots), Decimal("0")),
    )


def stock_state(lot: LotRow) -> StockState:
    """``Sold Out`` at zero remaining, ``Partial`` once anything sold, else ``Full``."""

    if lot.remaining_pieces <= 0:
        return StockState.SOLD_OUT
    if lot.remaining_pieces < lot.pieces:
        return StockState.PARTIAL
    return StockState.FULL
