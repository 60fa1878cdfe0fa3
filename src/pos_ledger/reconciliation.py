"""Read-side aggregation over committed ledger rows.

The :class:`ReconciliationEngine` merges sales, manual incomes and expenses
into movement views and derives cash, ranking and density reports from them.
Nothing here writes to the store. Rows that cannot be read or dated are
skipped and tallied in :attr:`ReconciliationEngine.diagnostics`.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, fields
from datetime import UTC, date, datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from . import log
from .constants import MovementKind, PaymentMethod, SheetName
from .data_manager import CashEntryRow, LedgerStore, ProductRow, SaleRow
from .errors import ValidationError


_DAY_FIRST = re.compile(
    r"^(\d{1,2})/(\d{1,2})/(\d{4})"
    r"(?:[,\s]+(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(?:([ap])\.?\s*m\.?)?)?$",
    re.IGNORECASE,
)

ZERO = Decimal("0")


def _parse_day_first(text: str) -> Optional[datetime]:
    match = _DAY_FIRST.match(text)
    if match is None:
        return None
    day, month, year, hour, minute, second, meridiem = match.groups()
    hour_value = int(hour) if hour else 0
    if meridiem:
        hour_value %= 12
        if meridiem.lower() == "p":
            hour_value += 12
    try:
        return datetime(
            int(year),
            int(month),
            int(day),
            hour_value,
            int(minute) if minute else 0,
            int(second) if second else 0,
        )
    except ValueError:
        return None


def parse_timestamp(value: object, tz: tzinfo = UTC) -> Optional[datetime]:
    """Best-effort conversion of a stored timestamp into an aware datetime.

    Accepts ``datetime`` and ``date`` objects, ISO 8601 strings and day-first
    ``DD/MM/YYYY`` dates with an optional ``HH:MM[:SS]`` time, which may carry
    an ``a. m.``/``p. m.`` suffix. Naive values are read as local time in
    ``tz``.

    Returns:
        datetime | None: The moment expressed in ``tz``, or ``None`` when the
            value cannot be understood.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            parsed = _parse_day_first(text)
            if parsed is None:
                return None
            moment = parsed
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz)
    try:
        return moment.astimezone(tz)
    except OverflowError:
        # Shifting a moment at the edge of the calendar leaves datetime's range.
        return None


@dataclass(frozen=True)
class MovementRow:
    """One line of a merged cash movement view."""

    record_id: str
    kind: MovementKind
    created_at: datetime
    amount: Decimal
    description: str
    date: str
    time: str


MOVEMENT_COLUMNS = tuple(f.name for f in fields(MovementRow))


@dataclass(frozen=True)
class SortSpec:
    """Column and direction a movement view is ordered by."""

    key: str = "created_at"
    ascending: bool = False


def toggle_sort(current: SortSpec, key: str) -> SortSpec:
    """Return the ordering after a user selects ``key``.

    Selecting the column that is already sorted ascending flips it to
    descending; any other selection sorts ascending.
    """

    return SortSpec(key=key, ascending=not (current.key == key and current.ascending))


def sort_movements(rows: Iterable[MovementRow], spec: Optional[SortSpec] = None) -> List[MovementRow]:
    """Order ``rows`` by ``spec``; rows comparing equal keep their merge order."""

    spec = spec or SortSpec()
    if spec.key not in MOVEMENT_COLUMNS:
        raise ValidationError(f"Unknown movement column: {spec.key}")

    def sort_key(row: MovementRow) -> object:
        value = getattr(row, spec.key)
        if isinstance(value, (datetime, Decimal)):
            return value
        if isinstance(value, MovementKind):
            return value.value.lower()
        return str(value or "").lower()

    return sorted(rows, key=sort_key, reverse=not spec.ascending)


def filter_movements(rows: Iterable[MovementRow], text: Optional[str], *, include_date: bool = False) -> List[MovementRow]:
    """Keep rows whose kind, description, amount or time contain ``text``."""

    rows = list(rows)
    if not text:
        return rows
    needle = text.lower()

    def matches(row: MovementRow) -> bool:
        haystack = [row.kind.value.lower(), row.description.lower(), str(row.amount), row.time.lower()]
        if include_date:
            haystack.append(row.date.lower())
        return any(needle in candidate for candidate in haystack)

    return [row for row in rows if matches(row)]


@dataclass(frozen=True)
class ProductRank:
    product_id: str
    product_name: str
    quantity: int
    revenue: Decimal


@dataclass(frozen=True)
class SellerRank:
    seller_id: str
    seller_name: str
    total_amount: Decimal
    sale_count: int


@dataclass(frozen=True)
class HeatmapCell:
    """Number of sales in one (weekday, hour) bucket; Monday is day 0."""

    day_of_week: int
    hour: int
    count: int


@dataclass(frozen=True)
class DailyTotal:
    day: int
    total: Decimal


@dataclass(frozen=True)
class PerformanceSummary:
    """Catalog valuation and sales profitability figures."""

    inventory_value: Decimal
    gross_revenue: Decimal
    cost_of_goods_sold: Decimal
    gross_profit: Decimal
    margin_pct: Decimal


class ReconciliationEngine:
    """Pure reads over the ledger, bucketed in the configured time zone.

    Args:
        store (LedgerStore): Store the rows are read from.
        tz (tzinfo): Time zone used to decide which day, month and hour a
            record belongs to.
    """

    def __init__(self, store: LedgerStore, *, tz: tzinfo = UTC) -> None:
        self.store = store
        self.tz = tz
        self.diagnostics: Counter = Counter()

    def reset_diagnostics(self) -> None:
        self.diagnostics.clear()

    def _skip_malformed(self, sheet: SheetName, row_idx: int, exc: Exception) -> None:
        self.diagnostics[sheet.value] += 1
        log.warning("Skipping malformed row %d on sheet '%s': %s", row_idx, sheet.value, exc)

    def _dated(self, sheet: SheetName, scope: Optional[str]) -> Iterator[Tuple[object, datetime]]:
        for record in self.store.scan(sheet, scope=scope, on_malformed=self._skip_malformed):
            moment = parse_timestamp(record.created_at, self.tz)
            if moment is None:
                self.diagnostics[sheet.value] += 1
                log.warning("Skipping %s row with unreadable timestamp %r", sheet.value, record.created_at)
                continue
            yield record, moment

    def _sales(self, scope: Optional[str], keep: Callable[[datetime], bool]) -> Iterator[Tuple[SaleRow, datetime]]:
        for sale, moment in self._dated(SheetName.SALES, scope):
            if keep(moment):
                yield sale, moment

    def _entries(self, sheet: SheetName, scope: Optional[str], keep: Callable[[datetime], bool]) -> Iterator[Tuple[CashEntryRow, datetime]]:
        for entry, moment in self._dated(sheet, scope):
            if keep(moment):
                yield entry, moment

    @staticmethod
    def _on_day(day: date) -> Callable[[datetime], bool]:
        return lambda moment: moment.date() == day

    @staticmethod
    def _in_month(month: int, year: int) -> Callable[[datetime], bool]:
        if not 1 <= month <= 12:
            raise ValidationError(f"Month must be between 1 and 12, got {month}")
        return lambda moment: moment.month == month and moment.year == year

    # -- movement views ------------------------------------------------------

    def _movements(self, scope: str, keep: Callable[[datetime], bool], *, with_methods: bool) -> List[MovementRow]:
        rows: List[MovementRow] = []
        with self.store.snapshot():
            for sale, moment in self._sales(scope, keep):
                description = f"Sale #{sale.sale_id[:8]} - {sale.client_name}"
                if with_methods:
                    methods = ", ".join(dict.fromkeys(payment.method for payment in sale.payments))
                    description = f"{description} ({methods})"
                rows.append(self._movement(sale.sale_id, MovementKind.SALE, moment, sale.total, description))
            for entry, moment in self._entries(SheetName.MANUAL_INCOMES, scope, keep):
                rows.append(self._movement(entry.entry_id, MovementKind.MANUAL_INCOME, moment, entry.amount, entry.description))
            for entry, moment in self._entries(SheetName.EXPENSES, scope, keep):
                rows.append(self._movement(entry.entry_id, MovementKind.EXPENSE, moment, -entry.amount, entry.description))
        return rows

    @staticmethod
    def _movement(record_id: str, kind: MovementKind, moment: datetime, amount: Decimal, description: str) -> MovementRow:
        return MovementRow(
            record_id=record_id,
            kind=kind,
            created_at=moment,
            amount=amount,
            description=description,
            date=moment.strftime("%Y-%m-%d"),
            time=moment.strftime("%H:%M"),
        )

    def daily_movements(
        self,
        day: date,
        scope: str,
        filter_text: Optional[str] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[MovementRow]:
        """Merge the day's sales, incomes and expenses into one signed view.

        Sales and incomes carry positive amounts, expenses negative ones. The
        default order is newest first.
        """

        rows = self._movements(scope, self._on_day(day), with_methods=False)
        return sort_movements(filter_movements(rows, filter_text), sort)

    def monthly_movements(
        self,
        month: int,
        year: int,
        scope: str,
        filter_text: Optional[str] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[MovementRow]:
        """Same as :meth:`daily_movements` for a calendar month; the filter also matches dates."""

        rows = self._movements(scope, self._in_month(month, year), with_methods=True)
        return sort_movements(filter_movements(rows, filter_text, include_date=True), sort)

    # -- cash ----------------------------------------------------------------

    def payment_breakdown(self, day: date, scope: str) -> Dict[str, Decimal]:
        """Sum the day's sale payments per payment method."""

        breakdown: Dict[str, Decimal] = {}
        for sale, _ in self._sales(scope, self._on_day(day)):
            for payment in sale.payments:
                breakdown[payment.method] = breakdown.get(payment.method, ZERO) + payment.amount
        return breakdown

    def expected_cash(self, day: date, scope: str) -> Decimal:
        """Cash taken from sales plus manual incomes minus expenses for ``day``."""

        keep = self._on_day(day)
        with self.store.snapshot():
            cash_sales = self.payment_breakdown(day, scope).get(PaymentMethod.CASH.value, ZERO)
            incomes = sum((entry.amount for entry, _ in self._entries(SheetName.MANUAL_INCOMES, scope, keep)), ZERO)
            expenses = sum((entry.amount for entry, _ in self._entries(SheetName.EXPENSES, scope, keep)), ZERO)
        return cash_sales + incomes - expenses

    # -- rankings and charts -------------------------------------------------

    def top_products(self, month: int, year: int, scope: str, n: int = 5) -> List[ProductRank]:
        """Products sold in the month ordered by units sold, truncated to ``n``."""

        quantities: Dict[str, int] = {}
        revenue: Dict[str, Decimal] = {}
        names: Dict[str, str] = {}
        for sale, _ in self._sales(scope, self._in_month(month, year)):
            for line in sale.items:
                quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity
                revenue[line.product_id] = revenue.get(line.product_id, ZERO) + line.subtotal
                names[line.product_id] = line.product_name
        ranking = [
            ProductRank(product_id=pid, product_name=names[pid], quantity=qty, revenue=revenue[pid])
            for pid, qty in quantities.items()
        ]
        ranking.sort(key=lambda rank: rank.quantity, reverse=True)
        return ranking[:n]

    def seller_ranking(self, month: int, year: int, scope: str) -> List[SellerRank]:
        totals: Dict[str, Decimal] = {}
        counts: Dict[str, int] = {}
        names: Dict[str, str] = {}
        for sale, _ in self._sales(scope, self._in_month(month, year)):
            totals[sale.seller_id] = totals.get(sale.seller_id, ZERO) + sale.total
            counts[sale.seller_id] = counts.get(sale.seller_id, 0) + 1
            names[sale.seller_id] = sale.seller_name
        ranking = [
            SellerRank(seller_id=sid, seller_name=names[sid], total_amount=total, sale_count=counts[sid])
            for sid, total in totals.items()
        ]
        ranking.sort(key=lambda rank: rank.total_amount, reverse=True)
        return ranking

    def heatmap(self, month: int, year: int, scope: str) -> List[HeatmapCell]:
        """Count the month's sales per weekday and hour; only non-empty cells are returned."""

        buckets: Counter = Counter(
            (moment.weekday(), moment.hour) for _, moment in self._sales(scope, self._in_month(month, year))
        )
        return [
            HeatmapCell(day_of_week=weekday, hour=hour, count=count)
            for (weekday, hour), count in sorted(buckets.items())
        ]

    def daily_sales_series(self, month: int, year: int, scope: str) -> List[DailyTotal]:
        """Sales total per day of the month, for days that had sales."""

        totals: Dict[int, Decimal] = {}
        for sale, moment in self._sales(scope, self._in_month(month, year)):
            totals[moment.day] = totals.get(moment.day, ZERO) + sale.total
        return [DailyTotal(day=day, total=totals[day]) for day in sorted(totals)]

    def performance_summary(self, scope: str) -> PerformanceSummary:
        """Value the catalog at cost and compute gross profit over every sale.

        ``margin_pct`` is the gross profit as a percentage of revenue, rounded
        to one decimal place, and zero when nothing was sold.
        """

        revenue = ZERO
        cost = ZERO
        with self.store.snapshot():
            inventory_value = sum(
                (product.unit_cost * max(product.stock, 0) for product in self._products(scope)),
                ZERO,
            )
            for sale, _ in self._dated(SheetName.SALES, scope):
                revenue += sale.total
                cost += sum((line.unit_cost * line.quantity for line in sale.items), ZERO)
        profit = revenue - cost
        margin = ZERO
        if revenue:
            margin = (profit / revenue * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        return PerformanceSummary(
            inventory_value=inventory_value,
            gross_revenue=revenue,
            cost_of_goods_sold=cost,
            gross_profit=profit,
            margin_pct=margin,
        )

    def _products(self, scope: str) -> Iterator[ProductRow]:
        return self.store.scan(SheetName.PRODUCTS, scope=scope, on_malformed=self._skip_malformed)

    # -- shift support -------------------------------------------------------

    def sales_for_ids(self, sale_ids: Iterable[str]) -> List[SaleRow]:
        """Return the sales whose ids are listed; ids with no sale are logged and skipped."""

        wanted = set(sale_ids)
        found = [sale for sale, _ in self._dated(SheetName.SALES, None) if sale.sale_id in wanted]
        missing = wanted - {sale.sale_id for sale in found}
        if missing:
            log.warning("%d listed sale(s) no longer exist: %s", len(missing), ", ".join(sorted(missing)))
        return found

    def sales_between(
        self,
        start: datetime,
        end: datetime,
        scope: str,
        seller_id: Optional[str] = None,
    ) -> List[SaleRow]:
        """Return the sales created within ``[start, end]``, optionally for one seller."""

        return [
            sale
            for sale, _ in self._sales(scope, lambda moment: start <= moment <= end)
            if seller_id is None or sale.seller_id == seller_id
        ]


__all__ = [
    "parse_timestamp",
    "MovementRow",
    "SortSpec",
    "toggle_sort",
    "sort_movements",
    "filter_movements",
    "ProductRank",
    "SellerRank",
    "HeatmapCell",
    "DailyTotal",
    "PerformanceSummary",
    "ReconciliationEngine",
]
