"""Cash-drawer shift lifecycle.

A shift moves from *open* to *closed* and never changes again once closed.
At most one shift may be open per seller and scope; the rule is checked when
the request arrives and again under the store lock when the shift is written.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from . import log
from .constants import SheetName, ShiftState
from .core_logic import require_nonnegative_money, require_text
from .data_manager import LedgerStore, SaleRow, ShiftRow
from .errors import ValidationError, returns_outcome
from .identity import CommittedId, RecordId, require_committed
from .reconciliation import ReconciliationEngine, parse_timestamp


class SalesBasis(str, Enum):
    """How the sales belonging to a shift are selected at closing time."""

    MEMBERSHIP = "membership"
    TIME_RANGE = "time_range"


@dataclass(frozen=True)
class ShiftClosure:
    """Totals computed when a shift is closed or previewed."""

    shift_id: str
    total_sales: Decimal
    total_final: Decimal
    counted_amount: Optional[Decimal] = None
    difference: Optional[Decimal] = None


class ShiftManager:
    """Opens and closes shifts on top of the store and the reconciliation engine."""

    def __init__(self, store: LedgerStore, engine: ReconciliationEngine) -> None:
        self.store = store
        self.engine = engine

    def find_open_shift(self, seller_id: str, scope: str) -> Optional[ShiftRow]:
        for shift in self.store.scan(SheetName.SHIFTS, scope=scope):
            if shift.seller_id == seller_id and shift.state == ShiftState.OPEN.value:
                return shift
        return None

    def closed_shifts(self, scope: Optional[str] = None) -> List[ShiftRow]:
        """Closed shifts, most recently closed first."""

        closed = [
            shift
            for shift in self.store.scan(SheetName.SHIFTS, scope=scope)
            if shift.state == ShiftState.CLOSED.value
        ]
        floor = datetime.min.replace(tzinfo=self.engine.tz)
        closed.sort(key=lambda shift: parse_timestamp(shift.closed_at, self.engine.tz) or floor, reverse=True)
        return closed

    @returns_outcome
    def open_shift(self, seller_id: str, scope: str, opening_amount: Decimal) -> CommittedId:
        """Open a shift for ``seller_id`` with the cash placed in the drawer.

        Raises:
            ValidationError: If the seller already has an open shift in
                ``scope`` or the opening amount is negative.
        """

        seller = require_text(seller_id, "Seller")
        scope = require_text(scope, "Scope")
        opening = require_nonnegative_money(opening_amount, "Opening amount")

        def no_open_shift(store: LedgerStore) -> None:
            existing = self.find_open_shift(seller, scope)
            if existing is not None:
                raise ValidationError(
                    f"Seller '{seller}' already has open shift '{existing.shift_id}' in scope '{scope}'"
                )

        no_open_shift(self.store)
        shift = ShiftRow(
            shift_id=self.store.reserve_id(SheetName.SHIFTS),
            scope=scope,
            seller_id=seller,
            opening_amount=opening,
            opened_at=self.store.now().isoformat(),
            state=ShiftState.OPEN.value,
        )
        batch = self.store.batch()
        batch.guard(no_open_shift)
        batch.create(SheetName.SHIFTS, shift)
        batch.commit()
        log.info("Opened shift '%s' for seller '%s' (opening=%s)", shift.shift_id, seller, opening)
        return CommittedId(shift.shift_id)

    def _open_shift_row(self, shift_ref: RecordId) -> ShiftRow:
        shift: ShiftRow = self.store.get(SheetName.SHIFTS, require_committed(shift_ref, "shift"))
        if shift.state != ShiftState.OPEN.value:
            raise ValidationError(f"Shift '{shift.shift_id}' is already closed")
        return shift

    def _session_sales(self, shift: ShiftRow, until: datetime, basis: Optional[SalesBasis]) -> List[SaleRow]:
        if basis is None:
            basis = SalesBasis.MEMBERSHIP if shift.sale_ids else SalesBasis.TIME_RANGE
        if basis is SalesBasis.MEMBERSHIP:
            return self.engine.sales_for_ids(shift.sale_ids)
        opened = parse_timestamp(shift.opened_at, self.engine.tz)
        if opened is None:
            raise ValidationError(f"Shift '{shift.shift_id}' has an unreadable opening time")
        return self.engine.sales_between(opened, until.astimezone(self.engine.tz), shift.scope, shift.seller_id)

    def _closure(
        self,
        shift: ShiftRow,
        until: datetime,
        basis: Optional[SalesBasis],
        counted_amount: Optional[Decimal],
    ) -> ShiftClosure:
        sales = self._session_sales(shift, until, basis)
        total_sales = sum((sale.total for sale in sales), Decimal("0"))
        total_final = shift.opening_amount + total_sales
        difference = None if counted_amount is None else counted_amount - total_final
        return ShiftClosure(
            shift_id=shift.shift_id,
            total_sales=total_sales,
            total_final=total_final,
            counted_amount=counted_amount,
            difference=difference,
        )

    @returns_outcome
    def preview_closure(self, shift_id: RecordId, basis: Optional[SalesBasis] = None) -> ShiftClosure:
        """Compute the expected closing balance without closing the shift."""

        shift = self._open_shift_row(shift_id)
        return self._closure(shift, self.store.now(), basis, None)

    @returns_outcome
    def close_shift(
        self,
        shift_id: RecordId,
        counted_amount: Optional[Decimal] = None,
        basis: Optional[SalesBasis] = None,
    ) -> ShiftClosure:
        """Close an open shift and store its totals.

        Session sales are taken from the shift's recorded sale ids, or, when
        it has none, from the seller's sales between opening and now.
        ``total_final`` is the opening amount plus every session sale. A
        counted amount, when given, is stored alongside its difference
        against ``total_final``.

        Raises:
            ValidationError: If the shift is pending, already closed or the
                counted amount is negative.
            NotFoundError: If the shift does not exist.
        """

        shift = self._open_shift_row(shift_id)
        counted = None if counted_amount is None else require_nonnegative_money(counted_amount, "Counted amount")
        closed_at = self.store.now()
        closure = self._closure(shift, closed_at, basis, counted)

        def still_open(store: LedgerStore) -> None:
            current: ShiftRow = store.get(SheetName.SHIFTS, shift.shift_id)
            if current.state != ShiftState.OPEN.value:
                raise ValidationError(f"Shift '{shift.shift_id}' is already closed")

        batch = self.store.batch()
        batch.guard(still_open)
        batch.update(
            SheetName.SHIFTS,
            shift_id,
            state=ShiftState.CLOSED.value,
            total_sales=closure.total_sales,
            total_final=closure.total_final,
            counted_amount=counted,
            closed_at=closed_at.isoformat(),
        )
        batch.commit()
        log.info(
            "Closed shift '%s' (sales=%s, final=%s, difference=%s)",
            shift.shift_id,
            closure.total_sales,
            closure.total_final,
            closure.difference,
        )
        return closure


__all__ = ["SalesBasis", "ShiftClosure", "ShiftManager"]
