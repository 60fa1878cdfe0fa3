"""Tests for the cash-drawer shift lifecycle."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest

from pos_ledger.constants import SheetName, ShiftState
from pos_ledger.core_logic import CartItem
from pos_ledger.data_manager import Payment, ShiftRow
from pos_ledger.errors import NotFoundError, ValidationError
from pos_ledger.identity import CommittedId, mint_pending
from pos_ledger.shifts import SalesBasis


@pytest.fixture
def cola(product_factory):
    return product_factory("Cola", price="10", stock=100)


@pytest.fixture
def sell(ledger, cola):
    """Sell ``quantity`` colas for cash, optionally inside a shift."""

    def _sell(quantity, *, seller_id="seller-1", shift_id=None):
        amount = Decimal("10") * quantity
        return ledger.record_sale(
            [CartItem(cola, quantity)],
            None,
            [Payment("cash", amount)],
            seller_id=seller_id,
            shift_id=shift_id,
        ).unwrap()

    return _sell


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


def test_open_shift_stores_open_row(shift_manager, store, clock):
    """Opening a shift records the drawer amount and the opening time."""

    shift_id = shift_manager.open_shift("seller-1", "main", Decimal("100")).unwrap()

    shift = store.get(SheetName.SHIFTS, shift_id)
    assert shift.state == ShiftState.OPEN.value
    assert shift.opening_amount == Decimal("100")
    assert shift.opened_at == clock().isoformat()
    assert shift.sale_ids == ()
    assert shift_manager.find_open_shift("seller-1", "main") == shift


def test_second_open_shift_for_same_seller_is_rejected(shift_manager):
    """A seller has at most one open shift per scope."""

    shift_manager.open_shift("seller-1", "main", Decimal("0")).unwrap()

    duplicate = shift_manager.open_shift("seller-1", "main", Decimal("0"))

    assert isinstance(duplicate.error, ValidationError)
    assert shift_manager.open_shift("seller-2", "main", Decimal("0")).ok
    assert shift_manager.open_shift("seller-1", "branch", Decimal("0")).ok


def test_open_shift_rechecks_under_store_lock(shift_manager, store, monkeypatch):
    """A shift opened between the request and the write is still detected."""

    rival = ShiftRow("H-rival", "main", "seller-1", Decimal("0"), "2024-05-15T09:00:00+00:00", ShiftState.OPEN.value)
    monkeypatch.setattr(shift_manager, "find_open_shift", Mock(side_effect=[None, rival]))

    outcome = shift_manager.open_shift("seller-1", "main", Decimal("0"))

    assert isinstance(outcome.error, ValidationError)
    assert "H-rival" in str(outcome.error)
    assert list(store.scan(SheetName.SHIFTS)) == []


@pytest.mark.parametrize("args", [("seller-1", "main", Decimal("-1")), ("", "main", Decimal("0"))])
def test_open_shift_validates_input(shift_manager, args):
    """Negative drawer amounts and blank sellers are rejected."""

    assert isinstance(shift_manager.open_shift(*args).error, ValidationError)


# ---------------------------------------------------------------------------
# Closing
# ---------------------------------------------------------------------------


def test_close_shift_by_membership(shift_manager, store, sell, clock):
    """Totals come from the sales recorded against the shift."""

    shift_id = shift_manager.open_shift("seller-1", "main", Decimal("100")).unwrap()
    sell(5, shift_id=shift_id)
    sell(3, shift_id=shift_id)
    sell(1)
    clock.advance(hours=8)

    closure = shift_manager.close_shift(shift_id, Decimal("170")).unwrap()

    assert closure.total_sales == Decimal("80")
    assert closure.total_final == Decimal("180")
    assert closure.difference == Decimal("-10")
    shift = store.get(SheetName.SHIFTS, shift_id)
    assert shift.state == ShiftState.CLOSED.value
    assert shift.total_final == Decimal("180")
    assert shift.counted_amount == Decimal("170")
    assert shift.closed_at == clock().isoformat()
    assert shift_manager.find_open_shift("seller-1", "main") is None


def test_close_shift_by_time_range(shift_manager, store, sell, clock):
    """Without recorded sales the seller's sales since opening are used."""

    sell(2)
    clock.advance(minutes=1)
    shift_id = shift_manager.open_shift("seller-1", "main", Decimal("50")).unwrap()
    clock.advance(minutes=5)
    sell(4)
    sell(7, seller_id="seller-2")
    clock.advance(hours=1)

    closure = shift_manager.close_shift(shift_id).unwrap()

    assert closure.total_sales == Decimal("40")
    assert closure.total_final == Decimal("90")
    assert closure.counted_amount is None
    assert closure.difference is None
    assert store.get(SheetName.SHIFTS, shift_id).counted_amount is None


def test_explicit_time_range_basis_overrides_membership(shift_manager, sell, clock):
    """Callers can ask for the time-range basis even when sales were recorded."""

    shift_id = shift_manager.open_shift("seller-1", "main", Decimal("0")).unwrap()
    sell(1, shift_id=shift_id)
    sell(2)

    membership = shift_manager.preview_closure(shift_id).unwrap()
    time_range = shift_manager.preview_closure(shift_id, SalesBasis.TIME_RANGE).unwrap()

    assert membership.total_sales == Decimal("10")
    assert time_range.total_sales == Decimal("30")


def test_preview_does_not_close(shift_manager, store, sell):
    """Previewing computes totals and leaves the shift open."""

    shift_id = shift_manager.open_shift("seller-1", "main", Decimal("20")).unwrap()
    sell(1, shift_id=shift_id)

    preview = shift_manager.preview_closure(shift_id).unwrap()

    assert preview.total_final == Decimal("30")
    assert store.get(SheetName.SHIFTS, shift_id).state == ShiftState.OPEN.value


def test_reversed_sales_drop_out_of_membership(shift_manager, ledger, sell):
    """A listed sale that was reversed no longer counts towards the shift."""

    shift_id = shift_manager.open_shift("seller-1", "main", Decimal("0")).unwrap()
    sell(1, shift_id=shift_id)
    reversed_sale = sell(2, shift_id=shift_id)
    ledger.reverse_sale(reversed_sale).unwrap()

    closure = shift_manager.close_shift(shift_id).unwrap()

    assert closure.total_sales == Decimal("10")


def test_closed_shift_cannot_be_closed_again(shift_manager):
    """Closed shifts are final."""

    shift_id = shift_manager.open_shift("seller-1", "main", Decimal("0")).unwrap()
    shift_manager.close_shift(shift_id).unwrap()

    assert isinstance(shift_manager.close_shift(shift_id).error, ValidationError)
    assert isinstance(shift_manager.preview_closure(shift_id).error, ValidationError)
    assert shift_manager.open_shift("seller-1", "main", Decimal("0")).ok


def test_close_shift_rejects_bad_references(shift_manager):
    """Pending references are invalid and unknown shifts are not found."""

    assert isinstance(shift_manager.close_shift(mint_pending()).error, ValidationError)
    assert isinstance(shift_manager.close_shift(CommittedId("H-missing")).error, NotFoundError)


def test_close_shift_rejects_negative_count(shift_manager, store):
    """A negative counted amount leaves the shift open."""

    shift_id = shift_manager.open_shift("seller-1", "main", Decimal("0")).unwrap()

    assert isinstance(shift_manager.close_shift(shift_id, Decimal("-5")).error, ValidationError)
    assert store.get(SheetName.SHIFTS, shift_id).state == ShiftState.OPEN.value


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


def test_closed_shifts_are_listed_newest_first(shift_manager, clock):
    """History lists only closed shifts, most recently closed first."""

    early = shift_manager.open_shift("seller-1", "main", Decimal("0")).unwrap()
    late = shift_manager.open_shift("seller-2", "main", Decimal("0")).unwrap()
    shift_manager.open_shift("seller-3", "main", Decimal("0")).unwrap()
    clock.advance(hours=1)
    shift_manager.close_shift(early).unwrap()
    clock.advance(hours=1)
    shift_manager.close_shift(late).unwrap()

    history = shift_manager.closed_shifts("main")

    assert [shift.shift_id for shift in history] == [late.value, early.value]
    assert shift_manager.closed_shifts("branch") == []
