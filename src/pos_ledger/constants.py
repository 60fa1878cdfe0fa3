"""Enumerations shared across the POS ledger modules.

Keeps the identifiers used by the storage boundary, the transaction
orchestrator, the reconciliation engine and the command-line front end in a
single place.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Client reference stored on sales that were not attributed to a customer.
WALK_IN_CLIENT = "walk-in"
WALK_IN_NAME = "Walk-in"


class PaymentMethod(str, Enum):
    """Enumerate the payment method tags recognised at the till."""

    CASH = "cash"
    CARD = "card"
    DEBIT_CARD = "debit_card"
    TRANSFER = "transfer"
    QR = "qr"
    ON_ACCOUNT = "on_account"


class ReceiptType(str, Enum):
    """Enumerate the receipt types a sale may be issued with."""

    TICKET = "ticket"
    INVOICE_A = "invoice_a"
    INVOICE_B = "invoice_b"
    INVOICE_C = "invoice_c"


class NoteType(str, Enum):
    """Enumerate post-sale adjustment note types."""

    CREDIT = "credit"
    DEBIT = "debit"


class ShiftState(str, Enum):
    """Enumerate the lifecycle states of a cash-drawer shift."""

    OPEN = "open"
    CLOSED = "closed"


class MovementKind(str, Enum):
    """Enumerate the row kinds merged into a cash movement view."""

    SALE = "Sale"
    MANUAL_INCOME = "Manual Income"
    EXPENSE = "Expense"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the ledger store."""

    PRODUCTS = "Products"
    SALES = "Sales"
    EXPENSES = "Expenses"
    MANUAL_INCOMES = "ManualIncomes"
    NOTES = "Notes"
    SHIFTS = "Shifts"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "WALK_IN_CLIENT",
    "WALK_IN_NAME",
    "PaymentMethod",
    "ReceiptType",
    "NoteType",
    "ShiftState",
    "MovementKind",
    "SheetName",
]
