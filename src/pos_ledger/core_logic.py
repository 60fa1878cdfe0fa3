"""Business logic layer for the POS ledger.

This module holds the transaction orchestrator. Every business event (a sale,
a reversal, a note, a cash movement) is validated here first and then
expressed as a single :class:`~pos_ledger.data_manager.WriteBatch`, so the
store either applies all of its effects or none of them.

Public operations of :class:`SalesLedger` return an
:class:`~pos_ledger.errors.Outcome` instead of raising ledger errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Type, TypeVar
from zoneinfo import ZoneInfo

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, WALK_IN_CLIENT, WALK_IN_NAME, NoteType, PaymentMethod, ReceiptType, SheetName, ShiftState
from .data_manager import CashEntryRow, LedgerStore, NoteItem, NoteRow, Payment, ProductRow, SaleLine, SaleRow, ShiftRow
from .errors import InsufficientStockError, PersistenceError, ValidationError, returns_outcome
from .identity import CommittedId, RecordId, require_committed
from .reconciliation import ReconciliationEngine

if TYPE_CHECKING:
    from .shifts import ShiftManager


E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class CartItem:
    """One line of a cart submitted for checkout."""

    product: RecordId
    quantity: int
    unit_price: Optional[Decimal] = None
    discount_pct: Optional[Decimal] = None


@dataclass(frozen=True)
class ReturnedItem:
    """A product coming back into stock through a credit note."""

    product: RecordId
    quantity: int


@dataclass(frozen=True)
class NoteDraft:
    """User intent for a credit or debit note."""

    note_type: NoteType
    reason: str
    amount: Decimal
    client: Optional[RecordId] = None
    client_name: Optional[str] = None
    related_sale: Optional[RecordId] = None


@dataclass(frozen=True)
class RuntimeContext:
    """Container for the settings and services used by the front ends."""

    settings: data_manager.ConfigSettings
    store: LedgerStore
    ledger: "SalesLedger"
    reports: ReconciliationEngine
    shifts: "ShiftManager"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: object) -> int:
    """Validate that a quantity is a strictly positive whole number.

    Raises:
        ValidationError: If ``quantity`` is not an ``int`` or is not above zero.
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError(f"Quantity must be a positive whole number, got {quantity!r}")
    return quantity


def to_money(value: object, what: str = "Amount") -> Decimal:
    """Coerce ``value`` into a finite :class:`~decimal.Decimal`.

    Raises:
        ValidationError: If the value cannot be read as a number.
    """

    if isinstance(value, bool):
        raise ValidationError(f"{what} must be numeric, got {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        log.error("%s is not numeric: %r", what, value)
        raise ValidationError(f"{what} must be numeric, got {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"{what} must be a finite number, got {value!r}")
    return amount


def require_positive_money(value: object, what: str = "Amount") -> Decimal:
    amount = to_money(value, what)
    if amount <= Decimal("0"):
        log.error("%s validation failed: %s", what, amount)
        raise ValidationError(f"{what} must be greater than zero")
    return amount


def require_nonnegative_money(value: object, what: str = "Amount") -> Decimal:
    amount = to_money(value, what)
    if amount < Decimal("0"):
        log.error("%s validation failed: %s", what, amount)
        raise ValidationError(f"{what} must be zero or positive")
    return amount


def require_discount_pct(value: object) -> Decimal:
    """Validate a line discount percentage; ``None`` means no discount."""

    if value is None:
        return Decimal("0")
    pct = to_money(value, "Discount")
    if pct < 0 or pct > 100:
        log.error("Discount validation failed: %s", pct)
        raise ValidationError("Discount must be between 0 and 100 percent")
    return pct


def apply_discount(price: Decimal, discount_pct: Decimal) -> Decimal:
    """Take ``discount_pct`` percent off ``price``, rounded half-up to cents."""

    if not discount_pct:
        return price
    return (price * (100 - discount_pct) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def require_text(value: Optional[str], what: str) -> str:
    if value is None or not str(value).strip():
        log.error("%s is required", what)
        raise ValidationError(f"{what} must not be empty")
    return str(value).strip()


def coerce_enum(enum_type: Type[E], value: object, what: str) -> E:
    try:
        return enum_type(value)
    except ValueError as exc:
        log.error("Unsupported %s: %r", what, value)
        raise ValidationError(f"Unsupported {what}: {value!r}") from exc


# ---------------------------------------------------------------------------
# Transaction orchestrator
# ---------------------------------------------------------------------------


class SalesLedger:
    """Validates business events and commits each one as a single write set.

    Args:
        store (LedgerStore): Store every read and write goes through.
        scope (str): Default business scope (branch) for new records.
    """

    def __init__(self, store: LedgerStore, *, scope: str) -> None:
        self.store = store
        self.scope = scope

    def _scope(self, scope: Optional[str]) -> str:
        return scope if scope else self.scope

    def _product(self, product_id: str, scope: str) -> ProductRow:
        product = self.store.get(SheetName.PRODUCTS, product_id)
        if product.scope != scope:
            log.error("Product '%s' belongs to scope '%s', not '%s'", product_id, product.scope, scope)
            raise ValidationError(f"Product '{product_id}' does not belong to scope '{scope}'")
        return product

    # -- catalog -------------------------------------------------------------

    @returns_outcome
    def register_product(
        self,
        name: str,
        unit_price: Decimal,
        unit_cost: Decimal,
        stock: int = 0,
        barcode: Optional[str] = None,
        *,
        scope: Optional[str] = None,
    ) -> CommittedId:
        """Add a product to the catalog.

        Barcodes are optional but must be unique within a scope when present.
        """

        scope = self._scope(scope)
        name = require_text(name, "Product name")
        price = require_nonnegative_money(unit_price, "Unit price")
        cost = require_nonnegative_money(unit_cost, "Unit cost")
        if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
            raise ValidationError(f"Initial stock must be a non-negative whole number, got {stock!r}")
        barcode = barcode.strip() if barcode and barcode.strip() else None

        def barcode_is_free(store: LedgerStore) -> None:
            if barcode is None:
                return
            for existing in store.scan(SheetName.PRODUCTS, scope=scope):
                if existing.barcode == barcode:
                    raise ValidationError(f"Barcode '{barcode}' is already used by product '{existing.product_id}'")

        barcode_is_free(self.store)
        product = ProductRow(
            product_id=self.store.reserve_id(SheetName.PRODUCTS),
            name=name,
            barcode=barcode,
            unit_price=price,
            unit_cost=cost,
            stock=stock,
            scope=scope,
        )
        batch = self.store.batch()
        batch.guard(barcode_is_free)
        batch.create(SheetName.PRODUCTS, product)
        batch.commit()
        log.info("Registered product '%s' (%s) with stock %d", product.product_id, name, stock)
        return CommittedId(product.product_id)

    def list_products(self, *, scope: Optional[str] = None) -> List[ProductRow]:
        """Return every catalog product of ``scope``."""

        return list(self.store.scan(SheetName.PRODUCTS, scope=self._scope(scope)))

    @returns_outcome
    def get_sale(self, sale_id: RecordId) -> SaleRow:
        return self.store.get(SheetName.SALES, require_committed(sale_id, "sale"))

    # -- sales ---------------------------------------------------------------

    @returns_outcome
    def record_sale(
        self,
        items: Sequence[CartItem],
        client: Optional[RecordId],
        payments: Sequence[Payment],
        *,
        seller_id: str,
        seller_name: Optional[str] = None,
        client_name: Optional[str] = None,
        receipt_type: ReceiptType = ReceiptType.TICKET,
        shift_id: Optional[RecordId] = None,
        scope: Optional[str] = None,
    ) -> CommittedId:
        """Record a sale and deduct its quantities from stock in one write set.

        Quantities of duplicate cart lines are summed per product before the
        stock check. Stock is read before the write set is committed and the
        check is not repeated under the store lock, so two concurrent sales
        of the last units can both succeed and leave stock negative.

        Args:
            items (Sequence[CartItem]): Cart lines; unit prices default to the
                catalog price and an optional percentage discount is taken
                off per line.
            client (RecordId | None): Committed client reference, ``None`` for a
                walk-in customer.
            payments (Sequence[Payment]): Tenders whose amounts must add up to
                the sale total.
            seller_id (str): Seller attributed with the sale.
            shift_id (RecordId | None): Open shift the sale belongs to.

        Returns:
            CommittedId: Identifier of the new sale.

        Raises:
            ValidationError: On an empty cart, pending reference, bad quantity,
                payment mismatch or closed shift.
            NotFoundError: If a product or the shift does not exist.
            InsufficientStockError: For the first product short of stock.
        """

        scope = self._scope(scope)
        if not items:
            raise ValidationError("A sale needs at least one cart item")
        seller = require_text(seller_id, "Seller")
        receipt = coerce_enum(ReceiptType, receipt_type, "receipt type")
        if client is None:
            client_id, client_label = WALK_IN_CLIENT, client_name or WALK_IN_NAME
        else:
            client_id = require_committed(client, "client")
            client_label = client_name or client_id

        products: Dict[str, ProductRow] = {}
        requested: Dict[str, int] = {}
        lines: List[SaleLine] = []
        for item in items:
            product_id = require_committed(item.product, "product")
            quantity = require_positive_quantity(item.quantity)
            if product_id not in products:
                products[product_id] = self._product(product_id, scope)
            product = products[product_id]
            original_price = (
                product.unit_price
                if item.unit_price is None
                else require_nonnegative_money(item.unit_price, "Unit price")
            )
            discount = require_discount_pct(item.discount_pct)
            lines.append(
                SaleLine(
                    product_id=product_id,
                    product_name=product.name,
                    quantity=quantity,
                    unit_price=apply_discount(original_price, discount),
                    unit_cost=product.unit_cost,
                    original_price=original_price,
                    discount_pct=discount,
                )
            )
            requested[product_id] = requested.get(product_id, 0) + quantity

        if not payments:
            raise ValidationError("A sale needs at least one payment")
        tenders = [
            Payment(
                method=coerce_enum(PaymentMethod, payment.method, "payment method").value,
                amount=require_positive_money(payment.amount, "Payment amount"),
            )
            for payment in payments
        ]
        total = sum((line.subtotal for line in lines), Decimal("0"))
        paid = sum((tender.amount for tender in tenders), Decimal("0"))
        if paid != total:
            log.error("Payment mismatch: paid %s for a total of %s", paid, total)
            raise ValidationError(f"Payments add up to {paid} but the sale total is {total}")

        for product_id, quantity in requested.items():
            product = products[product_id]
            if product.stock < quantity:
                log.warning(
                    "Insufficient stock for '%s': requested %d, available %d",
                    product_id,
                    quantity,
                    product.stock,
                )
                raise InsufficientStockError(product_id, product.name, quantity, product.stock)

        sale = SaleRow(
            sale_id=self.store.reserve_id(SheetName.SALES),
            scope=scope,
            client_id=client_id,
            client_name=client_label,
            seller_id=seller,
            seller_name=seller_name or seller,
            receipt_type=receipt.value,
            total=total,
            items=tuple(lines),
            payments=tuple(tenders),
        )

        batch = self.store.batch()
        references: List[RecordId] = [item.product for item in items]
        if client is not None:
            references.append(client)
        if shift_id is not None:
            references.append(shift_id)
            self._attach_to_shift(batch, shift_id, sale.sale_id, scope)
        batch.create(SheetName.SALES, sale, references=references)
        for product_id, quantity in requested.items():
            batch.increment_stock(CommittedId(product_id), -quantity)
        batch.commit()

        log.info(
            "Recorded sale '%s' (%d line(s), total=%s, seller=%s)",
            sale.sale_id,
            len(lines),
            total,
            seller,
        )
        return CommittedId(sale.sale_id)

    def _attach_to_shift(self, batch: data_manager.WriteBatch, shift_ref: RecordId, sale_id: str, scope: str) -> None:
        shift_id = require_committed(shift_ref, "shift")
        shift: ShiftRow = self.store.get(SheetName.SHIFTS, shift_id)
        if shift.state != ShiftState.OPEN.value:
            raise ValidationError(f"Shift '{shift_id}' is not open")
        if shift.scope != scope:
            raise ValidationError(f"Shift '{shift_id}' does not belong to scope '{scope}'")

        def shift_unchanged(store: LedgerStore) -> None:
            current: ShiftRow = store.get(SheetName.SHIFTS, shift_id)
            if current.state != ShiftState.OPEN.value:
                raise ValidationError(f"Shift '{shift_id}' was closed before the sale was stored")
            if current.sale_ids != shift.sale_ids:
                raise PersistenceError(f"Shift '{shift_id}' changed while the sale was prepared")

        batch.guard(shift_unchanged)
        batch.update(SheetName.SHIFTS, shift_ref, sale_ids=shift.sale_ids + (sale_id,))

    @returns_outcome
    def reverse_sale(self, sale_id: RecordId) -> None:
        """Delete a sale and put every sold unit back into stock.

        Products removed from the catalog since the sale are skipped with a
        warning. Voided sales cannot be reversed because their stock has
        already been restored.

        Raises:
            ValidationError: If ``sale_id`` is pending or the sale was voided.
            NotFoundError: If the sale does not exist (including a second
                reversal).
        """

        key = require_committed(sale_id, "sale")
        sale: SaleRow = self.store.get(SheetName.SALES, key)
        if sale.voided:
            raise ValidationError(f"Sale '{key}' was voided and cannot be reversed")

        batch = self.store.batch()
        batch.delete(SheetName.SALES, sale_id)
        for line in sale.items:
            batch.increment_stock(CommittedId(line.product_id), line.quantity, missing_ok=True)
        batch.commit()
        log.info("Reversed sale '%s' and restored %d line(s) to stock", key, len(sale.items))

    @returns_outcome
    def void_sale(self, sale_id: RecordId, reason: Optional[str] = None) -> CommittedId:
        """Void a sale through a credit note covering all of its lines.

        The sale stays on record flagged as voided, a credit note for the full
        total is created and every line is returned to stock, all in one write
        set.

        Returns:
            CommittedId: Identifier of the credit note.
        """

        key = require_committed(sale_id, "sale")
        sale: SaleRow = self.store.get(SheetName.SALES, key)

        def not_yet_voided(store: LedgerStore) -> None:
            current: SaleRow = store.get(SheetName.SALES, key)
            if current.voided or current.credit_note_id:
                raise ValidationError(f"Sale '{key}' has already been voided")
            for note in store.scan(SheetName.NOTES):
                if note.note_type == NoteType.CREDIT.value and note.related_sale_id == key:
                    raise ValidationError(f"Sale '{key}' already has credit note '{note.note_id}'")

        not_yet_voided(self.store)
        note = NoteRow(
            note_id=self.store.reserve_id(SheetName.NOTES),
            scope=sale.scope,
            note_type=NoteType.CREDIT.value,
            related_sale_id=key,
            client_id=sale.client_id,
            client_name=sale.client_name,
            reason=reason.strip() if reason and reason.strip() else f"Void of sale {key}",
            amount=sale.total,
            returned_items=tuple(NoteItem(product_id=line.product_id, quantity=line.quantity) for line in sale.items),
        )

        batch = self.store.batch()
        batch.guard(not_yet_voided)
        batch.update(SheetName.SALES, sale_id, voided=True, credit_note_id=note.note_id)
        batch.create(SheetName.NOTES, note, references=[sale_id])
        for line in sale.items:
            batch.increment_stock(CommittedId(line.product_id), line.quantity, missing_ok=True)
        batch.commit()
        log.info("Voided sale '%s' with credit note '%s' (amount=%s)", key, note.note_id, sale.total)
        return CommittedId(note.note_id)

    # -- notes ---------------------------------------------------------------

    def _build_note(self, draft: NoteDraft, expected: NoteType, scope: str, returned: Sequence[NoteItem] = ()) -> NoteRow:
        note_type = coerce_enum(NoteType, draft.note_type, "note type")
        if note_type is not expected:
            raise ValidationError(f"Expected a {expected.value} note, got {note_type.value}")
        reason = require_text(draft.reason, "Note reason")
        amount = require_positive_money(draft.amount, "Note amount")

        related_sale_id: Optional[str] = None
        if draft.related_sale is not None:
            related_sale_id = require_committed(draft.related_sale, "related sale")
            self.store.get(SheetName.SALES, related_sale_id)

        if draft.client is None:
            client_id, client_name = WALK_IN_CLIENT, draft.client_name or WALK_IN_NAME
        else:
            client_id = require_committed(draft.client, "client")
            client_name = draft.client_name or client_id

        return NoteRow(
            note_id=self.store.reserve_id(SheetName.NOTES),
            scope=scope,
            note_type=note_type.value,
            related_sale_id=related_sale_id,
            client_id=client_id,
            client_name=client_name,
            reason=reason,
            amount=amount,
            returned_items=tuple(returned),
        )

    @staticmethod
    def _note_references(draft: NoteDraft) -> List[RecordId]:
        return [ref for ref in (draft.client, draft.related_sale) if ref is not None]

    @returns_outcome
    def record_credit_note(
        self,
        note: NoteDraft,
        returned_items: Sequence[ReturnedItem] = (),
        *,
        scope: Optional[str] = None,
    ) -> CommittedId:
        """Create a credit note and restock any returned items with it.

        Args:
            note (NoteDraft): Note header; ``note_type`` must be ``credit``.
            returned_items (Sequence[ReturnedItem]): Products coming back. An
                empty sequence creates the note without touching stock.

        Returns:
            CommittedId: Identifier of the new note.
        """

        scope = self._scope(scope)
        returned: List[NoteItem] = []
        for item in returned_items:
            product_id = require_committed(item.product, "returned product")
            quantity = require_positive_quantity(item.quantity)
            self._product(product_id, scope)
            returned.append(NoteItem(product_id=product_id, quantity=quantity))
        row = self._build_note(note, NoteType.CREDIT, scope, returned)

        batch = self.store.batch()
        batch.create(
            SheetName.NOTES,
            row,
            references=self._note_references(note) + [item.product for item in returned_items],
        )
        for item in returned:
            batch.increment_stock(CommittedId(item.product_id), item.quantity)
        batch.commit()
        log.info(
            "Recorded credit note '%s' (amount=%s, returned %d item(s))",
            row.note_id,
            row.amount,
            len(returned),
        )
        return CommittedId(row.note_id)

    @returns_outcome
    def record_debit_note(
        self,
        note: NoteDraft,
        items: Sequence[ReturnedItem] = (),
        *,
        scope: Optional[str] = None,
    ) -> CommittedId:
        """Create a debit note. Stock is never adjusted and ``items`` are not stored."""

        scope = self._scope(scope)
        for item in items:
            require_committed(item.product, "product")
        if items:
            log.info("Debit notes do not carry items; ignoring %d item(s)", len(items))
        row = self._build_note(note, NoteType.DEBIT, scope)

        batch = self.store.batch()
        batch.create(SheetName.NOTES, row, references=self._note_references(note))
        batch.commit()
        log.info("Recorded debit note '%s' (amount=%s)", row.note_id, row.amount)
        return CommittedId(row.note_id)

    # -- cash movements ------------------------------------------------------

    def _record_cash_entry(self, sheet: SheetName, description: str, amount: Decimal, scope: Optional[str]) -> CommittedId:
        entry = CashEntryRow(
            entry_id=self.store.reserve_id(sheet),
            scope=self._scope(scope),
            description=require_text(description, "Description"),
            amount=require_positive_money(amount),
        )
        batch = self.store.batch()
        batch.create(sheet, entry)
        batch.commit()
        log.info("Recorded %s entry '%s' (amount=%s)", sheet.value, entry.entry_id, entry.amount)
        return CommittedId(entry.entry_id)

    @returns_outcome
    def record_manual_income(self, description: str, amount: Decimal, *, scope: Optional[str] = None) -> CommittedId:
        return self._record_cash_entry(SheetName.MANUAL_INCOMES, description, amount, scope)

    @returns_outcome
    def record_expense(self, description: str, amount: Decimal, *, scope: Optional[str] = None) -> CommittedId:
        return self._record_cash_entry(SheetName.EXPENSES, description, amount, scope)

    def _delete(self, sheet: SheetName, ref: RecordId) -> None:
        key = require_committed(ref, sheet.value)
        self.store.get(sheet, key)
        batch = self.store.batch()
        batch.delete(sheet, ref)
        batch.commit()
        log.info("Deleted %s record '%s'", sheet.value, key)

    @returns_outcome
    def delete_manual_income(self, entry_id: RecordId) -> None:
        self._delete(SheetName.MANUAL_INCOMES, entry_id)

    @returns_outcome
    def delete_expense(self, entry_id: RecordId) -> None:
        self._delete(SheetName.EXPENSES, entry_id)

    @returns_outcome
    def delete_note(self, note_id: RecordId) -> None:
        """Remove a note. Stock restored by a credit note stays restored."""

        self._delete(SheetName.NOTES, note_id)


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def build_runtime_context(settings: data_manager.ConfigSettings, store: LedgerStore) -> RuntimeContext:
    """Wire the services around an already opened store."""

    from .shifts import ShiftManager

    reports = ReconciliationEngine(store, tz=ZoneInfo(settings.time_zone))
    return RuntimeContext(
        settings=settings,
        store=store,
        ledger=SalesLedger(store, scope=settings.default_scope),
        reports=reports,
        shifts=ShiftManager(store, reports),
    )


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> RuntimeContext:
    """Load configuration settings and open the ledger store.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer performs its
            upward search from the current working directory.
        clock: Optional replacement for the store clock.

    Returns:
        RuntimeContext: Settings plus the ledger, reconciliation and shift
            services bound to one store.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing or the
            configured time zone is unknown.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = LedgerStore.open(settings.data_file, clock=clock)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


__all__ = [
    "CartItem",
    "ReturnedItem",
    "NoteDraft",
    "RuntimeContext",
    "SalesLedger",
    "require_positive_quantity",
    "to_money",
    "require_positive_money",
    "require_nonnegative_money",
    "require_discount_pct",
    "apply_discount",
    "build_runtime_context",
    "load_runtime_context",
    "ensure_schema_version",
]
