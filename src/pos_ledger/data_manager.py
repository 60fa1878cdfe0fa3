"""Ledger store boundary for the POS back end.

This module owns every read and write against the ``ledger.xlsx`` workbook.
Business rules live elsewhere; the store only guarantees that a write set is
applied completely or not at all.

The public API covers four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and atomically persisting the Excel file.
3. Record families: typed rows for products, sales, expenses, manual incomes,
   notes and shifts, with their worksheet (de)serialization.
4. Write batches: :class:`WriteBatch` collects creations, updates, deletions
   and stock increments, and :meth:`LedgerStore.commit` applies them as one
   indivisible unit.
"""


from __future__ import annotations

import configparser
import json
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, is_dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import SheetName
from .errors import NotFoundError, PersistenceError, ValidationError
from .identity import CommittedId, RecordId, require_committed


CONFIG_FILE_NAME = "config.ini"
DEFAULT_TIME_ZONE = "UTC"

# Errors a malformed worksheet row may raise while being deserialized.
MALFORMED_ROW_ERRORS = (ValueError, TypeError, KeyError, InvalidOperation)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_seller_id: str
    default_scope: str
    time_zone: str = DEFAULT_TIME_ZONE


# ---------------------------------------------------------------------------
# Record families
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    barcode: Optional[str]
    unit_price: Decimal
    unit_cost: Decimal
    stock: int
    scope: str
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class SaleLine:
    """One cart line frozen at sale time.

    ``unit_price`` is what the customer paid per unit, after ``discount_pct``
    was taken off ``original_price``.
    """

    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    unit_cost: Decimal
    original_price: Optional[Decimal] = None
    discount_pct: Decimal = Decimal("0")

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Payment:
    """A single tender applied to a sale."""

    method: str
    amount: Decimal


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    scope: str
    client_id: str
    client_name: str
    seller_id: str
    seller_name: str
    receipt_type: str
    total: Decimal
    items: Tuple[SaleLine, ...]
    payments: Tuple[Payment, ...]
    voided: bool = False
    credit_note_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class CashEntryRow:
    """In-memory view of a row from the ``Expenses`` or ``ManualIncomes`` sheet."""

    entry_id: str
    scope: str
    description: str
    amount: Decimal
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class NoteItem:
    """A product returned through a credit note."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class NoteRow:
    """In-memory view of a row from the ``Notes`` sheet."""

    note_id: str
    scope: str
    note_type: str
    related_sale_id: Optional[str]
    client_id: str
    client_name: str
    reason: str
    amount: Decimal
    returned_items: Tuple[NoteItem, ...] = ()
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class ShiftRow:
    """In-memory view of a row from the ``Shifts`` sheet."""

    shift_id: str
    scope: str
    seller_id: str
    opening_amount: Decimal
    opened_at: str
    state: str
    sale_ids: Tuple[str, ...] = ()
    total_sales: Optional[Decimal] = None
    total_final: Optional[Decimal] = None
    counted_amount: Optional[Decimal] = None
    closed_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


LedgerRow = Union[ProductRow, SaleRow, CashEntryRow, NoteRow, ShiftRow]


# ---------------------------------------------------------------------------
# Cell coercion helpers
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if raw is None or raw == "":
        return default
    return Decimal(str(raw))


def _to_int(raw: object, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    value = Decimal(str(raw))
    if value != value.to_integral_value():
        raise ValueError(f"Expected a whole number, found {raw!r}")
    return int(value)


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes"}
    return bool(raw)


def _to_text(raw: object, default: str = "") -> str:
    return default if raw is None else str(raw)


def _to_optional_text(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _to_timestamp_text(raw: object) -> str:
    # Excel date cells come back as datetime objects.
    if isinstance(raw, datetime):
        return raw.isoformat()
    return _to_text(raw)


def _json_list(raw: object) -> List[Any]:
    if raw is None or raw == "":
        return []
    loaded = json.loads(str(raw))
    if not isinstance(loaded, list):
        raise ValueError(f"Expected a JSON list, found {type(loaded).__name__}")
    return loaded


def _json_default(value: object) -> object:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot encode {type(value).__name__} as JSON")


def encode_cell(value: object) -> object:
    """Convert a record attribute into a value openpyxl can store.

    Nested collections are written as JSON text so a record always occupies a
    single worksheet row. Decimals are kept as :class:`~decimal.Decimal`.
    """

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (tuple, list)):
        items = [asdict(item) if is_dataclass(item) else item for item in value]
        return json.dumps(items, default=_json_default)
    return value


# ---------------------------------------------------------------------------
# Deserializers
# ---------------------------------------------------------------------------


def deserialize_product(raw: Mapping[str, object]) -> ProductRow:
    """Convert a header-keyed worksheet row into a :class:`ProductRow`."""

    return ProductRow(
        product_id=_to_text(raw["ProductID"]),
        name=_to_text(raw["Name"]),
        barcode=_to_optional_text(raw["Barcode"]),
        unit_price=_to_decimal(raw["UnitPrice"], Decimal("0.00")),
        unit_cost=_to_decimal(raw["UnitCost"], Decimal("0.00")),
        stock=_to_int(raw["Stock"]),
        scope=_to_text(raw["Scope"]),
        created_at=_to_timestamp_text(raw["CreatedAt"]),
        updated_at=_to_timestamp_text(raw["UpdatedAt"]),
    )


def deserialize_sale(raw: Mapping[str, object]) -> SaleRow:
    """Convert a header-keyed worksheet row into a :class:`SaleRow`.

    Line items and payments are decoded from their JSON cells. A cell holding
    invalid JSON or an unparsable amount raises ``ValueError`` so that the
    caller can treat the whole row as malformed.
    """

    items = tuple(
        SaleLine(
            product_id=_to_text(entry["product_id"]),
            product_name=_to_text(entry.get("product_name")),
            quantity=_to_int(entry["quantity"]),
            unit_price=_to_decimal(entry["unit_price"], Decimal("0.00")),
            unit_cost=_to_decimal(entry.get("unit_cost"), Decimal("0.00")),
            original_price=_to_decimal(entry.get("original_price")),
            discount_pct=_to_decimal(entry.get("discount_pct"), Decimal("0")),
        )
        for entry in _json_list(raw["Items"])
    )
    payments = tuple(
        Payment(method=_to_text(entry["method"]), amount=_to_decimal(entry["amount"], Decimal("0.00")))
        for entry in _json_list(raw["Payments"])
    )
    return SaleRow(
        sale_id=_to_text(raw["SaleID"]),
        scope=_to_text(raw["Scope"]),
        client_id=_to_text(raw["ClientID"]),
        client_name=_to_text(raw["ClientName"]),
        seller_id=_to_text(raw["SellerID"]),
        seller_name=_to_text(raw["SellerName"]),
        receipt_type=_to_text(raw["ReceiptType"]),
        total=_to_decimal(raw["Total"], Decimal("0.00")),
        items=items,
        payments=payments,
        voided=_to_bool(raw["Voided"]),
        credit_note_id=_to_optional_text(raw["CreditNoteID"]),
        created_at=_to_timestamp_text(raw["CreatedAt"]),
        updated_at=_to_timestamp_text(raw["UpdatedAt"]),
    )


def deserialize_cash_entry(raw: Mapping[str, object]) -> CashEntryRow:
    """Convert a header-keyed worksheet row into a :class:`CashEntryRow`."""

    return CashEntryRow(
        entry_id=_to_text(raw["EntryID"]),
        scope=_to_text(raw["Scope"]),
        description=_to_text(raw["Description"]),
        amount=_to_decimal(raw["Amount"], Decimal("0.00")),
        created_at=_to_timestamp_text(raw["CreatedAt"]),
        updated_at=_to_timestamp_text(raw["UpdatedAt"]),
    )


def deserialize_note(raw: Mapping[str, object]) -> NoteRow:
    """Convert a header-keyed worksheet row into a :class:`NoteRow`."""

    returned = tuple(
        NoteItem(product_id=_to_text(entry["product_id"]), quantity=_to_int(entry["quantity"]))
        for entry in _json_list(raw["ReturnedItems"])
    )
    return NoteRow(
        note_id=_to_text(raw["NoteID"]),
        scope=_to_text(raw["Scope"]),
        note_type=_to_text(raw["NoteType"]),
        related_sale_id=_to_optional_text(raw["RelatedSaleID"]),
        client_id=_to_text(raw["ClientID"]),
        client_name=_to_text(raw["ClientName"]),
        reason=_to_text(raw["Reason"]),
        amount=_to_decimal(raw["Amount"], Decimal("0.00")),
        returned_items=returned,
        created_at=_to_timestamp_text(raw["CreatedAt"]),
        updated_at=_to_timestamp_text(raw["UpdatedAt"]),
    )


def deserialize_shift(raw: Mapping[str, object]) -> ShiftRow:
    """Convert a header-keyed worksheet row into a :class:`ShiftRow`."""

    return ShiftRow(
        shift_id=_to_text(raw["ShiftID"]),
        scope=_to_text(raw["Scope"]),
        seller_id=_to_text(raw["SellerID"]),
        opening_amount=_to_decimal(raw["OpeningAmount"], Decimal("0.00")),
        opened_at=_to_timestamp_text(raw["OpenedAt"]),
        state=_to_text(raw["State"]),
        sale_ids=tuple(_to_text(value) for value in _json_list(raw["SaleIDs"])),
        total_sales=_to_decimal(raw["TotalSales"]),
        total_final=_to_decimal(raw["TotalFinal"]),
        counted_amount=_to_decimal(raw["CountedAmount"]),
        closed_at=_to_optional_text(_to_timestamp_text(raw["ClosedAt"])),
        created_at=_to_timestamp_text(raw["CreatedAt"]),
        updated_at=_to_timestamp_text(raw["UpdatedAt"]),
    )


@dataclass(frozen=True)
class SheetSchema:
    """Column layout and converters for one record family."""

    sheet: SheetName
    id_prefix: str
    columns: Tuple[Tuple[str, str], ...]
    deserialize: Callable[[Mapping[str, object]], Any]

    @property
    def headers(self) -> List[str]:
        return [header for header, _ in self.columns]

    @property
    def id_header(self) -> str:
        return self.columns[0][0]

    @property
    def id_field(self) -> str:
        return self.columns[0][1]

    def header_for(self, field_name: str) -> str:
        for header, name in self.columns:
            if name == field_name:
                return header
        raise KeyError(f"Unknown {self.sheet.value} field: {field_name}")


SCHEMAS: Mapping[SheetName, SheetSchema] = {
    SheetName.PRODUCTS: SheetSchema(
        sheet=SheetName.PRODUCTS,
        id_prefix="P",
        columns=(
            ("ProductID", "product_id"),
            ("Name", "name"),
            ("Barcode", "barcode"),
            ("UnitPrice", "unit_price"),
            ("UnitCost", "unit_cost"),
            ("Stock", "stock"),
            ("Scope", "scope"),
            ("CreatedAt", "created_at"),
            ("UpdatedAt", "updated_at"),
        ),
        deserialize=deserialize_product,
    ),
    SheetName.SALES: SheetSchema(
        sheet=SheetName.SALES,
        id_prefix="S",
        columns=(
            ("SaleID", "sale_id"),
            ("Scope", "scope"),
            ("ClientID", "client_id"),
            ("ClientName", "client_name"),
            ("SellerID", "seller_id"),
            ("SellerName", "seller_name"),
            ("ReceiptType", "receipt_type"),
            ("Total", "total"),
            ("Items", "items"),
            ("Payments", "payments"),
            ("Voided", "voided"),
            ("CreditNoteID", "credit_note_id"),
            ("CreatedAt", "created_at"),
            ("UpdatedAt", "updated_at"),
        ),
        deserialize=deserialize_sale,
    ),
    SheetName.EXPENSES: SheetSchema(
        sheet=SheetName.EXPENSES,
        id_prefix="E",
        columns=(
            ("EntryID", "entry_id"),
            ("Scope", "scope"),
            ("Description", "description"),
            ("Amount", "amount"),
            ("CreatedAt", "created_at"),
            ("UpdatedAt", "updated_at"),
        ),
        deserialize=deserialize_cash_entry,
    ),
    SheetName.MANUAL_INCOMES: SheetSchema(
        sheet=SheetName.MANUAL_INCOMES,
        id_prefix="I",
        columns=(
            ("EntryID", "entry_id"),
            ("Scope", "scope"),
            ("Description", "description"),
            ("Amount", "amount"),
            ("CreatedAt", "created_at"),
            ("UpdatedAt", "updated_at"),
        ),
        deserialize=deserialize_cash_entry,
    ),
    SheetName.NOTES: SheetSchema(
        sheet=SheetName.NOTES,
        id_prefix="N",
        columns=(
            ("NoteID", "note_id"),
            ("Scope", "scope"),
            ("NoteType", "note_type"),
            ("RelatedSaleID", "related_sale_id"),
            ("ClientID", "client_id"),
            ("ClientName", "client_name"),
            ("Reason", "reason"),
            ("Amount", "amount"),
            ("ReturnedItems", "returned_items"),
            ("CreatedAt", "created_at"),
            ("UpdatedAt", "updated_at"),
        ),
        deserialize=deserialize_note,
    ),
    SheetName.SHIFTS: SheetSchema(
        sheet=SheetName.SHIFTS,
        id_prefix="H",
        columns=(
            ("ShiftID", "shift_id"),
            ("Scope", "scope"),
            ("SellerID", "seller_id"),
            ("OpeningAmount", "opening_amount"),
            ("OpenedAt", "opened_at"),
            ("State", "state"),
            ("SaleIDs", "sale_ids"),
            ("TotalSales", "total_sales"),
            ("TotalFinal", "total_final"),
            ("CountedAmount", "counted_amount"),
            ("ClosedAt", "closed_at"),
            ("CreatedAt", "created_at"),
            ("UpdatedAt", "updated_at"),
        ),
        deserialize=deserialize_shift,
    ),
}

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    sheet.value: schema.headers for sheet, schema in SCHEMAS.items()
}


def serialize_record(record: LedgerRow, schema: SheetSchema) -> List[object]:
    """Arrange a record's attributes in the worksheet column order."""

    return [encode_cell(getattr(record, field_name)) for _, field_name in schema.columns]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the store behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The path provided by the caller or the discovered file.

    Raises:
        FileNotFoundError: If no ancestor directory holds the file.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored at ``base_path`` (or the
    current working directory) and resolved. ``TimeZone`` is optional and
    defaults to ``UTC``.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory relative data files resolve
            against.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_seller = parser.get("Defaults", "DefaultSeller")
        default_scope = parser.get("Defaults", "DefaultScope")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    time_zone = parser.get("System", "TimeZone", fallback=DEFAULT_TIME_ZONE)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_seller_id=default_seller,
        default_scope=default_scope,
        time_zone=time_zone,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook so that readers see either the old or new file.

    The workbook is written to a temporary file beside ``destination`` and
    then moved over it with :func:`os.replace`, so an interrupted save never
    leaves a truncated ledger behind.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(sheet: Worksheet) -> Dict[str, int]:
    """Map header titles to 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the key column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based row index of the first match, otherwise ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    headers = header_map(sheet)
    if key_column not in headers:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = headers[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if key_col_index - 1 < len(row) and row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _write_row(sheet: Worksheet, row_idx: int, values: Sequence[object]) -> None:
    for col_idx, value in enumerate(values, start=1):
        sheet.cell(row=row_idx, column=col_idx, value=value)


def _row_as_mapping(headers: Sequence[object], raw: Sequence[object]) -> Dict[str, object]:
    values = list(raw) + [None] * max(0, len(headers) - len(raw))
    return {str(header): value for header, value in zip(headers, values) if header is not None}


def generate_record_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    The identifier packs the UTC timestamp down to microseconds followed by a
    short random suffix, so ids created within the same write set never
    collide.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{suffix}``.
    """

    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# Write batches
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Create:
    sheet: SheetName
    record: LedgerRow


@dataclass(frozen=True)
class _Update:
    sheet: SheetName
    record_id: str
    fields: Mapping[str, object]


@dataclass(frozen=True)
class _Delete:
    sheet: SheetName
    record_id: str


@dataclass(frozen=True)
class _Increment:
    product_id: str
    delta: int
    missing_ok: bool = False


_Operation = Union[_Create, _Update, _Delete, _Increment]
Guard = Callable[["LedgerStore"], None]


@dataclass
class WriteBatch:
    """Collects the writes of one business operation.

    Every reference handed to the batch is checked with
    :func:`~pos_ledger.identity.require_committed` as soon as it is queued, so
    a pending reference can never reach the workbook. Nothing touches the
    workbook until :meth:`commit`.
    """

    store: "LedgerStore"
    operations: List[_Operation] = field(default_factory=list)
    guards: List[Guard] = field(default_factory=list)
    committed: bool = False

    def create(self, sheet: SheetName, record: LedgerRow, *, references: Sequence[RecordId] = ()) -> str:
        """Queue a new record; ``references`` are the foreign keys it carries."""

        for ref in references:
            require_committed(ref, "referenced record")
        record_id = getattr(record, SCHEMAS[sheet].id_field)
        if not record_id:
            raise ValidationError(f"{sheet.value} record is missing its store identifier")
        self.operations.append(_Create(sheet=sheet, record=record))
        return record_id

    def update(self, sheet: SheetName, ref: RecordId, **fields: object) -> None:
        """Queue a field update on an existing record."""

        record_id = require_committed(ref, sheet.value)
        schema = SCHEMAS[sheet]
        for name in fields:
            if name in (schema.id_field, "created_at", "updated_at"):
                raise ValidationError(f"Field '{name}' is managed by the store")
            schema.header_for(name)
        self.operations.append(_Update(sheet=sheet, record_id=record_id, fields=dict(fields)))

    def delete(self, sheet: SheetName, ref: RecordId) -> None:
        """Queue the removal of an existing record."""

        record_id = require_committed(ref, sheet.value)
        self.operations.append(_Delete(sheet=sheet, record_id=record_id))

    def increment_stock(self, ref: RecordId, delta: int, *, missing_ok: bool = False) -> None:
        """Queue an atomic adjustment of ``Product.stock`` by ``delta``.

        With ``missing_ok`` the adjustment is skipped, with a warning, when the
        product no longer exists at commit time.
        """

        product_id = require_committed(ref, "product")
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError(f"Stock adjustments must be whole numbers, got {delta!r}")
        self.operations.append(_Increment(product_id=product_id, delta=delta, missing_ok=missing_ok))

    def guard(self, check: Guard) -> None:
        """Register a check that runs under the store lock before any write."""

        self.guards.append(check)

    def commit(self) -> None:
        """Apply every queued operation as one indivisible unit."""

        if self.committed:
            raise RuntimeError("Write batch has already been committed")
        self.store.commit(self)
        self.committed = True


class LedgerStore:
    """Persistence boundary over the ledger workbook.

    The store exposes typed reads per record family and a single write path,
    :meth:`commit`, which applies a :class:`WriteBatch` under a re-entrant
    lock. Operations are applied with an undo log; if anything fails before
    the workbook is durably saved the undo log is replayed and a
    :class:`~pos_ledger.errors.PersistenceError` is raised, leaving both the
    in-memory workbook and the file exactly as they were.

    Args:
        workbook (Workbook): Live workbook holding one sheet per family.
        data_file (Path | None): Where commits are persisted. ``None`` keeps
            the ledger in memory only.
        clock (Callable[[], datetime] | None): Source of store timestamps.
    """

    def __init__(
        self,
        workbook: Workbook,
        *,
        data_file: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.workbook = workbook
        self.data_file = data_file
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()
        self._index: Dict[SheetName, Dict[str, int]] = {}

    @classmethod
    def open(cls, data_file: Path, *, clock: Optional[Callable[[], datetime]] = None) -> "LedgerStore":
        """Open the workbook at ``data_file`` and bind commits to it."""

        resolved = Path(data_file).expanduser().resolve()
        store = cls(open_workbook(resolved), data_file=resolved, clock=clock)
        log.info("Opened ledger store '%s'", resolved)
        return store

    def now(self) -> datetime:
        """Return the store clock's current time."""

        return self._clock()

    def reserve_id(self, sheet: SheetName) -> str:
        """Hand out a fresh store identifier for a record of ``sheet``."""

        return generate_record_id(SCHEMAS[sheet].id_prefix, when=self.now())

    @contextmanager
    def snapshot(self) -> Iterator["LedgerStore"]:
        """Hold the store lock so several reads observe the same committed state."""

        with self._lock:
            yield self

    def batch(self) -> WriteBatch:
        """Start an empty write set bound to this store."""

        return WriteBatch(store=self)

    def refresh(self) -> None:
        """Reload the workbook from disk and drop cached row positions."""

        with self._lock:
            if self.data_file is not None:
                self.workbook = refresh_workbook(self.data_file)
            self._index.clear()
            log.info("Reloaded ledger store '%s'", self.data_file)

    # -- reads ---------------------------------------------------------------

    def _ensure_index(self, sheet: SheetName) -> Dict[str, int]:
        index = self._index.get(sheet)
        if index is None:
            schema = SCHEMAS[sheet]
            worksheet = self.workbook[sheet.value]
            id_col = header_map(worksheet)[schema.id_header] - 1
            index = {}
            for row_idx, raw in enumerate(worksheet.iter_rows(min_row=2, values_only=True), start=2):
                if id_col < len(raw) and raw[id_col] is not None:
                    index.setdefault(str(raw[id_col]), row_idx)
            self._index[sheet] = index
            log.debug("Indexed %d rows on sheet '%s'", len(index), sheet.value)
        return index

    def _invalidate(self, *sheets: SheetName) -> None:
        for sheet in sheets:
            self._index.pop(sheet, None)

    def _read_row(self, sheet: SheetName, row_idx: int) -> Dict[str, object]:
        worksheet = self.workbook[sheet.value]
        headers = [cell.value for cell in worksheet[1]]
        raw = [cell.value for cell in worksheet[row_idx]]
        return _row_as_mapping(headers, raw)

    def find(self, sheet: SheetName, ref: Union[str, CommittedId]) -> Optional[LedgerRow]:
        """Return the record identified by ``ref`` or ``None`` when absent.

        Raises:
            ValidationError: If ``ref`` is a pending reference.
        """

        record_id = ref if isinstance(ref, str) else require_committed(ref, sheet.value)
        schema = SCHEMAS[sheet]
        with self._lock:
            raw: Optional[Dict[str, object]] = None
            row_idx = self._ensure_index(sheet).get(record_id)
            if row_idx is not None:
                raw = self._read_row(sheet, row_idx)
                if str(raw.get(schema.id_header)) != record_id:
                    # Positions went stale; rebuild once.
                    self._invalidate(sheet)
                    row_idx = self._ensure_index(sheet).get(record_id)
                    raw = self._read_row(sheet, row_idx) if row_idx is not None else None
            if row_idx is None or raw is None:
                return None
        return schema.deserialize(raw)

    def get(self, sheet: SheetName, ref: Union[str, CommittedId]) -> LedgerRow:
        """Return the record identified by ``ref``.

        Raises:
            NotFoundError: If the record does not exist.
            ValidationError: If ``ref`` is a pending reference.
        """

        record = self.find(sheet, ref)
        if record is None:
            log.warning("%s lookup failed for id '%s'", sheet.value, ref)
            raise NotFoundError(sheet.value, str(ref))
        return record

    def scan(
        self,
        sheet: SheetName,
        *,
        scope: Optional[str] = None,
        on_malformed: Optional[Callable[[SheetName, int, Exception], None]] = None,
    ) -> Iterator[LedgerRow]:
        """Iterate over the records of one family in worksheet order.

        The sheet is read under the store lock before anything is yielded, so
        a concurrent commit is seen either entirely or not at all. Fully empty
        rows are ignored. Rows that cannot be deserialized are reported
        through ``on_malformed`` (or logged) and skipped; they never abort the
        iteration.

        Args:
            sheet (SheetName): Record family to read.
            scope (str | None): Only yield records belonging to this scope.
            on_malformed: Callback receiving the sheet, 1-based row index and
                the error for every skipped row.

        Yields:
            LedgerRow: Typed record for each well-formed row.
        """

        schema = SCHEMAS[sheet]
        records: List[LedgerRow] = []
        with self._lock:
            worksheet = self.workbook[sheet.value]
            headers = [cell.value for cell in worksheet[1]]
            for row_idx, raw in enumerate(worksheet.iter_rows(min_row=2, values_only=True), start=2):
                if not any(cell is not None for cell in raw):
                    continue
                try:
                    record = schema.deserialize(_row_as_mapping(headers, raw))
                except MALFORMED_ROW_ERRORS as exc:
                    if on_malformed is not None:
                        on_malformed(sheet, row_idx, exc)
                    else:
                        log.warning("Skipping malformed row %d on sheet '%s': %s", row_idx, sheet.value, exc)
                    continue
                if scope is not None and record.scope != scope:
                    continue
                records.append(record)
        yield from records

    # -- writes --------------------------------------------------------------

    def commit(self, batch: WriteBatch) -> None:
        """Apply ``batch`` atomically.

        Guards run first, then every update, deletion and increment target is
        checked for existence. Only then are operations applied, with an undo
        entry recorded for each cell change. The workbook is saved once at the
        end.

        Raises:
            LedgerError: Raised by a guard; nothing has been written.
            NotFoundError: If a target record is missing; nothing has been
                written.
            PersistenceError: If applying or saving failed; every change has
                been rolled back.
        """

        with self._lock:
            for check in batch.guards:
                check(self)
            self._verify_targets(batch.operations)

            stamp = self.now().isoformat()
            undo: List[Callable[[], None]] = []
            touched = {op.sheet if not isinstance(op, _Increment) else SheetName.PRODUCTS for op in batch.operations}
            try:
                for op in batch.operations:
                    if isinstance(op, _Create):
                        self._apply_create(op, stamp, undo)
                    elif isinstance(op, _Update):
                        self._apply_update(op, stamp, undo)
                    elif isinstance(op, _Delete):
                        self._apply_delete(op, undo)
                    elif isinstance(op, _Increment):
                        self._apply_increment(op, stamp, undo)
                    else:
                        raise TypeError(f"Unsupported batch operation: {op!r}")
                if self.data_file is not None:
                    save_workbook(self.workbook, self.data_file)
            except Exception as exc:
                log.error("Write set failed, rolling back %d change(s): %s", len(undo), exc)
                for revert in reversed(undo):
                    revert()
                raise PersistenceError(f"Ledger write failed and was rolled back: {exc}") from exc
            finally:
                self._invalidate(*touched)

            log.debug("Committed %d operation(s) at %s", len(batch.operations), stamp)

    def _verify_targets(self, operations: Sequence[_Operation]) -> None:
        deleted: set[Tuple[SheetName, str]] = set()
        for op in operations:
            if isinstance(op, (_Update, _Delete)):
                key = (op.sheet, op.record_id)
                if key in deleted or self.find(op.sheet, op.record_id) is None:
                    raise NotFoundError(op.sheet.value, op.record_id)
                if isinstance(op, _Delete):
                    deleted.add(key)
            elif isinstance(op, _Increment) and not op.missing_ok:
                if self.find(SheetName.PRODUCTS, op.product_id) is None:
                    raise NotFoundError(SheetName.PRODUCTS.value, op.product_id)

    def _locate(self, sheet: SheetName, record_id: str) -> Optional[int]:
        return locate_row(self.workbook, sheet.value, SCHEMAS[sheet].id_header, record_id)

    def _set_cell(self, worksheet: Worksheet, row_idx: int, col_idx: int, value: object, undo: List[Callable[[], None]]) -> None:
        cell = worksheet.cell(row=row_idx, column=col_idx)
        previous = cell.value
        cell.value = value

        def revert() -> None:
            worksheet.cell(row=row_idx, column=col_idx).value = previous

        undo.append(revert)

    def _apply_create(self, op: _Create, stamp: str, undo: List[Callable[[], None]]) -> None:
        schema = SCHEMAS[op.sheet]
        worksheet = self.workbook[op.sheet.value]
        record = replace(op.record, created_at=stamp, updated_at=stamp)
        row_idx = worksheet.max_row + 1
        _write_row(worksheet, row_idx, serialize_record(record, schema))
        undo.append(lambda: worksheet.delete_rows(row_idx))

    def _apply_update(self, op: _Update, stamp: str, undo: List[Callable[[], None]]) -> None:
        schema = SCHEMAS[op.sheet]
        worksheet = self.workbook[op.sheet.value]
        row_idx = self._locate(op.sheet, op.record_id)
        if row_idx is None:
            raise NotFoundError(op.sheet.value, op.record_id)
        columns = header_map(worksheet)
        for name, value in op.fields.items():
            self._set_cell(worksheet, row_idx, columns[schema.header_for(name)], encode_cell(value), undo)
        self._set_cell(worksheet, row_idx, columns["UpdatedAt"], stamp, undo)

    def _apply_delete(self, op: _Delete, undo: List[Callable[[], None]]) -> None:
        worksheet = self.workbook[op.sheet.value]
        row_idx = self._locate(op.sheet, op.record_id)
        if row_idx is None:
            raise NotFoundError(op.sheet.value, op.record_id)
        values = [cell.value for cell in worksheet[row_idx]]
        worksheet.delete_rows(row_idx)

        def revert() -> None:
            worksheet.insert_rows(row_idx)
            _write_row(worksheet, row_idx, values)

        undo.append(revert)

    def _apply_increment(self, op: _Increment, stamp: str, undo: List[Callable[[], None]]) -> None:
        worksheet = self.workbook[SheetName.PRODUCTS.value]
        row_idx = self._locate(SheetName.PRODUCTS, op.product_id)
        if row_idx is None:
            if op.missing_ok:
                log.warning("Skipped stock adjustment for deleted product '%s'", op.product_id)
                return
            raise NotFoundError(SheetName.PRODUCTS.value, op.product_id)
        columns = header_map(worksheet)
        current = _to_int(worksheet.cell(row=row_idx, column=columns["Stock"]).value)
        self._set_cell(worksheet, row_idx, columns["Stock"], current + op.delta, undo)
        self._set_cell(worksheet, row_idx, columns["UpdatedAt"], stamp, undo)


__all__ = [
    "CONFIG_FILE_NAME",
    "ConfigSettings",
    "ProductRow",
    "SaleLine",
    "Payment",
    "SaleRow",
    "CashEntryRow",
    "NoteItem",
    "NoteRow",
    "ShiftRow",
    "LedgerRow",
    "SheetSchema",
    "SCHEMAS",
    "SHEET_COLUMNS",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "refresh_workbook",
    "locate_row",
    "generate_record_id",
    "serialize_record",
    "WriteBatch",
    "LedgerStore",
]
