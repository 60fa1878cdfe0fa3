"""Command-line entry points for the POS ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the request objects consumed by the business
layer and printing the results. Keeping the CLI thin lets tests and other
front ends reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import NoteType, ReceiptType
from .data_manager import Payment
from .errors import InsufficientStockError, NotFoundError, PersistenceError, ValidationError
from .identity import CommittedId
from .reconciliation import SortSpec
from .shifts import SalesBasis


Registrar = Callable[["argparse._SubParsersAction[argparse.ArgumentParser]"], argparse.ArgumentParser]
Executor = Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Registrar
    execute: Executor


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_decimal(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Not a number: {text!r}") from exc


def parse_cart_item(text: str) -> core_logic.CartItem:
    """Parse ``PRODUCT_ID:QUANTITY[:UNIT_PRICE]`` into a cart line."""

    parts = text.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QUANTITY[:UNIT_PRICE], got {text!r}")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in {text!r}") from exc
    unit_price = parse_decimal(parts[2]) if len(parts) == 3 else None
    return core_logic.CartItem(product=CommittedId(parts[0]), quantity=quantity, unit_price=unit_price)


def parse_returned_item(text: str) -> core_logic.ReturnedItem:
    """Parse ``PRODUCT_ID:QUANTITY`` into a returned item."""

    item = parse_cart_item(text)
    if item.unit_price is not None:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QUANTITY, got {text!r}")
    return core_logic.ReturnedItem(product=item.product, quantity=item.quantity)


def parse_payment(text: str) -> Payment:
    """Parse ``METHOD:AMOUNT`` into a payment."""

    method, sep, amount = text.partition(":")
    if not sep or not method:
        raise argparse.ArgumentTypeError(f"Expected METHOD:AMOUNT, got {text!r}")
    return Payment(method=method, amount=parse_decimal(amount))


def parse_day(text: str) -> date:
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected a YYYY-MM-DD date, got {text!r}") from exc


# ---------------------------------------------------------------------------
# Parser wiring
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line tools for the POS ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--scope",
        default=None,
        help="Business scope (branch) to act on; defaults to DefaultScope.",
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


def _spec(
    name: str,
    help_text: str,
    execute: Executor,
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    def registrar(action: "argparse._SubParsersAction[argparse.ArgumentParser]") -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if configure is not None:
            configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _month_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--month", type=int, required=True)
    parser.add_argument("--year", type=int, required=True)


def _view_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--filter", dest="filter_text", default=None)
    parser.add_argument("--sort-key", default="created_at")
    parser.add_argument("--ascending", action="store_true")


def _note_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--reason", required=True)
    parser.add_argument("--amount", type=parse_decimal, required=True)
    parser.add_argument("--sale-id", default=None, help="Sale the note relates to.")
    parser.add_argument("--client", default=None)
    parser.add_argument("--client-name", default=None)


def register_write_commands(
    subparsers: "argparse._SubParsersAction[argparse.ArgumentParser]",
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales, notes and shifts."""

    def add_product(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", type=parse_decimal, required=True)
        parser.add_argument("--cost", type=parse_decimal, required=True)
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--barcode", default=None)

    def sale(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item", dest="items", type=parse_cart_item, action="append", required=True,
                            help="PRODUCT_ID:QUANTITY[:UNIT_PRICE]; repeat for each line.")
        parser.add_argument("--payment", dest="payments", type=parse_payment, action="append", required=True,
                            help="METHOD:AMOUNT; repeat for split payments.")
        parser.add_argument("--client", default=None)
        parser.add_argument("--client-name", default=None)
        parser.add_argument("--seller", default=None)
        parser.add_argument("--seller-name", default=None)
        parser.add_argument("--receipt-type", choices=[member.value for member in ReceiptType], default=ReceiptType.TICKET.value)
        parser.add_argument("--shift-id", default=None)

    def sale_id(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)

    def void_sale(parser: argparse.ArgumentParser) -> None:
        sale_id(parser)
        parser.add_argument("--reason", default=None)

    def credit_note(parser: argparse.ArgumentParser) -> None:
        _note_arguments(parser)
        parser.add_argument("--return", dest="returned", type=parse_returned_item, action="append", default=[],
                            help="PRODUCT_ID:QUANTITY coming back into stock; repeatable.")

    def cash_entry(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--description", required=True)
        parser.add_argument("--amount", type=parse_decimal, required=True)

    def entry_id(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--entry-id", required=True)

    def note_id(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--note-id", required=True)

    def open_shift(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--seller", default=None)
        parser.add_argument("--opening-amount", type=parse_decimal, required=True)

    def close_shift(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--shift-id", required=True)
        parser.add_argument("--counted-amount", type=parse_decimal, default=None)
        parser.add_argument("--basis", choices=[member.value for member in SalesBasis], default=None)

    specs = {
        "add-product": _spec("add-product", "Register a new product in the catalog.", run_add_product, add_product),
        "sale": _spec("sale", "Record a sale and deduct its stock.", run_sale, sale),
        "reverse-sale": _spec("reverse-sale", "Delete a sale and restore its stock.", run_reverse_sale, sale_id),
        "void-sale": _spec("void-sale", "Void a sale with a credit note.", run_void_sale, void_sale),
        "credit-note": _spec("credit-note", "Issue a credit note, optionally restocking returns.", run_credit_note, credit_note),
        "debit-note": _spec("debit-note", "Issue a debit note.", run_debit_note, _note_arguments),
        "income": _spec("income", "Record a manual cash income.", run_income, cash_entry),
        "expense": _spec("expense", "Record a cash expense.", run_expense, cash_entry),
        "delete-income": _spec("delete-income", "Delete a manual income.", run_delete_income, entry_id),
        "delete-expense": _spec("delete-expense", "Delete an expense.", run_delete_expense, entry_id),
        "delete-note": _spec("delete-note", "Delete a credit or debit note.", run_delete_note, note_id),
        "open-shift": _spec("open-shift", "Open a cash-drawer shift.", run_open_shift, open_shift),
        "close-shift": _spec("close-shift", "Close a cash-drawer shift.", run_close_shift, close_shift),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: "argparse._SubParsersAction[argparse.ArgumentParser]",
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""

    def daily(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--day", type=parse_day, default=None, help="YYYY-MM-DD (defaults to today).")
        _view_arguments(parser)

    def monthly(parser: argparse.ArgumentParser) -> None:
        _month_arguments(parser)
        _view_arguments(parser)

    def cash(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--day", type=parse_day, default=None, help="YYYY-MM-DD (defaults to today).")

    def top_products(parser: argparse.ArgumentParser) -> None:
        _month_arguments(parser)
        parser.add_argument("--limit", type=int, default=5)

    specs = {
        "stock": _spec("stock", "Display current stock levels.", run_stock_report),
        "daily": _spec("daily", "Display the day's cash movements.", run_daily_report, daily),
        "monthly": _spec("monthly", "Display a month's cash movements.", run_monthly_report, monthly),
        "cash": _spec("cash", "Display payment subtotals and expected cash.", run_cash_report, cash),
        "top-products": _spec("top-products", "Display the best-selling products.", run_top_products_report, top_products),
        "sellers": _spec("sellers", "Display the seller ranking.", run_sellers_report, _month_arguments),
        "heatmap": _spec("heatmap", "Display sale counts per weekday and hour.", run_heatmap_report, _month_arguments),
        "shifts": _spec("shifts", "Display closed shifts, most recent first.", run_shifts_report),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


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


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _scope(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "scope", None) or context.settings.default_scope


def _seller(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "seller", None) or context.settings.default_seller_id


def _ref(value: Optional[str]) -> Optional[CommittedId]:
    return CommittedId(value) if value else None


def _today(context: core_logic.RuntimeContext) -> date:
    return context.store.now().astimezone(context.reports.tz).date()


def translate_note(args: argparse.Namespace, note_type: NoteType) -> core_logic.NoteDraft:
    """Translate CLI args into a note draft."""
    return core_logic.NoteDraft(
        note_type=note_type,
        reason=args.reason,
        amount=args.amount,
        client=_ref(args.client),
        client_name=args.client_name,
        related_sale=_ref(args.sale_id),
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product_id = context.ledger.register_product(
        args.name, args.price, args.cost, args.stock, args.barcode, scope=_scope(context, args)
    ).unwrap()
    print(f"Registered product {product_id}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the ledger."""
    sale_id = context.ledger.record_sale(
        args.items,
        _ref(args.client),
        args.payments,
        seller_id=_seller(context, args),
        seller_name=args.seller_name,
        client_name=args.client_name,
        receipt_type=ReceiptType(args.receipt_type),
        shift_id=_ref(args.shift_id),
        scope=_scope(context, args),
    ).unwrap()
    print(f"Recorded sale {sale_id}")
    return 0


def run_reverse_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    context.ledger.reverse_sale(CommittedId(args.sale_id)).unwrap()
    print(f"Reversed sale {args.sale_id}")
    return 0


def run_void_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    note_id = context.ledger.void_sale(CommittedId(args.sale_id), args.reason).unwrap()
    print(f"Voided sale {args.sale_id} with credit note {note_id}")
    return 0


def run_credit_note(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    note_id = context.ledger.record_credit_note(
        translate_note(args, NoteType.CREDIT), args.returned, scope=_scope(context, args)
    ).unwrap()
    print(f"Recorded credit note {note_id}")
    return 0


def run_debit_note(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    note_id = context.ledger.record_debit_note(translate_note(args, NoteType.DEBIT), scope=_scope(context, args)).unwrap()
    print(f"Recorded debit note {note_id}")
    return 0


def run_income(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry_id = context.ledger.record_manual_income(args.description, args.amount, scope=_scope(context, args)).unwrap()
    print(f"Recorded manual income {entry_id}")
    return 0


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry_id = context.ledger.record_expense(args.description, args.amount, scope=_scope(context, args)).unwrap()
    print(f"Recorded expense {entry_id}")
    return 0


def run_delete_income(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    context.ledger.delete_manual_income(CommittedId(args.entry_id)).unwrap()
    print(f"Deleted manual income {args.entry_id}")
    return 0


def run_delete_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    context.ledger.delete_expense(CommittedId(args.entry_id)).unwrap()
    print(f"Deleted expense {args.entry_id}")
    return 0


def run_delete_note(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    context.ledger.delete_note(CommittedId(args.note_id)).unwrap()
    print(f"Deleted note {args.note_id}")
    return 0


def run_open_shift(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    shift_id = context.shifts.open_shift(_seller(context, args), _scope(context, args), args.opening_amount).unwrap()
    print(f"Opened shift {shift_id}")
    return 0


def run_close_shift(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    basis = SalesBasis(args.basis) if args.basis else None
    closure = context.shifts.close_shift(CommittedId(args.shift_id), args.counted_amount, basis).unwrap()
    print(f"Closed shift {closure.shift_id}: sales {closure.total_sales}, final {closure.total_final}")
    if closure.difference is not None:
        print(f"Counted {closure.counted_amount}, difference {closure.difference}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for product in context.ledger.list_products(scope=_scope(context, args)):
        print(f"{product.product_id}\t{product.name}\t{product.stock}")
    return 0


def _print_movements(rows: Sequence[object]) -> None:
    for row in rows:
        print(f"{row.date} {row.time}\t{row.kind.value}\t{row.amount}\t{row.description}")


def run_daily_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rows = context.reports.daily_movements(
        args.day or _today(context),
        _scope(context, args),
        args.filter_text,
        SortSpec(key=args.sort_key, ascending=args.ascending),
    )
    _print_movements(rows)
    return 0


def run_monthly_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rows = context.reports.monthly_movements(
        args.month,
        args.year,
        _scope(context, args),
        args.filter_text,
        SortSpec(key=args.sort_key, ascending=args.ascending),
    )
    _print_movements(rows)
    return 0


def run_cash_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print per-method subtotals followed by the expected drawer balance."""
    day = args.day or _today(context)
    scope = _scope(context, args)
    for method, amount in sorted(context.reports.payment_breakdown(day, scope).items()):
        print(f"{method}\t{amount}")
    print(f"expected cash\t{context.reports.expected_cash(day, scope)}")
    return 0


def run_top_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for rank in context.reports.top_products(args.month, args.year, _scope(context, args), args.limit):
        print(f"{rank.product_id}\t{rank.product_name}\t{rank.quantity}\t{rank.revenue}")
    return 0


def run_sellers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for rank in context.reports.seller_ranking(args.month, args.year, _scope(context, args)):
        print(f"{rank.seller_id}\t{rank.seller_name}\t{rank.total_amount}\t{rank.sale_count}")
    return 0


def run_heatmap_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for cell in context.reports.heatmap(args.month, args.year, _scope(context, args)):
        print(f"{cell.day_of_week}\t{cell.hour:02d}\t{cell.count}")
    return 0


def run_shifts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for shift in context.shifts.closed_shifts(_scope(context, args)):
        print(f"{shift.shift_id}\t{shift.seller_id}\t{shift.closed_at}\t{shift.total_final}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, (ValidationError, InsufficientStockError)):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, NotFoundError):
        return 4
    if isinstance(error, PersistenceError):
        return 5
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


__all__: List[str] = [
    "CommandSpec",
    "build_parser",
    "configure_subcommands",
    "dispatch_command",
    "handle_cli_error",
    "main",
]
