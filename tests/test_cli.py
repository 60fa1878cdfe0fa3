"""Tests for the argparse front end."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal
from unittest.mock import Mock

import pytest

from pos_ledger import cli
from pos_ledger.core_logic import CartItem, ReturnedItem
from pos_ledger.data_manager import Payment
from pos_ledger.errors import (
    Err,
    InsufficientStockError,
    NotFoundError,
    Ok,
    PersistenceError,
    ValidationError,
)
from pos_ledger.identity import CommittedId

WRITE_COMMANDS = {
    "add-product",
    "sale",
    "reverse-sale",
    "void-sale",
    "credit-note",
    "debit-note",
    "income",
    "expense",
    "delete-income",
    "delete-expense",
    "delete-note",
    "open-shift",
    "close-shift",
}
READ_COMMANDS = {"stock", "daily", "monthly", "cash", "top-products", "sellers", "heatmap", "shifts"}


@pytest.fixture
def mock_context():
    context = Mock(name="context")
    context.settings.default_scope = "main"
    context.settings.default_seller_id = "seller-1"
    return context


def _last_token(output: str) -> str:
    return output.strip().splitlines()[-1].split()[-1]


# ---------------------------------------------------------------------------
# Parser wiring
# ---------------------------------------------------------------------------


def test_build_parser_accepts_global_options(tmp_path):
    """--config and --scope are parsed before the sub-command."""

    parser = cli.build_parser()
    parser.add_subparsers(dest="command").add_parser("stock")

    args = parser.parse_args(["--config", str(tmp_path / "config.ini"), "--scope", "branch", "stock"])

    assert args.config == tmp_path / "config.ini"
    assert args.scope == "branch"
    assert args.command == "stock"


def test_configure_subcommands_registers_every_command():
    """Every write and read command is wired and indexed."""

    table = cli.configure_subcommands(cli.build_parser())

    assert set(table) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_specs(subparsers_action):
    """Write commands come back keyed by name."""

    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())


def test_register_read_commands_returns_specs(subparsers_action):
    """Read commands come back keyed by name."""

    assert set(cli.register_read_commands(subparsers_action)) == READ_COMMANDS


def test_sale_arguments_collect_repeated_lines():
    """Repeated --item and --payment flags build lists of request objects."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        ["sale", "--item", "P1:2", "--item", "P2:1:9.50", "--payment", "cash:10", "--payment", "card:9.50"]
    )

    assert args.items == [CartItem(CommittedId("P1"), 2), CartItem(CommittedId("P2"), 1, Decimal("9.50"))]
    assert args.payments == [Payment("cash", Decimal("10")), Payment("card", Decimal("9.50"))]
    assert args.receipt_type == "ticket"


def test_malformed_item_is_a_usage_error():
    """argparse rejects a cart line it cannot parse."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    with pytest.raises(SystemExit):
        parser.parse_args(["sale", "--item", "P1", "--payment", "cash:1"])


def test_build_command_table_indexes_specs(command_spec_iterable):
    """Specs are indexed by their names."""

    table = cli.build_command_table(command_spec_iterable)

    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    """Two specs with the same name are a wiring error."""

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_invokes_executor(command_table_entry):
    """dispatch_command should run the executor registered for the command."""

    name, spec = command_table_entry

    result = cli.dispatch_command(Mock(), argparse.Namespace(command=name), {name: spec})

    assert result == 0
    assert spec.execute.called


@pytest.mark.parametrize("namespace", [argparse.Namespace(command="missing"), argparse.Namespace()])
def test_dispatch_command_rejects_unknown_commands(command_table_entry, namespace):
    """Unknown or absent commands raise KeyError."""

    name, spec = command_table_entry

    with pytest.raises(KeyError):
        cli.dispatch_command(Mock(), namespace, {name: spec})


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("text", ["P1", "P1:x", ":2", "P1:2:abc", "P1:2:3:4"])
def test_parse_cart_item_rejects_bad_input(text):
    """Cart lines need a product id, an integer quantity and an optional price."""

    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_cart_item(text)


def test_parse_returned_item():
    """Returned items take no price."""

    assert cli.parse_returned_item("P1:2") == ReturnedItem(CommittedId("P1"), 2)
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_returned_item("P1:2:5")


@pytest.mark.parametrize("text", ["cash", ":10", "cash:ten"])
def test_parse_payment_rejects_bad_input(text):
    """Payments are METHOD:AMOUNT."""

    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_payment(text)


def test_parse_day():
    """Days use the ISO calendar format."""

    assert cli.parse_day("2024-05-15") == date(2024, 5, 15)
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_day("15/05/2024")


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_sale_uses_configured_defaults(mock_context, capsys):
    """Seller and scope fall back to the configured defaults."""

    mock_context.ledger.record_sale.return_value = Ok(CommittedId("S1"))
    args = argparse.Namespace(
        items=[CartItem(CommittedId("P1"), 1)],
        payments=[Payment("cash", Decimal("5"))],
        client=None,
        client_name=None,
        seller=None,
        seller_name=None,
        receipt_type="ticket",
        shift_id="H1",
        scope=None,
    )

    assert cli.run_sale(mock_context, args) == 0

    kwargs = mock_context.ledger.record_sale.call_args.kwargs
    assert kwargs["seller_id"] == "seller-1"
    assert kwargs["scope"] == "main"
    assert kwargs["shift_id"] == CommittedId("H1")
    assert capsys.readouterr().out.strip() == "Recorded sale S1"


def test_executor_raises_wrapped_error(mock_context):
    """Failed outcomes are raised so main can map them to exit codes."""

    mock_context.ledger.reverse_sale.return_value = Err(NotFoundError("Sales", "S1"))

    with pytest.raises(NotFoundError):
        cli.run_reverse_sale(mock_context, argparse.Namespace(sale_id="S1"))


@pytest.mark.parametrize(
    "error, code",
    [
        (ValidationError("bad"), 2),
        (InsufficientStockError("P1", "Cola", 5, 1), 2),
        (FileNotFoundError("config.ini"), 3),
        (NotFoundError("Sales", "S1"), 4),
        (PersistenceError("disk full"), 5),
        (RuntimeError("schema"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    """Each error family maps to its own exit code."""

    assert cli.handle_cli_error(error) == code


# ---------------------------------------------------------------------------
# End-to-end through main
# ---------------------------------------------------------------------------


def test_main_sale_workflow(config_file, capsys):
    """Register, sell, then report stock and expected cash."""

    config = ["--config", str(config_file)]
    assert cli.main([*config, "add-product", "--name", "Cola", "--price", "100", "--cost", "60", "--stock", "10"]) == 0
    product_id = _last_token(capsys.readouterr().out)

    assert cli.main([*config, "sale", "--item", f"{product_id}:2", "--payment", "cash:200"]) == 0
    assert capsys.readouterr().out.startswith("Recorded sale S")

    assert cli.main([*config, "stock"]) == 0
    assert capsys.readouterr().out.strip() == f"{product_id}\tCola\t8"

    assert cli.main([*config, "cash"]) == 0
    assert capsys.readouterr().out.strip().splitlines() == ["cash\t200", "expected cash\t200"]


def test_main_reports_insufficient_stock(config_file, capsys):
    """Overselling exits with the validation code and leaves stock alone."""

    config = ["--config", str(config_file)]
    cli.main([*config, "add-product", "--name", "Cola", "--price", "1", "--cost", "1", "--stock", "1"])
    product_id = _last_token(capsys.readouterr().out)

    assert cli.main([*config, "sale", "--item", f"{product_id}:5", "--payment", "cash:5"]) == 2

    cli.main([*config, "stock"])
    assert capsys.readouterr().out.strip().endswith("\t1")


def test_main_shift_workflow(config_file, capsys):
    """Open and close a shift, printing the difference against the count."""

    config = ["--config", str(config_file)]
    assert cli.main([*config, "open-shift", "--opening-amount", "100"]) == 0
    shift_id = _last_token(capsys.readouterr().out)

    assert cli.main([*config, "close-shift", "--shift-id", shift_id, "--counted-amount", "90"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()

    assert lines[0] == f"Closed shift {shift_id}: sales 0, final 100"
    assert lines[1] == "Counted 90, difference -10"


def test_main_unknown_sale_is_not_found(config_file):
    """Reversing a sale that does not exist exits with the not-found code."""

    assert cli.main(["--config", str(config_file), "reverse-sale", "--sale-id", "S-missing"]) == 4


def test_main_missing_config_exit_code(tmp_path):
    """A missing configuration file exits with code 3."""

    assert cli.main(["--config", str(tmp_path / "missing.ini"), "stock"]) == 3


def test_main_schema_mismatch_exit_code(config_factory):
    """Schema mismatches stop the command before it runs."""

    bundle = config_factory(schema_version="0.1.0")

    assert cli.main(["--config", str(bundle.config_path), "stock"]) == 1
