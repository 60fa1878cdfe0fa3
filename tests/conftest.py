"""Shared pytest fixtures and utilities for POS ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from pos_ledger.identity import CommittedId  # noqa: E402
from pos_ledger.reconciliation import ReconciliationEngine  # noqa: E402
from pos_ledger.setup_excel import create_ledger_workbook  # noqa: E402
from pos_ledger.shifts import ShiftManager  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_SELLER_ID = "seller-1"
DEFAULT_SCOPE = "main"
START = datetime(2024, 5, 15, 10, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n"
    "{time_zone_line}\n"
    "[Defaults]\n"
    "DefaultSeller = {default_seller_id}\n"
    "DefaultScope = {default_scope}\n"
)


class FixedClock:
    """Controllable replacement for the store clock."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **delta: float) -> datetime:
        self.moment = self.moment + timedelta(**delta)
        return self.moment

    def set(self, moment: datetime) -> datetime:
        self.moment = moment
        return moment


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_seller_id: str
    default_scope: str
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_ledger_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh, empty ledger workbook."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_seller_id: str = DEFAULT_SELLER_ID,
        default_scope: str = DEFAULT_SCOPE,
        time_zone: str | None = None,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                time_zone_line=f"TimeZone = {time_zone}\n" if time_zone else "",
                default_seller_id=default_seller_id,
                default_scope=default_scope,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_seller_id=default_seller_id,
            default_scope=default_scope,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def clock() -> FixedClock:
    """Store clock frozen at a Wednesday morning in May 2024."""

    return FixedClock(START)


@pytest.fixture
def runtime_context(config_file: Path, clock: FixedClock) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, clock=clock)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(ledger_workbook_path: Path, clock: FixedClock) -> data_manager.LedgerStore:
    """Ledger store bound to a fresh workbook on disk."""

    return data_manager.LedgerStore.open(ledger_workbook_path, clock=clock)


@pytest.fixture
def ledger(store: data_manager.LedgerStore) -> core_logic.SalesLedger:
    return core_logic.SalesLedger(store, scope=DEFAULT_SCOPE)


@pytest.fixture
def engine(store: data_manager.LedgerStore) -> ReconciliationEngine:
    return ReconciliationEngine(store)


@pytest.fixture
def shift_manager(store: data_manager.LedgerStore, engine: ReconciliationEngine) -> ShiftManager:
    return ShiftManager(store, engine)


@pytest.fixture
def product_factory(ledger: core_logic.SalesLedger) -> Callable[..., CommittedId]:
    """Register catalog products through the ledger and return their ids."""

    def _register(
        name: str = "Cola 500ml",
        *,
        price: str = "100",
        cost: str = "60",
        stock: int = 10,
        barcode: str | None = None,
        scope: str | None = None,
    ) -> CommittedId:
        outcome = ledger.register_product(name, Decimal(price), Decimal(cost), stock, barcode, scope=scope)
        assert outcome.ok, outcome.error
        return outcome.value

    return _register


def _append_raw_row(store: data_manager.LedgerStore, sheet: constants.SheetName, values: Sequence[object]) -> int:
    """Write a row directly into a worksheet, bypassing the store."""

    worksheet = store.workbook[sheet.value]
    row_idx = worksheet.max_row + 1
    for col_idx, value in enumerate(values, start=1):
        worksheet.cell(row=row_idx, column=col_idx, value=value)
    return row_idx


@pytest.fixture
def read_stock(store: data_manager.LedgerStore) -> Callable[[CommittedId], int]:
    """Read the current stock of a product straight from the store."""

    return lambda product_id: store.get(constants.SheetName.PRODUCTS, product_id).stock


@pytest.fixture
def raw_row_writer(store: data_manager.LedgerStore) -> Callable[[constants.SheetName, Sequence[object]], int]:
    """Write rows directly into a worksheet, bypassing the store."""

    return lambda sheet, values: _append_raw_row(store, sheet, values)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-cli", description="POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
