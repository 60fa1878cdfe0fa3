"""Error taxonomy and operation outcomes for the POS ledger.

Business operations never report a failed precondition through a generic
exception. They return an :class:`Outcome`, which is either :class:`Ok`
carrying the result or :class:`Err` carrying one of the typed
:class:`LedgerError` subclasses below. Internally the layers still raise these
errors; :func:`returns_outcome` is the single place where they are folded into
the returned union.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

from . import log


T = TypeVar("T")


class LedgerError(Exception):
    """Base class for every failure reported by the ledger core."""

    retryable = False


class ValidationError(LedgerError):
    """Raised when a reference, quantity, amount or state check fails."""


class InsufficientStockError(LedgerError):
    """Raised when a sale requests more units than a product has on hand."""

    def __init__(self, product_id: str, product_name: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for '{product_name}' ({product_id}): "
            f"requested {requested}, available {available}"
        )


class NotFoundError(LedgerError):
    """Raised when a referenced record is absent at commit time."""

    def __init__(self, family: str, record_id: str) -> None:
        self.family = family
        self.record_id = record_id
        super().__init__(f"{family} record not found: {record_id}")


class PersistenceError(LedgerError):
    """Raised when the store could not durably apply a write set.

    No partial effect is left behind, so the caller may retry.
    """

    retryable = True


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying the operation result."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed outcome carrying the typed error that aborted the operation."""

    error: LedgerError

    @property
    def ok(self) -> bool:
        return False

    @property
    def value(self) -> None:
        return None

    def unwrap(self) -> Any:
        raise self.error


Outcome = Union[Ok[T], Err]


def returns_outcome(func: Callable[..., T]) -> Callable[..., Outcome[T]]:
    """Wrap an operation so that ledger errors come back as :class:`Err`.

    Only :class:`LedgerError` subclasses are converted. Anything else is a
    programming error and propagates unchanged.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Outcome[T]:
        try:
            return Ok(func(*args, **kwargs))
        except LedgerError as exc:
            log.warning("%s rejected: %s", func.__name__, exc)
            return Err(exc)

    return wrapper


__all__ = [
    "LedgerError",
    "ValidationError",
    "InsufficientStockError",
    "NotFoundError",
    "PersistenceError",
    "Ok",
    "Err",
    "Outcome",
    "returns_outcome",
]
