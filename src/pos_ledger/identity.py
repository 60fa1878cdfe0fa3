"""Identity lifecycle for ledger references.

A reference is either *pending* (minted by a client before any durable write
was acknowledged, or left behind as a fallback marker after a failed write) or
*committed* (assigned by the ledger store). The distinction travels in the
type of the reference itself rather than in the shape of an identifier string,
so nothing downstream needs to guess.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Union, cast

from . import log
from .errors import ValidationError


class IdState(str, Enum):
    """Classification returned by :func:`classify`."""

    PENDING = "pending"
    COMMITTED = "committed"


@dataclass(frozen=True)
class PendingId:
    """Client-side placeholder that has not been confirmed durable."""

    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    fallback: bool = False

    def __str__(self) -> str:
        return f"pending:{self.token}"


@dataclass(frozen=True)
class CommittedId:
    """Identifier assigned by the ledger store after a durable write."""

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise ValidationError("Committed identifiers must be non-empty strings")

    def __str__(self) -> str:
        return self.value


RecordId = Union[PendingId, CommittedId]


def mint_pending() -> PendingId:
    """Return a fresh placeholder for an entity shown before it is stored."""

    return PendingId()


def fallback_marker(token: str) -> PendingId:
    """Return the marker left on an entity whose durable write failed."""

    return PendingId(token=token, fallback=True)


def classify(ref: object) -> IdState:
    """Classify ``ref`` as pending or committed.

    Raises:
        ValidationError: If ``ref`` is missing or is not a ledger reference.
    """

    if isinstance(ref, CommittedId):
        return IdState.COMMITTED
    if isinstance(ref, PendingId):
        return IdState.PENDING
    if ref is None:
        raise ValidationError("Missing reference")
    raise ValidationError(f"Unrecognised reference: {ref!r}")


def require_committed(ref: object, what: str = "record") -> str:
    """Return the store identifier behind ``ref`` or reject it.

    Args:
        ref: Reference supplied by a caller.
        what: Role of the reference, used in the error message.

    Returns:
        str: The identifier assigned by the store.

    Raises:
        ValidationError: If ``ref`` is missing, unrecognised or pending.
    """

    if classify(ref) is IdState.COMMITTED:
        return cast(CommittedId, ref).value
    log.error("Rejected pending %s reference %s", what, ref)
    raise ValidationError(f"The {what} reference {ref} has not been committed yet")


__all__ = [
    "IdState",
    "PendingId",
    "CommittedId",
    "RecordId",
    "mint_pending",
    "fallback_marker",
    "classify",
    "require_committed",
]
