"""
Typed entity references.

Products and orders can be addressed by their numeric primary key or by their
opaque external code (SKU, order number). The caller states which one it has;
nothing here guesses from the shape of a string.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import ColumnElement


@dataclass(frozen=True)
class NumericId:
    """Numeric primary key."""

    value: int


@dataclass(frozen=True)
class OpaqueId:
    """Opaque external code, e.g. a SKU or an order number."""

    value: str


EntityRef = NumericId | OpaqueId


def ref_clause(ref: EntityRef, numeric_column: Any, opaque_column: Any) -> ColumnElement[bool]:
    """WHERE clause selecting the row ``ref`` points at."""
    if isinstance(ref, NumericId):
        return numeric_column == ref.value
    if isinstance(ref, OpaqueId):
        return opaque_column == ref.value
    raise TypeError(f"Unsupported reference: {ref!r}")


def describe(ref: EntityRef) -> str:
    return str(ref.value)
