"""
Type helpers for SQLAlchemy/SQLModel compatibility with type checkers.

SQLModel fields are declared with Python types (e.g., `address: str`) but at the
class level they're actually InstrumentedAttribute descriptors with SQLAlchemy
column methods like .desc(), .in_(), .is_(), etc.

Type checkers see them as plain Python types and report errors when column
methods are called. This module provides helpers to bridge that gap, plus the
UTC and on-chain amount helpers shared by the models and services.
"""

from typing import TYPE_CHECKING, Optional, TypeVar, Union
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")

Amount = Union[int, str]


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op - it just returns the input unchanged.

    Usage:
        from indexer.core.typing import col

        select(Transaction).order_by(col(Transaction.ledger).desc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read back from the database to aware UTC.

    SQLite drops tzinfo on round trip; Postgres returns aware values.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_int(value: Optional[Amount]) -> int:
    """Parse a stored i128 amount (base-10 string) into an int. None/empty is 0."""
    if value is None or value == "":
        return 0
    return int(value)


def add_amount(current: Optional[Amount], delta: Amount) -> str:
    """Return `current + delta` as a base-10 string."""
    return str(to_int(current) + to_int(delta))


def sub_amount(current: Optional[Amount], delta: Amount) -> str:
    """Return `current - delta` as a base-10 string, floored at zero."""
    return str(max(0, to_int(current) - to_int(delta)))


__all__ = [
    "Amount",
    "col",
    "utc_now",
    "as_utc",
    "to_int",
    "add_amount",
    "sub_amount",
]
