"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator


class PreciseFloat(TypeDecorator):
    """Persist dollar amounts and prices through NUMERIC storage.

    Services keep working with Python ``float``; the column stores a
    Decimal so balances never pick up binary float noise across many
    debit/credit cycles.
    """

    impl = Numeric(20, 8, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid numeric value for ledger column: {value!r}") from exc

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)
