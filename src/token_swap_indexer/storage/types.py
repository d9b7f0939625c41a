"""Exact storage types for on-chain integers and derived prices.

PostgreSQL stores these as NUMERIC. SQLite has no exact wide numeric type
(SQLAlchemy would round-trip through float), so there the value is kept as
decimal text. Either way the Python side sees `int` or `Decimal`.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator

UINT256_DIGITS = 78


class Uint256(TypeDecorator[int]):
    impl = Numeric(UINT256_DIGITS, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(UINT256_DIGITS))
        return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        as_int = int(value)
        if as_int < 0:
            raise ValueError("uint256 value must be non-negative")
        if dialect.name == "sqlite":
            return str(as_int)
        return Decimal(as_int)

    def process_result_value(self, value: Any, dialect: Any) -> int | None:  # noqa: ARG002
        if value is None:
            return None
        return int(value)


class ExactDecimal(TypeDecorator[Decimal]):
    """NUMERIC(precision, scale) that never passes through float."""

    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int, scale: int) -> None:
        super().__init__(precision, scale)
        self.precision = precision
        self.scale = scale

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(self.precision + 2))
        return dialect.type_descriptor(Numeric(self.precision, self.scale))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        as_decimal = Decimal(value)
        if dialect.name == "sqlite":
            return format(as_decimal, "f")
        return as_decimal

    def process_result_value(self, value: Any, dialect: Any) -> Decimal | None:  # noqa: ARG002
        if value is None:
            return None
        return Decimal(str(value)) if not isinstance(value, Decimal) else value
