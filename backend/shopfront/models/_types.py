# Overview: Column type that stores money as NUMERIC(10,2) and exposes minor-unit ints.

from __future__ import annotations

from sqlalchemy.types import Numeric, TypeDecorator

from .. import money


class MinorUnits(TypeDecorator):
    """
    Persisted form: decimal pounds (NUMERIC(10,2)).
    Python form: int pence.

    This is the only place where the persisted decimal is converted; every
    service reads and writes plain ints.
    """

    impl = Numeric(10, 2, asdecimal=False)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"MinorUnits expects int pence, got {type(value).__name__}")
        return money.to_decimal(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return money.from_decimal(value)
