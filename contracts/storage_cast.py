"""Casting helpers from derived entities to the sink storage format.

The storage boundary is strict: a value that does not fit its column type is
an error, never silently truncated or wrapped.
"""

# papergraph/contracts/storage_cast.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pyarrow as pa

from contracts.errors import StorageCastError


def _integer_bounds(field_type: pa.DataType) -> tuple[int, int]:
    """Return the inclusive (min, max) range representable by an Arrow integer type."""
    bits = field_type.bit_width
    if pa.types.is_signed_integer(field_type):
        return -(1 << (bits - 1)), (1 << (bits - 1)) - 1
    return 0, (1 << bits) - 1


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise StorageCastError(f"Cannot cast {value!r} to int")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise StorageCastError(f"Cannot cast {value!r} to int")
        return int(value)
    if isinstance(value, str):
        txt = value.strip()
        try:
            return int(txt)
        except ValueError as exc:
            raise StorageCastError(f"Cannot cast {value!r} to int") from exc
    raise StorageCastError(f"Cannot cast {value!r} to int")


def cast_value(value: Any, field: pa.Field) -> Any:
    """
    Cast a single value to match an Arrow field.
    Integers are range-checked against the field's bit width.
    """
    field_type = field.type
    if value is None:
        if not field.nullable:
            raise StorageCastError(f"{field.name} is not nullable")
        return None

    # Strings
    if pa.types.is_string(field_type) or pa.types.is_large_string(field_type):
        return str(value)

    # Integers
    if pa.types.is_integer(field_type):
        number = _to_int(value)
        lo, hi = _integer_bounds(field_type)
        if number < lo or number > hi:
            raise StorageCastError(f"{field.name}={number} does not fit {field_type} [{lo}, {hi}]")
        return number

    raise StorageCastError(f"Unsupported storage type {field_type} for {field.name}")


def cast_for_storage(row: Mapping[str, Any], schema: pa.Schema) -> tuple[Any, ...]:
    """
    Cast a derived row into a storage tuple ordered by the schema columns.
    Unknown keys are ignored; missing keys are treated as None.
    """
    return tuple(cast_value(row.get(field.name), field) for field in schema)
