# gguf_parser/model_formats/gguf/gguf_values.py
"""
GGUF metadata value types and explicit numeric coercion.
"""
from __future__ import annotations

import math
from enum import IntEnum
from typing import Any, Dict, Tuple

from gguf_parser.errors import GGUFValueError


class GGUFValueType(IntEnum):
    """Metadata value-type tags as stored in the file."""

    UINT8 = 0
    INT8 = 1
    UINT16 = 2
    INT16 = 3
    UINT32 = 4
    INT32 = 5
    FLOAT32 = 6
    BOOL = 7
    STRING = 8
    ARRAY = 9
    UINT64 = 10
    INT64 = 11
    FLOAT64 = 12

    @property
    def fixed_size(self) -> int:
        """Payload size in bytes, 0 for STRING and ARRAY."""
        return FIXED_SIZES.get(self, 0)

    @property
    def is_numeric(self) -> bool:
        return self in NUMERIC_RANGES or self in (GGUFValueType.FLOAT32, GGUFValueType.FLOAT64)

    @property
    def is_integer(self) -> bool:
        return self in NUMERIC_RANGES


FIXED_SIZES: Dict[GGUFValueType, int] = {
    GGUFValueType.UINT8: 1,
    GGUFValueType.INT8: 1,
    GGUFValueType.UINT16: 2,
    GGUFValueType.INT16: 2,
    GGUFValueType.UINT32: 4,
    GGUFValueType.INT32: 4,
    GGUFValueType.FLOAT32: 4,
    GGUFValueType.BOOL: 1,
    GGUFValueType.UINT64: 8,
    GGUFValueType.INT64: 8,
    GGUFValueType.FLOAT64: 8,
}

# struct format characters, byte order is prefixed by the reader
STRUCT_CODES: Dict[GGUFValueType, str] = {
    GGUFValueType.UINT8: "B",
    GGUFValueType.INT8: "b",
    GGUFValueType.UINT16: "H",
    GGUFValueType.INT16: "h",
    GGUFValueType.UINT32: "I",
    GGUFValueType.INT32: "i",
    GGUFValueType.FLOAT32: "f",
    GGUFValueType.BOOL: "?",
    GGUFValueType.UINT64: "Q",
    GGUFValueType.INT64: "q",
    GGUFValueType.FLOAT64: "d",
}

NUMERIC_RANGES: Dict[GGUFValueType, Tuple[int, int]] = {
    GGUFValueType.UINT8: (0, 2**8 - 1),
    GGUFValueType.INT8: (-(2**7), 2**7 - 1),
    GGUFValueType.UINT16: (0, 2**16 - 1),
    GGUFValueType.INT16: (-(2**15), 2**15 - 1),
    GGUFValueType.UINT32: (0, 2**32 - 1),
    GGUFValueType.INT32: (-(2**31), 2**31 - 1),
    GGUFValueType.UINT64: (0, 2**64 - 1),
    GGUFValueType.INT64: (-(2**63), 2**63 - 1),
}


def coerce_numeric(value: Any, target: GGUFValueType) -> int | float:
    """Convert a numeric scalar to ``target`` explicitly.

    Integers widen or narrow into the target range and raise ``OverflowError``
    when they do not fit. Floats converted to an integer target truncate
    toward zero and must be finite and in range. Bools count as 0/1.

    Args:
        value: Decoded scalar (int, float or bool).
        target: Requested numeric type.

    Raises:
        OverflowError: The value does not fit the target type.
        GGUFValueError: The value is not numeric, or the target is not a
            numeric type.
    """
    if not isinstance(target, GGUFValueType) or not target.is_numeric:
        raise GGUFValueError(f"{target!r} is not a numeric value type")
    if isinstance(value, bool):
        value = int(value)
    elif not isinstance(value, (int, float)):
        raise GGUFValueError(f"cannot coerce {type(value).__name__} to {target.name}")

    if target in (GGUFValueType.FLOAT32, GGUFValueType.FLOAT64):
        v = float(value)
        # float32 cannot hold finite values beyond its max magnitude
        if target is GGUFValueType.FLOAT32 and math.isfinite(v) and abs(v) > 3.4028234663852886e38:
            raise OverflowError(f"{value!r} does not fit in FLOAT32")
        return v

    if isinstance(value, float):
        if not math.isfinite(value):
            raise OverflowError(f"{value!r} cannot be converted to {target.name}")
        value = int(value)
    lo, hi = NUMERIC_RANGES[target]
    if value < lo or value > hi:
        raise OverflowError(f"{value} does not fit in {target.name} [{lo}, {hi}]")
    return value
