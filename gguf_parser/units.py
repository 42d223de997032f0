# gguf_parser/units.py
"""
Human-readable quantities: bytes (IEC), parameter counts, bits per weight and
binary-scaled sizes such as buffer sizes given on the command line.
"""
from __future__ import annotations

import re
from typing import Tuple

_IEC_UNITS: Tuple[str, ...] = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB")
_PARAMETER_UNITS: Tuple[Tuple[float, str], ...] = (
    (1e15, "Q"),
    (1e12, "T"),
    (1e9, "B"),
    (1e6, "M"),
    (1e3, "K"),
)
_SIZE_UNITS: Tuple[Tuple[int, str], ...] = (
    (1 << 50, "P"),
    (1 << 40, "T"),
    (1 << 30, "G"),
    (1 << 20, "M"),
    (1 << 10, "K"),
)

_QUANTITY = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*([A-Za-z]*)\s*$")

_BYTE_MULTIPLIERS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "kib": 1 << 10,
    "m": 1000**2,
    "mb": 1000**2,
    "mib": 1 << 20,
    "g": 1000**3,
    "gb": 1000**3,
    "gib": 1 << 30,
    "t": 1000**4,
    "tb": 1000**4,
    "tib": 1 << 40,
    "p": 1000**5,
    "pb": 1000**5,
    "pib": 1 << 50,
}


def _trim(value: float) -> str:
    s = f"{value:.2f}"
    return s[:-3] if s.endswith(".00") else s


def format_bytes(n: int) -> str:
    """``536870912`` -> ``"512 MiB"``."""
    if n == 0:
        return "0 B"
    sign = "-" if n < 0 else ""
    value = float(abs(n))
    unit = 0
    while value >= 1024 and unit < len(_IEC_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{sign}{_trim(value)} {_IEC_UNITS[unit]}"


def format_parameters(n: int) -> str:
    """``6738415616`` -> ``"6.7 B"``."""
    for base, unit in _PARAMETER_UNITS:
        if abs(n) >= base:
            return f"{n / base:.1f} {unit}"
    return str(n)


def format_bpw(bpw: float) -> str:
    return f"{bpw:.2f} bpw"


def format_size(n: int) -> str:
    """Binary-scaled size without the byte unit, e.g. ``"32K"``."""
    if n == 0:
        return "0"
    for base, unit in _SIZE_UNITS:
        if abs(n) >= base:
            return f"{_trim(n / base)}{unit}"
    return str(n)


def parse_bytes(text: str) -> int:
    """Parse ``"512 MiB"`` or ``"1.5GB"`` into bytes.

    Decimal units (``KB``, ``MB``...) use powers of 1000, IEC units powers of
    1024; unit letters are case-insensitive.

    Raises:
        ValueError: ``text`` is not a quantity with a known unit.
    """
    m = _QUANTITY.match(text)
    if not m:
        raise ValueError(f"invalid byte quantity {text!r}")
    number, unit = m.groups()
    mult = _BYTE_MULTIPLIERS.get(unit.lower())
    if mult is None:
        raise ValueError(f"unknown byte unit {unit!r}")
    return int(float(number) * mult)


def parse_size(text: str) -> int:
    """Parse a binary-scaled size such as ``"32K"`` or ``"1.5M"``.

    Raises:
        ValueError: ``text`` is not a size with a known suffix.
    """
    m = _QUANTITY.match(text)
    if not m:
        raise ValueError(f"invalid size {text!r}")
    number, unit = m.groups()
    unit = unit.upper().rstrip("B").rstrip("I") if unit else ""
    if not unit:
        return int(float(number))
    for base, suffix in _SIZE_UNITS:
        if unit == suffix:
            return int(float(number) * base)
    raise ValueError(f"unknown size suffix {m.group(2)!r}")
