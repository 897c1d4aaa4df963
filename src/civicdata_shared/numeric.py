"""
numeric.py — Finite-number coercion for area-keyed value maps.

Stored value maps come back from the document store in loose shapes:
numbers, numeric strings, nulls, NaN sentinels. Everything downstream
(formulas, summaries) only ever sees finite floats.

Usage:
    from civicdata_shared.numeric import is_finite_number, normalize_data_map

    is_finite_number(3.2)                  # True
    is_finite_number(float("nan"))         # False
    normalize_data_map({"74103": "12", "74104": None, "74105": "x"})
    # {"74103": 12.0}
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any


def is_finite_number(value: Any) -> bool:
    """True for int/float values that are finite. Booleans are not numbers here."""
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float)) and math.isfinite(value)


def to_finite_number(value: Any) -> float | None:
    """
    Coerce a number or numeric string to a finite float.

    Returns None for anything else (None, empty strings, "x", NaN, inf).
    """
    if is_finite_number(value):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def normalize_data_map(value: Any) -> dict[str, float]:
    """
    Normalize an area-code → value mapping, dropping invalid entries.

    Keys are coerced to str. Non-mapping input yields an empty dict.
    """
    out: dict[str, float] = {}
    if not value or not isinstance(value, Mapping):
        return out
    for key, raw in value.items():
        num = to_finite_number(raw)
        if num is not None:
            out[str(key)] = num
    return out
