"""
transforms/formulas.py — Pure functions that derive area-keyed value maps.

Every function takes plain ``{area_code: value}`` mappings and returns a new
dict. Nothing here touches the store, and no result ever contains NaN or
infinity: an area whose inputs fail a formula's finiteness or divisor rule
is simply left out.

Usage:
    from civicdata_pipeline.transforms.formulas import (
        compute_derived_values,
        compute_change_over_time,
        compute_sum,
        compute_summary_from_data,
    )

    compute_derived_values({"x": 1, "y": 2}, {"x": 3, "z": 4}, "sum")
    # {"x": 4.0, "y": 2.0, "z": 4.0}

    compute_change_over_time({"2020": {"x": 100}, "2023": {"x": 150}}, "2020", "2023")
    # {"x": 0.5}

    compute_summary_from_data({"a": 1, "b": 2, "c": "bad"}).to_dict()
    # {"count": 2, "sum": 3.0, "avg": 1.5, "min": 1.0, "max": 2.0}
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from civicdata_shared.constants import DIVISION_FORMULAS, UNION_FORMULAS
from civicdata_shared.numeric import is_finite_number

# Multiplier applied to a/b for each division-based formula
_DIVISION_SCALE: dict[str, float] = {
    "percent": 1.0,
    "ratio": 1.0,
    "rate_per_1000": 1000.0,
    "index": 100.0,
}


@dataclass(frozen=True)
class NumericSummary:
    """count/sum/avg/min/max over the finite values of one data map."""

    count: int = 0
    sum: float = 0.0
    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def compute_derived_values(
    a_data: Mapping[str, Any],
    b_data: Mapping[str, Any],
    formula: str,
) -> dict[str, float]:
    """
    Combine two area maps with a binary formula.

    sum/difference iterate the union of both key sets; the division-based
    formulas (percent, ratio, rate_per_1000, index) iterate ``a_data`` keys
    only and skip zero divisors.

    Raises:
        ValueError: unknown formula.
    """
    if formula not in UNION_FORMULAS and formula not in DIVISION_FORMULAS:
        raise ValueError(f"Unsupported binary formula: {formula!r}")

    if formula in UNION_FORMULAS:
        keys = list(dict.fromkeys([*a_data.keys(), *b_data.keys()]))
    else:
        keys = list(a_data.keys())

    out: dict[str, float] = {}
    for area in keys:
        a_val = a_data.get(area)
        b_val = b_data.get(area)
        a_ok = is_finite_number(a_val)
        b_ok = is_finite_number(b_val)

        if formula == "sum":
            if a_ok and b_ok:
                out[area] = float(a_val) + float(b_val)
            elif a_ok:
                out[area] = float(a_val)
            elif b_ok:
                out[area] = float(b_val)
        elif formula == "difference":
            if a_ok and b_ok:
                out[area] = float(a_val) - float(b_val)
        elif a_ok and b_ok and b_val != 0:
            out[area] = float(a_val) / float(b_val) * _DIVISION_SCALE[formula]
    return {area: v for area, v in out.items() if math.isfinite(v)}


def compute_change_over_time(
    rows_by_date: Mapping[str, Mapping[str, Any]],
    start_key: str,
    end_key: str,
) -> dict[str, float]:
    """
    Relative change ``(end - start) / |start|`` per area between two dates.

    Areas missing from either endpoint, or with a zero or non-finite start,
    are omitted. A missing endpoint row yields an empty result.
    """
    start_data = rows_by_date.get(start_key)
    end_data = rows_by_date.get(end_key)
    if not start_data or not end_data:
        return {}

    out: dict[str, float] = {}
    for area, start_val in start_data.items():
        if area not in end_data:
            continue
        end_val = end_data[area]
        if not is_finite_number(start_val) or not is_finite_number(end_val) or start_val == 0:
            continue
        change = (float(end_val) - float(start_val)) / abs(float(start_val))
        if math.isfinite(change):
            out[area] = change
    return out


def compute_sum(operands: Sequence[Mapping[str, Any]]) -> dict[str, float]:
    """
    Sum N ≥ 2 area maps.

    The result covers the union of operand keys; a key is emitted only when
    at least one operand holds a finite value for it.

    Raises:
        ValueError: fewer than two operands.
    """
    if len(operands) < 2:
        raise ValueError("compute_sum needs at least two operands.")

    all_keys: dict[str, None] = {}
    for data in operands:
        all_keys.update(dict.fromkeys(data.keys()))

    out: dict[str, float] = {}
    for area in all_keys:
        total = 0.0
        has_value = False
        for data in operands:
            val = data.get(area)
            if is_finite_number(val):
                total += float(val)
                has_value = True
        if has_value and math.isfinite(total):
            out[area] = total
    return out


def compute_summary_from_data(data: Mapping[str, Any] | None) -> NumericSummary:
    """Scan a data map and aggregate its finite values. All zeros when none exist."""
    count = 0
    total = 0.0
    low = float("inf")
    high = float("-inf")
    for value in (data or {}).values():
        if not is_finite_number(value):
            continue
        count += 1
        total += value
        low = min(low, value)
        high = max(high, value)

    if count == 0:
        return NumericSummary()
    return NumericSummary(count=count, sum=total, avg=total / count, min=low, max=high)
