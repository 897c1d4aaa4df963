"""
tests/test_transforms/test_formulas.py — Tests for the formula engine.
"""

from __future__ import annotations

import pytest

from civicdata_shared.numeric import normalize_data_map, to_finite_number
from civicdata_pipeline.transforms.formulas import (
    NumericSummary,
    compute_change_over_time,
    compute_derived_values,
    compute_sum,
    compute_summary_from_data,
)


class TestComputeDerivedValues:
    def test_sum_covers_union_of_keys(self):
        assert compute_derived_values({"x": 1, "y": 2}, {"x": 3, "z": 4}, "sum") == {
            "x": 4,
            "y": 2,
            "z": 4,
        }

    def test_difference_needs_both_sides(self):
        result = compute_derived_values({"x": 5, "y": 2}, {"x": 3, "z": 4}, "difference")
        assert result == {"x": 2}

    def test_percent_division_by_zero_is_skipped(self):
        assert compute_derived_values({"x": 10}, {"x": 0}, "percent") == {}

    def test_percent_is_a_fraction(self):
        assert compute_derived_values({"x": 25}, {"x": 100}, "percent") == {"x": 0.25}

    def test_division_formulas_iterate_numerator_keys_only(self):
        result = compute_derived_values({"x": 1}, {"x": 2, "y": 4}, "ratio")
        assert result == {"x": 0.5}

    def test_rate_per_1000(self):
        assert compute_derived_values({"x": 5}, {"x": 2000}, "rate_per_1000") == {"x": 2.5}

    def test_index_scales_by_100(self):
        assert compute_derived_values({"x": 3}, {"x": 2}, "index") == {"x": 150}

    def test_non_finite_values_are_ignored(self):
        result = compute_derived_values(
            {"x": float("nan"), "y": 4, "z": "12"},
            {"x": 1, "y": float("inf"), "z": 3},
            "ratio",
        )
        assert result == {}

    def test_sum_keeps_single_finite_side(self):
        result = compute_derived_values({"x": float("nan")}, {"x": 3}, "sum")
        assert result == {"x": 3}

    def test_unknown_formula_raises(self):
        with pytest.raises(ValueError):
            compute_derived_values({"x": 1}, {"x": 1}, "median")

    def test_overflow_is_dropped(self):
        result = compute_derived_values({"a": 1e308, "b": 1}, {"a": 1e-308, "b": 4}, "ratio")
        assert result == {"b": 0.25}


class TestComputeChangeOverTime:
    def test_relative_change(self):
        rows = {"2020": {"x": 100}, "2023": {"x": 150}}
        assert compute_change_over_time(rows, "2020", "2023") == {"x": 0.5}

    def test_negative_start_uses_absolute_value(self):
        rows = {"2020": {"x": -50}, "2023": {"x": 50}}
        assert compute_change_over_time(rows, "2020", "2023") == {"x": 2.0}

    def test_zero_start_is_skipped(self):
        rows = {"2020": {"x": 0, "y": 10}, "2023": {"x": 5, "y": 5}}
        assert compute_change_over_time(rows, "2020", "2023") == {"y": -0.5}

    def test_area_missing_at_end_is_skipped(self):
        rows = {"2020": {"x": 1, "y": 2}, "2023": {"x": 2}}
        assert compute_change_over_time(rows, "2020", "2023") == {"x": 1.0}

    def test_missing_endpoint_gives_empty(self):
        assert compute_change_over_time({"2020": {"x": 1}}, "2020", "2023") == {}


class TestComputeSum:
    def test_three_operands(self):
        result = compute_sum([{"x": 1, "y": 2}, {"x": 3}, {"y": 4, "z": 5}])
        assert result == {"x": 4, "y": 6, "z": 5}

    def test_key_with_no_finite_value_is_omitted(self):
        result = compute_sum([{"x": None}, {"x": float("nan"), "y": 1}])
        assert result == {"y": 1}

    def test_empty_operand_is_allowed(self):
        assert compute_sum([{}, {"x": 2}]) == {"x": 2}

    def test_fewer_than_two_operands_raises(self):
        with pytest.raises(ValueError):
            compute_sum([{"x": 1}])


class TestComputeSummaryFromData:
    def test_skips_invalid_values(self):
        summary = compute_summary_from_data({"a": 1, "b": 2, "c": "bad"})
        assert summary.to_dict() == {"count": 2, "sum": 3, "avg": 1.5, "min": 1, "max": 2}

    def test_empty_map_is_all_zero(self):
        assert compute_summary_from_data({}) == NumericSummary()
        assert compute_summary_from_data(None).to_dict() == {
            "count": 0,
            "sum": 0,
            "avg": 0,
            "min": 0,
            "max": 0,
        }

    def test_booleans_are_not_counted(self):
        assert compute_summary_from_data({"a": True, "b": 4}).count == 1


class TestNumericHelpers:
    def test_to_finite_number(self):
        assert to_finite_number("12.5") == 12.5
        assert to_finite_number(" 3 ") == 3.0
        assert to_finite_number("x") is None
        assert to_finite_number("nan") is None
        assert to_finite_number(None) is None

    def test_normalize_data_map(self):
        assert normalize_data_map({"74103": "12", "74104": None, 74105: 3}) == {
            "74103": 12.0,
            "74105": 3.0,
        }
        assert normalize_data_map(["not", "a", "map"]) == {}
