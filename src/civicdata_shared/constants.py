"""
constants.py — shared constants used across the core and CLI.

Collection names, relation attribute sentinels, derived-formula names and
typed literals are defined here so the models, graph and pipelines agree.
"""

from __future__ import annotations

from typing import Final, Literal

# ---------------------------------------------------------------------------
# Store collections
# ---------------------------------------------------------------------------
COLLECTION_STATS: Final[str] = "stats"
COLLECTION_RELATIONS: Final[str] = "stat_relations"
COLLECTION_STAT_DATA: Final[str] = "stat_data"
COLLECTION_SUMMARIES: Final[str] = "stat_data_summaries"

# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------
UNDEFINED_STAT_ATTRIBUTE: Final[str] = "__undefined__"
PERCENT_ATTRIBUTE: Final[str] = "Percent"
CHANGE_ATTRIBUTE: Final[str] = "Change"
RELATION_KEY_SEPARATOR: Final[str] = "::"

# ---------------------------------------------------------------------------
# Data rows
# ---------------------------------------------------------------------------
ROOT_ROW_NAME: Final[str] = "root"
BOUNDARY_TYPES: Final[tuple[str, ...]] = ("ZIP", "COUNTY")

# ---------------------------------------------------------------------------
# Derived formulas
# ---------------------------------------------------------------------------
DIVISION_FORMULAS: Final[frozenset[str]] = frozenset(
    {"percent", "rate_per_1000", "ratio", "index"}
)
UNION_FORMULAS: Final[frozenset[str]] = frozenset({"sum", "difference"})

FORMULA_TO_STAT_TYPE: Final[dict[str, str]] = {
    "percent": "percent",
    "sum": "number",
    "difference": "number",
    "rate_per_1000": "number",
    "ratio": "number",
    "index": "number",
    "change_over_time": "percent_change",
}

ALLOWED_CATEGORIES: Final[frozenset[str]] = frozenset(
    {"food", "demographics", "health", "education", "economy", "housing", "justice"}
)

# ---------------------------------------------------------------------------
# Typed literals
# ---------------------------------------------------------------------------
BoundaryType = Literal["ZIP", "COUNTY"]
Visibility = Literal["public", "private", "inactive", "inherited"]
DerivedFormula = Literal[
    "percent", "sum", "difference", "rate_per_1000", "ratio", "index", "change_over_time"
]
ImportStatus = Literal["pending", "running", "success", "error"]
ImportRelationship = Literal["none", "child", "parent"]
WriteAction = Literal["upsert", "delete"]
