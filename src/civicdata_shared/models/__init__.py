"""
civicdata_shared.models — Pydantic models matching each store collection.

These models are used by:
- civicdata_pipeline: validate rows before writing and parse query results
- the CLI: render queue snapshots

All collection models provide:
  .from_db_row(row: dict) -> Model
  .to_insert_dict() -> dict
"""

from civicdata_shared.models.imports import ImportQueueItem, PendingReconciliationJob
from civicdata_shared.models.relations import (
    StatRelation,
    build_relation_key,
    normalize_attribute,
)
from civicdata_shared.models.stat_data import AreaDataRow, StatDataSummary, build_summary_key
from civicdata_shared.models.stats import Statistic, normalize_visibility

__all__ = [
    "Statistic",
    "normalize_visibility",
    "StatRelation",
    "build_relation_key",
    "normalize_attribute",
    "AreaDataRow",
    "StatDataSummary",
    "build_summary_key",
    "ImportQueueItem",
    "PendingReconciliationJob",
]
