"""
models/stat_data.py — Pydantic models for stat_data rows and stat_data_summaries.

AreaDataRow holds one (stat, boundary type, date) slice of a statistic as an
area-code → value map. StatDataSummary is the materialized aggregate for a
(stat, context, boundary type) natural key.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from civicdata_shared.constants import (
    BOUNDARY_TYPES,
    RELATION_KEY_SEPARATOR,
    ROOT_ROW_NAME,
    BoundaryType,
)
from civicdata_shared.numeric import normalize_data_map


def build_summary_key(
    stat_id: str,
    name: str,
    parent_area: str | None,
    boundary_type: str | None,
) -> str:
    """Deterministic natural key for a summary: stat + context + boundary type."""
    return RELATION_KEY_SEPARATOR.join(
        (stat_id, name, parent_area or "", boundary_type or "")
    )


class AreaDataRow(BaseModel):
    """
    Matches the stat_data collection document.

    ``date`` may be a single year ("2023") or a range ("2020-2023").
    ``data`` is normalized on construction: invalid and non-finite values
    are dropped.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    stat_id: str
    name: str = ROOT_ROW_NAME
    parent_area: str | None = None
    boundary_type: BoundaryType
    date: str
    type: str = "count"
    data: dict[str, float] = Field(default_factory=dict)
    source: str | None = None
    stat_title: str | None = None
    census_variable: str | None = None
    created_on: datetime | None = None
    last_updated: datetime | None = None

    @field_validator("boundary_type", mode="before")
    @classmethod
    def _upper_boundary(cls, v: Any) -> str:
        value = str(v).strip().upper() if v is not None else ""
        if value not in BOUNDARY_TYPES:
            raise ValueError(f"boundary_type must be one of {BOUNDARY_TYPES}, got {v!r}")
        return value

    @field_validator("date", mode="before")
    @classmethod
    def _date_to_str(cls, v: Any) -> str:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        if isinstance(v, str) and v.strip():
            return v.strip()
        raise ValueError(f"date must be a non-empty string or year, got {v!r}")

    @field_validator("data", mode="before")
    @classmethod
    def _normalize_data(cls, v: Any) -> dict[str, float]:
        return normalize_data_map(v)

    @property
    def row_key(self) -> str:
        """Alignment key across statistics: parent_area::boundary_type::date."""
        return RELATION_KEY_SEPARATOR.join(
            (self.parent_area or "", self.boundary_type, self.date)
        )

    @property
    def context_key(self) -> str:
        return RELATION_KEY_SEPARATOR.join((self.parent_area or "", self.boundary_type))

    @property
    def summary_key(self) -> str:
        return build_summary_key(self.stat_id, self.name, self.parent_area, self.boundary_type)

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> "AreaDataRow":
        return cls(**row)

    def to_insert_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id"}, exclude_none=True)


class StatDataSummary(BaseModel):
    """
    Matches the stat_data_summaries collection document.

    Primary key is summary_key (stat_id::name::parent_area::boundary_type).
    The numeric fields describe the latest ``date`` written for the key;
    ``min_date``/``max_date`` span every date seen.
    """

    summary_key: str
    stat_id: str
    name: str = ROOT_ROW_NAME
    parent_area: str | None = None
    boundary_type: str
    date: str
    min_date: str
    max_date: str
    type: str = "count"
    count: int = 0
    sum: float = 0.0
    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0
    updated_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> "StatDataSummary":
        return cls(**row)

    def to_insert_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
