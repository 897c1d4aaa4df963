"""
models/stats.py — Pydantic model for the stats collection.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, get_args
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from civicdata_shared.constants import Visibility

_VISIBILITIES: frozenset[str] = frozenset(get_args(Visibility))


def normalize_visibility(value: Any) -> Visibility:
    """Map stored visibility values onto the four known states; anything else inherits."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _VISIBILITIES:
            return lowered  # type: ignore[return-value]
        if lowered == "inherit":
            return "inherited"
    return "inherited"


class Statistic(BaseModel):
    """Matches the stats collection document."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    label: str | None = None
    category: str = ""
    source: str | None = None
    good_if_up: bool | None = None     # None = direction has no meaning
    visibility: Visibility = "inherited"
    visibility_effective: Visibility | None = None
    created_by: str | None = None
    created_on: datetime | None = None
    last_updated: datetime | None = None

    @field_validator("visibility", mode="before")
    @classmethod
    def _coerce_visibility(cls, v: Any) -> Visibility:
        return normalize_visibility(v)

    @property
    def display_name(self) -> str:
        return self.label or self.name

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> "Statistic":
        return cls(**row)

    def to_insert_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id"}, exclude_none=True) | {
            # explicit nulls are meaningful for these two
            "good_if_up": self.good_if_up,
            "created_by": self.created_by,
        }
