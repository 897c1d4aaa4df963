"""
models/relations.py — Pydantic model for the stat_relations collection.

A relation is a parent → child edge between two statistics, qualified by a
free-text attribute. Its natural key is ``parent::child::attribute``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from civicdata_shared.constants import RELATION_KEY_SEPARATOR, UNDEFINED_STAT_ATTRIBUTE


def normalize_attribute(raw: str | None) -> str:
    """Strip the attribute label; empty labels collapse to the undefined sentinel."""
    value = raw.strip() if isinstance(raw, str) else ""
    return value or UNDEFINED_STAT_ATTRIBUTE


def build_relation_key(parent_stat_id: str, child_stat_id: str, attribute: str | None) -> str:
    return RELATION_KEY_SEPARATOR.join(
        (parent_stat_id, child_stat_id, normalize_attribute(attribute))
    )


class StatRelation(BaseModel):
    """Matches the stat_relations collection document."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    relation_key: str = ""
    parent_stat_id: str
    child_stat_id: str
    stat_attribute: str = UNDEFINED_STAT_ATTRIBUTE
    sort_order: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("stat_attribute", mode="before")
    @classmethod
    def _normalize_attribute(cls, v: Any) -> str:
        return normalize_attribute(v if isinstance(v, str) else None)

    @model_validator(mode="after")
    def _fill_relation_key(self) -> "StatRelation":
        if not self.relation_key:
            self.relation_key = build_relation_key(
                self.parent_stat_id, self.child_stat_id, self.stat_attribute
            )
        return self

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> "StatRelation":
        return cls(**row)

    def to_insert_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id"}, exclude_none=True)
