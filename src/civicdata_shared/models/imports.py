"""
models/imports.py — Import-queue item and pending-reconciliation job models.

ImportQueueItem status machine:

    pending ──▶ running ──▶ success
                       └──▶ error

success and error are terminal. Items are mutated in place while a drain
runs and are never deleted, only cleared when the session resets.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from civicdata_shared.config import settings
from civicdata_shared.constants import ImportRelationship, ImportStatus

_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"success", "error"}),
    "success": frozenset(),
    "error": frozenset(),
}


class ImportQueueItem(BaseModel):
    """One census variable selected for import, spanning ``years`` years back from ``year``."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    dataset: str
    group: str
    variable: str
    year: int
    years: int = 1
    include_moe: bool = True
    relationship: ImportRelationship = "none"
    stat_attribute: str | None = None
    status: ImportStatus = "pending"
    imported_stat_id: str | None = None
    error_message: str | None = None
    derived_stat_ids: list[str] = Field(default_factory=list)

    @field_validator("years")
    @classmethod
    def _check_years(cls, v: int) -> int:
        if not 1 <= v <= settings.max_import_years:
            raise ValueError(f"years must be between 1 and {settings.max_import_years}, got {v}")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "error")

    def years_to_process(self) -> list[int]:
        """Years to fetch, strictly descending from ``year``."""
        return [self.year - offset for offset in range(self.years)]

    @property
    def year_range_label(self) -> str:
        if self.years > 1:
            return f"{self.year - self.years + 1}-{self.year}"
        return str(self.year)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, status: ImportStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal import status transition {self.status!r} -> {status!r} "
                f"for item {self.id}"
            )
        self.status = status

    def mark_running(self) -> None:
        self._transition("running")
        self.error_message = None

    def mark_error(self, message: str) -> None:
        self._transition("error")
        self.error_message = message

    def mark_success(self, stat_id: str | None = None) -> None:
        self._transition("success")
        self.error_message = None
        if stat_id:
            self.imported_stat_id = stat_id


class PendingReconciliationJob(BaseModel):
    """
    A write that timed out after it may already have landed.

    Shown to the operator until its data shows up in the store or it is
    dismissed; never retried automatically. Derived jobs are keyed by the
    new stat id; import jobs carry the census variable and year so the
    written rows can be looked up.
    """

    id: str
    label: str
    kind: Literal["import", "derived"]
    detail: str | None = None
    variable: str | None = None
    year: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
