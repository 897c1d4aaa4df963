"""
exceptions.py — Error hierarchy for the statistics core with structured context.

Exception Hierarchy:
    StatGraphError (base)
    ├── GraphError
    │   ├── CycleError
    │   └── ConflictError
    ├── ImportFetchError
    ├── TimeoutAfterPartialWrite
    ├── DerivedComputationError
    │   ├── DerivedComputationEmpty
    │   ├── IncompatibleOperandsError
    │   └── MissingOperandError
    ├── BatchWriteError
    └── QueueConfigError

Structural errors (Cycle/Conflict) are raised before anything is written.
Import and derivation errors are scoped to one queue item.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from civicdata_pipeline.loaders.batcher import BatchResult


class StatGraphError(Exception):
    """
    Base exception for all core errors.

    Attributes:
        message: Human-readable error message
        context: Additional context (stat ids, keys, year, ...)
        original_exception: The exception that was caught, if any
    """

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None,
        }


# ============================================================================
# Graph errors
# ============================================================================

class GraphError(StatGraphError):
    """Base for relationship-graph rule violations. The graph is never mutated."""


class CycleError(GraphError):
    """Adding the edge would make the child an ancestor of itself."""

    def __init__(self, parent_stat_id: str, child_stat_id: str):
        super().__init__(
            "Cannot create a cycle between parent and child.",
            context={"parent_stat_id": parent_stat_id, "child_stat_id": child_stat_id},
        )
        self.parent_stat_id = parent_stat_id
        self.child_stat_id = child_stat_id


class ConflictError(GraphError):
    """
    Renaming an attribute would collide with existing relation keys.

    ``conflicts`` lists the colliding children (labels where known).
    """

    def __init__(self, attribute: str, conflicts: list[str]):
        joined = "\n".join(conflicts)
        super().__init__(
            "Cannot rename attribute because these child stats already have a "
            f"relation under {attribute!r}:\n{joined}",
            context={"attribute": attribute, "conflicts": conflicts},
        )
        self.attribute = attribute
        self.conflicts = conflicts


# ============================================================================
# Import / write errors
# ============================================================================

class ImportFetchError(StatGraphError):
    """The external fetch failed for one (variable, year)."""

    def __init__(
        self,
        message: str,
        *,
        year: int | None = None,
        original_exception: Optional[BaseException] = None,
    ):
        super().__init__(message, context={"year": year}, original_exception=original_exception)
        self.year = year


class TimeoutAfterPartialWrite(StatGraphError):
    """
    A fetch or write exceeded its timeout after a write may have landed.

    Surfaced as a pending reconciliation job instead of being retried, so a
    blind retry cannot create duplicates.
    """

    def __init__(
        self,
        message: str,
        *,
        stat_id: str | None = None,
        label: str | None = None,
        attempted_write: bool = True,
        original_exception: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            context={"stat_id": stat_id, "label": label, "attempted_write": attempted_write},
            original_exception=original_exception,
        )
        self.stat_id = stat_id
        self.label = label
        self.attempted_write = attempted_write


class BatchWriteError(StatGraphError):
    """A write batch failed; earlier batches may already be applied."""

    def __init__(
        self,
        message: str,
        result: "BatchResult",
        original_exception: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            context={
                "batches_applied": result.batches_applied,
                "batches_total": result.batches_total,
            },
            original_exception=original_exception,
        )
        self.result = result


class QueueConfigError(StatGraphError, ValueError):
    """The queue's relationship or derived-stat configuration is invalid."""


# ============================================================================
# Derived computation errors
# ============================================================================

class DerivedComputationError(StatGraphError):
    """Base for derivations aborted before any write."""


class DerivedComputationEmpty(DerivedComputationError):
    """The operands share no area keys, so nothing could be computed."""


class IncompatibleOperandsError(DerivedComputationError):
    """Operands cover different dates or boundary types."""


class MissingOperandError(DerivedComputationError):
    """An operand statistic or its data rows could not be found."""
