"""
pipelines/derived.py — Builds derived statistics from existing stat_data rows.

Three entry points:
  create_percent_child()  — "<name> (percent)" child under an imported stat
  create_change_child()   — "<name> (change)" child spanning start-end years
  create_derived_stat()   — stand-alone derived stat for any formula

Child creation is idempotent: if the parent already has a relation under
the target attribute ("Percent" / "Change"), the existing child is reused
and nothing is written. Every computation happens before the first write;
an empty result raises DerivedComputationEmpty and leaves no artifacts.

Writes (stat, relation, rows, summaries) go through the TransactionBatcher.
Bounded batches are the default; ``single_transaction=True`` sends the
whole creation in one store call when the store allows it.

Usage:
    from civicdata_pipeline.pipelines.derived import DerivedStatBuilder, DerivedStatRequest

    builder = DerivedStatBuilder(store)
    result = await builder.create_percent_child(parent_id, denominator_id)
    print(result.stat_id, result.created)

    result = await builder.create_derived_stat(
        DerivedStatRequest(formula="ratio", name="(A ÷ B)", label="A per B",
                           numerator_id=a_id, denominator_id=b_id)
    )
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator

from civicdata_shared.config import settings
from civicdata_shared.constants import (
    CHANGE_ATTRIBUTE,
    COLLECTION_RELATIONS,
    COLLECTION_STAT_DATA,
    COLLECTION_STATS,
    FORMULA_TO_STAT_TYPE,
    PERCENT_ATTRIBUTE,
    ROOT_ROW_NAME,
    DerivedFormula,
)
from civicdata_shared.models import AreaDataRow, Statistic, StatRelation
from civicdata_pipeline.exceptions import (
    DerivedComputationEmpty,
    IncompatibleOperandsError,
    MissingOperandError,
    TimeoutAfterPartialWrite,
)
from civicdata_pipeline.loaders.batcher import BatchResult, TransactionBatcher
from civicdata_pipeline.loaders.store import StatStore, WriteOp
from civicdata_pipeline.loaders.summaries import SummaryAggregator
from civicdata_pipeline.transforms.formulas import (
    compute_change_over_time,
    compute_derived_values,
    compute_sum,
)

log = structlog.get_logger(__name__)

_ROW_FIELDS = ["stat_id", "name", "parent_area", "boundary_type", "date", "type", "data"]


class DerivedStatRequest(BaseModel):
    """
    Parameters for a stand-alone derived statistic.

    Binary formulas use numerator_id / denominator_id. ``sum`` may instead
    list two or more ``sum_operand_ids``. ``change_over_time`` reads
    ``numerator_id`` at ``start_year`` and ``end_year``.
    """

    formula: DerivedFormula
    name: str
    label: str = ""
    category: str = ""
    description: str | None = None
    numerator_id: str | None = None
    denominator_id: str | None = None
    sum_operand_ids: list[str] = Field(default_factory=list)
    start_year: str | None = None
    end_year: str | None = None
    created_by: str | None = None

    @model_validator(mode="after")
    def _check_operands(self) -> "DerivedStatRequest":
        self.sum_operand_ids = [i.strip() for i in self.sum_operand_ids if i and i.strip()]
        if not self.name.strip():
            raise ValueError("Derived stats need a name.")
        if self.formula == "change_over_time":
            if not (self.numerator_id and self.start_year and self.end_year):
                raise ValueError("change_over_time needs a stat, a start year and an end year.")
        elif self.formula == "sum" and self.sum_operand_ids:
            if len(self.sum_operand_ids) < 2:
                raise ValueError("Select at least two stats to sum.")
        elif not (self.numerator_id and self.denominator_id):
            raise ValueError(f"{self.formula} needs a numerator and a denominator.")
        return self

    @property
    def is_multi_sum(self) -> bool:
        return self.formula == "sum" and len(self.sum_operand_ids) >= 2


@dataclass
class DerivedStatResult:
    stat_id: str
    label: str
    created: bool = True
    rows_written: int = 0
    batch: BatchResult | None = None


@dataclass
class _ComputedRow:
    parent_area: str | None
    boundary_type: str
    date: str
    data: dict[str, float]


def _sorted_set(values: Iterable[str]) -> str:
    return ", ".join(sorted(values)) or "none"


class DerivedStatBuilder:
    """Computes derived rows with the formula engine and persists them."""

    def __init__(
        self,
        store: StatStore,
        batcher: TransactionBatcher | None = None,
        aggregator: SummaryAggregator | None = None,
        *,
        single_transaction: bool | None = None,
    ) -> None:
        self._store = store
        self._batcher = batcher or TransactionBatcher(store)
        self._aggregator = aggregator or SummaryAggregator(store)
        self._single_transaction = (
            settings.derived_single_transaction if single_transaction is None else single_transaction
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_child_by_attribute(self, parent_id: str, attribute: str) -> str | None:
        """Child stat id of an existing relation under ``attribute``, if any."""
        rows = await self._store.query_once(
            COLLECTION_RELATIONS,
            where={"parent_stat_id": parent_id, "stat_attribute": attribute},
            fields=["child_stat_id"],
        )
        for row in rows:
            child = row.get("child_stat_id")
            if isinstance(child, str) and child:
                return child
        return None

    async def _load_stats(self, stat_ids: Sequence[str]) -> dict[str, Statistic]:
        rows = await self._store.query_once(COLLECTION_STATS, where={"id": list(stat_ids)})
        return {row["id"]: Statistic.from_db_row(row) for row in rows}

    async def _load_root_rows(self, stat_ids: Sequence[str]) -> dict[str, dict[str, AreaDataRow]]:
        """stat_id → row_key → row, for the root rows of each stat."""
        raw_rows = await self._store.query_once(
            COLLECTION_STAT_DATA,
            where={"name": ROOT_ROW_NAME, "stat_id": list(stat_ids)},
            fields=_ROW_FIELDS,
        )
        per_stat: dict[str, dict[str, AreaDataRow]] = {}
        for raw in raw_rows:
            try:
                row = AreaDataRow.from_db_row({k: v for k, v in raw.items() if v is not None})
            except ValidationError as exc:
                log.warning("derived_row_skipped", stat_id=raw.get("stat_id"), error=str(exc))
                continue
            per_stat.setdefault(row.stat_id, {})[row.row_key] = row
        return per_stat

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    @staticmethod
    def _check_compatible(
        numerator: dict[str, AreaDataRow],
        denominator: dict[str, AreaDataRow],
    ) -> None:
        num_years = {r.date for r in numerator.values()}
        den_years = {r.date for r in denominator.values()}
        num_bounds = {r.boundary_type for r in numerator.values()}
        den_bounds = {r.boundary_type for r in denominator.values()}

        parts: list[str] = []
        if num_years != den_years:
            parts.append(
                f"years (numerator: {_sorted_set(num_years)}, "
                f"denominator: {_sorted_set(den_years)})"
            )
        if num_bounds != den_bounds:
            parts.append(
                f"boundary types (numerator: {_sorted_set(num_bounds)}, "
                f"denominator: {_sorted_set(den_bounds)})"
            )
        if parts:
            raise IncompatibleOperandsError(
                f"These stats can't be combined: they have different {' and '.join(parts)}.",
                context={"years_match": num_years == den_years, "bounds_match": num_bounds == den_bounds},
            )

    @staticmethod
    def _binary_rows(
        numerator: dict[str, AreaDataRow],
        denominator: dict[str, AreaDataRow],
        formula: str,
        *,
        require_numerator_row: bool = False,
    ) -> list[_ComputedRow]:
        # the denominator's rows are the canonical coverage
        out: list[_ComputedRow] = []
        for key, b_row in denominator.items():
            a_row = numerator.get(key)
            if a_row is None and require_numerator_row:
                continue
            data = compute_derived_values(a_row.data if a_row else {}, b_row.data, formula)
            out.append(_ComputedRow(b_row.parent_area, b_row.boundary_type, b_row.date, data))
        return out

    @staticmethod
    def _change_rows(rows: Iterable[AreaDataRow], start_year: str, end_year: str) -> list[_ComputedRow]:
        by_context: dict[str, dict[str, AreaDataRow]] = {}
        for row in rows:
            by_context.setdefault(row.context_key, {})[row.date] = row

        out: list[_ComputedRow] = []
        for by_date in by_context.values():
            if start_year not in by_date or end_year not in by_date:
                continue
            template = by_date[end_year]
            data = compute_change_over_time(
                {d: r.data for d, r in by_date.items()}, start_year, end_year
            )
            out.append(
                _ComputedRow(template.parent_area, template.boundary_type, f"{start_year}-{end_year}", data)
            )
        return out

    @staticmethod
    def _sum_rows(per_stat: dict[str, dict[str, AreaDataRow]], operand_ids: Sequence[str]) -> list[_ComputedRow]:
        row_keys: dict[str, None] = {}
        for stat_id in operand_ids:
            row_keys.update(dict.fromkeys(per_stat.get(stat_id, {})))

        out: list[_ComputedRow] = []
        for key in row_keys:
            template = next(
                per_stat[s][key] for s in operand_ids if key in per_stat.get(s, {})
            )
            operands = [
                per_stat[s][key].data if key in per_stat.get(s, {}) else {}
                for s in operand_ids
            ]
            out.append(
                _ComputedRow(template.parent_area, template.boundary_type, template.date, compute_sum(operands))
            )
        return out

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(
        self,
        stat: Statistic,
        computed: list[_ComputedRow],
        stat_type: str,
        *,
        relation: StatRelation | None = None,
        empty_message: str,
    ) -> DerivedStatResult:
        non_empty = [c for c in computed if c.data]
        if not non_empty:
            raise DerivedComputationEmpty(empty_message, context={"label": stat.display_name})

        now = datetime.now(timezone.utc)
        rows = [
            AreaDataRow(
                stat_id=stat.id,
                name=ROOT_ROW_NAME,
                parent_area=c.parent_area,
                boundary_type=c.boundary_type,
                date=c.date,
                type=stat_type,
                data=c.data,
                source=stat.source,
                stat_title=stat.label,
                created_on=now,
                last_updated=now,
            )
            for c in sorted(non_empty, key=lambda c: c.date)
        ]

        ops: list[WriteOp] = [WriteOp.upsert(COLLECTION_STATS, stat.id, stat.to_insert_dict())]
        if relation is not None:
            ops.append(WriteOp.upsert(COLLECTION_RELATIONS, relation.id, relation.to_insert_dict()))
        ops.extend(await self._aggregator.row_ops(rows, fresh=True))

        label = stat.display_name
        try:
            batch = await self._batcher.submit(ops, single_transaction=self._single_transaction)
        except TimeoutAfterPartialWrite as exc:
            raise TimeoutAfterPartialWrite(
                f"Timed out while writing derived stat {label!r}.",
                stat_id=stat.id,
                label=label,
                attempted_write=True,
                original_exception=exc,
            ) from exc

        log.info(
            "derived_stat_created",
            stat_id=stat.id,
            label=label,
            rows=len(rows),
            batches=batch.batches_applied,
        )
        return DerivedStatResult(stat_id=stat.id, label=label, rows_written=len(rows), batch=batch)

    @staticmethod
    def _child_stat(parent: Statistic, suffix: str, attribute: str) -> Statistic:
        now = datetime.now(timezone.utc)
        return Statistic(
            name=f"{parent.name} ({suffix})",
            label=f"{parent.display_name} [{attribute}]",
            category=parent.category,
            source=settings.derived_source,
            good_if_up=None,
            visibility="inherited",
            created_on=now,
            last_updated=now,
        )

    @staticmethod
    def _child_relation(parent_id: str, child_id: str, attribute: str) -> StatRelation:
        now = datetime.now(timezone.utc)
        return StatRelation(
            parent_stat_id=parent_id,
            child_stat_id=child_id,
            stat_attribute=attribute,
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Children created during import
    # ------------------------------------------------------------------

    async def create_percent_child(self, parent_id: str, denominator_id: str) -> DerivedStatResult:
        """
        Percent child: parent ÷ denominator for every shared row.

        Raises:
            MissingOperandError: either stat or its rows are missing.
            DerivedComputationEmpty: no area produced a value.
        """
        existing = await self.find_child_by_attribute(parent_id, PERCENT_ATTRIBUTE)
        if existing:
            log.info("derived_child_reused", parent_stat_id=parent_id, attribute=PERCENT_ATTRIBUTE, stat_id=existing)
            return DerivedStatResult(stat_id=existing, label="", created=False)

        stats = await self._load_stats([parent_id, denominator_id])
        parent = stats.get(parent_id)
        if parent is None or denominator_id not in stats:
            raise MissingOperandError(
                "Unable to locate the parent or denominator stat.",
                context={"parent_stat_id": parent_id, "denominator_id": denominator_id},
            )

        per_stat = await self._load_root_rows([parent_id, denominator_id])
        numerator_rows = per_stat.get(parent_id, {})
        denominator_rows = per_stat.get(denominator_id, {})
        if not numerator_rows or not denominator_rows:
            raise MissingOperandError(
                "Missing data for the parent or denominator stat.",
                context={"parent_stat_id": parent_id, "denominator_id": denominator_id},
            )

        computed = self._binary_rows(
            numerator_rows, denominator_rows, "percent", require_numerator_row=True
        )
        child = self._child_stat(parent, "percent", PERCENT_ATTRIBUTE)
        return await self._persist(
            child,
            computed,
            FORMULA_TO_STAT_TYPE["percent"],
            relation=self._child_relation(parent_id, child.id, PERCENT_ATTRIBUTE),
            empty_message="Parent and denominator have no overlapping area data.",
        )

    async def create_change_child(
        self,
        parent_id: str,
        start_year: str | int,
        end_year: str | int,
    ) -> DerivedStatResult:
        """Change child: relative change between two years of the parent's rows."""
        existing = await self.find_child_by_attribute(parent_id, CHANGE_ATTRIBUTE)
        if existing:
            log.info("derived_child_reused", parent_stat_id=parent_id, attribute=CHANGE_ATTRIBUTE, stat_id=existing)
            return DerivedStatResult(stat_id=existing, label="", created=False)

        stats = await self._load_stats([parent_id])
        parent = stats.get(parent_id)
        if parent is None:
            raise MissingOperandError("Unable to locate the parent stat.", context={"parent_stat_id": parent_id})

        start, end = str(start_year), str(end_year)
        per_stat = await self._load_root_rows([parent_id])
        computed = self._change_rows(per_stat.get(parent_id, {}).values(), start, end)
        child = self._child_stat(parent, "change", CHANGE_ATTRIBUTE)
        return await self._persist(
            child,
            computed,
            FORMULA_TO_STAT_TYPE["change_over_time"],
            relation=self._child_relation(parent_id, child.id, CHANGE_ATTRIBUTE),
            empty_message=f"No overlapping areas with data for both {start} and {end}.",
        )

    # ------------------------------------------------------------------
    # Stand-alone derived stats
    # ------------------------------------------------------------------

    async def create_derived_stat(self, request: DerivedStatRequest) -> DerivedStatResult:
        """
        Create a private derived stat owned by ``request.created_by``.

        Raises:
            IncompatibleOperandsError: binary operands differ in years or
                boundary types.
            MissingOperandError: an operand has no rows.
            DerivedComputationEmpty: nothing could be computed.
        """
        now = datetime.now(timezone.utc)
        stat = Statistic(
            name=request.name.strip(),
            label=request.label.strip() or None,
            category=request.category.strip(),
            source=(request.description or "").strip() or settings.derived_source,
            good_if_up=None,
            visibility="private",
            created_by=request.created_by,
            created_on=now,
            last_updated=now,
        )
        stat_type = FORMULA_TO_STAT_TYPE[request.formula]
        req_log = log.bind(formula=request.formula, stat_id=stat.id)
        req_log.info("derived_stat_start")

        if request.formula == "change_over_time":
            per_stat = await self._load_root_rows([request.numerator_id])
            computed = self._change_rows(
                per_stat.get(request.numerator_id, {}).values(),
                request.start_year,
                request.end_year,
            )
            empty = f"No overlapping areas with data for both {request.start_year} and {request.end_year}."
        elif request.is_multi_sum:
            per_stat = await self._load_root_rows(request.sum_operand_ids)
            if not any(per_stat.values()):
                raise MissingOperandError("No data found for the selected stats.")
            computed = self._sum_rows(per_stat, request.sum_operand_ids)
            empty = "Selected stats have no overlapping area data to compute a sum."
        else:
            per_stat = await self._load_root_rows([request.numerator_id, request.denominator_id])
            numerator_rows = per_stat.get(request.numerator_id, {})
            denominator_rows = per_stat.get(request.denominator_id, {})
            self._check_compatible(numerator_rows, denominator_rows)
            if not numerator_rows or not denominator_rows:
                raise MissingOperandError("Missing data for one of the selected stats.")
            computed = self._binary_rows(numerator_rows, denominator_rows, request.formula)
            empty = "Selected stats have no overlapping area data to compute a derived value."

        return await self._persist(stat, computed, stat_type, empty_message=empty)

