"""
loaders/summaries.py — Materialized per-context summaries of stat_data rows.

Every stat_data write is paired with an upsert of the matching
stat_data_summaries document. The document id is the summary natural key
``stat_id::name::parent_area::boundary_type``, so re-importing the same
context overwrites instead of accumulating duplicates.

A summary describes the latest date seen for its key; ``min_date`` and
``max_date`` widen across every date written. Dates compare as strings,
which orders plain years and "start-end" ranges by their start year.

Usage:
    from civicdata_pipeline.loaders.summaries import SummaryAggregator

    aggregator = SummaryAggregator(store)
    ops = await aggregator.row_ops(rows)        # row upserts + summary upserts
    await batcher.submit(ops)

    # Operator escape hatch: rebuild every summary from stat_data
    n_keys = await aggregator.recompute_all()
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import polars as pl
import structlog
from pydantic import ValidationError

from civicdata_shared.config import settings
from civicdata_shared.constants import COLLECTION_STAT_DATA, COLLECTION_SUMMARIES, ROOT_ROW_NAME
from civicdata_shared.models import AreaDataRow, StatDataSummary, build_summary_key
from civicdata_pipeline.loaders.batcher import TransactionBatcher
from civicdata_pipeline.loaders.store import StatStore, WriteOp
from civicdata_pipeline.transforms.formulas import compute_summary_from_data

log = structlog.get_logger(__name__)

_SCAN_FIELDS = ["stat_id", "name", "parent_area", "boundary_type", "date", "type", "data"]

_SUMMARY_SCHEMA: dict[str, Any] = {
    "summary_key": pl.String,
    "stat_id": pl.String,
    "name": pl.String,
    "parent_area": pl.String,
    "boundary_type": pl.String,
    "date": pl.String,
    "type": pl.String,
    "count": pl.Int64,
    "sum": pl.Float64,
    "avg": pl.Float64,
    "min": pl.Float64,
    "max": pl.Float64,
}


def summarize(row: AreaDataRow, existing: StatDataSummary | None = None) -> StatDataSummary:
    """
    Fold one row into the summary for its key.

    The row's statistics replace the existing ones when its date is the
    same or later; the date range always widens.
    """
    now = datetime.now(timezone.utc)
    if existing is not None and row.date < existing.date:
        return existing.model_copy(
            update={
                "min_date": min(existing.min_date, row.date),
                "max_date": max(existing.max_date, row.date),
                "updated_at": now,
            }
        )

    stats = compute_summary_from_data(row.data)
    return StatDataSummary(
        summary_key=row.summary_key,
        stat_id=row.stat_id,
        name=row.name,
        parent_area=row.parent_area,
        boundary_type=row.boundary_type,
        date=row.date,
        min_date=min(existing.min_date, row.date) if existing else row.date,
        max_date=max(existing.max_date, row.date) if existing else row.date,
        type=row.type,
        updated_at=now,
        **stats.to_dict(),
    )


class SummaryAggregator:
    """Builds summary upserts for row writes and runs the full rebuild."""

    def __init__(self, store: StatStore, batcher: TransactionBatcher | None = None) -> None:
        self._store = store
        self._batcher = batcher or TransactionBatcher(
            store, batch_size=settings.summary_upsert_batch_size
        )

    async def find_by_key(self, summary_key: str) -> StatDataSummary | None:
        rows = await self._store.query_once(
            COLLECTION_SUMMARIES, where={"summary_key": summary_key}, limit=1
        )
        return StatDataSummary.from_db_row(rows[0]) if rows else None

    async def summary_ops(
        self,
        rows: Sequence[AreaDataRow],
        *,
        fresh: bool = False,
    ) -> list[WriteOp]:
        """
        One summary upsert per distinct key in ``rows``.

        Rows of the same key are folded in date order on top of the stored
        summary. ``fresh`` skips the lookup for stats created in this call.
        """
        by_key: dict[str, list[AreaDataRow]] = {}
        for row in rows:
            by_key.setdefault(row.summary_key, []).append(row)

        ops: list[WriteOp] = []
        for key, key_rows in by_key.items():
            summary = None if fresh else await self.find_by_key(key)
            for row in sorted(key_rows, key=lambda r: r.date):
                summary = summarize(row, summary)
            if summary is not None:
                ops.append(WriteOp.upsert(COLLECTION_SUMMARIES, key, summary.to_insert_dict()))
        return ops

    async def row_ops(self, rows: Sequence[AreaDataRow], *, fresh: bool = False) -> list[WriteOp]:
        """Row upserts followed by the summary upserts they imply."""
        ops = [WriteOp.upsert(COLLECTION_STAT_DATA, row.id, row.to_insert_dict()) for row in rows]
        ops.extend(await self.summary_ops(rows, fresh=fresh))
        return ops

    # ------------------------------------------------------------------
    # Full rebuild
    # ------------------------------------------------------------------

    async def _scan_root_rows(self, page_size: int) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = await self._store.query_once(
                COLLECTION_STAT_DATA,
                where={"name": ROOT_ROW_NAME},
                fields=_SCAN_FIELDS,
                limit=page_size,
                offset=offset,
            )
            if not page:
                break
            for raw in page:
                try:
                    row = AreaDataRow.from_db_row({k: v for k, v in raw.items() if v is not None})
                except ValidationError as exc:
                    log.warning("summary_scan_row_skipped", stat_id=raw.get("stat_id"), error=str(exc))
                    continue
                records.append(
                    {
                        "summary_key": row.summary_key,
                        "stat_id": row.stat_id,
                        "name": row.name,
                        "parent_area": row.parent_area,
                        "boundary_type": row.boundary_type,
                        "date": row.date,
                        "type": row.type,
                        **compute_summary_from_data(row.data).to_dict(),
                    }
                )
            offset += len(page)
            if offset % (page_size * 20) == 0:
                log.info("summary_scan_progress", scanned=offset)
        return records

    async def recompute_all(self, *, page_size: int | None = None) -> int:
        """
        Rescan every root stat_data row and rewrite all summaries.

        Returns:
            Number of summary keys written.
        """
        records = await self._scan_root_rows(page_size or settings.summary_scan_page_size)
        if not records:
            log.info("summary_recompute_empty")
            return 0

        df = pl.DataFrame(records, schema=_SUMMARY_SCHEMA)
        latest = (
            df.sort("date", maintain_order=True)
            .group_by("summary_key", maintain_order=True)
            .agg(
                pl.all().last(),
                pl.col("date").min().alias("min_date"),
                pl.col("date").max().alias("max_date"),
            )
        )

        now = datetime.now(timezone.utc)
        ops: list[WriteOp] = []
        for entry in latest.to_dicts():
            summary = StatDataSummary(**entry, updated_at=now)
            ops.append(
                WriteOp.upsert(COLLECTION_SUMMARIES, summary.summary_key, summary.to_insert_dict())
            )

        log.info("summary_recompute_upserting", keys=len(ops), rows_scanned=len(records))
        await self._batcher.submit(ops)
        log.info("summary_recompute_complete", keys=len(ops))
        return len(ops)


__all__ = ["SummaryAggregator", "summarize", "build_summary_key"]
