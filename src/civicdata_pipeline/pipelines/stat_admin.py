"""
pipelines/stat_admin.py — Administrative operations over stats and their relations.

Every operation loads a fresh RelationshipGraph from the store, applies
its structural checks in memory, and only then writes. Cycle and rename
conflicts are raised before anything is sent to the store.

Operations:
  group_under_parent()          link children under a parent + attribute
  rename_attribute()            move a parent's edges to a new attribute
  delete_stat()                 orphan-cascade delete
  cleanup_orphaned_relations()  drop relations pointing at missing stats
  sync_effective_visibility()   background pass writing visibility_effective

Usage:
    from civicdata_pipeline.pipelines.stat_admin import StatAdmin

    admin = StatAdmin(store)
    await admin.group_under_parent(parent_id, [child_a, child_b], "Age")
    plan = await admin.delete_stat(stat_id)
    orphaned = await admin.cleanup_orphaned_relations(dry_run=True)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from civicdata_shared.config import settings
from civicdata_shared.constants import (
    COLLECTION_RELATIONS,
    COLLECTION_STAT_DATA,
    COLLECTION_STATS,
    COLLECTION_SUMMARIES,
)
from civicdata_shared.models import Statistic, StatRelation
from civicdata_pipeline.exceptions import BatchWriteError, CycleError, QueueConfigError, TimeoutAfterPartialWrite
from civicdata_pipeline.loaders.batcher import TransactionBatcher
from civicdata_pipeline.loaders.store import StatStore, WriteOp
from civicdata_pipeline.transforms.relationships import OrphanCascadePlan, RelationshipGraph

log = structlog.get_logger(__name__)


@dataclass
class DeletePlanResult:
    """What delete_stat() removed."""

    plan: OrphanCascadePlan
    relations_deleted: int = 0
    rows_deleted: int = 0
    summaries_deleted: int = 0
    dry_run: bool = False


@dataclass
class OrphanedRelations:
    missing_parent: list[StatRelation] = field(default_factory=list)
    missing_child: list[StatRelation] = field(default_factory=list)
    deleted: int = 0

    @property
    def all(self) -> list[StatRelation]:
        return [*self.missing_parent, *self.missing_child]


class StatAdmin:
    """Grouping, renaming, cascade deletion and background reconciliation."""

    def __init__(self, store: StatStore, batcher: TransactionBatcher | None = None) -> None:
        self._store = store
        self._batcher = batcher or TransactionBatcher(store)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_graph(self) -> RelationshipGraph:
        return RelationshipGraph.from_rows(await self._store.query_once(COLLECTION_RELATIONS))

    async def load_stats(self) -> dict[str, Statistic]:
        rows = await self._store.query_once(COLLECTION_STATS)
        return {row["id"]: Statistic.from_db_row(row) for row in rows if row.get("id")}

    # ------------------------------------------------------------------
    # Grouping and renaming
    # ------------------------------------------------------------------

    async def group_under_parent(
        self,
        parent_id: str,
        child_ids: Sequence[str],
        attribute: str,
        sort_order: float | None = None,
    ) -> list[StatRelation]:
        """
        Link each child under ``parent_id`` with ``attribute``.

        Every child is cycle-checked before anything is written. Children
        already linked under the same attribute are skipped.

        Raises:
            QueueConfigError: empty attribute, or no child other than the parent.
            CycleError: a child is already an ancestor of the parent.
        """
        attr = attribute.strip() if attribute else ""
        if not attr:
            raise QueueConfigError("Stat attribute is required.")
        children = list(dict.fromkeys(c for c in child_ids if c and c != parent_id))
        if not children:
            raise QueueConfigError(
                "Select at least one child stat (parent cannot be its own child)."
            )

        graph = await self.load_graph()
        for child_id in children:
            if graph.would_create_cycle(parent_id, child_id):
                raise CycleError(parent_id, child_id)

        created = [
            rel
            for child_id in children
            if (rel := graph.add_edge(parent_id, child_id, attr, sort_order)) is not None
        ]
        if not created:
            log.info("group_nothing_new", parent_stat_id=parent_id, attribute=attr)
            return []

        await self._batcher.submit(
            [WriteOp.upsert(COLLECTION_RELATIONS, rel.id, rel.to_insert_dict()) for rel in created],
            single_transaction=True,
        )
        log.info("stats_grouped", parent_stat_id=parent_id, attribute=attr, count=len(created))
        return created

    async def rename_attribute(
        self,
        parent_id: str,
        old_attribute: str | None,
        new_attribute: str | None,
    ) -> list[StatRelation]:
        """
        Rename an attribute across all of a parent's edges in one transaction.

        Raises:
            ConflictError: a child already has an edge under the new attribute.
        """
        graph = await self.load_graph()
        stats = await self.load_stats()
        labels = {stat_id: stat.display_name for stat_id, stat in stats.items()}
        renamed = graph.rename_attribute(parent_id, old_attribute, new_attribute, labels=labels)
        if not renamed:
            return []

        ops = [
            WriteOp.upsert(
                COLLECTION_RELATIONS,
                rel.id,
                {
                    "relation_key": rel.relation_key,
                    "stat_attribute": rel.stat_attribute,
                    "updated_at": rel.updated_at.isoformat() if rel.updated_at else None,
                },
            )
            for rel in renamed
        ]
        await self._batcher.submit(ops, single_transaction=True)
        return renamed

    # ------------------------------------------------------------------
    # Cascade delete
    # ------------------------------------------------------------------

    async def delete_stat(self, stat_id: str, *, dry_run: bool = False) -> DeletePlanResult:
        """
        Delete ``stat_id`` plus every descendant left without a parent.

        Children that still have another parent are only unlinked. Data rows
        and summaries go first and stats last, so a re-run after a partial
        failure finishes the job.
        """
        graph = await self.load_graph()
        plan = graph.collect_orphaned_descendants(stat_id)
        doomed = sorted(plan.to_delete)

        relations = graph.relations_touching(doomed)
        rows = await self._store.query_once(
            COLLECTION_STAT_DATA, where={"stat_id": doomed}, fields=["id"]
        )
        summaries = await self._store.query_once(
            COLLECTION_SUMMARIES, where={"stat_id": doomed}, fields=["summary_key"]
        )
        result = DeletePlanResult(
            plan=plan,
            relations_deleted=len(relations),
            rows_deleted=len(rows),
            summaries_deleted=len(summaries),
            dry_run=dry_run,
        )
        del_log = log.bind(
            root_id=stat_id,
            stats=len(doomed),
            unlinked=len(plan.to_unlink),
            relations=result.relations_deleted,
            rows=result.rows_deleted,
        )
        if dry_run:
            del_log.info("delete_stat_dry_run")
            return result

        ops: list[WriteOp] = [WriteOp.delete(COLLECTION_STAT_DATA, r["id"]) for r in rows if r.get("id")]
        ops.extend(
            WriteOp.delete(COLLECTION_SUMMARIES, s["summary_key"]) for s in summaries if s.get("summary_key")
        )
        ops.extend(WriteOp.delete(COLLECTION_RELATIONS, rel.id) for rel in relations)
        ops.extend(WriteOp.delete(COLLECTION_STATS, sid) for sid in doomed)

        await self._batcher.submit(ops)
        del_log.info("delete_stat_complete")
        return result

    # ------------------------------------------------------------------
    # Background reconciliation
    # ------------------------------------------------------------------

    async def cleanup_orphaned_relations(self, *, dry_run: bool = True) -> OrphanedRelations:
        """Find (and unless ``dry_run``, delete) relations whose parent or child is gone."""
        stat_ids = {row["id"] for row in await self._store.query_once(COLLECTION_STATS, fields=["id"])}
        graph = await self.load_graph()

        found = OrphanedRelations()
        for rel in graph.relations:
            if rel.parent_stat_id not in stat_ids:
                found.missing_parent.append(rel)
            elif rel.child_stat_id not in stat_ids:
                found.missing_child.append(rel)

        log.info(
            "orphaned_relations_found",
            total=len(found.all),
            missing_parent=len(found.missing_parent),
            missing_child=len(found.missing_child),
            dry_run=dry_run,
        )
        if dry_run or not found.all:
            return found

        cleanup = TransactionBatcher(self._store, batch_size=settings.relation_cleanup_batch_size)
        result = await cleanup.submit([WriteOp.delete(COLLECTION_RELATIONS, rel.id) for rel in found.all])
        found.deleted = result.ops_applied
        log.info("orphaned_relations_deleted", deleted=found.deleted)
        return found

    async def sync_effective_visibility(self) -> int:
        """
        Write each stat's resolved visibility to ``visibility_effective``.

        Stats with no owner that resolve to a non-public visibility also pick
        up the owner of the ancestor they inherit from. Write failures are
        logged and the pass returns 0; the next pass retries naturally.

        Returns:
            Number of stats updated.
        """
        try:
            graph = await self.load_graph()
            stats = await self.load_stats()
        except Exception as exc:
            log.warning("visibility_sync_failed", error=str(exc), stage="load")
            return 0

        pending: dict[str, dict[str, str]] = {}
        for stat_id, stat in stats.items():
            effective = graph.effective_visibility(stat_id, stats)
            if stat.visibility_effective != effective:
                pending.setdefault(stat_id, {})["visibility_effective"] = effective
            if not stat.created_by and stat.visibility == "inherited" and effective != "public":
                owner = graph.effective_owner(stat_id, stats)
                if owner:
                    pending.setdefault(stat_id, {})["created_by"] = owner

        if not pending:
            return 0

        ops = [WriteOp.upsert(COLLECTION_STATS, sid, updates) for sid, updates in pending.items()]
        sync = TransactionBatcher(self._store, batch_size=settings.visibility_sync_batch_size)
        try:
            await sync.submit(ops)
        except (BatchWriteError, TimeoutAfterPartialWrite) as exc:
            log.warning("visibility_sync_failed", error=exc.message, pending=len(ops))
            return 0
        log.info("visibility_sync_complete", updated=len(ops))
        return len(ops)

