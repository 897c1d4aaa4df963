"""
pipelines/import_queue.py — Drains a FIFO queue of census import items.

One ImportSession is owned per operator session and passed to the
orchestrator; no queue state lives at module level. A drain:

  1. takes the next pending item and marks it running
  2. fetches each year, newest first, one call at a time; the first failure
     marks the item error and skips its remaining years (the queue goes on)
  3. on success, builds the requested percent / change children
  4. marks the item success
  5. once the queue is empty, links every imported "child" item under the
     designated parent and clears the children's visibility override

Timeouts are never retried. A fetch or derived write that timed out after a
write may have landed becomes a PendingReconciliationJob. Each drain (and
`civicdata status`) clears the jobs whose data has since shown up in the
store; the rest stay on the session until the operator dismisses them.

Usage:
    from civicdata_pipeline.pipelines.import_queue import (
        DerivedOptions, ImportQueueOrchestrator, ImportSession,
    )

    session = ImportSession(category="demographics", created_by=user_id,
                            derived=DerivedOptions(add_change=True))
    orchestrator = ImportQueueOrchestrator(session, CensusImportClient(), store)
    orchestrator.enqueue([ImportQueueItem(dataset="acs/acs5", group="B01001",
                                          variable="B01001_001E", year=2023, years=3)])
    result = await orchestrator.drain()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, Field

from civicdata_shared.config import settings
from civicdata_shared.constants import COLLECTION_RELATIONS, COLLECTION_STAT_DATA, COLLECTION_STATS
from civicdata_shared.models import ImportQueueItem, PendingReconciliationJob, StatRelation
from civicdata_pipeline.exceptions import (
    BatchWriteError,
    CycleError,
    DerivedComputationError,
    ImportFetchError,
    QueueConfigError,
    TimeoutAfterPartialWrite,
)
from civicdata_pipeline.loaders.batcher import TransactionBatcher
from civicdata_pipeline.loaders.store import StatStore, WriteOp
from civicdata_pipeline.pipelines.derived import DerivedStatBuilder, DerivedStatResult
from civicdata_pipeline.sources.census import FetchRequest, ImportFetcher
from civicdata_pipeline.transforms.relationships import RelationshipGraph
from civicdata_pipeline.utils.logging import item_context

log = structlog.get_logger(__name__)

PENDING_IMPORT_MESSAGE = "Import may have completed; awaiting reconciliation."
UNEXPECTED_ERROR_MESSAGE = "Unexpected error during import."


class DerivedOptions(BaseModel):
    """Derived children to build for every successfully imported item."""

    add_percent: bool = False
    percent_denominator_id: str | None = None
    add_change: bool = False


class ImportSession(BaseModel):
    """Queue state for one operator session. Serializable for checkpoints."""

    items: list[ImportQueueItem] = Field(default_factory=list)
    is_running: bool = False
    current_item_id: str | None = None
    current_year: int | None = None
    derived_status_label: str | None = None
    pending_jobs: list[PendingReconciliationJob] = Field(default_factory=list)
    manual_parent_id: str | None = None
    category: str = Field(default_factory=lambda: settings.default_category)
    created_by: str | None = None
    derived: DerivedOptions = Field(default_factory=DerivedOptions)

    def next_pending(self) -> ImportQueueItem | None:
        return next((item for item in self.items if item.status == "pending"), None)

    def find(self, item_id: str) -> ImportQueueItem | None:
        return next((item for item in self.items if item.id == item_id), None)

    def add_pending_job(self, job: PendingReconciliationJob) -> None:
        if any(existing.id == job.id for existing in self.pending_jobs):
            return
        self.pending_jobs.append(job)

    @property
    def pending_count(self) -> int:
        return sum(1 for item in self.items if item.status == "pending")


async def find_landed_jobs(
    jobs: Iterable[PendingReconciliationJob],
    store: StatStore,
) -> list[PendingReconciliationJob]:
    """
    Return the pending jobs whose writes are now visible in the store.

    A derived job has landed once its stat exists; an import job once a
    stat_data row for its census variable and year exists. Import jobs
    with no variable or year recorded are never matched.
    """
    jobs = list(jobs)
    landed_ids: set[str] = set()

    derived_ids = [job.id for job in jobs if job.kind == "derived"]
    if derived_ids:
        rows = await store.query_once(COLLECTION_STATS, where={"id": derived_ids}, fields=["id"])
        landed_ids.update(row["id"] for row in rows)

    for job in jobs:
        if job.kind != "import" or not job.variable or job.year is None:
            continue
        rows = await store.query_once(
            COLLECTION_STAT_DATA,
            where={"census_variable": job.variable, "date": str(job.year)},
            fields=["stat_id"],
            limit=1,
        )
        if rows:
            landed_ids.add(job.id)

    return [job for job in jobs if job.id in landed_ids]


@dataclass
class DrainResult:
    """What one drain() call did."""

    imported_stat_ids: list[str] = field(default_factory=list)
    linked_relations: list[StatRelation] = field(default_factory=list)
    errored_item_ids: list[str] = field(default_factory=list)
    pending_jobs: list[PendingReconciliationJob] = field(default_factory=list)
    skipped: bool = False

    def _add_stat(self, stat_id: str) -> None:
        if stat_id not in self.imported_stat_ids:
            self.imported_stat_ids.append(stat_id)


class ImportQueueOrchestrator:
    """
    Single-flight drain loop over an ImportSession.

    ``on_change`` is called with the session after every visible state
    transition (the CLI uses it to write checkpoints).
    """

    def __init__(
        self,
        session: ImportSession,
        fetcher: ImportFetcher,
        store: StatStore,
        *,
        builder: DerivedStatBuilder | None = None,
        batcher: TransactionBatcher | None = None,
        on_change: Callable[[ImportSession], None] | None = None,
    ) -> None:
        self.session = session
        self._fetcher = fetcher
        self._store = store
        self._batcher = batcher or TransactionBatcher(store)
        self._builder = builder or DerivedStatBuilder(store, self._batcher)
        self._on_change = on_change
        self._background: asyncio.Task[DrainResult] | None = None

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.session)

    # ------------------------------------------------------------------
    # Queue building
    # ------------------------------------------------------------------

    def enqueue(self, items: ImportQueueItem | Iterable[ImportQueueItem]) -> list[ImportQueueItem]:
        """
        Append items to the end of the queue.

        Safe while a drain is running: the drain picks them up in order.

        Raises:
            QueueConfigError: more than one open item is marked parent, or a
                child is queued with no parent available.
        """
        new_items = [items] if isinstance(items, ImportQueueItem) else list(items)
        open_items = [i for i in self.session.items if not i.is_terminal] + new_items

        parents = [i for i in open_items if i.relationship == "parent"]
        if len(parents) > 1:
            raise QueueConfigError(
                "Only one stat can be marked as parent.",
                context={"parent_item_ids": [p.id for p in parents]},
            )
        has_children = any(i.relationship == "child" for i in open_items)
        if has_children and not parents and not self.session.manual_parent_id:
            raise QueueConfigError("Select a parent before marking children.")

        self.session.items.extend(new_items)
        log.info("items_enqueued", count=len(new_items), pending=self.session.pending_count)
        self._notify()
        return new_items

    def set_manual_parent(self, stat_id: str | None) -> None:
        self.session.manual_parent_id = stat_id or None
        self._notify()

    def dismiss_pending_job(self, job_id: str) -> bool:
        """Acknowledge a pending reconciliation job. Does not cancel anything."""
        before = len(self.session.pending_jobs)
        self.session.pending_jobs = [j for j in self.session.pending_jobs if j.id != job_id]
        dismissed = len(self.session.pending_jobs) < before
        if dismissed:
            log.info("pending_job_dismissed", job_id=job_id)
            self._notify()
        return dismissed

    async def reconcile_pending_jobs(self) -> list[PendingReconciliationJob]:
        """
        Clear pending jobs whose data has shown up in the store.

        Store failures are logged and leave every job in place.
        """
        if not self.session.pending_jobs:
            return []
        try:
            landed = await find_landed_jobs(self.session.pending_jobs, self._store)
        except Exception as exc:
            log.warning("reconcile_failed", error=str(exc), exc_info=True)
            return []
        if not landed:
            return []

        landed_ids = {job.id for job in landed}
        self.session.pending_jobs = [j for j in self.session.pending_jobs if j.id not in landed_ids]
        log.info("pending_jobs_reconciled", cleared=sorted(landed_ids), remaining=len(self.session.pending_jobs))
        self._notify()
        return landed

    def reset(self) -> None:
        """Clear queue items and the manual parent. Pending jobs are kept until dismissed."""
        if self.session.is_running:
            raise QueueConfigError("Cannot reset the queue while a drain is running.")
        self.session.items = []
        self.session.manual_parent_id = None
        self.session.current_item_id = None
        self.session.current_year = None
        self.session.derived_status_label = None
        log.info("queue_reset")
        self._notify()

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    def drain_in_background(self) -> asyncio.Task[DrainResult]:
        """Start a drain as a task; callers may stop awaiting it without cancelling it."""
        if self._background is None or self._background.done():
            self._background = asyncio.create_task(self.drain())
        return self._background

    async def drain(self) -> DrainResult:
        """
        Process every pending item, then link relationships.

        A second call while a drain is in flight returns immediately with
        ``skipped=True``.

        Raises:
            QueueConfigError: percent derivation requested with no denominator.
        """
        if self.session.is_running:
            log.info("drain_already_running")
            return DrainResult(skipped=True)

        options = self.session.derived
        if options.add_percent and not options.percent_denominator_id:
            raise QueueConfigError("Select a denominator before starting imports.")

        self.session.is_running = True
        self.session.current_item_id = None
        self.session.current_year = None
        self._notify()

        result = DrainResult()
        imported_by_item: dict[str, str] = {}
        log.info("drain_start", pending=self.session.pending_count)
        try:
            await self.reconcile_pending_jobs()
            while (item := self.session.next_pending()) is not None:
                await self._process_item(item, result, imported_by_item)
            result.linked_relations = await self._link_relationships(imported_by_item)
            await self.reconcile_pending_jobs()
        finally:
            self.session.is_running = False
            self.session.current_item_id = None
            self.session.current_year = None
            self.session.derived_status_label = None
            self._notify()

        result.pending_jobs = list(self.session.pending_jobs)
        log.info(
            "drain_complete",
            imported=len(result.imported_stat_ids),
            errored=len(result.errored_item_ids),
            linked=len(result.linked_relations),
            pending_jobs=len(result.pending_jobs),
        )
        return result

    async def _process_item(
        self,
        item: ImportQueueItem,
        result: DrainResult,
        imported_by_item: dict[str, str],
    ) -> None:
        with item_context(item_id=item.id, variable=item.variable):
            self.session.current_item_id = item.id
            item.mark_running()
            self._notify()
            log.info("item_running", years=item.years, year=item.year)

            item_stat_id: str | None = None
            try:
                item_stat_id = await self._fetch_years(item, result)
                self.session.current_year = None

                if item.status == "running" and item_stat_id:
                    imported_by_item[item.id] = item_stat_id
                    await self._run_derived_steps(item, item_stat_id, result)
            except Exception as exc:
                log.error("item_failed", error=str(exc), exc_info=True)
                self.session.current_year = None
                if item.status == "running":
                    item.mark_error(UNEXPECTED_ERROR_MESSAGE)

            if item.status == "error":
                imported_by_item.pop(item.id, None)
                result.errored_item_ids.append(item.id)
                self._notify()
                return

            item.mark_success(item_stat_id)
            log.info("item_success", stat_id=item_stat_id)
            self._notify()

    async def _fetch_years(self, item: ImportQueueItem, result: DrainResult) -> str | None:
        item_stat_id: str | None = None
        for year in item.years_to_process():
            self.session.current_year = year
            self._notify()
            request = FetchRequest(
                dataset=item.dataset,
                group=item.group,
                variable=item.variable,
                year=year,
                include_moe=item.include_moe,
                category=self.session.category,
                visibility="private",
                created_by=self.session.created_by,
            )
            try:
                fetched = await self._fetcher.fetch(request)
            except TimeoutAfterPartialWrite as exc:
                log.warning("item_year_timeout", year=year, attempted_write=exc.attempted_write)
                if exc.attempted_write:
                    self.session.add_pending_job(
                        PendingReconciliationJob(
                            id=f"{item.id}:{year}",
                            label=exc.label or request.label,
                            kind="import",
                            detail=exc.message,
                            variable=item.variable,
                            year=year,
                        )
                    )
                    item.mark_error(PENDING_IMPORT_MESSAGE)
                else:
                    item.mark_error(exc.message)
                return item_stat_id
            except ImportFetchError as exc:
                log.error("item_year_failed", year=year, error=exc.message)
                item.mark_error(exc.message)
                return item_stat_id
            except Exception as exc:
                log.error("item_year_failed", year=year, error=str(exc), exc_info=True)
                item.mark_error("Network error during import.")
                return item_stat_id

            if not fetched.ok:
                log.warning("item_year_rejected", year=year, error=fetched.error)
                item.mark_error(fetched.error or "Import failed.")
                return item_stat_id

            if fetched.stat_id:
                item_stat_id = fetched.stat_id
                item.imported_stat_id = fetched.stat_id
                result._add_stat(fetched.stat_id)
            log.info("item_year_imported", year=year, stat_id=fetched.stat_id)
        return item_stat_id

    # ------------------------------------------------------------------
    # Derived children
    # ------------------------------------------------------------------

    async def _run_derived_steps(self, item: ImportQueueItem, stat_id: str, result: DrainResult) -> None:
        options = self.session.derived
        if options.add_percent and options.percent_denominator_id:
            denominator_id = options.percent_denominator_id
            await self._derive(
                item,
                result,
                f"Percentage {item.year_range_label}",
                lambda: self._builder.create_percent_child(stat_id, denominator_id),
            )
        if options.add_change and item.years > 1:
            start_year = item.year - item.years + 1
            await self._derive(
                item,
                result,
                "Change",
                lambda: self._builder.create_change_child(stat_id, start_year, item.year),
            )

    async def _derive(
        self,
        item: ImportQueueItem,
        result: DrainResult,
        status_label: str,
        build: Callable[[], Awaitable[DerivedStatResult]],
    ) -> None:
        # derived failures are logged; the imported item still succeeds
        self.session.derived_status_label = status_label
        self._notify()
        try:
            derived = await build()
        except TimeoutAfterPartialWrite as exc:
            if exc.attempted_write and exc.stat_id:
                self.session.add_pending_job(
                    PendingReconciliationJob(
                        id=exc.stat_id,
                        label=exc.label or status_label,
                        kind="derived",
                        detail=exc.message,
                    )
                )
            log.warning("derived_step_timeout", step=status_label, stat_id=exc.stat_id)
        except (DerivedComputationError, BatchWriteError) as exc:
            log.warning(
                "derived_step_failed",
                step=status_label,
                error_type=type(exc).__name__,
                error=exc.message,
            )
        except Exception as exc:
            log.error("derived_step_failed", step=status_label, error=str(exc), exc_info=True)
        else:
            if derived.stat_id not in item.derived_stat_ids:
                item.derived_stat_ids.append(derived.stat_id)
            result._add_stat(derived.stat_id)
        finally:
            self.session.derived_status_label = None
            self._notify()

    # ------------------------------------------------------------------
    # Relationship linking
    # ------------------------------------------------------------------

    def _resolve_parent(self, imported_by_item: dict[str, str]) -> str | None:
        if self.session.manual_parent_id:
            return self.session.manual_parent_id
        for item in self.session.items:
            if item.relationship == "parent" and item.id in imported_by_item:
                return imported_by_item[item.id]
        return None

    async def _link_relationships(self, imported_by_item: dict[str, str]) -> list[StatRelation]:
        children = [
            item
            for item in self.session.items
            if item.relationship == "child" and item.id in imported_by_item
        ]
        parent_id = self._resolve_parent(imported_by_item)
        if not children or not parent_id:
            return []

        self.session.derived_status_label = "Grouping relationships"
        self._notify()
        link_log = log.bind(parent_stat_id=parent_id)

        try:
            rows = await self._store.query_once(COLLECTION_RELATIONS)
        except Exception as exc:
            link_log.error("link_failed", error=str(exc), exc_info=True)
            return []
        graph = RelationshipGraph.from_rows(rows)
        linked: list[StatRelation] = []
        for child in children:
            child_stat_id = imported_by_item[child.id]
            if child_stat_id == parent_id:
                continue
            try:
                rel = graph.add_edge(parent_id, child_stat_id, child.stat_attribute)
            except CycleError:
                link_log.warning("link_skipped_cycle", child_stat_id=child_stat_id)
                continue
            if rel is not None:
                linked.append(rel)

        if not linked:
            link_log.info("link_nothing_new", candidates=len(children))
            return []

        ops: list[WriteOp] = [
            WriteOp.upsert(COLLECTION_RELATIONS, rel.id, rel.to_insert_dict()) for rel in linked
        ]
        for child_stat_id in dict.fromkeys(rel.child_stat_id for rel in linked):
            ops.append(WriteOp.upsert(COLLECTION_STATS, child_stat_id, {"visibility": "inherited"}))

        try:
            await self._batcher.submit(ops)
        except (BatchWriteError, TimeoutAfterPartialWrite) as exc:
            link_log.error("link_failed", error_type=type(exc).__name__, error=exc.message)
            return []

        link_log.info("link_complete", linked=len(linked))
        return linked


def drain_summary(result: DrainResult) -> dict[str, Any]:
    """Flat dict for CLI output."""
    return {
        "skipped": result.skipped,
        "imported_stat_ids": result.imported_stat_ids,
        "linked_relations": [rel.relation_key for rel in result.linked_relations],
        "errored_item_ids": result.errored_item_ids,
        "pending_jobs": [job.id for job in result.pending_jobs],
    }
