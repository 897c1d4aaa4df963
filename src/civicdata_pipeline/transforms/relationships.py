"""
transforms/relationships.py — In-memory parent/child graph over stat_relations.

Relations are held as a flat arena (relation id → StatRelation) with a
natural-key index and parent/child adjacency lists. Statistics never hold
references to each other; every traversal goes through the indexes.

All traversals are iterative with a visited set, so a malformed store that
already contains a cycle cannot recurse forever.

Usage:
    from civicdata_pipeline.transforms.relationships import RelationshipGraph

    graph = RelationshipGraph.from_rows(await store.query_once("stat_relations"))

    rel = graph.add_edge(parent_id, child_id, "Percent")    # None if the key exists
    graph.has_descendant(parent_id, child_id)                # True

    plan = graph.collect_orphaned_descendants(parent_id)
    plan.to_delete, plan.to_unlink

    renamed = graph.rename_attribute(parent_id, "Percent", "Share")
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from civicdata_shared.constants import Visibility
from civicdata_shared.models import (
    Statistic,
    StatRelation,
    build_relation_key,
    normalize_attribute,
)
from civicdata_pipeline.exceptions import ConflictError, CycleError

log = structlog.get_logger(__name__)


@dataclass
class OrphanCascadePlan:
    """Result of an orphan-cascade analysis rooted at one statistic."""

    root_id: str
    to_delete: set[str] = field(default_factory=set)
    to_unlink: list[StatRelation] = field(default_factory=list)


def _sort_key(rel: StatRelation) -> tuple[int, float]:
    # relations without a sort order go last
    if rel.sort_order is None:
        return (1, 0.0)
    return (0, rel.sort_order)


class RelationshipGraph:
    """Arena + natural-key index over parent → child statistic edges."""

    def __init__(self, relations: Iterable[StatRelation] = ()) -> None:
        self._arena: dict[str, StatRelation] = {}
        self._by_key: dict[str, str] = {}
        self._by_parent: dict[str, list[str]] = {}
        self._by_child: dict[str, list[str]] = {}
        for rel in relations:
            self._insert(rel)

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "RelationshipGraph":
        """Build a graph from raw stat_relations documents, skipping malformed ones."""
        relations: list[StatRelation] = []
        for row in rows:
            if not row.get("parent_stat_id") or not row.get("child_stat_id"):
                log.warning("relation_row_skipped", relation_id=row.get("id"))
                continue
            relations.append(StatRelation.from_db_row(dict(row)))
        return cls(relations)

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    def _insert(self, rel: StatRelation) -> None:
        self._arena[rel.id] = rel
        if rel.relation_key in self._by_key:
            # stores without a unique constraint can hold duplicate keys
            log.warning("duplicate_relation_key", relation_key=rel.relation_key, relation_id=rel.id)
        else:
            self._by_key[rel.relation_key] = rel.id
        self._by_parent.setdefault(rel.parent_stat_id, []).append(rel.id)
        self._by_child.setdefault(rel.child_stat_id, []).append(rel.id)

    def _discard(self, rel_id: str) -> StatRelation | None:
        rel = self._arena.pop(rel_id, None)
        if rel is None:
            return None
        if self._by_key.get(rel.relation_key) == rel_id:
            del self._by_key[rel.relation_key]
            # promote a surviving duplicate, if any
            for other in self._arena.values():
                if other.relation_key == rel.relation_key:
                    self._by_key[rel.relation_key] = other.id
                    break
        self._by_parent[rel.parent_stat_id].remove(rel_id)
        self._by_child[rel.child_stat_id].remove(rel_id)
        return rel

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def relations(self) -> list[StatRelation]:
        return list(self._arena.values())

    def __len__(self) -> int:
        return len(self._arena)

    def __contains__(self, relation_key: object) -> bool:
        return relation_key in self._by_key

    def get(self, relation_key: str) -> StatRelation | None:
        rel_id = self._by_key.get(relation_key)
        return self._arena.get(rel_id) if rel_id else None

    def children_of(self, stat_id: str, attribute: str | None = None) -> list[StatRelation]:
        """Outgoing edges of ``stat_id`` in sort order, optionally filtered by attribute."""
        rels = [self._arena[rid] for rid in self._by_parent.get(stat_id, [])]
        if attribute is not None:
            wanted = normalize_attribute(attribute)
            rels = [r for r in rels if r.stat_attribute == wanted]
        return sorted(rels, key=_sort_key)

    def parents_of(self, stat_id: str) -> list[StatRelation]:
        rels = [self._arena[rid] for rid in self._by_child.get(stat_id, [])]
        return sorted(rels, key=_sort_key)

    def relations_touching(self, stat_ids: Iterable[str]) -> list[StatRelation]:
        """Every relation whose parent or child is in ``stat_ids``."""
        ids = set(stat_ids)
        return [
            rel
            for rel in self._arena.values()
            if rel.parent_stat_id in ids or rel.child_stat_id in ids
        ]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def has_descendant(self, ancestor_id: str, target_id: str) -> bool:
        """True iff ``target_id`` is reachable from ``ancestor_id`` over one or more edges."""
        stack = [self._arena[rid].child_stat_id for rid in self._by_parent.get(ancestor_id, [])]
        visited: set[str] = set()
        while stack:
            node = stack.pop()
            if node == target_id:
                return True
            if node in visited:
                continue
            visited.add(node)
            stack.extend(
                self._arena[rid].child_stat_id for rid in self._by_parent.get(node, [])
            )
        return False

    def would_create_cycle(self, parent_id: str, child_id: str) -> bool:
        return parent_id == child_id or self.has_descendant(child_id, parent_id)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_edge(
        self,
        parent_id: str,
        child_id: str,
        attribute: str | None = None,
        sort_order: float | None = None,
    ) -> StatRelation | None:
        """
        Insert a parent → child edge.

        Returns the new relation, or None when an edge with the same natural
        key already exists (idempotent insert).

        Raises:
            CycleError: ``child_id`` is ``parent_id`` or one of its ancestors.
        """
        if self.would_create_cycle(parent_id, child_id):
            raise CycleError(parent_id, child_id)

        key = build_relation_key(parent_id, child_id, attribute)
        if key in self._by_key:
            log.debug("relation_exists", relation_key=key)
            return None

        now = datetime.now(timezone.utc)
        rel = StatRelation(
            relation_key=key,
            parent_stat_id=parent_id,
            child_stat_id=child_id,
            stat_attribute=normalize_attribute(attribute),
            sort_order=sort_order,
            created_at=now,
            updated_at=now,
        )
        self._insert(rel)
        return rel

    def remove_edge(self, relation_id: str) -> StatRelation | None:
        return self._discard(relation_id)

    def rename_attribute(
        self,
        parent_id: str,
        old_attribute: str | None,
        new_attribute: str | None,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> list[StatRelation]:
        """
        Move every edge of ``parent_id`` from ``old_attribute`` to ``new_attribute``.

        All-or-nothing: if any rewritten key is already taken by an edge
        outside the renamed set, nothing changes and ConflictError lists
        the colliding children (by label when ``labels`` has one).

        Returns:
            The rewritten relations (same ids, new keys). Empty when the
            attributes normalize to the same value or no edge matches.
        """
        old_attr = normalize_attribute(old_attribute)
        new_attr = normalize_attribute(new_attribute)
        if old_attr == new_attr:
            return []

        targets = self.children_of(parent_id, old_attr)
        if not targets:
            return []

        labels = labels or {}
        conflicts: list[str] = []
        new_keys: set[str] = set()
        for rel in targets:
            new_key = build_relation_key(parent_id, rel.child_stat_id, new_attr)
            if new_key in self._by_key or new_key in new_keys:
                conflicts.append(labels.get(rel.child_stat_id, rel.child_stat_id))
            new_keys.add(new_key)
        if conflicts:
            raise ConflictError(new_attr, conflicts)

        now = datetime.now(timezone.utc)
        renamed: list[StatRelation] = []
        for rel in targets:
            self._discard(rel.id)
            updated = rel.model_copy(
                update={
                    "stat_attribute": new_attr,
                    "relation_key": build_relation_key(parent_id, rel.child_stat_id, new_attr),
                    "updated_at": now,
                }
            )
            self._insert(updated)
            renamed.append(updated)

        log.info(
            "relation_attribute_renamed",
            parent_stat_id=parent_id,
            old_attribute=old_attr,
            new_attribute=new_attr,
            count=len(renamed),
        )
        return renamed

    # ------------------------------------------------------------------
    # Cascade analysis
    # ------------------------------------------------------------------

    def _has_surviving_parent(self, stat_id: str, to_delete: set[str]) -> bool:
        return any(
            self._arena[rid].parent_stat_id not in to_delete
            for rid in self._by_child.get(stat_id, [])
        )

    def _absorb(self, start_id: str, plan: OrphanCascadePlan) -> None:
        stack = [start_id]
        while stack:
            node = stack.pop()
            if node in plan.to_delete:
                continue
            plan.to_delete.add(node)
            for rid in self._by_parent.get(node, []):
                rel = self._arena[rid]
                child = rel.child_stat_id
                if child in plan.to_delete:
                    continue
                if self._has_surviving_parent(child, plan.to_delete):
                    plan.to_unlink.append(rel)
                else:
                    stack.append(child)

    def collect_orphaned_descendants(self, root_id: str) -> OrphanCascadePlan:
        """
        Work out what deleting ``root_id`` takes with it.

        A child with a parent outside the delete set keeps living and only
        loses the edge (``to_unlink``). A child whose parents are all being
        deleted is absorbed into ``to_delete`` along with its own subtree.

        Guarantees: ``root_id`` is in ``to_delete``, and every child of a
        ``to_unlink`` edge still has a parent outside ``to_delete``.
        """
        plan = OrphanCascadePlan(root_id=root_id)
        self._absorb(root_id, plan)

        # A child judged "surviving" early can lose its last outside parent
        # once a later sibling subtree is absorbed. Re-check until stable.
        changed = True
        while changed:
            changed = False
            kept: list[StatRelation] = []
            for rel in plan.to_unlink:
                child = rel.child_stat_id
                if child in plan.to_delete:
                    changed = True
                    continue
                if not self._has_surviving_parent(child, plan.to_delete):
                    self._absorb(child, plan)
                    changed = True
                    continue
                kept.append(rel)
            seen: set[str] = set()
            plan.to_unlink = []
            for rel in kept:
                if rel.id not in seen:
                    seen.add(rel.id)
                    plan.to_unlink.append(rel)

        log.debug(
            "orphan_cascade_collected",
            root_id=root_id,
            to_delete=len(plan.to_delete),
            to_unlink=len(plan.to_unlink),
        )
        return plan

    # ------------------------------------------------------------------
    # Inherited metadata
    # ------------------------------------------------------------------

    def _resolve_inherited(
        self,
        stat_id: str,
        stats_by_id: Mapping[str, Statistic],
        pick: Any,
    ) -> Any:
        # Walk up through the first resolvable parent (lowest sort order first).
        stack = [stat_id]
        visited: set[str] = set()
        while stack:
            node = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            stat = stats_by_id.get(node)
            if stat is not None:
                value = pick(stat)
                if value is not None:
                    return value
            parents = [r.parent_stat_id for r in self.parents_of(node)]
            stack.extend(reversed(parents))
        return None

    def effective_visibility(
        self,
        stat_id: str,
        stats_by_id: Mapping[str, Statistic],
    ) -> Visibility:
        """
        Resolve the visibility a statistic actually has.

        An explicit value wins; ``inherited`` resolves through its parents.
        A statistic with no resolvable ancestor is ``private``.
        """
        value = self._resolve_inherited(
            stat_id,
            stats_by_id,
            lambda s: None if s.visibility == "inherited" else s.visibility,
        )
        return value or "private"

    def effective_owner(self, stat_id: str, stats_by_id: Mapping[str, Statistic]) -> str | None:
        return self._resolve_inherited(stat_id, stats_by_id, lambda s: s.created_by)
