"""
loaders/store.py — Document-store contract and its two adapters.

The core only ever needs two primitives from persistence:

    transact(ops)        apply a list of WriteOps atomically (all or nothing)
    query_once(...)      point-in-time read with equality / "in" filters

InMemoryStore backs dry runs and tests. SupabaseStore reads through the
supabase client and applies each write list through one Postgres RPC
call, so every call is a single database transaction.

Usage:
    from civicdata_pipeline.loaders.store import InMemoryStore, SupabaseStore, WriteOp

    store = SupabaseStore()
    await store.transact([
        WriteOp.upsert("stats", stat.id, stat.to_insert_dict()),
        WriteOp.delete("stat_relations", rel.id),
    ])
    rows = await store.query_once("stat_data", where={"stat_id": [a_id, b_id]})
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from civicdata_shared.config import settings
from civicdata_shared.constants import WriteAction
from civicdata_shared.db import get_supabase_client
from civicdata_pipeline.utils.retry import with_retry

log = structlog.get_logger(__name__)

_IN_TYPES = (list, tuple, set, frozenset)


@dataclass(frozen=True)
class WriteOp:
    """One document write. Upserts merge ``data`` into the stored document."""

    collection: str
    doc_id: str
    action: WriteAction = "upsert"
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def upsert(cls, collection: str, doc_id: str, data: Mapping[str, Any]) -> "WriteOp":
        return cls(collection=collection, doc_id=doc_id, action="upsert", data=dict(data))

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> "WriteOp":
        return cls(collection=collection, doc_id=doc_id, action="delete")

    def to_payload(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "id": self.doc_id,
            "action": self.action,
            "data": self.data,
        }


@runtime_checkable
class StatStore(Protocol):
    """Persistence contract consumed by the batcher, builders and orchestrator."""

    # Max ops per transact() call; None means unbounded.
    atomic_batch_limit: int | None

    async def transact(self, ops: Sequence[WriteOp]) -> None: ...

    async def query_once(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
        fields: Sequence[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]: ...


def _matches(doc: Mapping[str, Any], where: Mapping[str, Any]) -> bool:
    for key, wanted in where.items():
        value = doc.get(key)
        if isinstance(wanted, _IN_TYPES):
            if value not in wanted:
                return False
        elif value != wanted:
            return False
    return True


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------

class InMemoryStore:
    """
    Dict-of-dicts store with atomic copy-on-write transactions.

    ``transact_calls`` records every applied op list in order, which the
    tests use to assert batch boundaries.
    """

    def __init__(
        self,
        initial: Mapping[str, Mapping[str, Mapping[str, Any]]] | None = None,
        *,
        atomic_batch_limit: int | None = None,
    ) -> None:
        self.atomic_batch_limit = atomic_batch_limit
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self.transact_calls: list[list[WriteOp]] = []
        for collection, docs in (initial or {}).items():
            self._collections[collection] = {
                doc_id: {**copy.deepcopy(dict(doc)), "id": doc_id} for doc_id, doc in docs.items()
            }

    async def transact(self, ops: Sequence[WriteOp]) -> None:
        if self.atomic_batch_limit is not None and len(ops) > self.atomic_batch_limit:
            raise ValueError(
                f"Transaction of {len(ops)} ops exceeds the atomic batch limit "
                f"of {self.atomic_batch_limit}."
            )
        staged = {name: dict(docs) for name, docs in self._collections.items()}
        for op in ops:
            docs = staged.setdefault(op.collection, {})
            if op.action == "delete":
                docs.pop(op.doc_id, None)
            elif op.action == "upsert":
                merged = {**docs.get(op.doc_id, {}), **copy.deepcopy(op.data)}
                merged["id"] = op.doc_id
                docs[op.doc_id] = merged
            else:
                raise ValueError(f"Unknown write action {op.action!r}")
        self._collections = staged
        self.transact_calls.append(list(ops))

    async def query_once(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
        fields: Sequence[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        docs = [
            doc
            for doc in self._collections.get(collection, {}).values()
            if not where or _matches(doc, where)
        ]
        end = None if limit is None else offset + limit
        page = docs[offset:end]
        if fields:
            return [{f: copy.deepcopy(doc.get(f)) for f in fields} for doc in page]
        return [copy.deepcopy(doc) for doc in page]

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Synchronous peek used by tests and dry-run reporting."""
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))


# ---------------------------------------------------------------------------
# Supabase adapter
# ---------------------------------------------------------------------------

class SupabaseStore:
    """
    Supabase-backed store.

    Reads go through PostgREST table queries and are retried on failure.
    Writes are sent as one ``rpc(write_batch_rpc, {"ops": [...]})`` call, so
    the database function applies the whole list in a single transaction.
    Writes are never retried here.
    """

    atomic_batch_limit: int | None = None

    def __init__(self, client: Any = None, *, rpc_name: str | None = None) -> None:
        self._client = client if client is not None else get_supabase_client(service_role=True)
        self._rpc_name = rpc_name or settings.write_batch_rpc

    async def transact(self, ops: Sequence[WriteOp]) -> None:
        if not ops:
            return
        payload = [op.to_payload() for op in ops]
        try:
            self._client.rpc(self._rpc_name, {"ops": payload}).execute()
        except httpx.TimeoutException as exc:
            log.warning("store_transact_timeout", ops=len(ops), error=str(exc))
            raise TimeoutError(f"Write batch of {len(ops)} ops timed out") from exc

    @with_retry(max_attempts=3, base_delay=0.5)
    async def query_once(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
        fields: Sequence[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        query = self._client.table(collection).select(",".join(fields) if fields else "*")
        for key, value in (where or {}).items():
            if isinstance(value, _IN_TYPES):
                query = query.in_(key, list(value))
            elif value is None:
                query = query.is_(key, "null")
            else:
                query = query.eq(key, value)
        if limit is not None:
            # stable ordering so offset pages don't overlap
            query = query.order("id").range(offset, offset + limit - 1)
        result = query.execute()
        return list(result.data or [])
