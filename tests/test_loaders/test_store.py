"""
tests/test_loaders/test_store.py — Tests for the store adapters.

SupabaseStore runs against the MagicMock client from conftest; no DB calls.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from civicdata_pipeline.loaders.store import InMemoryStore, StatStore, SupabaseStore, WriteOp


class TestWriteOp:
    def test_payload(self):
        op = WriteOp.upsert("stats", "s1", {"name": "Population"})
        assert op.to_payload() == {
            "collection": "stats",
            "id": "s1",
            "action": "upsert",
            "data": {"name": "Population"},
        }
        assert WriteOp.delete("stats", "s1").to_payload()["action"] == "delete"

    def test_adapters_satisfy_protocol(self, mock_supabase_client):
        assert isinstance(InMemoryStore(), StatStore)
        assert isinstance(SupabaseStore(mock_supabase_client), StatStore)


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_upsert_merges_fields(self):
        store = InMemoryStore({"stats": {"s1": {"name": "Population", "visibility": "private"}}})
        await store.transact([WriteOp.upsert("stats", "s1", {"visibility": "inherited"})])
        assert store.get("stats", "s1") == {"id": "s1", "name": "Population", "visibility": "inherited"}

    @pytest.mark.asyncio
    async def test_delete_missing_doc_is_noop(self):
        store = InMemoryStore()
        await store.transact([WriteOp.delete("stats", "nope")])
        assert store.count("stats") == 0

    @pytest.mark.asyncio
    async def test_transact_is_atomic(self):
        store = InMemoryStore({"stats": {"s1": {"name": "A"}}})
        bad = WriteOp(collection="stats", doc_id="s2", action="rename")  # type: ignore[arg-type]
        with pytest.raises(ValueError):
            await store.transact([WriteOp.delete("stats", "s1"), bad])
        assert store.get("stats", "s1") is not None
        assert store.transact_calls == []

    @pytest.mark.asyncio
    async def test_atomic_batch_limit_enforced(self):
        store = InMemoryStore(atomic_batch_limit=2)
        ops = [WriteOp.upsert("stats", f"s{i}", {"name": str(i)}) for i in range(3)]
        with pytest.raises(ValueError):
            await store.transact(ops)
        assert store.count("stats") == 0

    @pytest.mark.asyncio
    async def test_query_filters_and_pages(self, seeded_store):
        rows = await seeded_store.query_once("stat_data", where={"stat_id": ["pop", "male"]})
        assert len(rows) == 4

        page = await seeded_store.query_once(
            "stat_data", where={"stat_id": "pop"}, fields=["date"], limit=2, offset=1
        )
        assert page == [{"date": "2022"}, {"date": "2023"}]

    @pytest.mark.asyncio
    async def test_query_returns_copies(self, seeded_store):
        (row,) = await seeded_store.query_once("stat_data", where={"stat_id": "male"})
        row["data"]["74103"] = -1
        (again,) = await seeded_store.query_once("stat_data", where={"stat_id": "male"})
        assert again["data"]["74103"] == 70


class TestSupabaseStore:
    @pytest.mark.asyncio
    async def test_transact_sends_one_rpc(self, mock_supabase_client):
        store = SupabaseStore(mock_supabase_client, rpc_name="apply_write_batch")
        await store.transact([WriteOp.upsert("stats", "s1", {"name": "A"}), WriteOp.delete("stats", "s2")])

        mock_supabase_client.rpc.assert_called_once()
        name, params = mock_supabase_client.rpc.call_args.args
        assert name == "apply_write_batch"
        assert [op["id"] for op in params["ops"]] == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_empty_transact_skips_rpc(self, mock_supabase_client):
        await SupabaseStore(mock_supabase_client).transact([])
        mock_supabase_client.rpc.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_becomes_timeout_error(self, mock_supabase_client):
        mock_supabase_client.rpc.return_value.execute.side_effect = httpx.ReadTimeout("slow")
        with pytest.raises(TimeoutError):
            await SupabaseStore(mock_supabase_client).transact([WriteOp.delete("stats", "s1")])

    @pytest.mark.asyncio
    async def test_query_builds_filters(self, mock_supabase_client):
        builder = mock_supabase_client.table.return_value
        builder.execute.return_value = MagicMock(data=[{"id": "r1"}])

        rows = await SupabaseStore(mock_supabase_client).query_once(
            "stat_data",
            where={"stat_id": ["a", "b"], "name": "root", "parent_area": None},
            fields=["id", "date"],
            limit=25,
            offset=50,
        )

        assert rows == [{"id": "r1"}]
        mock_supabase_client.table.assert_called_with("stat_data")
        builder.select.assert_called_with("id,date")
        builder.in_.assert_called_with("stat_id", ["a", "b"])
        builder.eq.assert_called_with("name", "root")
        builder.is_.assert_called_with("parent_area", "null")
        builder.range.assert_called_with(50, 74)

    @pytest.mark.asyncio
    async def test_query_retries_reads(self, mock_supabase_client):
        builder = mock_supabase_client.table.return_value
        builder.execute.side_effect = [
            httpx.ConnectError("down"),
            MagicMock(data=[{"id": "s1"}]),
        ]
        rows = await SupabaseStore(mock_supabase_client).query_once("stats")
        assert rows == [{"id": "s1"}]
        assert builder.execute.call_count == 2
