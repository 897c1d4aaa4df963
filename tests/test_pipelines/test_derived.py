"""
tests/test_pipelines/test_derived.py — Tests for DerivedStatBuilder.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from civicdata_pipeline.exceptions import (
    DerivedComputationEmpty,
    IncompatibleOperandsError,
    MissingOperandError,
    TimeoutAfterPartialWrite,
)
from civicdata_pipeline.loaders.batcher import TransactionBatcher
from civicdata_pipeline.loaders.store import InMemoryStore
from civicdata_pipeline.pipelines.derived import DerivedStatBuilder, DerivedStatRequest


async def rows_for(store: InMemoryStore, stat_id: str) -> list[dict]:
    return await store.query_once("stat_data", where={"stat_id": stat_id})


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

class TestDerivedStatRequest:
    def test_binary_needs_both_operands(self):
        with pytest.raises(ValidationError):
            DerivedStatRequest(formula="ratio", name="A per B", numerator_id="a")

    def test_sum_needs_two_operand_ids(self):
        with pytest.raises(ValidationError):
            DerivedStatRequest(formula="sum", name="Total", sum_operand_ids=["a", " "])

    def test_change_needs_years(self):
        with pytest.raises(ValidationError):
            DerivedStatRequest(formula="change_over_time", name="Growth", numerator_id="a", start_year="2020")

    def test_multi_sum(self):
        request = DerivedStatRequest(formula="sum", name="Total", sum_operand_ids=["a", "b", "c"])
        assert request.is_multi_sum


# ---------------------------------------------------------------------------
# Percent / change children
# ---------------------------------------------------------------------------

class TestPercentChild:
    @pytest.mark.asyncio
    async def test_creates_child_stat_relation_rows_and_summary(self, seeded_store):
        result = await DerivedStatBuilder(seeded_store).create_percent_child("male", "pop")

        assert result.created
        assert result.rows_written == 1
        child = seeded_store.get("stats", result.stat_id)
        assert child["name"] == "Male population (percent)"
        assert child["label"] == "Male population [Percent]"
        assert child["visibility"] == "inherited"
        assert child["category"] == "demographics"
        assert child["source"] == "Derived, Census"

        (relation,) = await seeded_store.query_once("stat_relations", where={"child_stat_id": result.stat_id})
        assert relation["parent_stat_id"] == "male"
        assert relation["stat_attribute"] == "Percent"

        (row,) = await rows_for(seeded_store, result.stat_id)
        assert row["date"] == "2023"
        assert row["type"] == "percent"
        assert row["data"] == {"74103": pytest.approx(70 / 150)}

        summary = seeded_store.get("stat_data_summaries", f"{result.stat_id}::root::::ZIP")
        assert summary["count"] == 1

    @pytest.mark.asyncio
    async def test_existing_child_is_reused(self, seeded_store):
        builder = DerivedStatBuilder(seeded_store)
        first = await builder.create_percent_child("male", "pop")
        calls = len(seeded_store.transact_calls)

        second = await builder.create_percent_child("male", "pop")

        assert not second.created
        assert second.stat_id == first.stat_id
        assert len(seeded_store.transact_calls) == calls

    @pytest.mark.asyncio
    async def test_missing_denominator(self, seeded_store):
        with pytest.raises(MissingOperandError):
            await DerivedStatBuilder(seeded_store).create_percent_child("male", "nope")
        assert seeded_store.transact_calls == []

    @pytest.mark.asyncio
    async def test_parent_without_rows(self, seeded_store):
        with pytest.raises(MissingOperandError):
            await DerivedStatBuilder(seeded_store).create_percent_child("female", "pop")

    @pytest.mark.asyncio
    async def test_no_overlap_writes_nothing(self, make_store):
        store = make_store(
            stats={"a": {"name": "A"}, "b": {"name": "B"}},
            rows=[
                {"stat_id": "a", "date": 2023, "data": {"x": 1}},
                {"stat_id": "b", "date": 2023, "data": {"y": 2}},
            ],
        )
        with pytest.raises(DerivedComputationEmpty):
            await DerivedStatBuilder(store).create_percent_child("a", "b")
        assert store.transact_calls == []
        assert store.count("stats") == 2


class TestChangeChild:
    @pytest.mark.asyncio
    async def test_change_between_years(self, seeded_store):
        result = await DerivedStatBuilder(seeded_store).create_change_child("pop", 2021, 2023)

        (row,) = await rows_for(seeded_store, result.stat_id)
        assert row["date"] == "2021-2023"
        assert row["type"] == "percent_change"
        assert row["data"] == {"74103": 0.5, "74104": -1.0}
        child = seeded_store.get("stats", result.stat_id)
        assert child["label"] == "Population [Change]"

    @pytest.mark.asyncio
    async def test_missing_year_is_empty(self, seeded_store):
        with pytest.raises(DerivedComputationEmpty):
            await DerivedStatBuilder(seeded_store).create_change_child("pop", 2018, 2023)


# ---------------------------------------------------------------------------
# Stand-alone derived stats
# ---------------------------------------------------------------------------

@pytest.fixture
def operand_store(make_store) -> InMemoryStore:
    return make_store(
        stats={"a": {"name": "A"}, "b": {"name": "B"}, "c": {"name": "C"}},
        rows=[
            {"stat_id": "a", "date": 2022, "data": {"x": 10, "y": 4}},
            {"stat_id": "a", "date": 2023, "data": {"x": 12, "y": 6}},
            {"stat_id": "b", "date": 2022, "data": {"x": 5, "y": 1}},
            {"stat_id": "b", "date": 2023, "data": {"x": 2, "z": 3}},
            {"stat_id": "c", "date": 2023, "data": {"z": 1}},
        ],
    )


class TestCreateDerivedStat:
    @pytest.mark.asyncio
    async def test_difference_is_private_and_owned(self, operand_store):
        request = DerivedStatRequest(
            formula="difference", name="(A − B)", label="A minus B",
            numerator_id="a", denominator_id="b", created_by="u9",
        )
        result = await DerivedStatBuilder(operand_store).create_derived_stat(request)

        stat = operand_store.get("stats", result.stat_id)
        assert stat["visibility"] == "private"
        assert stat["created_by"] == "u9"
        assert stat["source"] == "Derived, Census"
        rows = {r["date"]: r["data"] for r in await rows_for(operand_store, result.stat_id)}
        assert rows == {"2022": {"x": 5, "y": 3}, "2023": {"x": 10}}
        assert operand_store.count("stat_relations") == 0

    @pytest.mark.asyncio
    async def test_mismatched_years_are_incompatible(self, operand_store):
        request = DerivedStatRequest(formula="ratio", name="A/C", numerator_id="a", denominator_id="c")
        with pytest.raises(IncompatibleOperandsError) as exc_info:
            await DerivedStatBuilder(operand_store).create_derived_stat(request)

        assert "years (numerator: 2022, 2023, denominator: 2023)" in exc_info.value.message
        assert operand_store.transact_calls == []

    @pytest.mark.asyncio
    async def test_multi_sum(self, operand_store):
        request = DerivedStatRequest(formula="sum", name="A+B+C", sum_operand_ids=["a", "b", "c"])
        result = await DerivedStatBuilder(operand_store).create_derived_stat(request)

        rows = {r["date"]: r["data"] for r in await rows_for(operand_store, result.stat_id)}
        assert rows["2023"] == {"x": 14, "y": 6, "z": 4}
        assert rows["2022"] == {"x": 15, "y": 5}
        assert operand_store.get("stats", result.stat_id)["visibility"] == "private"

    @pytest.mark.asyncio
    async def test_change_over_time(self, operand_store):
        request = DerivedStatRequest(
            formula="change_over_time", name="A growth", numerator_id="a",
            start_year="2022", end_year="2023",
        )
        result = await DerivedStatBuilder(operand_store).create_derived_stat(request)
        (row,) = await rows_for(operand_store, result.stat_id)
        assert row["date"] == "2022-2023"
        assert row["data"] == {"x": pytest.approx(0.2), "y": pytest.approx(0.5)}

    @pytest.mark.asyncio
    async def test_sum_of_missing_stats(self, operand_store):
        request = DerivedStatRequest(formula="sum", name="Nothing", sum_operand_ids=["p", "q"])
        with pytest.raises(MissingOperandError):
            await DerivedStatBuilder(operand_store).create_derived_stat(request)


# ---------------------------------------------------------------------------
# Write behaviour
# ---------------------------------------------------------------------------

class TimeoutStore(InMemoryStore):
    async def transact(self, ops):
        raise TimeoutError("rpc timed out")


class TestPersistence:
    @pytest.mark.asyncio
    async def test_bounded_batches_by_default(self, operand_store):
        builder = DerivedStatBuilder(operand_store, TransactionBatcher(operand_store, batch_size=2))
        request = DerivedStatRequest(formula="sum", name="A+B", numerator_id="a", denominator_id="b")
        await builder.create_derived_stat(request)
        # stat + 2 rows + 1 summary
        assert [len(call) for call in operand_store.transact_calls] == [2, 2]

    @pytest.mark.asyncio
    async def test_single_transaction(self, operand_store):
        builder = DerivedStatBuilder(
            operand_store, TransactionBatcher(operand_store, batch_size=2), single_transaction=True
        )
        request = DerivedStatRequest(formula="sum", name="A+B", numerator_id="a", denominator_id="b")
        await builder.create_derived_stat(request)
        assert len(operand_store.transact_calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_carries_new_stat(self):
        store = TimeoutStore(
            {
                "stats": {"a": {"name": "A"}, "d": {"name": "D"}},
                "stat_data": {
                    "r1": {"stat_id": "a", "name": "root", "boundary_type": "ZIP", "date": "2023", "data": {"x": 1}},
                    "r2": {"stat_id": "d", "name": "root", "boundary_type": "ZIP", "date": "2023", "data": {"x": 4}},
                },
            }
        )
        with pytest.raises(TimeoutAfterPartialWrite) as exc_info:
            await DerivedStatBuilder(store).create_percent_child("a", "d")

        err = exc_info.value
        assert err.stat_id is not None
        assert err.label == "A [Percent]"
        assert err.attempted_write
