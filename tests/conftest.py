"""
tests/conftest.py — Shared pytest fixtures for the core test suite.

Provides:
  make_store()            — factory for InMemoryStore seeded from plain dicts
  seeded_store()          — population stat with Sex children and data rows
  mock_supabase_client()  — MagicMock of the Supabase client (prevents real DB calls)
  mock_http               — configured respx router for faking HTTP responses
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any
from unittest.mock import MagicMock

import pytest
import respx

from civicdata_shared.constants import (
    COLLECTION_RELATIONS,
    COLLECTION_STAT_DATA,
    COLLECTION_STATS,
)
from civicdata_shared.db import reset_supabase_clients
from civicdata_shared.models import build_relation_key, normalize_attribute
from civicdata_pipeline.loaders.store import InMemoryStore


@pytest.fixture(autouse=True)
def _reset_clients():
    reset_supabase_clients()
    yield
    reset_supabase_clients()


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

def _relation_docs(relations: Iterable[tuple]) -> dict[str, dict[str, Any]]:
    docs: dict[str, dict[str, Any]] = {}
    for n, rel in enumerate(relations):
        parent, child, *rest = rel
        attribute = rest[0] if rest else None
        sort_order = rest[1] if len(rest) > 1 else None
        doc = {
            "relation_key": build_relation_key(parent, child, attribute),
            "parent_stat_id": parent,
            "child_stat_id": child,
            "stat_attribute": normalize_attribute(attribute),
        }
        if sort_order is not None:
            doc["sort_order"] = sort_order
        docs[f"rel-{n}"] = doc
    return docs


def _row_docs(rows: Iterable[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    docs: dict[str, dict[str, Any]] = {}
    for n, row in enumerate(rows):
        doc = {"name": "root", "boundary_type": "ZIP", "type": "count", **row}
        doc["date"] = str(doc["date"])
        docs[doc.pop("id", f"row-{n}")] = doc
    return docs


@pytest.fixture
def make_store():
    """
    Build an InMemoryStore from compact seed data.

        store = make_store(
            stats={"pop": {"name": "Population"}},
            rows=[{"stat_id": "pop", "date": 2023, "data": {"74103": 10}}],
            relations=[("pop", "male", "Sex")],
        )

    Relations are (parent, child[, attribute[, sort_order]]) tuples.
    """

    def _make(
        stats: dict[str, dict[str, Any]] | None = None,
        rows: Iterable[dict[str, Any]] = (),
        relations: Iterable[tuple] = (),
        **kwargs: Any,
    ) -> InMemoryStore:
        return InMemoryStore(
            {
                COLLECTION_STATS: {sid: {"category": "demographics", **doc} for sid, doc in (stats or {}).items()},
                COLLECTION_STAT_DATA: _row_docs(rows),
                COLLECTION_RELATIONS: _relation_docs(relations),
            },
            **kwargs,
        )

    return _make


@pytest.fixture
def seeded_store(make_store) -> InMemoryStore:
    """
    Total population (public, owned by u1) with male/female children under
    "Sex", plus an unrelated households stat. Population has 2021-2023 ZIP
    rows; households has 2023 only.
    """
    return make_store(
        stats={
            "pop": {"name": "Total population", "label": "Population", "visibility": "public", "created_by": "u1"},
            "male": {"name": "Male population", "visibility": "inherited"},
            "female": {"name": "Female population", "visibility": "inherited"},
            "households": {"name": "Households", "visibility": "private", "created_by": "u2"},
        },
        rows=[
            {"stat_id": "pop", "date": 2021, "data": {"74103": 100, "74104": 200}},
            {"stat_id": "pop", "date": 2022, "data": {"74103": 110, "74104": 210}},
            {"stat_id": "pop", "date": 2023, "data": {"74103": 150, "74104": 0}},
            {"stat_id": "male", "date": 2023, "data": {"74103": 70, "74104": 0}},
            {"stat_id": "households", "date": 2023, "data": {"74103": 50, "74104": 40}},
        ],
        relations=[("pop", "male", "Sex", 1), ("pop", "female", "Sex", 2)],
    )


# ---------------------------------------------------------------------------
# Supabase client mock
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_supabase_client() -> MagicMock:
    """
    A MagicMock that simulates the supabase.Client interface.

    Every query-builder method returns the same builder, so any chain of
    .table().select().eq().in_()... ends at .execute() returning empty data.
    Override in individual tests: mock_supabase_client.table.return_value...
    """
    client = MagicMock()

    default_result = MagicMock()
    default_result.data = []
    default_result.count = 0

    builder = client.table.return_value
    for method in ("select", "eq", "in_", "is_", "order", "range"):
        getattr(builder, method).return_value = builder
    builder.execute.return_value = default_result

    client.rpc.return_value.execute.return_value = default_result
    return client


# ---------------------------------------------------------------------------
# respx HTTP mock router
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_http():
    """
    Activate the respx mock router for all httpx requests.

    Usage in tests:
        def test_something(mock_http):
            mock_http.post("https://...").mock(return_value=httpx.Response(200, json={...}))
    """
    with respx.mock(assert_all_called=False) as router:
        yield router
