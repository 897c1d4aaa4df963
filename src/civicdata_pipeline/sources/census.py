"""
sources/census.py — Adapter for the census import endpoint.

The endpoint fetches one census variable for one year, writes the statistic
and its stat_data rows server-side, and answers with the stat id. This core
treats it as an opaque fetch: one POST per (variable, year), never retried,
because a call that timed out may already have written its rows.

Response handling:
    2xx + {"ok": true, "statId": ...}    → FetchResult(stat_id=...)
    non-2xx / ok: false / "error" key    → FetchResult(error=...)
    httpx timeout                        → TimeoutAfterPartialWrite
    any other transport failure          → ImportFetchError

Usage:
    from civicdata_pipeline.sources.census import CensusImportClient, FetchRequest

    async with CensusImportClient() as census:
        result = await census.fetch(
            FetchRequest(dataset="acs/acs5", group="B01001",
                         variable="B01001_001E", year=2023)
        )
        if result.ok:
            print(result.stat_id)
"""

from __future__ import annotations

import time
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel

from civicdata_shared.config import settings
from civicdata_pipeline.exceptions import ImportFetchError, TimeoutAfterPartialWrite

log = structlog.get_logger(__name__)


class FetchRequest(BaseModel):
    """One single-year import call. Caller supplies category and owner metadata."""

    dataset: str
    group: str
    variable: str
    year: int
    include_moe: bool = True
    category: str = ""
    visibility: str = "private"
    created_by: str | None = None

    @property
    def label(self) -> str:
        return f"{self.variable} {self.year}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "dataset": self.dataset,
            "group": self.group,
            "variable": self.variable,
            "year": self.year,
            "years": 1,
            "includeMoe": self.include_moe,
            "category": self.category,
            "visibility": self.visibility,
            "createdBy": self.created_by,
        }


class FetchResult(BaseModel):
    stat_id: str | None = None
    error: str | None = None
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ImportFetcher(Protocol):
    """Anything the import queue can call to fetch one (variable, year)."""

    async def fetch(self, request: FetchRequest) -> FetchResult: ...


class CensusImportClient:
    """httpx client for the census import endpoint."""

    name: str = "census_import"

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url or settings.census_import_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.import_timeout_s
        )
        self._log = log.bind(source_name=self.name)

    async def __aenter__(self) -> "CensusImportClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """
        POST one single-year import.

        Raises:
            TimeoutAfterPartialWrite: the call timed out. ``attempted_write``
                is False only when the connection was never established.
            ImportFetchError: the request could not be sent or completed.
        """
        fetch_log = self._log.bind(variable=request.variable, year=request.year)
        fetch_log.info("fetch_start")
        t0 = time.monotonic()

        try:
            response = await self._client.post(self._url, json=request.to_payload())
        except httpx.TimeoutException as exc:
            attempted = not isinstance(exc, httpx.ConnectTimeout)
            fetch_log.warning("fetch_timeout", attempted_write=attempted, error=str(exc))
            raise TimeoutAfterPartialWrite(
                f"Import of {request.label} timed out.",
                label=request.label,
                attempted_write=attempted,
                original_exception=exc,
            ) from exc
        except httpx.HTTPError as exc:
            fetch_log.error("fetch_transport_error", error=str(exc))
            raise ImportFetchError(
                "Network error during import.",
                year=request.year,
                original_exception=exc,
            ) from exc

        duration_ms = int((time.monotonic() - t0) * 1000)
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None

        if (
            not response.is_success
            or payload is None
            or payload.get("ok") is False
            or payload.get("error")
        ):
            error = payload.get("error") if payload else None
            message = (
                error
                if isinstance(error, str) and error
                else f"Import failed with status {response.status_code}."
            )
            fetch_log.warning(
                "fetch_rejected",
                status_code=response.status_code,
                error=message,
                duration_ms=duration_ms,
            )
            return FetchResult(error=message, status_code=response.status_code)

        stat_id = payload.get("statId")
        stat_id = stat_id if isinstance(stat_id, str) and stat_id else None
        fetch_log.info("fetch_complete", stat_id=stat_id, duration_ms=duration_ms)
        return FetchResult(stat_id=stat_id, status_code=response.status_code)
