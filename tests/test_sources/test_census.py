"""
tests/test_sources/test_census.py — Unit tests for CensusImportClient.

HTTP is mocked with respx; payloads mirror the import endpoint's responses.
"""

from __future__ import annotations

import json

import httpx
import pytest

from civicdata_pipeline.exceptions import ImportFetchError, TimeoutAfterPartialWrite
from civicdata_pipeline.sources.census import CensusImportClient, FetchRequest

URL = "https://civic.example/api/census-import"


@pytest.fixture
def request_2023() -> FetchRequest:
    return FetchRequest(
        dataset="acs/acs5",
        group="B01001",
        variable="B01001_001E",
        year=2023,
        category="demographics",
        created_by="u1",
    )


class TestFetchRequest:
    def test_payload_is_single_year(self, request_2023: FetchRequest):
        payload = request_2023.to_payload()
        assert payload["years"] == 1
        assert payload["includeMoe"] is True
        assert payload["visibility"] == "private"
        assert payload["createdBy"] == "u1"
        assert request_2023.label == "B01001_001E 2023"


class TestFetch:
    @pytest.mark.asyncio
    async def test_success_returns_stat_id(self, mock_http, request_2023):
        route = mock_http.post(URL).mock(
            return_value=httpx.Response(200, json={"ok": True, "statId": "stat-1"})
        )
        async with CensusImportClient(URL) as census:
            result = await census.fetch(request_2023)

        assert result.ok
        assert result.stat_id == "stat-1"
        sent = json.loads(route.calls[0].request.content)
        assert sent["variable"] == "B01001_001E"
        assert sent["year"] == 2023

    @pytest.mark.asyncio
    async def test_error_payload_is_returned_not_raised(self, mock_http, request_2023):
        mock_http.post(URL).mock(
            return_value=httpx.Response(400, json={"error": "Unknown variable"})
        )
        async with CensusImportClient(URL) as census:
            result = await census.fetch(request_2023)

        assert not result.ok
        assert result.error == "Unknown variable"
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_non_json_failure_uses_status(self, mock_http, request_2023):
        mock_http.post(URL).mock(return_value=httpx.Response(502, text="Bad gateway"))
        async with CensusImportClient(URL) as census:
            result = await census.fetch(request_2023)
        assert result.error == "Import failed with status 502."

    @pytest.mark.asyncio
    async def test_ok_false_is_an_error(self, mock_http, request_2023):
        mock_http.post(URL).mock(return_value=httpx.Response(200, json={"ok": False}))
        async with CensusImportClient(URL) as census:
            result = await census.fetch(request_2023)
        assert result.error == "Import failed with status 200."

    @pytest.mark.asyncio
    async def test_read_timeout_may_have_written(self, mock_http, request_2023):
        mock_http.post(URL).mock(side_effect=httpx.ReadTimeout("slow"))
        async with CensusImportClient(URL) as census:
            with pytest.raises(TimeoutAfterPartialWrite) as exc_info:
                await census.fetch(request_2023)

        assert exc_info.value.attempted_write is True
        assert exc_info.value.label == "B01001_001E 2023"

    @pytest.mark.asyncio
    async def test_connect_timeout_never_wrote(self, mock_http, request_2023):
        mock_http.post(URL).mock(side_effect=httpx.ConnectTimeout("no route"))
        async with CensusImportClient(URL) as census:
            with pytest.raises(TimeoutAfterPartialWrite) as exc_info:
                await census.fetch(request_2023)
        assert exc_info.value.attempted_write is False

    @pytest.mark.asyncio
    async def test_transport_error_is_not_retried(self, mock_http, request_2023):
        route = mock_http.post(URL).mock(side_effect=httpx.ConnectError("refused"))
        async with CensusImportClient(URL) as census:
            with pytest.raises(ImportFetchError) as exc_info:
                await census.fetch(request_2023)

        assert exc_info.value.message == "Network error during import."
        assert exc_info.value.year == 2023
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self, mock_http, request_2023):
        mock_http.post(URL).mock(return_value=httpx.Response(200, json={"ok": True, "statId": "s"}))
        http = httpx.AsyncClient()
        async with CensusImportClient(URL, client=http) as census:
            await census.fetch(request_2023)
        assert not http.is_closed
        await http.aclose()
