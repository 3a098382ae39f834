"""Tests for BulkFetcher pagination."""

import httpx
import pytest

from conftest import FakePipedrive, utc
from supabase2pipedrive.exceptions import PipedriveAPIError
from supabase2pipedrive.pipedrive.client import PipedriveClient
from supabase2pipedrive.pipedrive.pagination import BulkFetcher


def _seed(api: FakePipedrive, count: int) -> None:
    for i in range(1, count + 1):
        api.add_organization(i, f"Org {i}", utc(2024, 1, 1))


def _list_requests(api: FakePipedrive, resource: str) -> list:
    return [r for r in api.requests if r.method == "GET" and r.url.path == f"/v1/{resource}"]


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_fetches_every_page(self, pipedrive, pipedrive_api):
        _seed(pipedrive_api, 250)

        records = await BulkFetcher(pipedrive, page_size=100).fetch_all("organizations")

        assert len(records) == 250
        assert [r["id"] for r in records] == list(range(1, 251))
        starts = [r.url.params["start"] for r in _list_requests(pipedrive_api, "organizations")]
        assert starts == ["0", "100", "200"]

    @pytest.mark.asyncio
    async def test_stops_when_no_more_items(self, pipedrive, pipedrive_api):
        _seed(pipedrive_api, 200)

        records = await BulkFetcher(pipedrive, page_size=100).fetch_all("organizations")

        assert len(records) == 200
        assert len(_list_requests(pipedrive_api, "organizations")) == 2

    @pytest.mark.asyncio
    async def test_empty_collection(self, pipedrive, pipedrive_api):
        records = await BulkFetcher(pipedrive).fetch_all("persons")

        assert records == []
        assert len(_list_requests(pipedrive_api, "persons")) == 1

    @pytest.mark.asyncio
    async def test_failed_page_returns_partial_data(self, pipedrive_api):
        _seed(pipedrive_api, 150)
        original = pipedrive_api.handle

        def second_page_fails(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("start") == "100":
                return httpx.Response(500, json={"success": False, "error": "boom"})
            return original(request)

        client = PipedriveClient("test-token", transport=httpx.MockTransport(second_page_fails))

        records = await BulkFetcher(client, page_size=100).fetch_all("organizations")

        assert [r["id"] for r in records] == list(range(1, 101))

    @pytest.mark.asyncio
    async def test_strict_mode_raises(self, pipedrive, pipedrive_api):
        pipedrive_api.fail_paths["/personFields"] = 1

        with pytest.raises(PipedriveAPIError):
            await BulkFetcher(pipedrive).fetch_all("personFields", strict=True)
