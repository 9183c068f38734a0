"""Tests for the Firecrawl client — uses pytest-httpx to mock HTTP calls."""

import json

import httpx
import pytest

from doccrawl.errors import CrawlError, ProviderError
from doccrawl.integrations.firecrawl import FirecrawlClient

BASE = "https://api.firecrawl.test/v1"
START_URL = "https://docs.example.com/"


@pytest.fixture
def client():
    return FirecrawlClient(api_key="fc-test", base_url=BASE + "/")


class TestStartCrawl:
    @pytest.mark.asyncio
    async def test_success(self, client, httpx_mock):
        httpx_mock.add_response(
            method="POST", url=f"{BASE}/crawl",
            json={"success": True, "id": "job-123", "url": f"{BASE}/crawl/job-123"},
        )
        result = await client.start_crawl(START_URL, 25)
        assert result.id == "job-123"
        assert result.creditsUsed == 0

        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer fc-test"
        body = json.loads(request.content)
        assert body["url"] == START_URL
        assert body["limit"] == 25
        assert body["scrapeOptions"]["formats"] == ["markdown"]
        assert body["scrapeOptions"]["onlyMainContent"] is True

    @pytest.mark.asyncio
    async def test_rate_limited(self, client, httpx_mock):
        httpx_mock.add_response(status_code=429, json={"error": "slow down"})
        with pytest.raises(ProviderError) as exc:
            await client.start_crawl(START_URL, 10)
        assert exc.value.status_code == 429
        assert "Rate limit exceeded" in exc.value.message

    @pytest.mark.asyncio
    async def test_forbidden(self, client, httpx_mock):
        httpx_mock.add_response(status_code=403, text="")
        with pytest.raises(ProviderError) as exc:
            await client.start_crawl(START_URL, 10)
        assert "API key might be invalid" in exc.value.message

    @pytest.mark.asyncio
    async def test_server_error(self, client, httpx_mock):
        httpx_mock.add_response(status_code=500, text="upstream exploded")
        with pytest.raises(ProviderError) as exc:
            await client.start_crawl(START_URL, 10)
        assert exc.value.is_server_error
        assert exc.value.message == "Server error. Please try again later."

    @pytest.mark.asyncio
    async def test_client_error_passes_details(self, client, httpx_mock):
        httpx_mock.add_response(
            status_code=400,
            json={"error": "Bad Request", "details": [{"path": ["limit"], "message": "too big"}]},
        )
        with pytest.raises(ProviderError) as exc:
            await client.start_crawl(START_URL, 10)
        assert exc.value.status_code == 400
        assert exc.value.to_dict() == {
            "error": "Bad Request",
            "details": [{"path": ["limit"], "message": "too big"}],
        }

    @pytest.mark.asyncio
    async def test_unsuccessful_body(self, client, httpx_mock):
        httpx_mock.add_response(json={"success": False, "error": "quota exhausted"})
        with pytest.raises(CrawlError) as exc:
            await client.start_crawl(START_URL, 10)
        assert not isinstance(exc.value, ProviderError)
        assert exc.value.message == "Failed to start crawl: quota exhausted"

    @pytest.mark.asyncio
    async def test_missing_job_id(self, client, httpx_mock):
        httpx_mock.add_response(json={"success": True})
        with pytest.raises(CrawlError, match="No job ID"):
            await client.start_crawl(START_URL, 10)

    @pytest.mark.asyncio
    async def test_timeout_propagates(self, client, httpx_mock):
        httpx_mock.add_exception(httpx.ReadTimeout("timeout"))
        with pytest.raises(httpx.TimeoutException):
            await client.start_crawl(START_URL, 10)


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_success(self, client, httpx_mock):
        httpx_mock.add_response(
            method="GET", url=f"{BASE}/crawl/job-123",
            json={
                "status": "scraping",
                "completed": 3,
                "total": 10,
                "creditsUsed": 3,
                "expiresAt": "2026-10-18T00:00:00Z",
                "next": f"{BASE}/crawl/job-123?skip=3",
                "data": [
                    {"metadata": {"sourceURL": "https://docs.example.com/a"}, "markdown": "# A"},
                ],
            },
        )
        data = await client.get_status("job-123")
        assert data.status == "scraping"
        assert data.completion_ratio == 0.3
        assert data.next.endswith("skip=3")
        assert data.data[0].source_url == "https://docs.example.com/a"
        assert data.data[0].content == "# A"

    @pytest.mark.asyncio
    async def test_follows_next_cursor(self, client, httpx_mock):
        cursor = f"{BASE}/crawl/job-123?skip=3"
        httpx_mock.add_response(method="GET", url=cursor, json={"status": "completed", "completed": 4, "total": 4})
        data = await client.get_status("job-123", cursor)
        assert data.status == "completed"
        assert httpx_mock.get_request().url == cursor

    @pytest.mark.asyncio
    async def test_null_counters(self, client, httpx_mock):
        httpx_mock.add_response(json={"status": "scraping", "completed": None, "total": None, "data": None})
        data = await client.get_status("job-123")
        assert data.completed == 0
        assert data.completion_ratio == 0.0

    @pytest.mark.asyncio
    async def test_gateway_error(self, client, httpx_mock):
        httpx_mock.add_response(status_code=503)
        with pytest.raises(ProviderError) as exc:
            await client.get_status("job-123")
        assert exc.value.is_gateway
        assert exc.value.message == "Failed to get crawl status: 503"

    @pytest.mark.asyncio
    async def test_not_found_is_not_gateway(self, client, httpx_mock):
        httpx_mock.add_response(status_code=404)
        with pytest.raises(ProviderError) as exc:
            await client.get_status("job-123")
        assert not exc.value.is_gateway
        assert not exc.value.is_server_error

    @pytest.mark.asyncio
    async def test_network_error_propagates(self, client, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        with pytest.raises(httpx.HTTPError):
            await client.get_status("job-123")


class TestClientConfig:
    def test_status_url(self, client):
        assert client.status_url("abc") == f"{BASE}/crawl/abc"

    def test_defaults_from_settings(self):
        from doccrawl.config import settings

        c = FirecrawlClient()
        assert c.base_url == settings.firecrawl_api_url.rstrip("/")
        assert c.api_key == settings.firecrawl_api_key
