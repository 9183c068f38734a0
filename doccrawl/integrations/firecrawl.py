"""Firecrawl crawl-job API integration.

Docs: https://docs.firecrawl.dev/api-reference/endpoint/crawl-post
Endpoints:
  POST {base}/crawl          start a job
  GET  {base}/crawl/{id}     job status + a page of results (``next`` cursor)

Non-2xx answers raise ProviderError; transport failures propagate as
httpx.HTTPError so callers can tell "provider said no" from "provider unreachable".
"""

import logging
import time
from typing import Any

import httpx

from doccrawl.config import settings
from doccrawl.errors import CrawlError, ProviderError
from doccrawl.orchestrator.schemas import CrawlStartResult, CrawlStatusResponse

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; Documentation-Scraper/1.0)"


class FirecrawlClient:
    """Async client for the Firecrawl v1 crawl API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        status_timeout: float | None = None,
    ):
        self.api_key = settings.firecrawl_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.firecrawl_api_url).rstrip("/")
        self.timeout = timeout or settings.provider_request_timeout
        self.status_timeout = status_timeout or settings.provider_status_timeout

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def status_url(self, job_id: str) -> str:
        return f"{self.base_url}/crawl/{job_id}"

    async def start_crawl(self, url: str, limit: int) -> CrawlStartResult:
        """Create a remote crawl job. Returns the provider's answer with a job id."""
        body = self._build_crawl_body(url, limit)

        start = time.monotonic()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(f"{self.base_url}/crawl", json=body, headers=self._headers)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if not response.is_success:
            logger.warning(
                "Firecrawl start | status=%d | %dms | url=%s",
                response.status_code, elapsed_ms, url[:100],
            )
            raise self._start_error(response)

        result = CrawlStartResult.model_validate(response.json())
        if not result.success or not result.id:
            error = result.error or "No job ID returned from crawl API"
            logger.error("Firecrawl start rejected | url=%s | %s", url[:100], error[:200])
            raise CrawlError(f"Failed to start crawl: {error}")

        logger.info(
            "Firecrawl start OK | job=%s | limit=%d | %dms | url=%s",
            result.id, limit, elapsed_ms, url[:100],
        )
        return result

    async def get_status(self, job_id: str, status_url: str | None = None) -> CrawlStatusResponse:
        """Fetch job status. ``status_url`` is the provider's ``next`` cursor when paging."""
        target = status_url or self.status_url(job_id)

        start = time.monotonic()
        async with httpx.AsyncClient(timeout=self.status_timeout) as client:
            response = await client.get(target, headers=self._headers)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if not response.is_success:
            logger.warning(
                "Firecrawl status | job=%s | status=%d | %dms",
                job_id, response.status_code, elapsed_ms,
            )
            raise ProviderError(response.status_code, f"Failed to get crawl status: {response.status_code}")

        data = CrawlStatusResponse.model_validate(response.json())
        logger.debug(
            "Firecrawl status OK | job=%s | %s | %d/%d | %dms",
            job_id, data.status, data.completed, data.total, elapsed_ms,
        )
        return data

    def _build_crawl_body(self, url: str, limit: int) -> dict[str, Any]:
        return {
            "url": url,
            "limit": limit,
            "scrapeOptions": {
                "formats": ["markdown"],
                "onlyMainContent": True,
                "waitFor": settings.provider_wait_for_ms,
                "timeout": settings.provider_scrape_timeout_ms,
                "headers": {"User-Agent": USER_AGENT},
            },
        }

    def _start_error(self, response: httpx.Response) -> ProviderError:
        status = response.status_code
        message = f"Firecrawl API error ({status})"
        details = None

        text = response.text
        if text:
            try:
                payload = response.json()
            except ValueError:
                message = f"Firecrawl API error: {text[:500]}"
            else:
                if isinstance(payload, dict):
                    message = payload.get("error") or payload.get("message") or text[:500]
                    details = payload.get("details")

        if status == 429:
            message = "Rate limit exceeded. Please try again in a few moments."
        elif status == 403:
            message = "Access forbidden. The API key might be invalid."
        elif status >= 500:
            message = "Server error. Please try again later."

        return ProviderError(status, message, {"details": details} if details else None)
