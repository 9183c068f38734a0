"""Orchestrator — cache-first crawl start, manifest seeding, status streams.

Responsibilities:
  - Validate input (allow-listed start URL, page URL lists)
  - Serve repeat crawls from the URL manifest without touching the provider
  - Serialize remote job creation per start URL with the distributed lock
  - Gate provider calls through the circuit breaker
  - Hand each status stream its own reconciler
"""

import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError

from doccrawl.config import settings
from doccrawl.errors import (
    CircuitOpenError,
    ConfigurationError,
    CrawlError,
    InvalidRequestError,
    JobNotFoundError,
    NotCachedError,
    ProviderError,
)
from doccrawl.integrations.firecrawl import FirecrawlClient
from doccrawl.orchestrator.reconciler import CrawlStatusReconciler, ReconcilerPolicy
from doccrawl.orchestrator.schemas import (
    INVALID_URL_MESSAGE,
    CrawlEvent,
    CrawlJob,
    CrawlResult,
    JobStatus,
    SeedRequest,
    SeedResponse,
    StartCrawlRequest,
    StartCrawlResponse,
)
from doccrawl.services.cache import TieredCache
from doccrawl.services.circuit_breaker import CircuitBreaker
from doccrawl.services.job_store import JobStore
from doccrawl.services.lock import DistributedLock
from doccrawl.services.manifest_store import UrlManifestStore
from doccrawl.utils.urls import is_valid_documentation_url

logger = logging.getLogger(__name__)


class CrawlOrchestrator:
    """Entry point for every crawl operation exposed over HTTP."""

    def __init__(
        self,
        cache: TieredCache,
        provider: FirecrawlClient,
        breaker: CircuitBreaker,
        jobs: JobStore | None = None,
        manifests: UrlManifestStore | None = None,
        lock: DistributedLock | None = None,
        policy: ReconcilerPolicy | None = None,
    ):
        self.cache = cache
        self.provider = provider
        self.breaker = breaker
        self.jobs = jobs or JobStore(cache)
        self.manifests = manifests or UrlManifestStore(cache)
        self.lock = lock or DistributedLock(cache)
        self.policy = policy or ReconcilerPolicy.from_settings()

    # ─── start ───

    async def start_crawl(self, request: StartCrawlRequest) -> StartCrawlResponse:
        url = request.url
        if not is_valid_documentation_url(url):
            raise InvalidRequestError(INVALID_URL_MESSAGE)

        requested = request.limit or settings.default_crawl_limit
        limit = min(requested, settings.max_allowed_urls)

        if not request.force:
            cached = await self._start_from_manifest(url, limit)
            if cached is not None:
                return cached

        if not self.provider.api_key:
            raise ConfigurationError("Server configuration error")

        async with self.lock.hold(url):
            return await self._start_remote(url, limit)

    async def _start_from_manifest(self, url: str, limit: int) -> StartCrawlResponse | None:
        """Synthetic cache_hit job when the manifest's sample is still cached."""
        manifest = await self.manifests.get(url)
        if not manifest:
            return None

        sample = manifest[: settings.manifest_sample_size]
        cached = await self.cache.mget(sample)
        if any(cached.get(u) is None for u in sample):
            logger.info("Manifest stale | url=%s | sample=%d", url[:100], len(sample))
            return None

        job = CrawlJob(
            id=str(uuid.uuid4()),
            url=url,
            limit=limit,
            status=JobStatus.CACHE_HIT,
            total_pages=len(manifest),
            completed_pages=len(manifest),
            crawled_urls=manifest,
        )
        await self.jobs.create_job(job)
        logger.info("Crawl CACHE HIT | url=%s | pages=%d | credits=0", url[:100], len(manifest))
        return StartCrawlResponse(jobId=job.id, url=url, limit=limit, cached=True)

    async def _start_remote(self, url: str, limit: int) -> StartCrawlResponse:
        if not await self.breaker.can_request():
            logger.error("Circuit breaker OPEN for crawl provider, failing fast | url=%s", url[:100])
            raise CircuitOpenError(
                "Documentation service is temporarily unavailable",
                {
                    "details": "The service is experiencing high failure rates. Please try again in a minute.",
                    "circuitBreaker": "open",
                },
            )

        # Every admitted call reports an outcome, or a half-open trial slot leaks
        try:
            result = await self.provider.start_crawl(url, limit)
        except ProviderError as e:
            if e.is_server_error:
                await self.breaker.record_failure()
            else:
                # Any non-5xx answer means the provider is up
                await self.breaker.record_success()
            raise
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            logger.error("Crawl start network error | url=%s | %s", url[:100], str(e)[:200])
            raise CrawlError(f"Network error: {str(e)[:200] or type(e).__name__}")
        except CrawlError:
            await self.breaker.record_success()
            raise
        except Exception:
            await self.breaker.record_failure()
            raise
        await self.breaker.record_success()

        job = CrawlJob(id=result.id, url=url, limit=limit, credits_used=result.creditsUsed)
        await self.jobs.create_job(job)
        return StartCrawlResponse(jobId=job.id, url=url, limit=limit)

    # ─── manifest seeding ───

    async def seed_manifest(self, request: SeedRequest) -> SeedResponse:
        """Store a manifest made of the cache-verified subset of ``pageUrls``."""
        if not is_valid_documentation_url(request.url):
            raise InvalidRequestError(INVALID_URL_MESSAGE)

        cached = await self.cache.mget(request.pageUrls)
        cached_urls = [u for u in request.pageUrls if cached.get(u) is not None]
        missing_urls = [u for u in request.pageUrls if cached.get(u) is None]

        if not cached_urls:
            raise NotCachedError(
                "None of the provided page URLs are cached", {"missingUrls": missing_urls},
            )

        await self.manifests.put(request.url, cached_urls)
        logger.info(
            "Manifest seeded | url=%s | stored=%d | missing=%d",
            request.url[:100], len(cached_urls), len(missing_urls),
        )
        return SeedResponse(
            url=request.url,
            stored=len(cached_urls),
            missing=len(missing_urls),
            missingUrls=missing_urls or None,
        )

    # ─── status & results ───

    async def get_job(self, job_id: str) -> CrawlJob:
        job = await self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError("Job not found", {"jobId": job_id})
        return job

    def reconciler(self) -> CrawlStatusReconciler:
        return CrawlStatusReconciler(
            cache=self.cache,
            jobs=self.jobs,
            manifests=self.manifests,
            provider=self.provider,
            breaker=self.breaker,
            policy=self.policy,
        )

    async def stream_status(self, job_id: str) -> AsyncIterator[CrawlEvent]:
        """Resolve the job first so a missing id fails before streaming begins."""
        job = await self.get_job(job_id)
        if job.status != JobStatus.CACHE_HIT and not self.provider.api_key:
            raise ConfigurationError("Server configuration error")
        return self.reconciler().stream(job)

    async def get_results(self, job_id: str) -> list[CrawlResult]:
        await self.get_job(job_id)
        return await self.jobs.get_all_result_pages(job_id)


# ═══════════════ INPUT PARSING ═══════════════

RequestModel = TypeVar("RequestModel", StartCrawlRequest, SeedRequest)


def parse_request(model: type[RequestModel], data: Any) -> RequestModel:
    """Validate a JSON body against ``model``; the first invalid field names the error."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        loc = e.errors()[0]["loc"]
        if not loc:
            raise InvalidRequestError("Request body must be a JSON object") from None
        field = str(loc[0]) if len(loc) == 1 else f"{loc[0]}[]"
        raise InvalidRequestError(model.FIELD_ERRORS.get(field, "Invalid request body")) from None
